"""AI module for Memoir AI.

client.py is the only module that talks to the Gemini API; everything else
goes through the CompletionProvider protocol it implements.

Exports:
    - AIClient: Gemini client with retry and error mapping
    - get_client: Factory for a configured client
    - ConversationalAssistant: Per-story chat with the provider
    - TranscriptionService: Validated audio transcription
    - Exception hierarchy for typed error handling
"""

from memoirai.ai.assistant import (
    AssistantState,
    ConversationalAssistant,
    RevisionStatus,
    StoryRevision,
    compare_texts,
)
from memoirai.ai.client import (
    # Main client
    AIClient,
    get_client,
    classify_error,
    # Request and response models
    AIResponse,
    ChatMessage,
    CompletionProvider,
    CompletionRequest,
    # Exceptions
    AIClientError,
    AIUnavailableError,
    APIKeyMissingError,
    AIAuthenticationError,
    AIRateLimitError,
    AIQuotaExceededError,
    AIServerError,
    AIBadRequestError,
    AITimeoutError,
    AINetworkError,
    TokenLimitExceededError,
    ModelNotAvailableError,
    ContentBlockedError,
)
from memoirai.ai.transcription import (
    AudioPayload,
    TranscriptionOptions,
    TranscriptionResult,
    TranscriptionService,
    classify_capture_error,
)

__all__ = [
    "AIClient",
    "get_client",
    "classify_error",
    "AIResponse",
    "ChatMessage",
    "CompletionProvider",
    "CompletionRequest",
    "AIClientError",
    "AIUnavailableError",
    "APIKeyMissingError",
    "AIAuthenticationError",
    "AIRateLimitError",
    "AIQuotaExceededError",
    "AIServerError",
    "AIBadRequestError",
    "AITimeoutError",
    "AINetworkError",
    "TokenLimitExceededError",
    "ModelNotAvailableError",
    "ContentBlockedError",
    "AssistantState",
    "ConversationalAssistant",
    "RevisionStatus",
    "StoryRevision",
    "compare_texts",
    "AudioPayload",
    "TranscriptionOptions",
    "TranscriptionResult",
    "TranscriptionService",
    "classify_capture_error",
]
