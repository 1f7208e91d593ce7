"""Core data models, tagged results and timeline helpers."""

from memoirai.core.models import (
    AnalysisMetadata,
    AnalysisResult,
    Connection,
    ConnectionData,
    ContextCategory,
    ConversationContext,
    ElementType,
    FollowUpQuestion,
    MemoryElement,
    Message,
    MessageIdFactory,
    QuickReply,
    Sender,
    Story,
    StoryContext,
    StoredContext,
    sanitize_context,
)
from memoirai.core.result import ErrorCode, ErrorInfo, Result

__all__ = [
    "AnalysisMetadata",
    "AnalysisResult",
    "Connection",
    "ConnectionData",
    "ContextCategory",
    "ConversationContext",
    "ElementType",
    "ErrorCode",
    "ErrorInfo",
    "FollowUpQuestion",
    "MemoryElement",
    "Message",
    "MessageIdFactory",
    "QuickReply",
    "Result",
    "Sender",
    "Story",
    "StoryContext",
    "StoredContext",
    "sanitize_context",
]
