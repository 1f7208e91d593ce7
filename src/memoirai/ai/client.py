"""Gemini client for Memoir AI.

This module is the only place that talks to the Gemini API. The conversational
assistant and the transcription service depend on the small
:class:`CompletionProvider` protocol, which :class:`AIClient` implements, so
tests and alternative backends can stand in for Gemini.

The client provides:
- Async generation with retry, exponential backoff and jitter
- A typed exception hierarchy, each exception carrying an ErrorCode
- Mapping of SDK and network exceptions onto that hierarchy
- Log redaction so API keys never reach log output

Example:
    >>> client = get_client(config)
    >>> request = CompletionRequest(messages=[ChatMessage(role="user", content="Hello")])
    >>> response = await client.complete(request)
    >>> response.text

Security Rules:
- NEVER log API keys
- NEVER log prompts, story text or responses; only sizes, timings and
  exception class names
"""

from __future__ import annotations

import asyncio
import logging
import random
import re
import time
from typing import Any, Awaitable, Callable, Literal, Protocol

import google.generativeai as genai
from google.api_core import exceptions as google_exceptions
from google.generativeai.types import GenerationConfig, HarmBlockThreshold, HarmCategory
from pydantic import BaseModel, Field

from memoirai.config import APIKeyNotFoundError, AppConfig, get_api_key
from memoirai.core.result import USER_MESSAGES, ErrorCode, ErrorInfo


# =============================================================================
# Secure Logging Filter
# =============================================================================


class RedactingFilter(logging.Filter):
    """Logging filter that replaces API-key-like tokens with [REDACTED].

    Example:
        >>> logger.addFilter(RedactingFilter())
        >>> logger.info("Using api_key=AIzaSy123456789...")
        # Output: "Using api_key=[REDACTED]"
    """

    KEY_VALUE_PATTERNS = [
        re.compile(r'(api_key\s*[=:]\s*)["\']?([a-zA-Z0-9_\-]{20,})["\']?', re.IGNORECASE),
        re.compile(r'(key\s*[=:]\s*)["\']?([a-zA-Z0-9_\-]{20,})["\']?', re.IGNORECASE),
        re.compile(r'(token\s*[=:]\s*)["\']?([a-zA-Z0-9_\-]{20,})["\']?', re.IGNORECASE),
        re.compile(r"(bearer\s+)([a-zA-Z0-9_\-]{20,})", re.IGNORECASE),
    ]
    STANDALONE_PATTERNS = [
        # Gemini keys start with AIza
        re.compile(r"\bAIza[a-zA-Z0-9_\-]{30,}\b"),
        re.compile(r"\b[a-zA-Z0-9_\-]{35,50}\b"),
    ]

    def filter(self, record: logging.LogRecord) -> bool:
        if isinstance(record.msg, str):
            record.msg = self.redact(record.msg)
        if record.args:
            record.args = tuple(
                self.redact(arg) if isinstance(arg, str) else arg for arg in record.args
            )
        return True

    @classmethod
    def redact(cls, text: str) -> str:
        for pattern in cls.KEY_VALUE_PATTERNS:
            text = pattern.sub(r"\1[REDACTED]", text)
        for pattern in cls.STANDALONE_PATTERNS:
            text = pattern.sub("[REDACTED]", text)
        return text


logger = logging.getLogger(__name__)
logger.addFilter(RedactingFilter())


# =============================================================================
# Exception Hierarchy
# =============================================================================


class AIClientError(Exception):
    """Base exception for provider failures.

    Attributes:
        message: Description safe to log.
        retriable: Whether repeating the call may succeed.
        code: ErrorCode used when the failure is shown to the user.
        details: Extra context (may be sensitive; don't log).
        original_error: Underlying exception.
    """

    code: ErrorCode = ErrorCode.UNKNOWN

    def __init__(
        self,
        message: str,
        retriable: bool = False,
        details: dict[str, Any] | None = None,
        original_error: Exception | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.retriable = retriable
        self.details = details or {}
        self.original_error = original_error

    def __str__(self) -> str:
        return self.message


class AIUnavailableError(AIClientError):
    """The provider cannot be used at all (disabled, no key, offline).

    Attributes:
        reason: Why the provider is unavailable.
    """

    _REASON_CODES = {
        "disabled": ErrorCode.MISSING_CREDENTIAL,
        "no_api_key": ErrorCode.MISSING_CREDENTIAL,
        "offline": ErrorCode.OFFLINE,
        "service_down": ErrorCode.SERVER_ERROR,
    }

    def __init__(
        self,
        reason: Literal["disabled", "no_api_key", "offline", "service_down"],
        message: str | None = None,
    ) -> None:
        self.reason = reason
        default_messages = {
            "disabled": "AI features are disabled in configuration",
            "no_api_key": "No Gemini API key configured",
            "offline": "Cannot reach Gemini API (network offline)",
            "service_down": "Gemini service is temporarily unavailable",
        }
        super().__init__(message or default_messages.get(reason, f"AI unavailable: {reason}"))
        self.code = self._REASON_CODES.get(reason, ErrorCode.UNKNOWN)


class APIKeyMissingError(AIUnavailableError):
    """No API key configured."""

    def __init__(
        self,
        message: str | None = None,
        suggestion: str = "Configure your Gemini API key using 'memoir config set-key'",
    ) -> None:
        self.suggestion = suggestion
        super().__init__(
            reason="no_api_key",
            message=message or f"No API key configured. {suggestion}",
        )


class AIAuthenticationError(AIClientError):
    """The API key was rejected. Never retriable."""

    code = ErrorCode.INVALID_CREDENTIAL

    def __init__(
        self,
        message: str = "API authentication failed. Please check your API key.",
        original_error: Exception | None = None,
    ) -> None:
        super().__init__(message, retriable=False, original_error=original_error)


class AIRateLimitError(AIClientError):
    """Rate limit exceeded; retriable after a wait.

    Attributes:
        retry_after_seconds: Wait suggested by the API, if any.
    """

    code = ErrorCode.RATE_LIMITED

    def __init__(
        self,
        message: str = "Rate limit exceeded. Please wait before retrying.",
        retry_after_seconds: float | None = None,
        original_error: Exception | None = None,
    ) -> None:
        super().__init__(message, retriable=True, original_error=original_error)
        self.retry_after_seconds = retry_after_seconds


class AIQuotaExceededError(AIClientError):
    """Quota or billing limit reached. Not retriable."""

    code = ErrorCode.QUOTA_EXCEEDED

    def __init__(
        self,
        message: str = "API quota exceeded. Check your billing and usage limits.",
        original_error: Exception | None = None,
    ) -> None:
        super().__init__(message, retriable=False, original_error=original_error)


class AIServerError(AIClientError):
    """Server-side (5xx) failure; retriable.

    Attributes:
        status_code: HTTP status code, if known.
    """

    code = ErrorCode.SERVER_ERROR

    def __init__(
        self,
        message: str = "AI server error. The service may be temporarily unavailable.",
        status_code: int | None = None,
        original_error: Exception | None = None,
    ) -> None:
        super().__init__(message, retriable=True, original_error=original_error)
        self.status_code = status_code


class AIBadRequestError(AIClientError):
    """Malformed request. Not retriable."""

    code = ErrorCode.INVALID_INPUT

    def __init__(
        self,
        message: str = "Invalid request to AI service.",
        original_error: Exception | None = None,
    ) -> None:
        super().__init__(message, retriable=False, original_error=original_error)


class AITimeoutError(AIClientError):
    """Request timed out; retriable."""

    code = ErrorCode.TIMEOUT

    def __init__(
        self,
        timeout_seconds: float,
        message: str | None = None,
        original_error: Exception | None = None,
    ) -> None:
        super().__init__(
            message or f"Request timed out after {timeout_seconds} seconds",
            retriable=True,
            original_error=original_error,
        )
        self.timeout_seconds = timeout_seconds


class AINetworkError(AIClientError):
    """The network is unreachable; retriable."""

    code = ErrorCode.OFFLINE

    def __init__(
        self,
        message: str = "Cannot reach the AI service. Check your internet connection.",
        original_error: Exception | None = None,
    ) -> None:
        super().__init__(message, retriable=True, original_error=original_error)


class TokenLimitExceededError(AIClientError):
    """Input or output exceeded the model's token limit. Not retriable."""

    code = ErrorCode.INVALID_INPUT

    def __init__(
        self,
        message: str = "Token limit exceeded. Please reduce input size.",
        original_error: Exception | None = None,
    ) -> None:
        super().__init__(message, retriable=False, original_error=original_error)


class ModelNotAvailableError(AIClientError):
    """Configured model does not exist. Not retriable.

    Attributes:
        model_name: The model that was requested.
    """

    def __init__(
        self,
        model_name: str,
        message: str | None = None,
        original_error: Exception | None = None,
    ) -> None:
        super().__init__(
            message or f"Model '{model_name}' not found. Check model name in configuration.",
            retriable=False,
            original_error=original_error,
        )
        self.model_name = model_name


class ContentBlockedError(AIClientError):
    """Content was blocked by safety filters."""

    code = ErrorCode.CONTENT_BLOCKED

    def __init__(
        self,
        message: str = "Content blocked by safety filters.",
        blocked_reason: str | None = None,
        original_error: Exception | None = None,
    ) -> None:
        super().__init__(message, retriable=False, original_error=original_error)
        self.blocked_reason = blocked_reason


def classify_error(error: BaseException) -> ErrorInfo:
    """Convert any exception raised around a provider call to an ErrorInfo.

    The message is always one of the fixed user-facing messages, never the
    exception text.
    """
    if isinstance(error, AIClientError):
        code = error.code
        retriable = error.retriable
    elif isinstance(error, APIKeyNotFoundError):
        code, retriable = ErrorCode.MISSING_CREDENTIAL, False
    elif isinstance(error, TimeoutError):
        code, retriable = ErrorCode.TIMEOUT, True
    elif isinstance(error, ConnectionError):
        code, retriable = ErrorCode.OFFLINE, True
    else:
        code, retriable = ErrorCode.UNKNOWN, False
    return ErrorInfo(code=code, message=USER_MESSAGES[code], retriable=retriable)


# =============================================================================
# Request and Response Models
# =============================================================================


class ChatMessage(BaseModel):
    role: Literal["system", "user", "assistant"]
    content: str


class CompletionRequest(BaseModel):
    """Provider-neutral completion request.

    Attributes:
        model: Model name; the configured default when None.
        messages: Conversation turns. System messages are sent first.
        temperature: Per-call temperature override.
        max_tokens: Per-call output token limit override.
    """

    model: str | None = None
    messages: list[ChatMessage] = Field(..., min_length=1)
    temperature: float | None = Field(None, ge=0.0, le=2.0)
    max_tokens: int | None = Field(None, ge=1)


class AIResponse(BaseModel):
    """Generated text plus metadata.

    Attributes:
        text: The generated content.
        model: Model that produced it.
        prompt_tokens: Input token count, if reported.
        completion_tokens: Output token count, if reported.
        total_tokens: Total token count, if reported.
        finish_reason: Why generation stopped (e.g. "STOP", "MAX_TOKENS").
        latency_ms: Wall time including retries.
    """

    text: str = Field(..., description="The generated content")
    model: str = Field(..., description="Model that generated this response")
    prompt_tokens: int | None = None
    completion_tokens: int | None = None
    total_tokens: int | None = None
    finish_reason: str | None = None
    latency_ms: float | None = None
    raw_response: Any = Field(None, exclude=True)

    def is_truncated(self) -> bool:
        return self.finish_reason in {"MAX_TOKENS", "LENGTH", "RECITATION"}


class CompletionProvider(Protocol):
    """Anything that can answer a :class:`CompletionRequest`."""

    async def complete(self, request: CompletionRequest) -> AIResponse: ...


# =============================================================================
# Main AI Client Class
# =============================================================================


class AIClient:
    """Async Gemini client implementing :class:`CompletionProvider`.

    No network calls are made on construction; the model is created lazily.

    Args:
        config: Application configuration.
        api_key: Explicit key. When None, the configured key sources are used.

    Class Constants:
        MAX_RETRY_DELAY: Cap on a single backoff delay, in seconds.
    """

    MAX_RETRY_DELAY: float = 60.0

    def __init__(self, config: AppConfig, api_key: str | None = None) -> None:
        self._config = config
        self._models: dict[str, Any] = {}
        self._is_configured = False
        self._logger = logging.getLogger(f"{__name__}.AIClient")
        self._logger.addFilter(RedactingFilter())

        if not self._config.ai.is_enabled():
            self._logger.info("AI is disabled in configuration")
            return

        try:
            key = api_key or get_api_key(config).get_secret_value()
        except APIKeyNotFoundError:
            self._logger.warning("No API key configured")
            return

        genai.configure(api_key=key)
        self._is_configured = True
        self._logger.info(f"AI client configured for model {self._config.ai.model_name}")

    def is_available(self) -> bool:
        return self._config.ai.is_enabled() and self._is_configured

    def _ensure_available(self) -> None:
        if not self._config.ai.is_enabled():
            raise AIUnavailableError("disabled")
        if not self._is_configured:
            raise APIKeyMissingError()

    def _get_model(self, model_name: str) -> Any:
        if model_name not in self._models:
            self._models[model_name] = genai.GenerativeModel(
                model_name=model_name,
                safety_settings=self._get_safety_settings(),
            )
        return self._models[model_name]

    def _get_generation_config(self, **overrides: Any) -> GenerationConfig:
        params = {
            "temperature": self._config.ai.temperature,
            "max_output_tokens": self._config.ai.max_output_tokens,
        }
        params.update({k: v for k, v in overrides.items() if v is not None})
        return GenerationConfig(**params)

    @staticmethod
    def _get_safety_settings() -> dict:
        """Safety settings for personal memoir content.

        Memoirs talk about injuries, illness and family conflict, so only
        high-probability harassment and hate content is blocked.
        """
        return {
            HarmCategory.HARM_CATEGORY_HARASSMENT: HarmBlockThreshold.BLOCK_ONLY_HIGH,
            HarmCategory.HARM_CATEGORY_HATE_SPEECH: HarmBlockThreshold.BLOCK_ONLY_HIGH,
            HarmCategory.HARM_CATEGORY_SEXUALLY_EXPLICIT: HarmBlockThreshold.BLOCK_MEDIUM_AND_ABOVE,
            HarmCategory.HARM_CATEGORY_DANGEROUS_CONTENT: HarmBlockThreshold.BLOCK_MEDIUM_AND_ABOVE,
        }

    # =========================================================================
    # Generation
    # =========================================================================

    async def complete(self, request: CompletionRequest) -> AIResponse:
        """Answer a provider-neutral completion request.

        System messages are sent as a leading user turn acknowledged by the
        model, followed by the remaining turns in order.

        Raises:
            AIClientError: On failure after retries.
        """
        system_text = "\n\n".join(m.content for m in request.messages if m.role == "system")
        contents: list[dict[str, Any]] = []
        if system_text:
            contents.append({"role": "user", "parts": [system_text]})
            contents.append({"role": "model", "parts": ["Understood."]})
        for message in request.messages:
            if message.role == "system":
                continue
            role = "model" if message.role == "assistant" else "user"
            contents.append({"role": role, "parts": [message.content]})

        return await self._generate_contents(
            contents,
            model_name=request.model or self._config.ai.model_name,
            temperature=request.temperature,
            max_output_tokens=request.max_tokens,
        )

    async def generate(
        self,
        prompt: str | list[Any],
        system_instruction: str | None = None,
        model: str | None = None,
        **overrides: Any,
    ) -> AIResponse:
        """Generate from a text prompt or a list of multimodal parts.

        Args:
            prompt: A string, or a list of parts (text and inline data dicts).
            system_instruction: Optional instruction sent before the prompt.
            model: Model name override.
            **overrides: Generation parameter overrides (temperature, ...).
        """
        contents: list[dict[str, Any]] = []
        if system_instruction:
            contents.append({"role": "user", "parts": [system_instruction]})
            contents.append({"role": "model", "parts": ["Understood."]})
        parts = prompt if isinstance(prompt, list) else [prompt]
        contents.append({"role": "user", "parts": parts})

        return await self._generate_contents(
            contents, model_name=model or self._config.ai.model_name, **overrides
        )

    async def transcribe_audio(
        self,
        audio: bytes,
        mime_type: str,
        language: str | None = None,
        prompt: str | None = None,
    ) -> AIResponse:
        """Transcribe an audio clip with the transcription model."""
        instruction = prompt or "Transcribe this audio recording verbatim. Return only the transcript."
        if language:
            instruction += f" The speaker's language is {language}."
        return await self.generate(
            [instruction, {"mime_type": mime_type, "data": audio}],
            model=self._config.ai.transcription_model,
            temperature=0.0,
        )

    async def _generate_contents(
        self, contents: list[dict[str, Any]], model_name: str, **overrides: Any
    ) -> AIResponse:
        self._ensure_available()
        start_time = time.perf_counter()

        model_instance = self._get_model(model_name)
        generation_config = self._get_generation_config(**overrides)

        try:
            raw_response = await self._execute_with_retry(
                self._do_generate,
                model=model_instance,
                contents=contents,
                generation_config=generation_config,
            )
        except AIClientError as e:
            self._logger.error(f"Generation failed: {type(e).__name__}", extra={"model": model_name})
            raise

        latency_ms = (time.perf_counter() - start_time) * 1000

        try:
            text = raw_response.text
        except ValueError:
            feedback = getattr(raw_response, "prompt_feedback", None)
            if feedback is not None and feedback.block_reason:
                raise ContentBlockedError(blocked_reason=str(feedback.block_reason))
            text = ""

        prompt_tokens = completion_tokens = total_tokens = None
        usage = getattr(raw_response, "usage_metadata", None)
        if usage:
            prompt_tokens = getattr(usage, "prompt_token_count", None)
            completion_tokens = getattr(usage, "candidates_token_count", None)
            total_tokens = getattr(usage, "total_token_count", None)

        finish_reason = None
        if getattr(raw_response, "candidates", None):
            candidate = raw_response.candidates[0]
            if getattr(candidate, "finish_reason", None):
                finish_reason = str(candidate.finish_reason.name)

        self._logger.info(
            f"Generation successful: {total_tokens or '?'} tokens in {latency_ms:.0f}ms",
            extra={"model": model_name, "tokens": total_tokens, "time_ms": latency_ms},
        )
        return AIResponse(
            text=text,
            model=model_name,
            prompt_tokens=prompt_tokens,
            completion_tokens=completion_tokens,
            total_tokens=total_tokens,
            finish_reason=finish_reason,
            latency_ms=latency_ms,
            raw_response=raw_response,
        )

    async def _do_generate(
        self, model: Any, contents: list, generation_config: GenerationConfig
    ) -> Any:
        return await model.generate_content_async(
            contents=contents,
            generation_config=generation_config,
            safety_settings=self._get_safety_settings(),
            request_options={"timeout": self._config.ai.timeout_seconds},
        )

    async def _execute_with_retry(
        self,
        func: Callable[..., Awaitable[Any]],
        *args: Any,
        max_retries: int | None = None,
        **kwargs: Any,
    ) -> Any:
        """Await ``func``, retrying transient failures.

        Delays grow exponentially from ``retry_base_delay`` with up to one
        second of jitter; a rate-limit hint from the API is honored when longer.

        Raises:
            AIClientError: Mapped error, once retries are exhausted or on a
                non-retriable failure.
        """
        retries = max_retries if max_retries is not None else self._config.ai.max_retries
        base_delay = self._config.ai.retry_base_delay

        for attempt in range(retries + 1):
            try:
                return await func(*args, **kwargs)
            except Exception as e:
                mapped_error = self._map_exception(e)

                if not mapped_error.retriable:
                    raise mapped_error from e
                if attempt >= retries:
                    self._logger.error(
                        f"Max retries ({retries}) exhausted: {type(mapped_error).__name__}"
                    )
                    raise mapped_error from e

                delay = min(base_delay * (2**attempt), self.MAX_RETRY_DELAY)
                total_delay = delay + random.uniform(0, 1)
                if isinstance(mapped_error, AIRateLimitError) and mapped_error.retry_after_seconds:
                    total_delay = max(total_delay, mapped_error.retry_after_seconds)

                self._logger.warning(
                    f"Retry {attempt + 1}/{retries} after {total_delay:.1f}s: "
                    f"{type(mapped_error).__name__}"
                )
                await asyncio.sleep(total_delay)

        raise AIClientError("Unknown error during retry")

    def _map_exception(self, error: Exception) -> AIClientError:
        """Map SDK and network exceptions onto the AIClientError hierarchy."""
        if isinstance(error, AIClientError):
            return error

        error_str = str(error).lower()

        if isinstance(error, google_exceptions.InvalidArgument):
            if "token" in error_str or "length" in error_str:
                return TokenLimitExceededError(original_error=error)
            return AIBadRequestError(original_error=error)
        if isinstance(error, (google_exceptions.PermissionDenied, google_exceptions.Unauthenticated)):
            return AIAuthenticationError(original_error=error)
        if isinstance(error, google_exceptions.ResourceExhausted):
            if "quota" in error_str:
                return AIQuotaExceededError(original_error=error)
            return AIRateLimitError(original_error=error)
        if isinstance(error, google_exceptions.NotFound):
            return ModelNotAvailableError(self._config.ai.model_name, original_error=error)
        if isinstance(error, google_exceptions.DeadlineExceeded):
            return AITimeoutError(self._config.ai.timeout_seconds, original_error=error)
        if isinstance(error, google_exceptions.InternalServerError):
            return AIServerError(status_code=500, original_error=error)
        if isinstance(error, google_exceptions.ServiceUnavailable):
            return AIServerError(status_code=503, original_error=error)

        # TimeoutError subclasses OSError, so it is checked first
        if isinstance(error, TimeoutError):
            return AITimeoutError(self._config.ai.timeout_seconds, original_error=error)
        if isinstance(error, (ConnectionError, OSError)):
            return AINetworkError(original_error=error)

        # Fallback pattern matching on the message
        if "blocked" in error_str or "safety" in error_str:
            return ContentBlockedError(original_error=error)
        if "401" in error_str or "403" in error_str or "unauthorized" in error_str or "api key not valid" in error_str:
            return AIAuthenticationError(original_error=error)
        if "quota" in error_str or "billing" in error_str:
            return AIQuotaExceededError(original_error=error)
        if "429" in error_str or "rate limit" in error_str:
            return AIRateLimitError(original_error=error)
        if "timeout" in error_str or "deadline" in error_str:
            return AITimeoutError(self._config.ai.timeout_seconds, original_error=error)
        if "500" in error_str or "502" in error_str or "503" in error_str:
            return AIServerError(original_error=error)
        if "network" in error_str or "connection" in error_str or "offline" in error_str:
            return AINetworkError(original_error=error)
        if "token" in error_str and ("limit" in error_str or "exceed" in error_str):
            return TokenLimitExceededError(original_error=error)

        return AIClientError(f"AI request failed: {type(error).__name__}", original_error=error)


# =============================================================================
# Module-Level Functions
# =============================================================================


def get_client(config: AppConfig, api_key: str | None = None) -> AIClient:
    """Create a configured client.

    Raises:
        AIUnavailableError: If AI is disabled or no API key is configured.
    """
    client = AIClient(config=config, api_key=api_key)
    if not config.ai.is_enabled():
        raise AIUnavailableError("disabled")
    if not client.is_available():
        raise APIKeyMissingError()
    return client
