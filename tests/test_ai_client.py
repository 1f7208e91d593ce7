"""Tests for memoirai.ai.client, the Gemini client.

Tests cover:
- Exception hierarchy and ErrorCode mapping
- Mapping of SDK and network exceptions
- Retry logic with exponential backoff
- Request building for completions and transcription
- Response parsing, including blocked content
- Log redaction

All tests mock the google.generativeai SDK; no real API calls.
"""

from __future__ import annotations

import logging
from unittest.mock import AsyncMock, MagicMock, PropertyMock, patch

import pytest
from google.api_core import exceptions as google_exceptions

from memoirai.ai.client import (
    AIAuthenticationError,
    AIBadRequestError,
    AIClient,
    AIClientError,
    AINetworkError,
    AIQuotaExceededError,
    AIRateLimitError,
    AIServerError,
    AITimeoutError,
    AIUnavailableError,
    APIKeyMissingError,
    ChatMessage,
    CompletionRequest,
    ContentBlockedError,
    ModelNotAvailableError,
    RedactingFilter,
    TokenLimitExceededError,
    classify_error,
    get_client,
)
from memoirai.config import APIKeyNotFoundError
from memoirai.core.result import USER_MESSAGES, ErrorCode

from conftest import run


def _client_with_model(mock_genai, mock_config, side_effect=None, return_value=None):
    model = MagicMock()
    model.generate_content_async = AsyncMock(side_effect=side_effect, return_value=return_value)
    mock_genai.GenerativeModel.return_value = model
    return AIClient(mock_config, api_key="test-key-1234567890"), model


# =============================================================================
# Exception Tests
# =============================================================================


class TestExceptions:
    """Test exception hierarchy."""

    def test_ai_client_error_base(self):
        error = AIClientError("Test error", retriable=True)
        assert str(error) == "Test error"
        assert error.retriable is True
        assert error.original_error is None
        assert error.code == ErrorCode.UNKNOWN

    @pytest.mark.parametrize(
        "reason,code",
        [
            ("disabled", ErrorCode.MISSING_CREDENTIAL),
            ("no_api_key", ErrorCode.MISSING_CREDENTIAL),
            ("offline", ErrorCode.OFFLINE),
            ("service_down", ErrorCode.SERVER_ERROR),
        ],
    )
    def test_unavailable_reason_codes(self, reason, code):
        error = AIUnavailableError(reason)
        assert error.reason == reason
        assert error.code == code
        assert error.retriable is False

    def test_api_key_missing_is_unavailable(self):
        error = APIKeyMissingError()
        assert isinstance(error, AIUnavailableError)
        assert "memoir config set-key" in str(error)

    def test_retriable_flags(self):
        assert AIRateLimitError(retry_after_seconds=30.0).retriable is True
        assert AIServerError(status_code=503).retriable is True
        assert AITimeoutError(timeout_seconds=60).retriable is True
        assert AINetworkError().retriable is True
        assert AIAuthenticationError().retriable is False
        assert AIQuotaExceededError().retriable is False
        assert ContentBlockedError(blocked_reason="SAFETY").retriable is False

    def test_timeout_message_includes_duration(self):
        assert "60 seconds" in str(AITimeoutError(timeout_seconds=60))


class TestClassifyError:
    """Test conversion of exceptions to ErrorInfo."""

    @pytest.mark.parametrize(
        "error,code,retriable",
        [
            (AIRateLimitError(), ErrorCode.RATE_LIMITED, True),
            (AIQuotaExceededError(), ErrorCode.QUOTA_EXCEEDED, False),
            (AIAuthenticationError(), ErrorCode.INVALID_CREDENTIAL, False),
            (AIServerError(), ErrorCode.SERVER_ERROR, True),
            (AITimeoutError(timeout_seconds=5), ErrorCode.TIMEOUT, True),
            (AINetworkError(), ErrorCode.OFFLINE, True),
            (ContentBlockedError(), ErrorCode.CONTENT_BLOCKED, False),
            (APIKeyMissingError(), ErrorCode.MISSING_CREDENTIAL, False),
            (APIKeyNotFoundError("none"), ErrorCode.MISSING_CREDENTIAL, False),
            (TimeoutError(), ErrorCode.TIMEOUT, True),
            (ConnectionError(), ErrorCode.OFFLINE, True),
            (RuntimeError("boom"), ErrorCode.UNKNOWN, False),
        ],
    )
    def test_codes(self, error, code, retriable):
        info = classify_error(error)
        assert info.code == code
        assert info.retriable is retriable

    def test_message_never_leaks_exception_text(self):
        info = classify_error(RuntimeError("secret story text"))
        assert info.message == USER_MESSAGES[ErrorCode.UNKNOWN]
        assert "secret" not in info.message


# =============================================================================
# Client Initialization Tests
# =============================================================================


class TestAIClientInit:
    """Test client construction."""

    @patch("memoirai.ai.client.genai")
    def test_configures_sdk_with_key(self, mock_genai, mock_config):
        client = AIClient(mock_config, api_key="test-key-1234567890")
        mock_genai.configure.assert_called_once_with(api_key="test-key-1234567890")
        assert client.is_available()

    @patch("memoirai.ai.client.genai")
    def test_disabled_makes_no_sdk_calls(self, mock_genai, mock_config):
        mock_config.ai.is_enabled.return_value = False
        client = AIClient(mock_config, api_key="test-key-1234567890")
        mock_genai.configure.assert_not_called()
        assert not client.is_available()

    @patch("memoirai.ai.client.get_api_key", side_effect=APIKeyNotFoundError("none"))
    @patch("memoirai.ai.client.genai")
    def test_missing_key_leaves_client_unavailable(self, mock_genai, _get_key, mock_config):
        client = AIClient(mock_config)
        assert not client.is_available()
        with pytest.raises(APIKeyMissingError):
            run(client.generate("Hello"))

    @patch("memoirai.ai.client.genai")
    def test_get_client_disabled(self, mock_genai, mock_config):
        mock_config.ai.is_enabled.return_value = False
        with pytest.raises(AIUnavailableError) as exc_info:
            get_client(mock_config, api_key="test-key-1234567890")
        assert exc_info.value.reason == "disabled"

    @patch("memoirai.ai.client.get_api_key", side_effect=APIKeyNotFoundError("none"))
    @patch("memoirai.ai.client.genai")
    def test_get_client_without_key(self, mock_genai, _get_key, mock_config):
        with pytest.raises(APIKeyMissingError):
            get_client(mock_config)


# =============================================================================
# Exception Mapping Tests
# =============================================================================


class TestExceptionMapping:
    """Test _map_exception."""

    @pytest.fixture
    def client(self, mock_config):
        with patch("memoirai.ai.client.genai"):
            yield AIClient(mock_config, api_key="test-key-1234567890")

    @pytest.mark.parametrize(
        "error,expected",
        [
            (google_exceptions.InvalidArgument("bad field"), AIBadRequestError),
            (google_exceptions.InvalidArgument("input token count too large"), TokenLimitExceededError),
            (google_exceptions.PermissionDenied("denied"), AIAuthenticationError),
            (google_exceptions.Unauthenticated("who"), AIAuthenticationError),
            (google_exceptions.ResourceExhausted("slow down"), AIRateLimitError),
            (google_exceptions.ResourceExhausted("quota exhausted"), AIQuotaExceededError),
            (google_exceptions.NotFound("no model"), ModelNotAvailableError),
            (google_exceptions.DeadlineExceeded("late"), AITimeoutError),
            (google_exceptions.InternalServerError("oops"), AIServerError),
            (google_exceptions.ServiceUnavailable("down"), AIServerError),
            (TimeoutError(), AITimeoutError),
            (ConnectionResetError(), AINetworkError),
            (OSError("unreachable"), AINetworkError),
        ],
    )
    def test_sdk_and_network_errors(self, client, error, expected):
        mapped = client._map_exception(error)
        assert isinstance(mapped, expected)
        assert mapped.original_error is error

    @pytest.mark.parametrize(
        "message,expected",
        [
            ("HTTP 429 received", AIRateLimitError),
            ("rate limit hit", AIRateLimitError),
            ("billing account disabled", AIQuotaExceededError),
            ("API key not valid", AIAuthenticationError),
            ("request timeout", AITimeoutError),
            ("upstream returned 502", AIServerError),
            ("network unreachable", AINetworkError),
            ("response blocked for safety", ContentBlockedError),
        ],
    )
    def test_message_fallbacks(self, client, message, expected):
        assert isinstance(client._map_exception(RuntimeError(message)), expected)

    def test_unknown_error_is_generic(self, client):
        mapped = client._map_exception(RuntimeError("strange"))
        assert type(mapped) is AIClientError
        assert "RuntimeError" in mapped.message
        assert "strange" not in mapped.message

    def test_client_error_passes_through(self, client):
        error = AIRateLimitError()
        assert client._map_exception(error) is error


# =============================================================================
# Retry Tests
# =============================================================================


@patch("memoirai.ai.client.random.uniform", return_value=0.0)
@patch("memoirai.ai.client.genai")
class TestRetry:
    """Test retry with exponential backoff."""

    def test_transient_failure_then_success(self, mock_genai, _uniform, mock_config, mock_genai_response):
        client, model = _client_with_model(
            mock_genai,
            mock_config,
            side_effect=[google_exceptions.ServiceUnavailable("down"), mock_genai_response],
        )
        response = run(client.generate("Hello"))
        assert response.text == "Generated text"
        assert model.generate_content_async.await_count == 2

    def test_retries_exhausted(self, mock_genai, _uniform, mock_config):
        mock_config.ai.max_retries = 2
        client, model = _client_with_model(
            mock_genai, mock_config, side_effect=google_exceptions.ServiceUnavailable("down")
        )
        with pytest.raises(AIServerError):
            run(client.generate("Hello"))
        assert model.generate_content_async.await_count == 3

    def test_auth_error_not_retried(self, mock_genai, _uniform, mock_config):
        client, model = _client_with_model(
            mock_genai, mock_config, side_effect=google_exceptions.PermissionDenied("denied")
        )
        with pytest.raises(AIAuthenticationError):
            run(client.generate("Hello"))
        assert model.generate_content_async.await_count == 1

    def test_backoff_grows_exponentially(self, mock_genai, _uniform, mock_config, mock_genai_response):
        mock_config.ai.retry_base_delay = 0.001
        client, _ = _client_with_model(
            mock_genai,
            mock_config,
            side_effect=[
                google_exceptions.ServiceUnavailable("down"),
                google_exceptions.ServiceUnavailable("down"),
                mock_genai_response,
            ],
        )
        with patch("memoirai.ai.client.asyncio.sleep", new_callable=AsyncMock) as mock_sleep:
            run(client.generate("Hello"))
        delays = [call.args[0] for call in mock_sleep.await_args_list]
        assert delays == [0.001, 0.002]

    def test_rate_limit_hint_honored(self, mock_genai, _uniform, mock_config, mock_genai_response):
        client, _ = _client_with_model(mock_genai, mock_config)

        async def flaky(**kwargs):
            if flaky.calls == 0:
                flaky.calls += 1
                raise AIRateLimitError(retry_after_seconds=5.0)
            return mock_genai_response

        flaky.calls = 0
        with patch("memoirai.ai.client.asyncio.sleep", new_callable=AsyncMock) as mock_sleep:
            run(client._execute_with_retry(flaky))
        mock_sleep.assert_awaited_once_with(5.0)


# =============================================================================
# Request Building Tests
# =============================================================================


@patch("memoirai.ai.client.genai")
class TestComplete:
    """Test provider-neutral completion."""

    def test_system_message_becomes_leading_turn(self, mock_genai, mock_config, mock_genai_response):
        client, model = _client_with_model(mock_genai, mock_config, return_value=mock_genai_response)
        request = CompletionRequest(
            messages=[
                ChatMessage(role="system", content="Be kind."),
                ChatMessage(role="user", content="Hi"),
                ChatMessage(role="assistant", content="Hello!"),
                ChatMessage(role="user", content="Tell me more"),
            ]
        )
        run(client.complete(request))

        contents = model.generate_content_async.call_args.kwargs["contents"]
        assert contents == [
            {"role": "user", "parts": ["Be kind."]},
            {"role": "model", "parts": ["Understood."]},
            {"role": "user", "parts": ["Hi"]},
            {"role": "model", "parts": ["Hello!"]},
            {"role": "user", "parts": ["Tell me more"]},
        ]

    def test_response_parsed(self, mock_genai, mock_config, mock_genai_response):
        client, _ = _client_with_model(mock_genai, mock_config, return_value=mock_genai_response)
        response = run(client.complete(CompletionRequest(messages=[ChatMessage(role="user", content="Hi")])))

        assert response.text == "Generated text"
        assert response.model == "gemini-1.5-flash"
        assert response.total_tokens == 30
        assert response.finish_reason == "STOP"
        assert not response.is_truncated()
        assert response.latency_ms >= 0

    def test_request_overrides(self, mock_genai, mock_config, mock_genai_response):
        client, model = _client_with_model(mock_genai, mock_config, return_value=mock_genai_response)
        request = CompletionRequest(
            model="gemini-1.5-pro",
            messages=[ChatMessage(role="user", content="Hi")],
            temperature=0.2,
            max_tokens=50,
        )
        response = run(client.complete(request))

        mock_genai.GenerativeModel.assert_called_once()
        assert mock_genai.GenerativeModel.call_args.kwargs["model_name"] == "gemini-1.5-pro"
        config = model.generate_content_async.call_args.kwargs["generation_config"]
        assert config.temperature == 0.2
        assert config.max_output_tokens == 50
        assert response.model == "gemini-1.5-pro"

    def test_timeout_passed_as_request_option(self, mock_genai, mock_config, mock_genai_response):
        client, model = _client_with_model(mock_genai, mock_config, return_value=mock_genai_response)
        run(client.generate("Hi"))
        assert model.generate_content_async.call_args.kwargs["request_options"] == {"timeout": 60}

    def test_blocked_response_raises(self, mock_genai, mock_config):
        response = MagicMock()
        type(response).text = PropertyMock(side_effect=ValueError("no parts"))
        response.prompt_feedback.block_reason = "SAFETY"
        client, _ = _client_with_model(mock_genai, mock_config, return_value=response)

        with pytest.raises(ContentBlockedError) as exc_info:
            run(client.generate("Hi"))
        assert exc_info.value.blocked_reason == "SAFETY"

    def test_model_instances_cached(self, mock_genai, mock_config, mock_genai_response):
        client, _ = _client_with_model(mock_genai, mock_config, return_value=mock_genai_response)
        run(client.generate("one"))
        run(client.generate("two"))
        assert mock_genai.GenerativeModel.call_count == 1

    def test_transcribe_sends_inline_audio(self, mock_genai, mock_config, mock_genai_response):
        client, model = _client_with_model(mock_genai, mock_config, return_value=mock_genai_response)
        run(client.transcribe_audio(b"\x00\x01", "audio/webm", language="en"))

        contents = model.generate_content_async.call_args.kwargs["contents"]
        instruction, audio = contents[-1]["parts"]
        assert "Transcribe" in instruction
        assert "en" in instruction
        assert audio == {"mime_type": "audio/webm", "data": b"\x00\x01"}
        config = model.generate_content_async.call_args.kwargs["generation_config"]
        assert config.temperature == 0.0


# =============================================================================
# Redaction Tests
# =============================================================================


class TestRedactingFilter:
    """Test API key redaction in logs."""

    def test_redacts_key_value(self):
        text = RedactingFilter.redact("api_key=abcdefghijklmnopqrstuvwxyz123")
        assert "abcdefghij" not in text
        assert "[REDACTED]" in text

    def test_redacts_gemini_key(self):
        text = RedactingFilter.redact("using AIzaSyA1234567890abcdefghijklmnopqrstu now")
        assert "AIza" not in text

    def test_short_words_kept(self):
        assert RedactingFilter.redact("Generation successful: 30 tokens") == (
            "Generation successful: 30 tokens"
        )

    def test_filter_rewrites_record_args(self):
        record = logging.LogRecord(
            "test", logging.INFO, __file__, 1, "key %s", ("AIzaSyA1234567890abcdefghijklmnopqrstu",), None
        )
        assert RedactingFilter().filter(record) is True
        assert record.getMessage() == "key [REDACTED]"
