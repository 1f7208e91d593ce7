"""Audio transcription with classified failures.

Recorded audio is validated locally before any provider call: an empty clip
means no speech, only a few container formats are accepted, and clips are
capped at 25MB. Provider failures are classified with the same error codes as
chat failures; a provider reporting that it heard nothing becomes ``no_speech``.

Recorder failures (microphone permission, missing device) happen before a
payload exists and are classified with :func:`classify_capture_error`.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Protocol

from memoirai.ai.client import AIResponse, classify_error
from memoirai.core.result import ErrorCode, ErrorInfo, Result

logger = logging.getLogger(__name__)

MAX_PAYLOAD_BYTES = 25 * 1024 * 1024
SUPPORTED_FORMATS = frozenset({"audio/webm", "audio/mp4", "audio/wav", "audio/mpeg"})
DEFAULT_LANGUAGE = "en"

# File suffixes accepted by AudioPayload.from_file
SUFFIX_MIME_TYPES = {
    ".webm": "audio/webm",
    ".mp4": "audio/mp4",
    ".m4a": "audio/mp4",
    ".wav": "audio/wav",
    ".mp3": "audio/mpeg",
    ".mpeg": "audio/mpeg",
}

_NO_SPEECH_MARKERS = ("no speech", "[no speech]", "[silence]", "inaudible")
_NO_DEVICE_NAMES = {"NotFoundError", "DevicesNotFoundError", "NoDeviceError"}


class TranscriptionProvider(Protocol):
    async def transcribe_audio(
        self,
        audio: bytes,
        mime_type: str,
        language: str | None = None,
        prompt: str | None = None,
    ) -> AIResponse: ...


@dataclass(frozen=True)
class AudioPayload:
    """Recorded audio bytes and their MIME type."""

    data: bytes
    mime_type: str

    @property
    def size(self) -> int:
        return len(self.data)

    @property
    def base_mime_type(self) -> str:
        """MIME type without parameters ("audio/webm;codecs=opus" -> "audio/webm")."""
        return self.mime_type.split(";", 1)[0].strip().lower()

    @classmethod
    def from_file(cls, path: Path) -> "AudioPayload":
        """Read an audio file, guessing the MIME type from its suffix.

        Unknown suffixes get ``application/octet-stream``, which validation rejects.
        """
        mime_type = SUFFIX_MIME_TYPES.get(path.suffix.lower(), "application/octet-stream")
        return cls(data=path.read_bytes(), mime_type=mime_type)


@dataclass(frozen=True)
class TranscriptionOptions:
    language: str = DEFAULT_LANGUAGE
    prompt: str | None = None


@dataclass(frozen=True)
class TranscriptionResult:
    text: str
    language: str
    # The provider does not report a score
    confidence: float = 1.0


@dataclass(frozen=True)
class TranscriptionProgress:
    status: str
    progress: int


class TranscriptionService:
    """Validates audio and transcribes it through a provider.

    Args:
        provider: Anything with an async ``transcribe_audio`` (normally an AIClient).
        max_payload_bytes: Size cap for a single clip.
    """

    def __init__(
        self,
        provider: TranscriptionProvider,
        max_payload_bytes: int = MAX_PAYLOAD_BYTES,
    ) -> None:
        self._provider = provider
        self._max_payload_bytes = max_payload_bytes
        self._logger = logging.getLogger(f"{__name__}.TranscriptionService")

    def validate(self, audio: AudioPayload | None) -> ErrorCode | None:
        """Return the error code for an unusable payload, or None when it is valid."""
        if audio is None or audio.size == 0:
            return ErrorCode.NO_SPEECH
        if audio.base_mime_type not in SUPPORTED_FORMATS:
            return ErrorCode.UNSUPPORTED_FORMAT
        if audio.size > self._max_payload_bytes:
            return ErrorCode.OVERSIZE_PAYLOAD
        return None

    async def transcribe(
        self,
        audio: AudioPayload | None,
        options: TranscriptionOptions | None = None,
        on_progress: Callable[[TranscriptionProgress], None] | None = None,
    ) -> Result[TranscriptionResult]:
        """Transcribe one clip.

        Returns:
            The transcript, or a failure with one of no_speech,
            unsupported_format, oversize_payload or a provider error code.
        """
        options = options or TranscriptionOptions()

        invalid = self.validate(audio)
        if invalid is not None:
            self._logger.info(f"Rejected audio payload: {invalid.value}")
            return Result.failure(invalid)

        if on_progress:
            on_progress(TranscriptionProgress(status="processing", progress=0))

        try:
            response = await self._provider.transcribe_audio(
                audio.data,
                audio.base_mime_type,
                language=options.language,
                prompt=options.prompt,
            )
        except Exception as e:
            error = self._classify_provider_error(e)
            self._logger.warning(f"Transcription failed ({error.code.value}): {type(e).__name__}")
            return Result.failure(error)

        text = response.text.strip()
        if not text or text.lower() in _NO_SPEECH_MARKERS:
            return Result.failure(ErrorCode.NO_SPEECH)

        if on_progress:
            on_progress(TranscriptionProgress(status="completed", progress=100))
        self._logger.info(f"Transcribed {audio.size} bytes into {len(text)} chars")
        return Result.success(TranscriptionResult(text=text, language=options.language))

    @staticmethod
    def _classify_provider_error(error: Exception) -> ErrorInfo:
        if "no speech" in str(error).lower():
            return ErrorInfo.from_code(ErrorCode.NO_SPEECH)
        return classify_error(error)


def classify_capture_error(error: BaseException) -> ErrorInfo:
    """Classify a failure raised while recording audio.

    PermissionError means the microphone was refused; a missing device is
    recognized by exception name or message.
    """
    if isinstance(error, PermissionError):
        return ErrorInfo.from_code(ErrorCode.PERMISSION_DENIED)
    message = str(error).lower()
    if (
        type(error).__name__ in _NO_DEVICE_NAMES
        or "no device" in message
        or "device not found" in message
        or "no microphone" in message
    ):
        return ErrorInfo.from_code(ErrorCode.NO_DEVICE)
    if "permission" in message or "not allowed" in message:
        return ErrorInfo.from_code(ErrorCode.PERMISSION_DENIED)
    return ErrorInfo.from_code(ErrorCode.UNKNOWN)
