"""Error taxonomy for the voice pipeline.

Every error that reaches a caller or the event bus is a :class:`VoiceError`
carrying a stable ``kind``, a human readable message and an opaque
``error_id`` that ties log lines to the published event.
"""

import asyncio
import uuid
from enum import Enum
from typing import Any, Dict, Optional

import aiohttp


class ErrorKind(Enum):
    MIC_PERMISSION_DENIED = "mic_permission_denied"
    CAPTURE_FAILED = "capture_failed"
    TRANSCRIPTION_FAILED = "transcription_failed"
    DISPATCH_FAILED = "dispatch_failed"
    SYNTHESIS_FAILED = "synthesis_failed"
    PLAYBACK_FAILED = "playback_failed"
    NETWORK_OFFLINE = "network_offline"
    ENGINE_INIT_FAILED = "engine_init_failed"
    UNKNOWN = "unknown"


class VoiceError(Exception):
    """Base error with kind, message and correlation id."""

    kind: ErrorKind = ErrorKind.UNKNOWN

    def __init__(
        self,
        message: str,
        kind: Optional[ErrorKind] = None,
        error_id: Optional[str] = None,
        detail: Optional[Any] = None,
    ):
        super().__init__(message)
        if kind is not None:
            self.kind = kind
        self.message = message
        self.error_id = error_id or uuid.uuid4().hex[:12]
        self.detail = detail

    @property
    def retryable(self) -> bool:
        """Transient errors are recovered through backoff, the rest surface at once."""
        return self.kind not in (ErrorKind.MIC_PERMISSION_DENIED, ErrorKind.ENGINE_INIT_FAILED)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind.value,
            "message": self.message,
            "error_id": self.error_id,
        }

    def __repr__(self):
        return f"{type(self).__name__}(kind={self.kind.value}, id={self.error_id}, message={self.message!r})"


class MicPermissionDenied(VoiceError):
    kind = ErrorKind.MIC_PERMISSION_DENIED


class CaptureFailed(VoiceError):
    kind = ErrorKind.CAPTURE_FAILED


class TranscriptionFailed(VoiceError):
    kind = ErrorKind.TRANSCRIPTION_FAILED


class DispatchFailed(VoiceError):
    kind = ErrorKind.DISPATCH_FAILED


class SynthesisFailed(VoiceError):
    kind = ErrorKind.SYNTHESIS_FAILED


class PlaybackFailed(VoiceError):
    kind = ErrorKind.PLAYBACK_FAILED


class NetworkOffline(VoiceError):
    kind = ErrorKind.NETWORK_OFFLINE


class EngineInitFailed(VoiceError):
    kind = ErrorKind.ENGINE_INIT_FAILED


_KIND_CLASSES = {
    cls.kind: cls
    for cls in (
        MicPermissionDenied, CaptureFailed, TranscriptionFailed, DispatchFailed,
        SynthesisFailed, PlaybackFailed, NetworkOffline, EngineInitFailed,
    )
}


def as_voice_error(exc: BaseException, default_kind: ErrorKind = ErrorKind.UNKNOWN) -> VoiceError:
    """Wrap any exception into the taxonomy, keeping VoiceErrors unchanged."""
    if isinstance(exc, VoiceError):
        return exc

    kind = default_kind
    if isinstance(exc, (aiohttp.ClientConnectionError, ConnectionError, asyncio.TimeoutError)):
        kind = ErrorKind.NETWORK_OFFLINE

    cls = _KIND_CLASSES.get(kind, VoiceError)
    message = str(exc) or type(exc).__name__
    return cls(message, kind=kind, detail=repr(exc))
