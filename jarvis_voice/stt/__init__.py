"""Speech-to-text adapters."""

from jarvis_voice.stt.base import Transcriber

__all__ = ["Transcriber"]
