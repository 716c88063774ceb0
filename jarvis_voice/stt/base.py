"""Transcriber Protocol."""

from typing import Protocol

from jarvis_voice.recording import SpeechSegment


class Transcriber(Protocol):
    """Turns a finalized segment into text."""

    async def transcribe(self, segment: SpeechSegment) -> str:
        """Return the recognized text ("" when nothing usable was heard).

        Raises:
            TranscriptionFailed / NetworkOffline on failure.
        """
        ...

    async def close(self) -> None: ...
