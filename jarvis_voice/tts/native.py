"""Offline platform speech through pyttsx3.

pyttsx3 engines are bound to the thread that created them, so all calls go
through a single worker thread.
"""

import asyncio
from concurrent.futures import ThreadPoolExecutor
from typing import Optional

import pyttsx3

from jarvis_voice.errors import PlaybackFailed
from jarvis_voice.utils import jarvis_log


class Pyttsx3Speech:
    """NativeSpeech implementation backed by pyttsx3."""

    def __init__(self, rate: Optional[int] = None):
        self.rate = rate
        self._engine = None
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="jarvis-native-tts")

    def _ensure_engine(self):
        if self._engine is None:
            self._engine = pyttsx3.init()
            if self.rate:
                self._engine.setProperty('rate', int(self.rate))
        return self._engine

    def _say_blocking(self, text: str) -> None:
        engine = self._ensure_engine()
        engine.say(text)
        engine.runAndWait()

    async def say(self, text: str) -> None:
        loop = asyncio.get_running_loop()
        try:
            await loop.run_in_executor(self._executor, self._say_blocking, text)
        except (RuntimeError, OSError) as e:
            raise PlaybackFailed(f"Native speech failed: {e}") from e
        jarvis_log("TTS", f"Native speech done: '{text[:40]}'", level="DEBUG")

    def stop(self) -> None:
        if self._engine is not None:
            try:
                self._engine.stop()
            except RuntimeError as e:
                jarvis_log("TTS", f"Native speech stop failed: {e}", level="WARNING")

    def shutdown(self) -> None:
        self._executor.shutdown(wait=False)
