"""Duplicate-speech guard: do not say the same thing twice in quick succession."""

import re
import time
from typing import Callable, Dict

from jarvis_voice.utils import clamp

MAX_KEY_CHARS = 600


def normalize(text: str) -> str:
    """Reduce text to a comparison key: lowercase, no markdown, no punctuation."""
    t = (text or "").lower()
    t = re.sub(r'```.*?```', ' ', t, flags=re.DOTALL)
    t = re.sub(r'`[^`]*`', ' ', t)
    t = re.sub(r'[*_~#>\[\]()]', ' ', t)
    t = re.sub(r'[^a-z0-9\s]', ' ', t)
    t = re.sub(r'\s+', ' ', t).strip()
    return t[:MAX_KEY_CHARS]


class SpeechGuard:
    """Remembers recently spoken texts and a short global suppression window.

    ``clock`` returns milliseconds; tests inject a fake one.
    """

    def __init__(self, window_ms: int = 5000, clock: Callable[[], float] = None):
        self.window_ms = int(clamp(window_ms, 500, 10000))
        self._clock = clock or (lambda: time.monotonic() * 1000.0)
        self._recent: Dict[str, float] = {}
        self._last_prune = 0.0
        self._suppress_until = 0.0

    def _prune(self, now: float) -> None:
        if now - self._last_prune < self.window_ms:
            return
        self._recent = {k: t for k, t in self._recent.items() if now - t <= self.window_ms}
        self._last_prune = now

    def should_speak(self, text: str) -> bool:
        """True if ``text`` may be spoken now; records it when accepted."""
        now = self._clock()
        if now < self._suppress_until:
            return False
        key = normalize(text)
        if not key:
            return True
        self._prune(now)
        last = self._recent.get(key)
        if last is not None and now - last < self.window_ms:
            return False
        self._recent[key] = now
        return True

    def suppress_for(self, ms: int) -> None:
        """Refuse all speech for ``ms`` (clamped 100-10000)."""
        now = self._clock()
        self._suppress_until = max(self._suppress_until, now + clamp(ms, 100, 10000))

    def is_suppressed(self) -> bool:
        return self._clock() < self._suppress_until

    def reset(self) -> None:
        self._recent.clear()
        self._suppress_until = 0.0
