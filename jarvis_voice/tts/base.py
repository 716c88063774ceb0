"""Speech synthesis Protocols and the shared buffered-audio cache."""

import hashlib
import time
from threading import Lock
from typing import Any, AsyncIterator, Dict, Optional, Protocol, Tuple


# ── Protocols ───────────────────────────────────────────────────────

class SpeechSynthesizer(Protocol):
    """Remote or local synthesis with a streaming and a buffered path."""

    stream_sample_rate: int

    def stream(self, text: str) -> AsyncIterator[bytes]:
        """Yield raw 16-bit mono PCM at ``stream_sample_rate``.

        Raises:
            SynthesisFailed / NetworkOffline when the stream cannot be opened.
        """
        ...

    async def synthesize(self, text: str) -> bytes:
        """Return a complete encoded audio file (wav, mp3, ...)."""
        ...

    async def close(self) -> None: ...


class NativeSpeech(Protocol):
    """Platform speech engine used as the last resort."""

    async def say(self, text: str) -> None: ...

    def stop(self) -> None: ...


# ── Cache mixin ─────────────────────────────────────────────────────

class SynthesisCacheMixin:
    """In-memory cache of synthesized audio with TTL eviction.

    Short confirmations ("Okay", "Cancelled") repeat a lot; caching the
    encoded payload skips the round trip.
    """

    _cache_size: int = 50
    _cache_ttl: int = 3600

    def _init_cache(self) -> None:
        self._cache: Dict[str, Tuple[bytes, float]] = {}
        self._cache_lock = Lock()

    def _make_cache_key(self, text: str, *parts: Any) -> str:
        key_str = "|".join(str(p) for p in (text, *parts))
        return hashlib.md5(key_str.encode("utf-8")).hexdigest()

    def _get_cached(self, key: str) -> Optional[bytes]:
        with self._cache_lock:
            item = self._cache.get(key)
            if not item:
                return None
            data, saved_at = item
            if time.time() - saved_at > self._cache_ttl:
                del self._cache[key]
                return None
            return data

    def _set_cached(self, key: str, data: bytes) -> None:
        with self._cache_lock:
            if len(self._cache) >= self._cache_size:
                oldest = min(self._cache, key=lambda k: self._cache[k][1])
                del self._cache[oldest]
            self._cache[key] = (data, time.time())

    def clear_cache(self) -> None:
        with self._cache_lock:
            self._cache.clear()
