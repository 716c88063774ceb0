"""HTTP speech synthesis client.

Endpoints (relative to ``base_url``):

- ``GET /api/tts/stream?text=...&sample_rate=N``: raw 16-bit mono PCM, chunked
- ``POST /api/tts`` with JSON ``{"text": ...}``: a complete audio file
"""

from typing import AsyncIterator, Optional

import aiohttp

from jarvis_voice.errors import ErrorKind, SynthesisFailed, as_voice_error
from jarvis_voice.tts.base import SynthesisCacheMixin
from jarvis_voice.utils import jarvis_log

STREAM_CHUNK_BYTES = 4096


class HttpSpeechSynthesizer(SynthesisCacheMixin):
    """aiohttp client for a streaming TTS server."""

    def __init__(self, base_url: str, stream_sample_rate: int = 24000, timeout: float = 15.0):
        self.base_url = base_url.rstrip("/")
        self.stream_sample_rate = stream_sample_rate
        self.timeout = timeout
        self._session: Optional[aiohttp.ClientSession] = None
        self._init_cache()

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=None, sock_connect=self.timeout, sock_read=self.timeout),
            )
        return self._session

    def stream_url(self) -> str:
        return f"{self.base_url}/api/tts/stream"

    async def stream(self, text: str) -> AsyncIterator[bytes]:
        session = self._get_session()
        params = {"text": text, "sample_rate": str(self.stream_sample_rate)}
        try:
            async with session.get(self.stream_url(), params=params) as resp:
                if resp.status != 200:
                    body = await resp.text()
                    raise SynthesisFailed(f"TTS stream error {resp.status}: {body[:200]}")
                async for chunk in resp.content.iter_chunked(STREAM_CHUNK_BYTES):
                    yield chunk
        except aiohttp.ClientError as e:
            raise as_voice_error(e, ErrorKind.SYNTHESIS_FAILED) from e

    async def synthesize(self, text: str) -> bytes:
        cache_key = self._make_cache_key(text)
        cached = self._get_cached(cache_key)
        if cached is not None:
            jarvis_log("TTS", f"Cache hit: '{text[:40]}'", level="DEBUG")
            return cached

        session = self._get_session()
        try:
            async with session.post(f"{self.base_url}/api/tts", json={"text": text}) as resp:
                if resp.status != 200:
                    body = await resp.text()
                    raise SynthesisFailed(f"TTS error {resp.status}: {body[:200]}")
                data = await resp.read()
        except aiohttp.ClientError as e:
            raise as_voice_error(e, ErrorKind.SYNTHESIS_FAILED) from e

        if not data:
            raise SynthesisFailed("TTS returned an empty payload")
        self._set_cached(cache_key, data)
        return data

    async def close(self) -> None:
        if self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None
