"""HTTP transcription client: ``POST {base}/api/stt`` with a WAV upload."""

from typing import Optional

import aiohttp

from jarvis_voice.errors import ErrorKind, TranscriptionFailed, as_voice_error
from jarvis_voice.recording import SpeechSegment
from jarvis_voice.utils import jarvis_log


class HttpTranscriber:
    """Uploads ``segment.wav`` as multipart form data and reads ``{"text": ...}``."""

    def __init__(self, base_url: str, language: Optional[str] = None, timeout: float = 15.0):
        self.base_url = base_url.rstrip("/")
        self.language = language
        self.timeout = timeout
        self._session: Optional[aiohttp.ClientSession] = None

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=self.timeout))
        return self._session

    async def transcribe(self, segment: SpeechSegment) -> str:
        form = aiohttp.FormData()
        form.add_field("file", segment.to_wav_bytes(), filename="segment.wav", content_type="audio/wav")
        if self.language:
            form.add_field("language", self.language)

        try:
            async with self._get_session().post(f"{self.base_url}/api/stt", data=form) as resp:
                if resp.status != 200:
                    body = await resp.text()
                    raise TranscriptionFailed(f"STT error {resp.status}: {body[:200]}")
                data = await resp.json(content_type=None)
        except aiohttp.ClientError as e:
            raise as_voice_error(e, ErrorKind.TRANSCRIPTION_FAILED) from e
        except ValueError as e:
            raise TranscriptionFailed(f"STT returned invalid JSON: {e}") from e

        text = str((data or {}).get("text", "") if isinstance(data, dict) else "").strip()
        jarvis_log("STT", f"Transcribed {segment.duration_ms:.0f} ms -> '{text}'")
        return text

    async def close(self) -> None:
        if self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None
