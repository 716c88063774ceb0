"""Local transcription with faster-whisper, run in the default executor."""

import asyncio
from typing import Optional

from faster_whisper import WhisperModel

from jarvis_voice.errors import EngineInitFailed, TranscriptionFailed
from jarvis_voice.recording import SpeechSegment
from jarvis_voice.utils import jarvis_log

NO_SPEECH_THRESHOLD = 0.85
MIN_AVG_LOGPROB = -1.0


class FasterWhisperTranscriber:
    """Whisper transcription with hallucination filtering."""

    def __init__(self, model_name: str = "base", device: str = "cpu", compute_type: str = "int8",
                 language: Optional[str] = "en", sample_rate: int = 16000):
        self.model_name = model_name
        self.device = device
        self.compute_type = compute_type
        self.language = language
        self.sample_rate = sample_rate
        self.model: Optional[WhisperModel] = None

    def load_model(self):
        """Loads the Whisper model."""
        if self.model is not None:
            return
        jarvis_log("WHISPER", f"Loading model: {self.model_name} (device={self.device}, "
                              f"compute_type={self.compute_type})")
        try:
            self.model = WhisperModel(self.model_name, device=self.device, compute_type=self.compute_type)
        except (RuntimeError, ValueError, OSError) as e:
            raise EngineInitFailed(f"Failed to load Whisper model: {e}") from e
        jarvis_log("WHISPER", "Model loaded successfully")

    def _transcribe_blocking(self, segment: SpeechSegment) -> str:
        self.load_model()
        audio = segment.samples
        duration = segment.duration_ms / 1000.0
        segments, info = self.model.transcribe(
            audio,
            language=self.language,
            task="transcribe",
            beam_size=5,
            condition_on_previous_text=False,
            no_speech_threshold=NO_SPEECH_THRESHOLD,
        )
        jarvis_log("WHISPER", f"Detected language: {info.language}, probability: {info.language_probability:.2f}",
                   level="DEBUG")

        text_parts = []
        for part in segments:
            no_speech = getattr(part, 'no_speech_prob', 0.0)
            avg_logprob = getattr(part, 'avg_logprob', 0.0)
            if no_speech > NO_SPEECH_THRESHOLD:
                jarvis_log("WHISPER", f"Segment skipped (no_speech={no_speech:.2f})", level="WARNING")
                continue
            if avg_logprob < MIN_AVG_LOGPROB:
                jarvis_log("WHISPER", f"Segment skipped: avg_logprob={avg_logprob:.2f} (likely hallucination)",
                           level="WARNING")
                continue
            # Timestamps far beyond the audio are hallucinated
            if part.end > duration * 2.0 + 1.0:
                jarvis_log("WHISPER", f"Segment skipped: end={part.end:.2f}s >> audio={duration:.2f}s",
                           level="WARNING")
                continue
            text_parts.append(part.text)
        return " ".join(text_parts).strip()

    async def transcribe(self, segment: SpeechSegment) -> str:
        if segment.sample_rate != self.sample_rate:
            raise TranscriptionFailed(
                f"Whisper expects {self.sample_rate} Hz audio, got {segment.sample_rate} Hz")
        loop = asyncio.get_running_loop()
        try:
            text = await loop.run_in_executor(None, self._transcribe_blocking, segment)
        except EngineInitFailed:
            raise
        except (RuntimeError, ValueError) as e:
            raise TranscriptionFailed(f"Whisper transcription failed: {e}") from e
        jarvis_log("WHISPER", f"Transcribed {segment.duration_ms:.0f} ms -> '{text}'")
        return text

    async def close(self) -> None:
        self.model = None
