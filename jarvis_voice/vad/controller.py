"""VAD controller: engine selection, fallback and the audio clock."""

from typing import Callable, Optional

import numpy as np

from jarvis_voice.audio_capture import AudioSource
from jarvis_voice.config_loader import VadConfig
from jarvis_voice.errors import EngineInitFailed
from jarvis_voice.utils import jarvis_log
from jarvis_voice.vad.base import VadEngine, VadMetrics
from jarvis_voice.vad.envelope import EnvelopeVad
from jarvis_voice.vad.hybrid import HybridVad
from jarvis_voice.vad.silero import SileroVad

LOCAL_ENGINES = {
    "envelope": EnvelopeVad,
    "hybrid": HybridVad,
}


class VADController:
    """Attaches one speech detector to an audio source.

    Time is the audio clock (samples received / sample rate), so detection is
    reproducible from recorded input. Starts and ends reach the callbacks
    strictly alternating, beginning with a start.
    """

    def __init__(
        self,
        config: VadConfig,
        sample_rate: int = 16000,
        on_speech_start: Optional[Callable[[], None]] = None,
        on_speech_end: Optional[Callable[[], None]] = None,
        on_metrics: Optional[Callable[[VadMetrics], None]] = None,
        external_factory: Optional[Callable[..., VadEngine]] = None,
    ):
        self.config = config
        self.sample_rate = sample_rate
        self.on_speech_start = on_speech_start
        self.on_speech_end = on_speech_end
        self.on_metrics = on_metrics
        self.external_factory = external_factory or SileroVad

        self._source: Optional[AudioSource] = None
        self._engine: Optional[VadEngine] = None
        self._meter: Optional[EnvelopeVad] = None
        self._clock_ms = 0.0
        self._in_speech = False
        self._segment_started_at = 0.0
        self.has_detected_speech = False

    @property
    def engine_name(self) -> Optional[str]:
        return self._engine.name if self._engine is not None else None

    @property
    def in_speech(self) -> bool:
        return self._in_speech

    @property
    def clock_ms(self) -> float:
        return self._clock_ms

    @property
    def metrics(self) -> Optional[VadMetrics]:
        engine = self._meter or self._engine
        return engine.metrics if engine is not None else None

    def start(self, source: AudioSource) -> None:
        """Attach to ``source``; an external engine that fails to load falls back to envelope."""
        if self._source is not None:
            self.stop()
        self._clock_ms = 0.0
        self._in_speech = False
        self.has_detected_speech = False
        self._engine = None
        self._meter = None

        if self.config.engine == "external":
            self._start_external()
        if self._engine is None:
            engine_cls = LOCAL_ENGINES.get(self.config.engine, EnvelopeVad)
            self._engine = engine_cls(
                self.config,
                self.sample_rate,
                on_speech_start=self._handle_start,
                on_speech_end=self._handle_end,
                on_metrics=self._handle_metrics,
            )
            self._engine.reset(0.0)

        self._source = source
        source.add_listener(self.feed)
        jarvis_log("VAD", f"Started ({self._engine.name} engine)", level="DEBUG")

    def _start_external(self) -> None:
        try:
            engine = self.external_factory(
                self.config,
                self.sample_rate,
                on_speech_start=self._handle_external_start,
                on_speech_end=self._handle_external_end,
            )
            engine.load()
            engine.reset(0.0)
        except Exception as e:
            jarvis_log("VAD", f"External VAD unavailable, using envelope: {e}", level="WARNING")
            return
        self._engine = engine
        self._meter = EnvelopeVad(self.config, self.sample_rate, on_metrics=self._handle_metrics,
                                  meter_only=True)

    def _fall_back(self, error: Exception) -> None:
        jarvis_log("VAD", f"{self._engine.name} engine failed ({error}), switching to envelope", level="WARNING")
        self._meter = None
        self._engine = EnvelopeVad(
            self.config,
            self.sample_rate,
            on_speech_start=self._handle_start,
            on_speech_end=self._handle_end,
            on_metrics=self._handle_metrics,
        )
        self._engine.reset(self._clock_ms)

    def stop(self) -> None:
        if self._source is not None:
            self._source.remove_listener(self.feed)
        self._source = None
        self._engine = None
        self._meter = None
        self._in_speech = False

    def feed(self, samples: np.ndarray) -> None:
        """Frame listener; also usable directly for offline analysis."""
        engine = self._engine
        if engine is None:
            return
        now_ms = self._clock_ms
        self._clock_ms += len(samples) * 1000.0 / self.sample_rate
        if self._meter is not None:
            self._meter.process(samples, now_ms)
        try:
            engine.process(samples, now_ms)
        except (EngineInitFailed, RuntimeError, ValueError) as e:
            self._fall_back(e)

    def _handle_start(self) -> None:
        if self._in_speech:
            return
        self._in_speech = True
        self.has_detected_speech = True
        self._segment_started_at = self._clock_ms
        if self.on_speech_start is not None:
            self.on_speech_start()

    def _handle_end(self) -> None:
        if not self._in_speech:
            return
        self._in_speech = False
        if self.on_speech_end is not None:
            self.on_speech_end()

    def _handle_external_start(self) -> None:
        self._handle_start()

    def _handle_external_end(self) -> None:
        since_start = self._clock_ms - self._segment_started_at
        cfg = self.config
        if since_start < cfg.external_guard_ms or since_start < cfg.external_min_speech_ms:
            jarvis_log("VAD", f"Ignoring early speech end ({since_start:.0f} ms)", level="DEBUG")
            return
        self._handle_end()

    def _handle_metrics(self, metrics: VadMetrics) -> None:
        if self.on_metrics is None:
            return
        try:
            self.on_metrics(metrics)
        except Exception as e:
            jarvis_log("VAD", f"Metrics handler error: {e}", level="ERROR")
