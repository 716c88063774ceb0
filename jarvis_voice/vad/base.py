"""Shared VAD types: metrics snapshot, level helper and the engine base class."""

from dataclasses import dataclass, asdict
from typing import Callable, Optional

import numpy as np

from jarvis_voice.config_loader import VadConfig
from jarvis_voice.utils import jarvis_log

SILENCE_DB = -120.0


@dataclass
class VadMetrics:
    """Snapshot produced on every analysis tick."""
    level_db: float
    noise_floor_db: float
    snr_db: float
    speech_peak_db: float
    in_speech: bool
    silence_ms: float
    speech_ms: float

    def to_dict(self) -> dict:
        return asdict(self)


def rms_db(samples: np.ndarray) -> float:
    """RMS level in dBFS, ``20*log10(rms + 1e-8)``."""
    if samples is None or len(samples) == 0:
        return SILENCE_DB
    audio = np.asarray(samples, dtype=np.float64)
    rms = float(np.sqrt(np.mean(audio * audio)))
    return 20.0 * np.log10(rms + 1e-8)


class VadEngine:
    """Base class for speech detectors.

    Engines are pure: they are fed ``(samples, now_ms)`` and report through
    callbacks. Callback exceptions are logged, never propagated into the
    audio path.
    """

    name = "base"

    def __init__(
        self,
        config: VadConfig,
        sample_rate: int = 16000,
        on_speech_start: Optional[Callable[[], None]] = None,
        on_speech_end: Optional[Callable[[], None]] = None,
        on_metrics: Optional[Callable[[VadMetrics], None]] = None,
    ):
        self.config = config
        self.sample_rate = sample_rate
        self.on_speech_start = on_speech_start
        self.on_speech_end = on_speech_end
        self.on_metrics = on_metrics
        self.metrics: Optional[VadMetrics] = None
        self.has_detected_speech = False

    @property
    def in_speech(self) -> bool:
        raise NotImplementedError

    def load(self) -> None:
        """Prepare models; raises EngineInitFailed when unavailable."""

    def reset(self, now_ms: float = 0.0) -> None:
        raise NotImplementedError

    def process(self, samples: np.ndarray, now_ms: float) -> Optional[VadMetrics]:
        raise NotImplementedError

    def _emit(self, callback, label: str, *args) -> None:
        if callback is None:
            return
        try:
            callback(*args)
        except Exception as e:
            jarvis_log("VAD", f"{label} callback error: {e}", level="ERROR")
