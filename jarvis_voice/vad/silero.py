"""Model-based speech detection with Silero VAD (ONNX via torch.hub)."""

from typing import Optional

import numpy as np

from jarvis_voice.errors import EngineInitFailed
from jarvis_voice.utils import jarvis_log
from jarvis_voice.vad.base import VadEngine, VadMetrics

SUPPORTED_RATES = {16000: 512, 8000: 256}


class SileroVad(VadEngine):
    """Runs Silero on fixed windows with positive/negative thresholds.

    Speech starts on the first window above ``external_threshold`` and ends
    once probabilities stay under ``external_negative_threshold`` for
    ``external_redemption_ms``. Metrics come from the controller's meter.
    """

    name = "external"

    def __init__(self, config, sample_rate: int = 16000, on_speech_start=None,
                 on_speech_end=None, on_metrics=None):
        super().__init__(config, sample_rate, on_speech_start, on_speech_end, on_metrics)
        self._model = None
        self._torch = None
        self._window = SUPPORTED_RATES.get(sample_rate, 512)
        self._buffer = np.zeros(0, dtype=np.float32)
        self._in_speech = False
        self._below_since: Optional[float] = None
        self.last_probability = 0.0

    @property
    def in_speech(self) -> bool:
        return self._in_speech

    def load(self) -> None:
        if self._model is not None:
            return
        if self.sample_rate not in SUPPORTED_RATES:
            raise EngineInitFailed(f"Silero VAD does not support {self.sample_rate} Hz")
        try:
            import torch
            model, _utils = torch.hub.load(
                repo_or_dir='snakers4/silero-vad',
                model='silero_vad',
                force_reload=False,
                onnx=True,
            )
        except Exception as e:
            raise EngineInitFailed(f"Silero VAD not available: {e}") from e
        self._torch = torch
        self._model = model
        jarvis_log("VAD", "Silero VAD loaded (ONNX)")

    def reset(self, now_ms: float = 0.0) -> None:
        self._buffer = np.zeros(0, dtype=np.float32)
        self._in_speech = False
        self._below_since = None
        self.has_detected_speech = False
        if self._model is not None and hasattr(self._model, 'reset_states'):
            self._model.reset_states()

    def _probability(self, window: np.ndarray) -> float:
        with self._torch.no_grad():
            return float(self._model(self._torch.from_numpy(window).float(), self.sample_rate).item())

    def process(self, samples: np.ndarray, now_ms: float) -> Optional[VadMetrics]:
        if self._model is None:
            raise EngineInitFailed("Silero VAD used before load()")
        cfg = self.config
        self._buffer = np.concatenate([self._buffer, np.asarray(samples, dtype=np.float32)])
        window_ms = self._window * 1000.0 / self.sample_rate
        t = now_ms
        while len(self._buffer) >= self._window:
            window, self._buffer = self._buffer[:self._window], self._buffer[self._window:]
            prob = self._probability(window)
            self.last_probability = prob
            if not self._in_speech:
                if prob >= cfg.external_threshold:
                    self._in_speech = True
                    self.has_detected_speech = True
                    self._below_since = None
                    self._emit(self.on_speech_start, "speech start")
            elif prob < cfg.external_negative_threshold:
                if self._below_since is None:
                    self._below_since = t
                elif t - self._below_since >= cfg.external_redemption_ms:
                    self._in_speech = False
                    self._below_since = None
                    self._emit(self.on_speech_end, "speech end")
            else:
                self._below_since = None
            t += window_ms
        return None
