"""Adaptive envelope VAD: noise-floor tracking with SNR hysteresis.

Per analysis tick (at most every ``check_interval_ms`` of audio time):

* level is the RMS of the samples received since the previous tick
* the noise floor follows an EMA whose speed depends on context: fast while
  calibrating, slow between utterances, almost frozen inside speech
* entry needs the SNR above ``enter_snr_db`` and the level above the absolute
  speech floor, held for ``hold_ms`` (held candidate)
* exit needs a silence candidate latched for ``silence_hangover_ms`` after at
  least ``min_speech_ms`` of speech
"""

from typing import List, Optional

import numpy as np

from jarvis_voice.config_loader import VadConfig
from jarvis_voice.utils import jarvis_log
from jarvis_voice.vad.base import VadEngine, VadMetrics, rms_db

NOISE_FLOOR_MIN_DB = -90.0
INITIAL_NOISE_FLOOR_DB = -60.0
INITIAL_PEAK_DB = -90.0

ALPHA_CALIBRATION = 0.3
ALPHA_IDLE = 0.06
ALPHA_IN_SPEECH = 0.01
# In speech the floor only adapts while the SNR is this low
IN_SPEECH_ADAPT_SNR_DB = 4.0
# A max-utterance cutoff waits for a silence younger than this to play out
FRESH_SILENCE_MS = 300.0


def ema(prev: float, value: float, alpha: float) -> float:
    return prev * (1.0 - alpha) + value * alpha


class EnvelopeVad(VadEngine):
    """Time-domain RMS detector with an adaptive noise floor.

    With ``meter_only=True`` it only produces metrics, which is how the
    controller keeps metrics flowing while an external model decides speech.
    """

    name = "envelope"

    def __init__(self, config: VadConfig, sample_rate: int = 16000, on_speech_start=None,
                 on_speech_end=None, on_metrics=None, meter_only: bool = False):
        super().__init__(config, sample_rate, on_speech_start, on_speech_end, on_metrics)
        self.meter_only = meter_only
        self._pending: List[np.ndarray] = []
        self.reset(0.0)

    @property
    def in_speech(self) -> bool:
        return self._in_speech

    @property
    def noise_floor_db(self) -> float:
        return self._noise_floor_db

    def reset(self, now_ms: float = 0.0) -> None:
        self._started_at = now_ms
        self._calibrated_until = now_ms + self.config.calibration_ms
        self._last_check: Optional[float] = None
        self._pending = []
        self._noise_floor_db = INITIAL_NOISE_FLOOR_DB
        self._peak_db = INITIAL_PEAK_DB
        self._in_speech = False
        self._candidate_at: Optional[float] = None
        self._speech_start: Optional[float] = None
        self._silence_start: Optional[float] = None
        self._last_speech_ms = 0.0
        self.has_detected_speech = False
        self.metrics = None

    def _voice_like(self, samples: np.ndarray) -> bool:
        """Extra gate for subclasses; the plain envelope accepts everything."""
        return True

    def _update_noise_floor(self, level_db: float, snr_db: float, now_ms: float) -> None:
        if now_ms < self._calibrated_until:
            alpha = ALPHA_CALIBRATION
        elif not self._in_speech:
            alpha = ALPHA_IDLE
        elif snr_db < IN_SPEECH_ADAPT_SNR_DB:
            alpha = ALPHA_IN_SPEECH
        else:
            return
        self._noise_floor_db = max(NOISE_FLOOR_MIN_DB, ema(self._noise_floor_db, level_db, alpha))

    def _begin_speech(self, now_ms: float, level_db: float) -> None:
        self._in_speech = True
        self.has_detected_speech = True
        self._speech_start = self._candidate_at if self._candidate_at is not None else now_ms
        self._candidate_at = None
        self._peak_db = level_db
        self._silence_start = None
        jarvis_log("VAD", f"Speech start (level {level_db:.1f} dB, floor {self._noise_floor_db:.1f} dB)",
                   level="DEBUG")
        self._emit(self.on_speech_start, "speech start")

    def _end_speech(self, now_ms: float, reason: str) -> None:
        end_at = self._silence_start if self._silence_start is not None else now_ms
        self._last_speech_ms = end_at - self._speech_start
        self._in_speech = False
        self._candidate_at = None
        jarvis_log("VAD", f"Speech end ({reason}, {self._last_speech_ms:.0f} ms)", level="DEBUG")
        self._emit(self.on_speech_end, "speech end")

    def process(self, samples: np.ndarray, now_ms: float) -> Optional[VadMetrics]:
        cfg = self.config
        self._pending.append(np.asarray(samples, dtype=np.float32))
        if self._last_check is not None and now_ms - self._last_check < cfg.check_interval_ms:
            return None
        self._last_check = now_ms
        window = self._pending[0] if len(self._pending) == 1 else np.concatenate(self._pending)
        self._pending = []

        level_db = rms_db(window)
        # Decisions and the reported snapshot both use the floor from before this tick
        floor_db = self._noise_floor_db
        snr_db = level_db - floor_db
        self._update_noise_floor(level_db, snr_db, now_ms)

        cold = (now_ms - self._started_at) < cfg.cold_start_ms
        enter_threshold = cfg.enter_snr_db - (cfg.cold_start_enter_boost_db if cold else 0.0)
        exit_threshold = cfg.exit_snr_db - (cfg.cold_start_exit_boost_db if cold else 0.0)

        if not self.meter_only:
            if not self._in_speech:
                self._track_entry(window, now_ms, level_db, snr_db, enter_threshold)
            else:
                self._track_exit(window, now_ms, level_db, snr_db, exit_threshold)

        silence_ms = now_ms - self._silence_start if self._silence_start is not None else 0.0
        if self._in_speech:
            end_at = self._silence_start if self._silence_start is not None else now_ms
            speech_ms = end_at - self._speech_start
        else:
            speech_ms = self._last_speech_ms

        self.metrics = VadMetrics(
            level_db=level_db,
            noise_floor_db=floor_db,
            snr_db=snr_db,
            speech_peak_db=self._peak_db,
            in_speech=self._in_speech,
            silence_ms=silence_ms,
            speech_ms=speech_ms,
        )
        self._emit(self.on_metrics, "metrics", self.metrics)
        return self.metrics

    def _track_entry(self, window, now_ms, level_db, snr_db, enter_threshold) -> None:
        qualifies = (
            snr_db >= enter_threshold
            and level_db >= self.config.abs_speech_floor_db
            and self._voice_like(window)
        )
        if not qualifies:
            self._candidate_at = None
            return
        if self._candidate_at is None:
            self._candidate_at = now_ms
        if now_ms - self._candidate_at >= self.config.hold_ms:
            self._begin_speech(now_ms, level_db)

    def _track_exit(self, window, now_ms, level_db, snr_db, exit_threshold) -> None:
        cfg = self.config
        self._peak_db = max(level_db, self._peak_db - cfg.peak_decay_db)
        speech_duration = now_ms - self._speech_start

        fresh_silence = self._silence_start is not None and (now_ms - self._silence_start) <= FRESH_SILENCE_MS
        if speech_duration >= cfg.max_utterance_ms and not fresh_silence:
            self._end_speech(now_ms, "max utterance")
            return

        silent = (
            snr_db < exit_threshold
            or (self._peak_db - level_db) >= cfg.relative_drop_db
            or level_db <= cfg.abs_silence_db
            or not self._voice_like(window)
        )
        if not silent:
            self._silence_start = None
            return
        if self._silence_start is None:
            self._silence_start = now_ms
            return
        if speech_duration > cfg.min_speech_ms and (now_ms - self._silence_start) > cfg.silence_hangover_ms:
            self._end_speech(now_ms, "silence")
