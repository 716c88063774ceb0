"""Envelope VAD with a spectral voice-likeness gate."""

from typing import Tuple

import numpy as np

from jarvis_voice.vad.envelope import EnvelopeVad

VOICE_BAND_HZ = (300.0, 3400.0)
MIN_FFT_SAMPLES = 64


def spectral_features(samples: np.ndarray, sample_rate: int) -> Tuple[float, float]:
    """Return ``(voice_band_ratio, spectral_centroid_hz)`` of a frame."""
    audio = np.asarray(samples, dtype=np.float64)
    if len(audio) < MIN_FFT_SAMPLES:
        return 0.0, 0.0
    spectrum = np.abs(np.fft.rfft(audio * np.hanning(len(audio)))) ** 2
    freqs = np.fft.rfftfreq(len(audio), d=1.0 / sample_rate)
    total = float(np.sum(spectrum))
    if total <= 0.0:
        return 0.0, 0.0
    band = (freqs >= VOICE_BAND_HZ[0]) & (freqs <= VOICE_BAND_HZ[1])
    ratio = float(np.sum(spectrum[band])) / total
    centroid = float(np.sum(freqs * spectrum)) / total
    return ratio, centroid


class HybridVad(EnvelopeVad):
    """Entry also requires speech-band energy dominance and a plausible centroid.

    Inside speech a non-voice tick counts as a silence candidate, so a long
    fan or keyboard tail does not keep an utterance open.
    """

    name = "hybrid"

    def _voice_like(self, samples: np.ndarray) -> bool:
        cfg = self.config
        ratio, centroid = spectral_features(samples, self.sample_rate)
        return (
            ratio >= cfg.hybrid_min_band_ratio
            and cfg.hybrid_centroid_min_hz <= centroid <= cfg.hybrid_centroid_max_hz
        )
