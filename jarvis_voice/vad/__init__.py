"""Voice activity detection engines and their controller."""

from jarvis_voice.vad.base import VadEngine, VadMetrics, rms_db
from jarvis_voice.vad.envelope import EnvelopeVad
from jarvis_voice.vad.hybrid import HybridVad, spectral_features
from jarvis_voice.vad.silero import SileroVad
from jarvis_voice.vad.controller import VADController

__all__ = [
    "VadEngine",
    "VadMetrics",
    "rms_db",
    "EnvelopeVad",
    "HybridVad",
    "spectral_features",
    "SileroVad",
    "VADController",
]
