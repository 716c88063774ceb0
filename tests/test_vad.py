"""Tests for the envelope and hybrid VAD engines on synthetic audio."""

import os
import sys

import numpy as np
import pytest

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from jarvis_voice.config_loader import VadConfig
from jarvis_voice.vad import EnvelopeVad, HybridVad, rms_db, spectral_features

SR = 16000
FRAME_MS = 20
FRAME = SR * FRAME_MS // 1000
rng = np.random.default_rng(1234)


def noise(ms, db):
    n = SR * ms // 1000
    x = rng.standard_normal(n)
    x *= 10 ** (db / 20) / np.sqrt(np.mean(x * x))
    return x.astype(np.float32)


def tone(ms, db, freq=440.0):
    n = SR * ms // 1000
    t = np.arange(n) / SR
    return (np.sqrt(2) * 10 ** (db / 20) * np.sin(2 * np.pi * freq * t)).astype(np.float32)


class Recorder:
    """Feeds audio frame by frame and records callback times."""

    def __init__(self, engine_cls, config):
        self.now = 0.0
        self.events = []
        self.metrics = []
        self.engine = engine_cls(
            config, SR,
            on_speech_start=lambda: self.events.append(("start", self.now)),
            on_speech_end=lambda: self.events.append(("end", self.now)),
            on_metrics=self.metrics.append,
        )

    def feed(self, audio):
        for offset in range(0, len(audio), FRAME):
            self.engine.process(audio[offset:offset + FRAME], self.now)
            self.now += FRAME_MS

    def times(self, kind):
        return [t for k, t in self.events if k == kind]


def test_rms_db():
    assert rms_db(np.zeros(0)) == pytest.approx(-120.0)
    assert rms_db(np.ones(100, dtype=np.float32)) == pytest.approx(0.0, abs=1e-3)
    assert rms_db(noise(100, -30)) == pytest.approx(-30.0, abs=0.1)


def test_tone_burst_timing():
    config = VadConfig(enter_snr_db=6, exit_snr_db=4, hold_ms=120, silence_hangover_ms=700, min_speech_ms=250)
    rec = Recorder(EnvelopeVad, config)
    rec.feed(noise(1500, -60))
    assert rec.engine.noise_floor_db == pytest.approx(-60, abs=1.0)
    onset = rec.now
    rec.feed(tone(2000, -30))
    offset = rec.now
    rec.feed(noise(2000, -65))

    starts, ends = rec.times("start"), rec.times("end")
    assert len(starts) == 1 and len(ends) == 1
    assert 100 <= starts[0] - onset <= 120 + config.check_interval_ms + FRAME_MS
    assert 700 <= ends[0] - offset <= 700 + 2 * config.check_interval_ms
    assert rec.engine.metrics.speech_ms == pytest.approx(2000, abs=config.check_interval_ms)


def test_hysteresis_no_entry_between_thresholds():
    config = VadConfig(enter_snr_db=10, exit_snr_db=4, hold_ms=120)
    rec = Recorder(EnvelopeVad, config)
    rec.feed(noise(1500, -60))
    # ~7 dB above the floor: not enough to enter
    rec.feed(noise(1500, -53))
    assert rec.events == []


def test_hysteresis_no_exit_between_thresholds():
    config = VadConfig(enter_snr_db=10, exit_snr_db=4, relative_drop_db=40, hold_ms=120,
                       silence_hangover_ms=300, min_speech_ms=250, max_utterance_ms=20000)
    rec = Recorder(EnvelopeVad, config)
    rec.feed(noise(1500, -60))
    rec.feed(tone(500, -30))
    assert len(rec.times("start")) == 1

    # Floor is held inside speech; ~7 dB above it stays above the exit threshold
    rec.feed(noise(1500, -48))
    assert rec.times("end") == []

    rec.feed(noise(1500, -65))
    assert len(rec.times("end")) == 1
    assert len(rec.times("start")) == 1


def test_hangover_bridges_short_pause():
    config = VadConfig(enter_snr_db=6, exit_snr_db=4, hold_ms=120, silence_hangover_ms=700, min_speech_ms=250)
    rec = Recorder(EnvelopeVad, config)
    rec.feed(noise(1500, -60))
    rec.feed(tone(600, -30))
    rec.feed(noise(300, -65))
    rec.feed(tone(600, -30))
    rec.feed(noise(1500, -65))
    assert len(rec.times("start")) == 1
    assert len(rec.times("end")) == 1


def test_short_blip_below_hold_never_starts():
    config = VadConfig(hold_ms=120)
    rec = Recorder(EnvelopeVad, config)
    rec.feed(noise(1500, -60))
    rec.feed(tone(60, -30))
    rec.feed(noise(1000, -60))
    assert rec.events == []


def test_events_alternate_starting_with_start():
    config = VadConfig(enter_snr_db=6, exit_snr_db=4, hold_ms=120, silence_hangover_ms=400, min_speech_ms=250)
    rec = Recorder(EnvelopeVad, config)
    rec.feed(noise(1500, -60))
    for burst_ms, gap_ms in ((400, 900), (120, 200), (800, 1200), (300, 150), (1000, 1500)):
        rec.feed(tone(burst_ms, -30))
        rec.feed(noise(gap_ms, -62))
    kinds = [k for k, _t in rec.events]
    assert kinds
    assert kinds[0] == "start"
    for previous, current in zip(kinds, kinds[1:]):
        assert previous != current


def test_reset_inside_speech_emits_no_end():
    rec = Recorder(EnvelopeVad, VadConfig())
    rec.feed(noise(1500, -60))
    rec.feed(tone(500, -30))
    assert rec.engine.in_speech
    rec.engine.reset(rec.now)
    rec.feed(noise(2000, -60))
    assert rec.times("end") == []
    assert not rec.engine.in_speech


def test_max_utterance_cuts_continuous_speech():
    config = VadConfig(hold_ms=120, min_speech_ms=250, max_utterance_ms=1000)
    rec = Recorder(EnvelopeVad, config)
    rec.feed(noise(1500, -60))
    rec.feed(tone(1600, -30))
    starts, ends = rec.times("start"), rec.times("end")
    assert ends
    assert ends[0] - starts[0] >= 1000 - config.hold_ms
    assert ends[0] - starts[0] <= 1000 + config.check_interval_ms + FRAME_MS


def test_metrics_reported_each_tick():
    config = VadConfig()
    rec = Recorder(EnvelopeVad, config)
    rec.feed(noise(1000, -50))
    assert len(rec.metrics) >= 1000 // (config.check_interval_ms + FRAME_MS)
    last = rec.metrics[-1]
    assert set(last.to_dict()) == {
        "level_db", "noise_floor_db", "snr_db", "speech_peak_db", "in_speech", "silence_ms", "speech_ms",
    }


def test_metrics_snapshot_is_self_consistent_while_floor_moves():
    rec = Recorder(EnvelopeVad, VadConfig())
    rec.feed(np.concatenate([noise(400, -70), noise(400, -50), noise(400, -62)]))
    assert rec.metrics
    for metrics in rec.metrics:
        assert metrics.snr_db == pytest.approx(metrics.level_db - metrics.noise_floor_db)


def test_meter_only_never_detects():
    engine = EnvelopeVad(VadConfig(), SR, meter_only=True)
    now = 0.0
    for chunk in (noise(1500, -60), tone(1000, -20)):
        for offset in range(0, len(chunk), FRAME):
            engine.process(chunk[offset:offset + FRAME], now)
            now += FRAME_MS
    assert not engine.in_speech
    assert engine.metrics is not None


def test_noise_floor_never_below_minimum():
    rec = Recorder(EnvelopeVad, VadConfig())
    rec.feed(np.zeros(SR * 2, dtype=np.float32))
    assert rec.engine.noise_floor_db >= -90.0


class TestHybrid:
    def test_spectral_features_of_tone(self):
        ratio, centroid = spectral_features(tone(60, -30, freq=500.0), SR)
        assert ratio > 0.9
        assert 400 < centroid < 700

    def test_spectral_features_of_white_noise(self):
        ratio, _centroid = spectral_features(noise(60, -30), SR)
        assert ratio < 0.5

    def test_rejects_loud_broadband_noise(self):
        rec = Recorder(HybridVad, VadConfig())
        rec.feed(noise(1500, -60))
        rec.feed(noise(1500, -20))
        assert rec.times("start") == []

    def test_envelope_accepts_same_noise(self):
        rec = Recorder(EnvelopeVad, VadConfig())
        rec.feed(noise(1500, -60))
        rec.feed(noise(1500, -20))
        assert rec.times("start")

    def test_accepts_voiced_tone(self):
        rec = Recorder(HybridVad, VadConfig())
        rec.feed(noise(1500, -60))
        rec.feed(tone(800, -30, freq=400.0) + tone(800, -36, freq=1000.0))
        rec.feed(noise(2000, -62))
        assert len(rec.times("start")) == 1
        assert len(rec.times("end")) == 1
