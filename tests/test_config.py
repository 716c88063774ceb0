"""Tests for configuration loading and validation."""

import os
import sys

import pytest

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from jarvis_voice.config_loader import ConfigProvider, JarvisConfig, VadConfig, load_config_yaml


class TestVadConfig:
    def test_defaults(self):
        config = VadConfig()
        assert config.engine == "envelope"
        assert config.enter_snr_db == 4.0
        assert config.exit_snr_db == 2.0
        assert config.check_interval_ms == 45

    def test_rejects_exit_above_enter(self):
        with pytest.raises(ValueError):
            VadConfig(enter_snr_db=3.0, exit_snr_db=5.0)

    def test_rejects_min_speech_above_max_utterance(self):
        with pytest.raises(ValueError):
            VadConfig(min_speech_ms=8000, max_utterance_ms=7000)

    def test_rejects_unknown_engine(self):
        with pytest.raises(ValueError):
            VadConfig(engine="magic")

    def test_from_dict_coerces_types(self):
        config = VadConfig.from_dict({"engine": "Hybrid", "enter_snr_db": "6", "hold_ms": "150"})
        assert config.engine == "hybrid"
        assert config.enter_snr_db == 6.0
        assert config.hold_ms == 150

    def test_from_dict_invalid_falls_back(self):
        config = VadConfig.from_dict({"enter_snr_db": 1.0, "exit_snr_db": 3.0})
        assert config == VadConfig()

    def test_from_dict_ignores_unknown_keys(self):
        assert VadConfig.from_dict({"colour": "blue"}) == VadConfig()


class TestJarvisConfig:
    def test_default_values(self):
        config = JarvisConfig()
        assert config.sample_rate == 16000
        assert config.block_size == 320
        assert config.wake_word_model == "hey_jarvis"
        assert config.continuous_conversation is False

    def test_clamps(self):
        config = JarvisConfig(speaking_watchdog_ms=100, endpoint_guard_ms=50000,
                              followup_no_speech_ms=10, reply_timeout_ms=999999)
        assert config.speaking_watchdog_ms == 3000
        assert config.endpoint_guard_ms == 7000
        assert config.followup_no_speech_ms == 1000
        assert config.reply_timeout_ms == 60000

    def test_restart_max_not_below_base(self):
        config = JarvisConfig(restart_base_ms=2000, restart_max_ms=1000)
        assert config.restart_max_ms == 2000

    def test_unknown_chime_preset(self):
        assert JarvisConfig(chime_preset="gong").chime_preset == "ding"

    def test_from_yaml_overrides(self):
        yaml_config = {
            "vad": {"engine": "hybrid"},
            "recording": {"hard_stop_ms": 8000, "no_speech_window_ms": 3000},
            "conversation": {"continuous": "yes", "chime_preset": "beep"},
            "wake_word": {"words": "jarvis, computer"},
            "backend": {"webhook_url": "https://example.invalid/hook"},
            "stt": {"provider": "faster_whisper", "model": "small"},
            "endpointing": {"guard_extra_ms": 500},
        }
        config = JarvisConfig.from_yaml(yaml_config)
        assert config.vad.engine == "hybrid"
        assert config.recording_hard_stop_ms == 8000
        assert config.no_speech_window_ms == 3000
        assert config.continuous_conversation is True
        assert config.chime_preset == "beep"
        assert config.wake_words == ["jarvis", "computer"]
        assert config.webhook_url == "https://example.invalid/hook"
        assert config.stt_provider == "faster_whisper"
        assert config.stt_model == "small"
        assert config.endpoint_guard_extra_ms == 500

    def test_from_yaml_empty(self):
        config = JarvisConfig.from_yaml({})
        assert config.vad == VadConfig()

    def test_from_yaml_none(self):
        config = JarvisConfig.from_yaml(None)
        assert config is not None

    def test_unknown_stt_provider_falls_back(self):
        config = JarvisConfig.from_yaml({"stt": {"provider": "carrier-pigeon"}})
        assert config.stt_provider == "http"

    def test_env_overrides(self, monkeypatch):
        monkeypatch.setenv("JARVIS_WEBHOOK_URL", "https://env.invalid/hook")
        monkeypatch.setenv("JARVIS_CONTINUOUS", "1")
        monkeypatch.setenv("JARVIS_VAD_ENGINE", "external")
        config = JarvisConfig.from_yaml({"backend": {"webhook_url": "https://yaml.invalid"}})
        assert config.webhook_url == "https://env.invalid/hook"
        assert config.continuous_conversation is True
        assert config.vad.engine == "external"

    def test_env_unknown_vad_engine_ignored(self, monkeypatch):
        monkeypatch.setenv("JARVIS_VAD_ENGINE", "magic")
        assert JarvisConfig.from_yaml({}).vad.engine == "envelope"


class TestConfigProvider:
    def test_missing_file(self, tmp_path):
        assert load_config_yaml(str(tmp_path / "nope.yaml")) == {}

    def test_reload_notifies(self, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text("conversation:\n  continuous: false\n", encoding="utf-8")
        provider = ConfigProvider(str(path))
        assert provider.current().continuous_conversation is False

        seen = []
        unsubscribe = provider.subscribe(seen.append)
        path.write_text("conversation:\n  continuous: true\n", encoding="utf-8")
        provider.reload()
        assert provider.current().continuous_conversation is True
        assert len(seen) == 1

        unsubscribe()
        provider.reload()
        assert len(seen) == 1

    def test_snapshot_is_stable(self):
        provider = ConfigProvider(config=JarvisConfig())
        before = provider.current()
        provider.update(JarvisConfig(continuous_conversation=True))
        assert before.continuous_conversation is False
        assert provider.current().continuous_conversation is True

    def test_subscriber_error_does_not_break_reload(self):
        provider = ConfigProvider(config=JarvisConfig())
        seen = []

        def broken(_config):
            raise RuntimeError("boom")

        provider.subscribe(broken)
        provider.subscribe(seen.append)
        provider.update(JarvisConfig())
        assert len(seen) == 1
