#!/usr/bin/env python3
"""Configuration loader for Jarvis Voice."""

import os
import threading
from dataclasses import dataclass, field, replace, fields
from typing import Any, Callable, Dict, List, Optional

from jarvis_voice.utils import jarvis_log, clamp


VAD_ENGINES = ("envelope", "hybrid", "external")
CHIME_PRESETS = ("ding", "chime", "beep")
STT_PROVIDERS = ("http", "faster_whisper")

_TRUE_VALUES = ("true", "1", "yes", "on")


def load_config_yaml(config_path: str = "config.yaml") -> dict:
    """Load configuration from a YAML file."""
    import yaml
    if os.path.exists(config_path):
        try:
            with open(config_path, 'r', encoding='utf-8') as f:
                return yaml.safe_load(f) or {}
        except (OSError, yaml.YAMLError) as e:
            jarvis_log("CONFIG", f"Warning: Failed to load {config_path}: {e}", level="WARNING")
    return {}


def _as_bool(raw: Any) -> bool:
    if isinstance(raw, str):
        return raw.strip().lower() in _TRUE_VALUES
    return bool(raw)


def _section(yaml_config: dict, name: str) -> dict:
    value = yaml_config.get(name, {})
    return value if isinstance(value, dict) else {}


@dataclass(frozen=True)
class VadConfig:
    """Voice activity detection tunables, fixed for the lifetime of one session."""

    engine: str = "envelope"
    calibration_ms: int = 1000
    enter_snr_db: float = 4.0
    exit_snr_db: float = 2.0
    relative_drop_db: float = 10.0
    min_speech_ms: int = 450
    silence_hangover_ms: int = 900
    abs_silence_db: float = -55.0
    abs_speech_floor_db: float = -60.0
    hold_ms: int = 120
    check_interval_ms: int = 45
    max_utterance_ms: int = 7000

    # Cold-start sensitivity boost while the noise floor is still settling
    cold_start_ms: int = 1200
    cold_start_enter_boost_db: float = 2.0
    cold_start_exit_boost_db: float = 1.0
    peak_decay_db: float = 0.15

    # Hybrid spectral gate
    hybrid_min_band_ratio: float = 0.5
    hybrid_centroid_min_hz: float = 250.0
    hybrid_centroid_max_hz: float = 4000.0

    # External model (Silero) overrides
    external_guard_ms: int = 600
    external_min_speech_ms: int = 600
    external_threshold: float = 0.45
    external_negative_threshold: float = 0.35
    external_redemption_ms: int = 1500

    def __post_init__(self):
        if self.engine not in VAD_ENGINES:
            raise ValueError(f"unknown VAD engine {self.engine!r}, expected one of {VAD_ENGINES}")
        if self.exit_snr_db > self.enter_snr_db:
            raise ValueError(
                f"exit_snr_db ({self.exit_snr_db}) must not exceed enter_snr_db ({self.enter_snr_db})"
            )
        if self.min_speech_ms >= self.max_utterance_ms:
            raise ValueError(
                f"min_speech_ms ({self.min_speech_ms}) must be below max_utterance_ms ({self.max_utterance_ms})"
            )
        if self.check_interval_ms <= 0:
            raise ValueError("check_interval_ms must be positive")

    @classmethod
    def from_dict(cls, raw: dict) -> "VadConfig":
        """Build from a YAML ``vad`` section; invalid combinations fall back to defaults."""
        default = cls()
        known = {f.name: f for f in fields(cls)}
        values: Dict[str, Any] = {}
        for key, value in (raw or {}).items():
            if key not in known:
                jarvis_log("CONFIG", f"Unknown vad option '{key}' ignored", level="WARNING")
                continue
            current = getattr(default, key)
            try:
                if isinstance(current, bool):
                    values[key] = _as_bool(value)
                elif isinstance(current, int):
                    values[key] = int(value)
                elif isinstance(current, float):
                    values[key] = float(value)
                else:
                    values[key] = str(value).strip().lower()
            except (TypeError, ValueError):
                jarvis_log("CONFIG", f"Invalid vad.{key}={value!r}, keeping {current}", level="WARNING")
        try:
            return replace(default, **values)
        except ValueError as e:
            jarvis_log("CONFIG", f"Invalid vad section ({e}), using defaults", level="WARNING")
            return default


@dataclass
class JarvisConfig:
    """Jarvis service configuration."""

    # Audio
    sample_rate: int = 16000
    block_ms: int = 20
    input_device: Optional[str] = None
    output_device: Optional[str] = None

    vad: VadConfig = field(default_factory=VadConfig)

    # Recording session
    recording_hard_stop_ms: int = 10000
    no_speech_window_ms: int = 4500
    followup_no_speech_ms: int = 7000
    endpoint_guard_ms: int = 2200
    vad_tail_ms: int = 120
    min_segment_ms: int = 450
    min_segment_bytes: int = 800
    min_segment_rms_db: float = -60.0

    # Endpoint recognizer (secondary end-of-speech signal)
    endpointing_enabled: bool = False
    endpoint_watchdog_ms: int = 15000
    endpoint_guard_extra_ms: int = 800

    # Conversation
    continuous_conversation: bool = False
    followup_delay_ms: int = 150
    followup_chime: bool = True
    chime_volume: float = 0.2
    chime_preset: str = "ding"
    chime_path: Optional[str] = None
    speaking_watchdog_ms: int = 15000
    dedupe_window_ms: int = 5000
    reply_echo_suppress_ms: int = 800
    command_echo_suppress_ms: int = 600
    vad_only_rearm_ms: int = 250

    # Wake word
    wake_word_enabled: bool = True
    wake_word_model: str = "hey_jarvis"
    wake_word_threshold: float = 0.5
    wake_words: List[str] = field(default_factory=lambda: ["jarvis", "hey jarvis"])
    wake_word_retry_base_ms: int = 1000
    wake_word_max_attempts: int = 5

    # Reply backend
    webhook_url: str = ""
    callback_url: str = ""
    user_id: str = "anon"
    session_id: str = ""
    source_name: str = "jarvis-voice"
    poll_interval_ms: int = 1200
    reply_timeout_ms: int = 30000
    request_timeout: float = 15.0

    # STT
    stt_provider: str = "http"
    stt_url: str = "http://localhost:8000"
    stt_model: str = "base"
    stt_device: str = "cpu"
    stt_compute_type: str = "int8"
    stt_language: str = "en"

    # TTS
    tts_url: str = "http://localhost:8000"
    tts_stream_sample_rate: int = 24000
    tts_native_fallback: bool = True
    tts_native_rate: Optional[int] = None

    # Recovery
    restart_base_ms: int = 500
    restart_max_ms: int = 30000

    def __post_init__(self):
        self.normalize()

    def normalize(self) -> "JarvisConfig":
        """Clamp tunables into their supported ranges."""
        self.speaking_watchdog_ms = int(clamp(self.speaking_watchdog_ms, 3000, 60000))
        self.endpoint_guard_ms = int(clamp(self.endpoint_guard_ms, 300, 7000))
        self.endpoint_guard_extra_ms = max(0, int(self.endpoint_guard_extra_ms))
        self.followup_no_speech_ms = int(clamp(self.followup_no_speech_ms, 1000, 15000))
        self.reply_timeout_ms = int(clamp(self.reply_timeout_ms, 5000, 60000))
        self.dedupe_window_ms = int(clamp(self.dedupe_window_ms, 500, 10000))
        self.chime_volume = float(clamp(self.chime_volume, 0.0, 1.0))
        self.wake_word_max_attempts = max(1, int(self.wake_word_max_attempts))
        if self.chime_preset not in CHIME_PRESETS:
            jarvis_log("CONFIG", f"Unknown chime preset '{self.chime_preset}', fallback to ding", level="WARNING")
            self.chime_preset = "ding"
        if self.stt_provider not in STT_PROVIDERS:
            jarvis_log("CONFIG", f"Unknown stt.provider='{self.stt_provider}', fallback to http", level="WARNING")
            self.stt_provider = "http"
        if self.restart_max_ms < self.restart_base_ms:
            self.restart_max_ms = self.restart_base_ms
        return self

    @property
    def block_size(self) -> int:
        return max(1, int(self.sample_rate * self.block_ms / 1000))

    @classmethod
    def from_yaml(cls, yaml_config: dict) -> "JarvisConfig":
        """Create config from YAML + env vars."""
        config = cls()
        yaml_config = yaml_config or {}

        audio_cfg = _section(yaml_config, "audio")
        rec_cfg = _section(yaml_config, "recording")
        conv_cfg = _section(yaml_config, "conversation")
        wake_cfg = _section(yaml_config, "wake_word")
        endpoint_cfg = _section(yaml_config, "endpointing")
        backend_cfg = _section(yaml_config, "backend")
        stt_cfg = _section(yaml_config, "stt")
        tts_cfg = _section(yaml_config, "tts")
        recovery_cfg = _section(yaml_config, "recovery")

        config.sample_rate = int(audio_cfg.get("sample_rate", config.sample_rate))
        config.block_ms = int(audio_cfg.get("block_ms", config.block_ms))
        config.input_device = audio_cfg.get("input_device", config.input_device)
        config.output_device = audio_cfg.get("output_device", config.output_device)

        config.vad = VadConfig.from_dict(_section(yaml_config, "vad"))

        config.recording_hard_stop_ms = int(rec_cfg.get("hard_stop_ms", config.recording_hard_stop_ms))
        config.no_speech_window_ms = int(rec_cfg.get("no_speech_window_ms", config.no_speech_window_ms))
        config.followup_no_speech_ms = int(rec_cfg.get("followup_no_speech_ms", config.followup_no_speech_ms))
        config.endpoint_guard_ms = int(rec_cfg.get("endpoint_guard_ms", config.endpoint_guard_ms))
        config.vad_tail_ms = int(rec_cfg.get("vad_tail_ms", config.vad_tail_ms))
        config.min_segment_ms = int(rec_cfg.get("min_segment_ms", config.min_segment_ms))
        config.min_segment_bytes = int(rec_cfg.get("min_segment_bytes", config.min_segment_bytes))
        config.min_segment_rms_db = float(rec_cfg.get("min_segment_rms_db", config.min_segment_rms_db))

        config.endpointing_enabled = _as_bool(endpoint_cfg.get("enabled", config.endpointing_enabled))
        config.endpoint_watchdog_ms = int(endpoint_cfg.get("watchdog_ms", config.endpoint_watchdog_ms))
        config.endpoint_guard_extra_ms = int(endpoint_cfg.get("guard_extra_ms", config.endpoint_guard_extra_ms))

        config.continuous_conversation = _as_bool(conv_cfg.get("continuous", config.continuous_conversation))
        config.followup_delay_ms = int(conv_cfg.get("followup_delay_ms", config.followup_delay_ms))
        config.followup_chime = _as_bool(conv_cfg.get("followup_chime", config.followup_chime))
        config.chime_volume = float(conv_cfg.get("chime_volume", config.chime_volume))
        config.chime_preset = str(conv_cfg.get("chime_preset", config.chime_preset)).strip().lower()
        config.chime_path = conv_cfg.get("chime_path", config.chime_path)
        config.speaking_watchdog_ms = int(conv_cfg.get("speaking_watchdog_ms", config.speaking_watchdog_ms))
        config.dedupe_window_ms = int(conv_cfg.get("dedupe_window_ms", config.dedupe_window_ms))
        config.reply_echo_suppress_ms = int(conv_cfg.get("reply_echo_suppress_ms", config.reply_echo_suppress_ms))
        config.command_echo_suppress_ms = int(
            conv_cfg.get("command_echo_suppress_ms", config.command_echo_suppress_ms)
        )
        config.vad_only_rearm_ms = int(conv_cfg.get("vad_only_rearm_ms", config.vad_only_rearm_ms))

        config.wake_word_enabled = _as_bool(wake_cfg.get("enabled", config.wake_word_enabled))
        config.wake_word_model = str(wake_cfg.get("model", config.wake_word_model)).strip() or "hey_jarvis"
        config.wake_word_threshold = float(wake_cfg.get("threshold", config.wake_word_threshold))
        raw_words = wake_cfg.get("words", config.wake_words)
        if isinstance(raw_words, str):
            raw_words = [w for w in raw_words.split(",")]
        if isinstance(raw_words, list):
            words = [str(w).strip().lower() for w in raw_words if str(w).strip()]
            if words:
                config.wake_words = words
        config.wake_word_retry_base_ms = int(wake_cfg.get("retry_base_ms", config.wake_word_retry_base_ms))
        config.wake_word_max_attempts = int(wake_cfg.get("max_attempts", config.wake_word_max_attempts))

        config.webhook_url = str(backend_cfg.get("webhook_url", config.webhook_url)).strip()
        config.callback_url = str(backend_cfg.get("callback_url", config.callback_url)).strip()
        config.user_id = str(backend_cfg.get("user_id", config.user_id)).strip() or "anon"
        config.session_id = str(backend_cfg.get("session_id", config.session_id)).strip()
        config.source_name = str(backend_cfg.get("source", config.source_name)).strip()
        config.poll_interval_ms = int(backend_cfg.get("poll_interval_ms", config.poll_interval_ms))
        config.reply_timeout_ms = int(backend_cfg.get("reply_timeout_ms", config.reply_timeout_ms))
        config.request_timeout = float(backend_cfg.get("request_timeout", config.request_timeout))

        config.stt_provider = str(stt_cfg.get("provider", config.stt_provider)).strip().lower()
        config.stt_url = str(stt_cfg.get("url", config.stt_url)).strip()
        config.stt_model = stt_cfg.get("model", config.stt_model)
        config.stt_device = stt_cfg.get("device", config.stt_device)
        config.stt_compute_type = stt_cfg.get("compute_type", config.stt_compute_type)
        config.stt_language = stt_cfg.get("language", config.stt_language)

        config.tts_url = str(tts_cfg.get("url", config.tts_url)).strip()
        config.tts_stream_sample_rate = int(tts_cfg.get("stream_sample_rate", config.tts_stream_sample_rate))
        config.tts_native_fallback = _as_bool(tts_cfg.get("native_fallback", config.tts_native_fallback))
        if tts_cfg.get("native_rate"):
            config.tts_native_rate = int(tts_cfg.get("native_rate"))

        config.restart_base_ms = int(recovery_cfg.get("restart_base_ms", config.restart_base_ms))
        config.restart_max_ms = int(recovery_cfg.get("restart_max_ms", config.restart_max_ms))

        # Env var overrides
        if os.getenv("JARVIS_WEBHOOK_URL"):
            config.webhook_url = os.getenv("JARVIS_WEBHOOK_URL").strip()
        if os.getenv("JARVIS_CALLBACK_URL"):
            config.callback_url = os.getenv("JARVIS_CALLBACK_URL").strip()
        if os.getenv("JARVIS_USER_ID"):
            config.user_id = os.getenv("JARVIS_USER_ID").strip()
        if os.getenv("JARVIS_SESSION_ID"):
            config.session_id = os.getenv("JARVIS_SESSION_ID").strip()
        if os.getenv("JARVIS_STT_PROVIDER"):
            config.stt_provider = os.getenv("JARVIS_STT_PROVIDER").strip().lower()
        if os.getenv("JARVIS_STT_URL"):
            config.stt_url = os.getenv("JARVIS_STT_URL").strip()
        if os.getenv("JARVIS_STT_MODEL"):
            config.stt_model = os.getenv("JARVIS_STT_MODEL").strip()
        if os.getenv("JARVIS_STT_LANGUAGE"):
            config.stt_language = os.getenv("JARVIS_STT_LANGUAGE").strip()
        if os.getenv("JARVIS_TTS_URL"):
            config.tts_url = os.getenv("JARVIS_TTS_URL").strip()
        if os.getenv("JARVIS_CONTINUOUS"):
            config.continuous_conversation = _as_bool(os.getenv("JARVIS_CONTINUOUS"))
        if os.getenv("JARVIS_WAKE_WORD_ENABLED"):
            config.wake_word_enabled = _as_bool(os.getenv("JARVIS_WAKE_WORD_ENABLED"))
        if os.getenv("JARVIS_WAKE_WORD_MODEL"):
            config.wake_word_model = os.getenv("JARVIS_WAKE_WORD_MODEL").strip()
        if os.getenv("JARVIS_INPUT_DEVICE"):
            config.input_device = os.getenv("JARVIS_INPUT_DEVICE").strip()
        if os.getenv("JARVIS_OUTPUT_DEVICE"):
            config.output_device = os.getenv("JARVIS_OUTPUT_DEVICE").strip()
        if os.getenv("JARVIS_VAD_ENGINE"):
            engine = os.getenv("JARVIS_VAD_ENGINE").strip().lower()
            if engine in VAD_ENGINES:
                config.vad = replace(config.vad, engine=engine)
            else:
                jarvis_log("CONFIG", f"Unknown JARVIS_VAD_ENGINE='{engine}', keeping {config.vad.engine}",
                           level="WARNING")

        return config.normalize()

    def print_config_banner(self):
        """Print a startup summary with ASCII-safe formatting."""
        stt_label = f"Faster Whisper ({self.stt_model}, {self.stt_device.upper()})" \
            if self.stt_provider == "faster_whisper" else f"HTTP ({self.stt_url})"
        wake_label = f"OpenWakeWord ({self.wake_word_model})" if self.wake_word_enabled else "disabled (VAD only)"

        line = "=" * 58
        print("\n" + line)
        print("JARVIS VOICE SERVICE")
        print(line)
        print(f"STT   : {stt_label}")
        print(f"TTS   : {self.tts_url} (native fallback: {'on' if self.tts_native_fallback else 'off'})")
        print(f"VAD   : {self.vad.engine} (enter {self.vad.enter_snr_db} dB / exit {self.vad.exit_snr_db} dB)")
        print(f"Wake  : {wake_label}")
        print(f"Reply : {self.webhook_url or '(no webhook configured)'}")
        print(f"Mode  : {'continuous conversation' if self.continuous_conversation else 'wake word per turn'}")
        print(line + "\n")


class ConfigProvider:
    """Holds the current configuration snapshot and reloads it on request.

    Consumers take ``current()`` when a session begins; ``reload()`` is an
    explicit call (the service wires it to SIGHUP) that re-reads YAML + env
    and notifies subscribers.
    """

    def __init__(self, config_path: Optional[str] = None, config: Optional[JarvisConfig] = None):
        self.config_path = config_path
        self._lock = threading.Lock()
        self._subscribers: List[Callable[[JarvisConfig], None]] = []
        if config is None:
            config = self._load()
        self._config = config

    def _load(self) -> JarvisConfig:
        raw = load_config_yaml(self.config_path) if self.config_path else {}
        return JarvisConfig.from_yaml(raw)

    def current(self) -> JarvisConfig:
        with self._lock:
            return self._config

    def reload(self) -> JarvisConfig:
        config = self._load()
        with self._lock:
            self._config = config
            subscribers = list(self._subscribers)
        jarvis_log("CONFIG", f"Configuration reloaded from {self.config_path or 'environment'}")
        self._notify(subscribers, config)
        return config

    def update(self, config: JarvisConfig) -> None:
        """Replace the snapshot directly (used by tests and embedding applications)."""
        with self._lock:
            self._config = config
            subscribers = list(self._subscribers)
        self._notify(subscribers, config)

    @staticmethod
    def _notify(subscribers, config: JarvisConfig) -> None:
        for callback in subscribers:
            try:
                callback(config)
            except Exception as e:
                jarvis_log("CONFIG", f"Reload subscriber error: {e}", level="ERROR")

    def subscribe(self, callback: Callable[[JarvisConfig], None]) -> Callable[[], None]:
        with self._lock:
            self._subscribers.append(callback)

        def unsubscribe():
            with self._lock:
                if callback in self._subscribers:
                    self._subscribers.remove(callback)
        return unsubscribe
