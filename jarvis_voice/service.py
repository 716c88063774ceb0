#!/usr/bin/env python3
"""
Jarvis Voice Service.

Wires config, audio capture, STT, reply backend, TTS and platform
capabilities into a ConversationOrchestrator and runs it until SIGINT/SIGTERM.
SIGHUP reloads config.yaml + environment.
"""

import argparse
import asyncio
import os
import signal
import sys
import traceback
from dataclasses import replace
from typing import Optional

from dotenv import load_dotenv

from jarvis_voice import PROJECT_ROOT, __version__
from jarvis_voice.audio_capture import AudioSource, MicrophoneSource, WavFileSource
from jarvis_voice.backend import WebhookReplyBackend
from jarvis_voice.capabilities import resolve_capabilities
from jarvis_voice.commands import PhraseCommandRouter
from jarvis_voice.config_loader import VAD_ENGINES, ConfigProvider, JarvisConfig
from jarvis_voice.errors import EngineInitFailed
from jarvis_voice.event_bus import Event, EventBus, EventType
from jarvis_voice.orchestrator import ConversationOrchestrator
from jarvis_voice.playback import AudioOutputService, SoundDevicePlayer
from jarvis_voice.stt.http import HttpTranscriber
from jarvis_voice.tts.http import HttpSpeechSynthesizer
from jarvis_voice.utils import jarvis_log, set_log_level, setup_crash_protection


def build_transcriber(config: JarvisConfig):
    if config.stt_provider == "faster_whisper":
        try:
            from jarvis_voice.stt.faster_whisper import FasterWhisperTranscriber
        except ImportError as e:
            raise EngineInitFailed(
                f"stt.provider=faster_whisper needs the 'whisper' extra (pip install jarvis-voice[whisper]): {e}"
            ) from e
        transcriber = FasterWhisperTranscriber(
            model_name=config.stt_model,
            device=config.stt_device,
            compute_type=config.stt_compute_type,
            language=config.stt_language,
            sample_rate=config.sample_rate,
        )
        transcriber.load_model()
        return transcriber
    return HttpTranscriber(config.stt_url, language=config.stt_language, timeout=config.request_timeout)


def build_output(config: JarvisConfig) -> AudioOutputService:
    native = None
    if config.tts_native_fallback:
        try:
            from jarvis_voice.tts.native import Pyttsx3Speech
            native = Pyttsx3Speech(rate=config.tts_native_rate)
        except ImportError as e:
            jarvis_log("TTS", f"Native speech fallback disabled, pyttsx3 not installed ({e})", level="WARNING")
    synthesizer = HttpSpeechSynthesizer(
        config.tts_url,
        stream_sample_rate=config.tts_stream_sample_rate,
        timeout=config.request_timeout,
    )
    return AudioOutputService(
        synthesizer=synthesizer,
        player=SoundDevicePlayer(config.output_device),
        native=native,
    )


def make_source_factory(input_file: Optional[str] = None):
    def factory(config: JarvisConfig) -> AudioSource:
        if input_file:
            return WavFileSource(input_file, block_size=config.block_size)
        return MicrophoneSource(config.sample_rate, block_size=config.block_size, device=config.input_device)
    return factory


def _log_event(event: Event):
    if event.type == EventType.SUBTITLE:
        jarvis_log("SUBTITLE", f"{event.get('role')}: {event.get('text')}")
    elif event.type == EventType.ERROR:
        jarvis_log("EVENT", f"Error {event.get('kind')} ({event.get('error_id')})", level="DEBUG")


class JarvisService:
    """Owns the orchestrator and every adapter it was built with."""

    def __init__(self, provider: ConfigProvider, input_file: Optional[str] = None):
        self.provider = provider
        config = provider.current()
        self.event_bus = EventBus()
        self.transcriber = build_transcriber(config)
        self.backend = WebhookReplyBackend(
            config.webhook_url,
            callback_url=config.callback_url,
            user_id=config.user_id,
            session_id=config.session_id,
            source=config.source_name,
            timeout=config.request_timeout,
        )
        self.output = build_output(config)
        self.capabilities = resolve_capabilities(config)
        self.orchestrator = ConversationOrchestrator(
            provider,
            source_factory=make_source_factory(input_file),
            transcriber=self.transcriber,
            backend=self.backend,
            output=self.output,
            capabilities=self.capabilities,
            command_router=PhraseCommandRouter(wake_words=config.wake_words),
            event_bus=self.event_bus,
        )
        self.event_bus.subscribe_multi([EventType.SUBTITLE, EventType.ERROR], _log_event, async_mode=False)
        self._stopped: Optional[asyncio.Event] = None

    def reload(self):
        try:
            config = self.provider.reload()
        except Exception as e:
            jarvis_log("CONFIG", f"Reload failed, keeping current config: {e}", level="ERROR")
            return
        self.event_bus.publish(EventType.CONFIG_RELOADED, {"vad_engine": config.vad.engine}, source="service")

    def request_shutdown(self):
        if self._stopped is not None:
            self._stopped.set()

    async def run(self):
        loop = asyncio.get_running_loop()
        self._stopped = asyncio.Event()
        for sig, handler in ((signal.SIGINT, self.request_shutdown),
                             (signal.SIGTERM, self.request_shutdown),
                             (getattr(signal, "SIGHUP", None), self.reload)):
            if sig is None:
                continue
            try:
                loop.add_signal_handler(sig, handler)
            except NotImplementedError:
                jarvis_log("INIT", f"Signal {sig} not supported on this platform", level="DEBUG")

        self.event_bus.start()
        self.event_bus.publish(EventType.SYSTEM_STARTUP, {
            "version": __version__,
            "capabilities": self.capabilities.describe(),
        }, source="service")
        try:
            await self.orchestrator.start()
            jarvis_log("JARVIS", "Service started, Ctrl+C to stop")
            await self._stopped.wait()
        finally:
            jarvis_log("JARVIS", "Shutting down...")
            await self.orchestrator.close()
            await self.transcriber.close()
            await self.backend.close()
            if self.output.synthesizer is not None:
                await self.output.synthesizer.close()
            if self.output.native is not None:
                self.output.native.shutdown()
            self.event_bus.publish(EventType.SYSTEM_SHUTDOWN, {}, source="service", wait=True)
            self.event_bus.stop()


def parse_args(argv=None):
    parser = argparse.ArgumentParser(prog="jarvis-voice", description="Always-on voice assistant pipeline")
    parser.add_argument("--config", default="config.yaml", help="Path to config.yaml")
    parser.add_argument("--continuous", action="store_true", help="Keep listening after each reply")
    parser.add_argument("--vad-engine", choices=VAD_ENGINES, help="Override vad.engine")
    parser.add_argument("--input-file", help="Replay a WAV file instead of the microphone")
    parser.add_argument("--log-level", help="DEBUG, INFO, WARNING or ERROR")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    return parser.parse_args(argv)


def main(argv=None):
    """Entry point for the jarvis-voice command."""
    load_dotenv(os.path.join(PROJECT_ROOT, '.env'))
    args = parse_args(argv)
    if args.log_level:
        set_log_level(args.log_level)
    setup_crash_protection()

    provider = ConfigProvider(args.config)
    config = provider.current()
    if args.continuous:
        config.continuous_conversation = True
    if args.vad_engine:
        config.vad = replace(config.vad, engine=args.vad_engine)
    provider.update(config)
    config.print_config_banner()

    try:
        service = JarvisService(provider, input_file=args.input_file)
        asyncio.run(service.run())
    except KeyboardInterrupt:
        jarvis_log("JARVIS", "Interrupted")
    except Exception as e:
        jarvis_log("CRITICAL", f"Unhandled exception in main: {e}", level="ERROR")
        jarvis_log("CRITICAL", traceback.format_exc(), level="ERROR")
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
