#!/usr/bin/env python3
"""Real-time VAD monitor for Jarvis Voice: level, noise floor, SNR and speech state."""
import argparse
import asyncio
import os
import sys
from dataclasses import replace
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from jarvis_voice.audio_capture import MicrophoneSource, WavFileSource
from jarvis_voice.config_loader import VAD_ENGINES, ConfigProvider
from jarvis_voice.utils import jarvis_log
from jarvis_voice.vad import VADController, VadMetrics

BAR_WIDTH = 50
MIN_DISPLAY_DB = -90.0


def render(metrics: VadMetrics):
    bar_fill = int((metrics.level_db - MIN_DISPLAY_DB) / -MIN_DISPLAY_DB * BAR_WIDTH)
    bar_fill = max(0, min(BAR_WIDTH, bar_fill))

    if metrics.in_speech:
        color = "\033[32m"  # Green - speech
    elif metrics.snr_db > 0:
        color = "\033[33m"  # Yellow - above floor
    else:
        color = "\033[90m"  # Gray - silence
    reset = "\033[0m"

    bar = "#" * bar_fill + "." * (BAR_WIDTH - bar_fill)
    sys.stdout.write(f"\r{color}|{bar}|{reset} "
                     f"Level: {metrics.level_db:6.1f}dB  Floor: {metrics.noise_floor_db:6.1f}dB  "
                     f"SNR: {metrics.snr_db:5.1f}dB  {'SPEECH' if metrics.in_speech else '      '}")
    sys.stdout.flush()


def announce(message: str):
    sys.stdout.write("\n")
    jarvis_log("VAD", message)


async def run(args):
    config = ConfigProvider(args.config).current()
    vad_config = config.vad
    if args.engine:
        vad_config = replace(vad_config, engine=args.engine)

    if args.input_file:
        source = WavFileSource(args.input_file, block_size=config.block_size)
    else:
        source = MicrophoneSource(config.sample_rate, block_size=config.block_size, device=config.input_device)

    done = asyncio.Event()
    source.add_ended_listener(lambda reason: done.set())
    controller = VADController(
        vad_config,
        source.sample_rate,
        on_speech_start=lambda: announce("Speech started"),
        on_speech_end=lambda: announce("Speech ended"),
        on_metrics=render,
    )

    jarvis_log("VAD", "=" * 60)
    jarvis_log("VAD", "Jarvis Voice - VAD Monitor")
    jarvis_log("VAD", "=" * 60)
    jarvis_log("VAD", f"Engine: {vad_config.engine}, enter {vad_config.enter_snr_db} dB / "
                      f"exit {vad_config.exit_snr_db} dB")
    jarvis_log("VAD", "Press Ctrl+C to stop")

    await source.start()
    controller.start(source)
    jarvis_log("VAD", f"Active engine: {controller.engine_name}")
    try:
        await done.wait()
    finally:
        controller.stop()
        await source.stop()


def main():
    parser = argparse.ArgumentParser(description="Live VAD metrics")
    parser.add_argument("--config", default="config.yaml")
    parser.add_argument("--engine", choices=VAD_ENGINES)
    parser.add_argument("--input-file", help="Analyze a WAV file instead of the microphone")
    args = parser.parse_args()
    try:
        asyncio.run(run(args))
    except KeyboardInterrupt:
        print()
        jarvis_log("VAD", "Stopped.")
    except Exception as e:
        jarvis_log("VAD", f"Error: {e}", level="ERROR")


if __name__ == "__main__":
    main()
