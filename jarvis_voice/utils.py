#!/usr/bin/env python3
"""
Jarvis Voice Utilities

Logging, crash protection, and small numeric helpers shared by the pipeline.
"""

import os
import sys
import traceback
import threading
from datetime import datetime

# Global lock for stdout to prevent garbled output from audio callback threads
_stdout_lock = threading.Lock()

_LEVELS = {"DEBUG": 10, "INFO": 20, "WARN": 30, "WARNING": 30, "ERROR": 40, "CRITICAL": 50}
_min_level = _LEVELS.get(os.getenv("JARVIS_LOG_LEVEL", "INFO").strip().upper(), 20)


def set_log_level(level: str):
    """Set the minimum level printed by jarvis_log (DEBUG, INFO, WARNING, ERROR)."""
    global _min_level
    _min_level = _LEVELS.get(str(level).strip().upper(), _min_level)


def jarvis_log(tag: str, message: str, level: str = "INFO"):
    """
    Log a message with timestamp and tag.

    Format: [HH:MM:SS.mmm] [LEVEL] [TAG] message

    Args:
        tag: Component tag (e.g., "VAD", "REC", "ORCH")
        message: Log message
        level: Log level (DEBUG, INFO, WARNING, ERROR)
    """
    if _LEVELS.get(level.upper(), 20) < _min_level:
        return
    timestamp = datetime.now().strftime("%H:%M:%S.%f")[:-3]

    # Format: [14:08:25.342] [INFO] [VAD] Speech started
    log_line = f"[{timestamp}] [{level}] [{tag}] {message}"

    with _stdout_lock:
        print(log_line, flush=True)


def clamp(value, low, high):
    """Clamp value into [low, high]."""
    return max(low, min(high, value))


def log_crash(exc_type, exc_value, exc_traceback):
    """Write an uncaught exception and the live thread list to LOGS_DIR."""
    from jarvis_voice import LOGS_DIR
    stamp = datetime.now().strftime("%Y%m%d-%H%M%S")
    path = os.path.join(LOGS_DIR, f"crash-{stamp}.log")

    lines = [
        f"jarvis-voice crash at {stamp}",
        f"{exc_type.__name__}: {exc_value}",
        "",
        *traceback.format_exception(exc_type, exc_value, exc_traceback),
        "threads:",
        *(f"  {t.name}{' (daemon)' if t.daemon else ''}" for t in threading.enumerate()),
    ]
    try:
        os.makedirs(LOGS_DIR, exist_ok=True)
        with open(path, "w", encoding="utf-8") as f:
            f.write("\n".join(line.rstrip("\n") for line in lines) + "\n")
    except OSError as e:
        print(f"[CRITICAL] could not write {path}: {e}", file=sys.stderr)
        return
    jarvis_log("CRASH", f"Details in {path}", level="ERROR")


def setup_crash_protection():
    """Install an excepthook that records crashes before the default handler runs."""
    previous = sys.excepthook

    def hook(exc_type, exc_value, exc_traceback):
        if not issubclass(exc_type, KeyboardInterrupt):
            log_crash(exc_type, exc_value, exc_traceback)
        previous(exc_type, exc_value, exc_traceback)

    sys.excepthook = hook
    jarvis_log("INIT", "Crash hook installed", level="DEBUG")
