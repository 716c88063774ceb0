#!/usr/bin/env python3
"""Optional platform capabilities, resolved once at startup.

Each capability is either an implementation or an explicit
:class:`Unsupported` value carrying the reason; the orchestrator branches on
that instead of probing at runtime.
"""

import asyncio
import importlib.util
import shutil
import sys
from dataclasses import dataclass
from typing import Dict, Optional, Union

from jarvis_voice.config_loader import JarvisConfig
from jarvis_voice.utils import jarvis_log
from jarvis_voice.wake_word import EndpointRecognizer, OpenWakeWordRecognizer, WakeWordRecognizer


@dataclass(frozen=True)
class Unsupported:
    """A capability that is not available here, and why."""
    reason: str

    def __str__(self):
        return f"unsupported ({self.reason})"


def is_supported(capability) -> bool:
    return capability is not None and not isinstance(capability, Unsupported)


class WakeLock:
    """Keeps the machine awake while the assistant is listening."""

    async def acquire(self) -> None:
        raise NotImplementedError

    async def release(self) -> None:
        raise NotImplementedError


class SystemdInhibitWakeLock(WakeLock):
    """Holds a ``systemd-inhibit`` sleep/idle lock for as long as a child process lives."""

    def __init__(self, who: str = "jarvis-voice", why: str = "Listening for voice commands"):
        self.who = who
        self.why = why
        self._process: Optional[asyncio.subprocess.Process] = None

    @staticmethod
    def available() -> bool:
        return sys.platform.startswith("linux") and shutil.which("systemd-inhibit") is not None

    @property
    def held(self) -> bool:
        return self._process is not None and self._process.returncode is None

    async def acquire(self) -> None:
        if self.held:
            return
        self._process = await asyncio.create_subprocess_exec(
            "systemd-inhibit", "--what=sleep:idle", f"--who={self.who}", f"--why={self.why}",
            "--mode=block", "sleep", "infinity",
            stdout=asyncio.subprocess.DEVNULL,
            stderr=asyncio.subprocess.DEVNULL,
        )
        jarvis_log("POWER", f"Wake lock acquired (pid {self._process.pid})")

    async def release(self) -> None:
        process, self._process = self._process, None
        if process is None or process.returncode is not None:
            return
        process.terminate()
        await process.wait()
        jarvis_log("POWER", "Wake lock released")


Capability = Union[WakeWordRecognizer, EndpointRecognizer, WakeLock, Unsupported]


@dataclass
class PlatformCapabilities:
    recognizer: Union[WakeWordRecognizer, Unsupported]
    endpoint: Union[EndpointRecognizer, Unsupported]
    wake_lock: Union[WakeLock, Unsupported]

    def describe(self) -> Dict[str, str]:
        return {
            name: str(value) if isinstance(value, Unsupported) else type(value).__name__
            for name, value in (
                ("recognizer", self.recognizer),
                ("endpoint", self.endpoint),
                ("wake_lock", self.wake_lock),
            )
        }


def resolve_capabilities(
    config: JarvisConfig,
    recognizer: Optional[WakeWordRecognizer] = None,
    endpoint: Optional[EndpointRecognizer] = None,
    wake_lock: Optional[WakeLock] = None,
) -> PlatformCapabilities:
    """Pick an implementation or an Unsupported reason for every capability."""
    if recognizer is not None:
        resolved_recognizer = recognizer
    elif not config.wake_word_enabled:
        resolved_recognizer = Unsupported("wake word disabled in config")
    elif importlib.util.find_spec("openwakeword") is None:
        resolved_recognizer = Unsupported("openwakeword is not installed")
    else:
        resolved_recognizer = OpenWakeWordRecognizer(
            model=config.wake_word_model,
            threshold=config.wake_word_threshold,
            device=config.input_device,
        )

    if endpoint is not None:
        resolved_endpoint = endpoint
    elif config.endpointing_enabled:
        resolved_endpoint = Unsupported("no endpoint recognizer available on this platform")
    else:
        resolved_endpoint = Unsupported("endpointing disabled in config")

    if wake_lock is not None:
        resolved_wake_lock = wake_lock
    elif SystemdInhibitWakeLock.available():
        resolved_wake_lock = SystemdInhibitWakeLock()
    else:
        resolved_wake_lock = Unsupported("systemd-inhibit not found")

    capabilities = PlatformCapabilities(resolved_recognizer, resolved_endpoint, resolved_wake_lock)
    for name, value in capabilities.describe().items():
        jarvis_log("CAPS", f"{name}: {value}")
    return capabilities
