#!/usr/bin/env python3
"""Audio sources: the microphone and WAV-file replay.

An :class:`AudioSource` delivers float32 mono frames to its listeners on the
asyncio loop and reports "track ended" when the underlying stream dies.
``sounddevice`` calls its callback from a PortAudio thread, so frames are
marshalled back with ``call_soon_threadsafe``.
"""

import asyncio
from typing import Callable, List, Optional

import numpy as np
import sounddevice as sd
import soundfile as sf

from jarvis_voice.errors import CaptureFailed, MicPermissionDenied
from jarvis_voice.utils import jarvis_log

FrameListener = Callable[[np.ndarray], None]
EndedListener = Callable[[str], None]

_PERMISSION_HINTS = ("permission", "denied", "not authorized", "access")


class AudioSource:
    """Base class for frame producers."""

    def __init__(self, sample_rate: int = 16000):
        self.sample_rate = sample_rate
        self._listeners: List[FrameListener] = []
        self._ended_listeners: List[EndedListener] = []
        self._active = False

    @property
    def active(self) -> bool:
        return self._active

    def add_listener(self, listener: FrameListener) -> None:
        if listener not in self._listeners:
            self._listeners.append(listener)

    def remove_listener(self, listener: FrameListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def add_ended_listener(self, listener: EndedListener) -> None:
        if listener not in self._ended_listeners:
            self._ended_listeners.append(listener)

    def remove_ended_listener(self, listener: EndedListener) -> None:
        if listener in self._ended_listeners:
            self._ended_listeners.remove(listener)

    def emit(self, frame: np.ndarray) -> None:
        """Deliver one frame to every listener (loop thread only)."""
        if not self._active:
            return
        for listener in list(self._listeners):
            try:
                listener(frame)
            except Exception as e:
                jarvis_log("CAPTURE", f"Frame listener error: {e}", level="ERROR")

    def emit_ended(self, reason: str) -> None:
        if not self._active:
            return
        self._active = False
        jarvis_log("CAPTURE", f"Track ended: {reason}", level="WARNING")
        for listener in list(self._ended_listeners):
            try:
                listener(reason)
            except Exception as e:
                jarvis_log("CAPTURE", f"Ended listener error: {e}", level="ERROR")

    async def start(self) -> None:
        self._active = True

    async def stop(self) -> None:
        self._active = False


class MicrophoneSource(AudioSource):
    """Live microphone capture through a sounddevice InputStream."""

    def __init__(self, sample_rate: int = 16000, block_size: int = 320, device: Optional[str] = None):
        super().__init__(sample_rate)
        self.block_size = block_size
        self.device = device
        self._stream: Optional[sd.InputStream] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._stopping = False

    def _callback(self, indata, frames, time_info, status):
        if status:
            jarvis_log("CAPTURE", f"Status: {status}", level="DEBUG")
        frame = np.array(indata[:, 0], dtype=np.float32, copy=True)
        loop = self._loop
        if loop is not None and not loop.is_closed():
            loop.call_soon_threadsafe(self.emit, frame)

    def _finished(self):
        # PortAudio stops the stream on device loss; an explicit stop() sets _stopping first
        if self._stopping:
            return
        loop = self._loop
        if loop is not None and not loop.is_closed():
            loop.call_soon_threadsafe(self.emit_ended, "input stream finished")

    async def start(self) -> None:
        if self._stream is not None:
            return
        self._loop = asyncio.get_running_loop()
        self._stopping = False
        try:
            stream = sd.InputStream(
                samplerate=self.sample_rate,
                channels=1,
                dtype=np.float32,
                blocksize=self.block_size,
                device=self.device,
                callback=self._callback,
                finished_callback=self._finished,
            )
            stream.start()
        except sd.PortAudioError as e:
            text = str(e).lower()
            if any(hint in text for hint in _PERMISSION_HINTS):
                raise MicPermissionDenied(f"Microphone access denied: {e}") from e
            raise CaptureFailed(f"Could not open microphone: {e}") from e
        except (OSError, ValueError) as e:
            raise CaptureFailed(f"Could not open microphone: {e}") from e

        self._stream = stream
        self._active = True
        jarvis_log("CAPTURE", f"Microphone open ({self.sample_rate} Hz, block {self.block_size})")

    async def stop(self) -> None:
        self._active = False
        self._stopping = True
        stream, self._stream = self._stream, None
        if stream is None:
            return
        try:
            stream.stop()
            stream.close()
        except sd.PortAudioError as e:
            jarvis_log("CAPTURE", f"Error closing microphone: {e}", level="WARNING")
        jarvis_log("CAPTURE", "Microphone released")


class WavFileSource(AudioSource):
    """Replays a WAV file in real time, for offline runs and tuning."""

    def __init__(self, path: str, block_size: int = 320, realtime: bool = True):
        info = sf.info(path)
        super().__init__(info.samplerate)
        self.path = path
        self.block_size = block_size
        self.realtime = realtime
        self._task: Optional[asyncio.Task] = None

    async def start(self) -> None:
        try:
            audio, _ = sf.read(self.path, dtype="float32", always_2d=True)
        except (OSError, RuntimeError) as e:
            raise CaptureFailed(f"Could not read {self.path}: {e}") from e
        self._active = True
        self._task = asyncio.get_running_loop().create_task(self._pump(audio[:, 0]))

    async def _pump(self, audio: np.ndarray) -> None:
        frame_seconds = self.block_size / self.sample_rate
        for offset in range(0, len(audio), self.block_size):
            if not self._active:
                return
            self.emit(audio[offset:offset + self.block_size])
            await asyncio.sleep(frame_seconds if self.realtime else 0)
        self.emit_ended("end of file")

    async def stop(self) -> None:
        self._active = False
        task, self._task = self._task, None
        if task is not None and not task.done():
            task.cancel()
