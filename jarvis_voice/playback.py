#!/usr/bin/env python3
"""Sequential audio output: the playback queue, the sounddevice player and the
AudioOutputService that speaks replies through a degrade chain.

Only one queue entry runs at a time. The idle listener fires exactly once per
busy -> idle transition, checked on the next loop iteration so a caller whose
task just failed can enter :meth:`PlaybackQueue.scheduling` and queue its
fallback first.
"""

import asyncio
import io
from collections import deque
from contextlib import contextmanager
from typing import Any, AsyncIterator, Awaitable, Callable, Deque, Optional, Tuple

import numpy as np
import sounddevice as sd
from pydub import AudioSegment
from pydub.exceptions import CouldntDecodeError

from jarvis_voice.errors import PlaybackFailed
from jarvis_voice.tts.base import NativeSpeech, SpeechSynthesizer
from jarvis_voice.utils import jarvis_log

TaskFactory = Callable[[], Awaitable[Any]]

CHIME_SAMPLE_RATE = 44100


class PlaybackQueue:
    """FIFO runner for audio tasks with idle notification."""

    def __init__(self):
        self._entries: Deque[Tuple[TaskFactory, asyncio.Future]] = deque()
        self._runner: Optional[asyncio.Task] = None
        self._current: Optional[asyncio.Future] = None
        self._busy = False
        self._scheduling = 0
        self._idle_listener: Optional[Callable[[], None]] = None
        self._idle_check: Optional[asyncio.Handle] = None

    def set_idle_listener(self, listener: Optional[Callable[[], None]]) -> None:
        self._idle_listener = listener

    def is_active(self) -> bool:
        """True while something is queued or playing."""
        return bool(self._entries) or self._current is not None

    @property
    def pending(self) -> int:
        return len(self._entries)

    def enqueue(self, task: TaskFactory) -> asyncio.Future:
        """Queue ``task`` (a zero-argument coroutine function); the future carries its outcome."""
        loop = asyncio.get_running_loop()
        future = loop.create_future()
        self._entries.append((task, future))
        self._busy = True
        self._cancel_idle_check()
        if self._runner is None or self._runner.done():
            self._runner = loop.create_task(self._run())
        return future

    async def _run(self) -> None:
        while self._entries:
            task, future = self._entries.popleft()
            if future.done():
                continue
            self._current = future
            try:
                result = await task()
            except asyncio.CancelledError:
                if not future.done():
                    future.cancel()
                raise
            except Exception as e:
                jarvis_log("PLAYBACK", f"Task failed: {e}", level="WARNING")
                if not future.done():
                    future.set_exception(e)
            else:
                if not future.done():
                    future.set_result(result)
            finally:
                self._current = None
        self._runner = None
        self._schedule_idle_check()

    @contextmanager
    def scheduling(self):
        """Hold back the idle notification while the caller prepares more work."""
        self._scheduling += 1
        self._busy = True
        self._cancel_idle_check()
        try:
            yield self
        finally:
            self._scheduling = max(0, self._scheduling - 1)
            if self._scheduling == 0:
                self._schedule_idle_check()

    def _schedule_idle_check(self) -> None:
        self._cancel_idle_check()
        self._idle_check = asyncio.get_running_loop().call_soon(self._check_idle)

    def _cancel_idle_check(self) -> None:
        if self._idle_check is not None:
            self._idle_check.cancel()
            self._idle_check = None

    def _check_idle(self) -> None:
        self._idle_check = None
        if self._scheduling or self.is_active() or not self._busy:
            return
        self._busy = False
        jarvis_log("PLAYBACK", "Queue idle", level="DEBUG")
        if self._idle_listener is not None:
            try:
                self._idle_listener()
            except Exception as e:
                jarvis_log("PLAYBACK", f"Idle listener error: {e}", level="ERROR")

    def clear(self) -> None:
        """Drop queued work and cancel the running task; no idle notification follows."""
        while self._entries:
            _task, future = self._entries.popleft()
            if not future.done():
                future.cancel()
        runner, self._runner = self._runner, None
        if runner is not None and not runner.done():
            runner.cancel()
        if self._current is not None and not self._current.done():
            self._current.cancel()
        self._current = None
        self._busy = False
        self._scheduling = 0
        self._cancel_idle_check()


# ------------------------------------------------------------------
# Audio helpers
# ------------------------------------------------------------------

def decode_audio(data: bytes) -> Tuple[np.ndarray, int]:
    """Decode an encoded audio payload into float32 mono samples."""
    # WAV is parsed natively; anything else goes through ffmpeg
    fmt = "wav" if data[:4] == b"RIFF" else None
    audio = AudioSegment.from_file(io.BytesIO(data), format=fmt)
    return _segment_to_float(audio)


def load_sound_file(path: str) -> Tuple[np.ndarray, int]:
    """Load an MP3/WAV file and return (samples, sample_rate)."""
    return _segment_to_float(AudioSegment.from_file(path))


def _segment_to_float(audio: AudioSegment) -> Tuple[np.ndarray, int]:
    samples = np.array(audio.get_array_of_samples(), dtype=np.float32)
    samples = samples / float(1 << (8 * audio.sample_width - 1))
    if audio.channels > 1:
        samples = samples.reshape((-1, audio.channels)).mean(axis=1)
    return samples.astype(np.float32), audio.frame_rate


def _envelope(samples: int, attack: float = 0.1, decay: float = 0.8) -> np.ndarray:
    env = np.ones(samples, dtype=np.float32)
    attack_n = max(1, int(samples * attack))
    decay_n = max(1, int(samples * decay))
    env[:attack_n] = np.linspace(0, 1, attack_n)
    env[-decay_n:] = np.linspace(1, 0, decay_n)
    return env


def _tone(freq_start: float, freq_end: float, duration: float,
          sample_rate: int = CHIME_SAMPLE_RATE) -> np.ndarray:
    samples = int(sample_rate * duration)
    t = np.linspace(0, duration, samples, dtype=np.float32)
    freq = np.linspace(freq_start, freq_end, samples)
    return (np.sin(2 * np.pi * freq * t) * _envelope(samples)).astype(np.float32)


def synthesize_chime(preset: str = "ding", sample_rate: int = CHIME_SAMPLE_RATE) -> np.ndarray:
    """Programmatic cue sounds, peak-normalized to 0.6."""
    if preset == "chime":
        gap = np.zeros(int(sample_rate * 0.03), dtype=np.float32)
        wave = np.concatenate([_tone(660, 660, 0.12, sample_rate), gap, _tone(880, 880, 0.16, sample_rate)])
    elif preset == "beep":
        samples = int(sample_rate * 0.1)
        t = np.linspace(0, 0.1, samples, dtype=np.float32)
        wave = np.sin(2 * np.pi * 1000 * t) * _envelope(samples, attack=0.05, decay=0.2)
    else:
        wave = _tone(880, 880 * 0.7, 0.15, sample_rate)
    wave = wave / max(1e-9, float(np.max(np.abs(wave)))) * 0.6
    return wave.astype(np.float32)


def _prepare(samples: np.ndarray) -> np.ndarray:
    audio = np.asarray(samples, dtype=np.float32)
    peak = float(np.max(np.abs(audio))) if audio.size else 0.0
    if peak > 1.0:
        audio = audio / peak
    return audio


class SoundDevicePlayer:
    """Plays buffers with ``sd.play`` and PCM streams through an OutputStream."""

    def __init__(self, device: Optional[str] = None):
        self.device = device
        self._stream: Optional[sd.OutputStream] = None
        self._stopped = False

    async def play(self, samples: np.ndarray, sample_rate: int) -> None:
        self._stopped = False
        loop = asyncio.get_running_loop()
        try:
            sd.play(_prepare(samples), sample_rate, device=self.device)
            await loop.run_in_executor(None, sd.wait)
        except sd.PortAudioError as e:
            raise PlaybackFailed(f"Playback error: {e}") from e

    async def play_stream(self, chunks: AsyncIterator[bytes], sample_rate: int) -> None:
        """Write raw int16 PCM chunks as they arrive."""
        self._stopped = False
        loop = asyncio.get_running_loop()
        try:
            stream = sd.OutputStream(samplerate=sample_rate, channels=1, dtype='int16', device=self.device)
            stream.start()
        except sd.PortAudioError as e:
            raise PlaybackFailed(f"Could not open output stream: {e}") from e

        self._stream = stream
        written = 0
        remainder = b""
        try:
            async for chunk in chunks:
                if self._stopped:
                    break
                data = remainder + chunk
                usable = len(data) - (len(data) % 2)
                remainder = data[usable:]
                if not usable:
                    continue
                frames = np.frombuffer(data[:usable], dtype=np.int16).reshape(-1, 1)
                await loop.run_in_executor(None, stream.write, frames)
                written += len(frames)
        except sd.PortAudioError as e:
            raise PlaybackFailed(f"Stream playback error: {e}") from e
        finally:
            self._stream = None
            try:
                stream.stop()
                stream.close()
            except sd.PortAudioError as e:
                jarvis_log("PLAYBACK", f"Error closing output stream: {e}", level="WARNING")

        if written == 0 and not self._stopped:
            raise PlaybackFailed("Speech stream produced no audio")

    def stop(self) -> None:
        self._stopped = True
        try:
            sd.stop()
            stream = self._stream
            if stream is not None:
                stream.abort()
        except sd.PortAudioError as e:
            jarvis_log("PLAYBACK", f"Stop error: {e}", level="WARNING")


class AudioOutputService:
    """All audio output for one orchestrator.

    ``speak()`` degrades: streamed PCM -> buffered synthesis -> native speech,
    raising :class:`PlaybackFailed` only when every step fails.
    """

    def __init__(
        self,
        synthesizer: Optional[SpeechSynthesizer] = None,
        player: Optional[SoundDevicePlayer] = None,
        native: Optional[NativeSpeech] = None,
        queue: Optional[PlaybackQueue] = None,
    ):
        self.synthesizer = synthesizer
        self.player = player or SoundDevicePlayer()
        self.native = native
        self.queue = queue or PlaybackQueue()
        self._chime_cache = {}

    async def _play_stream(self, text: str) -> None:
        await self.player.play_stream(self.synthesizer.stream(text), self.synthesizer.stream_sample_rate)

    async def _play_buffered(self, text: str) -> None:
        data = await self.synthesizer.synthesize(text)
        samples, sample_rate = decode_audio(data)
        await self.player.play(samples, sample_rate)

    async def speak(self, text: str) -> str:
        """Speak ``text`` through the queue; returns the path that succeeded."""
        errors = []
        if self.synthesizer is not None:
            try:
                await self.queue.enqueue(lambda: self._play_stream(text))
                return "stream"
            except Exception as e:
                jarvis_log("TTS", f"Stream playback failed, falling back: {e}", level="WARNING")
                errors.append(f"stream: {e}")

        with self.queue.scheduling():
            if self.synthesizer is not None:
                try:
                    await self.queue.enqueue(lambda: self._play_buffered(text))
                    return "buffered"
                except Exception as e:
                    jarvis_log("TTS", f"Buffered synthesis failed, falling back: {e}", level="WARNING")
                    errors.append(f"buffered: {e}")
            if self.native is not None:
                try:
                    await self.queue.enqueue(lambda: self.native.say(text))
                    return "native"
                except Exception as e:
                    jarvis_log("TTS", f"Native speech failed: {e}", level="ERROR")
                    errors.append(f"native: {e}")

        raise PlaybackFailed("All playback paths failed", detail="; ".join(errors) or "no output configured")

    def _chime_samples(self, preset: str, path: Optional[str]) -> Tuple[np.ndarray, int]:
        key = (preset, path)
        if key not in self._chime_cache:
            samples = None
            sample_rate = CHIME_SAMPLE_RATE
            if path:
                try:
                    samples, sample_rate = load_sound_file(path)
                except (OSError, CouldntDecodeError) as e:
                    jarvis_log("SOUND", f"Error loading {path}: {e}, using '{preset}'", level="WARNING")
            if samples is None:
                samples = synthesize_chime(preset, sample_rate)
            self._chime_cache[key] = (samples, sample_rate)
        return self._chime_cache[key]

    async def play_chime(self, volume: float = 0.2, preset: str = "ding", path: Optional[str] = None) -> None:
        """Play a short cue directly, outside the queue."""
        samples, sample_rate = self._chime_samples(preset, path)
        try:
            await self.player.play(samples * float(volume), sample_rate)
        except PlaybackFailed as e:
            jarvis_log("SOUND", f"Chime failed: {e}", level="WARNING")

    def stop_audio(self) -> None:
        self.player.stop()
        if self.native is not None:
            self.native.stop()

    def clear(self) -> None:
        self.queue.clear()
