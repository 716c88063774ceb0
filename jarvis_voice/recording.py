#!/usr/bin/env python3
"""Recording sessions: chunk buffering, watchdog timers and segment assembly.

A session lives exactly as long as the orchestrator stays in RECORDING. It
owns the capture source, the VAD attached to it and its timers (hard stop,
no-speech watchdog, VAD tail). Anything that would end the session is
reported through ``on_finalize``; the orchestrator decides and calls
:meth:`RecordingSessionManager.end_session`.
"""

import asyncio
import io
import uuid
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional

import numpy as np
import soundfile as sf

from jarvis_voice.audio_capture import AudioSource
from jarvis_voice.config_loader import JarvisConfig
from jarvis_voice.utils import jarvis_log, clamp
from jarvis_voice.vad import VADController, VadMetrics, rms_db

FINALIZE_HARD_STOP = "hard_stop"
FINALIZE_NO_SPEECH = "no_speech"
FINALIZE_VAD_END = "vad_end"
FINALIZE_ENDPOINT = "endpoint"
FINALIZE_EXPLICIT = "explicit_stop"

TIMER_HARD_STOP = "hard_stop"
TIMER_NO_SPEECH = "no_speech"
TIMER_TAIL = "tail"
TIMER_ENDPOINT = "endpoint"


@dataclass
class SpeechSegment:
    """A finalized utterance: float32 mono samples at ``sample_rate``."""
    samples: np.ndarray
    sample_rate: int

    @property
    def duration_ms(self) -> float:
        return len(self.samples) * 1000.0 / self.sample_rate

    @property
    def byte_size(self) -> int:
        """Size as 16-bit PCM."""
        return len(self.samples) * 2

    @property
    def rms_db(self) -> float:
        return rms_db(self.samples)

    def to_wav_bytes(self) -> bytes:
        buf = io.BytesIO()
        sf.write(buf, self.samples, self.sample_rate, format="WAV", subtype="PCM_16")
        return buf.getvalue()

    def rejection_reason(self, config: JarvisConfig) -> Optional[str]:
        """Why this segment is too small or quiet to transcribe, or None."""
        if self.duration_ms < config.min_segment_ms:
            return f"too short ({self.duration_ms:.0f} ms)"
        if self.byte_size < config.min_segment_bytes:
            return f"too small ({self.byte_size} bytes)"
        level = self.rms_db
        if level < config.min_segment_rms_db:
            return f"too quiet ({level:.1f} dB)"
        return None


@dataclass
class RecordingSession:
    """Explicit handle for one capture; stale handles are recognised by ``closed``."""
    source: AudioSource
    config: JarvisConfig
    no_speech_window_ms: int
    started_at: float
    session_id: str = field(default_factory=lambda: uuid.uuid4().hex[:8])
    chunks: List[np.ndarray] = field(default_factory=list)
    timers: Dict[str, asyncio.TimerHandle] = field(default_factory=dict)
    has_detected_speech: bool = False
    closed: bool = False
    finalize_reason: Optional[str] = None
    vad: Optional[VADController] = None
    frame_listener: Optional[Callable] = None
    ended_listener: Optional[Callable] = None

    @property
    def sample_rate(self) -> int:
        return self.source.sample_rate

    def cancel_timer(self, name: str) -> None:
        handle = self.timers.pop(name, None)
        if handle is not None:
            handle.cancel()

    def cancel_timers(self) -> None:
        for name in list(self.timers):
            self.cancel_timer(name)


def no_speech_timeout_ms(config: JarvisConfig, window_ms: int) -> int:
    """``max(min_speech_ms, clamp(window, 1000, 5000))``."""
    return int(max(config.vad.min_speech_ms, clamp(window_ms, 1000, 5000)))


class RecordingSessionManager:
    """Creates and tears down recording sessions, one at a time."""

    def __init__(
        self,
        config: JarvisConfig,
        on_finalize: Callable[[RecordingSession, str], None],
        on_capture_lost: Callable[[RecordingSession, str], None],
        on_speech_start: Optional[Callable[[RecordingSession], None]] = None,
        on_speech_end: Optional[Callable[[RecordingSession], None]] = None,
        on_metrics: Optional[Callable[[VadMetrics], None]] = None,
        vad_factory: Optional[Callable[..., VADController]] = None,
    ):
        self.config = config
        self.on_finalize = on_finalize
        self.on_capture_lost = on_capture_lost
        self.on_speech_start = on_speech_start
        self.on_speech_end = on_speech_end
        self.on_metrics = on_metrics
        self.vad_factory = vad_factory or VADController
        self._active: Optional[RecordingSession] = None

    @property
    def active(self) -> Optional[RecordingSession]:
        return self._active

    def begin_session(self, source: AudioSource, no_speech_window_ms: Optional[int] = None,
                      config: Optional[JarvisConfig] = None) -> RecordingSession:
        """Start buffering from an already started ``source``."""
        if self._active is not None and not self._active.closed:
            raise RuntimeError(f"recording session {self._active.session_id} is still active")

        cfg = config or self.config
        loop = asyncio.get_running_loop()
        window = cfg.no_speech_window_ms if no_speech_window_ms is None else no_speech_window_ms
        session = RecordingSession(
            source=source,
            config=cfg,
            no_speech_window_ms=no_speech_timeout_ms(cfg, window),
            started_at=loop.time(),
        )

        def append(frame: np.ndarray):
            if not session.closed:
                session.chunks.append(frame)

        session.frame_listener = append
        session.ended_listener = lambda reason: self._handle_track_ended(session, reason)
        source.add_listener(append)
        source.add_ended_listener(session.ended_listener)

        session.vad = self.vad_factory(
            cfg.vad,
            source.sample_rate,
            on_speech_start=lambda: self._handle_speech_start(session),
            on_speech_end=lambda: self._handle_speech_end(session),
            on_metrics=self.on_metrics,
        )
        session.vad.start(source)

        self.arm_timer(session, TIMER_HARD_STOP, cfg.recording_hard_stop_ms,
                       lambda: self._finalize(session, FINALIZE_HARD_STOP))
        self.arm_timer(session, TIMER_NO_SPEECH, session.no_speech_window_ms,
                       lambda: self._finalize(session, FINALIZE_NO_SPEECH))

        self._active = session
        jarvis_log("REC", f"Session {session.session_id} started "
                          f"(hard stop {cfg.recording_hard_stop_ms} ms, no-speech {session.no_speech_window_ms} ms)")
        return session

    def arm_timer(self, session: RecordingSession, name: str, delay_ms: float,
                  callback: Callable[[], None]) -> Optional[asyncio.TimerHandle]:
        """(Re)arm a named session timer; no-op on a closed session."""
        if session.closed:
            return None
        session.cancel_timer(name)

        def fire():
            session.timers.pop(name, None)
            if not session.closed:
                callback()

        handle = asyncio.get_running_loop().call_later(max(0.0, delay_ms) / 1000.0, fire)
        session.timers[name] = handle
        return handle

    def elapsed_ms(self, session: RecordingSession) -> float:
        return (asyncio.get_running_loop().time() - session.started_at) * 1000.0

    def request_finalize(self, session: RecordingSession, reason: str = FINALIZE_EXPLICIT) -> None:
        self._finalize(session, reason)

    def _finalize(self, session: RecordingSession, reason: str) -> None:
        if session.closed or session.finalize_reason is not None:
            return
        session.finalize_reason = reason
        session.cancel_timers()
        jarvis_log("REC", f"Session {session.session_id} finalizing ({reason}, "
                          f"{self.elapsed_ms(session):.0f} ms)")
        self.on_finalize(session, reason)

    def _handle_speech_start(self, session: RecordingSession) -> None:
        if session.closed or session.finalize_reason is not None:
            return
        session.has_detected_speech = True
        session.cancel_timer(TIMER_NO_SPEECH)
        if self.on_speech_start is not None:
            self.on_speech_start(session)

    def _handle_speech_end(self, session: RecordingSession) -> None:
        if session.closed or session.finalize_reason is not None:
            return
        if self.on_speech_end is not None:
            self.on_speech_end(session)
        elapsed = self.elapsed_ms(session)
        if elapsed < session.config.endpoint_guard_ms:
            jarvis_log("REC", f"Speech end ignored inside guard window ({elapsed:.0f} ms)", level="DEBUG")
            return
        self.arm_timer(session, TIMER_TAIL, session.config.vad_tail_ms,
                       lambda: self._finalize(session, FINALIZE_VAD_END))

    def _handle_track_ended(self, session: RecordingSession, reason: str) -> None:
        if session.closed:
            return
        self.on_capture_lost(session, reason)

    def _detach(self, session: RecordingSession) -> None:
        session.closed = True
        session.cancel_timers()
        if session.vad is not None:
            session.vad.stop()
        session.source.remove_listener(session.frame_listener)
        session.source.remove_ended_listener(session.ended_listener)
        if self._active is session:
            self._active = None

    async def _release(self, session: RecordingSession) -> None:
        try:
            await session.source.stop()
        except Exception as e:
            jarvis_log("REC", f"Error releasing capture: {e}", level="WARNING")

    async def end_session(self, session: RecordingSession) -> Optional[SpeechSegment]:
        """Tear down ``session`` and return its segment, or None when it is discarded."""
        if session.closed:
            return None
        self._detach(session)
        await self._release(session)

        if not session.has_detected_speech:
            jarvis_log("REC", f"Session {session.session_id} discarded: no speech detected")
            return None

        samples = np.concatenate(session.chunks) if session.chunks else np.zeros(0, dtype=np.float32)
        segment = SpeechSegment(samples.astype(np.float32, copy=False), session.sample_rate)
        reason = segment.rejection_reason(session.config)
        if reason:
            jarvis_log("REC", f"Session {session.session_id} discarded: {reason}")
            return None

        jarvis_log("REC", f"Segment ready: {segment.duration_ms:.0f} ms, {segment.rms_db:.1f} dB")
        return segment

    async def force_stop(self) -> None:
        """Tear down the active session without producing a segment."""
        session = self._active
        if session is None:
            return
        self._detach(session)
        await self._release(session)
        jarvis_log("REC", f"Session {session.session_id} force-stopped")
