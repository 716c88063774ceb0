#!/usr/bin/env python3
"""Conversation orchestrator: the single owner of conversation state.

Every callback (VAD, capture, recognizer, playback idle, timers, results of
background tasks) is turned into a :class:`Message` on the mailbox. One
consumer task handles messages in order and is the only code that changes
state, through ``_transition()``. Background work receives the :class:`Turn`
it belongs to; results posted for a turn that is no longer current are
dropped.
"""

import asyncio
import inspect
import itertools
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Set

from jarvis_voice.audio_capture import AudioSource
from jarvis_voice.backend import ReplyBackend, acquire_reply, new_correlation_id
from jarvis_voice.capabilities import PlatformCapabilities, is_supported
from jarvis_voice.commands import CommandResult, CommandRouter
from jarvis_voice.config_loader import ConfigProvider, JarvisConfig
from jarvis_voice.errors import (
    EngineInitFailed,
    ErrorKind,
    MicPermissionDenied,
    PlaybackFailed,
    VoiceError,
    as_voice_error,
)
from jarvis_voice.event_bus import EventBus, EventType
from jarvis_voice.playback import AudioOutputService
from jarvis_voice.recording import FINALIZE_ENDPOINT, FINALIZE_EXPLICIT, RecordingSession, RecordingSessionManager
from jarvis_voice.speech_guard import SpeechGuard
from jarvis_voice.state_machine import RUNNING_STATES, ConversationState, can_transition
from jarvis_voice.stt.base import Transcriber
from jarvis_voice.text_processing import normalize_tts_text
from jarvis_voice.utils import jarvis_log
from jarvis_voice.vad import VadMetrics

_S = ConversationState

PHASE_OPENING = "opening"
PHASE_CAPTURE_FAILED = "capture_failed"
PHASE_RECORDING = "recording"
PHASE_PROCESSING = "processing"
PHASE_SPEAKING = "speaking"
PHASE_FOLLOW_UP = "follow_up"
PHASE_DONE = "done"


class RestartBackoff:
    """Exponential restart delays: ``min(max_ms, base_ms * 2**attempt)``."""

    def __init__(self, base_ms: int = 500, max_ms: int = 30000):
        self.base_ms = base_ms
        self.max_ms = max_ms
        self.attempt = 0
        self.history: List[int] = []

    def next_delay(self) -> int:
        delay = int(min(self.max_ms, self.base_ms * (2 ** self.attempt)))
        self.attempt += 1
        self.history.append(delay)
        return delay

    def reset(self) -> None:
        self.attempt = 0


@dataclass
class Message:
    kind: str
    turn_id: Optional[int] = None
    payload: Dict[str, Any] = field(default_factory=dict)
    done: Optional[asyncio.Future] = None


@dataclass
class Turn:
    """One pass through record -> process -> speak, with its config snapshot."""
    turn_id: int
    started_at: float
    config: JarvisConfig
    followup: bool = False
    no_speech_ms: Optional[int] = None
    phase: str = PHASE_OPENING
    session: Optional[RecordingSession] = None
    transcript: str = ""
    reply: Optional[str] = None
    correlation_id: str = field(default_factory=new_correlation_id)
    record_after: bool = False
    open_task: Optional[asyncio.Task] = None


SourceFactory = Callable[[JarvisConfig], AudioSource]


class ConversationOrchestrator:
    """Drives wake word -> recording -> transcription -> reply -> playback."""

    def __init__(
        self,
        config_provider: ConfigProvider,
        source_factory: SourceFactory,
        transcriber: Transcriber,
        backend: ReplyBackend,
        output: AudioOutputService,
        capabilities: PlatformCapabilities,
        command_router: Optional[CommandRouter] = None,
        event_bus: Optional[EventBus] = None,
        speech_guard: Optional[SpeechGuard] = None,
        vad_factory: Optional[Callable] = None,
    ):
        config = config_provider.current()
        self.config_provider = config_provider
        self.source_factory = source_factory
        self.transcriber = transcriber
        self.backend = backend
        self.output = output
        self.capabilities = capabilities
        self.command_router = command_router
        self.event_bus = event_bus
        self.speech_guard = speech_guard or SpeechGuard(config.dedupe_window_ms)
        self.backoff = RestartBackoff(config.restart_base_ms, config.restart_max_ms)

        self.sessions = RecordingSessionManager(
            config,
            on_finalize=lambda session, reason: self._post("finalize", session=session, reason=reason),
            on_capture_lost=lambda session, reason: self._post("capture_lost", session=session, reason=reason),
            on_speech_start=lambda session: self._post("speech_started", session=session),
            on_speech_end=lambda session: self._post("speech_ended", session=session),
            on_metrics=self._handle_metrics,
            vad_factory=vad_factory,
        )
        self.output.queue.set_idle_listener(lambda: self._post("playback_idle"))

        self._state = _S.IDLE
        self._mailbox: Optional[asyncio.Queue] = None
        self._consumer: Optional[asyncio.Task] = None
        self._turn: Optional[Turn] = None
        self._turn_ids = itertools.count(1)
        self._tasks: Set[asyncio.Task] = set()
        self._closing: Set[asyncio.Task] = set()
        self._timers: Dict[str, asyncio.TimerHandle] = {}
        self._metrics: Optional[VadMetrics] = None

        self._foreground = True
        self._capture_blocked = False
        self._vad_only = not is_supported(capabilities.recognizer)
        self._recognizer_attempt = 0
        self._recognizer_active = False
        self._recognizer_task: Optional[asyncio.Task] = None
        self._recognizer_stop_task: Optional[asyncio.Task] = None
        self._endpoint_active = False
        self._wake_lock_held = False

    # ------------------------------------------------------------------
    # Public API

    @property
    def state(self) -> ConversationState:
        return self._state

    @property
    def current_metrics(self) -> Optional[VadMetrics]:
        return self._metrics

    @property
    def turn(self) -> Optional[Turn]:
        return self._turn

    @property
    def vad_only(self) -> bool:
        return self._vad_only

    async def start(self) -> None:
        await self._send("start")

    async def stop(self) -> None:
        await self._send("stop")

    async def request_recording(self) -> None:
        await self._send("request_recording")

    async def request_stop_recording(self) -> None:
        await self._send("stop_recording")

    async def set_foreground(self, active: bool) -> None:
        await self._send("foreground", active=active)

    async def restart_with_backoff(self) -> None:
        await self._send("restart", reason="requested")

    def notify_wake_word(self, name: str = "wake_word") -> None:
        """Report a wake word detection (loop thread)."""
        self._post("wake_word", name=name)

    async def close(self) -> None:
        """Stop and shut down the mailbox."""
        if self._consumer is None:
            return
        await self.stop()
        consumer, self._consumer = self._consumer, None
        consumer.cancel()
        await asyncio.gather(consumer, *self._closing, return_exceptions=True)

    # ------------------------------------------------------------------
    # Mailbox

    def _ensure_mailbox(self) -> None:
        if self._consumer is not None and not self._consumer.done():
            return
        self._mailbox = asyncio.Queue()
        self._consumer = asyncio.get_running_loop().create_task(self._consume())

    def _post(self, kind: str, turn: Optional[Turn] = None, **payload) -> None:
        if self._mailbox is None:
            return
        self._mailbox.put_nowait(Message(kind, turn.turn_id if turn is not None else None, payload))

    async def _send(self, kind: str, **payload) -> None:
        self._ensure_mailbox()
        message = Message(kind, payload=payload, done=asyncio.get_running_loop().create_future())
        self._mailbox.put_nowait(message)
        await message.done

    async def _consume(self) -> None:
        while True:
            message = await self._mailbox.get()
            try:
                await self._dispatch(message)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                error = as_voice_error(e)
                jarvis_log("ORCH", f"Handler '{message.kind}' failed: {error!r}", level="ERROR")
                if message.done is not None and not message.done.done():
                    message.done.set_exception(e)
                else:
                    self._surface_error(error)
            finally:
                if message.done is not None and not message.done.done():
                    message.done.set_result(None)

    async def _dispatch(self, message: Message) -> None:
        if message.turn_id is not None and (self._turn is None or self._turn.turn_id != message.turn_id):
            jarvis_log("ORCH", f"Dropping stale '{message.kind}' for turn {message.turn_id}", level="DEBUG")
            source = message.payload.get("source")
            if source is not None:
                self._release_source(source)
            return
        handler = getattr(self, f"_on_{message.kind}")
        result = handler(**message.payload)
        if inspect.isawaitable(result):
            await result

    # ------------------------------------------------------------------
    # Plumbing

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._task_done)
        return task

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            jarvis_log("ORCH", f"Background task failed: {error!r}", level="ERROR")

    def _arm(self, name: str, delay_ms: float, kind: str, turn: Optional[Turn] = None) -> None:
        self._cancel(name)

        def fire():
            self._timers.pop(name, None)
            self._post(kind, turn)

        self._timers[name] = asyncio.get_running_loop().call_later(max(0.0, delay_ms) / 1000.0, fire)

    def _cancel(self, name: str) -> None:
        handle = self._timers.pop(name, None)
        if handle is not None:
            handle.cancel()

    def _publish(self, event_type: EventType, payload: Optional[dict] = None, wait: bool = False) -> None:
        if self.event_bus is not None:
            self.event_bus.publish(event_type, payload or {}, source="orchestrator", wait=wait)

    def _surface_error(self, error: VoiceError) -> None:
        jarvis_log("ERROR", f"{error.kind.value}: {error.message} (id={error.error_id})", level="ERROR")
        self._publish(EventType.ERROR, error.to_dict(), wait=True)

    def _handle_metrics(self, metrics: VadMetrics) -> None:
        self._metrics = metrics
        self._publish(EventType.VAD_METRICS, metrics.to_dict())

    # ------------------------------------------------------------------
    # Transitions

    def _transition(self, target: ConversationState, reason: str = "") -> bool:
        current = self._state
        if current is target:
            return True
        if not can_transition(current, target):
            jarvis_log("STATE", f"Illegal transition {current.value} -> {target.value} ({reason})", level="WARNING")
            return False

        self._state = target
        self._cancel("restart")
        if current is _S.WAKE_LISTENING:
            self._cancel("rearm")
            self._cancel("recognizer_retry")
            self._stop_recognizer()
        elif current is _S.SPEAKING:
            self._cancel("speaking_watchdog")
        elif current is _S.RECORDING:
            self._cancel("capture_open")
            self._cancel("endpoint_watchdog")
            self._stop_endpointing()

        jarvis_log("STATE", f"{current.value} -> {target.value}" + (f" ({reason})" if reason else ""))
        self._publish(EventType.STATE_CHANGED, {
            "from": current.value,
            "to": target.value,
            "reason": reason,
        }, wait=True)
        self._update_wake_lock()
        return True

    async def _enter_wake_listening(self, reason: str) -> None:
        self._turn = None
        if self.sessions.active is not None:
            await self.sessions.force_stop()
        if not self._transition(_S.WAKE_LISTENING, reason):
            return
        self._arm_listening()

    def _arm_listening(self) -> None:
        if self._state is not _S.WAKE_LISTENING:
            return
        if not self._vad_only:
            self._start_recognizer()
            return
        if self._capture_blocked:
            jarvis_log("ORCH", "Microphone blocked, automatic listening suspended until restart", level="WARNING")
            return
        self._arm("rearm", self.config_provider.current().vad_only_rearm_ms, "rearm")

    async def _begin_recording(self, reason: str, followup: bool = False,
                               no_speech_ms: Optional[int] = None) -> None:
        if self._state is _S.RECORDING:
            jarvis_log("ORCH", "Already recording, request ignored", level="DEBUG")
            return
        if self._state is _S.IDLE:
            return
        if self._state is _S.SPEAKING:
            # Barge-in
            self.output.clear()
            self.output.stop_audio()

        loop = asyncio.get_running_loop()
        turn = Turn(
            turn_id=next(self._turn_ids),
            started_at=loop.time(),
            config=self.config_provider.current(),
            followup=followup,
            no_speech_ms=no_speech_ms,
        )
        previous, self._turn = self._turn, turn
        if not self._transition(_S.RECORDING, reason):
            self._turn = previous
            return
        self._open_capture(turn)

    # ------------------------------------------------------------------
    # Capture

    def _open_capture(self, turn: Turn) -> None:
        turn.phase = PHASE_OPENING
        turn.open_task = self._spawn(self._run_open_capture(turn))
        # Watchdog for a capture start that never returns
        self._arm("capture_open", turn.config.recording_hard_stop_ms, "capture_open_timeout", turn)

    async def _run_open_capture(self, turn: Turn) -> None:
        # The recognizer's own input stream must be closed first
        stopping = self._recognizer_stop_task
        if stopping is not None and not stopping.done():
            await asyncio.wait([stopping])
        source = self.source_factory(turn.config)
        try:
            await source.start()
        except asyncio.CancelledError:
            await self._close_source(source)
            raise
        except Exception as e:
            self._post("capture_failed", turn, error=e)
            return
        self._post("capture_ready", turn, source=source)

    def _release_source(self, source: AudioSource) -> None:
        # Not cancelled by stop(), which waits for it instead
        task = asyncio.get_running_loop().create_task(self._close_source(source))
        self._closing.add(task)
        task.add_done_callback(self._closing.discard)

    async def _close_source(self, source: AudioSource) -> None:
        try:
            await source.stop()
        except Exception as e:
            jarvis_log("ORCH", f"Error closing capture: {e}", level="WARNING")

    def _on_capture_ready(self, source: AudioSource) -> None:
        turn = self._turn
        self._cancel("capture_open")
        turn.open_task = None
        if self._state is not _S.RECORDING or turn.phase != PHASE_OPENING:
            self._release_source(source)
            return
        self.backoff.reset()
        turn.session = self.sessions.begin_session(source, no_speech_window_ms=turn.no_speech_ms, config=turn.config)
        turn.phase = PHASE_RECORDING
        self._start_endpointing(turn)

    async def _on_capture_failed(self, error: Exception) -> None:
        turn = self._turn
        self._cancel("capture_open")
        if self._state is not _S.RECORDING or turn.phase != PHASE_OPENING:
            return
        error = as_voice_error(error, ErrorKind.CAPTURE_FAILED)
        turn.phase = PHASE_CAPTURE_FAILED
        if isinstance(error, MicPermissionDenied):
            self._capture_blocked = True
            self._surface_error(error)
            await self._enter_wake_listening("microphone permission denied")
            return
        jarvis_log("CAPTURE", f"Capture failed: {error.message}", level="WARNING")
        self._restart_with_backoff("capture failed")

    def _on_capture_open_timeout(self) -> None:
        turn = self._turn
        if self._state is not _S.RECORDING or turn.phase != PHASE_OPENING:
            return
        jarvis_log("CAPTURE", f"Capture did not open within {turn.config.recording_hard_stop_ms} ms", level="WARNING")
        if turn.open_task is not None:
            turn.open_task.cancel()
            turn.open_task = None
        turn.phase = PHASE_CAPTURE_FAILED
        self._restart_with_backoff("capture open timed out")

    async def _on_capture_lost(self, session: RecordingSession, reason: str) -> None:
        turn = self._turn
        if turn is None or turn.session is not session:
            return
        jarvis_log("CAPTURE", f"Capture lost during recording: {reason}", level="WARNING")
        await self.sessions.force_stop()
        turn.session = None
        turn.phase = PHASE_CAPTURE_FAILED
        self._restart_with_backoff(f"capture lost: {reason}")

    def _on_speech_started(self, session: RecordingSession) -> None:
        if self._turn is not None and self._turn.session is session:
            self._publish(EventType.SPEECH_STARTED, {"session_id": session.session_id})

    def _on_speech_ended(self, session: RecordingSession) -> None:
        if self._turn is not None and self._turn.session is session:
            self._publish(EventType.SPEECH_ENDED, {"session_id": session.session_id})

    async def _on_finalize(self, session: RecordingSession, reason: str) -> None:
        turn = self._turn
        if turn is None or turn.session is not session or self._state is not _S.RECORDING:
            if not session.closed:
                await self.sessions.end_session(session)
            return

        segment = await self.sessions.end_session(session)
        if segment is None:
            await self._enter_wake_listening(f"recording discarded ({reason})")
            return
        if not self._transition(_S.PROCESSING, reason):
            return
        turn.phase = PHASE_PROCESSING
        self._spawn(self._process_turn(turn, segment))

    async def _on_stop_recording(self) -> None:
        turn = self._turn
        if self._state is not _S.RECORDING or turn is None:
            return
        if turn.session is not None:
            self.sessions.request_finalize(turn.session, FINALIZE_EXPLICIT)
            return
        await self._enter_wake_listening("recording cancelled")

    # ------------------------------------------------------------------
    # Endpointing

    def _start_endpointing(self, turn: Turn) -> None:
        endpoint = self.capabilities.endpoint
        if not turn.config.endpointing_enabled or not is_supported(endpoint):
            return
        self._endpoint_active = True
        self._spawn(self._run_endpoint_start(turn))
        self._arm("endpoint_watchdog", turn.config.endpoint_watchdog_ms, "endpoint_watchdog", turn)

    async def _run_endpoint_start(self, turn: Turn) -> None:
        try:
            await self.capabilities.endpoint.start(lambda: self._post("endpoint_signal", turn))
        except Exception as e:
            jarvis_log("ENDPOINT", f"Endpoint recognizer unavailable for this recording: {e}", level="WARNING")

    def _stop_endpointing(self) -> None:
        if not self._endpoint_active:
            return
        self._endpoint_active = False
        self._spawn(self._safe_stop(self.capabilities.endpoint, "ENDPOINT"))

    def _on_endpoint_signal(self) -> None:
        turn = self._turn
        session = turn.session
        if self._state is not _S.RECORDING or session is None or session.closed:
            return
        elapsed = self.sessions.elapsed_ms(session)
        guard = turn.config.endpoint_guard_ms + turn.config.endpoint_guard_extra_ms
        if elapsed < guard:
            jarvis_log("ENDPOINT", f"End of utterance ignored inside guard ({elapsed:.0f} < {guard} ms)",
                       level="DEBUG")
            return
        if not session.has_detected_speech:
            jarvis_log("ENDPOINT", "End of utterance ignored, no speech detected yet", level="DEBUG")
            return
        self.sessions.request_finalize(session, FINALIZE_ENDPOINT)

    def _on_endpoint_watchdog(self) -> None:
        jarvis_log("ENDPOINT", "Endpoint watchdog expired, stopping recognizer", level="WARNING")
        self._stop_endpointing()

    # ------------------------------------------------------------------
    # Processing

    async def _route_command(self, text: str) -> Optional[CommandResult]:
        if self.command_router is None:
            return None
        try:
            result = self.command_router.route(text)
            if inspect.isawaitable(result):
                result = await result
        except Exception as e:
            jarvis_log("COMMAND", f"Router error, passing to backend: {e}", level="WARNING")
            return None
        return result

    async def _process_turn(self, turn: Turn, segment) -> None:
        config = turn.config
        try:
            text = (await self.transcriber.transcribe(segment) or "").strip()
        except Exception as e:
            self._post("turn_error", turn, error=as_voice_error(e, ErrorKind.TRANSCRIPTION_FAILED))
            return

        turn.transcript = text
        if not text:
            self._post("turn_finished", turn, reason="empty transcript")
            return
        jarvis_log("STT", f"Heard: {text}")
        self._publish(EventType.TRANSCRIPT, {"text": text, "turn_id": turn.turn_id})
        self._publish(EventType.SUBTITLE, {"role": "user", "text": text})

        result = await self._route_command(text)
        if result is not None and result.handled:
            self._post("command_handled", turn, result=result)
            return

        try:
            reply = await acquire_reply(
                self.backend, text,
                correlation_id=turn.correlation_id,
                timeout_ms=config.reply_timeout_ms,
                interval_ms=config.poll_interval_ms,
            )
        except Exception as e:
            self._post("turn_error", turn, error=as_voice_error(e, ErrorKind.DISPATCH_FAILED))
            return
        if not reply:
            self._post("turn_finished", turn, reason="no reply")
            return
        self._post("reply_ready", turn, text=reply)

    async def _on_command_handled(self, result: CommandResult) -> None:
        turn = self._turn
        if self._state is not _S.PROCESSING:
            return
        if result.speak:
            turn.record_after = result.start_recording
            await self._speak(turn, result.speak, turn.config.command_echo_suppress_ms, kind="command")
        elif result.start_recording:
            await self._begin_recording("command requested capture")
        else:
            await self._enter_wake_listening("command handled")

    async def _on_reply_ready(self, text: str) -> None:
        turn = self._turn
        if self._state is not _S.PROCESSING:
            return
        turn.reply = text
        await self._speak(turn, text, turn.config.reply_echo_suppress_ms, kind="reply")

    async def _on_turn_finished(self, reason: str) -> None:
        if self._state is _S.PROCESSING:
            await self._enter_wake_listening(reason)

    async def _on_turn_error(self, error: VoiceError) -> None:
        self._surface_error(error)
        if self._state is _S.PROCESSING:
            await self._enter_wake_listening(error.kind.value)

    # ------------------------------------------------------------------
    # Speaking

    async def _speak(self, turn: Turn, text: str, suppress_ms: int, kind: str) -> None:
        if not self.speech_guard.should_speak(text):
            jarvis_log("GUARD", f"Suppressed duplicate {kind}: {text[:60]!r}")
            await self._enter_wake_listening(f"duplicate {kind}")
            return
        self.speech_guard.suppress_for(suppress_ms)

        if kind == "reply":
            self._publish(EventType.REPLY, {
                "text": text,
                "correlation_id": turn.correlation_id,
                "turn_id": turn.turn_id,
            })
        self._publish(EventType.SUBTITLE, {"role": "assistant", "text": text})

        if not self._transition(_S.SPEAKING, kind):
            return
        turn.phase = PHASE_SPEAKING
        self._arm("speaking_watchdog", turn.config.speaking_watchdog_ms, "speaking_watchdog", turn)
        self._spawn(self._run_speech(turn, normalize_tts_text(text)))

    async def _run_speech(self, turn: Turn, text: str) -> None:
        try:
            path = await self.output.speak(text)
            jarvis_log("TTS", f"Spoken via {path}", level="DEBUG")
        except PlaybackFailed as e:
            self._post("speech_failed", turn, error=e)

    def _on_speech_failed(self, error: PlaybackFailed) -> None:
        # The queue's idle notification still ends the turn
        self._surface_error(error)

    async def _on_playback_idle(self) -> None:
        turn = self._turn
        if self._state is not _S.SPEAKING or turn is None or turn.phase != PHASE_SPEAKING:
            return
        await self._finish_speaking(turn, "playback finished")

    async def _on_speaking_watchdog(self) -> None:
        turn = self._turn
        if self._state is not _S.SPEAKING or turn.phase != PHASE_SPEAKING:
            return
        jarvis_log("TTS", f"Speaking watchdog fired after {turn.config.speaking_watchdog_ms} ms", level="WARNING")
        self.output.stop_audio()
        self.output.clear()
        await self._finish_speaking(turn, "speaking watchdog")

    async def _finish_speaking(self, turn: Turn, reason: str) -> None:
        self._cancel("speaking_watchdog")
        if turn.config.continuous_conversation or turn.record_after:
            turn.phase = PHASE_FOLLOW_UP
            self._spawn(self._run_follow_up(turn))
            return
        turn.phase = PHASE_DONE
        await self._enter_wake_listening(reason)

    async def _run_follow_up(self, turn: Turn) -> None:
        config = turn.config
        await asyncio.sleep(config.followup_delay_ms / 1000.0)
        if config.followup_chime:
            await self.output.play_chime(config.chime_volume, config.chime_preset, config.chime_path)
        self._post("follow_up_ready", turn)

    async def _on_follow_up_ready(self) -> None:
        turn = self._turn
        if self._state is not _S.SPEAKING or turn.phase != PHASE_FOLLOW_UP:
            return
        no_speech = turn.config.followup_no_speech_ms if turn.config.continuous_conversation else None
        await self._begin_recording("follow-up", followup=True, no_speech_ms=no_speech)

    # ------------------------------------------------------------------
    # Wake word

    def _start_recognizer(self) -> None:
        if self._recognizer_active:
            return
        if self._recognizer_task is not None and not self._recognizer_task.done():
            return
        self._recognizer_task = self._spawn(self._run_recognizer_start())

    async def _run_recognizer_start(self) -> None:
        stopping = self._recognizer_stop_task
        if stopping is not None and not stopping.done():
            await asyncio.wait([stopping])
        try:
            await self.capabilities.recognizer.start(self.notify_wake_word)
        except Exception as e:
            self._post("recognizer_failed", error=e)
            return
        self._post("recognizer_started")

    def _stop_recognizer(self) -> None:
        if not is_supported(self.capabilities.recognizer):
            return
        starting, self._recognizer_task = self._recognizer_task, None
        if not self._recognizer_active and starting is None:
            return
        self._recognizer_active = False
        self._recognizer_stop_task = self._spawn(self._run_recognizer_stop(starting))

    async def _run_recognizer_stop(self, starting: Optional[asyncio.Task]) -> None:
        if starting is not None and not starting.done():
            await asyncio.wait([starting])
        await self._safe_stop(self.capabilities.recognizer, "OWW")

    @staticmethod
    async def _safe_stop(component, tag: str) -> None:
        try:
            await component.stop()
        except Exception as e:
            jarvis_log(tag, f"Error while stopping: {e}", level="WARNING")

    def _on_recognizer_started(self) -> None:
        if self._state is not _S.WAKE_LISTENING:
            return
        self._recognizer_active = True
        self._recognizer_attempt = 0
        self.backoff.reset()

    def _on_recognizer_failed(self, error: Exception) -> None:
        if self._state is not _S.WAKE_LISTENING:
            return
        error = as_voice_error(error, ErrorKind.ENGINE_INIT_FAILED)
        config = self.config_provider.current()
        if isinstance(error, MicPermissionDenied):
            self._capture_blocked = True
            self._surface_error(error)
            return

        self._recognizer_attempt += 1
        if self._recognizer_attempt >= config.wake_word_max_attempts:
            self._surface_error(EngineInitFailed(
                f"Wake word recognizer failed {self._recognizer_attempt} times, continuing without it: "
                f"{error.message}"
            ))
            self._vad_only = True
            self._arm_listening()
            return
        delay = config.wake_word_retry_base_ms * (2 ** (self._recognizer_attempt - 1))
        jarvis_log("OWW", f"Recognizer start failed ({error.message}), retry {self._recognizer_attempt} "
                          f"in {delay} ms", level="WARNING")
        self._arm("recognizer_retry", delay, "recognizer_retry")

    def _on_recognizer_retry(self) -> None:
        if self._state is _S.WAKE_LISTENING:
            self._start_recognizer()

    async def _on_wake_word(self, name: str) -> None:
        if self._state is not _S.WAKE_LISTENING:
            return
        jarvis_log("OWW", f"Wake word: {name}")
        self._publish(EventType.WAKE_WORD_DETECTED, {"name": name}, wait=True)
        await self._begin_recording("wake word")

    async def _on_rearm(self) -> None:
        if self._state is _S.WAKE_LISTENING and self._vad_only and not self._capture_blocked:
            await self._begin_recording("listening (VAD only)")

    # ------------------------------------------------------------------
    # Recovery

    def _restart_with_backoff(self, reason: str) -> None:
        if self._state is _S.IDLE:
            return
        if "restart" in self._timers:
            jarvis_log("RECOVERY", f"Restart already scheduled, ignoring ({reason})", level="DEBUG")
            return
        delay = self.backoff.next_delay()
        jarvis_log("RECOVERY", f"Restart #{self.backoff.attempt} in {delay} ms ({reason})")
        self._arm("restart", delay, "restart_due")

    def _on_restart(self, reason: str) -> None:
        self._restart_with_backoff(reason)

    def _on_restart_due(self) -> None:
        turn = self._turn
        if self._state is _S.RECORDING:
            if turn is not None and turn.phase == PHASE_CAPTURE_FAILED:
                self._open_capture(turn)
        elif self._state is _S.WAKE_LISTENING:
            if self._vad_only:
                self._arm_listening()
            else:
                self._stop_recognizer()
                self._start_recognizer()

    # ------------------------------------------------------------------
    # Lifecycle

    async def _on_start(self) -> None:
        if self._state is not _S.IDLE:
            return
        config = self.config_provider.current()
        self.backoff = RestartBackoff(config.restart_base_ms, config.restart_max_ms)
        self.sessions.config = config
        self._capture_blocked = False
        self._recognizer_attempt = 0
        self._vad_only = not is_supported(self.capabilities.recognizer)
        mode = "VAD only" if self._vad_only else "wake word"
        jarvis_log("ORCH", f"Starting ({mode}, continuous={'on' if config.continuous_conversation else 'off'})")
        await self._enter_wake_listening("start")

    async def _on_stop(self) -> None:
        if self._state is _S.IDLE:
            return
        self._turn = None
        self._transition(_S.IDLE, "stop")

        for name in list(self._timers):
            self._cancel(name)
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        self.output.clear()
        self.output.stop_audio()
        await self.sessions.force_stop()
        if tasks or self._closing:
            await asyncio.gather(*tasks, *self._closing, return_exceptions=True)

        self._recognizer_task = None
        self._recognizer_stop_task = None
        self._recognizer_active = False
        if is_supported(self.capabilities.recognizer):
            await self._safe_stop(self.capabilities.recognizer, "OWW")
        if is_supported(self.capabilities.endpoint):
            await self._safe_stop(self.capabilities.endpoint, "ENDPOINT")
        self._endpoint_active = False

        lock = self.capabilities.wake_lock
        self._wake_lock_held = False
        if is_supported(lock):
            await self._apply_wake_lock(lock, False)
        jarvis_log("ORCH", "Stopped")

    async def _on_request_recording(self) -> None:
        if self._state is _S.IDLE:
            jarvis_log("ORCH", "Recording requested while stopped, ignored", level="WARNING")
            return
        await self._begin_recording("requested")

    def _on_foreground(self, active: bool) -> None:
        was_foreground, self._foreground = self._foreground, active
        jarvis_log("ORCH", f"{'Foreground' if active else 'Background'}", level="DEBUG")
        if active and not was_foreground and self._state in RUNNING_STATES:
            self._restart_with_backoff("foreground resume")
        self._update_wake_lock()

    # ------------------------------------------------------------------
    # Wake lock

    def _update_wake_lock(self) -> None:
        lock = self.capabilities.wake_lock
        if not is_supported(lock):
            return
        wanted = self._state in RUNNING_STATES and self._foreground
        if wanted == self._wake_lock_held:
            return
        self._wake_lock_held = wanted
        self._spawn(self._apply_wake_lock(lock, wanted))

    @staticmethod
    async def _apply_wake_lock(lock, acquire: bool) -> None:
        try:
            if acquire:
                await lock.acquire()
            else:
                await lock.release()
        except (OSError, RuntimeError) as e:
            jarvis_log("POWER", f"Wake lock {'acquire' if acquire else 'release'} failed: {e}", level="WARNING")
