"""End-to-end tests for the conversation orchestrator with fake collaborators."""

import asyncio
import os
import sys
import time
from datetime import datetime

import numpy as np
import pytest

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from jarvis_voice.audio_capture import AudioSource
from jarvis_voice.capabilities import PlatformCapabilities, Unsupported, WakeLock
from jarvis_voice.commands import PhraseCommandRouter
from jarvis_voice.config_loader import ConfigProvider, JarvisConfig
from jarvis_voice.errors import CaptureFailed, EngineInitFailed, MicPermissionDenied
from jarvis_voice.event_bus import EventBus, EventType
from jarvis_voice.orchestrator import ConversationOrchestrator, RestartBackoff
from jarvis_voice.playback import AudioOutputService
from jarvis_voice.state_machine import ConversationState
from jarvis_voice.wake_word import EndpointRecognizer, WakeWordRecognizer

SR = 16000
FRAME = 320

# Makes FakeSource.start() block until cancelled
HANG = object()


def speech_chunks(ms=1000, db=-20):
    rng = np.random.default_rng(11)
    n = SR * ms // 1000
    x = rng.standard_normal(n)
    x *= 10 ** (db / 20) / np.sqrt(np.mean(x * x))
    x = x.astype(np.float32)
    return [x[i:i + FRAME] for i in range(0, n, FRAME)]


async def wait_for(predicate, timeout=3.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.01)


# ------------------------------------------------------------------
# Fakes

class FakeSource(AudioSource):
    def __init__(self, error=None):
        super().__init__(SR)
        self.error = error
        self.stopped = False

    async def start(self):
        if self.error is HANG:
            await asyncio.sleep(30)
        if self.error is not None:
            raise self.error
        await super().start()

    async def stop(self):
        self.stopped = True
        await super().stop()


class FakeVad:
    def __init__(self, config, sample_rate, on_speech_start=None, on_speech_end=None, on_metrics=None):
        self.on_speech_start = on_speech_start
        self.on_speech_end = on_speech_end
        self.stopped = False

    def start(self, source):
        self.source = source

    def stop(self):
        self.stopped = True


class FakeTranscriber:
    def __init__(self, text):
        self.text = text
        self.calls = 0

    async def transcribe(self, segment):
        self.calls += 1
        return self.text

    async def close(self):
        pass


class FakeBackend:
    def __init__(self, replies):
        self.replies = list(replies)
        self.dispatched = []

    async def dispatch(self, text, correlation_id):
        self.dispatched.append(text)
        return self.replies.pop(0) if self.replies else None

    async def poll(self, correlation_id):
        return None

    async def close(self):
        pass


class FakePlayer:
    def __init__(self):
        self.played = []
        self.stops = 0

    async def play(self, samples, sample_rate):
        self.played.append(sample_rate)

    async def play_stream(self, chunks, sample_rate):
        raise AssertionError("no synthesizer configured")

    def stop(self):
        self.stops += 1


class FakeNative:
    def __init__(self, hang=False):
        self.hang = hang
        self.said = []
        self.finished_at = []
        self.stops = 0

    async def say(self, text):
        self.said.append(text)
        if self.hang:
            await asyncio.sleep(30)
        self.finished_at.append(time.monotonic())

    def stop(self):
        self.stops += 1


class FakeRecognizer(WakeWordRecognizer):
    def __init__(self, failures=0, error=None):
        self.failures = failures
        self.error = error or EngineInitFailed("model missing")
        self.starts = 0
        self.stops = 0
        self.callback = None
        self._listening = False

    async def start(self, on_detected):
        self.starts += 1
        if self.failures is None or self.starts <= self.failures:
            raise self.error
        self.callback = on_detected
        self._listening = True

    async def stop(self):
        self.stops += 1
        self._listening = False

    @property
    def listening(self):
        return self._listening

    def fire(self):
        self.callback("hey_jarvis")


class FakeEndpoint(EndpointRecognizer):
    def __init__(self):
        self.callback = None

    async def start(self, on_end_of_utterance):
        self.callback = on_end_of_utterance

    async def stop(self):
        self.callback = None


class FakeWakeLock(WakeLock):
    def __init__(self):
        self.acquired = 0
        self.released = 0

    async def acquire(self):
        self.acquired += 1

    async def release(self):
        self.released += 1


class Harness:
    def __init__(self, recognizer=None, endpoint=None, router=None, replies=("Sunny.",),
                 transcript="what's the weather", start_errors=(), native=None, **overrides):
        settings = {"vad_only_rearm_ms": 60000, "followup_chime": False}
        settings.update(overrides)
        self.provider = ConfigProvider(config=JarvisConfig(**settings))

        self.bus = EventBus()
        self.states = []
        self.state_times = []
        self.errors = []
        self.wake_events = []
        self.replies = []
        self.bus.subscribe(EventType.STATE_CHANGED, self._on_state, async_mode=False)
        self.bus.subscribe(EventType.ERROR, lambda e: self.errors.append(e.get("kind")), async_mode=False)
        self.bus.subscribe(EventType.WAKE_WORD_DETECTED, self.wake_events.append, async_mode=False)
        self.bus.subscribe(EventType.REPLY, lambda e: self.replies.append(e.get("text")), async_mode=False)

        self.start_errors = list(start_errors)
        self.sources = []
        self.vads = []
        self.player = FakePlayer()
        self.native = native or FakeNative()
        self.wake_lock = FakeWakeLock()
        self.transcriber = FakeTranscriber(transcript)
        self.backend = FakeBackend(replies)
        capabilities = PlatformCapabilities(
            recognizer or Unsupported("test"),
            endpoint or Unsupported("test"),
            self.wake_lock,
        )
        self.orch = ConversationOrchestrator(
            self.provider,
            source_factory=self._make_source,
            transcriber=self.transcriber,
            backend=self.backend,
            output=AudioOutputService(player=self.player, native=self.native),
            capabilities=capabilities,
            command_router=router,
            event_bus=self.bus,
            vad_factory=self._make_vad,
        )

    def _on_state(self, event):
        self.states.append(event.get("to"))
        self.state_times.append((event.get("to"), time.monotonic()))

    def _make_source(self, config):
        source = FakeSource(self.start_errors.pop(0) if self.start_errors else None)
        self.sources.append(source)
        return source

    def _make_vad(self, *args, **kwargs):
        vad = FakeVad(*args, **kwargs)
        self.vads.append(vad)
        return vad

    @property
    def state(self):
        return self.orch.state

    async def utter(self):
        """Speak into the active session and stop recording."""
        await wait_for(lambda: self.orch.sessions.active is not None)
        source = self.orch.sessions.active.source
        for chunk in speech_chunks():
            source.emit(chunk)
        self.vads[-1].on_speech_start()
        await self.orch.request_stop_recording()


# ------------------------------------------------------------------

class TestRestartBackoff:
    def test_doubling_and_reset(self):
        backoff = RestartBackoff(500, 30000)
        assert [backoff.next_delay() for _ in range(3)] == [500, 1000, 2000]
        backoff.reset()
        assert backoff.next_delay() == 500

    def test_cap(self):
        backoff = RestartBackoff(500, 30000)
        delays = [backoff.next_delay() for _ in range(10)]
        assert max(delays) == 30000
        assert delays[-1] == 30000


def test_wake_word_turn_round_trip():
    async def scenario():
        recognizer = FakeRecognizer()
        h = Harness(recognizer=recognizer)
        await h.orch.start()
        await wait_for(lambda: recognizer.listening)
        recognizer.fire()
        await h.utter()
        await wait_for(lambda: h.native.said and h.state is ConversationState.WAKE_LISTENING)
        await wait_for(lambda: recognizer.listening)
        await h.orch.close()
        return h, recognizer

    h, recognizer = asyncio.run(scenario())
    assert h.states == ["wake_listening", "recording", "processing", "speaking", "wake_listening", "idle"]
    assert len(h.wake_events) == 1
    assert h.transcriber.calls == 1
    assert h.backend.dispatched == ["what's the weather"]
    assert h.native.said == ["Sunny."]
    assert h.replies == ["Sunny."]
    assert recognizer.starts == 2
    assert h.wake_lock.acquired == 1
    assert h.wake_lock.released >= 1
    assert h.errors == []
    assert "unknown" not in h.errors
    assert len(h.sources) == 1
    assert h.sources[0].stopped


def test_request_recording_while_recording_is_noop():
    async def scenario():
        h = Harness()
        await h.orch.start()
        await h.orch.request_recording()
        await wait_for(lambda: h.orch.sessions.active is not None)
        await h.orch.request_recording()
        await asyncio.sleep(0.05)
        await h.orch.close()
        return h

    h = asyncio.run(scenario())
    assert len(h.sources) == 1
    assert h.states.count("recording") == 1


def test_stop_cancels_all_timers():
    async def scenario():
        h = Harness(recording_hard_stop_ms=200, vad_only_rearm_ms=30)
        await h.orch.start()
        await wait_for(lambda: h.orch.sessions.active is not None)
        await h.orch.stop()
        count = len(h.states)
        await asyncio.sleep(0.5)
        after = len(h.states)
        await h.orch.close()
        return h, count, after

    h, count, after = asyncio.run(scenario())
    assert h.states[-1] == "idle"
    assert count == after
    assert h.orch.sessions.active is None
    assert all(source.stopped for source in h.sources)
    assert h.transcriber.calls == 0


def test_silent_recording_returns_to_listening():
    async def scenario():
        h = Harness(no_speech_window_ms=1000)
        await h.orch.start()
        await h.orch.request_recording()
        await wait_for(lambda: h.orch.sessions.active is not None)
        await wait_for(lambda: h.states[-1] == "wake_listening" and "recording" in h.states, timeout=3.0)
        await h.orch.close()
        return h

    h = asyncio.run(scenario())
    assert h.states[:3] == ["wake_listening", "recording", "wake_listening"]
    assert h.transcriber.calls == 0
    assert h.errors == []


def test_continuous_follow_up_without_wake_word():
    async def scenario():
        h = Harness(continuous_conversation=True, followup_chime=True, followup_no_speech_ms=2000)
        await h.orch.start()
        await h.orch.request_recording()
        await h.utter()
        await wait_for(lambda: h.states.count("recording") == 2 and h.orch.sessions.active is not None)
        session = h.orch.sessions.active
        await h.orch.close()
        return h, session

    h, session = asyncio.run(scenario())
    assert h.states[:5] == ["wake_listening", "recording", "processing", "speaking", "recording"]
    assert h.wake_events == []
    assert session.no_speech_window_ms == 2000
    assert len(h.player.played) == 1
    second_recording = [t for state, t in h.state_times if state == "recording"][1]
    assert second_recording - h.native.finished_at[0] < 0.5


def test_capture_failures_back_off_then_reset():
    async def scenario():
        h = Harness(restart_base_ms=20, start_errors=[CaptureFailed("busy")] * 3)
        await h.orch.start()
        await h.orch.request_recording()
        await wait_for(lambda: h.orch.sessions.active is not None)
        await h.orch.close()
        return h

    h = asyncio.run(scenario())
    assert h.orch.backoff.history == [20, 40, 80]
    assert h.orch.backoff.attempt == 0
    assert len(h.sources) == 4
    assert h.errors == []


def test_capture_that_never_opens_is_abandoned_and_retried():
    async def scenario():
        h = Harness(recording_hard_stop_ms=200, restart_base_ms=20, start_errors=[HANG])
        await h.orch.start()
        await h.orch.request_recording()
        await asyncio.sleep(0.1)
        still_opening = h.orch.sessions.active is None and h.state is ConversationState.RECORDING
        await wait_for(lambda: h.orch.sessions.active is not None)
        await h.orch.close()
        return h, still_opening

    h, still_opening = asyncio.run(scenario())
    assert still_opening
    assert len(h.sources) == 2
    assert h.sources[0].stopped
    assert h.orch.backoff.history == [20]
    assert h.errors == []


def test_unexpected_capture_ready_closes_the_source():
    async def scenario():
        h = Harness()
        await h.orch.start()
        await h.orch.request_recording()
        await wait_for(lambda: h.orch.sessions.active is not None)
        late = FakeSource()
        await late.start()
        h.orch._post("capture_ready", h.orch.turn, source=late)
        await h.orch.stop()
        await asyncio.sleep(0.05)
        await h.orch.close()
        return h, late

    h, late = asyncio.run(scenario())
    assert late.stopped
    assert h.errors == []


def test_permission_denied_surfaces_and_suspends_rearm():
    async def scenario():
        h = Harness(vad_only_rearm_ms=20, start_errors=[MicPermissionDenied("denied")])
        await h.orch.start()
        await wait_for(lambda: h.errors)
        await asyncio.sleep(0.2)
        sources_while_blocked = len(h.sources)
        state_while_blocked = h.state
        await h.orch.stop()
        await h.orch.start()
        await wait_for(lambda: len(h.sources) == 2)
        await h.orch.close()
        return h, sources_while_blocked, state_while_blocked

    h, sources_while_blocked, state_while_blocked = asyncio.run(scenario())
    assert h.errors == ["mic_permission_denied"]
    assert sources_while_blocked == 1
    assert state_while_blocked is ConversationState.WAKE_LISTENING


def test_recognizer_failures_fall_back_to_vad_only():
    async def scenario():
        recognizer = FakeRecognizer(failures=None)
        h = Harness(recognizer=recognizer, wake_word_retry_base_ms=10, wake_word_max_attempts=3)
        await h.orch.start()
        await wait_for(lambda: h.orch.vad_only)
        await h.orch.close()
        return h, recognizer

    h, recognizer = asyncio.run(scenario())
    assert recognizer.starts == 3
    assert h.errors == ["engine_init_failed"]


def test_duplicate_reply_is_not_spoken_twice():
    async def scenario():
        h = Harness(replies=["Sunny.", "Sunny."])
        await h.orch.start()
        await h.orch.request_recording()
        await h.utter()
        await wait_for(lambda: "speaking" in h.states and h.states[-1] == "wake_listening")
        await h.orch.request_recording()
        await h.utter()
        await wait_for(lambda: h.transcriber.calls == 2 and h.states[-1] == "wake_listening")
        await h.orch.close()
        return h

    h = asyncio.run(scenario())
    assert h.native.said == ["Sunny."]
    assert h.states.count("speaking") == 1
    assert h.replies == ["Sunny."]


def test_local_command_skips_backend():
    async def scenario():
        router = PhraseCommandRouter(wake_words=["jarvis"], clock=lambda: datetime(2024, 1, 1, 15, 5))
        h = Harness(router=router, transcript="Jarvis, what time is it?")
        await h.orch.start()
        await h.orch.request_recording()
        await h.utter()
        await wait_for(lambda: h.native.said and h.states[-1] == "wake_listening")
        await h.orch.close()
        return h

    h = asyncio.run(scenario())
    assert h.backend.dispatched == []
    assert h.native.said == ["It's 3:05 PM."]
    assert h.replies == []


def test_router_error_falls_through_to_backend():
    class BrokenRouter:
        def route(self, text):
            raise ValueError("bad grammar")

    async def scenario():
        h = Harness(router=BrokenRouter())
        await h.orch.start()
        await h.orch.request_recording()
        await h.utter()
        await wait_for(lambda: h.native.said and h.states[-1] == "wake_listening")
        await h.orch.close()
        return h

    h = asyncio.run(scenario())
    assert h.backend.dispatched == ["what's the weather"]
    assert h.native.said == ["Sunny."]


def test_no_reply_returns_to_listening():
    async def scenario():
        h = Harness(replies=[], reply_timeout_ms=5000, poll_interval_ms=100)
        await h.orch.start()
        await h.orch.request_recording()
        await h.utter()
        await wait_for(lambda: h.states[-1] == "wake_listening" and "processing" in h.states, timeout=7.0)
        await h.orch.close()
        return h

    h = asyncio.run(scenario())
    assert "speaking" not in h.states
    assert h.native.said == []


def test_speaking_watchdog_recovers_from_stuck_playback():
    async def scenario():
        h = Harness(native=FakeNative(hang=True), speaking_watchdog_ms=1000)
        assert h.provider.current().speaking_watchdog_ms == 3000
        await h.orch.start()
        await h.orch.request_recording()
        await h.utter()
        await wait_for(lambda: h.states[-1] == "speaking")
        started = time.monotonic()
        await wait_for(lambda: h.states[-1] == "wake_listening", timeout=5.0)
        elapsed = time.monotonic() - started
        await h.orch.close()
        return h, elapsed

    h, elapsed = asyncio.run(scenario())
    assert 2.9 <= elapsed < 4.0
    assert h.player.stops >= 1
    assert h.native.stops >= 1


def test_endpoint_signal_respects_guard():
    async def scenario():
        endpoint = FakeEndpoint()
        h = Harness(endpoint=endpoint, endpointing_enabled=True, endpoint_guard_ms=300,
                    endpoint_guard_extra_ms=200)
        await h.orch.start()
        await h.orch.request_recording()
        await wait_for(lambda: h.orch.sessions.active is not None and endpoint.callback is not None)
        source = h.orch.sessions.active.source
        for chunk in speech_chunks():
            source.emit(chunk)
        h.vads[-1].on_speech_start()
        endpoint.callback()
        await asyncio.sleep(0.1)
        early_state = h.state
        await asyncio.sleep(0.5)
        endpoint.callback()
        await wait_for(lambda: "processing" in h.states)
        await h.orch.close()
        return h, early_state

    h, early_state = asyncio.run(scenario())
    assert early_state is ConversationState.RECORDING
    assert "processing" in h.states


def test_background_releases_wake_lock_and_resume_restarts():
    async def scenario():
        h = Harness()
        await h.orch.start()
        await wait_for(lambda: h.wake_lock.acquired == 1)
        await h.orch.set_foreground(False)
        await wait_for(lambda: h.wake_lock.released == 1)
        await h.orch.set_foreground(True)
        await wait_for(lambda: h.wake_lock.acquired == 2)
        history = list(h.orch.backoff.history)
        await h.orch.close()
        return h, history

    h, history = asyncio.run(scenario())
    assert history == [h.provider.current().restart_base_ms]


def test_start_is_idempotent_and_stop_from_idle_is_safe():
    async def scenario():
        h = Harness()
        await h.orch.stop()
        await h.orch.start()
        await h.orch.start()
        await h.orch.close()
        return h

    h = asyncio.run(scenario())
    assert h.states == ["wake_listening", "idle"]


def test_request_recording_while_stopped_is_ignored():
    async def scenario():
        h = Harness()
        await h.orch.request_recording()
        await h.orch.close()
        return h

    h = asyncio.run(scenario())
    assert h.sources == []
    assert h.states == []
    assert h.orch.state is ConversationState.IDLE


@pytest.mark.parametrize("kind", ["reply", "command"])
def test_subtitles_published_for_speech(kind):
    async def scenario():
        router = PhraseCommandRouter(clock=lambda: datetime(2024, 1, 1, 9, 30)) if kind == "command" else None
        transcript = "what time is it" if kind == "command" else "hello"
        h = Harness(router=router, transcript=transcript)
        subtitles = []
        h.bus.subscribe(EventType.SUBTITLE, lambda e: subtitles.append(e.get("role")), async_mode=False)
        await h.orch.start()
        await h.orch.request_recording()
        await h.utter()
        await wait_for(lambda: h.native.said and h.states[-1] == "wake_listening")
        await h.orch.close()
        return subtitles

    assert asyncio.run(scenario()) == ["user", "assistant"]
