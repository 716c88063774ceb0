"""
Event bus for everything the pipeline exposes to collaborators.

The orchestrator publishes state changes, subtitles, transcripts, replies,
VAD metrics and errors here instead of calling UI code directly.

- ``wait=True`` events are dispatched on the publisher's thread before
  ``publish`` returns, so a STATE_CHANGED is observed before anything the new
  state causes
- everything else goes through a bounded queue drained by one worker thread;
  when it is full, VAD metrics are dropped quietly and other events with a
  warning
- until ``start()`` every publish is dispatched inline
"""

import itertools
import queue
import threading
import time
from collections import defaultdict
from dataclasses import dataclass, field
from enum import Enum, auto
from typing import Any, Callable, Dict, List, Optional

from jarvis_voice.utils import jarvis_log


class EventType(Enum):
    """Events published by the pipeline."""
    # Audio
    SPEECH_STARTED = auto()
    SPEECH_ENDED = auto()
    WAKE_WORD_DETECTED = auto()
    VAD_METRICS = auto()

    # Conversation
    STATE_CHANGED = auto()
    SUBTITLE = auto()
    TRANSCRIPT = auto()
    REPLY = auto()

    # Errors (payload: kind, message, error_id)
    ERROR = auto()

    # System
    SYSTEM_STARTUP = auto()
    SYSTEM_SHUTDOWN = auto()
    CONFIG_RELOADED = auto()


# Dropped without a warning when the queue is full
LOSSY_EVENTS = frozenset({EventType.VAD_METRICS})

_sequence = itertools.count(1)


@dataclass
class Event:
    type: EventType
    payload: Dict[str, Any] = field(default_factory=dict)
    source: str = "unknown"
    timestamp: float = field(default_factory=time.time)
    seq: int = field(default_factory=lambda: next(_sequence))

    def get(self, key: str, default=None):
        return self.payload.get(key, default)

    def __repr__(self):
        return f"Event({self.type.name}, seq={self.seq}, src={self.source})"


@dataclass
class Subscription:
    subscription_id: str
    event_type: EventType
    callback: Callable[[Event], None]
    on_worker: bool

    def deliver(self, event: Event) -> None:
        try:
            self.callback(event)
        except Exception as e:
            name = getattr(self.callback, "__name__", "handler")
            jarvis_log("EVENT_BUS", f"{name} failed on {event.type.name}: {e!r}", level="ERROR")


class EventBus:
    """Pub/sub bus. One instance per service, passed to the orchestrator."""

    def __init__(self, max_queue_size: int = 500):
        self._subscriptions: Dict[EventType, List[Subscription]] = defaultdict(list)
        self._queue: "queue.Queue[Optional[Event]]" = queue.Queue(maxsize=max_queue_size)
        self._worker: Optional[threading.Thread] = None
        self._running = False
        self._lock = threading.RLock()
        self._ids = itertools.count(1)
        self.published = 0
        self.dropped = 0

    @property
    def running(self) -> bool:
        return self._running

    def start(self) -> None:
        if self._running:
            return
        self._running = True
        self._worker = threading.Thread(target=self._drain, name="jarvis-events", daemon=True)
        self._worker.start()
        jarvis_log("EVENT_BUS", "Started")

    def stop(self) -> None:
        """Stop the worker after it has delivered what is already queued."""
        if not self._running:
            return
        self._running = False
        self._queue.put(None)
        worker, self._worker = self._worker, None
        if worker is not None:
            worker.join(timeout=2.0)
        jarvis_log("EVENT_BUS", "Stopped")

    def _drain(self) -> None:
        while True:
            event = self._queue.get()
            if event is None:
                break
            self._dispatch(event, from_worker=True)

    def _dispatch(self, event: Event, from_worker: bool) -> None:
        with self._lock:
            subscriptions = list(self._subscriptions.get(event.type, ()))
        for subscription in subscriptions:
            if subscription.on_worker and self._running and not from_worker:
                # Threaded subscribers never run on the publisher's thread
                self._deliver_threaded(subscription, event)
                continue
            subscription.deliver(event)

    def _deliver_threaded(self, subscription: Subscription, event: Event) -> None:
        threading.Thread(target=subscription.deliver, args=(event,), daemon=True).start()

    def publish(
        self,
        event_type: EventType,
        payload: Optional[Dict[str, Any]] = None,
        source: str = "unknown",
        wait: bool = False
    ) -> Optional[Event]:
        """Publish an event.

        Args:
            event_type: Event type
            payload: Event data
            source: Publishing component
            wait: Dispatch before returning instead of through the queue

        Returns:
            The event, or None if it was dropped
        """
        event = Event(type=event_type, payload=payload or {}, source=source)
        with self._lock:
            self.published += 1

        if wait or not self._running:
            self._dispatch(event, from_worker=False)
            return event

        try:
            self._queue.put_nowait(event)
        except queue.Full:
            with self._lock:
                self.dropped += 1
            if event_type not in LOSSY_EVENTS:
                jarvis_log("EVENT_BUS", f"Queue full, dropped {event_type.name}", level="WARNING")
            return None
        return event

    def subscribe(
        self,
        event_type: EventType,
        callback: Callable[[Event], None],
        async_mode: bool = True
    ) -> str:
        """Register ``callback`` for ``event_type``.

        With ``async_mode`` the callback never runs on the publisher's thread
        once the bus is started; otherwise it runs wherever the event is
        dispatched. Returns an id for :meth:`unsubscribe`.
        """
        subscription = Subscription(
            subscription_id=f"{event_type.name.lower()}-{next(self._ids)}",
            event_type=event_type,
            callback=callback,
            on_worker=async_mode,
        )
        with self._lock:
            self._subscriptions[event_type].append(subscription)
        jarvis_log("EVENT_BUS", f"Subscribed {getattr(callback, '__name__', 'handler')} to {event_type.name}",
                   level="DEBUG")
        return subscription.subscription_id

    def subscribe_multi(
        self,
        event_types: List[EventType],
        callback: Callable[[Event], None],
        async_mode: bool = True
    ) -> List[str]:
        return [self.subscribe(event_type, callback, async_mode=async_mode) for event_type in event_types]

    def unsubscribe(self, subscription_id: str) -> bool:
        with self._lock:
            for subscriptions in self._subscriptions.values():
                for subscription in subscriptions:
                    if subscription.subscription_id == subscription_id:
                        subscriptions.remove(subscription)
                        return True
        return False
