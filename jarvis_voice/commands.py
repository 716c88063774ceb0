#!/usr/bin/env python3
"""Local command interception, offered every utterance before the reply backend."""

import re
from dataclasses import dataclass
from datetime import datetime
from typing import Awaitable, Callable, List, Optional, Protocol, Tuple, Union

from jarvis_voice.utils import jarvis_log


@dataclass
class CommandResult:
    """Outcome of routing one utterance.

    ``handled=False`` sends the text on to the reply backend. A handled result
    may carry a short confirmation to speak, or ask for an immediate new
    recording instead of waiting for the wake word.
    """
    handled: bool
    speak: Optional[str] = None
    start_recording: bool = False

    @classmethod
    def unhandled(cls) -> "CommandResult":
        return cls(handled=False)


class CommandRouter(Protocol):
    def route(self, text: str) -> Union[Optional[CommandResult], Awaitable[Optional[CommandResult]]]: ...


CommandHandler = Callable[[str], Optional[CommandResult]]


def normalize_command(text: str) -> str:
    t = (text or "").lower()
    t = re.sub(r"[^\w\s']", ' ', t)
    return re.sub(r'\s+', ' ', t).strip()


class PhraseCommandRouter:
    """Matches normalized phrases against registered handlers, first match wins.

    Built-ins: cancel/never mind (silent), the time, and "listen" (immediate
    capture). Wake words at the start of the utterance are ignored.
    """

    CANCEL_PHRASES = ("never mind", "nevermind", "cancel", "stop", "forget it")
    TIME_PHRASES = ("what time is it", "what's the time", "tell me the time")
    LISTEN_PHRASES = ("listen", "start listening", "i have a question")

    def __init__(self, wake_words: Optional[List[str]] = None, builtins: bool = True,
                 clock: Callable[[], datetime] = datetime.now):
        self.wake_words = sorted((normalize_command(w) for w in (wake_words or [])), key=len, reverse=True)
        self._clock = clock
        self._routes: List[Tuple[Tuple[str, ...], bool, CommandHandler]] = []
        if builtins:
            self.register(self.CANCEL_PHRASES, lambda _text: CommandResult(handled=True), exact=True)
            self.register(self.TIME_PHRASES, self._say_time)
            self.register(self.LISTEN_PHRASES, lambda _text: CommandResult(handled=True, start_recording=True),
                          exact=True)

    def register(self, phrases, handler: CommandHandler, exact: bool = False) -> None:
        """Add a handler; ``exact`` requires the whole utterance to match a phrase."""
        if isinstance(phrases, str):
            phrases = (phrases,)
        self._routes.append((tuple(normalize_command(p) for p in phrases), exact, handler))

    def _strip_wake_word(self, text: str) -> str:
        for word in self.wake_words:
            if word and (text == word or text.startswith(word + " ")):
                return text[len(word):].strip()
        return text

    def _say_time(self, _text: str) -> CommandResult:
        now = self._clock()
        hour = now.hour % 12 or 12
        suffix = "AM" if now.hour < 12 else "PM"
        return CommandResult(handled=True, speak=f"It's {hour}:{now.minute:02d} {suffix}.")

    def route(self, text: str) -> Optional[CommandResult]:
        command = self._strip_wake_word(normalize_command(text))
        if not command:
            return None
        for phrases, exact, handler in self._routes:
            matched = command in phrases if exact else any(p in command for p in phrases)
            if matched:
                result = handler(command)
                if result is not None and result.handled:
                    jarvis_log("COMMAND", f"Handled locally: '{command}'")
                    return result
        return None
