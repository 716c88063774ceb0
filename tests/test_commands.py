"""Tests for local command routing."""

import os
import sys
from datetime import datetime

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from jarvis_voice.commands import CommandResult, PhraseCommandRouter, normalize_command


def make_router(**kwargs):
    return PhraseCommandRouter(wake_words=["jarvis", "hey jarvis"],
                               clock=lambda: datetime(2024, 5, 1, 0, 7), **kwargs)


def test_normalize_command():
    assert normalize_command("  Hey, JARVIS!  What's up? ") == "hey jarvis what's up"


def test_time_query():
    result = make_router().route("What time is it?")
    assert result.handled
    assert result.speak == "It's 12:07 AM."
    assert not result.start_recording


def test_wake_word_prefix_is_stripped():
    router = make_router()
    assert router.route("Hey Jarvis, cancel").handled
    assert router.route("jarvis listen").start_recording


def test_cancel_is_silent():
    result = make_router().route("never mind")
    assert result.handled
    assert result.speak is None


def test_exact_phrases_do_not_match_inside_sentences():
    assert make_router().route("please stop the music in the kitchen") is None


def test_unmatched_goes_to_backend():
    assert make_router().route("what's the weather in Paris") is None
    assert make_router().route("") is None


def test_custom_handler_and_first_match_wins():
    router = make_router(builtins=False)
    router.register("lights on", lambda text: CommandResult(handled=True, speak="Done."))
    router.register("lights", lambda text: CommandResult(handled=True, speak="Which lights?"))
    assert router.route("turn the lights on please").speak == "Done."
    assert router.route("what time is it") is None


def test_unhandled_result_falls_through():
    router = make_router(builtins=False)
    router.register("weather", lambda text: CommandResult.unhandled())
    router.register("weather", lambda text: CommandResult(handled=True, speak="Cloudy."))
    assert router.route("weather").speak == "Cloudy."
