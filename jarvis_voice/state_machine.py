#!/usr/bin/env python3
"""Conversation state definitions for Jarvis Voice."""

from enum import Enum


class ConversationState(Enum):
    """Conversation states, owned and mutated only by the orchestrator."""
    IDLE = "idle"                      # Not running
    WAKE_LISTENING = "wake_listening"  # Waiting for the wake word (or VAD-only rearm)
    RECORDING = "recording"            # Capturing the user's utterance
    PROCESSING = "processing"          # Transcribing, routing, waiting for a reply
    SPEAKING = "speaking"              # Reply playback


_S = ConversationState

LEGAL_TRANSITIONS = {
    _S.IDLE: {_S.WAKE_LISTENING},
    _S.WAKE_LISTENING: {_S.RECORDING, _S.IDLE},
    _S.RECORDING: {_S.PROCESSING, _S.WAKE_LISTENING, _S.IDLE},
    _S.PROCESSING: {_S.SPEAKING, _S.WAKE_LISTENING, _S.RECORDING, _S.IDLE},
    _S.SPEAKING: {_S.WAKE_LISTENING, _S.RECORDING, _S.IDLE},
}

# States in which the service intends continuous operation
RUNNING_STATES = frozenset({_S.WAKE_LISTENING, _S.RECORDING, _S.PROCESSING, _S.SPEAKING})


def can_transition(current: ConversationState, target: ConversationState) -> bool:
    return target in LEGAL_TRANSITIONS.get(current, ())
