"""Speech synthesis adapters."""

from jarvis_voice.tts.base import NativeSpeech, SpeechSynthesizer, SynthesisCacheMixin

__all__ = ["NativeSpeech", "SpeechSynthesizer", "SynthesisCacheMixin"]
