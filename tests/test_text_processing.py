"""Tests for text processing utilities."""

import os
import sys

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from jarvis_voice.text_processing import normalize_tts_text


class TestNormalizeTtsText:
    def test_strips_markdown_bold(self):
        result = normalize_tts_text("This is **bold** text")
        assert "**" not in result
        assert "bold" in result

    def test_strips_code_blocks(self):
        result = normalize_tts_text("Run ```python\nprint('hi')``` now")
        assert "```" not in result
        assert "print" not in result

    def test_strips_urls(self):
        result = normalize_tts_text("Visit https://example.com for more")
        assert "https://" not in result

    def test_keeps_link_label(self):
        assert normalize_tts_text("See [the docs](https://example.com).") == "See the docs."

    def test_strips_inline_code(self):
        result = normalize_tts_text("Use `pip install` to install")
        assert "`" not in result
        assert "pip install" in result

    def test_empty_string(self):
        assert normalize_tts_text("") == ""

    def test_normalizes_whitespace(self):
        result = normalize_tts_text("hello    world")
        assert "    " not in result

    def test_newlines_become_pauses(self):
        assert normalize_tts_text("First line\nsecond line") == "First line, second line"
        assert normalize_tts_text("One.\n\nTwo.") == "One. Two."

    def test_collapses_repeated_punctuation(self):
        assert normalize_tts_text("Wait...") == "Wait."

    def test_removes_zero_width_characters(self):
        assert normalize_tts_text("ok\u200bay") == "okay"

    def test_keeps_times(self):
        assert normalize_tts_text("It's 3:05 PM.") == "It's 3:05 PM."
