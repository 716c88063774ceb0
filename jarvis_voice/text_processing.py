#!/usr/bin/env python3
"""Text clean-up applied to replies before they are spoken."""

import re

_ZERO_WIDTH = re.compile(r'[\u200B-\u200D\u2060\uFEFF]')
_CONTROL = re.compile(r'[\x00-\x08\x0B-\x1F\x7F]')

# Markup the synthesizer would read aloud, in application order
_MARKUP_RULES = (
    (re.compile(r'```.*?```', re.DOTALL), ' '),       # fenced code
    (re.compile(r'`([^`]*)`'), r'\1'),                 # inline code
    (re.compile(r'\[([^\]]+)\]\(([^)]+)\)'), r'\1'),   # [label](url)
    (re.compile(r'https?://\S+|www\.\S+'), ' '),
    (re.compile(r'[*_#>]+'), ' '),
    (re.compile(r'[<>{}\[\]|\\^~]+'), ' '),
)

_PARAGRAPH = re.compile(r'\n\s*\n+')
_LINE = re.compile(r'\n+')

_PUNCTUATION_RULES = (
    (re.compile(r'[ \t\f\v]+'), ' '),
    (re.compile(r'([.!?]){2,}'), r'\1'),
    (re.compile(r'\s+([,.;:!?])'), r'\1'),
    (re.compile(r'([,.;:!?])([^\s\d])'), r'\1 \2'),
    (re.compile(r'\s{2,}'), ' '),
)
_LEADING_JUNK = re.compile(r'^[\s\.,;:!?-]+')


def normalize_tts_text(text: str) -> str:
    """Strip markdown, links and control characters; turn line breaks into pauses."""
    if not text:
        return ""

    text = text.replace('\r\n', '\n').replace('\r', '\n')
    text = _ZERO_WIDTH.sub('', text)
    text = _CONTROL.sub(' ', text)

    for pattern, replacement in _MARKUP_RULES:
        text = pattern.sub(replacement, text)

    # Paragraph break reads as a full stop, single newline as a comma
    text = _PARAGRAPH.sub('. ', text)
    text = _LINE.sub(', ', text)

    for pattern, replacement in _PUNCTUATION_RULES:
        text = pattern.sub(replacement, text).strip()
    text = text.strip(' ,')
    return _LEADING_JUNK.sub('', text)
