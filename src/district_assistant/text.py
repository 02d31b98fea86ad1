"""Small text helpers shared by chunking, prompting and safety."""

from __future__ import annotations

import math
import re
from dataclasses import dataclass

_ABBREVIATIONS = frozenset(
    {
        "mr", "mrs", "ms", "dr", "prof", "jr", "sr", "inc", "ltd", "corp",
        "vs", "etc", "e.g", "i.e", "st", "no",
    }
)
_SENTENCE_BOUNDARY = re.compile(r"[.!?]+[\"')\]]*\s+(?=[A-Z0-9\"'(\[])")
_PARAGRAPH_SPLIT = re.compile(r"\n\s*\n")
_WORD = re.compile(r"[a-z0-9]+")


@dataclass(slots=True)
class SentenceSpan:
    text: str
    start: int
    end: int


def estimate_tokens(text: str) -> int:
    """Approximate token count as ceil(chars / 4)."""
    return math.ceil(len(text) / 4)


def split_sentences(text: str) -> list[SentenceSpan]:
    """Split text into sentences, keeping character offsets into ``text``.

    A boundary is punctuation followed by whitespace and a capital letter or
    digit; boundaries right after a known abbreviation ("Dr.", "e.g.") are
    ignored.
    """

    spans: list[SentenceSpan] = []
    cursor = 0
    for match in _SENTENCE_BOUNDARY.finditer(text):
        preceding = text[cursor : match.start() + 1].split()
        last_word = preceding[-1].rstrip(".").lower() if preceding else ""
        if last_word in _ABBREVIATIONS:
            continue
        boundary = match.end()
        _append_span(spans, text, cursor, boundary)
        cursor = boundary
    _append_span(spans, text, cursor, len(text))
    return spans


def _append_span(spans: list[SentenceSpan], text: str, start: int, end: int) -> None:
    raw = text[start:end]
    stripped = raw.strip()
    if not stripped:
        return
    lead = len(raw) - len(raw.lstrip())
    spans.append(SentenceSpan(text=stripped, start=start + lead, end=start + lead + len(stripped)))


def split_paragraphs(text: str) -> list[str]:
    return [part.strip() for part in _PARAGRAPH_SPLIT.split(text) if part.strip()]


def truncate(text: str, max_length: int) -> str:
    if len(text) <= max_length:
        return text
    return text[: max_length - 3] + "..."


def words(text: str) -> list[str]:
    """Lowercased alphanumeric words."""
    return _WORD.findall(text.lower())
