"""Text chunking for indexed documents.

Target is roughly 750 tokens per chunk with about 100 tokens of overlap.
At ~4 characters per token that is a 3000 character target and a 400
character overlap tail carried into the next chunk.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import List

from app.config.settings import settings

PARAGRAPH_BREAK = re.compile(r"\n\s*\n")
SENTENCE = re.compile(r"[^.!?]*[.!?]+\s*|[^.!?]+$")
SENTENCE_BOUNDARY = re.compile(r"[.!?]\s+")
WORD_BOUNDARY = re.compile(r"\s+")
OVERSIZE_FACTOR = 1.5


@dataclass(frozen=True)
class TextChunk:
    index: int
    text: str


def chunk_text(
    text: str,
    target_size: int | None = None,
    overlap: int | None = None,
) -> List[TextChunk]:
    """Split document text into overlapping, size-bounded chunks.

    Paragraphs are accumulated until adding the next one would make the
    buffer exceed target_size (strictly greater; a buffer landing exactly on
    the target is kept). The emitted chunk's overlap tail then seeds the next
    buffer. Buffers growing past 1.5x the target are split on sentence
    boundaries.

    Blank input returns an empty list; callers must treat that as "nothing to
    index" rather than storing an empty document.
    """
    target_size = target_size or settings.CHUNK_TARGET_SIZE
    overlap = settings.CHUNK_OVERLAP if overlap is None else overlap

    stripped = text.strip() if text else ""
    if not stripped:
        return []
    if len(stripped) <= target_size:
        return [TextChunk(index=0, text=stripped)]

    pieces: List[str] = []
    current = ""

    for paragraph in PARAGRAPH_BREAK.split(stripped):
        paragraph = paragraph.strip()
        if not paragraph:
            continue

        if current and len(current) + len(paragraph) > target_size:
            pieces.append(current.strip())
            current = _overlap_tail(current, overlap) + "\n\n" + paragraph
        elif current:
            current += "\n\n" + paragraph
        else:
            current = paragraph

        if len(current) > target_size * OVERSIZE_FACTOR:
            parts = _split_by_sentences(current, target_size)
            pieces.extend(part.strip() for part in parts[:-1])
            current = parts[-1] if parts else ""

    if current.strip():
        pieces.append(current.strip())

    return [TextChunk(index=i, text=piece) for i, piece in enumerate(p for p in pieces if p)]


def _overlap_tail(text: str, length: int) -> str:
    """Return the last `length` chars of text, trimmed to a sentence or word start."""
    if length <= 0:
        return ""
    if len(text) <= length:
        return text

    tail = text[-length:]
    match = SENTENCE_BOUNDARY.search(tail)
    if match:
        return tail[match.end():]

    match = WORD_BOUNDARY.search(tail)
    if match:
        return tail[match.end():]

    return tail


def _split_by_sentences(text: str, target_size: int) -> List[str]:
    sentences = SENTENCE.findall(text) or [text]
    parts: List[str] = []
    current = ""

    for sentence in sentences:
        # A single run-on sentence longer than the target gets a hard cut
        while len(sentence) > target_size:
            if current:
                parts.append(current)
                current = ""
            parts.append(sentence[:target_size])
            sentence = sentence[target_size:]

        if current and len(current) + len(sentence) > target_size:
            parts.append(current)
            current = sentence
        else:
            current += sentence

    if current:
        parts.append(current)

    return parts
