"""Sentence-accumulating document chunker.

Chunk sizes are expressed in *estimated* tokens: ``len(text) / 4``. This is a fixed
heuristic, not a tokenizer, and it misestimates non-English text and code. Token-savings
reporting uses the same ratio, so the two stay comparable.
"""

from __future__ import annotations

import re

from ragcache.models import Chunk, chunk_id_for

CHARS_PER_TOKEN = 4

# A sentence is a run of text ending in terminal punctuation; a trailing unterminated
# fragment counts as the last sentence so no text is dropped.
_SENTENCE_PATTERN = re.compile(r"[^.!?]*[.!?]+|[^.!?]+\Z")
_TERMINAL_PATTERN = re.compile(r"[.!?]+")
_WORD_PATTERN = re.compile(r"\S+")


def estimate_tokens(text: str) -> float:
    return len(text) / CHARS_PER_TOKEN


def split_sentences(text: str) -> list[tuple[int, int]]:
    """Return trimmed ``(start, end)`` offsets of each non-empty sentence in ``text``."""

    spans: list[tuple[int, int]] = []
    for match in _SENTENCE_PATTERN.finditer(text):
        raw = match.group()
        start = match.start() + (len(raw) - len(raw.lstrip()))
        end = match.end() - (len(raw) - len(raw.rstrip()))
        if start < end:
            spans.append((start, end))
    return spans


def chunk_text(text: str, document_id: str, chunk_size_tokens: int, overlap_tokens: int) -> list[Chunk]:
    """Split ``text`` into overlapping chunks of at most ~``chunk_size_tokens``.

    Sentences accumulate until adding the next one would push the estimate past
    ``chunk_size_tokens``. The closed chunk's last ``overlap_tokens // 4`` words then
    seed the next buffer ahead of the sentence that overflowed. A single sentence
    longer than the limit still becomes one chunk.
    """

    overlap_words = max(overlap_tokens, 0) // CHARS_PER_TOKEN
    chunks: list[Chunk] = []
    buffer_start: int | None = None
    buffer_end = 0

    for start, end in split_sentences(text):
        if buffer_start is None:
            buffer_start, buffer_end = start, end
            continue
        if estimate_tokens(text[buffer_start:end]) > chunk_size_tokens:
            chunks.append(_make_chunk(text, document_id, len(chunks), buffer_start, buffer_end))
            buffer_start = _overlap_start(text, buffer_start, buffer_end, overlap_words, fallback=start)
        buffer_end = end

    if buffer_start is not None:
        chunks.append(_make_chunk(text, document_id, len(chunks), buffer_start, buffer_end))
    return chunks


def _overlap_start(text: str, start: int, end: int, overlap_words: int, *, fallback: int) -> int:
    if overlap_words <= 0:
        return fallback
    words = list(_WORD_PATTERN.finditer(text, start, end))
    if not words:
        return fallback
    return words[-overlap_words:][0].start()


def _make_chunk(text: str, document_id: str, index: int, start: int, end: int) -> Chunk:
    content = text[start:end]
    return Chunk(
        chunk_id=chunk_id_for(document_id, index),
        document_id=document_id,
        index=index,
        text=content,
        start_char=start,
        end_char=end,
        word_count=len(content.split()),
        sentence_count=len(_TERMINAL_PATTERN.findall(content)) or 1,
    )


class SentenceChunker:
    """Chunker bound to a fixed size/overlap configuration."""

    def __init__(self, chunk_size_tokens: int = 800, overlap_tokens: int = 100) -> None:
        if chunk_size_tokens <= 0:
            raise ValueError("chunk_size_tokens must be positive")
        self.chunk_size_tokens = chunk_size_tokens
        self.overlap_tokens = overlap_tokens

    def chunk(self, text: str, document_id: str) -> list[Chunk]:
        return chunk_text(text, document_id, self.chunk_size_tokens, self.overlap_tokens)
