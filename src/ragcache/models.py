"""Shared domain models used across the ragcache engine."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, ClassVar, Mapping, Tuple, Union

Vector = Tuple[float, ...]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def chunk_id_for(document_id: str, index: int) -> str:
    return f"{document_id}_chunk_{index}"


@dataclass(frozen=True)
class Document:
    """A source document and the figures finalized by ingestion."""

    document_id: str
    name: str
    text: str
    locator: str | None = None
    word_count: int = 0
    chunk_count: int = 0
    created_at: datetime = field(default_factory=_utcnow)
    updated_at: datetime = field(default_factory=_utcnow)


@dataclass(frozen=True)
class Chunk:
    """Bounded, overlapping segment of a document; the unit of embedding and retrieval.

    ``text`` is always ``parent_text[start_char:end_char]``. ``embedding`` stays ``None``
    until the embedder attaches one, and ``error`` records why it could not.
    """

    chunk_id: str
    document_id: str
    index: int
    text: str
    start_char: int
    end_char: int
    word_count: int
    sentence_count: int
    embedding: Vector | None = None
    error: str | None = None

    @property
    def metadata(self) -> Mapping[str, Any]:
        return {
            "chunkIndex": self.index,
            "startChar": self.start_char,
            "endChar": self.end_char,
            "wordCount": self.word_count,
            "sentenceCount": self.sentence_count,
        }


@dataclass(frozen=True)
class ScoredChunk:
    """Chunk returned from the vector index with its cosine similarity."""

    chunk: Chunk
    score: float


@dataclass(frozen=True)
class CacheLookup:
    """Result of a semantic cache search."""

    hit: bool = False
    response: str | None = None
    similarity: float | None = None
    matched_prompt: str | None = None

    @classmethod
    def miss(cls) -> "CacheLookup":
        return cls(hit=False)


@dataclass(frozen=True)
class GenerationResult:
    """Text produced by the generation service and the tokens it billed."""

    text: str
    tokens_used: int = 0


@dataclass(frozen=True)
class CacheHitOutcome:
    """The cached response was served; generation was skipped."""

    path: ClassVar[str] = "cache_hit"
    cached: ClassVar[bool] = True
    shadow_mode: ClassVar[bool] = False

    query: str
    content: str
    similarity: float
    matched_prompt: str
    cache_latency_ms: float
    tokens_saved: int

    @property
    def latency_ms(self) -> float:
        return self.cache_latency_ms


@dataclass(frozen=True)
class FreshGenerationOutcome:
    """Cache miss; the answer came from the generation service."""

    path: ClassVar[str] = "cache_miss_generate"
    cached: ClassVar[bool] = False
    shadow_mode: ClassVar[bool] = False

    query: str
    content: str
    tokens_used: int
    generation_latency_ms: float
    cache_latency_ms: float
    context: Tuple[ScoredChunk, ...] = ()

    @property
    def latency_ms(self) -> float:
        return self.generation_latency_ms

    @property
    def rag_hit(self) -> bool:
        return bool(self.context)


@dataclass(frozen=True)
class ShadowOutcome:
    """Generation output served while the cache result is only recorded.

    ``tokens_saved`` is hypothetical: what serving the cache hit would have saved.
    The generation call always happened, so it never offsets ``tokens_used``.
    """

    path: ClassVar[str] = "shadow_dual"
    cached: ClassVar[bool] = False
    shadow_mode: ClassVar[bool] = True

    query: str
    content: str
    cache_hit: bool
    similarity: float | None
    matched_prompt: str | None
    tokens_used: int
    tokens_saved: int
    generation_latency_ms: float
    cache_latency_ms: float
    context: Tuple[ScoredChunk, ...] = ()

    @property
    def latency_ms(self) -> float:
        return self.generation_latency_ms

    @property
    def rag_hit(self) -> bool:
        return bool(self.context)


QueryOutcome = Union[CacheHitOutcome, FreshGenerationOutcome, ShadowOutcome]
