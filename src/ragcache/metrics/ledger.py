"""Per-turn metrics recording for the query router."""

from __future__ import annotations

import time
from collections import deque
from dataclasses import dataclass, field
from typing import Deque, Protocol, Sequence

from ragcache.metrics.observability import PipelineMetrics
from ragcache.models import CacheHitOutcome, QueryOutcome, ShadowOutcome

TOKEN_COST_PER_MILLION = 10.0
HISTORY_LIMIT = 100


class MetricsRecorder(Protocol):
    """Receives every completed chat turn."""

    def record(self, outcome: QueryOutcome) -> None:
        """Record the outcome of one turn."""


@dataclass(frozen=True)
class RagSource:
    document_id: str
    score: float
    content: str


@dataclass(frozen=True)
class QueryRecord:
    user_query: str
    cached_query: str | None
    similarity: float | None
    timestamp: float
    cache_hit: bool
    rag_hit: bool
    rag_sources: Sequence[RagSource] = ()


@dataclass(frozen=True)
class MetricsSnapshot:
    total_requests: int
    cache_hits: int
    cache_misses: int
    rag_hits: int
    rag_misses: int
    total_tokens_saved: int
    total_tokens_used: int
    total_cost_saved: float
    total_cost_spent: float
    average_cache_latency_ms: float
    average_generation_latency_ms: float
    cache_hit_rate: float
    rag_hit_rate: float
    query_records: Sequence[QueryRecord] = field(default_factory=tuple)


class MetricsLedger:
    """In-memory aggregate of chat turns, also mirrored into Prometheus.

    Shadow-mode hits count as cache hits. Their ``tokens_saved`` is hypothetical and is
    tracked separately from real spend. Latency and query histories keep the most
    recent 100 entries.
    """

    def __init__(self, history_limit: int = HISTORY_LIMIT) -> None:
        self._history_limit = history_limit
        self.reset()

    def reset(self) -> None:
        self.total_requests = 0
        self.cache_hits = 0
        self.rag_hits = 0
        self.total_tokens_saved = 0
        self.total_tokens_used = 0
        self.cache_latencies: Deque[float] = deque(maxlen=self._history_limit)
        self.generation_latencies: Deque[float] = deque(maxlen=self._history_limit)
        self.query_records: Deque[QueryRecord] = deque(maxlen=self._history_limit)

    def record(self, outcome: QueryOutcome) -> None:
        if isinstance(outcome, CacheHitOutcome):
            cache_hit, rag_hit = True, False
            tokens_used, context = 0, ()
            similarity, cached_query = outcome.similarity, outcome.matched_prompt
        elif isinstance(outcome, ShadowOutcome):
            cache_hit, rag_hit = outcome.cache_hit, outcome.rag_hit
            tokens_used, context = outcome.tokens_used, outcome.context
            similarity, cached_query = outcome.similarity, outcome.matched_prompt
        else:
            cache_hit, rag_hit = False, outcome.rag_hit
            tokens_used, context = outcome.tokens_used, outcome.context
            similarity, cached_query = None, None
        tokens_saved = getattr(outcome, "tokens_saved", 0)

        self.total_requests += 1
        self.cache_hits += int(cache_hit)
        self.rag_hits += int(rag_hit)
        self.total_tokens_saved += tokens_saved
        self.total_tokens_used += tokens_used
        self.cache_latencies.append(outcome.cache_latency_ms)
        if not isinstance(outcome, CacheHitOutcome):
            self.generation_latencies.append(outcome.generation_latency_ms)
        self.query_records.append(
            QueryRecord(
                user_query=outcome.query,
                cached_query=cached_query,
                similarity=similarity,
                timestamp=time.time(),
                cache_hit=cache_hit,
                rag_hit=rag_hit,
                rag_sources=tuple(
                    RagSource(document_id=item.chunk.document_id, score=item.score, content=item.chunk.text)
                    for item in context
                ),
            ),
        )
        PipelineMetrics.observe_query(
            mode="shadow" if outcome.shadow_mode else "normal",
            cache_hit=cache_hit,
            tokens_used=tokens_used,
            tokens_saved=tokens_saved,
        )

    def snapshot(self) -> MetricsSnapshot:
        total = self.total_requests
        return MetricsSnapshot(
            total_requests=total,
            cache_hits=self.cache_hits,
            cache_misses=total - self.cache_hits,
            rag_hits=self.rag_hits,
            rag_misses=total - self.rag_hits,
            total_tokens_saved=self.total_tokens_saved,
            total_tokens_used=self.total_tokens_used,
            total_cost_saved=self.total_tokens_saved * TOKEN_COST_PER_MILLION / 1_000_000,
            total_cost_spent=self.total_tokens_used * TOKEN_COST_PER_MILLION / 1_000_000,
            average_cache_latency_ms=_mean(self.cache_latencies),
            average_generation_latency_ms=_mean(self.generation_latencies),
            cache_hit_rate=(self.cache_hits / total) * 100 if total else 0.0,
            rag_hit_rate=(self.rag_hits / total) * 100 if total else 0.0,
            query_records=tuple(self.query_records),
        )


def _mean(values: Sequence[float]) -> float:
    return sum(values) / len(values) if values else 0.0
