"""Observability helpers for ragcache."""

from __future__ import annotations

import logging
import time
from contextvars import ContextVar
from typing import Callable, Iterable

import structlog
from prometheus_client import Counter, Gauge, Histogram

_logger_configured = False
_correlation_id_var: ContextVar[str] = ContextVar("correlation_id", default="-")


def configure_logging(level: int = logging.INFO) -> None:
    global _logger_configured  # noqa: PLW0603 - module-level guard
    if _logger_configured:
        return
    logging.basicConfig(level=level, format="%(message)s")
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )
    _logger_configured = True


def bind_correlation_id(correlation_id: str) -> None:
    structlog.contextvars.bind_contextvars(correlation_id=correlation_id)
    _correlation_id_var.set(correlation_id)


def clear_correlation_id() -> None:
    structlog.contextvars.clear_contextvars()
    _correlation_id_var.set("-")


def get_correlation_id() -> str:
    return _correlation_id_var.get()


def get_logger(name: str = "ragcache") -> structlog.BoundLogger:
    configure_logging()
    return structlog.get_logger(name)


def _clamp_score(score: float) -> float:
    if score < 0.0:
        return 0.0
    if score > 1.0:
        return 1.0
    return score


class PipelineMetrics:
    """Prometheus metrics for ingestion, retrieval and the cache-aside path."""

    ingestion_latency = Histogram(
        "ragcache_ingestion_duration_seconds",
        "Time spent ingesting one document.",
        buckets=(0.05, 0.1, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0),
    )
    ingestion_chunks = Histogram(
        "ragcache_ingestion_chunk_count",
        "Chunks produced per ingested document.",
        buckets=(0, 1, 5, 10, 20, 40, 80, 160),
    )
    ingestion_stage_latency = Histogram(
        "ragcache_ingestion_stage_duration_seconds",
        "Time spent in each ingestion stage.",
        ["stage"],
        buckets=(0.001, 0.01, 0.05, 0.1, 0.5, 1.0, 5.0, 10.0),
    )
    ingestion_failures = Counter(
        "ragcache_ingestion_failures_total",
        "Ingestion jobs that ended in the error state.",
        ["stage"],
    )
    retrieval_latency = Histogram(
        "ragcache_retrieval_duration_seconds",
        "Time spent retrieving context chunks.",
        buckets=(0.01, 0.05, 0.1, 0.5, 1.0, 2.0, 5.0),
    )
    retrieved_chunk_count = Histogram(
        "ragcache_retrieved_chunk_count",
        "Number of chunks returned by retrieval.",
        buckets=(0, 1, 2, 3, 5, 8, 13),
    )
    grounding_score = Histogram(
        "ragcache_grounding_score",
        "Cosine similarity of retrieved chunks.",
        buckets=(0.0, 0.25, 0.5, 0.7, 0.8, 0.9, 1.0),
    )
    generation_latency = Histogram(
        "ragcache_generation_duration_seconds",
        "Time spent waiting on the generation service.",
        buckets=(0.05, 0.1, 0.5, 1.0, 2.0, 5.0, 10.0),
    )
    cache_latency = Histogram(
        "ragcache_cache_search_duration_seconds",
        "Time spent searching the semantic cache.",
        buckets=(0.005, 0.01, 0.05, 0.1, 0.25, 0.5, 1.0),
    )
    cache_lookups = Counter(
        "ragcache_cache_lookups_total",
        "Semantic cache lookups by mode and result.",
        ["mode", "result"],
    )
    tokens_used = Counter(
        "ragcache_tokens_used_total",
        "Tokens billed by the generation service.",
    )
    tokens_saved = Counter(
        "ragcache_tokens_saved_total",
        "Tokens saved (or, in shadow mode, that would have been saved) by the cache.",
        ["mode"],
    )
    indexed_chunk_count = Gauge(
        "ragcache_indexed_chunk_count",
        "Number of chunk records in the vector index.",
    )

    @classmethod
    def observe_ingestion(cls, duration_seconds: float, chunk_count: int) -> None:
        cls.ingestion_latency.observe(duration_seconds)
        cls.ingestion_chunks.observe(chunk_count)

    @classmethod
    def observe_ingestion_stage(cls, stage: str, duration_seconds: float) -> None:
        cls.ingestion_stage_latency.labels(stage=stage).observe(duration_seconds)

    @classmethod
    def observe_ingestion_failure(cls, stage: str) -> None:
        cls.ingestion_failures.labels(stage=stage).inc()

    @classmethod
    def observe_retrieval(
        cls,
        duration_seconds: float,
        chunk_count: int,
        scores: Iterable[float],
    ) -> None:
        cls.retrieval_latency.observe(duration_seconds)
        cls.retrieved_chunk_count.observe(chunk_count)
        for score in scores:
            cls.grounding_score.observe(_clamp_score(score))

    @classmethod
    def observe_generation(cls, duration_seconds: float) -> None:
        cls.generation_latency.observe(duration_seconds)

    @classmethod
    def observe_cache_search(cls, duration_seconds: float) -> None:
        cls.cache_latency.observe(duration_seconds)

    @classmethod
    def observe_query(cls, *, mode: str, cache_hit: bool, tokens_used: int, tokens_saved: int) -> None:
        cls.cache_lookups.labels(mode=mode, result="hit" if cache_hit else "miss").inc()
        if tokens_used:
            cls.tokens_used.inc(tokens_used)
        if tokens_saved:
            cls.tokens_saved.labels(mode=mode).inc(tokens_saved)


class TimedSection:
    """Context manager capturing elapsed time for metrics."""

    def __init__(self, callback: Callable[[float], None]) -> None:
        self._callback = callback
        self._start = 0.0

    def __enter__(self) -> "TimedSection":
        self._start = time.perf_counter()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:  # noqa: D401
        duration = time.perf_counter() - self._start
        self._callback(duration)


__all__ = [
    "PipelineMetrics",
    "TimedSection",
    "bind_correlation_id",
    "clear_correlation_id",
    "configure_logging",
    "get_correlation_id",
    "get_logger",
]
