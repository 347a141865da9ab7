"""Cache-aside query routing between the semantic cache and the generation service."""

from __future__ import annotations

import asyncio
import math
import time
from dataclasses import dataclass
from typing import Sequence

from ragcache.cache.service import DEFAULT_TTL_MILLIS, SemanticCache
from ragcache.ingestion.chunking import CHARS_PER_TOKEN
from ragcache.metrics.ledger import MetricsRecorder
from ragcache.metrics.observability import PipelineMetrics, get_logger
from ragcache.models import (
    CacheHitOutcome,
    CacheLookup,
    FreshGenerationOutcome,
    GenerationResult,
    QueryOutcome,
    ScoredChunk,
    ShadowOutcome,
)
from ragcache.retrieval.service import ContextRetriever, PromptBuilder
from ragcache.services.generation import GenerationBackend


def estimate_tokens_saved(query: str, response: str) -> int:
    return math.ceil(len(query) / CHARS_PER_TOKEN) + math.ceil(len(response) / CHARS_PER_TOKEN)


@dataclass(frozen=True)
class RouterConfig:
    """Configuration for query routing."""

    cache_ttl_millis: int = DEFAULT_TTL_MILLIS


class QueryRouter:
    """Answers chat turns from the semantic cache when it can, from generation otherwise.

    In shadow mode the cache lookup and generation run concurrently and the generated
    answer is always served; the cache result is only recorded. Cache writes after a
    miss run as detached tasks so the response never waits on them.
    """

    def __init__(
        self,
        cache: SemanticCache,
        generator: GenerationBackend,
        retriever: ContextRetriever | None = None,
        prompt_builder: PromptBuilder | None = None,
        metrics: MetricsRecorder | None = None,
        config: RouterConfig | None = None,
    ) -> None:
        self._cache = cache
        self._generator = generator
        self._retriever = retriever
        self._prompt_builder = prompt_builder or PromptBuilder()
        self._metrics = metrics
        self._config = config or RouterConfig()
        self._pending: set[asyncio.Task[bool]] = set()
        self._logger = get_logger("query")

    @property
    def pending_stores(self) -> int:
        return len(self._pending)

    async def route(self, query: str, *, shadow_mode: bool = False, rag_enabled: bool = False) -> QueryOutcome:
        if shadow_mode:
            outcome: QueryOutcome = await self._route_shadow(query, rag_enabled)
        else:
            outcome = await self._route_normal(query, rag_enabled)
        self._record(outcome)
        return outcome

    async def _route_normal(self, query: str, rag_enabled: bool) -> QueryOutcome:
        lookup, cache_ms = await self._search_cache(query)
        if lookup.hit and lookup.response is not None:
            self._logger.info("cache.hit", similarity=lookup.similarity, latency_ms=cache_ms)
            return CacheHitOutcome(
                query=query,
                content=lookup.response,
                similarity=lookup.similarity or 0.0,
                matched_prompt=lookup.matched_prompt or query,
                cache_latency_ms=cache_ms,
                tokens_saved=estimate_tokens_saved(query, lookup.response),
            )
        self._logger.info("cache.miss", latency_ms=cache_ms)
        result, generation_ms, context = await self._generate(query, rag_enabled)
        self._schedule_store(query, result.text)
        return FreshGenerationOutcome(
            query=query,
            content=result.text,
            tokens_used=result.tokens_used,
            generation_latency_ms=generation_ms,
            cache_latency_ms=cache_ms,
            context=tuple(context),
        )

    async def _route_shadow(self, query: str, rag_enabled: bool) -> QueryOutcome:
        # Both branches are in flight before either is awaited.
        (lookup, cache_ms), (result, generation_ms, context) = await asyncio.gather(
            self._search_cache(query),
            self._generate(query, rag_enabled),
        )
        cache_hit = bool(lookup.hit and lookup.response is not None)
        self._logger.info(
            "shadow.compare",
            cache_hit=cache_hit,
            similarity=lookup.similarity,
            cache_latency_ms=cache_ms,
            generation_latency_ms=generation_ms,
        )
        if not cache_hit:
            self._schedule_store(query, result.text)
        return ShadowOutcome(
            query=query,
            content=result.text,
            cache_hit=cache_hit,
            similarity=lookup.similarity if cache_hit else None,
            matched_prompt=lookup.matched_prompt if cache_hit else None,
            tokens_used=result.tokens_used,
            tokens_saved=result.tokens_used if cache_hit else 0,
            generation_latency_ms=generation_ms,
            cache_latency_ms=cache_ms,
            context=tuple(context),
        )

    async def _search_cache(self, query: str) -> tuple[CacheLookup, float]:
        start = time.perf_counter()
        try:
            lookup = await self._cache.search(query)
        except Exception as exc:
            self._logger.warning("cache.unavailable", detail=str(exc))
            lookup = CacheLookup.miss()
        duration = time.perf_counter() - start
        PipelineMetrics.observe_cache_search(duration)
        return lookup, duration * 1000

    async def _generate(self, query: str, rag_enabled: bool) -> tuple[GenerationResult, float, Sequence[ScoredChunk]]:
        context: Sequence[ScoredChunk] = []
        if rag_enabled and self._retriever is not None:
            context = await self._retriever.retrieve(query)
        prompt = self._prompt_builder.build_prompt(query, context)
        start = time.perf_counter()
        result = await self._generator.generate(prompt)
        duration = time.perf_counter() - start
        PipelineMetrics.observe_generation(duration)
        self._logger.info(
            "generation.complete",
            duration_seconds=duration,
            tokens_used=result.tokens_used,
            context_count=len(context),
        )
        return result, duration * 1000, context

    def _schedule_store(self, query: str, content: str) -> None:
        task = asyncio.create_task(self._cache.store(query, content, self._config.cache_ttl_millis))
        self._pending.add(task)
        task.add_done_callback(self._store_finished)

    def _store_finished(self, task: asyncio.Task[bool]) -> None:
        self._pending.discard(task)
        if task.cancelled():
            self._logger.warning("cache.store_failed", reason="cancelled")
            return
        exc = task.exception()
        if exc is not None:
            self._logger.warning("cache.store_failed", detail=str(exc))
        elif not task.result():
            self._logger.warning("cache.store_failed", reason="rejected")

    def _record(self, outcome: QueryOutcome) -> None:
        if self._metrics is None:
            return
        try:
            self._metrics.record(outcome)
        except Exception as exc:
            self._logger.warning("metrics.record_failed", detail=str(exc))

    async def drain(self) -> None:
        """Wait for every detached cache store; used on shutdown and in tests."""

        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)
