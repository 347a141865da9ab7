from __future__ import annotations

import asyncio
import math

import pytest

from ragcache.errors import GenerationError
from ragcache.models import (
    CacheHitOutcome,
    CacheLookup,
    Chunk,
    FreshGenerationOutcome,
    GenerationResult,
    ScoredChunk,
    ShadowOutcome,
)
from ragcache.services.query import QueryRouter, RouterConfig

QUERY = "How does the semantic cache work?"
HIT = CacheLookup(hit=True, response="It matches prompts by meaning.", similarity=0.95, matched_prompt="how does caching work")


class StubCache:
    def __init__(self, lookup: CacheLookup | None = None, *, store_result: bool = True, store_error: Exception | None = None) -> None:
        self.lookup = lookup or CacheLookup.miss()
        self.store_result = store_result
        self.store_error = store_error
        self.searches: list[str] = []
        self.stores: list[tuple[str, str, int | None]] = []
        self.release_store = asyncio.Event()
        self.release_store.set()

    async def search(self, prompt: str) -> CacheLookup:
        self.searches.append(prompt)
        return self.lookup

    async def store(self, prompt: str, response: str, ttl_millis: int | None = None) -> bool:
        await self.release_store.wait()
        self.stores.append((prompt, response, ttl_millis))
        if self.store_error is not None:
            raise self.store_error
        return self.store_result


class StubGenerator:
    def __init__(self, text: str = "A fresh answer.", tokens: int = 42, error: Exception | None = None) -> None:
        self.text = text
        self.tokens = tokens
        self.error = error
        self.prompts: list[str] = []

    async def generate(self, prompt: str) -> GenerationResult:
        self.prompts.append(prompt)
        if self.error is not None:
            raise self.error
        return GenerationResult(text=self.text, tokens_used=self.tokens)


class StubRetriever:
    def __init__(self, context: list[ScoredChunk]) -> None:
        self.context = context
        self.queries: list[str] = []

    async def retrieve(self, query: str) -> list[ScoredChunk]:
        self.queries.append(query)
        return self.context


class RecordingMetrics:
    def __init__(self, error: Exception | None = None) -> None:
        self.outcomes: list[object] = []
        self.error = error

    def record(self, outcome) -> None:
        if self.error is not None:
            raise self.error
        self.outcomes.append(outcome)


def _context() -> list[ScoredChunk]:
    chunk = Chunk(
        chunk_id="guide_chunk_0",
        document_id="guide",
        index=0,
        text="The cache compares embeddings.",
        start_char=0,
        end_char=30,
        word_count=4,
        sentence_count=1,
    )
    return [ScoredChunk(chunk=chunk, score=0.88)]


@pytest.mark.asyncio
async def test_normal_hit_skips_generation():
    cache, generator, metrics = StubCache(HIT), StubGenerator(), RecordingMetrics()
    router = QueryRouter(cache, generator, metrics=metrics)

    outcome = await router.route(QUERY)

    assert isinstance(outcome, CacheHitOutcome)
    assert outcome.path == "cache_hit"
    assert outcome.cached is True
    assert outcome.content == HIT.response
    assert outcome.similarity == 0.95
    assert outcome.matched_prompt == "how does caching work"
    assert outcome.tokens_saved == math.ceil(len(QUERY) / 4) + math.ceil(len(HIT.response or "") / 4)
    assert generator.prompts == []
    assert router.pending_stores == 0
    assert metrics.outcomes == [outcome]


@pytest.mark.asyncio
async def test_normal_miss_generates_and_stores_detached():
    cache, generator = StubCache(), StubGenerator()
    router = QueryRouter(cache, generator, config=RouterConfig(cache_ttl_millis=1234))

    outcome = await router.route(QUERY)

    assert isinstance(outcome, FreshGenerationOutcome)
    assert outcome.path == "cache_miss_generate"
    assert outcome.cached is False
    assert outcome.content == "A fresh answer."
    assert outcome.tokens_used == 42
    assert generator.prompts == [QUERY]
    await router.drain()
    assert cache.stores == [(QUERY, "A fresh answer.", 1234)]


@pytest.mark.asyncio
async def test_shadow_hit_serves_generated_content():
    cache, generator = StubCache(HIT), StubGenerator(tokens=30)
    router = QueryRouter(cache, generator)

    outcome = await router.route(QUERY, shadow_mode=True)

    assert isinstance(outcome, ShadowOutcome)
    assert outcome.path == "shadow_dual"
    assert outcome.cached is False
    assert outcome.shadow_mode is True
    assert outcome.content == "A fresh answer."
    assert outcome.cache_hit is True
    assert outcome.similarity == 0.95
    assert outcome.matched_prompt == "how does caching work"
    assert outcome.tokens_used == outcome.tokens_saved == 30
    assert len(cache.searches) == len(generator.prompts) == 1
    assert router.pending_stores == 0


@pytest.mark.asyncio
async def test_shadow_miss_saves_nothing_and_stores():
    cache = StubCache()
    router = QueryRouter(cache, StubGenerator())

    outcome = await router.route(QUERY, shadow_mode=True)

    assert isinstance(outcome, ShadowOutcome)
    assert outcome.cache_hit is False
    assert outcome.similarity is None
    assert outcome.tokens_saved == 0
    await router.drain()
    assert [entry[:2] for entry in cache.stores] == [(QUERY, "A fresh answer.")]


@pytest.mark.asyncio
async def test_shadow_runs_cache_and_generation_concurrently():
    search_started, generate_started = asyncio.Event(), asyncio.Event()

    class WaitingCache(StubCache):
        async def search(self, prompt: str) -> CacheLookup:
            search_started.set()
            await generate_started.wait()
            return await super().search(prompt)

    class WaitingGenerator(StubGenerator):
        async def generate(self, prompt: str) -> GenerationResult:
            generate_started.set()
            await search_started.wait()
            return await super().generate(prompt)

    router = QueryRouter(WaitingCache(HIT), WaitingGenerator())
    outcome = await asyncio.wait_for(router.route(QUERY, shadow_mode=True), timeout=2)
    assert isinstance(outcome, ShadowOutcome)
    assert outcome.cache_hit


@pytest.mark.asyncio
async def test_generation_failure_propagates_without_store_or_metrics():
    cache, metrics = StubCache(), RecordingMetrics()
    router = QueryRouter(cache, StubGenerator(error=GenerationError("upstream 500")), metrics=metrics)

    with pytest.raises(GenerationError):
        await router.route(QUERY)
    with pytest.raises(GenerationError):
        await router.route(QUERY, shadow_mode=True)

    await router.drain()
    assert cache.stores == []
    assert metrics.outcomes == []


class RaisingCache(StubCache):
    async def search(self, prompt: str) -> CacheLookup:
        self.searches.append(prompt)
        raise RuntimeError("cache backend exploded")


@pytest.mark.asyncio
async def test_cache_search_failure_is_a_miss_in_both_modes():
    cache, generator, metrics = RaisingCache(), StubGenerator(), RecordingMetrics()
    router = QueryRouter(cache, generator, metrics=metrics)

    normal = await router.route(QUERY)
    shadow = await router.route(QUERY, shadow_mode=True)
    await router.drain()

    assert isinstance(normal, FreshGenerationOutcome)
    assert normal.content == "A fresh answer."
    assert normal.cache_latency_ms >= 0.0
    assert isinstance(shadow, ShadowOutcome)
    assert shadow.content == "A fresh answer."
    assert shadow.cache_hit is False
    assert shadow.tokens_saved == 0
    assert len(cache.searches) == len(generator.prompts) == 2
    assert len(metrics.outcomes) == 2


@pytest.mark.asyncio
async def test_response_does_not_wait_for_store():
    cache = StubCache()
    cache.release_store.clear()
    router = QueryRouter(cache, StubGenerator())

    outcome = await router.route(QUERY)

    assert outcome.content == "A fresh answer."
    assert router.pending_stores == 1
    cache.release_store.set()
    await router.drain()
    assert router.pending_stores == 0
    assert len(cache.stores) == 1


@pytest.mark.asyncio
@pytest.mark.parametrize("cache", [StubCache(store_error=RuntimeError("disk full")), StubCache(store_result=False)])
async def test_failed_store_is_logged_not_raised(cache: StubCache):
    router = QueryRouter(cache, StubGenerator())
    outcome = await router.route(QUERY)
    await router.drain()
    assert outcome.content == "A fresh answer."
    assert router.pending_stores == 0


@pytest.mark.asyncio
async def test_metrics_failure_does_not_change_answer():
    router = QueryRouter(StubCache(HIT), StubGenerator(), metrics=RecordingMetrics(error=RuntimeError("ledger down")))
    outcome = await router.route(QUERY)
    assert outcome.content == HIT.response


@pytest.mark.asyncio
async def test_rag_context_augments_prompt_only_when_enabled():
    retriever, generator = StubRetriever(_context()), StubGenerator()
    router = QueryRouter(StubCache(), generator, retriever=retriever)

    plain = await router.route(QUERY)
    augmented = await router.route(QUERY, rag_enabled=True)
    await router.drain()

    assert isinstance(plain, FreshGenerationOutcome) and not plain.rag_hit
    assert isinstance(augmented, FreshGenerationOutcome) and augmented.rag_hit
    assert retriever.queries == [QUERY]
    assert generator.prompts[0] == QUERY
    assert "Context:\n[1] The cache compares embeddings.\nSource: guide" in generator.prompts[1]
    assert generator.prompts[1].endswith(f"Question: {QUERY}")
