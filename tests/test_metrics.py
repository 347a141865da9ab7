from __future__ import annotations

import pytest
from prometheus_client import REGISTRY

from ragcache.metrics.ledger import MetricsLedger
from ragcache.metrics.observability import TimedSection
from ragcache.models import CacheHitOutcome, Chunk, FreshGenerationOutcome, ScoredChunk, ShadowOutcome


def _context() -> tuple[ScoredChunk, ...]:
    chunk = Chunk(
        chunk_id="guide_chunk_0",
        document_id="guide",
        index=0,
        text="Context text.",
        start_char=0,
        end_char=13,
        word_count=2,
        sentence_count=1,
    )
    return (ScoredChunk(chunk=chunk, score=0.81),)


def _hit() -> CacheHitOutcome:
    return CacheHitOutcome(
        query="q1",
        content="cached",
        similarity=0.97,
        matched_prompt="q one",
        cache_latency_ms=4.0,
        tokens_saved=100,
    )


def _fresh() -> FreshGenerationOutcome:
    return FreshGenerationOutcome(
        query="q2",
        content="fresh",
        tokens_used=300,
        generation_latency_ms=900.0,
        cache_latency_ms=6.0,
        context=_context(),
    )


def _shadow_hit() -> ShadowOutcome:
    return ShadowOutcome(
        query="q3",
        content="generated",
        cache_hit=True,
        similarity=0.92,
        matched_prompt="q three",
        tokens_used=200,
        tokens_saved=200,
        generation_latency_ms=700.0,
        cache_latency_ms=8.0,
    )


def test_ledger_aggregates_outcomes():
    ledger = MetricsLedger()
    for outcome in (_hit(), _fresh(), _shadow_hit()):
        ledger.record(outcome)

    snapshot = ledger.snapshot()
    assert snapshot.total_requests == 3
    assert snapshot.cache_hits == 2
    assert snapshot.cache_misses == 1
    assert snapshot.rag_hits == 1
    assert snapshot.rag_misses == 2
    assert snapshot.total_tokens_saved == 300
    assert snapshot.total_tokens_used == 500
    assert snapshot.total_cost_saved == pytest.approx(0.003)
    assert snapshot.total_cost_spent == pytest.approx(0.005)
    assert snapshot.average_cache_latency_ms == pytest.approx(6.0)
    assert snapshot.average_generation_latency_ms == pytest.approx(800.0)
    assert snapshot.cache_hit_rate == pytest.approx(200 / 3)
    assert snapshot.rag_hit_rate == pytest.approx(100 / 3)

    hit_record, fresh_record, shadow_record = snapshot.query_records
    assert hit_record.cached_query == "q one" and hit_record.similarity == 0.97
    assert fresh_record.cache_hit is False and fresh_record.rag_hit is True
    assert [source.document_id for source in fresh_record.rag_sources] == ["guide"]
    assert shadow_record.cache_hit is True


def test_ledger_keeps_bounded_history_and_resets():
    ledger = MetricsLedger(history_limit=100)
    for _ in range(105):
        ledger.record(_fresh())
    snapshot = ledger.snapshot()
    assert snapshot.total_requests == 105
    assert len(snapshot.query_records) == 100
    assert len(ledger.generation_latencies) == 100

    ledger.reset()
    empty = ledger.snapshot()
    assert empty.total_requests == 0
    assert empty.cache_hit_rate == 0.0
    assert empty.average_generation_latency_ms == 0.0
    assert empty.query_records == ()


def _shadow_hits() -> float:
    labels = {"mode": "shadow", "result": "hit"}
    return REGISTRY.get_sample_value("ragcache_cache_lookups_total", labels) or 0.0


def test_ledger_feeds_prometheus_counters():
    before = _shadow_hits()
    MetricsLedger().record(_shadow_hit())
    assert _shadow_hits() == before + 1


def test_timed_section_reports_duration():
    durations: list[float] = []
    with TimedSection(durations.append):
        sum(range(1000))
    assert len(durations) == 1
    assert durations[0] >= 0.0
