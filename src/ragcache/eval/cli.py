"""CLI replaying queries through the router in shadow mode to measure cache quality."""

from __future__ import annotations

import argparse
import asyncio
import json
import statistics
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import List, Sequence, cast

from ragcache.api.app import AppDependencies, build_dependencies
from ragcache.config import Settings, get_settings
from ragcache.models import ShadowOutcome


@dataclass(frozen=True)
class DocumentFixture:
    id: str
    title: str
    content: str


@dataclass(frozen=True)
class ReplayResult:
    total_queries: int
    cache_hits: int
    hit_rate: float
    tokens_used: int
    hypothetical_tokens_saved: int
    average_cache_latency_ms: float
    average_generation_latency_ms: float
    details: List[dict]

    def to_dict(self) -> dict:
        return {
            "total_queries": self.total_queries,
            "cache_hits": self.cache_hits,
            "hit_rate": self.hit_rate,
            "tokens_used": self.tokens_used,
            "hypothetical_tokens_saved": self.hypothetical_tokens_saved,
            "average_cache_latency_ms": self.average_cache_latency_ms,
            "average_generation_latency_ms": self.average_generation_latency_ms,
            "details": self.details,
        }


def load_queries(path: Path) -> tuple[list[DocumentFixture], list[str]]:
    """Read either a bare JSON list of queries or ``{"documents": [...], "queries": [...]}``."""

    data = json.loads(path.read_text(encoding="utf-8"))
    if isinstance(data, list):
        return [], [str(item) for item in data]
    documents = [
        DocumentFixture(id=item["id"], title=item.get("title", ""), content=item["content"])
        for item in data.get("documents", [])
    ]
    queries = [item if isinstance(item, str) else item["question"] for item in data["queries"]]
    return documents, queries


async def replay(
    deps: AppDependencies,
    queries: Sequence[str],
    *,
    rag_enabled: bool = False,
    documents: Sequence[DocumentFixture] = (),
) -> ReplayResult:
    for document in documents:
        await deps.pipeline.ingest_text(document.id, document.content, name=document.title or None)

    hits = 0
    tokens_used = 0
    tokens_saved = 0
    cache_latencies: list[float] = []
    generation_latencies: list[float] = []
    details: list[dict] = []
    for query in queries:
        outcome = cast(ShadowOutcome, await deps.router.route(query, shadow_mode=True, rag_enabled=rag_enabled))
        # Later repeats of a query must see the store scheduled by this one.
        await deps.router.drain()
        hits += int(outcome.cache_hit)
        tokens_used += outcome.tokens_used
        tokens_saved += outcome.tokens_saved
        cache_latencies.append(outcome.cache_latency_ms)
        generation_latencies.append(outcome.generation_latency_ms)
        details.append(
            {
                "query": query,
                "cache_hit": outcome.cache_hit,
                "similarity": outcome.similarity,
                "matched_prompt": outcome.matched_prompt,
                "rag_hit": outcome.rag_hit,
                "tokens_used": outcome.tokens_used,
            },
        )

    total = len(queries)
    return ReplayResult(
        total_queries=total,
        cache_hits=hits,
        hit_rate=hits / total if total else 0.0,
        tokens_used=tokens_used,
        hypothetical_tokens_saved=tokens_saved,
        average_cache_latency_ms=statistics.fmean(cache_latencies) if cache_latencies else 0.0,
        average_generation_latency_ms=statistics.fmean(generation_latencies) if generation_latencies else 0.0,
        details=details,
    )


async def _run(settings: Settings, documents: Sequence[DocumentFixture], queries: Sequence[str], rag_enabled: bool) -> ReplayResult:
    deps = build_dependencies(settings)
    try:
        return await replay(deps, queries, rag_enabled=rag_enabled, documents=documents)
    finally:
        await deps.aclose()


def run_replay(
    queries_path: Path,
    *,
    rag_enabled: bool = False,
    settings: Settings | None = None,
    json_out: Path | None = None,
) -> ReplayResult:
    settings = settings or get_settings()
    documents, queries = load_queries(queries_path)
    result = asyncio.run(_run(settings, documents, queries, rag_enabled))
    if json_out:
        json_out.write_text(json.dumps(result.to_dict(), indent=2), encoding="utf-8")
    return result


def parse_args(argv: Sequence[str]) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Replay queries in shadow mode and report semantic cache quality.")
    parser.add_argument("--queries", type=Path, required=True, help="Path to a JSON file of queries")
    parser.add_argument("--rag", action="store_true", help="Augment prompts with retrieved context")
    parser.add_argument("--json-out", type=Path, default=None, help="Optional path to write JSON report")
    parser.add_argument("--min-hit-rate", type=float, default=None, help="Fail when the hit rate (0-1) is lower")
    return parser.parse_args(argv)


def main(argv: Sequence[str] | None = None) -> int:
    args = parse_args(sys.argv[1:] if argv is None else argv)
    result = run_replay(args.queries, rag_enabled=args.rag, json_out=args.json_out)
    print(json.dumps(result.to_dict(), indent=2))

    if args.min_hit_rate is not None and result.hit_rate < args.min_hit_rate:
        print(
            f"Replay failed threshold (hit rate {result.hit_rate:.2f} vs {args.min_hit_rate})",
            file=sys.stderr,
        )
        return 1
    return 0


if __name__ == "__main__":  # pragma: no cover - CLI entrypoint
    sys.exit(main())
