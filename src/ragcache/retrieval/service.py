"""Context retrieval and prompt augmentation built on the vector index."""

from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Sequence

from ragcache.embeddings.service import Embedder
from ragcache.embeddings.store import VectorIndex
from ragcache.errors import VectorStoreError
from ragcache.metrics.observability import PipelineMetrics, get_logger
from ragcache.models import ScoredChunk


@dataclass(frozen=True)
class RetrievalConfig:
    """Configuration for retrieval."""

    limit: int = 5
    threshold: float = 0.7


class ContextRetriever:
    """Finds chunks relevant to a query; any failure degrades to no context."""

    def __init__(self, embedder: Embedder, index: VectorIndex, config: RetrievalConfig | None = None) -> None:
        self._embedder = embedder
        self._index = index
        self._config = config or RetrievalConfig()
        self._logger = get_logger("retrieval")

    async def retrieve(self, query: str, *, limit: int | None = None, threshold: float | None = None) -> list[ScoredChunk]:
        start = time.perf_counter()
        vector = await self._embedder.embed_query(query)
        if vector is None:
            self._logger.info("retrieval.skipped", reason="query embedding unavailable")
            return []
        try:
            results = await self._index.search_similar(
                vector,
                limit=self._config.limit if limit is None else limit,
                threshold=self._config.threshold if threshold is None else threshold,
            )
        except VectorStoreError as exc:
            self._logger.warning("retrieval.failed", detail=str(exc))
            return []
        duration = time.perf_counter() - start
        PipelineMetrics.observe_retrieval(duration, len(results), (item.score for item in results))
        self._logger.info("retrieval.complete", chunk_count=len(results), duration_seconds=duration)
        return results


@dataclass(frozen=True)
class PromptBuilderConfig:
    """Configuration for prompt construction."""

    citation_prefix: str = "["
    citation_suffix: str = "]"


class PromptBuilder:
    """Builds the prompt sent to the generation backend."""

    def __init__(self, config: PromptBuilderConfig | None = None) -> None:
        self._config = config or PromptBuilderConfig()

    def build_context(self, context: Sequence[ScoredChunk]) -> str:
        if not context:
            return ""
        lines = []
        for index, item in enumerate(context, start=1):
            prefix = f"{self._config.citation_prefix}{index}{self._config.citation_suffix}"
            lines.append(f"{prefix} {item.chunk.text}\nSource: {item.chunk.document_id}")
        return "\n\n".join(lines)

    def build_prompt(self, query: str, context: Sequence[ScoredChunk]) -> str:
        """Return ``query`` untouched, or prefixed with retrieved context when there is any."""

        if not context:
            return query
        return (
            "Based on the following context, please answer the question.\n\n"
            f"Context:\n{self.build_context(context)}\n\n"
            f"Question: {query}"
        )
