from __future__ import annotations

from typing import Sequence

import pytest

from ragcache.embeddings import Embedder, EmbeddingConfig, VectorIndex
from ragcache.errors import EmbeddingError, VectorStoreError
from ragcache.models import Chunk, ScoredChunk, Vector
from ragcache.retrieval import ContextRetriever, PromptBuilder, RetrievalConfig


def _scored(document_id: str, text: str, score: float) -> ScoredChunk:
    chunk = Chunk(
        chunk_id=f"{document_id}_chunk_0",
        document_id=document_id,
        index=0,
        text=text,
        start_char=0,
        end_char=len(text),
        word_count=len(text.split()),
        sentence_count=1,
    )
    return ScoredChunk(chunk=chunk, score=score)


class DownClient:
    async def embed(self, batch: Sequence[str]) -> Sequence[Vector]:
        raise EmbeddingError("offline")


class BrokenIndex(VectorIndex):
    async def search_similar(self, query_vector, limit=5, threshold=0.7):
        raise VectorStoreError("scan failed")


def test_prompt_without_context_is_the_raw_query():
    assert PromptBuilder().build_prompt("What is shadow mode?", []) == "What is shadow mode?"


def test_prompt_with_context_cites_sources():
    prompt = PromptBuilder().build_prompt(
        "What is shadow mode?",
        [_scored("guide", "Shadow mode serves fresh answers.", 0.91), _scored("faq", "It records cache hits.", 0.8)],
    )
    assert prompt == (
        "Based on the following context, please answer the question.\n\n"
        "Context:\n"
        "[1] Shadow mode serves fresh answers.\nSource: guide\n\n"
        "[2] It records cache hits.\nSource: faq\n\n"
        "Question: What is shadow mode?"
    )


@pytest.mark.asyncio
async def test_retriever_returns_matching_chunks(index: VectorIndex, embedder: Embedder):
    chunks = await embedder.embed_chunks([_scored("guide", "Shadow mode serves fresh answers.", 0.0).chunk])
    await index.store_chunks(chunks)
    retriever = ContextRetriever(embedder, index, RetrievalConfig(limit=3, threshold=0.7))

    results = await retriever.retrieve("Shadow mode serves fresh answers.")
    assert [item.chunk.document_id for item in results] == ["guide"]
    assert results[0].score == pytest.approx(1.0)
    assert await retriever.retrieve("completely unrelated words") == []


@pytest.mark.asyncio
async def test_retriever_fails_open(kv, embedder: Embedder):
    offline = ContextRetriever(Embedder(DownClient(), EmbeddingConfig()), VectorIndex(kv))
    assert await offline.retrieve("anything") == []

    broken = ContextRetriever(embedder, BrokenIndex(kv))
    assert await broken.retrieve("anything") == []
