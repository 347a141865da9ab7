"""Vector index over chunk records held in a key-value store.

Similarity search is a brute-force scan: every chunk record is loaded and scored,
which is O(n) per query. ``VectorIndex`` is the seam to swap in an approximate
nearest-neighbour index later without touching callers.
"""

from __future__ import annotations

import asyncio
import json
import math
import time
from collections import defaultdict
from dataclasses import dataclass
from typing import Mapping, MutableMapping, Sequence

from ragcache.errors import VectorStoreError
from ragcache.metrics.observability import get_logger
from ragcache.models import Chunk, Document, ScoredChunk, Vector
from ragcache.storage.kv import KeyValueStore

LOGGER = get_logger("vector_index")


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    """Cosine similarity; 0.0 for mismatched lengths or zero-norm vectors."""

    if len(a) != len(b):
        LOGGER.debug("vector.length_mismatch", expected=len(a), actual=len(b))
        return 0.0
    dot_product = sum(x * y for x, y in zip(a, b))
    norm_a = math.sqrt(sum(x * x for x in a))
    norm_b = math.sqrt(sum(y * y for y in b))
    if norm_a == 0 or norm_b == 0:
        return 0.0
    return dot_product / (norm_a * norm_b)


@dataclass(frozen=True)
class VectorIndexConfig:
    """Configuration for the vector index."""

    key_prefix: str = "doc"
    store_concurrency: int = 8
    read_batch_size: int = 64


@dataclass(frozen=True)
class DocumentRecord:
    """Document metadata and ingestion status as persisted next to its chunks."""

    document_id: str
    name: str
    locator: str | None
    word_count: int
    chunk_count: int
    status: str
    error: str | None
    processed_at: str | None
    last_updated: str | None


class VectorIndex:
    """Stores chunk records keyed by document and answers top-k similarity queries."""

    def __init__(self, kv: KeyValueStore, config: VectorIndexConfig | None = None) -> None:
        self._kv = kv
        self._config = config or VectorIndexConfig()

    def chunk_key(self, document_id: str, chunk_id: str) -> str:
        return f"{self._config.key_prefix}:{document_id}:chunk:{chunk_id}"

    def chunks_key(self, document_id: str) -> str:
        return f"{self._config.key_prefix}:{document_id}:chunks"

    def meta_key(self, document_id: str) -> str:
        return f"{self._config.key_prefix}:{document_id}:meta"

    async def store_chunks(self, chunks: Sequence[Chunk]) -> list[str]:
        """Upsert embedded chunks; chunks without an embedding are skipped.

        The chunk id joins the document's set before the record is written, so an
        interrupted write can leave a dangling id but never an unreachable record.
        """

        embedded = [chunk for chunk in chunks if chunk.embedding is not None]
        if len(embedded) < len(chunks):
            LOGGER.info("vector.store_skipped", skipped=len(chunks) - len(embedded))
        semaphore = asyncio.Semaphore(max(1, self._config.store_concurrency))

        async def _store(chunk: Chunk) -> None:
            async with semaphore:
                await self._kv.sadd(self.chunks_key(chunk.document_id), chunk.chunk_id)
                await self._kv.hset(self.chunk_key(chunk.document_id, chunk.chunk_id), self._serialize_chunk(chunk))

        tasks = [asyncio.create_task(_store(chunk)) for chunk in embedded]
        if tasks:
            done, pending = await asyncio.wait(tasks, return_when=asyncio.FIRST_EXCEPTION)
            # The first failure stops every write still queued or in flight.
            for task in pending:
                task.cancel()
            if pending:
                await asyncio.gather(*pending, return_exceptions=True)
            for task in tasks:
                if task in done and not task.cancelled() and task.exception() is not None:
                    exc = task.exception()
                    raise VectorStoreError(f"Failed to store chunks: {exc}") from exc
        return [chunk.chunk_id for chunk in embedded]

    async def search_similar(self, query_vector: Sequence[float], limit: int = 5, threshold: float = 0.7) -> list[ScoredChunk]:
        """Score every stored chunk against ``query_vector``.

        Returns at most ``limit`` results with ``score >= threshold`` in non-increasing
        score order; ties keep enumeration order.
        """

        if limit <= 0:
            return []
        try:
            keys = await self._kv.scan_keys(f"{self._config.key_prefix}:*:chunk:*")
        except Exception as exc:
            raise VectorStoreError(f"Failed to enumerate chunk records: {exc}") from exc

        scored: list[ScoredChunk] = []
        batch_size = max(1, self._config.read_batch_size)
        for offset in range(0, len(keys), batch_size):
            batch = keys[offset : offset + batch_size]
            try:
                records = await asyncio.gather(*(self._kv.hgetall(key) for key in batch))
            except Exception as exc:
                raise VectorStoreError(f"Failed to load chunk records: {exc}") from exc
            for key, record in zip(batch, records):
                if not record or not record.get("embedding"):
                    continue
                try:
                    chunk = self._deserialize_chunk(record)
                except (ValueError, TypeError, KeyError) as exc:
                    LOGGER.warning("vector.record_invalid", key=key, detail=str(exc))
                    continue
                score = cosine_similarity(query_vector, chunk.embedding or ())
                if score >= threshold:
                    scored.append(ScoredChunk(chunk=chunk, score=score))

        scored.sort(key=lambda item: item.score, reverse=True)
        return scored[:limit]

    async def delete_document(self, document_id: str) -> int:
        """Delete every chunk record of a document, its metadata, then its chunk set.

        Not atomic. The chunk set goes last, so rerunning after an interruption
        finishes the job.
        """

        try:
            chunk_ids = await self._kv.smembers(self.chunks_key(document_id))
            if chunk_ids:
                await self._kv.delete(*(self.chunk_key(document_id, chunk_id) for chunk_id in sorted(chunk_ids)))
            await self._kv.delete(self.meta_key(document_id))
            await self._kv.delete(self.chunks_key(document_id))
        except Exception as exc:
            raise VectorStoreError(f"Failed to delete document {document_id}: {exc}") from exc
        LOGGER.info("vector.document_deleted", document_id=document_id, chunk_count=len(chunk_ids))
        return len(chunk_ids)

    async def delete_chunks(self, document_id: str, chunk_ids: Sequence[str]) -> None:
        if not chunk_ids:
            return
        try:
            await self._kv.delete(*(self.chunk_key(document_id, chunk_id) for chunk_id in chunk_ids))
            await self._kv.srem(self.chunks_key(document_id), *chunk_ids)
        except Exception as exc:
            raise VectorStoreError(f"Failed to delete chunks of {document_id}: {exc}") from exc

    async def chunk_ids(self, document_id: str) -> set[str]:
        try:
            return await self._kv.smembers(self.chunks_key(document_id))
        except Exception as exc:
            raise VectorStoreError(f"Failed to list chunks of {document_id}: {exc}") from exc

    async def list_documents(self) -> list[str]:
        prefix = f"{self._config.key_prefix}:"
        suffix = ":chunks"
        try:
            keys = await self._kv.scan_keys(f"{prefix}*{suffix}")
        except Exception as exc:
            raise VectorStoreError(f"Failed to list documents: {exc}") from exc
        document_ids = {key[len(prefix) : -len(suffix)] for key in keys if key.startswith(prefix) and key.endswith(suffix)}
        return sorted(doc_id for doc_id in document_ids if doc_id)

    async def count(self) -> int:
        try:
            return len(await self._kv.scan_keys(f"{self._config.key_prefix}:*:chunk:*"))
        except Exception as exc:
            raise VectorStoreError(f"Failed to count chunk records: {exc}") from exc

    async def sweep_orphans(self) -> int:
        """Delete chunk records whose id is missing from their document's chunk set."""

        prefix = f"{self._config.key_prefix}:"
        try:
            keys = await self._kv.scan_keys(f"{prefix}*:chunk:*")
            by_document: dict[str, list[tuple[str, str]]] = defaultdict(list)
            for key in keys:
                document_id, _, chunk_id = key[len(prefix) :].rpartition(":chunk:")
                by_document[document_id].append((key, chunk_id))
            orphaned: list[str] = []
            for document_id, entries in by_document.items():
                members = await self._kv.smembers(self.chunks_key(document_id))
                orphaned.extend(key for key, chunk_id in entries if chunk_id not in members)
            if orphaned:
                await self._kv.delete(*orphaned)
        except Exception as exc:
            raise VectorStoreError(f"Failed to sweep orphaned chunks: {exc}") from exc
        if orphaned:
            LOGGER.warning("vector.orphans_swept", count=len(orphaned))
        return len(orphaned)

    async def save_document(self, document: Document, *, status: str, error: str | None = None) -> None:
        mapping = {
            "name": document.name,
            "url": document.locator or "",
            "wordCount": str(document.word_count),
            "chunkCount": str(document.chunk_count),
            "status": status,
            "error": error or "",
            "processedAt": document.created_at.isoformat(),
            "lastUpdated": document.updated_at.isoformat(),
        }
        try:
            await self._kv.hset(self.meta_key(document.document_id), mapping)
        except Exception as exc:
            raise VectorStoreError(f"Failed to save document {document.document_id}: {exc}") from exc

    async def get_document(self, document_id: str) -> DocumentRecord | None:
        try:
            record = await self._kv.hgetall(self.meta_key(document_id))
        except Exception as exc:
            raise VectorStoreError(f"Failed to load document {document_id}: {exc}") from exc
        if not record:
            return None
        return DocumentRecord(
            document_id=document_id,
            name=record.get("name", ""),
            locator=record.get("url") or None,
            word_count=int(record.get("wordCount") or 0),
            chunk_count=int(record.get("chunkCount") or 0),
            status=record.get("status", ""),
            error=record.get("error") or None,
            processed_at=record.get("processedAt") or None,
            last_updated=record.get("lastUpdated") or None,
        )

    def _serialize_chunk(self, chunk: Chunk) -> MutableMapping[str, str]:
        return {
            "id": chunk.chunk_id,
            "documentId": chunk.document_id,
            "content": chunk.text,
            "chunkIndex": str(chunk.index),
            "embedding": json.dumps(list(chunk.embedding or ())),
            "metadata": json.dumps(dict(chunk.metadata)),
            "timestamp": str(int(time.time() * 1000)),
        }

    @staticmethod
    def _deserialize_chunk(record: Mapping[str, str]) -> Chunk:
        embedding: Vector = tuple(float(value) for value in json.loads(record["embedding"]))
        metadata = json.loads(record.get("metadata") or "{}")
        if not isinstance(metadata, dict):
            metadata = {}
        return Chunk(
            chunk_id=record["id"],
            document_id=record["documentId"],
            index=int(record.get("chunkIndex") or metadata.get("chunkIndex", 0)),
            text=record.get("content", ""),
            start_char=int(metadata.get("startChar", 0)),
            end_char=int(metadata.get("endChar", 0)),
            word_count=int(metadata.get("wordCount", 0)),
            sentence_count=int(metadata.get("sentenceCount", 1)),
            embedding=embedding,
        )
