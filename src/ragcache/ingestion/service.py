"""Document ingestion pipeline: fetch, chunk, embed and store one document."""

from __future__ import annotations

import dataclasses
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from functools import partial
from typing import Awaitable, Callable, Optional, Protocol, Sequence

from ragcache.embeddings.service import Embedder
from ragcache.embeddings.store import VectorIndex
from ragcache.errors import IngestionError, SourceUnavailableError, VectorStoreError
from ragcache.ingestion.chunking import SentenceChunker
from ragcache.ingestion.sources import DocumentSource, derive_document_id
from ragcache.metrics.observability import PipelineMetrics, TimedSection, get_logger
from ragcache.models import Chunk, Document


class IngestionStatus(str, Enum):
    PENDING = "pending"
    EXTRACTING = "extracting"
    CHUNKING = "chunking"
    EMBEDDING = "embedding"
    STORING = "storing"
    READY = "ready"
    ERROR = "error"


_FORWARD_ORDER = (
    IngestionStatus.PENDING,
    IngestionStatus.EXTRACTING,
    IngestionStatus.CHUNKING,
    IngestionStatus.EMBEDDING,
    IngestionStatus.STORING,
    IngestionStatus.READY,
)


@dataclass(frozen=True)
class IngestionConfig:
    """Configuration for document ingestion."""

    chunk_size_tokens: int = 800
    chunk_overlap_tokens: int = 100


class Chunker(Protocol):
    def chunk(self, text: str, document_id: str) -> list[Chunk]:
        """Split ``text`` into ordered chunks without embeddings."""


StatusCallback = Callable[[str, IngestionStatus], Optional[Awaitable[None]]]


@dataclass
class IngestionJob:
    """Tracks one document through the ingestion states.

    States only move forward; ``error`` is absorbing.
    """

    document_id: str
    status: IngestionStatus = IngestionStatus.PENDING
    error: str | None = None
    history: list[IngestionStatus] = field(default_factory=lambda: [IngestionStatus.PENDING])

    def advance(self, status: IngestionStatus) -> None:
        if self.status is IngestionStatus.ERROR:
            raise ValueError(f"Job for {self.document_id} already failed")
        if status is IngestionStatus.ERROR:
            raise ValueError("Use fail() to move a job into the error state")
        if _FORWARD_ORDER.index(status) <= _FORWARD_ORDER.index(self.status):
            raise ValueError(f"Cannot move from {self.status.value} to {status.value}")
        self.status = status
        self.history.append(status)

    def fail(self, reason: str) -> None:
        if self.status is IngestionStatus.READY:
            raise ValueError(f"Job for {self.document_id} already completed")
        self.status = IngestionStatus.ERROR
        self.error = reason
        self.history.append(IngestionStatus.ERROR)


@dataclass(frozen=True)
class IngestionReport:
    document: Document
    status: IngestionStatus
    stored_chunks: Sequence[str]
    failed_chunks: Sequence[str]
    duration_seconds: float


class IngestionPipeline:
    """Runs documents through extraction, chunking, embedding and storage.

    Any stage failure moves the job to ``error`` and raises ``IngestionError``; nothing
    is retried. Chunks whose embedding failed are reported and skipped, but a document
    with no embedded chunk at all fails.
    """

    _logger = get_logger("ingestion")

    def __init__(
        self,
        source: DocumentSource,
        chunker: Chunker | None,
        embedder: Embedder,
        index: VectorIndex,
        config: IngestionConfig | None = None,
        on_status: StatusCallback | None = None,
    ) -> None:
        self._source = source
        self._config = config or IngestionConfig()
        self._chunker = chunker or SentenceChunker(
            self._config.chunk_size_tokens, self._config.chunk_overlap_tokens
        )
        self._embedder = embedder
        self._index = index
        self._on_status = on_status

    async def ingest(self, locator: str, document_id: str | None = None, name: str | None = None) -> IngestionReport:
        document = Document(
            document_id=document_id or derive_document_id(locator),
            name=name or locator,
            text="",
            locator=locator,
        )
        job = IngestionJob(document.document_id)
        start = time.perf_counter()
        await self._advance(job, document, IngestionStatus.EXTRACTING)
        try:
            with TimedSection(partial(PipelineMetrics.observe_ingestion_stage, IngestionStatus.EXTRACTING.value)):
                text = await self._source.fetch(locator)
        except SourceUnavailableError as exc:
            raise await self._fail(job, document, str(exc)) from exc
        return await self._process(job, dataclasses.replace(document, text=text), start)

    async def ingest_text(
        self,
        document_id: str,
        text: str,
        name: str | None = None,
        locator: str | None = None,
    ) -> IngestionReport:
        document = Document(document_id=document_id, name=name or document_id, text=text, locator=locator)
        job = IngestionJob(document_id)
        start = time.perf_counter()
        await self._advance(job, document, IngestionStatus.EXTRACTING)
        if not text.strip():
            raise await self._fail(job, document, "Document appears to be empty or inaccessible")
        return await self._process(job, dataclasses.replace(document, text=text.strip()), start)

    async def _process(self, job: IngestionJob, document: Document, start: float) -> IngestionReport:
        await self._advance(job, document, IngestionStatus.CHUNKING)
        with TimedSection(partial(PipelineMetrics.observe_ingestion_stage, IngestionStatus.CHUNKING.value)):
            chunks = self._chunker.chunk(document.text, document.document_id)
        if not chunks:
            raise await self._fail(job, document, "Document produced no chunks")

        await self._advance(job, document, IngestionStatus.EMBEDDING)
        with TimedSection(partial(PipelineMetrics.observe_ingestion_stage, IngestionStatus.EMBEDDING.value)):
            embedded = await self._embedder.embed_chunks(chunks)
        failed = tuple(chunk.chunk_id for chunk in embedded if chunk.embedding is None)
        if len(failed) == len(embedded):
            raise await self._fail(job, document, "Failed to generate embeddings for every chunk")
        if failed:
            self._logger.warning(
                "ingestion.embedding_partial",
                document_id=document.document_id,
                failed_count=len(failed),
                chunk_count=len(embedded),
            )

        await self._advance(job, document, IngestionStatus.STORING)
        attempted = {chunk.chunk_id for chunk in embedded if chunk.embedding is not None}
        previous: set[str] | None = None
        try:
            with TimedSection(partial(PipelineMetrics.observe_ingestion_stage, IngestionStatus.STORING.value)):
                previous = await self._index.chunk_ids(document.document_id)
                stored = await self._index.store_chunks(embedded)
                stale = sorted(previous - set(stored))
                await self._index.delete_chunks(document.document_id, stale)
        except VectorStoreError as exc:
            if previous is not None:
                await self._rollback(document, sorted(attempted - previous))
            raise await self._fail(job, document, str(exc)) from exc
        if stale:
            self._logger.info("ingestion.pruned", document_id=document.document_id, chunk_count=len(stale))

        document = dataclasses.replace(
            document,
            word_count=len(document.text.split()),
            chunk_count=len(stored),
            updated_at=datetime.now(timezone.utc),
        )
        await self._advance(job, document, IngestionStatus.READY)
        duration = time.perf_counter() - start
        PipelineMetrics.observe_ingestion(duration, len(stored))
        self._logger.info(
            "ingestion.complete",
            document_id=document.document_id,
            chunk_count=len(stored),
            failed_count=len(failed),
            duration_seconds=duration,
        )
        return IngestionReport(
            document=document,
            status=job.status,
            stored_chunks=tuple(stored),
            failed_chunks=failed,
            duration_seconds=duration,
        )

    async def _rollback(self, document: Document, chunk_ids: list[str]) -> None:
        """Remove chunks written by a failed store so the errored document is not searchable."""

        if not chunk_ids:
            return
        try:
            await self._index.delete_chunks(document.document_id, chunk_ids)
        except VectorStoreError as exc:
            self._logger.warning(
                "ingestion.rollback_failed",
                document_id=document.document_id,
                chunk_count=len(chunk_ids),
                detail=str(exc),
            )
            return
        self._logger.info("ingestion.rolled_back", document_id=document.document_id, chunk_count=len(chunk_ids))

    async def _advance(self, job: IngestionJob, document: Document, status: IngestionStatus) -> None:
        job.advance(status)
        await self._publish(job, document)

    async def _fail(self, job: IngestionJob, document: Document, reason: str) -> IngestionError:
        stage = job.status.value
        job.fail(reason)
        PipelineMetrics.observe_ingestion_failure(stage)
        self._logger.warning("ingestion.failed", document_id=document.document_id, stage=stage, reason=reason)
        await self._publish(job, document)
        return IngestionError(reason, document_id=document.document_id, stage=stage)

    async def _publish(self, job: IngestionJob, document: Document) -> None:
        try:
            await self._index.save_document(document, status=job.status.value, error=job.error)
        except VectorStoreError as exc:
            self._logger.warning("ingestion.status_not_saved", document_id=document.document_id, detail=str(exc))
        if self._on_status is not None:
            result = self._on_status(document.document_id, job.status)
            if result is not None:
                await result
