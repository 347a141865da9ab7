"""FastAPI application exposing the ragcache chat gateway."""

from __future__ import annotations

import dataclasses
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import AsyncIterator, Sequence
from uuid import uuid4

import httpx
from fastapi import Depends, FastAPI, HTTPException, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from ragcache.api.schemas import (
    ChatRequest,
    ChatResponse,
    ContextChunkModel,
    DocumentIngestionRequest,
    DocumentListResponse,
    DocumentModel,
    IngestionResponse,
    MetricsSummaryResponse,
    TextIngestionRequest,
    VectorSearchRequest,
    VectorSearchResponse,
    VectorSearchResult,
)
from ragcache.cache import (
    CacheConfig,
    DisabledSemanticCache,
    InMemorySemanticCache,
    LangCacheClient,
    SemanticCache,
)
from ragcache.config import Settings, get_settings
from ragcache.embeddings import (
    DocumentRecord,
    Embedder,
    EmbeddingClient,
    EmbeddingConfig,
    HashEmbeddingClient,
    OpenAIEmbeddingClient,
    VectorIndex,
    VectorIndexConfig,
)
from ragcache.errors import GenerationError, IngestionError, VectorStoreError
from ragcache.ingestion import HttpDocumentSource, IngestionConfig, IngestionPipeline, IngestionReport, SentenceChunker
from ragcache.metrics.ledger import MetricsLedger
from ragcache.metrics.observability import (
    PipelineMetrics,
    bind_correlation_id,
    clear_correlation_id,
    configure_logging,
    get_correlation_id,
    get_logger,
)
from ragcache.models import CacheHitOutcome, QueryOutcome, ShadowOutcome
from ragcache.retrieval import ContextRetriever, PromptBuilder, RetrievalConfig
from ragcache.services.generation import (
    GenerationBackend,
    GenerationConfig,
    OpenAIChatGenerator,
    TemplateGenerator,
)
from ragcache.services.query import QueryRouter, RouterConfig
from ragcache.storage import KeyValueStore, MemoryKeyValueStore, RedisKeyValueStore

LOGGER = get_logger("api")


@dataclass(frozen=True)
class AppDependencies:
    kv: KeyValueStore
    index: VectorIndex
    embedder: Embedder
    retriever: ContextRetriever
    pipeline: IngestionPipeline
    router: QueryRouter
    ledger: MetricsLedger
    http_clients: Sequence[httpx.AsyncClient] = field(default_factory=tuple)

    async def aclose(self) -> None:
        await self.router.drain()
        await self.kv.aclose()
        for client in self.http_clients:
            await client.aclose()


def _build_cache(config: CacheConfig, embedder: Embedder, http_client: httpx.AsyncClient) -> SemanticCache:
    if config.backend == "disabled":
        return DisabledSemanticCache()
    if config.backend == "langcache":
        if config.base_url and config.cache_id and config.service_key:
            return LangCacheClient(
                config.base_url,
                config.cache_id,
                config.service_key,
                ttl_millis=config.ttl_millis,
                client=http_client,
            )
        LOGGER.warning("cache.langcache_unconfigured", fallback="memory")
    return InMemorySemanticCache(embedder, threshold=config.memory_threshold, ttl_millis=config.ttl_millis)


def build_dependencies(settings: Settings) -> AppDependencies:
    """Wire the engine from settings; every component gets its own frozen config."""

    http_client = httpx.AsyncClient(timeout=settings.http_timeout_seconds)
    kv: KeyValueStore = RedisKeyValueStore(settings.redis_url) if settings.redis_url else MemoryKeyValueStore()

    embedding_config = EmbeddingConfig(
        model=settings.embedding_model,
        dim=settings.embedding_dim,
        batch_size=settings.embedding_batch_size,
    )
    embedding_client: EmbeddingClient
    if settings.use_model_embeddings and settings.openai_api_key:
        embedding_client = OpenAIEmbeddingClient(
            settings.openai_api_key,
            embedding_config,
            base_url=settings.openai_base_url,
            client=http_client,
        )
    else:
        embedding_client = HashEmbeddingClient(embedding_config)
    embedder = Embedder(embedding_client, embedding_config)

    index = VectorIndex(
        kv,
        VectorIndexConfig(key_prefix=settings.redis_key_prefix, store_concurrency=settings.store_concurrency),
    )
    ingestion_config = IngestionConfig(
        chunk_size_tokens=settings.chunk_size_tokens,
        chunk_overlap_tokens=settings.chunk_overlap_tokens,
    )
    pipeline = IngestionPipeline(
        HttpDocumentSource(
            settings.allowed_source_domains_tuple,
            client=http_client,
            max_bytes=settings.max_download_size_mb * 1024 * 1024,
        ),
        SentenceChunker(ingestion_config.chunk_size_tokens, ingestion_config.chunk_overlap_tokens),
        embedder,
        index,
        ingestion_config,
    )
    retriever = ContextRetriever(
        embedder,
        index,
        RetrievalConfig(limit=settings.max_context_chunks, threshold=settings.similarity_threshold),
    )

    generator: GenerationBackend
    if settings.use_model_generator and settings.openai_api_key:
        generator = OpenAIChatGenerator(
            settings.openai_api_key,
            GenerationConfig(model=settings.generator_model, max_tokens=settings.generator_max_tokens),
            base_url=settings.openai_base_url,
            client=http_client,
        )
    else:
        generator = TemplateGenerator()

    cache_config = CacheConfig(
        backend=settings.cache_backend,
        base_url=settings.langcache_url,
        cache_id=settings.langcache_cache_id,
        service_key=settings.langcache_service_key,
        ttl_millis=settings.cache_ttl_millis,
        memory_threshold=settings.memory_cache_threshold,
    )
    ledger = MetricsLedger()
    router = QueryRouter(
        _build_cache(cache_config, embedder, http_client),
        generator,
        retriever=retriever,
        prompt_builder=PromptBuilder(),
        metrics=ledger,
        config=RouterConfig(cache_ttl_millis=settings.cache_ttl_millis),
    )
    return AppDependencies(
        kv=kv,
        index=index,
        embedder=embedder,
        retriever=retriever,
        pipeline=pipeline,
        router=router,
        ledger=ledger,
        http_clients=(http_client,),
    )


def create_app(*, settings: Settings | None = None, dependencies: AppDependencies | None = None) -> FastAPI:
    settings = settings or get_settings()
    deps = dependencies or build_dependencies(settings)

    configure_logging()
    logger = get_logger("api")

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        # Finish deletes interrupted by a previous crash.
        try:
            swept = await app.state.dependencies.index.sweep_orphans()
        except VectorStoreError as exc:
            logger.warning("api.orphan_sweep_failed", detail=str(exc))
        else:
            logger.info("api.startup", orphans_swept=swept)
        yield
        await app.state.dependencies.aclose()
        logger.info("api.shutdown")

    app = FastAPI(title="ragcache API", version="0.1.0", lifespan=lifespan)
    app.state.dependencies = deps

    if settings.cors_allow_origins:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=list(settings.cors_allow_origins),
            allow_methods=["*"],
            allow_headers=["*"],
        )

    @app.middleware("http")
    async def add_correlation_id(request: Request, call_next):  # type: ignore[override]
        correlation_id = request.headers.get("X-Request-ID", uuid4().hex)
        bind_correlation_id(correlation_id)
        try:
            response = await call_next(request)
        finally:
            clear_correlation_id()
        response.headers["X-Correlation-ID"] = correlation_id
        return response

    @app.exception_handler(IngestionError)
    async def handle_ingestion_error(request: Request, exc: IngestionError) -> JSONResponse:
        logger.warning("ingestion.rejected", document_id=exc.document_id, stage=exc.stage, detail=exc.reason)
        return JSONResponse(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            content={"detail": exc.reason, "stage": exc.stage, "document_id": exc.document_id},
        )

    @app.exception_handler(GenerationError)
    async def handle_generation_error(request: Request, exc: GenerationError) -> JSONResponse:
        logger.error("generation.error", detail=str(exc))
        return JSONResponse(status_code=status.HTTP_502_BAD_GATEWAY, content={"error": str(exc)})

    def get_dependencies(request: Request) -> AppDependencies:
        return request.app.state.dependencies

    @app.post("/chat", response_model=ChatResponse)
    async def chat(
        payload: ChatRequest,
        deps: AppDependencies = Depends(get_dependencies),
    ) -> ChatResponse:
        outcome = await deps.router.route(
            payload.message,
            shadow_mode=settings.shadow_mode_default if payload.shadow_mode is None else payload.shadow_mode,
            rag_enabled=settings.rag_enabled_default if payload.rag_enabled is None else payload.rag_enabled,
        )
        return _chat_response(outcome, get_correlation_id())

    @app.post("/documents", response_model=IngestionResponse, status_code=status.HTTP_201_CREATED)
    async def ingest_document(
        payload: DocumentIngestionRequest,
        deps: AppDependencies = Depends(get_dependencies),
    ) -> IngestionResponse:
        report = await deps.pipeline.ingest(payload.locator, document_id=payload.document_id, name=payload.name)
        return _ingestion_response(report)

    @app.post("/documents/text", response_model=IngestionResponse, status_code=status.HTTP_201_CREATED)
    async def ingest_raw_text(
        payload: TextIngestionRequest,
        deps: AppDependencies = Depends(get_dependencies),
    ) -> IngestionResponse:
        report = await deps.pipeline.ingest_text(payload.document_id, payload.text, name=payload.name)
        return _ingestion_response(report)

    @app.get("/documents", response_model=DocumentListResponse)
    async def list_documents(deps: AppDependencies = Depends(get_dependencies)) -> DocumentListResponse:
        documents: list[DocumentModel] = []
        for document_id in await deps.index.list_documents():
            record = await deps.index.get_document(document_id)
            if record is None:
                chunk_ids = await deps.index.chunk_ids(document_id)
                documents.append(DocumentModel(document_id=document_id, name=document_id, chunk_count=len(chunk_ids)))
            else:
                documents.append(_document_model(record))
        return DocumentListResponse(documents=documents)

    @app.get("/documents/{document_id}", response_model=DocumentModel)
    async def get_document(document_id: str, deps: AppDependencies = Depends(get_dependencies)) -> DocumentModel:
        record = await deps.index.get_document(document_id)
        if record is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Unknown document: {document_id}")
        return _document_model(record)

    @app.delete("/documents/{document_id}", status_code=status.HTTP_204_NO_CONTENT)
    async def delete_document(document_id: str, deps: AppDependencies = Depends(get_dependencies)) -> Response:
        await deps.index.delete_document(document_id)
        return Response(status_code=status.HTTP_204_NO_CONTENT)

    @app.post("/vectors/search", response_model=VectorSearchResponse)
    async def search_vectors(
        payload: VectorSearchRequest,
        deps: AppDependencies = Depends(get_dependencies),
    ) -> VectorSearchResponse:
        vector = await deps.embedder.embed_query(payload.query)
        if vector is None:
            raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Embedding service unavailable")
        try:
            results = await deps.index.search_similar(
                vector,
                limit=payload.limit,
                threshold=settings.similarity_threshold if payload.threshold is None else payload.threshold,
            )
        except VectorStoreError as exc:
            raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
        return VectorSearchResponse(
            results=[
                VectorSearchResult(
                    chunk_id=item.chunk.chunk_id,
                    document_id=item.chunk.document_id,
                    score=item.score,
                    text=item.chunk.text,
                    metadata=dict(item.chunk.metadata),
                )
                for item in results
            ],
        )

    @app.get("/metrics")
    async def metrics(deps: AppDependencies = Depends(get_dependencies)) -> Response:
        try:
            PipelineMetrics.indexed_chunk_count.set(await deps.index.count())
        except VectorStoreError as exc:
            logger.warning("metrics.index_count_failed", detail=str(exc))
        payload = generate_latest()
        return Response(content=payload, media_type=CONTENT_TYPE_LATEST)

    @app.get("/metrics/summary", response_model=MetricsSummaryResponse)
    async def metrics_summary(deps: AppDependencies = Depends(get_dependencies)) -> MetricsSummaryResponse:
        return MetricsSummaryResponse(**dataclasses.asdict(deps.ledger.snapshot()))

    @app.delete("/metrics/summary", status_code=status.HTTP_204_NO_CONTENT)
    async def reset_metrics(deps: AppDependencies = Depends(get_dependencies)) -> Response:
        deps.ledger.reset()
        return Response(status_code=status.HTTP_204_NO_CONTENT)

    @app.get("/healthz")
    async def healthcheck() -> dict[str, str]:
        from ragcache import __version__

        return {"status": "ok", "version": __version__, "environment": settings.environment}

    @app.head("/healthz")
    async def healthcheck_head() -> Response:
        return Response(status_code=status.HTTP_200_OK)

    @app.get("/livez")
    async def liveness() -> dict[str, str]:
        return {"status": "alive"}

    @app.get("/healthz/ready")
    async def readiness(deps: AppDependencies = Depends(get_dependencies)) -> dict[str, str]:
        try:
            await deps.kv.ping()
            return {"status": "ready"}
        except Exception as exc:  # pragma: no cover - defensive
            return {"status": "error", "detail": str(exc)}

    return app


def _chat_response(outcome: QueryOutcome, correlation_id: str) -> ChatResponse:
    if isinstance(outcome, CacheHitOutcome):
        cache_hit = True
    elif isinstance(outcome, ShadowOutcome):
        cache_hit = outcome.cache_hit
    else:
        cache_hit = False
    context = getattr(outcome, "context", ())
    return ChatResponse(
        content=outcome.content,
        path=outcome.path,
        cached=outcome.cached,
        shadow_mode=outcome.shadow_mode,
        cache_hit=cache_hit,
        similarity=getattr(outcome, "similarity", None),
        matched_prompt=getattr(outcome, "matched_prompt", None),
        tokens_used=getattr(outcome, "tokens_used", 0),
        tokens_saved=getattr(outcome, "tokens_saved", 0),
        latency_ms=outcome.latency_ms,
        cache_latency_ms=outcome.cache_latency_ms,
        generation_latency_ms=getattr(outcome, "generation_latency_ms", None),
        rag_hit=bool(context),
        context=[
            ContextChunkModel(
                chunk_id=item.chunk.chunk_id,
                document_id=item.chunk.document_id,
                score=item.score,
                text=item.chunk.text,
            )
            for item in context
        ],
        correlation_id=correlation_id,
    )


def _ingestion_response(report: IngestionReport) -> IngestionResponse:
    return IngestionResponse(
        document_id=report.document.document_id,
        name=report.document.name,
        status=report.status.value,
        word_count=report.document.word_count,
        chunk_count=report.document.chunk_count,
        failed_chunks=list(report.failed_chunks),
        duration_seconds=report.duration_seconds,
    )


def _document_model(record: DocumentRecord) -> DocumentModel:
    return DocumentModel(
        document_id=record.document_id,
        name=record.name,
        locator=record.locator,
        word_count=record.word_count,
        chunk_count=record.chunk_count,
        status=record.status,
        error=record.error,
        processed_at=record.processed_at,
        last_updated=record.last_updated,
    )


app = create_app()
