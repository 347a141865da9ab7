"""Pydantic models for the ragcache API."""

from __future__ import annotations

from typing import Dict, List, Literal, Optional

from pydantic import BaseModel, Field


class ChatRequest(BaseModel):
    message: str = Field(..., min_length=1, description="End-user message to answer")
    shadow_mode: Optional[bool] = Field(
        default=None,
        description="Serve the generated answer and only record the cache result",
    )
    rag_enabled: Optional[bool] = Field(default=None, description="Augment the prompt with retrieved context")


class ContextChunkModel(BaseModel):
    chunk_id: str
    document_id: str
    score: float
    text: str


class ChatResponse(BaseModel):
    content: str
    path: Literal["cache_hit", "cache_miss_generate", "shadow_dual"]
    cached: bool
    shadow_mode: bool
    cache_hit: bool
    similarity: Optional[float] = None
    matched_prompt: Optional[str] = None
    tokens_used: int = 0
    tokens_saved: int = 0
    latency_ms: float
    cache_latency_ms: float
    generation_latency_ms: Optional[float] = None
    rag_hit: bool = False
    context: List[ContextChunkModel] = Field(default_factory=list)
    correlation_id: Optional[str] = None


class DocumentIngestionRequest(BaseModel):
    locator: str = Field(..., min_length=1, description="URL of a publicly readable document")
    document_id: Optional[str] = Field(default=None, description="Override the id derived from the locator")
    name: Optional[str] = Field(default=None, description="Display name")


class TextIngestionRequest(BaseModel):
    """Payload for ingesting raw text content."""

    document_id: str = Field(..., min_length=1)
    text: str = Field(..., description="Raw document text")
    name: Optional[str] = Field(default=None)


class IngestionResponse(BaseModel):
    document_id: str
    name: str
    status: str
    word_count: int = Field(..., ge=0)
    chunk_count: int = Field(..., ge=0, description="Number of chunks stored for the document")
    failed_chunks: List[str] = Field(default_factory=list, description="Chunks skipped because embedding failed")
    duration_seconds: float


class DocumentModel(BaseModel):
    document_id: str
    name: str
    locator: Optional[str] = None
    word_count: int = 0
    chunk_count: int = 0
    status: str = "ready"
    error: Optional[str] = None
    processed_at: Optional[str] = None
    last_updated: Optional[str] = None


class DocumentListResponse(BaseModel):
    documents: List[DocumentModel]


class VectorSearchRequest(BaseModel):
    query: str = Field(..., min_length=1)
    limit: int = Field(default=5, ge=1, le=50)
    threshold: Optional[float] = Field(default=None, ge=-1.0, le=1.0)


class VectorSearchResult(BaseModel):
    chunk_id: str
    document_id: str
    score: float
    text: str
    metadata: Dict[str, int]


class VectorSearchResponse(BaseModel):
    results: List[VectorSearchResult]


class RagSourceModel(BaseModel):
    document_id: str
    score: float
    content: str


class QueryRecordModel(BaseModel):
    user_query: str
    cached_query: Optional[str] = None
    similarity: Optional[float] = None
    timestamp: float
    cache_hit: bool
    rag_hit: bool
    rag_sources: List[RagSourceModel] = Field(default_factory=list)


class MetricsSummaryResponse(BaseModel):
    total_requests: int
    cache_hits: int
    cache_misses: int
    rag_hits: int
    rag_misses: int
    total_tokens_saved: int
    total_tokens_used: int
    total_cost_saved: float
    total_cost_spent: float
    average_cache_latency_ms: float
    average_generation_latency_ms: float
    cache_hit_rate: float
    rag_hit_rate: float
    query_records: List[QueryRecordModel]
