"""Document ingestion pipeline."""

from .chunking import SentenceChunker, chunk_text, estimate_tokens, split_sentences
from .service import (
    IngestionConfig,
    IngestionJob,
    IngestionPipeline,
    IngestionReport,
    IngestionStatus,
)
from .sources import (
    DocumentSource,
    HttpDocumentSource,
    StaticDocumentSource,
    derive_document_id,
    extract_google_doc_id,
)

__all__ = [
    "DocumentSource",
    "HttpDocumentSource",
    "IngestionConfig",
    "IngestionJob",
    "IngestionPipeline",
    "IngestionReport",
    "IngestionStatus",
    "SentenceChunker",
    "StaticDocumentSource",
    "chunk_text",
    "derive_document_id",
    "estimate_tokens",
    "extract_google_doc_id",
    "split_sentences",
]
