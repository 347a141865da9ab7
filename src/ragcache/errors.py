"""Exception hierarchy shared across the ragcache engine."""

from __future__ import annotations


class RagCacheError(RuntimeError):
    """Base class for engine errors."""


class SourceUnavailableError(RagCacheError):
    """Raised when a document locator cannot be turned into text."""


class SourceUnauthorizedError(SourceUnavailableError):
    """The document exists but is not publicly readable."""


class SourceNotFoundError(SourceUnavailableError):
    """The locator does not resolve to a document."""


class SourceEmptyError(SourceUnavailableError):
    """The document was fetched but contains no text."""


class EmbeddingError(RagCacheError):
    """Raised by embedding clients when a batch cannot be embedded."""


class CacheUnavailableError(RagCacheError):
    """Raised inside semantic cache clients; never escapes them."""


class GenerationError(RagCacheError):
    """Raised when the generation service fails. Fatal to the chat turn."""


class VectorStoreError(RagCacheError):
    """Raised when the key-value store backing the vector index fails."""


class IngestionError(RagCacheError):
    """Raised when a document ingestion job ends in the ``error`` state."""

    def __init__(self, reason: str, *, document_id: str | None = None, stage: str | None = None) -> None:
        super().__init__(reason)
        self.reason = reason
        self.document_id = document_id
        self.stage = stage


__all__ = [
    "CacheUnavailableError",
    "EmbeddingError",
    "GenerationError",
    "IngestionError",
    "RagCacheError",
    "SourceEmptyError",
    "SourceNotFoundError",
    "SourceUnauthorizedError",
    "SourceUnavailableError",
    "VectorStoreError",
]
