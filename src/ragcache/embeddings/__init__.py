"""Embedding clients and the vector index."""

from .service import Embedder, EmbeddingClient, EmbeddingConfig, HashEmbeddingClient, OpenAIEmbeddingClient
from .store import DocumentRecord, VectorIndex, VectorIndexConfig, cosine_similarity

__all__ = [
    "DocumentRecord",
    "Embedder",
    "EmbeddingClient",
    "EmbeddingConfig",
    "HashEmbeddingClient",
    "OpenAIEmbeddingClient",
    "VectorIndex",
    "VectorIndexConfig",
    "cosine_similarity",
]
