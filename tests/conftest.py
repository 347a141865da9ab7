from __future__ import annotations

import pytest

from ragcache.embeddings import Embedder, EmbeddingConfig, HashEmbeddingClient, VectorIndex
from ragcache.storage import MemoryKeyValueStore


@pytest.fixture
def kv() -> MemoryKeyValueStore:
    return MemoryKeyValueStore()


@pytest.fixture
def index(kv: MemoryKeyValueStore) -> VectorIndex:
    return VectorIndex(kv)


@pytest.fixture
def embedder() -> Embedder:
    config = EmbeddingConfig(dim=64, batch_size=2)
    return Embedder(HashEmbeddingClient(config), config)
