"""Embedding clients and the batching embedder."""

from __future__ import annotations

import dataclasses
import hashlib
import math
from dataclasses import dataclass
from typing import Protocol, Sequence

import httpx

from ragcache.errors import EmbeddingError
from ragcache.metrics.observability import get_logger
from ragcache.models import Chunk, Vector

LOGGER = get_logger("embeddings")

EMBEDDING_FAILED = "Failed to generate embedding"


@dataclass(frozen=True)
class EmbeddingConfig:
    """Configuration for embedding clients and batching."""

    model: str = "text-embedding-3-small"
    dim: int = 1536
    batch_size: int = 10
    normalize: bool = True


class EmbeddingClient(Protocol):
    """One upstream call: one vector per input string, same order."""

    async def embed(self, batch: Sequence[str]) -> Sequence[Vector]:
        """Return embeddings for the batch or raise ``EmbeddingError``."""


class HashEmbeddingClient:
    """Deterministic lightweight embedding client used offline and in tests."""

    def __init__(self, config: EmbeddingConfig | None = None) -> None:
        self._config = config or EmbeddingConfig(dim=384)

    def _hash_to_vector(self, text: str) -> Vector:
        raw = bytearray()
        block = 0
        while len(raw) < self._config.dim:
            raw.extend(hashlib.sha256(f"{block}:{text}".encode("utf-8")).digest())
            block += 1
        # Centred so unrelated texts land near zero similarity.
        vector = [(byte - 127.5) / 127.5 for byte in raw[: self._config.dim]]
        if self._config.normalize:
            norm = math.sqrt(sum(value * value for value in vector)) or 1.0
            vector = [value / norm for value in vector]
        return tuple(vector)

    async def embed(self, batch: Sequence[str]) -> Sequence[Vector]:
        return [self._hash_to_vector(text) for text in batch]


class OpenAIEmbeddingClient:
    """Embedding client for the OpenAI ``/v1/embeddings`` endpoint."""

    def __init__(
        self,
        api_key: str,
        config: EmbeddingConfig | None = None,
        *,
        base_url: str = "https://api.openai.com",
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._config = config or EmbeddingConfig()
        self._api_key = api_key
        self._url = f"{base_url.rstrip('/')}/v1/embeddings"
        self._client = client or httpx.AsyncClient(timeout=30.0)

    async def embed(self, batch: Sequence[str]) -> Sequence[Vector]:
        try:
            response = await self._client.post(
                self._url,
                headers={"Authorization": f"Bearer {self._api_key}"},
                json={"model": self._config.model, "input": list(batch)},
            )
        except httpx.HTTPError as exc:
            raise EmbeddingError(f"Embedding request failed: {exc}") from exc
        if response.status_code >= 400:
            raise EmbeddingError(f"OpenAI API error: {response.status_code}")
        try:
            payload = response.json()
        except ValueError as exc:
            raise EmbeddingError(f"Embedding service returned invalid JSON: {exc}") from exc
        data = (payload.get("data") if isinstance(payload, dict) else None) or []
        if not isinstance(data, list) or not all(isinstance(item, dict) for item in data):
            raise EmbeddingError("Embedding service returned a malformed body")
        if len(data) != len(batch):
            raise EmbeddingError(f"Embedding service returned {len(data)} vectors for {len(batch)} inputs")
        ordered = sorted(data, key=lambda item: item.get("index", 0))
        return [tuple(float(value) for value in item["embedding"]) for item in ordered]


class Embedder:
    """Batches texts through an ``EmbeddingClient`` without letting one batch sink the job."""

    def __init__(self, client: EmbeddingClient, config: EmbeddingConfig | None = None) -> None:
        self._client = client
        self._config = config or EmbeddingConfig()

    async def embed(self, texts: Sequence[str], batch_size: int | None = None) -> list[Vector | None]:
        """Embed ``texts`` in order; every text of a failed batch maps to ``None``."""

        size = max(1, batch_size or self._config.batch_size)
        results: list[Vector | None] = []
        for offset in range(0, len(texts), size):
            batch = list(texts[offset : offset + size])
            try:
                vectors = await self._client.embed(batch)
                if len(vectors) != len(batch):
                    raise EmbeddingError(
                        f"Embedding client returned {len(vectors)} vectors for {len(batch)} texts"
                    )
            except Exception as exc:
                LOGGER.warning("embedding.batch_failed", offset=offset, batch_size=len(batch), detail=str(exc))
                results.extend([None] * len(batch))
                continue
            results.extend(tuple(vector) for vector in vectors)
        return results

    async def embed_query(self, text: str) -> Vector | None:
        """Embed a runtime query; ``None`` means no search is possible."""

        try:
            vectors = await self._client.embed([text])
        except Exception as exc:
            LOGGER.warning("embedding.query_failed", detail=str(exc))
            return None
        if not vectors:
            return None
        return tuple(vectors[0])

    async def embed_chunks(self, chunks: Sequence[Chunk]) -> list[Chunk]:
        vectors = await self.embed([chunk.text for chunk in chunks])
        embedded: list[Chunk] = []
        for chunk, vector in zip(chunks, vectors):
            if vector is None:
                embedded.append(dataclasses.replace(chunk, embedding=None, error=EMBEDDING_FAILED))
            else:
                embedded.append(dataclasses.replace(chunk, embedding=vector, error=None))
        return embedded
