"""Semantic cache clients.

Caching is an optimization, so every client here fails open: backend errors become
misses on search and ``False`` on store, and are logged rather than raised.
"""

from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Callable, Protocol

import httpx

from ragcache.embeddings.service import Embedder
from ragcache.embeddings.store import cosine_similarity
from ragcache.errors import CacheUnavailableError
from ragcache.metrics.observability import get_logger
from ragcache.models import CacheLookup, Vector

LOGGER = get_logger("cache")

DEFAULT_TTL_MILLIS = 2_592_000_000  # 30 days


@dataclass(frozen=True)
class CacheConfig:
    """Configuration for the semantic cache backend."""

    backend: str = "memory"
    base_url: str | None = None
    cache_id: str | None = None
    service_key: str | None = None
    ttl_millis: int = DEFAULT_TTL_MILLIS
    memory_threshold: float = 0.9


class SemanticCache(Protocol):
    """Approximate-match prompt → response cache."""

    async def search(self, prompt: str) -> CacheLookup:
        """Return the best match above the backend threshold, or a miss."""

    async def store(self, prompt: str, response: str, ttl_millis: int | None = None) -> bool:
        """Store a prompt/response pair; returns False when the backend refused it."""


class LangCacheClient:
    """Client for a managed LangCache-style REST service."""

    def __init__(
        self,
        base_url: str,
        cache_id: str,
        service_key: str,
        *,
        ttl_millis: int = DEFAULT_TTL_MILLIS,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._entries_url = f"{base_url.rstrip('/')}/v1/caches/{cache_id}/entries"
        self._service_key = service_key
        self._ttl_millis = ttl_millis
        self._client = client or httpx.AsyncClient(timeout=10.0)

    @property
    def _headers(self) -> dict[str, str]:
        return {"Authorization": f"Bearer {self._service_key}"}

    async def search(self, prompt: str) -> CacheLookup:
        try:
            return await self._search(prompt)
        except CacheUnavailableError as exc:
            LOGGER.warning("cache.unavailable", operation="search", detail=str(exc))
            return CacheLookup.miss()

    async def _search(self, prompt: str) -> CacheLookup:
        try:
            response = await self._client.post(
                f"{self._entries_url}/search",
                headers=self._headers,
                json={"prompt": prompt.strip()},
            )
        except httpx.HTTPError as exc:
            raise CacheUnavailableError(f"LangCache search failed: {exc}") from exc
        if response.status_code >= 400:
            # Not-found and other refusals are plain misses.
            LOGGER.info("cache.search_refused", status_code=response.status_code)
            return CacheLookup.miss()
        try:
            payload = response.json()
        except ValueError as exc:
            raise CacheUnavailableError(f"LangCache returned invalid JSON: {exc}") from exc
        entries = payload.get("data") if isinstance(payload, dict) else None
        if not isinstance(entries, list) or not entries:
            return CacheLookup.miss()
        best = entries[0]
        if not isinstance(best, dict) or not best.get("response"):
            return CacheLookup.miss()
        try:
            similarity = float(best.get("similarity") or 0.0)
        except (TypeError, ValueError) as exc:
            raise CacheUnavailableError(f"LangCache returned a malformed similarity: {exc}") from exc
        return CacheLookup(
            hit=True,
            response=str(best["response"]),
            similarity=similarity,
            matched_prompt=str(best.get("prompt") or prompt),
        )

    async def store(self, prompt: str, response: str, ttl_millis: int | None = None) -> bool:
        try:
            result = await self._client.post(
                self._entries_url,
                headers=self._headers,
                json={
                    "prompt": prompt.strip(),
                    "response": response.strip(),
                    "ttl_millis": ttl_millis or self._ttl_millis,
                },
            )
        except httpx.HTTPError as exc:
            LOGGER.warning("cache.unavailable", operation="store", detail=str(exc))
            return False
        if result.status_code >= 400:
            LOGGER.warning("cache.store_refused", status_code=result.status_code)
            return False
        return True


@dataclass
class _MemoryEntry:
    prompt: str
    response: str
    vector: Vector
    expires_at: float


class InMemorySemanticCache:
    """Process-local approximate-match cache scored by cosine over query embeddings."""

    def __init__(
        self,
        embedder: Embedder,
        *,
        threshold: float = 0.9,
        ttl_millis: int = DEFAULT_TTL_MILLIS,
        max_entries: int = 1000,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._embedder = embedder
        self._threshold = threshold
        self._ttl_millis = ttl_millis
        self._max_entries = max_entries
        self._clock = clock
        self._entries: list[_MemoryEntry] = []

    def __len__(self) -> int:
        return len(self._entries)

    def _evict_expired(self) -> None:
        now = self._clock()
        self._entries = [entry for entry in self._entries if entry.expires_at > now]

    async def search(self, prompt: str) -> CacheLookup:
        vector = await self._embedder.embed_query(prompt.strip())
        if vector is None:
            return CacheLookup.miss()
        self._evict_expired()
        best: _MemoryEntry | None = None
        best_score = 0.0
        for entry in self._entries:
            score = cosine_similarity(vector, entry.vector)
            if score >= self._threshold and (best is None or score > best_score):
                best, best_score = entry, score
        if best is None:
            return CacheLookup.miss()
        return CacheLookup(hit=True, response=best.response, similarity=best_score, matched_prompt=best.prompt)

    async def store(self, prompt: str, response: str, ttl_millis: int | None = None) -> bool:
        vector = await self._embedder.embed_query(prompt.strip())
        if vector is None:
            return False
        expires_at = self._clock() + (ttl_millis or self._ttl_millis) / 1000
        self._evict_expired()
        self._entries.append(_MemoryEntry(prompt.strip(), response.strip(), vector, expires_at))
        if len(self._entries) > self._max_entries:
            self._entries = self._entries[-self._max_entries :]
        return True


class DisabledSemanticCache:
    """Cache that never hits; used when no backend is configured."""

    async def search(self, prompt: str) -> CacheLookup:
        return CacheLookup.miss()

    async def store(self, prompt: str, response: str, ttl_millis: int | None = None) -> bool:
        return False
