"""Key-value store backends used by the vector index."""

from __future__ import annotations

from fnmatch import fnmatchcase
from typing import Mapping, Protocol


class KeyValueStore(Protocol):
    """Minimal async hash/set/key-scan surface the vector index relies on.

    Each call is assumed atomic on its own; nothing here spans keys transactionally.
    """

    async def hset(self, key: str, mapping: Mapping[str, str]) -> None:
        """Set the given fields on a hash, creating it if needed."""

    async def hgetall(self, key: str) -> dict[str, str]:
        """Return every field of a hash, or an empty dict."""

    async def sadd(self, key: str, *members: str) -> None:
        """Add members to a set."""

    async def smembers(self, key: str) -> set[str]:
        """Return every member of a set."""

    async def srem(self, key: str, *members: str) -> None:
        """Remove members from a set."""

    async def delete(self, *keys: str) -> int:
        """Delete keys, returning how many existed."""

    async def scan_keys(self, pattern: str) -> list[str]:
        """Return every key matching a glob pattern."""

    async def ping(self) -> bool:
        """Return True when the backend is reachable."""

    async def aclose(self) -> None:
        """Release connections."""


class RedisKeyValueStore:
    """Redis-backed store using ``redis.asyncio``."""

    def __init__(self, redis_url: str = "redis://localhost:6379", *, client=None) -> None:
        self.redis_url = redis_url
        self._client = client

    def _get_client(self):
        if self._client is None:
            import redis.asyncio as redis

            self._client = redis.from_url(self.redis_url, decode_responses=True)
        return self._client

    async def hset(self, key: str, mapping: Mapping[str, str]) -> None:
        await self._get_client().hset(key, mapping=dict(mapping))

    async def hgetall(self, key: str) -> dict[str, str]:
        return dict(await self._get_client().hgetall(key))

    async def sadd(self, key: str, *members: str) -> None:
        if members:
            await self._get_client().sadd(key, *members)

    async def smembers(self, key: str) -> set[str]:
        return set(await self._get_client().smembers(key))

    async def srem(self, key: str, *members: str) -> None:
        if members:
            await self._get_client().srem(key, *members)

    async def delete(self, *keys: str) -> int:
        if not keys:
            return 0
        return int(await self._get_client().delete(*keys))

    async def scan_keys(self, pattern: str) -> list[str]:
        keys = []
        async for key in self._get_client().scan_iter(match=pattern):
            keys.append(key)
        return keys

    async def ping(self) -> bool:
        return bool(await self._get_client().ping())

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None


class MemoryKeyValueStore:
    """In-process store for tests and single-node development."""

    def __init__(self) -> None:
        self._hashes: dict[str, dict[str, str]] = {}
        self._sets: dict[str, set[str]] = {}

    async def hset(self, key: str, mapping: Mapping[str, str]) -> None:
        self._hashes.setdefault(key, {}).update({k: str(v) for k, v in mapping.items()})

    async def hgetall(self, key: str) -> dict[str, str]:
        return dict(self._hashes.get(key, {}))

    async def sadd(self, key: str, *members: str) -> None:
        if members:
            self._sets.setdefault(key, set()).update(members)

    async def smembers(self, key: str) -> set[str]:
        return set(self._sets.get(key, set()))

    async def srem(self, key: str, *members: str) -> None:
        bucket = self._sets.get(key)
        if bucket is None:
            return
        bucket.difference_update(members)
        if not bucket:
            del self._sets[key]

    async def delete(self, *keys: str) -> int:
        removed = 0
        for key in keys:
            if self._hashes.pop(key, None) is not None:
                removed += 1
            if self._sets.pop(key, None) is not None:
                removed += 1
        return removed

    async def scan_keys(self, pattern: str) -> list[str]:
        return [key for key in [*self._hashes, *self._sets] if fnmatchcase(key, pattern)]

    async def ping(self) -> bool:
        return True

    async def aclose(self) -> None:
        return None
