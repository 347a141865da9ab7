"""Key-value storage backends."""

from .kv import KeyValueStore, MemoryKeyValueStore, RedisKeyValueStore

__all__ = ["KeyValueStore", "MemoryKeyValueStore", "RedisKeyValueStore"]
