"""Semantic cache clients."""

from .service import CacheConfig, DisabledSemanticCache, InMemorySemanticCache, LangCacheClient, SemanticCache

__all__ = [
    "CacheConfig",
    "DisabledSemanticCache",
    "InMemorySemanticCache",
    "LangCacheClient",
    "SemanticCache",
]
