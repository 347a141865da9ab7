"""Runtime configuration for the ragcache services."""

from __future__ import annotations

from functools import lru_cache
from typing import Literal, Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Environment-backed configuration model."""

    model_config = SettingsConfigDict(env_prefix="ragcache_", env_file=".env", case_sensitive=False)

    environment: Literal["dev", "test", "prod"] = "dev"

    # Key-value store backing the vector index; None keeps everything in process memory
    redis_url: str | None = None
    redis_key_prefix: str = "doc"
    store_concurrency: int = 8

    openai_api_key: str | None = None
    openai_base_url: str = "https://api.openai.com"
    http_timeout_seconds: float = 30.0

    embedding_model: str = "text-embedding-3-small"
    embedding_dim: int = 1536
    embedding_batch_size: int = 10
    use_model_embeddings: bool = False

    generator_model: str = "gpt-3.5-turbo"
    generator_max_tokens: int = 500
    use_model_generator: bool = False

    # Semantic cache
    cache_backend: Literal["langcache", "memory", "disabled"] = "memory"
    langcache_url: str | None = None
    langcache_cache_id: str | None = None
    langcache_service_key: str | None = None
    cache_ttl_millis: int = 2_592_000_000  # 30 days
    memory_cache_threshold: float = 0.9

    # Chunking, sizes are in estimated tokens (4 characters each)
    chunk_size_tokens: int = 800
    chunk_overlap_tokens: int = 100

    similarity_threshold: float = 0.7
    max_context_chunks: int = 5

    # Chat defaults when a request does not say
    shadow_mode_default: bool = False
    rag_enabled_default: bool = False

    # Remote document fetching; empty allows any host
    allowed_source_domains: tuple[str, ...] | str = ("docs.google.com",)
    max_download_size_mb: int = 25

    cors_allow_origins: tuple[str, ...] = ()

    @property
    def is_test(self) -> bool:
        return self.environment == "test"

    @property
    def langcache_configured(self) -> bool:
        return bool(self.langcache_url and self.langcache_cache_id and self.langcache_service_key)

    @property
    def allowed_source_domains_tuple(self) -> tuple[str, ...]:
        value = self.allowed_source_domains
        if isinstance(value, tuple):
            return value
        if isinstance(value, str):
            return tuple(part.strip() for part in value.split(",") if part.strip())
        return ()


@lru_cache(maxsize=1)
def _cached_settings() -> Settings:
    return Settings()


def get_settings(override: Optional[dict[str, object]] = None) -> Settings:
    """Return settings, optionally overriding values without mutating cache."""

    if override:
        return Settings(**override)
    return _cached_settings()
