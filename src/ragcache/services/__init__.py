"""Service layer orchestrations for ragcache."""

from .generation import GenerationBackend, GenerationConfig, OpenAIChatGenerator, TemplateGenerator
from .query import QueryRouter, RouterConfig, estimate_tokens_saved

__all__ = [
    "GenerationBackend",
    "GenerationConfig",
    "OpenAIChatGenerator",
    "QueryRouter",
    "RouterConfig",
    "TemplateGenerator",
    "estimate_tokens_saved",
]
