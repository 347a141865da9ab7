"""Retrieval components."""

from .service import ContextRetriever, PromptBuilder, PromptBuilderConfig, RetrievalConfig

__all__ = ["ContextRetriever", "PromptBuilder", "PromptBuilderConfig", "RetrievalConfig"]
