"""Shadow-mode replay harness for semantic cache quality."""

from .cli import ReplayResult, main

__all__ = ["ReplayResult", "main"]
