"""Generation backends for ragcache."""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Protocol

import httpx

from ragcache.errors import GenerationError
from ragcache.models import GenerationResult

NO_RESPONSE = "No response generated"


@dataclass(frozen=True)
class GenerationConfig:
    """Configuration for answer generation."""

    model: str = "gpt-3.5-turbo"
    max_tokens: int = 500


class GenerationBackend(Protocol):
    """Protocol describing generation behaviour."""

    async def generate(self, prompt: str) -> GenerationResult:
        """Return the model's answer for ``prompt`` or raise ``GenerationError``."""


class TemplateGenerator:
    """Simple deterministic generator used for tests and offline environments.

    Token usage is estimated at four characters per token.
    """

    async def generate(self, prompt: str) -> GenerationResult:
        question = prompt.rsplit("Question:", 1)[-1].strip()
        text = f"Answer: here is the best available response to '{question}'."
        tokens = math.ceil(len(prompt) / 4) + math.ceil(len(text) / 4)
        return GenerationResult(text=text, tokens_used=tokens)


class OpenAIChatGenerator:
    """Generator that calls the OpenAI chat completions endpoint."""

    def __init__(
        self,
        api_key: str,
        config: GenerationConfig | None = None,
        *,
        base_url: str = "https://api.openai.com",
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._config = config or GenerationConfig()
        self._api_key = api_key
        self._url = f"{base_url.rstrip('/')}/v1/chat/completions"
        self._client = client or httpx.AsyncClient(timeout=60.0)

    async def generate(self, prompt: str) -> GenerationResult:
        try:
            response = await self._client.post(
                self._url,
                headers={"Authorization": f"Bearer {self._api_key}"},
                json={
                    "model": self._config.model,
                    "messages": [{"role": "user", "content": prompt}],
                    "max_tokens": self._config.max_tokens,
                },
            )
        except httpx.HTTPError as exc:
            raise GenerationError(f"OpenAI request failed: {exc}") from exc
        if response.status_code >= 400:
            raise GenerationError(f"OpenAI API error: {response.status_code}")
        try:
            data = response.json()
        except ValueError as exc:
            raise GenerationError(f"OpenAI returned invalid JSON: {exc}") from exc
        if not isinstance(data, dict):
            raise GenerationError(f"OpenAI returned an unexpected body: {type(data).__name__}")
        choices = data.get("choices") or [{}]
        if not isinstance(choices, list) or not isinstance(choices[0], dict):
            raise GenerationError("OpenAI returned malformed choices")
        content = (choices[0].get("message") or {}).get("content") or NO_RESPONSE
        tokens_used = int((data.get("usage") or {}).get("total_tokens") or 0)
        return GenerationResult(text=content, tokens_used=tokens_used)
