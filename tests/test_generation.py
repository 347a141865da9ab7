from __future__ import annotations

import json
import math

import httpx
import pytest

from ragcache.errors import GenerationError
from ragcache.services.generation import NO_RESPONSE, OpenAIChatGenerator, TemplateGenerator


@pytest.mark.asyncio
async def test_template_generator_is_deterministic():
    prompt = "Context:\n[1] text\n\nQuestion: what is cached?"
    first = await TemplateGenerator().generate(prompt)
    second = await TemplateGenerator().generate(prompt)
    assert first == second
    assert "what is cached?" in first.text
    assert first.tokens_used == math.ceil(len(prompt) / 4) + math.ceil(len(first.text) / 4)


@pytest.mark.asyncio
async def test_openai_generator_reads_content_and_usage():
    captured: dict[str, object] = {}

    def handler(request: httpx.Request) -> httpx.Response:
        captured["path"] = request.url.path
        captured["body"] = json.loads(request.content)
        return httpx.Response(
            200,
            json={"choices": [{"message": {"content": "Cached answers are cheap."}}], "usage": {"total_tokens": 57}},
        )

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as http:
        generator = OpenAIChatGenerator("sk-test", base_url="https://api.test", client=http)
        result = await generator.generate("Why cache?")

    assert result.text == "Cached answers are cheap."
    assert result.tokens_used == 57
    assert captured["path"] == "/v1/chat/completions"
    assert captured["body"] == {
        "model": "gpt-3.5-turbo",
        "messages": [{"role": "user", "content": "Why cache?"}],
        "max_tokens": 500,
    }


@pytest.mark.asyncio
async def test_openai_generator_defaults_missing_fields():
    async with httpx.AsyncClient(transport=httpx.MockTransport(lambda request: httpx.Response(200, json={}))) as http:
        result = await OpenAIChatGenerator("sk-test", client=http).generate("hi")
    assert result.text == NO_RESPONSE
    assert result.tokens_used == 0


def _raise_timeout(request: httpx.Request) -> httpx.Response:
    raise httpx.ReadTimeout("too slow", request=request)


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "handler",
    [lambda request: httpx.Response(429, json={"error": "rate limited"}), _raise_timeout],
)
async def test_openai_generator_failures_raise(handler):
    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as http:
        with pytest.raises(GenerationError):
            await OpenAIChatGenerator("sk-test", client=http).generate("hi")


@pytest.mark.asyncio
@pytest.mark.parametrize("body", [["choices"], 42, {"choices": ["not an object"]}])
async def test_openai_generator_rejects_malformed_bodies(body):
    async with httpx.AsyncClient(transport=httpx.MockTransport(lambda request: httpx.Response(200, json=body))) as http:
        with pytest.raises(GenerationError):
            await OpenAIChatGenerator("sk-test", client=http).generate("hi")
