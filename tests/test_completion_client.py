"""
Tests for completion clients.

Tests cover:
- Groq and Gemini request/response handling
- HTTP and network errors surfacing as CompletionError
- Provider fallback
- Building the provider chain from settings
"""

import json

import httpx
import pytest

from chatledger.config import Settings
from chatledger.exceptions import CompletionError
from chatledger.llm.client import (
    FallbackCompletionClient,
    GeminiClient,
    OpenAICompatibleClient,
    build_completion_client,
)


def http_client(handler) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


class FakeProvider:
    def __init__(self, name, response=None, error=None):
        self.provider = name
        self.response = response
        self.error = error
        self.calls = 0

    async def complete(self, prompt: str) -> str:
        self.calls += 1
        if self.error is not None:
            raise self.error
        return self.response


# =============================================================================
# Providers
# =============================================================================

class TestOpenAICompatibleClient:

    @pytest.mark.asyncio
    async def test_sends_chat_request(self):
        captured = {}

        def handler(request: httpx.Request) -> httpx.Response:
            captured["url"] = str(request.url)
            captured["auth"] = request.headers["Authorization"]
            captured["body"] = json.loads(request.content)
            return httpx.Response(200, json={"choices": [{"message": {"content": '{"serviceId": "query"}'}}]})

        client = OpenAICompatibleClient("gsk-test", http_client=http_client(handler))

        text = await client.complete("qual meu saldo?")

        assert text == '{"serviceId": "query"}'
        assert captured["url"] == "https://api.groq.com/openai/v1/chat/completions"
        assert captured["auth"] == "Bearer gsk-test"
        assert captured["body"]["model"] == "llama-3.1-8b-instant"
        assert captured["body"]["temperature"] == 0.1
        assert captured["body"]["messages"][1] == {"role": "user", "content": "qual meu saldo?"}

    @pytest.mark.asyncio
    async def test_missing_content_returns_empty_object(self):
        client = OpenAICompatibleClient(
            "gsk-test", http_client=http_client(lambda request: httpx.Response(200, json={"choices": []}))
        )
        assert await client.complete("oi") == "{}"

    @pytest.mark.asyncio
    async def test_http_error(self):
        client = OpenAICompatibleClient(
            "gsk-test", http_client=http_client(lambda request: httpx.Response(503, text="overloaded"))
        )

        with pytest.raises(CompletionError) as exc_info:
            await client.complete("oi")

        assert exc_info.value.status_code == 503
        assert str(exc_info.value).startswith("HTTP 503")

    @pytest.mark.asyncio
    async def test_network_error(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        client = OpenAICompatibleClient("gsk-test", http_client=http_client(handler))

        with pytest.raises(CompletionError, match="network error"):
            await client.complete("oi")

    @pytest.mark.asyncio
    async def test_non_json_body(self):
        client = OpenAICompatibleClient(
            "gsk-test", http_client=http_client(lambda request: httpx.Response(200, text="<html>"))
        )

        with pytest.raises(CompletionError, match="non-JSON"):
            await client.complete("oi")


class TestGeminiClient:

    @pytest.mark.asyncio
    async def test_generate_content(self):
        captured = {}

        def handler(request: httpx.Request) -> httpx.Response:
            captured["url"] = str(request.url)
            captured["key"] = request.headers["x-goog-api-key"]
            captured["body"] = json.loads(request.content)
            return httpx.Response(
                200, json={"candidates": [{"content": {"parts": [{"text": '{"serviceId": null}'}]}}]}
            )

        client = GeminiClient("gm-test", http_client=http_client(handler))

        text = await client.complete("bom dia")

        assert text == '{"serviceId": null}'
        assert captured["url"].endswith("/models/gemini-2.5-flash:generateContent")
        assert captured["key"] == "gm-test"
        assert captured["body"] == {"contents": [{"parts": [{"text": "bom dia"}]}]}

    @pytest.mark.asyncio
    async def test_http_error(self):
        client = GeminiClient("gm-test", http_client=http_client(lambda request: httpx.Response(429)))

        with pytest.raises(CompletionError) as exc_info:
            await client.complete("oi")

        assert exc_info.value.status_code == 429


# =============================================================================
# Fallback
# =============================================================================

class TestFallback:

    @pytest.mark.asyncio
    async def test_first_success_wins(self):
        primary = FakeProvider("groq", response="a")
        secondary = FakeProvider("gemini", response="b")

        assert await FallbackCompletionClient([primary, secondary]).complete("oi") == "a"
        assert secondary.calls == 0

    @pytest.mark.asyncio
    async def test_falls_through_to_next(self):
        primary = FakeProvider("groq", error=CompletionError("HTTP 500: groq", status_code=500))
        secondary = FakeProvider("gemini", response="b")

        assert await FallbackCompletionClient([primary, secondary]).complete("oi") == "b"

    @pytest.mark.asyncio
    async def test_last_error_propagates(self):
        last = CompletionError("HTTP 401: gemini", status_code=401)
        client = FallbackCompletionClient([
            FakeProvider("groq", error=CompletionError("HTTP 500: groq", status_code=500)),
            FakeProvider("gemini", error=last),
        ])

        with pytest.raises(CompletionError) as exc_info:
            await client.complete("oi")

        assert exc_info.value is last

    def test_requires_a_client(self):
        with pytest.raises(ValueError):
            FallbackCompletionClient([])


# =============================================================================
# Building from settings
# =============================================================================

class TestBuildCompletionClient:

    def test_no_keys(self):
        with pytest.raises(ValueError, match="GROQ_API_KEY"):
            build_completion_client(Settings(GROQ_API_KEY="", GEMINI_API_KEY=" "))

    def test_single_provider(self):
        client = build_completion_client(Settings(GROQ_API_KEY="gsk-test", GEMINI_API_KEY=""))
        assert isinstance(client, OpenAICompatibleClient)

    def test_both_providers_in_order(self):
        client = build_completion_client(Settings(GROQ_API_KEY="gsk-test", GEMINI_API_KEY="gm-test"))

        assert isinstance(client, FallbackCompletionClient)
        assert [type(c) for c in client.clients] == [OpenAICompatibleClient, GeminiClient]
