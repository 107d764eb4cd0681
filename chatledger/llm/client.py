"""
Completion clients - text in, text out.

The router only needs ``await client.complete(prompt) -> str``. Providers:

- OpenAICompatibleClient: chat-completions API (Groq by default)
- GeminiClient: Google ``generateContent`` API
- FallbackCompletionClient: tries providers in order

Every provider failure surfaces as CompletionError. The message carries the
HTTP status or the words "network error" so the retry executor can tell
transient failures apart.
"""

from typing import Any, Dict, List, Optional, Protocol, Sequence

import httpx

from chatledger.config import Settings
from chatledger.exceptions import CompletionError
from chatledger.logging_config import get_logger

logger = get_logger(__name__)

SYSTEM_PROMPT = (
    "Você é um assistente especializado em roteamento de APIs. IMPORTANTE: Retorne "
    "APENAS JSON válido, sem nenhum texto adicional, explicações ou comentários."
)

EMPTY_COMPLETION = "{}"


class CompletionClient(Protocol):
    """Anything that turns a prompt into completion text."""

    async def complete(self, prompt: str) -> str:
        ...


class _HttpCompletionClient:
    """Shared request handling for HTTP providers."""

    provider = "http"

    def __init__(self, http_client: Optional[httpx.AsyncClient] = None, timeout: float = 30.0):
        self._client = http_client or httpx.AsyncClient(timeout=timeout)
        self._owns_client = http_client is None

    async def _post(self, url: str, payload: Dict[str, Any], headers: Optional[Dict[str, str]] = None) -> Any:
        try:
            response = await self._client.post(url, json=payload, headers=headers)
        except httpx.TimeoutException as e:
            raise CompletionError(f"{self.provider} network error: timeout ({e})") from e
        except httpx.TransportError as e:
            raise CompletionError(f"{self.provider} network error: {e}") from e

        if response.status_code >= 400:
            raise CompletionError(
                f"HTTP {response.status_code}: {self.provider} returned {response.text[:200]}",
                status_code=response.status_code,
            )

        try:
            return response.json()
        except ValueError as e:
            raise CompletionError(f"{self.provider} returned a non-JSON body") from e

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()


class OpenAICompatibleClient(_HttpCompletionClient):
    """Chat-completions client for OpenAI-compatible APIs such as Groq."""

    provider = "groq"

    def __init__(
        self,
        api_key: str,
        url: str = "https://api.groq.com/openai/v1/chat/completions",
        model: str = "llama-3.1-8b-instant",
        temperature: float = 0.1,
        max_tokens: int = 500,
        http_client: Optional[httpx.AsyncClient] = None,
        timeout: float = 30.0,
    ):
        super().__init__(http_client, timeout)
        self.api_key = api_key
        self.url = url
        self.model = model
        self.temperature = temperature
        self.max_tokens = max_tokens

    async def complete(self, prompt: str) -> str:
        data = await self._post(
            self.url,
            {
                "model": self.model,
                "messages": [
                    {"role": "system", "content": SYSTEM_PROMPT},
                    {"role": "user", "content": prompt},
                ],
                "temperature": self.temperature,
                "max_tokens": self.max_tokens,
            },
            headers={"Authorization": f"Bearer {self.api_key}"},
        )
        try:
            return data["choices"][0]["message"]["content"] or EMPTY_COMPLETION
        except (KeyError, IndexError, TypeError):
            return EMPTY_COMPLETION


class GeminiClient(_HttpCompletionClient):
    """Client for the Gemini ``generateContent`` endpoint."""

    provider = "gemini"
    BASE_URL = "https://generativelanguage.googleapis.com/v1beta/models"

    def __init__(
        self,
        api_key: str,
        model: str = "gemini-2.5-flash",
        http_client: Optional[httpx.AsyncClient] = None,
        timeout: float = 30.0,
    ):
        super().__init__(http_client, timeout)
        self.api_key = api_key
        self.model = model

    async def complete(self, prompt: str) -> str:
        data = await self._post(
            f"{self.BASE_URL}/{self.model}:generateContent",
            {"contents": [{"parts": [{"text": prompt}]}]},
            headers={"x-goog-api-key": self.api_key},
        )
        try:
            return data["candidates"][0]["content"]["parts"][0]["text"] or EMPTY_COMPLETION
        except (KeyError, IndexError, TypeError):
            return EMPTY_COMPLETION


class FallbackCompletionClient:
    """Tries each provider in order and returns the first answer.

    If every provider fails, the last provider's error propagates.
    """

    def __init__(self, clients: Sequence[CompletionClient]):
        if not clients:
            raise ValueError("At least one completion client is required")
        self.clients: List[CompletionClient] = list(clients)

    async def complete(self, prompt: str) -> str:
        last_error: Optional[Exception] = None
        for index, client in enumerate(self.clients):
            try:
                return await client.complete(prompt)
            except CompletionError as e:
                last_error = e
                if index < len(self.clients) - 1:
                    logger.warning(
                        "Completion provider failed, trying next",
                        provider=getattr(client, "provider", type(client).__name__),
                        error=str(e),
                    )
        raise last_error

    async def aclose(self) -> None:
        for client in self.clients:
            close = getattr(client, "aclose", None)
            if close is not None:
                await close()


def build_completion_client(
    settings: Settings,
    http_client: Optional[httpx.AsyncClient] = None,
) -> CompletionClient:
    """Build the provider chain configured in the settings.

    Raises:
        ValueError: No provider API key is configured
    """
    clients: List[CompletionClient] = []
    if settings.groq_api_key and settings.groq_api_key.strip():
        clients.append(
            OpenAICompatibleClient(
                api_key=settings.groq_api_key,
                url=settings.groq_url,
                model=settings.groq_model,
                http_client=http_client,
                timeout=settings.request_timeout,
            )
        )
    if settings.gemini_api_key and settings.gemini_api_key.strip():
        clients.append(
            GeminiClient(
                api_key=settings.gemini_api_key,
                model=settings.gemini_model,
                http_client=http_client,
                timeout=settings.request_timeout,
            )
        )

    if not clients:
        raise ValueError("No completion provider configured: set GROQ_API_KEY or GEMINI_API_KEY")
    if len(clients) == 1:
        return clients[0]
    return FallbackCompletionClient(clients)
