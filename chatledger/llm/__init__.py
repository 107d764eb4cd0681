"""Completion service clients."""

from chatledger.llm.client import (
    CompletionClient,
    FallbackCompletionClient,
    GeminiClient,
    OpenAICompatibleClient,
    build_completion_client,
)

__all__ = [
    "CompletionClient",
    "FallbackCompletionClient",
    "GeminiClient",
    "OpenAICompatibleClient",
    "build_completion_client",
]
