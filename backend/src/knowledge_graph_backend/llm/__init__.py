"""LLM provider adapters and completion client."""

from .completion import OpenAICompletionClient
from .providers import (
    LLMProviderAdapter,
    UnsupportedLLMProviderError,
    get_llm_adapter,
)

__all__ = [
    "LLMProviderAdapter",
    "OpenAICompletionClient",
    "UnsupportedLLMProviderError",
    "get_llm_adapter",
]
