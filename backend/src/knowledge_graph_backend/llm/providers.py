"""Resolve the configured LLM provider to OpenAI client arguments."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Optional

from ..config import Settings

# Providers reachable through the OpenAI SDK, with the base URL used when
# LLM_BASE_URL is unset (None means the SDK default).
DEFAULT_BASE_URLS: dict[str, Optional[str]] = {
    "openai": None,
    "openrouter": "https://openrouter.ai/api/v1",
    "ollama": "http://localhost:11434/v1",
}


class UnsupportedLLMProviderError(RuntimeError):
    """Raised when a provider cannot be reached through the OpenAI SDK."""


@dataclass(frozen=True)
class LLMProviderAdapter:
    """Connection details for one OpenAI-compatible chat provider."""

    provider: str
    api_key: Optional[str]
    base_url: Optional[str]
    model: str
    timeout_seconds: float = 30.0

    def openai_kwargs(self) -> dict[str, Any]:
        """Keyword arguments for ``openai.AsyncOpenAI``."""
        if self.provider not in DEFAULT_BASE_URLS:
            raise UnsupportedLLMProviderError(
                f"Provider {self.provider!r} has no OpenAI-compatible endpoint."
            )
        kwargs: dict[str, Any] = {
            # ollama accepts any key
            "api_key": self.api_key or "",
            "timeout": self.timeout_seconds,
        }
        if self.base_url:
            kwargs["base_url"] = self.base_url
        return kwargs


def get_llm_adapter(settings: Settings) -> LLMProviderAdapter:
    """Build the adapter for ``settings.llm_provider``, filling in its default base URL."""
    if settings.llm_provider not in DEFAULT_BASE_URLS:
        supported = "/".join(DEFAULT_BASE_URLS)
        raise UnsupportedLLMProviderError(
            f"LLM_PROVIDER must be {supported}. Got {settings.llm_provider!r}."
        )
    return LLMProviderAdapter(
        provider=settings.llm_provider,
        api_key=settings.llm_api_key,
        base_url=settings.llm_base_url or DEFAULT_BASE_URLS[settings.llm_provider],
        model=settings.llm_model_id,
        timeout_seconds=settings.llm_timeout_seconds,
    )
