"""Tests for LLM provider adapter selection."""

from __future__ import annotations

import pytest

from knowledge_graph_backend.config import load_settings
from knowledge_graph_backend.llm.providers import (
    LLMProviderAdapter,
    UnsupportedLLMProviderError,
    get_llm_adapter,
)

from conftest import set_core_env


def test_get_llm_adapter_openrouter(monkeypatch: pytest.MonkeyPatch) -> None:
    set_core_env(monkeypatch)
    monkeypatch.setenv("LLM_PROVIDER", "openrouter")
    monkeypatch.setenv("LLM_API_KEY", "router-key")
    monkeypatch.delenv("LLM_BASE_URL", raising=False)

    settings = load_settings()
    adapter = get_llm_adapter(settings)

    assert adapter.provider == "openrouter"
    assert adapter.openai_kwargs()["api_key"] == "router-key"
    assert adapter.openai_kwargs()["base_url"] == "https://openrouter.ai/api/v1"


def test_get_llm_adapter_ollama_default_base_url(monkeypatch: pytest.MonkeyPatch) -> None:
    set_core_env(monkeypatch)
    monkeypatch.setenv("LLM_PROVIDER", "ollama")
    monkeypatch.delenv("LLM_BASE_URL", raising=False)

    settings = load_settings()
    adapter = get_llm_adapter(settings)

    assert adapter.openai_kwargs()["base_url"] == "http://localhost:11434/v1"


def test_get_llm_adapter_openai_base_url(monkeypatch: pytest.MonkeyPatch) -> None:
    set_core_env(monkeypatch)
    monkeypatch.setenv("LLM_PROVIDER", "openai")
    monkeypatch.setenv("OPENAI_API_KEY", "test-key")
    monkeypatch.setenv("LLM_BASE_URL", "https://example.com/v1")
    monkeypatch.setenv("LLM_TIMEOUT_SECONDS", "12")

    settings = load_settings()
    adapter = get_llm_adapter(settings)

    assert adapter.provider == "openai"
    assert adapter.openai_kwargs() == {
        "api_key": "test-key",
        "timeout": 12.0,
        "base_url": "https://example.com/v1",
    }


def test_unsupported_provider_adapter_raises() -> None:
    adapter = LLMProviderAdapter(
        provider="anthropic", api_key="key", base_url=None, model="claude"
    )

    with pytest.raises(UnsupportedLLMProviderError):
        adapter.openai_kwargs()
