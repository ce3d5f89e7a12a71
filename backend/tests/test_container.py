"""Tests for service wiring."""

from unittest.mock import AsyncMock

import pytest

from knowledge_graph_backend.config import load_settings
from knowledge_graph_backend.container import build_services
from knowledge_graph_backend.db import Neo4jGraphAccessor, RedisCommunityStore
from knowledge_graph_backend.llm import OpenAICompletionClient

from conftest import (
    FakeCommunityStore,
    FakeCompletionClient,
    FakeGraphAccessor,
    set_core_env,
)


@pytest.fixture
def settings(monkeypatch: pytest.MonkeyPatch):
    set_core_env(monkeypatch)
    monkeypatch.setenv("LLM_PROVIDER", "openai")
    monkeypatch.setenv("OPENAI_API_KEY", "test-key")
    monkeypatch.setenv("COMMUNITY_RESOLUTION", "1.5")
    monkeypatch.setenv("COMMUNITY_SEED", "7")
    monkeypatch.setenv("SUMMARY_CACHE_MAX_SIZE", "25")
    monkeypatch.setenv("SUMMARY_BATCH_DELAY_SECONDS", "0")
    monkeypatch.setenv("GLOBAL_QUERY_TOP_K", "3")
    return load_settings()


def test_builds_default_adapters_from_settings(settings):
    services = build_services(settings)

    assert isinstance(services.graph, Neo4jGraphAccessor)
    assert isinstance(services.store, RedisCommunityStore)
    assert isinstance(services.completion, OpenAICompletionClient)
    assert services.graph.uri == "bolt://localhost:7687"
    assert services.store.key_prefix == "kg:communities"


def test_settings_flow_into_components(settings):
    services = build_services(
        settings,
        graph=FakeGraphAccessor(),
        completion=FakeCompletionClient(),
        store=FakeCommunityStore(),
    )

    assert services.detector.resolution == 1.5
    assert services.detector.seed == 7
    assert services.summaries.cache.max_size == 25
    assert services.summaries.batch_delay_seconds == 0.0
    assert services.global_query.top_k == 3
    assert services.importance.cache_ttl_seconds == 300.0


@pytest.mark.asyncio
async def test_startup_and_shutdown_manage_connections(settings):
    graph = FakeGraphAccessor()
    graph.connect = AsyncMock()
    graph.disconnect = AsyncMock()
    services = build_services(
        settings, graph=graph, completion=FakeCompletionClient(), store=FakeCommunityStore()
    )

    await services.startup()
    await services.shutdown()

    graph.connect.assert_awaited_once()
    graph.disconnect.assert_awaited_once()


@pytest.mark.asyncio
async def test_wired_global_query(settings, two_triangles):
    store = FakeCommunityStore()
    services = build_services(
        settings,
        graph=FakeGraphAccessor(two_triangles.nodes, two_triangles.edges),
        completion=FakeCompletionClient(),
        store=store,
    )

    result = await services.global_query.global_query("Which people work together?")

    assert result.metadata.communities_analyzed == 2
    assert result.answer == "Relevant information."
    assert len(store.summaries) == 2
