"""Unit tests for importance scoring and centrality."""

import asyncio
from unittest.mock import AsyncMock

import pytest

from knowledge_graph_backend.graph.centrality import calculate_betweenness, calculate_pagerank
from knowledge_graph_backend.graph.importance import (
    ImportanceScorer,
    calculate_mention_frequency,
    normalize_scores,
)
from knowledge_graph_backend.graph.models import CentralityResult, GraphSnapshot, ImportanceWeights

from conftest import FakeGraphAccessor, make_node


def _centrality(scores):
    return AsyncMock(return_value=CentralityResult(scores=scores))


@pytest.fixture
def three_nodes():
    return GraphSnapshot(
        nodes=[
            make_node("x", mention_count=10),
            make_node("y", mention_count=5),
            make_node("z"),
        ]
    )


class TestNormalizeScores:
    """Tests for normalize_scores."""

    def test_min_max(self):
        assert normalize_scores({"a": 2.0, "b": 4.0, "c": 3.0}) == {"a": 0.0, "b": 1.0, "c": 0.5}

    def test_idempotent_on_normalized_map(self):
        scores = {"a": 0.0, "b": 0.25, "c": 1.0}

        assert normalize_scores(scores) == pytest.approx(scores)

    def test_all_equal_values_map_to_half(self):
        assert normalize_scores({"a": 3.0, "b": 3.0, "c": 3.0}) == {"a": 0.5, "b": 0.5, "c": 0.5}

    def test_single_entry_maps_to_half(self):
        assert normalize_scores({"a": 7.0}) == {"a": 0.5}

    def test_empty(self):
        assert normalize_scores({}) == {}


class TestMentionFrequency:
    def test_missing_mention_count_defaults_to_one(self, three_nodes):
        assert calculate_mention_frequency(three_nodes.nodes) == {"x": 10.0, "y": 5.0, "z": 1.0}


class TestCalculateImportance:
    """Tests for ImportanceScorer.calculate_importance."""

    @pytest.mark.asyncio
    async def test_weighted_sum_without_output_normalization(self, three_nodes):
        scorer = ImportanceScorer(
            FakeGraphAccessor(three_nodes.nodes),
            pagerank_fn=_centrality({"x": 0.2, "y": 0.6, "z": 0.2}),
            betweenness_fn=_centrality({"x": 0.0, "y": 0.5, "z": 1.0}),
        )

        result = await scorer.calculate_importance(normalize_output=False)

        # pr: x=0, y=1, z=0; bc: x=0, y=0.5, z=1; mf: x=1, y=4/9, z=0
        assert result.scores["x"] == pytest.approx(0.25)
        assert result.scores["y"] == pytest.approx(0.4 + 0.35 * 0.5 + 0.25 * 4 / 9)
        assert result.scores["z"] == pytest.approx(0.35)
        assert result.ranked_entities[0].id == "y"
        assert result.ranked_entities[0].components.betweenness == pytest.approx(0.5)

    @pytest.mark.asyncio
    async def test_ranks_and_percentiles(self, three_nodes):
        scorer = ImportanceScorer(
            FakeGraphAccessor(three_nodes.nodes),
            pagerank_fn=_centrality({"x": 0.2, "y": 0.6, "z": 0.2}),
            betweenness_fn=_centrality({"x": 0.0, "y": 0.5, "z": 1.0}),
        )

        result = await scorer.calculate_importance()

        assert [e.rank for e in result.ranked_entities] == [1, 2, 3]
        assert [e.id for e in result.ranked_entities] == ["y", "z", "x"]
        assert result.ranked_entities[0].percentile == pytest.approx(200 / 3)
        assert result.ranked_entities[-1].percentile == 0.0
        assert result.scores["y"] == 1.0
        assert result.scores["x"] == 0.0

    @pytest.mark.asyncio
    async def test_zero_betweenness_weight_removes_its_influence(self, three_nodes):
        scorer = ImportanceScorer(
            FakeGraphAccessor(three_nodes.nodes),
            pagerank_fn=_centrality({"x": 0.2, "y": 0.6, "z": 0.2}),
            betweenness_fn=_centrality({"x": 0.0, "y": 0.5, "z": 1.0}),
        )

        result = await scorer.calculate_importance(
            weights=ImportanceWeights(page_rank=0.4, betweenness=0.0, mention_frequency=0.25)
        )

        # Without betweenness z (no mentions, low PageRank) drops below x
        assert [e.id for e in result.ranked_entities] == ["y", "x", "z"]

    @pytest.mark.asyncio
    async def test_weights_accept_dict(self, three_nodes):
        scorer = ImportanceScorer(
            FakeGraphAccessor(three_nodes.nodes),
            pagerank_fn=_centrality({"x": 1.0, "y": 0.0, "z": 0.0}),
            betweenness_fn=_centrality({}),
        )

        result = await scorer.calculate_importance(
            weights={"page_rank": 1.0, "betweenness": 0.0, "mention_frequency": 0.0}
        )

        assert result.ranked_entities[0].id == "x"
        assert result.metadata.weights.page_rank == 1.0

    @pytest.mark.asyncio
    async def test_empty_graph(self):
        scorer = ImportanceScorer(FakeGraphAccessor())

        result = await scorer.calculate_importance()

        assert result.scores == {}
        assert result.ranked_entities == []

    @pytest.mark.asyncio
    async def test_real_centrality_on_two_triangles(self, graph_accessor):
        scorer = ImportanceScorer(graph_accessor)

        result = await scorer.calculate_importance()

        # The bridge endpoints carry all cross-community shortest paths
        assert {e.id for e in result.ranked_entities[:2]} == {"C", "D"}
        assert all(0.0 <= score <= 1.0 for score in result.scores.values())


class TestImportanceCache:
    """Tests for the importance result cache."""

    @pytest.mark.asyncio
    async def test_cached_until_ttl(self, graph_accessor, monkeypatch):
        clock = {"now": 1000.0}
        monkeypatch.setattr(
            "knowledge_graph_backend.graph.importance.monotonic", lambda: clock["now"]
        )
        scorer = ImportanceScorer(graph_accessor, cache_ttl_seconds=300)

        first = await scorer.get_importance_with_cache()
        second = await scorer.get_importance_with_cache()
        clock["now"] += 301
        third = await scorer.get_importance_with_cache()

        assert second is first
        assert third is not first
        assert graph_accessor.fetch_count == 2

    @pytest.mark.asyncio
    async def test_concurrent_callers_share_one_computation(self, graph_accessor):
        pagerank = _centrality({"A": 1.0})
        scorer = ImportanceScorer(
            graph_accessor, pagerank_fn=pagerank, betweenness_fn=_centrality({})
        )

        results = await asyncio.gather(
            *(scorer.get_importance_with_cache() for _ in range(5))
        )

        assert pagerank.await_count == 1
        assert graph_accessor.fetch_count == 1
        assert all(result is results[0] for result in results)

    @pytest.mark.asyncio
    async def test_force_refresh_and_clear(self, graph_accessor):
        scorer = ImportanceScorer(graph_accessor)

        first = await scorer.get_importance_with_cache()
        refreshed = await scorer.get_importance_with_cache(force_refresh=True)
        scorer.clear_cache()
        after_clear = await scorer.get_importance_with_cache()

        assert refreshed is not first
        assert after_clear is not refreshed
        assert graph_accessor.fetch_count == 3

    @pytest.mark.asyncio
    async def test_top_entities_and_lookup(self, graph_accessor):
        scorer = ImportanceScorer(graph_accessor)

        top = await scorer.get_top_entities(2)
        entity = await scorer.get_entity_importance("A")

        assert len(top) == 2
        assert entity is not None and entity.id == "A"
        assert await scorer.get_entity_importance("missing") is None


class TestUpdateEntityImportanceScores:
    """Tests for writing importance back onto the graph."""

    @pytest.mark.asyncio
    async def test_writes_all_properties(self, graph_accessor):
        scorer = ImportanceScorer(graph_accessor)

        result = await scorer.update_entity_importance_scores()

        assert result.updated == 6
        assert result.failed == 0
        assert set(graph_accessor.updates["A"]) == {
            "importance",
            "importanceRank",
            "importancePercentile",
            "importanceUpdatedAt",
        }

    @pytest.mark.asyncio
    async def test_partial_failure_does_not_abort(self, graph_accessor):
        graph_accessor.fail_on_update = {"B", "E"}
        scorer = ImportanceScorer(graph_accessor)

        result = await scorer.update_entity_importance_scores()

        assert result.updated == 4
        assert result.failed == 2
        assert result.total == 6
        assert "B" not in graph_accessor.updates

    @pytest.mark.asyncio
    async def test_cached_importance_scores(self, graph_accessor):
        scorer = ImportanceScorer(graph_accessor)
        await scorer.update_entity_importance_scores()

        stored = await scorer.get_cached_importance_scores(limit=3)

        assert len(stored) == 3
        assert all(node.importance is not None for node in stored)

    @pytest.mark.asyncio
    async def test_cached_importance_scores_failure_returns_empty(self):
        graph = AsyncMock()
        graph.get_entities_with_property.side_effect = RuntimeError("down")
        scorer = ImportanceScorer(graph)

        assert await scorer.get_cached_importance_scores() == []


class TestMentionFrequencyAnalysis:
    @pytest.mark.asyncio
    async def test_distribution(self):
        nodes = [
            make_node("a", mention_count=1),
            make_node("b", mention_count=3),
            make_node("c", mention_count=30),
            make_node("d", mention_count=80),
            make_node("e"),
        ]
        scorer = ImportanceScorer(FakeGraphAccessor(nodes))

        analysis = await scorer.get_mention_frequency_analysis()

        assert analysis.total_entities == 4
        assert analysis.total_mentions == 114
        assert analysis.max_mention_count == 80
        assert analysis.min_mention_count == 1
        assert analysis.distribution == {
            "1": 1,
            "2-5": 1,
            "6-10": 0,
            "11-25": 0,
            "26-50": 1,
            "50+": 1,
        }
        assert analysis.top_entities[0]["id"] == "d"


class TestCentrality:
    """Tests for the NetworkX centrality wrappers."""

    @pytest.mark.asyncio
    async def test_pagerank_sums_to_one(self, two_triangles):
        result = await calculate_pagerank(two_triangles)

        assert set(result.scores) == {"A", "B", "C", "D", "E", "F"}
        assert sum(result.scores.values()) == pytest.approx(1.0)
        assert result.metadata["converged"] is True

    @pytest.mark.asyncio
    async def test_betweenness_bridge_nodes_highest(self, two_triangles):
        result = await calculate_betweenness(two_triangles)

        assert max(result.scores, key=result.scores.get) in {"C", "D"}
        assert result.scores["A"] == 0.0

    @pytest.mark.asyncio
    async def test_empty_snapshot(self):
        result = await calculate_pagerank(GraphSnapshot())

        assert result.scores == {}
