"""pytest fixtures for Knowledge Graph Backend tests."""

import os

# Set environment variables BEFORE any imports
os.environ.setdefault("OPENAI_API_KEY", "test-key")
os.environ.setdefault("NEO4J_URI", "bolt://localhost:7687")
os.environ.setdefault("NEO4J_USER", "neo4j")
os.environ.setdefault("NEO4J_PASSWORD", "test")
os.environ.setdefault("REDIS_URL", "redis://localhost:6379")

from datetime import datetime
from typing import Any, Callable, Optional, Sequence

import pytest

from knowledge_graph_backend.graph.cache import SummaryCache
from knowledge_graph_backend.graph.community import CommunityDetector
from knowledge_graph_backend.graph.errors import CommunityStorageError, CompletionError
from knowledge_graph_backend.graph.models import (
    Community,
    CommunitySummary,
    DetectionResult,
    DetectionRun,
    GraphChangeSummary,
    GraphChanges,
    GraphEdge,
    GraphNode,
    GraphSnapshot,
    utc_now,
)
from knowledge_graph_backend.graph.summaries import CommunitySummaryService


def set_core_env(monkeypatch: pytest.MonkeyPatch) -> None:
    """Set required environment variables for settings tests."""
    monkeypatch.setenv("NEO4J_URI", "bolt://localhost:7687")
    monkeypatch.setenv("NEO4J_USER", "neo4j")
    monkeypatch.setenv("NEO4J_PASSWORD", "neo4j_password")
    monkeypatch.setenv("REDIS_URL", "redis://localhost:6379/0")


class FakeGraphAccessor:
    """In-memory graph accessor that tracks when entities and edges were added."""

    def __init__(
        self,
        nodes: Sequence[GraphNode] = (),
        edges: Sequence[GraphEdge] = (),
    ) -> None:
        self.nodes: list[GraphNode] = []
        self.edges: list[GraphEdge] = []
        self._node_added: dict[str, datetime] = {}
        self._node_modified: dict[str, datetime] = {}
        self._edge_added: list[datetime] = []
        self.updates: dict[str, dict[str, Any]] = {}
        self.fail_on_update: set[str] = set()
        self.fail_fetch = False
        self.fetch_count = 0
        for node in nodes:
            self.add_node(node)
        for edge in edges:
            self.add_edge(edge)

    def add_node(self, node: GraphNode) -> None:
        self.nodes.append(node)
        self._node_added[node.id] = utc_now()

    def add_edge(self, edge: GraphEdge) -> None:
        self.edges.append(edge)
        self._edge_added.append(utc_now())

    def touch_node(self, node_id: str) -> None:
        self._node_modified[node_id] = utc_now()

    async def run_traversal_query(
        self, query: str, params: Optional[dict[str, Any]] = None
    ) -> list[dict[str, Any]]:
        return []

    async def get_all_entities(self, limit: int = 10000) -> GraphSnapshot:
        self.fetch_count += 1
        if self.fail_fetch:
            raise ConnectionError("graph store unreachable")
        return GraphSnapshot(nodes=list(self.nodes[:limit]), edges=list(self.edges))

    async def get_subgraph(self, node_ids: Sequence[str]) -> GraphSnapshot:
        wanted = set(node_ids)
        return GraphSnapshot(
            nodes=[node for node in self.nodes if node.id in wanted],
            edges=[e for e in self.edges if e.source in wanted and e.target in wanted],
        )

    async def get_graph_change_summary(self, since: datetime) -> GraphChangeSummary:
        changes = await self.get_changes_since(since)
        return GraphChangeSummary(
            since=since,
            new_node_count=len(changes.new_nodes),
            modified_node_count=len(changes.modified_nodes),
            new_edge_count=len(changes.new_edges),
            total_nodes=len(self.nodes),
            total_edges=len(self.edges),
        )

    async def get_changes_since(self, since: datetime) -> GraphChanges:
        return GraphChanges(
            new_nodes=[n for n in self.nodes if self._node_added[n.id] > since],
            modified_nodes=[
                n
                for n in self.nodes
                if self._node_added[n.id] <= since
                and self._node_modified.get(n.id, since) > since
            ],
            new_edges=[
                edge for edge, added in zip(self.edges, self._edge_added) if added > since
            ],
        )

    async def update_entity_properties(self, entity_id: str, properties: dict[str, Any]) -> None:
        if entity_id in self.fail_on_update:
            raise RuntimeError(f"write rejected for {entity_id}")
        self.updates[entity_id] = properties

    async def get_entities_with_property(
        self, property_name: str, limit: int = 100
    ) -> list[GraphNode]:
        return [
            GraphNode(id=entity_id, importance=props.get(property_name))
            for entity_id, props in self.updates.items()
            if property_name in props
        ][:limit]


class FakeCompletionClient:
    """Completion client returning canned responses and recording every call."""

    def __init__(
        self,
        json_response: Optional[Callable[[list[dict[str, str]]], dict[str, Any]]] = None,
        chat_response: Optional[Callable[[list[dict[str, str]]], str]] = None,
    ) -> None:
        self.json_calls: list[list[dict[str, str]]] = []
        self.chat_calls: list[list[dict[str, str]]] = []
        self.json_kwargs: list[dict[str, Any]] = []
        self._json_response = json_response or (
            lambda messages: {"title": "Generated Title", "summary": "Generated summary."}
        )
        self._chat_response = chat_response or (lambda messages: "Relevant information.")
        self.fail_json = False
        self.fail_chat = False

    async def get_json_completion(
        self,
        messages: list[dict[str, str]],
        max_tokens: Optional[int] = None,
        temperature: Optional[float] = None,
    ) -> dict[str, Any]:
        self.json_calls.append(messages)
        self.json_kwargs.append({"max_tokens": max_tokens, "temperature": temperature})
        if self.fail_json:
            raise CompletionError("rate limited", "fake-model")
        return self._json_response(messages)

    async def get_chat_completion(
        self,
        messages: list[dict[str, str]],
        max_tokens: Optional[int] = None,
        temperature: Optional[float] = None,
    ) -> str:
        self.chat_calls.append(messages)
        if self.fail_chat:
            raise CompletionError("timeout", "fake-model")
        return self._chat_response(messages)


class FakeCommunityStore:
    """In-memory community store; ``fail`` makes every call raise."""

    def __init__(self) -> None:
        self.runs: list[DetectionRun] = []
        self.communities: dict[str, list[Community]] = {}
        self.summaries: dict[str, CommunitySummary] = {}
        self.fail = False

    def _check(self, operation: str) -> None:
        if self.fail:
            raise CommunityStorageError(operation, "store offline")

    async def store_detection_run(self, result: DetectionResult) -> DetectionRun:
        self._check("store_detection_run")
        run = DetectionRun(
            run_id=f"run_{len(self.runs) + 1}",
            modularity=result.modularity,
            community_count=len(result.community_list),
            total_entities=sum(c.size for c in result.community_list),
            resolution=result.metadata.resolution,
            hierarchy_levels=result.metadata.hierarchy_levels,
            metadata=result.metadata,
        )
        self.runs.append(run)
        self.communities[run.run_id] = list(result.community_list)
        return run

    async def get_latest_detection_run(self) -> Optional[DetectionRun]:
        self._check("get_latest_detection_run")
        return self.runs[-1] if self.runs else None

    async def get_communities_by_run_id(self, run_id: str) -> list[Community]:
        self._check("get_communities_by_run_id")
        return list(self.communities.get(run_id, []))

    async def store_summary(self, community_id: Any, summary: CommunitySummary) -> None:
        self._check("store_summary")
        self.summaries[str(community_id)] = summary

    async def store_summaries_batch(
        self, summaries: dict[str, CommunitySummary]
    ) -> dict[str, Any]:
        self._check("store_summaries_batch")
        for community_id, summary in summaries.items():
            self.summaries[str(community_id)] = summary
        return {"stored": len(summaries), "failed": 0, "errors": []}

    async def get_summary(self, community_id: Any) -> Optional[CommunitySummary]:
        self._check("get_summary")
        return self.summaries.get(str(community_id))

    async def get_all_summaries(
        self, limit: int = 50, sort_by_size: bool = True
    ) -> list[CommunitySummary]:
        self._check("get_all_summaries")
        summaries = list(self.summaries.values())
        if sort_by_size:
            summaries.sort(key=lambda s: s.member_count, reverse=True)
        return summaries[:limit]

    async def get_stats(self) -> dict[str, Any]:
        self._check("get_stats")
        return {"detection_runs": len(self.runs), "summaries": len(self.summaries)}

    async def clear(self) -> int:
        self._check("clear")
        deleted = len(self.runs) + len(self.summaries)
        self.runs.clear()
        self.communities.clear()
        self.summaries.clear()
        return deleted


def make_node(node_id: str, node_type: str = "Concept", **kwargs: Any) -> GraphNode:
    return GraphNode(id=node_id, name=kwargs.pop("name", node_id), type=node_type, **kwargs)


def make_edge(source: str, target: str, **kwargs: Any) -> GraphEdge:
    return GraphEdge(source=source, target=target, type=kwargs.pop("type", "RELATED_TO"), **kwargs)


@pytest.fixture
def two_triangles() -> GraphSnapshot:
    """Triangles {A,B,C} and {D,E,F} joined by the single edge C-D."""
    nodes = [
        make_node("A", "Person"),
        make_node("B", "Person"),
        make_node("C", "Organization"),
        make_node("D", "Technology"),
        make_node("E", "Technology"),
        make_node("F", "Concept"),
    ]
    edges = [
        make_edge("A", "B"),
        make_edge("B", "C"),
        make_edge("A", "C"),
        make_edge("D", "E"),
        make_edge("E", "F"),
        make_edge("D", "F"),
        make_edge("C", "D", type="PARTNERS_WITH"),
    ]
    return GraphSnapshot(nodes=nodes, edges=edges)


@pytest.fixture
def three_cliques() -> GraphSnapshot:
    """Three 4-cliques chained by single bridge edges (12 nodes)."""
    groups = [["a1", "a2", "a3", "a4"], ["b1", "b2", "b3", "b4"], ["c1", "c2", "c3", "c4"]]
    nodes = [make_node(node_id) for group in groups for node_id in group]
    edges = []
    for group in groups:
        for i, source in enumerate(group):
            for target in group[i + 1:]:
                edges.append(make_edge(source, target))
    edges.append(make_edge("a4", "b1"))
    edges.append(make_edge("b4", "c1"))
    return GraphSnapshot(nodes=nodes, edges=edges)


@pytest.fixture
def graph_accessor(two_triangles: GraphSnapshot) -> FakeGraphAccessor:
    return FakeGraphAccessor(two_triangles.nodes, two_triangles.edges)


@pytest.fixture
def completion_client() -> FakeCompletionClient:
    return FakeCompletionClient()


@pytest.fixture
def community_store() -> FakeCommunityStore:
    return FakeCommunityStore()


@pytest.fixture
def detector(graph_accessor: FakeGraphAccessor) -> CommunityDetector:
    return CommunityDetector(graph_accessor, seed=42)


@pytest.fixture
def summary_service(
    detector: CommunityDetector,
    completion_client: FakeCompletionClient,
    community_store: FakeCommunityStore,
) -> CommunitySummaryService:
    return CommunitySummaryService(
        detector,
        completion_client,
        community_store,
        cache=SummaryCache(max_size=100, ttl_seconds=1800),
        batch_delay_seconds=0,
    )
