"""Interfaces for the collaborators the graph services depend on.

Production implementations live in ``db.neo4j`` (graph accessor),
``llm.completion`` (completion client) and ``db.redis`` (community store);
tests substitute in-memory fakes.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Optional, Protocol, Sequence

from .models import (
    Community,
    CommunitySummary,
    DetectionResult,
    DetectionRun,
    GraphChangeSummary,
    GraphChanges,
    GraphNode,
    GraphSnapshot,
)

Message = dict[str, str]


class GraphAccessor(Protocol):
    """Read access to the knowledge graph plus entity property writes."""

    async def run_traversal_query(
        self, query: str, params: Optional[dict[str, Any]] = None
    ) -> list[dict[str, Any]]:
        ...

    async def get_all_entities(self, limit: int = 10000) -> GraphSnapshot:
        ...

    async def get_subgraph(self, node_ids: Sequence[str]) -> GraphSnapshot:
        ...

    async def get_graph_change_summary(self, since: datetime) -> GraphChangeSummary:
        ...

    async def get_changes_since(self, since: datetime) -> GraphChanges:
        ...

    async def update_entity_properties(self, entity_id: str, properties: dict[str, Any]) -> None:
        ...

    async def get_entities_with_property(
        self, property_name: str, limit: int = 100
    ) -> list[GraphNode]:
        ...


class CompletionClient(Protocol):
    """Black-box text and JSON completion."""

    async def get_chat_completion(
        self,
        messages: list[Message],
        max_tokens: Optional[int] = None,
        temperature: Optional[float] = None,
    ) -> str:
        ...

    async def get_json_completion(
        self,
        messages: list[Message],
        max_tokens: Optional[int] = None,
        temperature: Optional[float] = None,
    ) -> dict[str, Any]:
        ...


class CommunityStore(Protocol):
    """Durable storage for detection runs and community summaries."""

    async def store_detection_run(self, result: DetectionResult) -> DetectionRun:
        ...

    async def get_latest_detection_run(self) -> Optional[DetectionRun]:
        ...

    async def get_communities_by_run_id(self, run_id: str) -> list[Community]:
        ...

    async def store_summary(self, community_id: str, summary: CommunitySummary) -> None:
        ...

    async def store_summaries_batch(
        self, summaries: dict[str, CommunitySummary]
    ) -> dict[str, Any]:
        ...

    async def get_summary(self, community_id: str) -> Optional[CommunitySummary]:
        ...

    async def get_all_summaries(
        self, limit: int = 50, sort_by_size: bool = True
    ) -> list[CommunitySummary]:
        ...

    async def get_stats(self) -> dict[str, Any]:
        ...

    async def clear(self) -> int:
        ...
