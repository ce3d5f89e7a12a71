"""Neo4j async graph accessor for community detection and importance scoring."""

from datetime import datetime
from typing import Any, Optional, Sequence

import structlog
from neo4j import AsyncGraphDatabase
from neo4j.exceptions import Neo4jError as Neo4jDriverError

from ..graph.errors import GraphFetchError
from ..graph.models import (
    GraphChangeSummary,
    GraphChanges,
    GraphEdge,
    GraphNode,
    GraphSnapshot,
)

logger = structlog.get_logger(__name__)

# Stored property name -> GraphNode field, for properties written in camelCase
_NODE_PROPERTY_ALIASES = {
    "mentionCount": "mention_count",
    "importanceRank": "importance_rank",
    "importancePercentile": "importance_percentile",
    "importanceUpdatedAt": "importance_updated_at",
}

_EDGE_RETURN = """
    RETURN elementId(r) AS id, a.id AS source, b.id AS target, type(r) AS type,
           a.name AS source_name, b.name AS target_name,
           COALESCE(r.weight, 1.0) AS weight
"""


def _node_from_properties(properties: dict[str, Any]) -> GraphNode:
    data = dict(properties)
    for stored, field in _NODE_PROPERTY_ALIASES.items():
        if stored in data and data.get(field) is None:
            data[field] = data.pop(stored)
    if data.get("importance_updated_at") is not None:
        data["importance_updated_at"] = str(data["importance_updated_at"])
    return GraphNode.model_validate(data)


def _edge_from_record(record: dict[str, Any]) -> GraphEdge:
    weight = record.get("weight")
    if not isinstance(weight, (int, float)) or weight <= 0:
        record = {**record, "weight": 1.0}
    return GraphEdge.model_validate(record)


class Neo4jGraphAccessor:
    """
    Async Neo4j accessor over ``Entity`` nodes and the relationships between them.

    Entities are expected to carry ``created_at``/``updated_at`` datetimes so
    change tracking can drive incremental community detection. Driver errors
    are wrapped in ``GraphFetchError``.
    """

    def __init__(self, uri: str, user: str, password: str) -> None:
        """
        Initialize the accessor.

        Args:
            uri: Neo4j connection URI (e.g., bolt://localhost:7687)
            user: Neo4j username
            password: Neo4j password
        """
        self.uri = uri
        self.user = user
        self.password = password
        self._driver = None

    async def connect(self) -> None:
        """Establish connection to Neo4j."""
        if self._driver is None:
            self._driver = AsyncGraphDatabase.driver(
                self.uri,
                auth=(self.user, self.password),
            )
            logger.info("neo4j_connected", uri=self.uri)

    async def disconnect(self) -> None:
        """Close Neo4j connection."""
        if self._driver is not None:
            await self._driver.close()
            self._driver = None
            logger.info("neo4j_disconnected")

    @property
    def driver(self):
        """Get the Neo4j driver, raising error if not connected."""
        if self._driver is None:
            raise GraphFetchError("connection", "Neo4j driver not connected")
        return self._driver

    async def create_indexes(self) -> None:
        """Create the indexes used by entity lookups and change tracking."""
        try:
            async with self.driver.session() as session:
                await session.run(
                    "CREATE INDEX entity_id IF NOT EXISTS FOR (e:Entity) ON (e.id)"
                )
                await session.run(
                    "CREATE INDEX entity_name IF NOT EXISTS FOR (e:Entity) ON (e.name)"
                )
                await session.run(
                    "CREATE INDEX entity_updated IF NOT EXISTS FOR (e:Entity) ON (e.updated_at)"
                )
                logger.info("neo4j_indexes_created")
        except Neo4jDriverError as e:
            raise GraphFetchError("create_indexes", str(e)) from e

    async def run_traversal_query(
        self, query: str, params: Optional[dict[str, Any]] = None
    ) -> list[dict[str, Any]]:
        """
        Run a read query and return its records as dictionaries.

        Args:
            query: Cypher query
            params: Query parameters

        Returns:
            List of record dictionaries
        """
        try:
            async with self.driver.session() as session:
                result = await session.run(query, params or {})
                return await result.data()
        except Neo4jDriverError as e:
            raise GraphFetchError("run_traversal_query", str(e)) from e

    async def get_all_entities(self, limit: int = 10000) -> GraphSnapshot:
        """
        Fetch up to ``limit`` entities and the relationships among them.

        Args:
            limit: Maximum number of entities

        Returns:
            GraphSnapshot with nodes and edges
        """
        node_records = await self.run_traversal_query(
            """
            MATCH (e:Entity)
            RETURN properties(e) AS e
            ORDER BY e.id
            LIMIT $limit
            """,
            {"limit": limit},
        )
        nodes = [_node_from_properties(r["e"]) for r in node_records]
        edge_records = await self.run_traversal_query(
            """
            MATCH (a:Entity)-[r]->(b:Entity)
            WHERE a.id IN $ids AND b.id IN $ids
            """
            + _EDGE_RETURN,
            {"ids": [node.id for node in nodes]},
        )
        edges = [_edge_from_record(r) for r in edge_records]
        logger.debug("graph_entities_fetched", node_count=len(nodes), edge_count=len(edges))
        return GraphSnapshot(nodes=nodes, edges=edges)

    async def get_subgraph(self, node_ids: Sequence[str]) -> GraphSnapshot:
        """
        Fetch the subgraph induced by ``node_ids``.

        Args:
            node_ids: Entity ids to include

        Returns:
            GraphSnapshot restricted to the given entities
        """
        ids = list(node_ids)
        node_records = await self.run_traversal_query(
            "MATCH (e:Entity) WHERE e.id IN $ids RETURN properties(e) AS e",
            {"ids": ids},
        )
        edge_records = await self.run_traversal_query(
            """
            MATCH (a:Entity)-[r]->(b:Entity)
            WHERE a.id IN $ids AND b.id IN $ids
            """
            + _EDGE_RETURN,
            {"ids": ids},
        )
        return GraphSnapshot(
            nodes=[_node_from_properties(r["e"]) for r in node_records],
            edges=[_edge_from_record(r) for r in edge_records],
        )

    async def get_graph_change_summary(self, since: datetime) -> GraphChangeSummary:
        """
        Count entities and relationships created or updated after ``since``.

        Args:
            since: Timestamp of the previous detection run

        Returns:
            GraphChangeSummary with change counts and graph totals
        """
        records = await self.run_traversal_query(
            """
            CALL {
                MATCH (e:Entity)
                RETURN count(e) AS total_nodes,
                       count(CASE WHEN e.created_at > datetime($since) THEN 1 END) AS new_nodes,
                       count(CASE WHEN e.created_at <= datetime($since)
                                   AND e.updated_at > datetime($since) THEN 1 END) AS modified_nodes
            }
            CALL {
                MATCH (:Entity)-[r]->(:Entity)
                RETURN count(r) AS total_edges,
                       count(CASE WHEN r.created_at > datetime($since) THEN 1 END) AS new_edges
            }
            RETURN total_nodes, new_nodes, modified_nodes, total_edges, new_edges
            """,
            {"since": since.isoformat()},
        )
        record = records[0] if records else {}
        return GraphChangeSummary(
            since=since,
            new_node_count=record.get("new_nodes", 0),
            modified_node_count=record.get("modified_nodes", 0),
            new_edge_count=record.get("new_edges", 0),
            total_nodes=record.get("total_nodes", 0),
            total_edges=record.get("total_edges", 0),
        )

    async def get_changes_since(self, since: datetime) -> GraphChanges:
        """
        Fetch entities and relationships created or updated after ``since``.

        Args:
            since: Timestamp of the previous detection run

        Returns:
            GraphChanges with new nodes, modified nodes and new edges
        """
        params = {"since": since.isoformat()}
        new_records = await self.run_traversal_query(
            """
            MATCH (e:Entity) WHERE e.created_at > datetime($since)
            RETURN properties(e) AS e
            """,
            params,
        )
        modified_records = await self.run_traversal_query(
            """
            MATCH (e:Entity)
            WHERE e.created_at <= datetime($since) AND e.updated_at > datetime($since)
            RETURN properties(e) AS e
            """,
            params,
        )
        edge_records = await self.run_traversal_query(
            """
            MATCH (a:Entity)-[r]->(b:Entity)
            WHERE r.created_at > datetime($since)
            """
            + _EDGE_RETURN,
            params,
        )
        return GraphChanges(
            new_nodes=[_node_from_properties(r["e"]) for r in new_records],
            modified_nodes=[_node_from_properties(r["e"]) for r in modified_records],
            new_edges=[_edge_from_record(r) for r in edge_records],
        )

    async def update_entity_properties(self, entity_id: str, properties: dict[str, Any]) -> None:
        """
        Merge ``properties`` onto an entity without touching ``updated_at``.

        Args:
            entity_id: Entity identifier
            properties: Properties to set
        """
        try:
            async with self.driver.session() as session:
                result = await session.run(
                    """
                    MATCH (e:Entity {id: $id})
                    SET e += $properties
                    RETURN e.id AS id
                    """,
                    id=entity_id,
                    properties=properties,
                )
                record = await result.single()
        except Neo4jDriverError as e:
            raise GraphFetchError("update_entity_properties", str(e)) from e
        if record is None:
            raise GraphFetchError("update_entity_properties", f"Entity '{entity_id}' not found")

    async def get_entities_with_property(
        self, property_name: str, limit: int = 100
    ) -> list[GraphNode]:
        """
        Fetch entities that have ``property_name`` set, highest value first.

        Args:
            property_name: Property to filter and sort by
            limit: Maximum number of entities

        Returns:
            List of GraphNode
        """
        records = await self.run_traversal_query(
            """
            MATCH (e:Entity)
            WHERE e[$property] IS NOT NULL
            RETURN properties(e) AS e
            ORDER BY e[$property] DESC
            LIMIT $limit
            """,
            {"property": property_name, "limit": limit},
        )
        return [_node_from_properties(r["e"]) for r in records]
