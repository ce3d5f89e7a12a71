"""Community Detection for the knowledge graph.

The CommunityDetector class partitions the graph supplied by a
``GraphAccessor`` into communities using Louvain modularity optimization.

Detection modes:
- Full: multi-level Louvain over the whole graph, ids renumbered largest first
- Incremental: seeds the previous partition and re-runs local moving only
  over the nodes touched since the previous run and their neighbours
- Smart: asks the graph store how much changed and picks one of the above,
  or returns the previous result untouched when nothing changed
- Subgraph: detection restricted to the induced subgraph over given node ids

Configuration (see ``config.Settings``):
- COMMUNITY_RESOLUTION: Null-model scaling, >1 gives more, smaller communities
- COMMUNITY_MAX_LEVELS / COMMUNITY_THRESHOLD: Louvain stopping criteria
- INCREMENTAL_HOP_RADIUS: Neighbourhood radius around affected nodes (1 or 2)
- INCREMENTAL_MAX_CHANGE_RATIO / INCREMENTAL_MIN_NODES: Full-detection fallback
- SMART_CHANGE_RATIO_THRESHOLD: Change ratio below which smart mode goes incremental
"""

import time
from datetime import datetime
from typing import Optional, Sequence

import structlog

from .errors import CommunityDetectionError, GraphFetchError
from .louvain import (
    DEFAULT_MAX_LEVELS,
    DEFAULT_RESOLUTION,
    DEFAULT_THRESHOLD,
    build_community_list,
    build_graph,
    compute_modularity,
    expand_frontier,
    identify_changed_communities,
    local_moving,
    renumber_by_size,
    run_louvain,
)
from .models import (
    Community,
    CommunityId,
    DetectionMetadata,
    DetectionResult,
    GraphChanges,
    GraphSnapshot,
    utc_now,
)
from .protocols import GraphAccessor

logger = structlog.get_logger(__name__)

DEFAULT_ENTITY_FETCH_LIMIT = 10000


class CommunityDetector:
    """Detect entity communities in the knowledge graph.

    Attributes:
        resolution: Default resolution parameter
        max_levels: Maximum Louvain aggregation levels
        threshold: Minimum modularity gain per level (and per local move)
        seed: Optional random seed for reproducible partitions
        hop_radius: Frontier expansion radius for incremental detection
        max_change_ratio: Above this change ratio incremental falls back to full
        min_incremental_nodes: Below this node count incremental falls back to full
        smart_change_ratio_threshold: Below this ratio smart mode goes incremental
    """

    def __init__(
        self,
        graph: GraphAccessor,
        resolution: float = DEFAULT_RESOLUTION,
        max_levels: int = DEFAULT_MAX_LEVELS,
        threshold: float = DEFAULT_THRESHOLD,
        seed: Optional[int] = None,
        hop_radius: int = 1,
        max_change_ratio: float = 0.3,
        min_incremental_nodes: int = 10,
        smart_change_ratio_threshold: float = 0.2,
        entity_fetch_limit: int = DEFAULT_ENTITY_FETCH_LIMIT,
    ) -> None:
        if resolution <= 0:
            raise ValueError("resolution must be > 0")
        if hop_radius < 1:
            raise ValueError("hop_radius must be >= 1")
        self._graph = graph
        self.resolution = resolution
        self.max_levels = max_levels
        self.threshold = threshold
        self.seed = seed
        self.hop_radius = hop_radius
        self.max_change_ratio = max_change_ratio
        self.min_incremental_nodes = min_incremental_nodes
        self.smart_change_ratio_threshold = smart_change_ratio_threshold
        self.entity_fetch_limit = entity_fetch_limit

    def _resolve_resolution(self, resolution: Optional[float]) -> float:
        if resolution is None:
            return self.resolution
        if resolution <= 0:
            raise ValueError("resolution must be > 0")
        return resolution

    async def fetch_snapshot(self) -> GraphSnapshot:
        try:
            return await self._graph.get_all_entities(self.entity_fetch_limit)
        except GraphFetchError:
            raise
        except Exception as e:
            raise GraphFetchError("get_all_entities", str(e)) from e

    async def detect(
        self,
        snapshot: Optional[GraphSnapshot] = None,
        resolution: Optional[float] = None,
    ) -> DetectionResult:
        """Run full Louvain detection.

        Args:
            snapshot: Graph to partition; fetched from the graph accessor if omitted
            resolution: Override the default resolution

        Returns:
            DetectionResult with communities sorted largest first

        Raises:
            GraphFetchError: If the graph cannot be read
        """
        start_time = time.perf_counter()
        resolution = self._resolve_resolution(resolution)
        if snapshot is None:
            snapshot = await self.fetch_snapshot()
        result = self._detect_full(snapshot, resolution, mode="full")
        result.metadata.execution_time_ms = _elapsed_ms(start_time)

        logger.info(
            "community_detection_completed",
            mode="full",
            node_count=result.metadata.node_count,
            community_count=result.metadata.community_count,
            modularity=round(result.modularity, 4),
            hierarchy_levels=result.metadata.hierarchy_levels,
            execution_time_ms=result.metadata.execution_time_ms,
        )
        return result

    def _detect_full(self, snapshot: GraphSnapshot, resolution: float, mode: str) -> DetectionResult:
        G, nodes = build_graph(snapshot)
        if not nodes:
            logger.warning("community_detection_empty_graph", mode=mode)
            return DetectionResult(
                metadata=DetectionMetadata(mode=mode, resolution=resolution),
            )

        try:
            partition, levels = run_louvain(
                G,
                resolution=resolution,
                threshold=self.threshold,
                max_levels=self.max_levels,
                seed=self.seed,
            )
        except Exception as e:
            logger.error("louvain_failed", mode=mode, error=str(e))
            raise CommunityDetectionError(str(e), mode) from e

        assignment = renumber_by_size(nodes, partition)
        community_list = build_community_list(nodes, assignment)
        modularity = compute_modularity(G, assignment, resolution)

        return DetectionResult(
            community_list=community_list,
            modularity=modularity,
            communities=dict(assignment),
            metadata=DetectionMetadata(
                mode=mode,
                node_count=len(nodes),
                edge_count=G.number_of_edges(),
                community_count=len(community_list),
                hierarchy_levels=levels,
                resolution=resolution,
            ),
        )

    async def detect_incremental(
        self,
        previous_result: Optional[DetectionResult],
        since: Optional[datetime] = None,
        changes: Optional[GraphChanges] = None,
        snapshot: Optional[GraphSnapshot] = None,
        resolution: Optional[float] = None,
    ) -> DetectionResult:
        """Re-partition only the neighbourhood of nodes changed since ``since``.

        Communities not touched by the change keep their previous ids. New
        nodes start as singleton communities with fresh ids. Falls back to
        full detection when there is no usable previous result, when the
        change ratio exceeds ``max_change_ratio``, or when the graph has fewer
        than ``min_incremental_nodes`` nodes.

        Args:
            previous_result: Result of the previous detection run
            since: Timestamp of the previous run, used to fetch changes
            changes: Pre-fetched changes; fetched via ``since`` if omitted
            snapshot: Current graph; fetched if omitted
            resolution: Override the default resolution

        Returns:
            DetectionResult with ``changed_communities`` populated
        """
        start_time = time.perf_counter()
        resolution = self._resolve_resolution(resolution)

        if snapshot is None:
            snapshot = await self.fetch_snapshot()
        if changes is None:
            if since is None and previous_result is not None:
                since = previous_result.metadata.detected_at
            changes = await self._graph.get_changes_since(since) if since else GraphChanges()

        logger.info(
            "incremental_detection_started",
            new_node_count=len(changes.new_nodes),
            modified_node_count=len(changes.modified_nodes),
            new_edge_count=len(changes.new_edges),
            has_previous_result=previous_result is not None,
        )

        try:
            return self._detect_incremental(
                snapshot, previous_result, changes, resolution, start_time
            )
        except Exception as e:
            logger.error("incremental_detection_failed_falling_back", error=str(e))
            result = self._detect_full(snapshot, resolution, mode="full")
            result.metadata.fallback_reason = "incremental_error"
            result.metadata.execution_time_ms = _elapsed_ms(start_time)
            return result

    def _detect_incremental(
        self,
        snapshot: GraphSnapshot,
        previous_result: Optional[DetectionResult],
        changes: GraphChanges,
        resolution: float,
        start_time: float,
    ) -> DetectionResult:
        G, nodes = build_graph(snapshot)
        if not nodes:
            return DetectionResult(
                changed_communities=[],
                metadata=DetectionMetadata(
                    mode="incremental",
                    incremental=True,
                    resolution=resolution,
                    affected_node_count=0,
                    execution_time_ms=_elapsed_ms(start_time),
                ),
            )

        change_ratio = changes.total / len(nodes)
        previous = previous_result.communities if previous_result is not None else {}
        fallback_reason = None
        if not previous:
            fallback_reason = "no_previous_result"
        elif change_ratio > self.max_change_ratio:
            fallback_reason = "high_change_ratio"
        elif len(nodes) < self.min_incremental_nodes:
            fallback_reason = "small_graph"

        if fallback_reason is not None:
            logger.info(
                "incremental_detection_using_full",
                reason=fallback_reason,
                change_ratio=round(change_ratio, 3),
            )
            result = self._detect_full(snapshot, resolution, mode="full")
            result.metadata.fallback_reason = fallback_reason
            result.metadata.change_ratio = change_ratio
            result.metadata.execution_time_ms = _elapsed_ms(start_time)
            return result

        assignment: dict[str, CommunityId] = {
            node_id: community_id for node_id, community_id in previous.items() if node_id in nodes
        }
        next_id = _next_community_id(previous.values())

        affected: set[str] = set()
        for node in changes.new_nodes:
            if node.id in nodes:
                affected.add(node.id)
                assignment[node.id] = next_id
                next_id += 1
        for node in changes.modified_nodes:
            if node.id in nodes:
                affected.add(node.id)
        edge_graph, _ = build_graph(GraphSnapshot(nodes=list(nodes.values()), edges=changes.new_edges))
        for source, target in edge_graph.edges:
            affected.update((source, target))
        for node_id in nodes:
            if node_id not in assignment:
                affected.add(node_id)
                assignment[node_id] = next_id
                next_id += 1

        frontier = expand_frontier(G, affected, self.hop_radius)
        ordered_frontier = [node_id for node_id in nodes if node_id in frontier]
        assignment, moves = local_moving(
            G,
            assignment,
            ordered_frontier,
            resolution=resolution,
            min_gain=self.threshold,
            seed=self.seed,
        )

        community_list = build_community_list(nodes, assignment)
        modularity = compute_modularity(G, assignment, resolution)
        changed = identify_changed_communities(previous, assignment, affected)

        result = DetectionResult(
            community_list=community_list,
            modularity=modularity,
            communities=assignment,
            changed_communities=changed,
            metadata=DetectionMetadata(
                mode="incremental",
                node_count=len(nodes),
                edge_count=G.number_of_edges(),
                community_count=len(community_list),
                hierarchy_levels=1,
                resolution=resolution,
                execution_time_ms=_elapsed_ms(start_time),
                incremental=True,
                affected_node_count=len(affected),
                frontier_size=len(frontier),
                changed_community_count=len(changed),
                change_ratio=change_ratio,
            ),
        )

        logger.info(
            "incremental_detection_completed",
            community_count=len(community_list),
            modularity=round(modularity, 4),
            affected_node_count=len(affected),
            frontier_size=len(frontier),
            moves=moves,
            changed_community_count=len(changed),
            execution_time_ms=result.metadata.execution_time_ms,
        )
        return result

    async def detect_smart(
        self,
        previous_result: Optional[DetectionResult] = None,
        since: Optional[datetime] = None,
        resolution: Optional[float] = None,
    ) -> DetectionResult:
        """Choose between full and incremental detection from the graph's change volume.

        When nothing changed since ``since`` (default: the previous run's
        detection time) the previous result is returned with
        ``metadata.no_changes`` and ``metadata.from_cache`` set.
        """
        if previous_result is None:
            logger.info("smart_detection_no_previous_state")
            return await self.detect(resolution=resolution)

        since = since or previous_result.metadata.detected_at
        try:
            change_summary = await self._graph.get_graph_change_summary(since)
        except Exception as e:
            logger.warning("smart_detection_change_summary_failed", error=str(e))
            return await self.detect(resolution=resolution)

        if not change_summary.has_changes:
            logger.info("smart_detection_no_changes", since=since.isoformat())
            metadata = previous_result.metadata.model_copy(
                update={"from_cache": True, "no_changes": True}
            )
            return previous_result.model_copy(update={"metadata": metadata})

        change_ratio = change_summary.change_ratio
        if change_ratio < self.smart_change_ratio_threshold:
            logger.info(
                "smart_detection_using_incremental",
                change_ratio=round(change_ratio, 3),
                change_count=change_summary.change_count,
            )
            try:
                changes = await self._graph.get_changes_since(since)
                result = await self.detect_incremental(
                    previous_result, since=since, changes=changes, resolution=resolution
                )
            except Exception as e:
                logger.warning("smart_detection_incremental_failed", error=str(e))
                return await self.detect(resolution=resolution)
            result.metadata.detected_at = utc_now()
            return result

        logger.info("smart_detection_using_full", change_ratio=round(change_ratio, 3))
        return await self.detect(resolution=resolution)

    async def detect_subgraph(
        self,
        node_ids: Sequence[str],
        resolution: Optional[float] = None,
        snapshot: Optional[GraphSnapshot] = None,
    ) -> DetectionResult:
        """Detect communities in the subgraph induced by ``node_ids``.

        Args:
            node_ids: Entity ids to restrict detection to
            resolution: Override the default resolution
            snapshot: Entities and relationships to use instead of querying
                the graph accessor; nodes outside ``node_ids`` are ignored

        Returns:
            DetectionResult in ``subgraph`` mode; empty when no node matches
        """
        start_time = time.perf_counter()
        resolution = self._resolve_resolution(resolution)
        wanted = set(node_ids)
        if not wanted:
            return DetectionResult(
                metadata=DetectionMetadata(mode="subgraph", resolution=resolution)
            )

        if snapshot is None:
            try:
                snapshot = await self._graph.get_subgraph(list(node_ids))
            except Exception as e:
                raise GraphFetchError("get_subgraph", str(e)) from e

        induced = GraphSnapshot(
            nodes=[node for node in snapshot.nodes if node.id in wanted],
            edges=snapshot.edges,
        )
        result = self._detect_full(induced, resolution, mode="subgraph")
        result.metadata.execution_time_ms = _elapsed_ms(start_time)

        logger.info(
            "subgraph_detection_completed",
            requested_nodes=len(wanted),
            node_count=result.metadata.node_count,
            community_count=result.metadata.community_count,
            modularity=round(result.modularity, 4),
        )
        return result

    async def get_entity_community(self, entity_id: str) -> Optional[Community]:
        """Return the community containing an entity in a fresh full detection."""
        result = await self.detect()
        community_id = result.communities.get(entity_id)
        if community_id is None:
            return None
        return result.get_community(community_id)

    async def get_top_communities(self, n: int = 10) -> list[Community]:
        """Return the ``n`` largest communities of a fresh full detection."""
        result = await self.detect()
        return result.community_list[:n]


def _next_community_id(community_ids) -> int:
    numeric = [community_id for community_id in community_ids if isinstance(community_id, int)]
    return max(numeric) + 1 if numeric else 0


def _elapsed_ms(start_time: float) -> float:
    return round((time.perf_counter() - start_time) * 1000, 3)
