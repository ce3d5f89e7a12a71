"""Composite entity importance scoring.

Importance combines three per-entity signals, each min-max normalized to
[0, 1] before weighting:
- PageRank: influence from incoming relationships
- Betweenness centrality: how often the entity bridges other entities
- Mention frequency: the entity's ``mention_count`` (1 when absent)

    importance = w_pr * pr + w_bc * bc + w_mf * mf

The composite is re-normalized to [0, 1] unless ``normalize_output`` is off.
Entities are then ranked (1 = most important) and given a percentile of
``(n - rank) / n * 100``.
"""

import asyncio
import time
from datetime import datetime, timezone
from time import monotonic
from typing import Awaitable, Callable, Optional, Union

import structlog

from .centrality import calculate_betweenness, calculate_pagerank
from .models import (
    CentralityResult,
    GraphNode,
    GraphSnapshot,
    ImportanceComponents,
    ImportanceMetadata,
    ImportanceResult,
    ImportanceUpdateResult,
    ImportanceWeights,
    MentionFrequencyAnalysis,
    RankedEntity,
)
from .protocols import GraphAccessor

logger = structlog.get_logger(__name__)

DEFAULT_CACHE_TTL_SECONDS = 300.0
DEFAULT_ENTITY_FETCH_LIMIT = 10000

CentralityFn = Callable[[GraphSnapshot], Awaitable[CentralityResult]]

MENTION_BUCKETS = (
    ("1", 1, 1),
    ("2-5", 2, 5),
    ("6-10", 6, 10),
    ("11-25", 11, 25),
    ("26-50", 26, 50),
)


def normalize_scores(scores: dict[str, float]) -> dict[str, float]:
    """Min-max normalize a score map to [0, 1].

    When every value is equal (including a single entry) all entries map to
    0.5 instead of dividing by zero.
    """
    if not scores:
        return {}
    low = min(scores.values())
    high = max(scores.values())
    spread = high - low
    if spread == 0:
        return {key: 0.5 for key in scores}
    return {key: (value - low) / spread for key, value in scores.items()}


def calculate_mention_frequency(nodes: list[GraphNode]) -> dict[str, float]:
    return {node.id: float(node.mention_count or 1) for node in nodes}


def _resolve_weights(
    weights: Union[ImportanceWeights, dict[str, float], None],
) -> ImportanceWeights:
    if weights is None:
        return ImportanceWeights()
    if isinstance(weights, ImportanceWeights):
        return weights
    return ImportanceWeights(**weights)


class ImportanceScorer:
    """Compute, cache and persist composite entity importance.

    The last full result is cached on the instance for ``cache_ttl_seconds``;
    the container builds one scorer per process so the cache is shared by
    every caller.
    """

    def __init__(
        self,
        graph: GraphAccessor,
        cache_ttl_seconds: float = DEFAULT_CACHE_TTL_SECONDS,
        entity_fetch_limit: int = DEFAULT_ENTITY_FETCH_LIMIT,
        pagerank_fn: CentralityFn = calculate_pagerank,
        betweenness_fn: CentralityFn = calculate_betweenness,
    ) -> None:
        self._graph = graph
        self.cache_ttl_seconds = cache_ttl_seconds
        self.entity_fetch_limit = entity_fetch_limit
        self._pagerank_fn = pagerank_fn
        self._betweenness_fn = betweenness_fn
        self._cached_result: Optional[ImportanceResult] = None
        self._cached_at = 0.0
        self._cache_lock = asyncio.Lock()

    async def calculate_importance(
        self,
        weights: Union[ImportanceWeights, dict[str, float], None] = None,
        normalize_output: bool = True,
        snapshot: Optional[GraphSnapshot] = None,
    ) -> ImportanceResult:
        """Score every entity in the graph.

        Args:
            weights: Component weights; defaults to 0.4 / 0.35 / 0.25
            normalize_output: Re-normalize the composite to [0, 1]
            snapshot: Graph to score; fetched from the accessor if omitted

        Returns:
            ImportanceResult with scores and entities ranked most important first
        """
        start_time = time.perf_counter()
        resolved = _resolve_weights(weights)
        logger.info("importance_calculation_started", weights=resolved.model_dump())

        if snapshot is None:
            snapshot = await self._graph.get_all_entities(self.entity_fetch_limit)

        if not snapshot.nodes:
            logger.warning("importance_calculation_no_nodes")
            return ImportanceResult(
                metadata=ImportanceMetadata(
                    weights=resolved,
                    normalized_output=normalize_output,
                    execution_time_ms=_elapsed_ms(start_time),
                )
            )

        try:
            page_rank, betweenness = await asyncio.gather(
                self._pagerank_fn(snapshot),
                self._betweenness_fn(snapshot),
            )
        except Exception as e:
            logger.error("importance_calculation_failed", error=str(e))
            raise

        nodes: dict[str, GraphNode] = {}
        for node in snapshot.nodes:
            nodes.setdefault(node.id, node)

        normalized_page_rank = normalize_scores(page_rank.scores)
        normalized_betweenness = normalize_scores(betweenness.scores)
        normalized_mentions = normalize_scores(calculate_mention_frequency(list(nodes.values())))

        components: dict[str, ImportanceComponents] = {}
        composite: dict[str, float] = {}
        for node_id in nodes:
            parts = ImportanceComponents(
                page_rank=normalized_page_rank.get(node_id, 0.0),
                betweenness=normalized_betweenness.get(node_id, 0.0),
                mention_frequency=normalized_mentions.get(node_id, 0.0),
            )
            components[node_id] = parts
            composite[node_id] = (
                resolved.page_rank * parts.page_rank
                + resolved.betweenness * parts.betweenness
                + resolved.mention_frequency * parts.mention_frequency
            )

        final_scores = normalize_scores(composite) if normalize_output else composite

        ordered = sorted(final_scores.items(), key=lambda item: item[1], reverse=True)
        total = len(ordered)
        ranked_entities = []
        for index, (node_id, importance) in enumerate(ordered):
            node = nodes[node_id]
            ranked_entities.append(
                RankedEntity(
                    id=node_id,
                    name=node.display_name,
                    type=node.entity_type,
                    importance=importance,
                    components=components[node_id],
                    description=node.description,
                    confidence=node.confidence,
                    mention_count=node.mention_count or 1,
                    rank=index + 1,
                    percentile=(total - index - 1) / total * 100,
                )
            )

        result = ImportanceResult(
            scores=final_scores,
            ranked_entities=ranked_entities,
            metadata=ImportanceMetadata(
                node_count=total,
                weights=resolved,
                normalized_output=normalize_output,
                page_rank_metadata=page_rank.metadata,
                betweenness_metadata=betweenness.metadata,
                execution_time_ms=_elapsed_ms(start_time),
            ),
        )

        logger.info(
            "importance_calculation_completed",
            node_count=total,
            top_entity=ranked_entities[0].name,
            top_score=round(ranked_entities[0].importance, 4),
            execution_time_ms=result.metadata.execution_time_ms,
        )
        return result

    async def get_importance_with_cache(
        self,
        force_refresh: bool = False,
        weights: Union[ImportanceWeights, dict[str, float], None] = None,
    ) -> ImportanceResult:
        """Return the cached result unless it is stale or ``force_refresh`` is set.

        Concurrent callers on a cold cache wait for a single computation.
        """
        async with self._cache_lock:
            now = monotonic()
            if (
                force_refresh
                or self._cached_result is None
                or now - self._cached_at > self.cache_ttl_seconds
            ):
                self._cached_result = await self.calculate_importance(weights=weights)
                self._cached_at = now
            return self._cached_result

    def clear_cache(self) -> None:
        self._cached_result = None
        self._cached_at = 0.0

    async def update_entity_importance_scores(
        self,
        weights: Union[ImportanceWeights, dict[str, float], None] = None,
    ) -> ImportanceUpdateResult:
        """Write importance, rank, percentile and timestamp onto each entity.

        Individual write failures are counted and logged; they do not stop
        the remaining writes.
        """
        start_time = time.perf_counter()
        result = await self.calculate_importance(weights=weights)
        if not result.ranked_entities:
            return ImportanceUpdateResult(execution_time_ms=_elapsed_ms(start_time))

        updated = 0
        failed = 0
        for entity in result.ranked_entities:
            try:
                await self._graph.update_entity_properties(
                    entity.id,
                    {
                        "importance": entity.importance,
                        "importanceRank": entity.rank,
                        "importancePercentile": entity.percentile,
                        "importanceUpdatedAt": datetime.now(timezone.utc).isoformat(),
                    },
                )
                updated += 1
            except Exception as e:
                logger.warning(
                    "importance_update_failed",
                    entity_id=entity.id,
                    entity_name=entity.name,
                    error=str(e),
                )
                failed += 1

        update = ImportanceUpdateResult(
            updated=updated,
            failed=failed,
            total=len(result.ranked_entities),
            scores=result.scores,
            execution_time_ms=_elapsed_ms(start_time),
        )
        logger.info(
            "importance_update_completed",
            updated=updated,
            failed=failed,
            total=update.total,
            execution_time_ms=update.execution_time_ms,
        )
        return update

    async def get_top_entities(self, n: int = 10) -> list[RankedEntity]:
        result = await self.get_importance_with_cache()
        return result.ranked_entities[:n]

    async def get_entity_importance(self, entity_id: str) -> Optional[RankedEntity]:
        result = await self.get_importance_with_cache()
        for entity in result.ranked_entities:
            if entity.id == entity_id:
                return entity
        return None

    async def get_cached_importance_scores(self, limit: int = 100) -> list[GraphNode]:
        """Read previously persisted importance scores from the graph."""
        try:
            return await self._graph.get_entities_with_property("importance", limit)
        except Exception as e:
            logger.warning("cached_importance_read_failed", error=str(e))
            return []

    async def get_mention_frequency_analysis(self) -> MentionFrequencyAnalysis:
        """Summary statistics over entity mention counts."""
        snapshot = await self._graph.get_all_entities(self.entity_fetch_limit)
        entities = [node for node in snapshot.nodes if node.mention_count is not None]
        if not entities:
            return MentionFrequencyAnalysis(distribution=_empty_distribution())

        counts = [node.mention_count or 1 for node in entities]
        distribution = _empty_distribution()
        for count in counts:
            for label, low, high in MENTION_BUCKETS:
                if low <= count <= high:
                    distribution[label] += 1
                    break
            else:
                distribution["50+"] += 1

        top = sorted(entities, key=lambda node: node.mention_count or 1, reverse=True)[:10]
        return MentionFrequencyAnalysis(
            total_entities=len(entities),
            total_mentions=sum(counts),
            average_mention_count=round(sum(counts) / len(entities), 2),
            max_mention_count=max(counts),
            min_mention_count=min(counts),
            distribution=distribution,
            top_entities=[
                {
                    "id": node.id,
                    "name": node.display_name,
                    "type": node.entity_type,
                    "mention_count": node.mention_count or 1,
                }
                for node in top
            ],
        )


def _empty_distribution() -> dict[str, int]:
    distribution = {label: 0 for label, _, _ in MENTION_BUCKETS}
    distribution["50+"] = 0
    return distribution


def _elapsed_ms(start_time: float) -> float:
    return round((time.perf_counter() - start_time) * 1000, 3)
