"""Community summarization pipeline.

For every community at or above the minimum size the pipeline assembles a
bounded prompt context (member entities, intra-community relationships and
a type histogram), asks the completion client for a JSON ``title`` and
``summary``, caches the result and persists it.

Generation runs in fixed-size batches that are awaited concurrently, with
a fixed delay between batches to throttle load on the LLM provider. A
community whose completion fails gets a deterministic fallback summary;
failure never propagates past the per-community wrapper. Persistence is
best-effort: the in-memory cache keeps serving if storage is down.

Modes:
- Full (``generate_all_summaries``): detect, summarize everything eligible
- Incremental (``update_summaries_incremental``): regenerate only the
  communities the smart detection reports as changed
- Lazy (``generate_summaries_for_subgraph``): summarize communities detected
  in a caller-supplied subgraph, keyed by a stable member hash
"""

import asyncio
import hashlib
import time
from collections import Counter
from datetime import datetime
from typing import Any, Iterable, Optional, Sequence

import structlog

from .cache import SummaryCache
from .community import CommunityDetector
from .importance import ImportanceScorer
from .models import (
    MIXED_TYPE,
    UNKNOWN_TYPE,
    Community,
    CommunityId,
    CommunityMember,
    CommunityRelationship,
    CommunitySummary,
    DetectionResult,
    GraphEdge,
    GraphNode,
    GraphSnapshot,
    SummaryGenerationMetadata,
    SummaryGenerationResult,
    utc_now,
)
from .protocols import CommunityStore, CompletionClient

logger = structlog.get_logger(__name__)

MAX_ENTITIES_IN_PROMPT = 50
MAX_RELATIONSHIPS_IN_PROMPT = 100
MAX_KEY_ENTITIES = 5
MAX_SUMMARY_LENGTH = 500

SUMMARY_SYSTEM_PROMPT = f"""You are a knowledge graph analyst creating summaries for communities of related entities.

Your task is to generate a concise, informative summary that:
1. Identifies the main theme or domain of the community
2. Describes the key entities and their roles
3. Explains the relationships and how entities connect
4. Highlights any notable patterns or insights

Keep the summary under {MAX_SUMMARY_LENGTH} characters.
Write in a clear, professional style suitable for enterprise knowledge management."""

JSON_FORMAT_INSTRUCTION = 'Respond in JSON format with "title" and "summary" fields.'


def generate_stable_community_id(members: Iterable[Any]) -> str:
    """Deterministic community id from the sorted member ids (or names).

    Accepts members as ``CommunityMember``/``GraphNode`` objects or plain
    strings; ordering of the input does not affect the result.
    """
    keys = sorted(
        str(key)
        for key in (
            member if isinstance(member, str) else (member.id or getattr(member, "name", None))
            for member in members
        )
        if key
    )
    if not keys:
        return "comm_empty"
    digest = hashlib.md5(",".join(keys).encode("utf-8")).hexdigest()
    return f"comm_{digest[:12]}"


def map_community_relationships(
    communities: Sequence[Community],
    edges: Iterable[GraphEdge],
) -> dict[str, list[CommunityRelationship]]:
    """Assign each edge to the community that contains both of its endpoints.

    Endpoints are matched by member id, then by member name, so edges that
    reference entities by name still resolve.

    Returns:
        Relationships keyed by ``str(community.id)``; every community has an entry
    """
    relationships: dict[str, list[CommunityRelationship]] = {}
    by_id: dict[str, str] = {}
    by_name: dict[str, str] = {}
    names: dict[str, str] = {}
    for community in communities:
        key = str(community.id)
        relationships[key] = []
        for member in community.members:
            by_id.setdefault(member.id, key)
            by_name.setdefault(member.name, key)
            names[member.id] = member.name

    def locate(value: str, name: Optional[str]) -> Optional[str]:
        if value in by_id:
            return by_id[value]
        if value in by_name:
            return by_name[value]
        if name and name in by_name:
            return by_name[name]
        return None

    for edge in edges:
        source_key = locate(edge.source, edge.source_name)
        target_key = locate(edge.target, edge.target_name)
        if source_key is None or source_key != target_key:
            continue
        relationships[source_key].append(
            CommunityRelationship(
                source=edge.source_name or names.get(edge.source, edge.source),
                target=edge.target_name or names.get(edge.target, edge.target),
                type=edge.relationship_type,
            )
        )
    return relationships


def rank_members_by_degree(
    members: Sequence[CommunityMember],
    relationships: Sequence[CommunityRelationship],
) -> list[CommunityMember]:
    """Order members by how many of ``relationships`` touch them; ties keep member order."""
    degree: Counter[str] = Counter()
    for relationship in relationships:
        degree[relationship.source] += 1
        degree[relationship.target] += 1
    return sorted(members, key=lambda member: degree[member.name], reverse=True)


def build_summary_messages(
    community: Community,
    members: Sequence[CommunityMember],
    relationships: Sequence[CommunityRelationship],
) -> list[dict[str, str]]:
    """Build the bounded summarization prompt for one community."""
    limited_members = members[:MAX_ENTITIES_IN_PROMPT]
    limited_relationships = relationships[:MAX_RELATIONSHIPS_IN_PROMPT]
    entity_list = "\n".join(f"- {m.name} ({m.type or UNKNOWN_TYPE})" for m in limited_members)
    relationship_list = "\n".join(
        f"- {r.source} --[{r.type}]--> {r.target}" for r in limited_relationships
    )
    type_distribution = ", ".join(
        f"{type_name}: {count}"
        for type_name, count in sorted(
            community.type_counts.items(), key=lambda item: item[1], reverse=True
        )
    )
    user_prompt = f"""Summarize this knowledge graph community:

Community ID: {community.id}
Size: {community.size} entities
Dominant Entity Type: {community.dominant_type or MIXED_TYPE}
Type Distribution: {type_distribution}

Entities:
{entity_list or "(No entities)"}

Relationships:
{relationship_list or "(No relationships)"}

Please provide a concise summary of this community, including:
1. A descriptive title (5-10 words)
2. A summary paragraph describing the community's content and relationships"""
    return [
        {"role": "system", "content": SUMMARY_SYSTEM_PROMPT},
        {"role": "user", "content": user_prompt},
        {"role": "user", "content": JSON_FORMAT_INSTRUCTION},
    ]


def build_fallback_summary(
    community: Community,
    community_id: CommunityId,
    stable_id: str,
    key_entities: list[str],
    relationship_count: int,
    error: Optional[str] = None,
) -> CommunitySummary:
    """Deterministic summary used when the completion client fails."""
    dominant = community.dominant_type or MIXED_TYPE
    summary = (
        f"A community of {community.size} entities primarily consisting of "
        f"{dominant} types. Key entities include: {', '.join(key_entities) or 'none'}. "
        f"Contains {relationship_count} internal relationships."
    )
    return CommunitySummary(
        community_id=community_id,
        stable_id=stable_id,
        title=f"{dominant} Community",
        summary=summary,
        member_count=community.size,
        dominant_type=dominant,
        type_counts=dict(community.type_counts),
        relationship_count=relationship_count,
        key_entities=key_entities,
        fallback=True,
        error=error,
    )


class CommunitySummaryService:
    """Generate, cache and persist community summaries.

    Attributes:
        min_community_size: Communities smaller than this are not summarized
        batch_size: Communities summarized concurrently per batch
        batch_delay_seconds: Pause between batches
        max_tokens: Completion token budget per summary
        temperature: Completion temperature
        cache: Bounded TTL cache of summaries keyed by community id
    """

    def __init__(
        self,
        detector: CommunityDetector,
        completion: CompletionClient,
        store: CommunityStore,
        importance: Optional[ImportanceScorer] = None,
        cache: Optional[SummaryCache[CommunitySummary]] = None,
        min_community_size: int = 2,
        batch_size: int = 5,
        batch_delay_seconds: float = 0.5,
        max_tokens: int = 400,
        temperature: float = 0.3,
    ) -> None:
        if batch_size < 1:
            raise ValueError("batch_size must be >= 1")
        self._detector = detector
        self._completion = completion
        self._store = store
        self._importance = importance
        self.cache: SummaryCache[CommunitySummary] = cache if cache is not None else SummaryCache()
        self.min_community_size = min_community_size
        self.batch_size = batch_size
        self.batch_delay_seconds = batch_delay_seconds
        self.max_tokens = max_tokens
        self.temperature = temperature
        self.last_full_generation: Optional[datetime] = None
        self.last_modularity: Optional[float] = None
        self.last_community_count: Optional[int] = None

    # ========== Full generation ==========

    async def generate_all_summaries(
        self,
        force_refresh: bool = False,
        min_community_size: Optional[int] = None,
        resolution: Optional[float] = None,
    ) -> SummaryGenerationResult:
        """Detect communities over the whole graph and summarize each eligible one.

        Args:
            force_refresh: Ignore cached summaries
            min_community_size: Override the minimum community size
            resolution: Override the detector's resolution

        Returns:
            Summaries keyed by community id, with generation metadata

        Raises:
            GraphFetchError: If the graph cannot be read
        """
        start_time = time.perf_counter()
        min_size = self.min_community_size if min_community_size is None else min_community_size
        logger.info(
            "summary_generation_started", force_refresh=force_refresh, min_community_size=min_size
        )

        snapshot = await self._detector.fetch_snapshot()
        detection = await self._detector.detect(snapshot=snapshot, resolution=resolution)
        eligible = [c for c in detection.community_list if c.size >= min_size]
        logger.info(
            "summary_eligible_communities",
            community_count=len(detection.community_list),
            eligible_count=len(eligible),
            modularity=round(detection.modularity, 4),
        )

        relationships = map_community_relationships(eligible, snapshot.edges)
        summaries = await self._generate_summaries_batch(
            eligible, relationships, force_refresh=force_refresh
        )
        self._track(detection)
        persistence = await self._persist(detection, summaries)

        result = SummaryGenerationResult(
            summaries=summaries,
            metadata=SummaryGenerationMetadata(
                mode="full",
                community_count=len(detection.community_list),
                summarized_count=len(summaries),
                skipped_count=len(detection.community_list) - len(eligible),
                modularity=detection.modularity,
                execution_time_ms=_elapsed_ms(start_time),
                cache_stats=self.cache.stats(),
                persistence=persistence,
                detection=detection.metadata,
            ),
        )
        logger.info(
            "summary_generation_completed",
            summarized_count=result.metadata.summarized_count,
            execution_time_ms=result.metadata.execution_time_ms,
            persisted="error" not in persistence,
        )
        return result

    # ========== Incremental generation ==========

    async def update_summaries_incremental(
        self,
        min_community_size: Optional[int] = None,
        resolution: Optional[float] = None,
        since: Optional[datetime] = None,
    ) -> SummaryGenerationResult:
        """Regenerate summaries only for communities changed since the last stored run.

        Falls back to ``generate_all_summaries`` on any error.
        """
        start_time = time.perf_counter()
        min_size = self.min_community_size if min_community_size is None else min_community_size
        logger.info("incremental_summary_update_started", min_community_size=min_size)

        try:
            previous, since = await self._load_previous_result(since)
            if previous is not None and since is not None:
                detection = await self._detector.detect_smart(
                    previous, since=since, resolution=resolution
                )
            else:
                logger.info("incremental_summary_no_previous_state")
                detection = await self._detector.detect(resolution=resolution)

            if detection.metadata.no_changes and previous is not None:
                logger.info("incremental_summary_no_changes")
                summaries = await self.get_all_summaries_with_storage()
                return SummaryGenerationResult(
                    summaries=summaries,
                    metadata=SummaryGenerationMetadata(
                        mode="incremental",
                        community_count=len(detection.community_list),
                        summarized_count=0,
                        preserved_count=len(summaries),
                        modularity=detection.modularity,
                        execution_time_ms=_elapsed_ms(start_time),
                        cache_stats=self.cache.stats(),
                        detection=detection.metadata,
                        skipped=True,
                        reason="no_changes",
                    ),
                )

            eligible = [c for c in detection.community_list if c.size >= min_size]
            preserved: dict[str, CommunitySummary] = {}
            if detection.metadata.incremental and detection.changed_communities is not None:
                changed = {str(community_id) for community_id in detection.changed_communities}
                to_regenerate = []
                for community in eligible:
                    existing = None
                    if str(community.id) not in changed:
                        existing = await self._find_existing_summary(community)
                    if existing is not None:
                        preserved[str(community.id)] = existing
                    else:
                        to_regenerate.append(community)
            else:
                to_regenerate = eligible

            logger.info(
                "incremental_summary_regeneration",
                eligible_count=len(eligible),
                regenerating=len(to_regenerate),
                preserving=len(preserved),
            )

            relationships = await self._fetch_community_relationships(to_regenerate)
            generated = await self._generate_summaries_batch(
                to_regenerate, relationships, force_refresh=True
            )
            self._track(detection)
            persistence = await self._persist(detection, generated)

            result = SummaryGenerationResult(
                summaries={**preserved, **generated},
                metadata=SummaryGenerationMetadata(
                    mode="incremental" if detection.metadata.incremental else "full",
                    community_count=len(detection.community_list),
                    summarized_count=len(generated),
                    skipped_count=len(detection.community_list) - len(eligible),
                    regenerated_count=len(generated),
                    preserved_count=len(preserved),
                    modularity=detection.modularity,
                    execution_time_ms=_elapsed_ms(start_time),
                    cache_stats=self.cache.stats(),
                    persistence=persistence,
                    detection=detection.metadata,
                ),
            )
            logger.info(
                "incremental_summary_update_completed",
                regenerated=len(generated),
                preserved=len(preserved),
                execution_time_ms=result.metadata.execution_time_ms,
            )
            return result
        except Exception as e:
            logger.error("incremental_summary_update_failed", error=str(e))
            result = await self.generate_all_summaries(
                min_community_size=min_community_size, resolution=resolution
            )
            result.metadata.fallback_from_incremental = True
            return result

    async def _load_previous_result(
        self, since: Optional[datetime]
    ) -> tuple[Optional[DetectionResult], Optional[datetime]]:
        last_run = await self._store.get_latest_detection_run()
        if last_run is None:
            return None, since
        communities = await self._store.get_communities_by_run_id(last_run.run_id)
        reverse = {member.id: community.id for community in communities for member in community.members}
        metadata = last_run.metadata.model_copy(update={"detected_at": last_run.created_at})
        previous = DetectionResult(
            community_list=communities,
            modularity=last_run.modularity,
            metadata=metadata,
            communities=reverse,
        )
        return previous, since or last_run.created_at

    async def _find_existing_summary(self, community: Community) -> Optional[CommunitySummary]:
        """Return a cached or stored summary still describing ``community``'s members."""
        key = str(community.id)
        stable_id = generate_stable_community_id(community.members)
        cached = self.cache.get(key)
        if cached is not None and cached.stable_id == stable_id:
            return cached
        try:
            stored = await self._store.get_summary(key)
        except Exception as e:
            logger.debug("summary_storage_read_failed", community_id=key, error=str(e))
            return None
        if stored is not None and stored.stable_id == stable_id:
            self.cache.set(key, stored)
            return stored
        return None

    # ========== Lookups ==========

    async def get_community_summary(
        self, community_id: CommunityId, force_refresh: bool = False
    ) -> Optional[CommunitySummary]:
        """Return one summary from cache, storage, or fresh generation.

        Returns:
            The summary, or None if no community has this id
        """
        key = str(community_id)
        if not force_refresh:
            cached = self.cache.get(key)
            if cached is not None:
                logger.debug("community_summary_cache_hit", community_id=key)
                return cached
            try:
                stored = await self._store.get_summary(key)
            except Exception as e:
                logger.debug("summary_storage_read_failed", community_id=key, error=str(e))
                stored = None
            if stored is not None:
                self.cache.set(key, stored)
                return stored

        snapshot = await self._detector.fetch_snapshot()
        detection = await self._detector.detect(snapshot=snapshot)
        community = detection.get_community(community_id)
        if community is None:
            logger.warning("community_not_found", community_id=key)
            return None

        relationships = map_community_relationships([community], snapshot.edges)
        summary = await self._summarize_community(community, relationships.get(key, []))
        self.cache.set(key, summary)
        return summary

    async def get_community_summaries(
        self, community_ids: Sequence[CommunityId], force_refresh: bool = False
    ) -> dict[str, CommunitySummary]:
        result: dict[str, CommunitySummary] = {}
        missing: set[str] = set()
        for community_id in community_ids:
            key = str(community_id)
            cached = None if force_refresh else self.cache.get(key)
            if cached is not None:
                result[key] = cached
            else:
                missing.add(key)

        if missing:
            snapshot = await self._detector.fetch_snapshot()
            detection = await self._detector.detect(snapshot=snapshot)
            communities = [c for c in detection.community_list if str(c.id) in missing]
            if communities:
                relationships = map_community_relationships(communities, snapshot.edges)
                generated = await self._generate_summaries_batch(
                    communities, relationships, force_refresh=True
                )
                result.update(generated)
        return result

    def get_all_cached_summaries(self) -> dict[str, CommunitySummary]:
        return {str(key): summary for key, summary in self.cache.items()}

    async def get_all_summaries_with_storage(
        self, prefer_storage: bool = False, limit: int = 100
    ) -> dict[str, CommunitySummary]:
        """Merge cached summaries with stored ones.

        Storage is consulted when the cache is empty or ``prefer_storage`` is
        set; cached entries win unless ``prefer_storage`` is set. Stored
        summaries missing from the cache are used to warm it.
        """
        result = self.get_all_cached_summaries()
        if result and not prefer_storage:
            return result

        try:
            stored_list = await self._store.get_all_summaries(limit=limit)
        except Exception as e:
            logger.debug("summary_storage_list_failed", error=str(e))
            return result

        stored = {str(summary.community_id): summary for summary in stored_list}
        for key, summary in stored.items():
            if not self.cache.has(key):
                self.cache.set(key, summary)
        if prefer_storage:
            return {**result, **stored}
        return {**stored, **result}

    # ========== Lazy (query-time) generation ==========

    async def generate_summaries_for_subgraph(
        self,
        entities: Sequence[GraphNode],
        relationships: Sequence[GraphEdge],
        min_community_size: Optional[int] = None,
        resolution: Optional[float] = None,
    ) -> SummaryGenerationResult:
        """Summarize communities detected in a caller-supplied subgraph.

        Community ids are replaced by stable member hashes so repeated calls
        over the same entities hit the cache. Never raises: failures yield
        an empty result with ``metadata.error`` set.
        """
        start_time = time.perf_counter()
        min_size = self.min_community_size if min_community_size is None else min_community_size
        node_ids = [entity.id for entity in entities if entity.id]
        if not node_ids:
            return SummaryGenerationResult(
                metadata=SummaryGenerationMetadata(mode="lazy", reason="no_nodes")
            )

        try:
            detection = await self._detector.detect_subgraph(
                node_ids,
                resolution=resolution,
                snapshot=GraphSnapshot(nodes=list(entities), edges=list(relationships)),
            )
            eligible = [
                community.model_copy(
                    update={"id": generate_stable_community_id(community.members)}
                )
                for community in detection.community_list
                if community.size >= min_size
            ]
            if not eligible:
                return SummaryGenerationResult(
                    metadata=SummaryGenerationMetadata(
                        mode="lazy",
                        community_count=len(detection.community_list),
                        skipped_count=len(detection.community_list),
                        execution_time_ms=_elapsed_ms(start_time),
                        detection=detection.metadata,
                        reason="no_eligible_communities",
                    )
                )

            relationship_map = map_community_relationships(eligible, relationships)
            summaries = await self._generate_summaries_batch(
                eligible, relationship_map, force_refresh=False, rank_by_importance=False
            )
            return SummaryGenerationResult(
                summaries=summaries,
                communities=eligible,
                metadata=SummaryGenerationMetadata(
                    mode="lazy",
                    community_count=len(detection.community_list),
                    summarized_count=len(summaries),
                    skipped_count=len(detection.community_list) - len(eligible),
                    modularity=detection.modularity,
                    execution_time_ms=_elapsed_ms(start_time),
                    cache_stats=self.cache.stats(),
                    detection=detection.metadata,
                ),
            )
        except Exception as e:
            logger.warning("subgraph_summary_generation_failed", error=str(e))
            return SummaryGenerationResult(
                metadata=SummaryGenerationMetadata(
                    mode="lazy",
                    execution_time_ms=_elapsed_ms(start_time),
                    error=str(e),
                )
            )

    # ========== Generation internals ==========

    async def _fetch_community_relationships(
        self, communities: Sequence[Community]
    ) -> dict[str, list[CommunityRelationship]]:
        if not communities:
            return {}
        try:
            snapshot = await self._detector.fetch_snapshot()
        except Exception as e:
            logger.warning("community_relationships_fetch_failed", error=str(e))
            return {str(community.id): [] for community in communities}
        return map_community_relationships(communities, snapshot.edges)

    async def _generate_summaries_batch(
        self,
        communities: Sequence[Community],
        relationships: dict[str, list[CommunityRelationship]],
        force_refresh: bool = False,
        rank_by_importance: bool = True,
    ) -> dict[str, CommunitySummary]:
        """Summarize communities in batches of ``batch_size``, reusing valid cache entries.

        With ``rank_by_importance`` off, key entities are ranked by degree within
        the supplied relationships and the graph accessor is never read.
        """
        summaries: dict[str, CommunitySummary] = {}
        batches = [
            communities[index:index + self.batch_size]
            for index in range(0, len(communities), self.batch_size)
        ]

        async def summarize(community: Community) -> tuple[str, CommunitySummary]:
            key = str(community.id)
            if not force_refresh:
                cached = self.cache.get(key)
                if cached is not None and cached.stable_id == generate_stable_community_id(
                    community.members
                ):
                    return key, cached
            summary = await self._summarize_community(
                community, relationships.get(key, []), rank_by_importance
            )
            self.cache.set(key, summary)
            return key, summary

        for batch_number, batch in enumerate(batches, start=1):
            logger.debug(
                "summary_batch",
                batch=batch_number,
                total_batches=len(batches),
                batch_size=len(batch),
            )
            results = await asyncio.gather(*(summarize(community) for community in batch))
            summaries.update(results)
            if batch_number < len(batches) and self.batch_delay_seconds > 0:
                await asyncio.sleep(self.batch_delay_seconds)
        return summaries

    async def _summarize_community(
        self,
        community: Community,
        relationships: list[CommunityRelationship],
        rank_by_importance: bool = True,
    ) -> CommunitySummary:
        """Generate one summary, substituting the fallback on any failure."""
        stable_id = generate_stable_community_id(community.members)
        members = list(community.members)
        try:
            if rank_by_importance:
                members = await self._rank_members(community)
            else:
                members = rank_members_by_degree(community.members, relationships)
            return await self._generate_single_summary(
                community, members, relationships, stable_id
            )
        except Exception as e:
            logger.warning(
                "community_summary_fallback",
                community_id=str(community.id),
                error=str(e),
            )
            key_entities = [member.name for member in members[:MAX_KEY_ENTITIES]]
            return build_fallback_summary(
                community,
                community.id,
                stable_id,
                key_entities,
                len(relationships),
                error=str(e),
            )

    async def _generate_single_summary(
        self,
        community: Community,
        members: list[CommunityMember],
        relationships: list[CommunityRelationship],
        stable_id: str,
    ) -> CommunitySummary:
        messages = build_summary_messages(community, members, relationships)
        parsed = await self._completion.get_json_completion(
            messages, max_tokens=self.max_tokens, temperature=self.temperature
        )
        title = str(parsed.get("title") or "").strip() or f"Community {community.id}"
        summary = str(parsed.get("summary") or "").strip() or "No summary generated."
        return CommunitySummary(
            community_id=community.id,
            stable_id=stable_id,
            title=title,
            summary=summary,
            member_count=community.size,
            dominant_type=community.dominant_type or UNKNOWN_TYPE,
            type_counts=dict(community.type_counts),
            relationship_count=len(relationships),
            key_entities=[member.name for member in members[:MAX_KEY_ENTITIES]],
        )

    async def _rank_members(self, community: Community) -> list[CommunityMember]:
        """Order members by importance when a scorer is available."""
        members = list(community.members)
        if self._importance is None:
            return members
        try:
            importance = await self._importance.get_importance_with_cache()
        except Exception as e:
            logger.warning("member_ranking_failed", community_id=str(community.id), error=str(e))
            return members
        scores = importance.scores
        return sorted(members, key=lambda member: scores.get(member.id, 0.0), reverse=True)

    async def _persist(
        self,
        detection: DetectionResult,
        summaries: dict[str, CommunitySummary],
    ) -> dict[str, Any]:
        try:
            run = await self._store.store_detection_run(detection)
            stored = await self._store.store_summaries_batch(summaries)
        except Exception as e:
            logger.warning("community_persistence_failed", error=str(e))
            return {"error": str(e)}
        persistence = {
            "run_id": run.run_id,
            "stored_communities": run.community_count,
            "stored_summaries": stored.get("stored", 0),
            "failed_summaries": stored.get("failed", 0),
        }
        logger.info("community_results_persisted", **persistence)
        return persistence

    def _track(self, detection: DetectionResult) -> None:
        self.last_full_generation = utc_now()
        self.last_modularity = detection.modularity
        self.last_community_count = len(detection.community_list)

    # ========== Status and maintenance ==========

    def get_status(self) -> dict[str, Any]:
        return {
            "last_full_generation": (
                self.last_full_generation.isoformat() if self.last_full_generation else None
            ),
            "last_modularity": self.last_modularity,
            "last_community_count": self.last_community_count,
            "cache_stats": self.cache.stats(),
        }

    async def get_status_with_storage(self) -> dict[str, Any]:
        status = self.get_status()
        try:
            status["storage_stats"] = await self._store.get_stats()
            status["storage_enabled"] = True
        except Exception as e:
            status["storage_stats"] = None
            status["storage_enabled"] = False
            status["storage_error"] = str(e)
        return status

    def clear_cache(self) -> None:
        self.cache.clear()
        logger.info("community_summary_cache_cleared")

    async def clear_all(self) -> dict[str, Any]:
        """Clear the cache and persistent storage."""
        self.clear_cache()
        try:
            deleted = await self._store.clear()
        except Exception as e:
            logger.warning("community_storage_clear_failed", error=str(e))
            return {"cache_cleared": True, "storage_cleared": False, "error": str(e)}
        return {"cache_cleared": True, "storage_cleared": True, "deleted_keys": deleted}


def _elapsed_ms(start_time: float) -> float:
    return round((time.perf_counter() - start_time) * 1000, 3)
