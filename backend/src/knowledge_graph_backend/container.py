"""Service construction and wiring.

Every component is built once from ``Settings`` and receives its
collaborators by reference, so tests can substitute in-memory fakes for the
graph accessor, completion client and community store.
"""

from dataclasses import dataclass
from typing import Optional

import structlog

from .config import Settings, get_settings
from .db.neo4j import Neo4jGraphAccessor
from .db.redis import RedisCommunityStore
from .graph.cache import SummaryCache
from .graph.community import CommunityDetector
from .graph.global_query import GlobalQueryEngine
from .graph.importance import ImportanceScorer
from .graph.protocols import CommunityStore, CompletionClient, GraphAccessor
from .graph.summaries import CommunitySummaryService
from .llm import OpenAICompletionClient, get_llm_adapter

logger = structlog.get_logger(__name__)


@dataclass
class Services:
    """The wired graph services and their collaborators."""

    settings: Settings
    graph: GraphAccessor
    completion: CompletionClient
    store: CommunityStore
    detector: CommunityDetector
    importance: ImportanceScorer
    summaries: CommunitySummaryService
    global_query: GlobalQueryEngine

    async def startup(self) -> None:
        """Open connections for adapters that hold one."""
        for component in (self.graph, self.store):
            connect = getattr(component, "connect", None)
            if connect is not None:
                await connect()

    async def shutdown(self) -> None:
        """Close connections opened by ``startup``."""
        for component in (self.store, self.graph):
            disconnect = getattr(component, "disconnect", None)
            if disconnect is not None:
                await disconnect()


def build_services(
    settings: Optional[Settings] = None,
    graph: Optional[GraphAccessor] = None,
    completion: Optional[CompletionClient] = None,
    store: Optional[CommunityStore] = None,
) -> Services:
    """
    Build the graph services from settings.

    Args:
        settings: Application settings; loaded from the environment if omitted
        graph: Graph accessor; a Neo4jGraphAccessor is built if omitted
        completion: Completion client; an OpenAICompletionClient is built if omitted
        store: Community store; a RedisCommunityStore is built if omitted

    Returns:
        Services with every component wired
    """
    settings = settings or get_settings()
    if graph is None:
        graph = Neo4jGraphAccessor(settings.neo4j_uri, settings.neo4j_user, settings.neo4j_password)
    if completion is None:
        completion = OpenAICompletionClient(
            get_llm_adapter(settings),
            timeout_seconds=settings.llm_timeout_seconds,
            retry_attempts=settings.llm_retry_attempts,
        )
    if store is None:
        store = RedisCommunityStore(settings.redis_url, key_prefix=settings.redis_key_prefix)

    detector = CommunityDetector(
        graph,
        resolution=settings.community_resolution,
        max_levels=settings.community_max_levels,
        threshold=settings.community_threshold,
        seed=settings.community_seed,
        hop_radius=settings.incremental_hop_radius,
        max_change_ratio=settings.incremental_max_change_ratio,
        min_incremental_nodes=settings.incremental_min_nodes,
        smart_change_ratio_threshold=settings.smart_change_ratio_threshold,
        entity_fetch_limit=settings.entity_fetch_limit,
    )
    importance = ImportanceScorer(
        graph,
        cache_ttl_seconds=settings.importance_cache_ttl_seconds,
        entity_fetch_limit=settings.entity_fetch_limit,
    )
    summaries = CommunitySummaryService(
        detector,
        completion,
        store,
        importance=importance,
        cache=SummaryCache(
            max_size=settings.summary_cache_max_size,
            ttl_seconds=settings.summary_cache_ttl_seconds,
        ),
        min_community_size=settings.summary_min_community_size,
        batch_size=settings.summary_batch_size,
        batch_delay_seconds=settings.summary_batch_delay_seconds,
        max_tokens=settings.summary_max_tokens,
        temperature=settings.summary_temperature,
    )
    global_query = GlobalQueryEngine(
        summaries,
        completion,
        max_communities=settings.global_query_max_communities,
        top_k=settings.global_query_top_k,
    )

    logger.info(
        "services_built",
        llm_provider=settings.llm_provider,
        llm_model=settings.llm_model_id,
        resolution=settings.community_resolution,
    )
    return Services(
        settings=settings,
        graph=graph,
        completion=completion,
        store=store,
        detector=detector,
        importance=importance,
        summaries=summaries,
        global_query=global_query,
    )
