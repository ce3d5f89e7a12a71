"""Graph intelligence: communities, importance and global query answering.

This module partitions the knowledge graph into communities, scores entity
importance, summarizes communities with an LLM and answers whole-graph
questions over those summaries.

Key Features:
- Louvain community detection via NetworkX (full, incremental, smart, subgraph)
- Composite importance from PageRank, betweenness and mention frequency
- Batched LLM community summaries with a deterministic fallback
- TTL summary cache plus best-effort persistence
- Map-reduce global query answering

Usage:
    from knowledge_graph_backend.container import build_services

    services = build_services()
    await services.startup()

    detection = await services.detector.detect()
    result = await services.summaries.generate_all_summaries()
    answer = await services.global_query.global_query("What are the main themes?")

Dependencies:
- networkx>=3.0, scipy (PageRank)
"""

from .cache import SummaryCache
from .community import CommunityDetector
from .errors import (
    CommunityDetectionError,
    CommunityStorageError,
    CompletionError,
    GraphFetchError,
)
from .global_query import GlobalQueryEngine
from .importance import ImportanceScorer, normalize_scores
from .models import (
    Community,
    CommunityMember,
    CommunityRelationship,
    CommunitySummary,
    DetectionMetadata,
    DetectionResult,
    DetectionRun,
    GlobalQueryResult,
    GraphChanges,
    GraphChangeSummary,
    GraphEdge,
    GraphNode,
    GraphSnapshot,
    ImportanceResult,
    ImportanceWeights,
    PartialAnswer,
    RankedEntity,
    ReducedAnswer,
    SummaryGenerationResult,
)
from .protocols import CommunityStore, CompletionClient, GraphAccessor
from .summaries import CommunitySummaryService, generate_stable_community_id

__all__ = [
    # Errors
    "CommunityDetectionError",
    "CommunityStorageError",
    "CompletionError",
    "GraphFetchError",
    # Models
    "Community",
    "CommunityMember",
    "CommunityRelationship",
    "CommunitySummary",
    "DetectionMetadata",
    "DetectionResult",
    "DetectionRun",
    "GlobalQueryResult",
    "GraphChanges",
    "GraphChangeSummary",
    "GraphEdge",
    "GraphNode",
    "GraphSnapshot",
    "ImportanceResult",
    "ImportanceWeights",
    "PartialAnswer",
    "RankedEntity",
    "ReducedAnswer",
    "SummaryGenerationResult",
    # Protocols
    "CommunityStore",
    "CompletionClient",
    "GraphAccessor",
    # Core
    "CommunityDetector",
    "CommunitySummaryService",
    "GlobalQueryEngine",
    "ImportanceScorer",
    "SummaryCache",
    "generate_stable_community_id",
    "normalize_scores",
]
