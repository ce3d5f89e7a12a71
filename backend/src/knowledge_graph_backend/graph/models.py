"""Pydantic models for community detection, importance and summarization.

This module defines the data models shared by the graph services:
- GraphNode/GraphEdge/GraphSnapshot: Read-only views of the knowledge graph
- Community/DetectionResult: Output of a detection run
- CommunitySummary/SummaryGenerationResult: Output of the summarization pipeline
- RankedEntity/ImportanceResult: Output of the importance scorer
- PartialAnswer/GlobalQueryResult: Map-reduce global query answers
- DetectionRun: Persisted record of a detection run
"""

from collections import Counter
from datetime import datetime, timezone
from typing import Any, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, model_validator

CommunityId = Union[int, str]

UNKNOWN_TYPE = "Unknown"
MIXED_TYPE = "Mixed"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class GraphNode(BaseModel):
    """An entity in the knowledge graph.

    Only ``id`` is required; the graph store may omit any other property.
    ``label`` is accepted as a display-name fallback for stores that do not
    set ``name``.
    """

    id: str = Field(..., description="Entity identifier")
    name: Optional[str] = Field(default=None, description="Entity name")
    label: Optional[str] = Field(default=None, description="Vertex label")
    type: Optional[str] = Field(default=None, description="Entity type")
    description: Optional[str] = Field(default=None, description="Entity description")
    confidence: Optional[float] = Field(default=None, description="Extraction confidence")
    mention_count: Optional[int] = Field(default=None, ge=0, description="Mentions across documents")
    importance: Optional[float] = Field(default=None, description="Stored importance score")
    importance_rank: Optional[int] = Field(default=None, description="Stored importance rank")
    importance_percentile: Optional[float] = Field(
        default=None, description="Stored importance percentile"
    )
    importance_updated_at: Optional[str] = Field(
        default=None, description="When importance was last written"
    )

    model_config = ConfigDict(from_attributes=True, extra="ignore")

    @property
    def display_name(self) -> str:
        return self.name or self.label or self.id

    @property
    def entity_type(self) -> str:
        return self.type or UNKNOWN_TYPE


class GraphEdge(BaseModel):
    """A relationship between two entities.

    ``source``/``target`` normally hold entity ids; some stores return names
    instead, so both are resolved against ids first and names second.
    """

    id: Optional[str] = Field(default=None, description="Edge identifier")
    source: str = Field(..., description="Source entity id (or name)")
    target: str = Field(..., description="Target entity id (or name)")
    type: Optional[str] = Field(default=None, description="Relationship type")
    label: Optional[str] = Field(default=None, description="Edge label")
    source_name: Optional[str] = Field(default=None, description="Source entity name")
    target_name: Optional[str] = Field(default=None, description="Target entity name")
    weight: float = Field(default=1.0, gt=0, description="Edge weight")

    model_config = ConfigDict(from_attributes=True, extra="ignore")

    @property
    def relationship_type(self) -> str:
        return self.type or self.label or "RELATED_TO"


class GraphSnapshot(BaseModel):
    """Node and edge lists for the whole graph or an induced subgraph."""

    nodes: list[GraphNode] = Field(default_factory=list)
    edges: list[GraphEdge] = Field(default_factory=list)


class GraphChangeSummary(BaseModel):
    """Counts of graph mutations since a timestamp."""

    since: datetime
    new_node_count: int = Field(default=0, ge=0)
    modified_node_count: int = Field(default=0, ge=0)
    new_edge_count: int = Field(default=0, ge=0)
    total_nodes: int = Field(default=0, ge=0)
    total_edges: int = Field(default=0, ge=0)

    @property
    def change_count(self) -> int:
        return self.new_node_count + self.modified_node_count + self.new_edge_count

    @property
    def has_changes(self) -> bool:
        return self.change_count > 0

    @property
    def change_ratio(self) -> float:
        total = self.total_nodes + self.total_edges
        if total == 0:
            return 1.0 if self.has_changes else 0.0
        return self.change_count / total


class GraphChanges(BaseModel):
    """Entities and edges created or modified since a timestamp."""

    new_nodes: list[GraphNode] = Field(default_factory=list)
    modified_nodes: list[GraphNode] = Field(default_factory=list)
    new_edges: list[GraphEdge] = Field(default_factory=list)

    @property
    def total(self) -> int:
        return len(self.new_nodes) + len(self.modified_nodes) + len(self.new_edges)


class CommunityMember(BaseModel):
    """An entity as listed inside a community."""

    id: str
    name: str
    type: str = UNKNOWN_TYPE


class Community(BaseModel):
    """A group of entities more densely connected to each other than to the rest.

    Attributes:
        id: Run-scoped integer id, or a stable hash for subgraph communities
        size: Number of members
        members: Member entities
        type_counts: Histogram of member types
        dominant_type: Type with the highest count (first seen wins ties)
    """

    id: CommunityId = Field(..., description="Community identifier")
    size: int = Field(..., ge=0, description="Number of members")
    members: list[CommunityMember] = Field(default_factory=list)
    type_counts: dict[str, int] = Field(default_factory=dict)
    dominant_type: str = Field(default=MIXED_TYPE)

    model_config = ConfigDict(from_attributes=True)

    @model_validator(mode="after")
    def _check_size(self) -> "Community":
        if self.size != len(self.members):
            raise ValueError(
                f"Community {self.id!r} size {self.size} does not match "
                f"{len(self.members)} members"
            )
        return self

    @classmethod
    def from_members(cls, community_id: CommunityId, members: list[CommunityMember]) -> "Community":
        """Build a community, deriving size, type counts and dominant type."""
        type_counts = dict(Counter(member.type for member in members))
        return cls(
            id=community_id,
            size=len(members),
            members=members,
            type_counts=type_counts,
            dominant_type=dominant_type_of(type_counts),
        )

    @property
    def member_ids(self) -> list[str]:
        return [member.id for member in self.members]


def dominant_type_of(type_counts: dict[str, int]) -> str:
    """Return the type with the highest count.

    Ties go to the type that was counted first (dict insertion order), so
    the result is stable for a given member ordering.
    """
    dominant = MIXED_TYPE
    best = 0
    for type_name, count in type_counts.items():
        if count > best:
            dominant = type_name
            best = count
    return dominant


class DetectionMetadata(BaseModel):
    """Statistics describing a detection run."""

    mode: str = Field(default="full", description="full, incremental or subgraph")
    node_count: int = 0
    edge_count: int = 0
    community_count: int = 0
    hierarchy_levels: int = 0
    resolution: float = 1.0
    execution_time_ms: float = 0.0
    detected_at: datetime = Field(default_factory=utc_now)
    incremental: bool = False
    no_changes: bool = False
    from_cache: bool = False
    affected_node_count: Optional[int] = None
    frontier_size: Optional[int] = None
    changed_community_count: Optional[int] = None
    change_ratio: Optional[float] = None
    fallback_reason: Optional[str] = None


class DetectionResult(BaseModel):
    """Partition of a graph into communities.

    Attributes:
        community_list: Communities, largest first for full detection
        modularity: Modularity of the partition over the detected graph
        metadata: Run statistics
        communities: Reverse index of entity id to community id
        changed_communities: Community ids whose membership changed (incremental only)
    """

    community_list: list[Community] = Field(default_factory=list)
    modularity: float = 0.0
    metadata: DetectionMetadata = Field(default_factory=DetectionMetadata)
    communities: dict[str, CommunityId] = Field(default_factory=dict)
    changed_communities: Optional[list[CommunityId]] = None

    def get_community(self, community_id: CommunityId) -> Optional[Community]:
        key = str(community_id)
        for community in self.community_list:
            if str(community.id) == key:
                return community
        return None


class DetectionRun(BaseModel):
    """Immutable persisted record of a detection run."""

    run_id: str
    modularity: float
    community_count: int
    total_entities: int
    algorithm: str = "louvain"
    resolution: float = 1.0
    hierarchy_levels: int = 0
    created_at: datetime = Field(default_factory=utc_now)
    schema_version: str = "1.0.0"
    metadata: DetectionMetadata = Field(default_factory=DetectionMetadata)


class CommunityRelationship(BaseModel):
    """A relationship whose endpoints both belong to one community."""

    source: str
    target: str
    type: str = "RELATED_TO"


class CommunitySummary(BaseModel):
    """LLM-generated (or fallback) description of one community."""

    community_id: CommunityId
    stable_id: str = Field(..., description="Hash of the sorted member ids")
    title: str = Field(..., min_length=1)
    summary: str = Field(..., min_length=1)
    member_count: int = Field(..., ge=0)
    dominant_type: str = MIXED_TYPE
    type_counts: dict[str, int] = Field(default_factory=dict)
    relationship_count: int = Field(default=0, ge=0)
    key_entities: list[str] = Field(default_factory=list, max_length=5)
    generated_at: datetime = Field(default_factory=utc_now)
    fallback: bool = False
    error: Optional[str] = None


class SummaryGenerationMetadata(BaseModel):
    """Statistics describing a summarization run."""

    mode: str = "full"
    community_count: int = 0
    summarized_count: int = 0
    skipped_count: int = 0
    regenerated_count: Optional[int] = None
    preserved_count: Optional[int] = None
    modularity: Optional[float] = None
    execution_time_ms: float = 0.0
    generated_at: datetime = Field(default_factory=utc_now)
    cache_stats: dict[str, Any] = Field(default_factory=dict)
    persistence: dict[str, Any] = Field(default_factory=dict)
    detection: Optional[DetectionMetadata] = None
    skipped: bool = False
    reason: Optional[str] = None
    error: Optional[str] = None
    fallback_from_incremental: bool = False


class SummaryGenerationResult(BaseModel):
    """Summaries keyed by community id (stable id for lazy summaries)."""

    summaries: dict[str, CommunitySummary] = Field(default_factory=dict)
    communities: list[Community] = Field(default_factory=list)
    metadata: SummaryGenerationMetadata = Field(default_factory=SummaryGenerationMetadata)


class CentralityResult(BaseModel):
    """Per-node scores produced by a centrality algorithm."""

    scores: dict[str, float] = Field(default_factory=dict)
    metadata: dict[str, Any] = Field(default_factory=dict)


class ImportanceWeights(BaseModel):
    """Weights of the three importance components."""

    page_rank: float = Field(default=0.4, ge=0)
    betweenness: float = Field(default=0.35, ge=0)
    mention_frequency: float = Field(default=0.25, ge=0)


class ImportanceComponents(BaseModel):
    page_rank: float = 0.0
    betweenness: float = 0.0
    mention_frequency: float = 0.0


class RankedEntity(BaseModel):
    """An entity with its composite importance, rank and percentile."""

    id: str
    name: str
    type: str
    importance: float
    components: ImportanceComponents
    description: Optional[str] = None
    confidence: Optional[float] = None
    mention_count: int = 1
    rank: int = 0
    percentile: float = 0.0


class ImportanceMetadata(BaseModel):
    node_count: int = 0
    weights: ImportanceWeights = Field(default_factory=ImportanceWeights)
    normalized_output: bool = True
    page_rank_metadata: dict[str, Any] = Field(default_factory=dict)
    betweenness_metadata: dict[str, Any] = Field(default_factory=dict)
    execution_time_ms: float = 0.0
    calculated_at: datetime = Field(default_factory=utc_now)


class ImportanceResult(BaseModel):
    scores: dict[str, float] = Field(default_factory=dict)
    ranked_entities: list[RankedEntity] = Field(default_factory=list)
    metadata: ImportanceMetadata = Field(default_factory=ImportanceMetadata)


class ImportanceUpdateResult(BaseModel):
    updated: int = 0
    failed: int = 0
    total: int = 0
    scores: dict[str, float] = Field(default_factory=dict)
    execution_time_ms: float = 0.0


class MentionFrequencyAnalysis(BaseModel):
    total_entities: int = 0
    total_mentions: int = 0
    average_mention_count: float = 0.0
    max_mention_count: int = 0
    min_mention_count: int = 0
    distribution: dict[str, int] = Field(default_factory=dict)
    top_entities: list[dict[str, Any]] = Field(default_factory=list)


class PartialAnswer(BaseModel):
    """Answer derived from a single community summary (map phase)."""

    community_id: CommunityId
    title: str
    answer: str
    relevance: float = Field(default=0.0, ge=0.0, le=1.0)
    member_count: int = 0
    has_information: bool = True
    error: Optional[str] = None


class ReducedAnswer(BaseModel):
    """Synthesized answer over the informative partial answers (reduce phase)."""

    answer: str
    confidence: float = Field(default=0.0, ge=0.0, le=1.0)
    sources: list[str] = Field(default_factory=list)
    partial_answers_considered: int = 0
    reduce_time_ms: float = 0.0


class GlobalQueryMetadata(BaseModel):
    communities_analyzed: int = 0
    informative_count: int = 0
    map_phase_time_ms: float = 0.0
    reduce_phase_time_ms: float = 0.0
    total_time_ms: float = 0.0


class GlobalQueryResult(BaseModel):
    query: str
    answer: str
    confidence: float = 0.0
    sources: list[str] = Field(default_factory=list)
    partial_answers: list[PartialAnswer] = Field(default_factory=list)
    metadata: GlobalQueryMetadata = Field(default_factory=GlobalQueryMetadata)
