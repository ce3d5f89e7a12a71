"""Louvain modularity optimization over knowledge graph snapshots.

Full detection delegates the multi-level local-moving/aggregation loop to
NetworkX (``louvain_partitions``). Incremental detection needs to restrict
local moving to a frontier of affected nodes seeded from a previous
partition, which NetworkX does not expose, so ``local_moving`` implements
that phase directly with the standard modularity gain:

    gain(i -> C) = k_i,C / m - resolution * k_i * sigma_C / (2 * m^2)

where ``k_i,C`` is the edge weight between node i and community C,
``sigma_C`` the total degree of C (without i) and ``m`` the total edge weight.
"""

from __future__ import annotations

import random
from collections import defaultdict
from itertools import islice
from typing import Hashable, Iterable, Optional

import networkx as nx
import structlog

from .models import Community, CommunityId, CommunityMember, GraphNode, GraphSnapshot

logger = structlog.get_logger(__name__)

DEFAULT_RESOLUTION = 1.0
DEFAULT_THRESHOLD = 1e-7
DEFAULT_MAX_LEVELS = 10
MAX_LOCAL_MOVING_ITERATIONS = 100


def build_graph(
    snapshot: GraphSnapshot, directed: bool = False
) -> tuple[nx.Graph, dict[str, GraphNode]]:
    """Build a weighted graph (undirected unless ``directed``) from a snapshot.

    Edge endpoints are matched against node ids first and node names second.
    Self-loops and edges with unknown endpoints are dropped; parallel edges
    are merged by summing their weights.

    Returns:
        The graph and a mapping of node id to node, in snapshot order
    """
    G = nx.DiGraph() if directed else nx.Graph()
    nodes: dict[str, GraphNode] = {}
    name_index: dict[str, str] = {}
    for node in snapshot.nodes:
        if node.id in nodes:
            continue
        nodes[node.id] = node
        G.add_node(node.id)
        for alias in (node.name, node.label):
            if alias and alias not in name_index:
                name_index[alias] = node.id

    dropped = 0
    for edge in snapshot.edges:
        source = resolve_endpoint(edge.source, edge.source_name, nodes, name_index)
        target = resolve_endpoint(edge.target, edge.target_name, nodes, name_index)
        if source is None or target is None or source == target:
            dropped += 1
            continue
        if G.has_edge(source, target):
            G[source][target]["weight"] += edge.weight
        else:
            G.add_edge(source, target, weight=edge.weight)

    if dropped:
        logger.debug("graph_edges_dropped", dropped=dropped, kept=G.number_of_edges())
    return G, nodes


def resolve_endpoint(
    value: str,
    name: Optional[str],
    nodes: dict[str, GraphNode],
    name_index: dict[str, str],
) -> Optional[str]:
    if value in nodes:
        return value
    if value in name_index:
        return name_index[value]
    if name and name in name_index:
        return name_index[name]
    return None


def run_louvain(
    G: nx.Graph,
    resolution: float = DEFAULT_RESOLUTION,
    threshold: float = DEFAULT_THRESHOLD,
    max_levels: int = DEFAULT_MAX_LEVELS,
    seed: Optional[int] = None,
) -> tuple[list[set[str]], int]:
    """Run multi-level Louvain and return the top-level partition.

    Each level NetworkX yields is one local-moving pass followed by
    aggregation; iteration stops when a level improves modularity by less
    than ``threshold`` or ``max_levels`` levels have been produced.

    Returns:
        Communities as node-id sets, and the number of levels computed
    """
    if G.number_of_nodes() == 0:
        return [], 0
    if G.number_of_edges() == 0:
        return [{node} for node in G.nodes], 1

    partitions = nx.community.louvain_partitions(
        G, weight="weight", resolution=resolution, threshold=threshold, seed=seed
    )
    final: list[set[str]] = [{node} for node in G.nodes]
    levels = 0
    for partition in islice(partitions, max_levels):
        final = [set(community) for community in partition]
        levels += 1
    return final, levels


def compute_modularity(
    G: nx.Graph,
    assignment: dict[str, CommunityId],
    resolution: float = DEFAULT_RESOLUTION,
) -> float:
    """Modularity of an assignment over ``G``; 0.0 for graphs without edges."""
    if G.number_of_edges() == 0 or G.size(weight="weight") == 0:
        return 0.0
    groups: dict[CommunityId, set[str]] = defaultdict(set)
    for node in G.nodes:
        groups[assignment[node]].add(node)
    return float(
        nx.community.modularity(G, list(groups.values()), weight="weight", resolution=resolution)
    )


def local_moving(
    G: nx.Graph,
    assignment: dict[str, CommunityId],
    frontier: Iterable[str],
    resolution: float = DEFAULT_RESOLUTION,
    min_gain: float = DEFAULT_THRESHOLD,
    max_iterations: int = MAX_LOCAL_MOVING_ITERATIONS,
    seed: Optional[int] = None,
) -> tuple[dict[str, CommunityId], int]:
    """Greedily move frontier nodes to the neighbouring community with best gain.

    Nodes outside the frontier keep their community. Passes repeat until a
    pass moves nothing or ``max_iterations`` passes have run.

    Returns:
        The new assignment and the total number of moves made
    """
    result = dict(assignment)
    m = G.size(weight="weight")
    if m == 0:
        return result, 0

    degrees = dict(G.degree(weight="weight"))
    sigma_tot: dict[Hashable, float] = defaultdict(float)
    for node, community in result.items():
        sigma_tot[community] += degrees.get(node, 0.0)

    order = [node for node in frontier if node in G]
    rng = random.Random(seed) if seed is not None else None
    total_moves = 0

    for _ in range(max_iterations):
        if rng is not None:
            rng.shuffle(order)
        moves = 0
        for node in order:
            current = result[node]
            k_i = degrees[node]
            links: dict[Hashable, float] = defaultdict(float)
            for neighbor, data in G[node].items():
                links[result[neighbor]] += data.get("weight", 1.0)

            sigma_tot[current] -= k_i
            best = current
            best_gain = links.get(current, 0.0) / m - resolution * k_i * sigma_tot[current] / (
                2 * m * m
            )
            for community, weight in links.items():
                if community == current:
                    continue
                gain = weight / m - resolution * k_i * sigma_tot[community] / (2 * m * m)
                if gain > best_gain + min_gain:
                    best = community
                    best_gain = gain
            sigma_tot[best] += k_i
            if best != current:
                result[node] = best
                moves += 1
        total_moves += moves
        if moves == 0:
            break

    return result, total_moves


def expand_frontier(G: nx.Graph, affected: Iterable[str], hops: int = 1) -> set[str]:
    """Return ``affected`` plus every node within ``hops`` edges of it."""
    frontier = {node for node in affected if node in G}
    boundary = set(frontier)
    for _ in range(hops):
        next_boundary: set[str] = set()
        for node in boundary:
            next_boundary.update(G.neighbors(node))
        next_boundary -= frontier
        frontier |= next_boundary
        boundary = next_boundary
    return frontier


def build_community_list(
    nodes: dict[str, GraphNode],
    assignment: dict[str, CommunityId],
) -> list[Community]:
    """Group nodes by community, largest community first.

    Members keep snapshot order; communities of equal size keep the order
    in which their first member appears.
    """
    groups: dict[CommunityId, list[CommunityMember]] = {}
    for node_id, node in nodes.items():
        community_id = assignment[node_id]
        groups.setdefault(community_id, []).append(
            CommunityMember(id=node_id, name=node.display_name, type=node.entity_type)
        )
    communities = [
        Community.from_members(community_id, members) for community_id, members in groups.items()
    ]
    communities.sort(key=lambda community: community.size, reverse=True)
    return communities


def renumber_by_size(
    nodes: dict[str, GraphNode],
    partition: list[set[str]],
) -> dict[str, int]:
    """Assign sequential ids 0..n-1 to communities, largest first."""
    position = {node_id: index for index, node_id in enumerate(nodes)}
    ordered = sorted(
        partition,
        key=lambda members: (-len(members), min(position[node] for node in members)),
    )
    assignment: dict[str, int] = {}
    for community_id, members in enumerate(ordered):
        for node_id in members:
            assignment[node_id] = community_id
    return assignment


def identify_changed_communities(
    previous: dict[str, CommunityId],
    current: dict[str, CommunityId],
    affected: Iterable[str],
) -> list[CommunityId]:
    """List community ids whose membership may have changed.

    Includes the current community of every affected node, both the old and
    new community of every node that moved, and the old community of every
    node that disappeared from the graph.
    """
    changed: dict[str, CommunityId] = {}

    def mark(community_id: CommunityId) -> None:
        changed.setdefault(str(community_id), community_id)

    for node_id in affected:
        if node_id in current:
            mark(current[node_id])
    for node_id, previous_id in previous.items():
        current_id = current.get(node_id)
        if current_id is None:
            mark(previous_id)
        elif str(current_id) != str(previous_id):
            mark(previous_id)
            mark(current_id)
    return list(changed.values())
