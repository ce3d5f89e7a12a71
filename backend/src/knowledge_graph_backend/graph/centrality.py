"""Centrality measures used by the importance scorer.

Both functions run the NetworkX computation in a worker thread so that
PageRank and betweenness can be awaited together without blocking the
event loop.
"""

import asyncio
import time
from typing import Optional

import networkx as nx
import structlog

from .louvain import build_graph
from .models import CentralityResult, GraphSnapshot

logger = structlog.get_logger(__name__)

PAGERANK_DAMPING = 0.85
PAGERANK_MAX_ITERATIONS = 100
PAGERANK_TOLERANCE = 1e-6


def _pagerank(snapshot: GraphSnapshot, damping: float) -> CentralityResult:
    start_time = time.perf_counter()
    G, _ = build_graph(snapshot, directed=True)
    if G.number_of_nodes() == 0:
        return CentralityResult(metadata={"node_count": 0})
    try:
        scores = nx.pagerank(
            G,
            alpha=damping,
            max_iter=PAGERANK_MAX_ITERATIONS,
            tol=PAGERANK_TOLERANCE,
            weight="weight",
        )
        converged = True
    except nx.PowerIterationFailedConvergence as e:
        logger.warning("pagerank_not_converged", error=str(e))
        uniform = 1.0 / G.number_of_nodes()
        scores = {node: uniform for node in G.nodes}
        converged = False
    return CentralityResult(
        scores={str(node): float(score) for node, score in scores.items()},
        metadata={
            "node_count": G.number_of_nodes(),
            "edge_count": G.number_of_edges(),
            "damping": damping,
            "converged": converged,
            "execution_time_ms": round((time.perf_counter() - start_time) * 1000, 3),
        },
    )


def _betweenness(snapshot: GraphSnapshot, sample_size: Optional[int]) -> CentralityResult:
    start_time = time.perf_counter()
    G, _ = build_graph(snapshot)
    if G.number_of_nodes() == 0:
        return CentralityResult(metadata={"node_count": 0})
    k = sample_size if sample_size and sample_size < G.number_of_nodes() else None
    scores = nx.betweenness_centrality(G, k=k, normalized=True, seed=0 if k else None)
    return CentralityResult(
        scores={str(node): float(score) for node, score in scores.items()},
        metadata={
            "node_count": G.number_of_nodes(),
            "edge_count": G.number_of_edges(),
            "normalized": True,
            "sampled": k is not None,
            "execution_time_ms": round((time.perf_counter() - start_time) * 1000, 3),
        },
    )


async def calculate_pagerank(
    snapshot: GraphSnapshot, damping: float = PAGERANK_DAMPING
) -> CentralityResult:
    """PageRank over the directed relationship graph."""
    return await asyncio.to_thread(_pagerank, snapshot, damping)


async def calculate_betweenness(
    snapshot: GraphSnapshot, sample_size: Optional[int] = None
) -> CentralityResult:
    """Normalized betweenness centrality over the undirected graph.

    Args:
        snapshot: Graph to score
        sample_size: Estimate from this many pivot nodes instead of all nodes
    """
    return await asyncio.to_thread(_betweenness, snapshot, sample_size)
