"""Database adapters for the knowledge graph backend."""

from .neo4j import Neo4jGraphAccessor
from .redis import RedisCommunityStore

__all__ = [
    "Neo4jGraphAccessor",
    "RedisCommunityStore",
]
