"""Redis persistence for community detection runs and summaries."""

import json
import time
from typing import Any, Optional
from uuid import uuid4

import redis.asyncio as redis
import structlog
from pydantic import ValidationError

from ..graph.errors import CommunityStorageError
from ..graph.models import Community, CommunitySummary, DetectionResult, DetectionRun, utc_now

logger = structlog.get_logger(__name__)

DEFAULT_KEY_PREFIX = "kg:communities"
SCHEMA_VERSION = "1.0.0"


def generate_run_id() -> str:
    """Run ids sort by creation time: ``run_<epoch ms>_<hex>``."""
    return f"run_{int(time.time() * 1000)}_{uuid4().hex[:8]}"


class RedisCommunityStore:
    """
    Redis-backed store for detection runs and community summaries.

    Key layout (under ``key_prefix``):
    - ``runs``: sorted set of run ids scored by creation time
    - ``run:<run_id>``: DetectionRun JSON
    - ``run:<run_id>:communities``: JSON list of the run's communities
    - ``summary:summary_<community_id>``: CommunitySummary JSON
    - ``summaries``: set of community ids with a stored summary
    """

    def __init__(self, url: str, key_prefix: str = DEFAULT_KEY_PREFIX) -> None:
        """
        Initialize the store.

        Args:
            url: Redis connection URL (e.g., redis://localhost:6379)
            key_prefix: Namespace for every key this store writes
        """
        self.url = url
        self.key_prefix = key_prefix
        self._client: Optional[redis.Redis] = None

    async def connect(self) -> None:
        """Establish connection to Redis."""
        if self._client is None:
            self._client = redis.from_url(
                self.url,
                encoding="utf-8",
                decode_responses=True,
            )
            logger.info("redis_connected", url=self.url)

    async def disconnect(self) -> None:
        """Close Redis connection."""
        if self._client is not None:
            await self._client.aclose()
            self._client = None
            logger.info("redis_disconnected")

    @property
    def client(self) -> redis.Redis:
        """Get the Redis client, raising error if not connected."""
        if self._client is None:
            raise CommunityStorageError("connection", "Redis client not connected")
        return self._client

    def _key(self, *parts: str) -> str:
        return ":".join((self.key_prefix, *parts))

    def _summary_key(self, community_id: Any) -> str:
        return self._key("summary", f"summary_{community_id}")

    async def store_detection_run(self, result: DetectionResult) -> DetectionRun:
        """
        Persist a detection run and its communities.

        Args:
            result: Detection result to persist

        Returns:
            The stored DetectionRun record
        """
        run = DetectionRun(
            run_id=generate_run_id(),
            modularity=result.modularity,
            community_count=len(result.community_list),
            total_entities=sum(community.size for community in result.community_list),
            resolution=result.metadata.resolution,
            hierarchy_levels=result.metadata.hierarchy_levels,
            schema_version=SCHEMA_VERSION,
            metadata=result.metadata,
        )
        communities = json.dumps(
            [community.model_dump(mode="json") for community in result.community_list]
        )
        try:
            async with self.client.pipeline(transaction=True) as pipe:
                pipe.set(self._key("run", run.run_id), run.model_dump_json())
                pipe.set(self._key("run", run.run_id, "communities"), communities)
                pipe.zadd(self._key("runs"), {run.run_id: run.created_at.timestamp()})
                await pipe.execute()
        except redis.RedisError as e:
            raise CommunityStorageError("store_detection_run", str(e)) from e

        logger.info(
            "detection_run_stored",
            run_id=run.run_id,
            community_count=run.community_count,
            total_entities=run.total_entities,
        )
        return run

    async def get_latest_detection_run(self) -> Optional[DetectionRun]:
        try:
            run_ids = await self.client.zrevrange(self._key("runs"), 0, 0)
            if not run_ids:
                return None
            raw = await self.client.get(self._key("run", run_ids[0]))
        except redis.RedisError as e:
            raise CommunityStorageError("get_latest_detection_run", str(e)) from e
        if raw is None:
            return None
        return DetectionRun.model_validate_json(raw)

    async def get_communities_by_run_id(self, run_id: str) -> list[Community]:
        try:
            raw = await self.client.get(self._key("run", run_id, "communities"))
        except redis.RedisError as e:
            raise CommunityStorageError("get_communities_by_run_id", str(e)) from e
        if raw is None:
            return []
        return [Community.model_validate(item) for item in json.loads(raw)]

    async def store_summary(self, community_id: Any, summary: CommunitySummary) -> None:
        try:
            async with self.client.pipeline(transaction=True) as pipe:
                pipe.set(self._summary_key(community_id), summary.model_dump_json())
                pipe.sadd(self._key("summaries"), str(community_id))
                await pipe.execute()
        except redis.RedisError as e:
            raise CommunityStorageError("store_summary", str(e)) from e

    async def store_summaries_batch(
        self, summaries: dict[str, CommunitySummary]
    ) -> dict[str, Any]:
        """
        Persist summaries one by one, collecting failures.

        Returns:
            Dictionary with ``stored`` and ``failed`` counts and ``errors``
        """
        stored = 0
        errors: list[dict[str, str]] = []
        for community_id, summary in summaries.items():
            try:
                await self.store_summary(community_id, summary)
                stored += 1
            except CommunityStorageError as e:
                errors.append({"community_id": str(community_id), "error": e.reason})
        if errors:
            logger.warning("summary_batch_partially_stored", stored=stored, failed=len(errors))
        return {"stored": stored, "failed": len(errors), "errors": errors}

    async def get_summary(self, community_id: Any) -> Optional[CommunitySummary]:
        try:
            raw = await self.client.get(self._summary_key(community_id))
        except redis.RedisError as e:
            raise CommunityStorageError("get_summary", str(e)) from e
        if raw is None:
            return None
        return CommunitySummary.model_validate_json(raw)

    async def get_summaries(self, community_ids: list[Any]) -> dict[str, CommunitySummary]:
        """Load the stored summaries for ``community_ids``; missing ids are omitted."""
        if not community_ids:
            return {}
        try:
            raws = await self.client.mget(
                [self._summary_key(community_id) for community_id in community_ids]
            )
        except redis.RedisError as e:
            raise CommunityStorageError("get_summaries", str(e)) from e
        return {
            str(community_id): CommunitySummary.model_validate_json(raw)
            for community_id, raw in zip(community_ids, raws)
            if raw is not None
        }

    async def delete_summary(self, community_id: Any) -> bool:
        """Delete one summary. Returns False if none was stored."""
        try:
            async with self.client.pipeline(transaction=True) as pipe:
                pipe.delete(self._summary_key(community_id))
                pipe.srem(self._key("summaries"), str(community_id))
                deleted, _ = await pipe.execute()
        except redis.RedisError as e:
            raise CommunityStorageError("delete_summary", str(e)) from e
        logger.debug("community_summary_deleted", community_id=str(community_id))
        return bool(deleted)

    async def health_check(self) -> dict[str, Any]:
        """Ping Redis; never raises."""
        try:
            await self.client.ping()
        except (redis.RedisError, CommunityStorageError) as e:
            return {"healthy": False, "error": str(e), "timestamp": utc_now().isoformat()}
        return {
            "healthy": True,
            "key_prefix": self.key_prefix,
            "timestamp": utc_now().isoformat(),
        }

    async def get_all_summaries(
        self, limit: int = 50, sort_by_size: bool = True
    ) -> list[CommunitySummary]:
        """
        Load stored summaries.

        Args:
            limit: Maximum number of summaries to return
            sort_by_size: Order by member count, largest first

        Returns:
            List of CommunitySummary
        """
        try:
            community_ids = sorted(await self.client.smembers(self._key("summaries")))
            if not community_ids:
                return []
            raws = await self.client.mget(
                [self._summary_key(community_id) for community_id in community_ids]
            )
        except redis.RedisError as e:
            raise CommunityStorageError("get_all_summaries", str(e)) from e

        summaries = []
        for community_id, raw in zip(community_ids, raws):
            if raw is None:
                continue
            try:
                summaries.append(CommunitySummary.model_validate_json(raw))
            except ValidationError as e:
                logger.warning("stored_summary_invalid", community_id=community_id, error=str(e))
        if sort_by_size:
            summaries.sort(key=lambda summary: summary.member_count, reverse=True)
        return summaries[:limit]

    async def get_stats(self) -> dict[str, Any]:
        try:
            run_count = await self.client.zcard(self._key("runs"))
            summary_count = await self.client.scard(self._key("summaries"))
            latest = await self.client.zrevrange(self._key("runs"), 0, 0)
        except redis.RedisError as e:
            raise CommunityStorageError("get_stats", str(e)) from e
        return {
            "detection_runs": run_count,
            "summaries": summary_count,
            "latest_run_id": latest[0] if latest else None,
            "schema_version": SCHEMA_VERSION,
        }

    async def clear(self) -> int:
        """
        Delete every key under the store's prefix.

        Returns:
            Number of keys deleted
        """
        deleted = 0
        try:
            async for key in self.client.scan_iter(match=f"{self.key_prefix}:*"):
                deleted += await self.client.delete(key)
        except redis.RedisError as e:
            raise CommunityStorageError("clear", str(e)) from e
        logger.info("community_storage_cleared", deleted_keys=deleted)
        return deleted
