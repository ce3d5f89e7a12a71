"""Tests for the Redis community store."""

import fnmatch
from unittest.mock import AsyncMock, MagicMock

import pytest
import redis.asyncio as redis

from knowledge_graph_backend.db.redis import RedisCommunityStore, generate_run_id
from knowledge_graph_backend.graph.errors import CommunityStorageError
from knowledge_graph_backend.graph.models import (
    Community,
    CommunityMember,
    CommunitySummary,
    DetectionMetadata,
    DetectionResult,
)


class InMemoryRedis:
    """Minimal async stand-in for the redis commands the store issues."""

    def __init__(self):
        self.strings = {}
        self.sets = {}
        self.zsets = {}

    def pipeline(self, transaction=True):
        return _Pipeline(self)

    async def get(self, key):
        return self.strings.get(key)

    async def mget(self, keys):
        return [self.strings.get(key) for key in keys]

    async def set(self, key, value):
        self.strings[key] = value

    async def sadd(self, key, *members):
        self.sets.setdefault(key, set()).update(members)

    async def srem(self, key, *members):
        existing = self.sets.get(key, set())
        removed = len(existing & set(members))
        existing.difference_update(members)
        return removed

    async def smembers(self, key):
        return set(self.sets.get(key, set()))

    async def scard(self, key):
        return len(self.sets.get(key, set()))

    async def zadd(self, key, mapping):
        self.zsets.setdefault(key, {}).update(mapping)

    async def zcard(self, key):
        return len(self.zsets.get(key, {}))

    async def zrevrange(self, key, start, end):
        ordered = sorted(self.zsets.get(key, {}).items(), key=lambda item: item[1], reverse=True)
        return [member for member, _ in ordered[start : end + 1]]

    async def ping(self):
        return True

    async def scan_iter(self, match):
        keys = [*self.strings, *self.sets, *self.zsets]
        for key in keys:
            if fnmatch.fnmatch(key, match):
                yield key

    async def delete(self, key):
        removed = 0
        for store in (self.strings, self.sets, self.zsets):
            if store.pop(key, None) is not None:
                removed += 1
        return removed


class _Pipeline:
    def __init__(self, client):
        self._client = client
        self._commands = []

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        return False

    def set(self, key, value):
        self._commands.append(self._client.set(key, value))

    def sadd(self, key, *members):
        self._commands.append(self._client.sadd(key, *members))

    def zadd(self, key, mapping):
        self._commands.append(self._client.zadd(key, mapping))

    def delete(self, key):
        self._commands.append(self._client.delete(key))

    def srem(self, key, *members):
        self._commands.append(self._client.srem(key, *members))

    async def execute(self):
        return [await command for command in self._commands]


def _community(community_id, member_ids):
    return Community.from_members(
        community_id,
        [CommunityMember(id=m, name=m.upper(), type="Person") for m in member_ids],
    )


def _summary(community_id, members):
    return CommunitySummary(
        community_id=community_id,
        stable_id=f"comm_{community_id}",
        title=f"Group {community_id}",
        summary="A group.",
        member_count=members,
    )


@pytest.fixture
def store():
    store = RedisCommunityStore("redis://localhost:6379/0", key_prefix="test:communities")
    store._client = InMemoryRedis()
    return store


class TestRunIds:
    def test_format(self):
        run_id = generate_run_id()

        prefix, millis, suffix = run_id.split("_")
        assert prefix == "run"
        assert millis.isdigit()
        assert len(suffix) == 8


class TestDetectionRuns:
    """Tests for storing and loading detection runs."""

    @pytest.mark.asyncio
    async def test_store_and_load_latest_run(self, store):
        result = DetectionResult(
            community_list=[_community(0, ["a", "b"]), _community(1, ["c"])],
            modularity=0.42,
            metadata=DetectionMetadata(resolution=1.5),
        )

        run = await store.store_detection_run(result)
        latest = await store.get_latest_detection_run()
        communities = await store.get_communities_by_run_id(run.run_id)

        assert latest is not None
        assert latest.run_id == run.run_id
        assert latest.community_count == 2
        assert latest.total_entities == 3
        assert latest.resolution == 1.5
        assert [c.member_ids for c in communities] == [["a", "b"], ["c"]]

    @pytest.mark.asyncio
    async def test_empty_store(self, store):
        assert await store.get_latest_detection_run() is None
        assert await store.get_communities_by_run_id("run_0_missing") == []

    def test_client_not_connected_raises_error(self):
        store = RedisCommunityStore("redis://localhost:6379/0")

        with pytest.raises(CommunityStorageError):
            _ = store.client


class TestSummaries:
    """Tests for summary persistence."""

    @pytest.mark.asyncio
    async def test_store_and_get_summary(self, store):
        await store.store_summary(3, _summary(3, 4))

        loaded = await store.get_summary(3)

        assert loaded is not None
        assert loaded.title == "Group 3"
        assert "test:communities:summary:summary_3" in store.client.strings
        assert await store.get_summary(99) is None

    @pytest.mark.asyncio
    async def test_get_summaries_skips_missing(self, store):
        await store.store_summary(1, _summary(1, 2))
        await store.store_summary(2, _summary(2, 3))

        loaded = await store.get_summaries([2, 7])

        assert list(loaded) == ["2"]
        assert loaded["2"].member_count == 3
        assert await store.get_summaries([]) == {}

    @pytest.mark.asyncio
    async def test_delete_summary(self, store):
        await store.store_summary(4, _summary(4, 2))

        assert await store.delete_summary(4) is True
        assert await store.delete_summary(4) is False
        assert await store.get_summary(4) is None
        assert (await store.get_stats())["summaries"] == 0

    @pytest.mark.asyncio
    async def test_get_all_sorted_by_size(self, store):
        await store.store_summaries_batch(
            {"1": _summary(1, 2), "2": _summary(2, 9), "3": _summary(3, 5)}
        )

        summaries = await store.get_all_summaries(limit=2)

        assert [s.member_count for s in summaries] == [9, 5]

    @pytest.mark.asyncio
    async def test_invalid_stored_summary_is_skipped(self, store):
        await store.store_summary(1, _summary(1, 2))
        store.client.strings["test:communities:summary:summary_2"] = "{}"
        store.client.sets["test:communities:summaries"].add("2")

        summaries = await store.get_all_summaries()

        assert [s.community_id for s in summaries] == [1]

    @pytest.mark.asyncio
    async def test_batch_collects_failures(self, store, monkeypatch):
        original = store.store_summary

        async def flaky(community_id, summary):
            if community_id == "2":
                raise CommunityStorageError("store_summary", "disk full")
            await original(community_id, summary)

        monkeypatch.setattr(store, "store_summary", flaky)

        outcome = await store.store_summaries_batch({"1": _summary(1, 2), "2": _summary(2, 3)})

        assert outcome["stored"] == 1
        assert outcome["failed"] == 1
        assert outcome["errors"] == [{"community_id": "2", "error": "disk full"}]


class TestStatsAndClear:
    @pytest.mark.asyncio
    async def test_stats_and_clear(self, store):
        run = await store.store_detection_run(
            DetectionResult(community_list=[_community(0, ["a"])])
        )
        await store.store_summary(0, _summary(0, 1))

        stats = await store.get_stats()
        deleted = await store.clear()

        assert stats["detection_runs"] == 1
        assert stats["summaries"] == 1
        assert stats["latest_run_id"] == run.run_id
        assert deleted == 5
        assert await store.get_stats() == {
            "detection_runs": 0,
            "summaries": 0,
            "latest_run_id": None,
            "schema_version": "1.0.0",
        }

    @pytest.mark.asyncio
    async def test_health_check(self, store):
        health = await store.health_check()

        assert health["healthy"] is True
        assert health["key_prefix"] == "test:communities"

    @pytest.mark.asyncio
    async def test_health_check_reports_failure(self):
        store = RedisCommunityStore("redis://localhost:6379/0")
        client = MagicMock()
        client.ping = AsyncMock(side_effect=redis.ConnectionError("refused"))
        store._client = client

        health = await store.health_check()

        assert health["healthy"] is False
        assert "refused" in health["error"]

    @pytest.mark.asyncio
    async def test_health_check_when_not_connected(self):
        health = await RedisCommunityStore("redis://localhost:6379/0").health_check()

        assert health["healthy"] is False

    @pytest.mark.asyncio
    async def test_redis_errors_are_wrapped(self):
        store = RedisCommunityStore("redis://localhost:6379/0")
        client = MagicMock()
        client.get = AsyncMock(side_effect=redis.ConnectionError("refused"))
        store._client = client

        with pytest.raises(CommunityStorageError) as excinfo:
            await store.get_summary(1)

        assert excinfo.value.operation == "get_summary"
