"""Tests for caching functionality."""

import fnmatch

import pytest
import redis.asyncio as redis

from farmgrid.config import settings
from farmgrid.database import discard_commit_hooks, on_commit, run_commit_hooks
from farmgrid.utils import cache
from farmgrid.utils.cache import cached, invalidate_owner_stats, owner_key


class InMemoryRedis:
    """Just the slice of the redis.asyncio client the cache helpers call."""

    def __init__(self, fail: bool = False):
        self.store: dict[str, str] = {}
        self.fail = fail

    async def get(self, key):
        if self.fail:
            raise redis.ConnectionError("redis is down")
        return self.store.get(key)

    async def setex(self, key, ttl, value):
        self.store[key] = value

    async def scan_iter(self, match):
        for key in list(self.store):
            if fnmatch.fnmatch(key, match):
                yield key

    async def delete(self, *keys):
        for key in keys:
            self.store.pop(key, None)


@pytest.fixture
def fake_redis(monkeypatch):
    client = InMemoryRedis()

    async def get_redis():
        return client

    monkeypatch.setattr(cache, "get_redis", get_redis)
    monkeypatch.setattr(settings, "cache_enabled", True)
    return client


@pytest.mark.cache
@pytest.mark.asyncio
class TestCacheUtility:

    async def test_owner_key(self):
        build = owner_key("farm_stats", "dashboard")
        assert build(object(), "user-1") == "farm_stats:user-1:dashboard"

    async def test_cached_per_owner_and_invalidated(self, fake_redis):
        call_count = 0

        @cached(owner_key("farm_stats", "stats"), ttl=10)
        async def owner_stats(db, owner_id):
            nonlocal call_count
            call_count += 1
            return {"owner": owner_id, "calls": call_count}

        assert await owner_stats(None, "u1") == {"owner": "u1", "calls": 1}
        assert await owner_stats(None, "u1") == {"owner": "u1", "calls": 1}
        assert await owner_stats(None, "u2") == {"owner": "u2", "calls": 2}
        assert set(fake_redis.store) == {"farm_stats:u1:stats", "farm_stats:u2:stats"}

        await invalidate_owner_stats("u1")
        assert set(fake_redis.store) == {"farm_stats:u2:stats"}
        assert await owner_stats(None, "u1") == {"owner": "u1", "calls": 3}

    async def test_disabled_cache_bypasses_redis(self, fake_redis, monkeypatch):
        monkeypatch.setattr(settings, "cache_enabled", False)
        call_count = 0

        @cached(owner_key("farm_stats", "stats"), ttl=10)
        async def owner_stats(db, owner_id):
            nonlocal call_count
            call_count += 1
            return {"owner": owner_id}

        await owner_stats(None, "u1")
        await owner_stats(None, "u1")
        assert call_count == 2
        assert fake_redis.store == {}

    async def test_redis_errors_fall_back(self, fake_redis):
        fake_redis.fail = True

        @cached(owner_key("farm_stats", "stats"), ttl=10)
        async def owner_stats(db, owner_id):
            return {"owner": owner_id}

        assert await owner_stats(None, "u1") == {"owner": "u1"}


@pytest.mark.cache
@pytest.mark.asyncio
class TestCommitHooks:

    async def test_invalidation_waits_for_commit(self, fake_redis, session_factory):
        fake_redis.store["farm_stats:u1:stats"] = "{}"

        async with session_factory() as session:
            on_commit(session, invalidate_owner_stats, "u1")
            assert "farm_stats:u1:stats" in fake_redis.store

            await session.commit()
            await run_commit_hooks(session)

        assert fake_redis.store == {}

    async def test_rollback_discards_invalidation(self, fake_redis, session_factory):
        fake_redis.store["farm_stats:u1:stats"] = "{}"

        async with session_factory() as session:
            on_commit(session, invalidate_owner_stats, "u1")
            await session.rollback()
            discard_commit_hooks(session)
            await run_commit_hooks(session)

        assert "farm_stats:u1:stats" in fake_redis.store

    async def test_failed_write_keeps_cached_stats(
        self, client, auth_headers, test_farm, test_user, fake_redis
    ):
        key = f"farm_stats:{test_user.id}:stats"
        fake_redis.store[key] = "{}"

        response = await client.put(
            f"/api/farms/{test_farm['id']}", json={"total_size": 1.0}, headers=auth_headers,
        )
        assert response.status_code == 422
        assert key in fake_redis.store

        response = await client.put(
            f"/api/farms/{test_farm['id']}", json={"name": "Renamed"}, headers=auth_headers,
        )
        assert response.status_code == 200
        assert key not in fake_redis.store
