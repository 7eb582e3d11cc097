"""Behavior shared by every cache backend.

The same cases run against MemoryCache and against both Redis wrappers
backed by fakeredis, so the Lua scripts are held to the in-process
semantics. Set TEST_REDIS_URL (a disposable database, it is flushed) to
also run them against a real server. Clock-driven expiry for MemoryCache
lives in test_memory_cache.
"""

import asyncio
import os

import fakeredis
import fakeredis.aioredis
import pytest

from authcore.storage.memory_cache import MemoryCache
from authcore.storage.redis_cache import RedisCache, SyncRedisCache, _key

EMAIL = "a@example.com"
ADDRESS = "1.2.3.4"


def _memory():
    return MemoryCache()


def _redis_async():
    client = fakeredis.aioredis.FakeRedis(server=fakeredis.FakeServer(), decode_responses=True)
    return RedisCache("redis://fake", client=client)


def _redis_sync():
    client = fakeredis.FakeRedis(server=fakeredis.FakeServer(), decode_responses=True)
    return SyncRedisCache("redis://fake", client=client)


def _redis_live():
    # Dedicated database; flushed before each case
    cache = SyncRedisCache(os.environ["TEST_REDIS_URL"])
    cache.client.flushdb()
    return cache


@pytest.fixture(
    params=[_memory, _redis_async, _redis_sync, _redis_live],
    ids=["memory", "redis", "redis-sync", "redis-live"],
)
def make_cache(request):
    if request.param is _redis_live and not os.environ.get("TEST_REDIS_URL"):
        pytest.skip("TEST_REDIS_URL not set")
    # Tests build the cache inside their own event loop
    return request.param


class TestOtpRecords:
    async def test_missing_record(self, make_cache):
        cache = make_cache()
        assert await cache.otp_attempt(EMAIL, 5) is None
        assert await cache.otp_peek(EMAIL) is None
        assert await cache.otp_consume(EMAIL, "123456") is False

    async def test_attempt_counts_and_returns_code(self, make_cache):
        cache = make_cache()
        await cache.otp_put(EMAIL, "123456", 180)
        assert await cache.otp_attempt(EMAIL, 5) == "123456"
        assert await cache.otp_attempt(EMAIL, 5) == "123456"
        record = await cache.otp_peek(EMAIL)
        assert record.code == "123456"
        assert record.attempts == 2

    async def test_exhausted_record_is_deleted(self, make_cache):
        cache = make_cache()
        await cache.otp_put(EMAIL, "123456", 180)
        for _ in range(3):
            assert await cache.otp_attempt(EMAIL, 3) == "123456"
        assert await cache.otp_attempt(EMAIL, 3) is None
        assert await cache.otp_peek(EMAIL) is None
        # Deleted, not merely refused
        await cache.otp_put(EMAIL, "654321", 180)
        assert await cache.otp_attempt(EMAIL, 3) == "654321"

    async def test_consume_only_matches_current_code(self, make_cache):
        cache = make_cache()
        await cache.otp_put(EMAIL, "111111", 180)
        assert await cache.otp_consume(EMAIL, "222222") is False
        assert (await cache.otp_peek(EMAIL)).code == "111111"
        assert await cache.otp_consume(EMAIL, "111111") is True
        assert await cache.otp_consume(EMAIL, "111111") is False
        assert await cache.otp_peek(EMAIL) is None

    async def test_put_replaces_previous_record(self, make_cache):
        cache = make_cache()
        await cache.otp_put(EMAIL, "111111", 180)
        await cache.otp_attempt(EMAIL, 5)
        await cache.otp_put(EMAIL, "222222", 180)
        record = await cache.otp_peek(EMAIL)
        assert record.code == "222222"
        assert record.attempts == 0
        assert await cache.otp_consume(EMAIL, "111111") is False

    async def test_records_are_per_email(self, make_cache):
        cache = make_cache()
        await cache.otp_put(EMAIL, "111111", 180)
        await cache.otp_put("b@example.com", "222222", 180)
        assert await cache.otp_attempt("b@example.com", 5) == "222222"
        assert (await cache.otp_peek(EMAIL)).attempts == 0


class TestCooldownAndQuota:
    async def test_claim_cooldown_is_set_if_absent(self, make_cache):
        cache = make_cache()
        assert not await cache.in_cooldown(EMAIL)
        assert await cache.claim_cooldown(EMAIL, 60) is True
        assert await cache.claim_cooldown(EMAIL, 60) is False
        assert await cache.in_cooldown(EMAIL)

    async def test_release_cooldown(self, make_cache):
        cache = make_cache()
        await cache.claim_cooldown(EMAIL, 60)
        await cache.release_cooldown(EMAIL)
        assert not await cache.in_cooldown(EMAIL)
        assert await cache.claim_cooldown(EMAIL, 60) is True

    async def test_fixed_window_stops_at_limit(self, make_cache):
        cache = make_cache()
        results = [await cache.hit_window("otp:ip:1.2.3.4", 3, 3600) for _ in range(5)]
        assert results == [True, True, True, False, False]
        # Other keys have their own window
        assert await cache.hit_window("otp:ip:5.6.7.8", 3, 3600) is True


class TestLockout:
    async def test_lockout_after_max_failures(self, make_cache):
        cache = make_cache()
        outcomes = [await cache.record_failure(ADDRESS, 3, 900) for _ in range(3)]
        assert outcomes == [False, False, True]
        assert await cache.is_locked(ADDRESS)
        assert await cache.failure_count(ADDRESS) == 0
        # Further failures while locked neither count nor unlock
        assert await cache.record_failure(ADDRESS, 3, 900) is True
        assert await cache.failure_count(ADDRESS) == 0
        assert not await cache.is_locked("5.6.7.8")

    async def test_failures_accumulate_below_limit(self, make_cache):
        cache = make_cache()
        await cache.record_failure(ADDRESS, 5, 900)
        await cache.record_failure(ADDRESS, 5, 900)
        assert await cache.failure_count(ADDRESS) == 2
        assert not await cache.is_locked(ADDRESS)

    async def test_clear_failures_resets_everything(self, make_cache):
        cache = make_cache()
        for _ in range(3):
            await cache.record_failure(ADDRESS, 3, 900)
        await cache.clear_failures(ADDRESS)
        assert not await cache.is_locked(ADDRESS)
        assert await cache.failure_count(ADDRESS) == 0
        assert await cache.record_failure(ADDRESS, 3, 900) is False


class TestRedisExpiry:
    @pytest.fixture
    def client(self):
        return fakeredis.FakeRedis(server=fakeredis.FakeServer(), decode_responses=True)

    async def test_keys_carry_ttls(self, client):
        cache = SyncRedisCache("redis://fake", client=client)
        await cache.otp_put(EMAIL, "123456", 180)
        await cache.claim_cooldown(EMAIL, 60)
        await cache.hit_window("otp:ip:1.2.3.4", 3, 3600)
        for _ in range(3):
            await cache.record_failure(ADDRESS, 3, 900)

        assert 0 < client.ttl(_key("otp:code", EMAIL)) <= 180
        assert 0 < client.ttl(_key("otp:cooldown", EMAIL)) <= 60
        assert 0 < client.ttl(_key("rate", "otp:ip:1.2.3.4")) <= 3600
        assert 0 < client.ttl(_key("login:lockout", ADDRESS)) <= 900

    async def test_window_expiry_is_set_by_first_hit(self, client):
        cache = SyncRedisCache("redis://fake", client=client)
        await cache.hit_window("otp:ip:1.2.3.4", 3, 3600)
        client.expire(_key("rate", "otp:ip:1.2.3.4"), 100)
        await cache.hit_window("otp:ip:1.2.3.4", 3, 3600)
        assert client.ttl(_key("rate", "otp:ip:1.2.3.4")) <= 100

    async def test_expired_record_is_gone(self, client):
        cache = SyncRedisCache("redis://fake", client=client)
        await cache.otp_put(EMAIL, "123456", 1)
        await asyncio.sleep(1.1)
        assert await cache.otp_attempt(EMAIL, 5) is None
        assert await cache.otp_peek(EMAIL) is None
