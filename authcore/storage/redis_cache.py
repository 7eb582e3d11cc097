from __future__ import annotations

import hashlib
from datetime import datetime, timedelta, timezone
from typing import Optional

import redis.asyncio as aioredis
from redis import Redis

from authcore.storage.models import OtpRecord


def _key(prefix: str, raw: str) -> str:
    """Hash key components so emails and addresses never appear in Redis keys."""
    digest = hashlib.sha256(raw.encode()).hexdigest()
    return f"{prefix}:{digest}"


def _otp_record(data: dict, ttl_ms: int) -> Optional[OtpRecord]:
    if not data or "code" not in data or ttl_ms is None or ttl_ms < 0:
        return None
    return OtpRecord(
        code=data["code"],
        expires_at=datetime.now(timezone.utc) + timedelta(milliseconds=ttl_ms),
        attempts=int(data.get("attempts", 0)),
    )


class RedisCache:
    """Redis-backed OTP records, cooldowns, quotas and lockouts.

    Every read-modify-write runs as a Lua script so concurrent requests on
    any number of instances see one consistent counter.
    """

    # Count an attempt and hand back the code; drop exhausted records
    _OTP_ATTEMPT_SCRIPT = """
if redis.call('EXISTS', KEYS[1]) == 0 then
  return false
end
local attempts = tonumber(redis.call('HGET', KEYS[1], 'attempts') or '0')
if attempts >= tonumber(ARGV[1]) then
  redis.call('DEL', KEYS[1])
  return false
end
redis.call('HINCRBY', KEYS[1], 'attempts', 1)
return redis.call('HGET', KEYS[1], 'code')
"""

    # Delete only if the stored code is still the one we expect
    _OTP_CONSUME_SCRIPT = """
if redis.call('HGET', KEYS[1], 'code') == ARGV[1] then
  redis.call('DEL', KEYS[1])
  return 1
end
return 0
"""

    _WINDOW_SCRIPT = """
local count = tonumber(redis.call('GET', KEYS[1]) or '0')
if count >= tonumber(ARGV[1]) then
  return 0
end
count = redis.call('INCR', KEYS[1])
if count == 1 then
  redis.call('EXPIRE', KEYS[1], ARGV[2])
end
return 1
"""

    _LOGIN_FAILURE_SCRIPT = """
if redis.call('EXISTS', KEYS[1]) == 1 then
  return 1
end
local failures = redis.call('INCR', KEYS[2])
redis.call('EXPIRE', KEYS[2], ARGV[2])
if failures >= tonumber(ARGV[1]) then
  redis.call('SET', KEYS[1], '1', 'EX', ARGV[2])
  redis.call('DEL', KEYS[2])
  return 1
end
return 0
"""

    def __init__(
        self,
        redis_url: str,
        *,
        socket_timeout: float = 5.0,
        client: Optional[aioredis.Redis] = None,
    ):
        self.redis_url = redis_url
        # An injected client must be created with decode_responses=True
        self.client = client
        if client is None:
            self.client = aioredis.from_url(
                redis_url,
                decode_responses=True,
                socket_timeout=socket_timeout,
                socket_connect_timeout=socket_timeout,
            )
        self._otp_attempt = self.client.register_script(self._OTP_ATTEMPT_SCRIPT)
        self._otp_consume = self.client.register_script(self._OTP_CONSUME_SCRIPT)
        self._window = self.client.register_script(self._WINDOW_SCRIPT)
        self._login_failure = self.client.register_script(self._LOGIN_FAILURE_SCRIPT)

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        # Short-lived sync client so the async client is not bound to a
        # temporary event loop during startup checks.
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def close(self) -> None:
        """Close Redis connection pool. Call when shutting down or resetting runtime."""
        await self.client.aclose()

    # =========================================================================
    # OTP records
    # =========================================================================

    async def otp_put(self, email: str, code: str, ttl_seconds: int) -> None:
        key = _key("otp:code", email)
        pipe = self.client.pipeline(transaction=True)
        pipe.delete(key)
        pipe.hset(key, mapping={"code": code, "attempts": 0})
        pipe.expire(key, ttl_seconds)
        await pipe.execute()

    async def otp_attempt(self, email: str, max_attempts: int) -> Optional[str]:
        return await self._otp_attempt(keys=[_key("otp:code", email)], args=[max_attempts])

    async def otp_consume(self, email: str, code: str) -> bool:
        result = await self._otp_consume(keys=[_key("otp:code", email)], args=[code])
        return bool(result)

    async def otp_peek(self, email: str) -> Optional[OtpRecord]:
        key = _key("otp:code", email)
        pipe = self.client.pipeline(transaction=True)
        pipe.hgetall(key)
        pipe.pttl(key)
        data, ttl_ms = await pipe.execute()
        return _otp_record(data, ttl_ms)

    # =========================================================================
    # Resend cooldown
    # =========================================================================

    async def in_cooldown(self, email: str) -> bool:
        return bool(await self.client.exists(_key("otp:cooldown", email)))

    async def claim_cooldown(self, email: str, seconds: int) -> bool:
        claimed = await self.client.set(_key("otp:cooldown", email), "1", ex=seconds, nx=True)
        return bool(claimed)

    async def release_cooldown(self, email: str) -> None:
        await self.client.delete(_key("otp:cooldown", email))

    # =========================================================================
    # Fixed-window quota
    # =========================================================================

    async def hit_window(self, key: str, limit: int, window_seconds: int) -> bool:
        result = await self._window(keys=[_key("rate", key)], args=[limit, window_seconds])
        return bool(result)

    # =========================================================================
    # Login failure lockout
    # =========================================================================

    async def is_locked(self, address: str) -> bool:
        return bool(await self.client.exists(_key("login:lockout", address)))

    async def record_failure(
        self, address: str, max_failures: int, lockout_seconds: int
    ) -> bool:
        result = await self._login_failure(
            keys=[_key("login:lockout", address), _key("login:failures", address)],
            args=[max_failures, lockout_seconds],
        )
        return bool(result)

    async def clear_failures(self, address: str) -> None:
        await self.client.delete(
            _key("login:lockout", address), _key("login:failures", address)
        )

    async def failure_count(self, address: str) -> int:
        value = await self.client.get(_key("login:failures", address))
        return int(value) if value else 0


class SyncRedisCache:
    """Synchronous Redis wrapper for use in tests.

    Uses a synchronous Redis client internally to avoid event loop binding
    issues in pytest, but exposes async methods so they can be awaited
    uniformly like RedisCache.
    """

    def __init__(
        self,
        redis_url: str,
        *,
        socket_timeout: float = 5.0,
        client: Optional[Redis] = None,
    ):
        self.redis_url = redis_url
        self.client = client
        if client is None:
            self.client = Redis.from_url(
                redis_url,
                decode_responses=True,
                socket_timeout=socket_timeout,
                socket_connect_timeout=socket_timeout,
            )
        self._otp_attempt = self.client.register_script(RedisCache._OTP_ATTEMPT_SCRIPT)
        self._otp_consume = self.client.register_script(RedisCache._OTP_CONSUME_SCRIPT)
        self._window = self.client.register_script(RedisCache._WINDOW_SCRIPT)
        self._login_failure = self.client.register_script(RedisCache._LOGIN_FAILURE_SCRIPT)

    def verify_connection(self) -> None:
        """Assert Redis connectivity."""
        self.client.ping()

    async def close(self) -> None:
        self.client.close()

    async def otp_put(self, email: str, code: str, ttl_seconds: int) -> None:
        key = _key("otp:code", email)
        pipe = self.client.pipeline(transaction=True)
        pipe.delete(key)
        pipe.hset(key, mapping={"code": code, "attempts": 0})
        pipe.expire(key, ttl_seconds)
        pipe.execute()

    async def otp_attempt(self, email: str, max_attempts: int) -> Optional[str]:
        return self._otp_attempt(keys=[_key("otp:code", email)], args=[max_attempts])

    async def otp_consume(self, email: str, code: str) -> bool:
        return bool(self._otp_consume(keys=[_key("otp:code", email)], args=[code]))

    async def otp_peek(self, email: str) -> Optional[OtpRecord]:
        key = _key("otp:code", email)
        pipe = self.client.pipeline(transaction=True)
        pipe.hgetall(key)
        pipe.pttl(key)
        data, ttl_ms = pipe.execute()
        return _otp_record(data, ttl_ms)

    async def in_cooldown(self, email: str) -> bool:
        return bool(self.client.exists(_key("otp:cooldown", email)))

    async def claim_cooldown(self, email: str, seconds: int) -> bool:
        return bool(self.client.set(_key("otp:cooldown", email), "1", ex=seconds, nx=True))

    async def release_cooldown(self, email: str) -> None:
        self.client.delete(_key("otp:cooldown", email))

    async def hit_window(self, key: str, limit: int, window_seconds: int) -> bool:
        return bool(self._window(keys=[_key("rate", key)], args=[limit, window_seconds]))

    async def is_locked(self, address: str) -> bool:
        return bool(self.client.exists(_key("login:lockout", address)))

    async def record_failure(
        self, address: str, max_failures: int, lockout_seconds: int
    ) -> bool:
        result = self._login_failure(
            keys=[_key("login:lockout", address), _key("login:failures", address)],
            args=[max_failures, lockout_seconds],
        )
        return bool(result)

    async def clear_failures(self, address: str) -> None:
        self.client.delete(_key("login:lockout", address), _key("login:failures", address))

    async def failure_count(self, address: str) -> int:
        value = self.client.get(_key("login:failures", address))
        return int(value) if value else 0
