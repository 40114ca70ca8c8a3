from __future__ import annotations

import hashlib
import time
from typing import Dict, List, Optional, Tuple

import redis.asyncio as aioredis
from redis import Redis


def _unpack_reply(reply) -> Tuple[str, Dict[str, str]]:
    """Split a ``{outcome, field, value, ...}`` script reply."""
    outcome, *flat = reply
    return str(outcome), dict(zip(flat[::2], flat[1::2]))


class RedisCache:
    """Redis-backed key-value store for verification records, sessions and rate limits."""

    # Lua token bucket script: atomic refill + consume
    _TOKEN_BUCKET_SCRIPT = """
local key = KEYS[1]
local now = tonumber(ARGV[1])
local refill_rate = tonumber(ARGV[2])
local capacity = tonumber(ARGV[3])

local data = redis.call('HMGET', key, 'tokens', 'ts')
local tokens = tonumber(data[1])
local last = tonumber(data[2])

if tokens == nil or last == nil then
  tokens = capacity
  last = now
end

local delta = math.max(0, now - last)
tokens = math.min(capacity, tokens + delta * refill_rate)

if tokens < 1 then
  redis.call('HSET', key, 'tokens', tokens, 'ts', now)
  redis.call('EXPIRE', key, math.max(math.ceil((1 - tokens) / refill_rate), 1))
  return 0
end

tokens = tokens - 1
redis.call('HSET', key, 'tokens', tokens, 'ts', now)
redis.call('EXPIRE', key, math.max(math.ceil(capacity / refill_rate), 1))
return 1
"""

    # Compare the OTP and bump the attempt counter in one step so concurrent
    # wrong submissions cannot both read the same count.
    _VERIFY_OTP_SCRIPT = """
local function reply(outcome)
  local out = {outcome}
  local fields = redis.call('HGETALL', KEYS[1])
  for i = 1, #fields do out[#out + 1] = fields[i] end
  return out
end

local stored = redis.call('HGET', KEYS[1], 'otp')
if not stored then
  return {'missing'}
end
local attempts = tonumber(redis.call('HGET', KEYS[1], 'attempts')) or 0
if attempts >= tonumber(ARGV[2]) then
  return reply('locked')
end
if stored ~= ARGV[1] then
  redis.call('HINCRBY', KEYS[1], 'attempts', 1)
  return reply('mismatch')
end
return reply('match')
"""

    _CLAIM_RESEND_SCRIPT = """
local function reply(outcome)
  local out = {outcome}
  local fields = redis.call('HGETALL', KEYS[1])
  for i = 1, #fields do out[#out + 1] = fields[i] end
  return out
end

if redis.call('EXISTS', KEYS[1]) == 0 then
  return {'missing'}
end
local attempts = tonumber(redis.call('HGET', KEYS[1], 'attempts')) or 0
if attempts >= tonumber(ARGV[2]) then
  return reply('locked')
end
local resends = tonumber(redis.call('HGET', KEYS[1], 'resends')) or 0
if resends >= tonumber(ARGV[3]) then
  return reply('exhausted')
end
redis.call('HSET', KEYS[1], 'otp', ARGV[1], 'resends', resends + 1)
redis.call('EXPIRE', KEYS[1], ARGV[4])
return reply('ok')
"""

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._token_bucket = self.client.register_script(self._TOKEN_BUCKET_SCRIPT)
        self._verify_otp = self.client.register_script(self._VERIFY_OTP_SCRIPT)
        self._claim_resend = self.client.register_script(self._CLAIM_RESEND_SCRIPT)

    @staticmethod
    def _normalize_rate_key(key: str) -> str:
        """Hash rate-limit subjects so client-supplied text cannot collide with other keys."""
        return f"rate:{hashlib.sha256(key.encode()).hexdigest()}"

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        # Use a short-lived synchronous client to avoid binding the async client to a
        # temporary event loop during startup checks.
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def set_fields(
        self, key: str, mapping: Dict[str, str], ttl: Optional[int] = None
    ) -> None:
        pipe = self.client.pipeline()
        pipe.hset(key, mapping=mapping)
        if ttl is not None:
            pipe.expire(key, ttl)
        await pipe.execute()

    async def get_fields(self, key: str) -> Dict[str, str]:
        return await self.client.hgetall(key)

    async def expire(self, key: str, seconds: int) -> bool:
        return bool(await self.client.expire(key, seconds))

    async def delete(self, key: str) -> int:
        return await self.client.delete(key)

    async def list_keys_by_prefix(self, prefix: str) -> List[str]:
        return [key async for key in self.client.scan_iter(match=f"{prefix}*")]

    async def set_value(self, key: str, value: str, ttl: Optional[int] = None) -> None:
        await self.client.set(key, value, ex=ttl)

    async def get_value(self, key: str) -> Optional[str]:
        return await self.client.get(key)

    async def verify_otp_attempt(
        self, key: str, otp: str, max_attempts: int
    ) -> Tuple[str, Dict[str, str]]:
        reply = await self._verify_otp(keys=[key], args=[otp, max_attempts])
        return _unpack_reply(reply)

    async def claim_resend(
        self, key: str, otp: str, max_attempts: int, max_resends: int, ttl: int
    ) -> Tuple[str, Dict[str, str]]:
        reply = await self._claim_resend(
            keys=[key], args=[otp, max_attempts, max_resends, ttl]
        )
        return _unpack_reply(reply)

    async def check_rate_limit(self, key: str, limit: int, window_seconds: int) -> bool:
        """Check rate limit using a Redis-backed token bucket."""
        refill_rate = float(limit) / float(window_seconds)
        allowed = await self._token_bucket(
            keys=[self._normalize_rate_key(key)],
            args=[time.time(), refill_rate, limit],
        )
        return bool(int(allowed))

    async def close(self) -> None:
        """Close Redis connection pool. Call when shutting down or resetting runtime."""
        await self.client.aclose()
        await self.client.connection_pool.disconnect()


class SyncRedisCache:
    """Synchronous Redis wrapper for use in tests.

    Uses a synchronous Redis client internally to avoid event loop binding
    issues in pytest, but exposes async methods so they can be awaited
    uniformly like RedisCache.
    """

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self.client = Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._token_bucket = self.client.register_script(RedisCache._TOKEN_BUCKET_SCRIPT)
        self._verify_otp = self.client.register_script(RedisCache._VERIFY_OTP_SCRIPT)
        self._claim_resend = self.client.register_script(RedisCache._CLAIM_RESEND_SCRIPT)

    def verify_connection(self) -> None:
        """Assert Redis connectivity."""
        self.client.ping()

    async def set_fields(
        self, key: str, mapping: Dict[str, str], ttl: Optional[int] = None
    ) -> None:
        pipe = self.client.pipeline()
        pipe.hset(key, mapping=mapping)
        if ttl is not None:
            pipe.expire(key, ttl)
        pipe.execute()

    async def get_fields(self, key: str) -> Dict[str, str]:
        return self.client.hgetall(key)

    async def expire(self, key: str, seconds: int) -> bool:
        return bool(self.client.expire(key, seconds))

    async def delete(self, key: str) -> int:
        return self.client.delete(key)

    async def list_keys_by_prefix(self, prefix: str) -> List[str]:
        return list(self.client.scan_iter(match=f"{prefix}*"))

    async def set_value(self, key: str, value: str, ttl: Optional[int] = None) -> None:
        self.client.set(key, value, ex=ttl)

    async def get_value(self, key: str) -> Optional[str]:
        return self.client.get(key)

    async def verify_otp_attempt(
        self, key: str, otp: str, max_attempts: int
    ) -> Tuple[str, Dict[str, str]]:
        return _unpack_reply(self._verify_otp(keys=[key], args=[otp, max_attempts]))

    async def claim_resend(
        self, key: str, otp: str, max_attempts: int, max_resends: int, ttl: int
    ) -> Tuple[str, Dict[str, str]]:
        reply = self._claim_resend(keys=[key], args=[otp, max_attempts, max_resends, ttl])
        return _unpack_reply(reply)

    async def check_rate_limit(self, key: str, limit: int, window_seconds: int) -> bool:
        refill_rate = float(limit) / float(window_seconds)
        allowed = self._token_bucket(
            keys=[RedisCache._normalize_rate_key(key)],
            args=[time.time(), refill_rate, limit],
        )
        return bool(int(allowed))

    async def close(self) -> None:
        """Close Redis connection."""
        self.client.close()
