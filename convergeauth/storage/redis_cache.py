from __future__ import annotations

import hashlib
import json
import time
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Tuple, Union

import redis.asyncio as aioredis

STATE_PREFIX = "auth:state:"
RATE_PREFIX = "rate:"

# KEYS[1] bucket; ARGV now, refill per second, capacity, cost.
# Returns {allowed, tokens_left, seconds_until_cost_available}.
_BUCKET_LUA = """
local now, rate, cap, cost = tonumber(ARGV[1]), tonumber(ARGV[2]), tonumber(ARGV[3]), tonumber(ARGV[4])
local saved = redis.call('HMGET', KEYS[1], 'tokens', 'ts')
local level = tonumber(saved[1]) or cap
local stamp = tonumber(saved[2]) or now
level = math.min(cap, level + math.max(0, now - stamp) * rate)
local allowed = 0
local wait = 0
if level >= cost then
  level = level - cost
  allowed = 1
else
  wait = math.ceil((cost - level) / rate)
end
redis.call('HSET', KEYS[1], 'tokens', level, 'ts', now)
redis.call('EXPIRE', KEYS[1], math.max(1, math.ceil(cap / rate)))
return {allowed, tostring(level), wait}
"""

_TAKE_LUA = """
local value = redis.call('GET', KEYS[1])
if value then redis.call('DEL', KEYS[1]) end
return value
"""


def _as_utc(moment: datetime) -> datetime:
    if moment.tzinfo is None:
        return moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc)


class RedisCache:
    """Login state records and rate-limit buckets shared by every worker."""

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._token_bucket = self.client.register_script(_BUCKET_LUA)

    def verify_connection(self) -> None:
        """PING through a throwaway sync client; raises when Redis is unreachable."""
        from redis import Redis

        probe = Redis.from_url(self.redis_url, socket_connect_timeout=3)
        try:
            probe.ping()
        finally:
            probe.close()

    @staticmethod
    def _bucket_key(subject: str) -> str:
        # Subjects embed emails and IPs; hashing keeps them out of the keyspace
        return RATE_PREFIX + hashlib.sha256(subject.encode()).hexdigest()

    async def check_rate_limit(
        self,
        key: str,
        limit: int,
        window_seconds: int,
        *,
        return_remaining: bool = False,
        cost: int = 1,
    ) -> Union[bool, Tuple[bool, int, int]]:
        """Take ``cost`` tokens from a bucket of ``limit`` refilled over ``window_seconds``."""
        allowed, level, wait = await self._token_bucket(
            keys=[self._bucket_key(key)],
            args=[time.time(), limit / window_seconds, limit, max(1, cost)],
        )
        ok = bool(int(allowed))
        if not return_remaining:
            return ok
        return ok, max(0, int(float(level))), int(wait or 0)

    async def set_state(
        self,
        token: str,
        provider: str,
        expires_at: datetime,
        context: Optional[Dict[str, Any]] = None,
    ) -> None:
        expires_at = _as_utc(expires_at)
        ttl = max(1, int((expires_at - datetime.now(timezone.utc)).total_seconds()))
        record = {"provider": provider, "expires_at": expires_at.isoformat(), "context": context or {}}
        await self.client.set(STATE_PREFIX + token, json.dumps(record), ex=ttl)

    async def pop_state(self, token: str) -> Optional[tuple[str, datetime, Dict[str, Any]]]:
        """Read and delete a state record in one step.

        Uses GETDEL where the client has it and a Lua GET+DEL otherwise, so a
        replayed callback can never see the record twice. Returns
        ``(provider, expires_at, context)`` or ``None``.
        """
        key = STATE_PREFIX + token
        try:
            raw = await self.client.getdel(key)
        except AttributeError:
            raw = await self.client.eval(_TAKE_LUA, 1, key)
        if raw is None:
            return None

        try:
            record = json.loads(raw)
        except (json.JSONDecodeError, TypeError):
            return None

        try:
            expires_at = _as_utc(datetime.fromisoformat(record.get("expires_at")))
        except (TypeError, ValueError):
            # Unreadable expiry counts as already expired
            expires_at = datetime.now(timezone.utc)
        context = record.get("context")
        return record.get("provider"), expires_at, context if isinstance(context, dict) else {}

    async def close(self) -> None:
        await self.client.aclose()
