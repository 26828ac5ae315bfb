from __future__ import annotations

import hashlib
import json
import time
import uuid
from typing import List, Optional, Tuple

import redis.asyncio as aioredis
from redis import Redis

from shopadmin.storage.models import SessionInfo


class RedisCache:
    """Thin Redis wrapper for sessions and shared rate limits."""

    DEFAULT_OPERATION_TIMEOUT = 5.0

    # Sliding window log: prune, count, conditionally record, refresh expiry.
    # One script call per check keeps the read-modify-write atomic per key.
    _SLIDING_WINDOW_SCRIPT = """
local key = KEYS[1]
local now = tonumber(ARGV[1])
local window = tonumber(ARGV[2])
local limit = tonumber(ARGV[3])
local member = ARGV[4]

redis.call('ZREMRANGEBYSCORE', key, '-inf', now - window)
local count = redis.call('ZCARD', key)

if count >= limit then
  local retry_after = 0
  local oldest = redis.call('ZRANGE', key, 0, 0, 'WITHSCORES')
  if oldest[2] then
    retry_after = tonumber(oldest[2]) + window - now
  end
  return {0, count, retry_after}
end

redis.call('ZADD', key, now, member)
redis.call('PEXPIRE', key, math.max(window, 1))
return {1, count + 1, 0}
"""

    def __init__(self, redis_url: str, *, socket_timeout: float = DEFAULT_OPERATION_TIMEOUT):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._sliding_window = self.client.register_script(self._SLIDING_WINDOW_SCRIPT)

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        # Short-lived sync client so the async pool is not bound to a temporary loop
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def cache_session(self, session: SessionInfo, ttl_seconds: int) -> None:
        ttl = max(1, int(ttl_seconds))
        pipe = self.client.pipeline()
        pipe.set(f"auth:session:{session.id}", session.user_id, ex=ttl)
        pipe.set(f"auth:session_meta:{session.id}", json.dumps(session.to_meta()), ex=ttl)
        # Track session in the user's set for bulk invalidation
        pipe.sadd(f"auth:user_sessions:{session.user_id}", session.id)
        pipe.expire(f"auth:user_sessions:{session.user_id}", ttl)
        await pipe.execute()

    async def get_session_user(self, session_id: str) -> Optional[str]:
        return await self.client.get(f"auth:session:{session_id}")

    async def get_session_meta(self, session_id: str) -> Optional[dict]:
        raw = await self.client.get(f"auth:session_meta:{session_id}")
        if not raw:
            return None
        try:
            return json.loads(raw)
        except (json.JSONDecodeError, TypeError):
            # Corrupted metadata - treat as missing
            return None

    async def revoke_session(self, session_id: str) -> None:
        user_id = await self.client.get(f"auth:session:{session_id}")
        pipe = self.client.pipeline()
        pipe.delete(f"auth:session:{session_id}")
        pipe.delete(f"auth:session_meta:{session_id}")
        if user_id:
            pipe.srem(f"auth:user_sessions:{user_id}", session_id)
        await pipe.execute()

    async def list_user_sessions(self, user_id: str) -> List[str]:
        user_sessions_key = f"auth:user_sessions:{user_id}"
        session_ids = await self.client.smembers(user_sessions_key)
        if not session_ids:
            return []
        ordered = sorted(session_ids)
        pipe = self.client.pipeline()
        for session_id in ordered:
            pipe.exists(f"auth:session:{session_id}")
        flags = await pipe.execute()
        live = [sid for sid, present in zip(ordered, flags) if present]
        stale = [sid for sid, present in zip(ordered, flags) if not present]
        if stale:
            await self.client.srem(user_sessions_key, *stale)
        return live

    async def revoke_user_sessions(self, user_id: str) -> int:
        """Delete every cached session for a user. Returns the number removed."""
        user_sessions_key = f"auth:user_sessions:{user_id}"
        session_ids = await self.client.smembers(user_sessions_key)
        if not session_ids:
            return 0
        pipe = self.client.pipeline()
        for session_id in session_ids:
            pipe.delete(f"auth:session:{session_id}")
            pipe.delete(f"auth:session_meta:{session_id}")
        pipe.delete(user_sessions_key)
        results = await pipe.execute()
        # Every other result belongs to an auth:session:* delete
        return sum(int(r) for r in results[0:-1:2])

    @staticmethod
    def _normalize_rate_key(key: str) -> str:
        """Hash caller-supplied keys so delimiters in them cannot collide."""
        digest = hashlib.sha256(key.encode()).hexdigest()
        return f"rate:{digest}"

    async def check_rate_limit(
        self, key: str, max_requests: int, window_ms: int
    ) -> Tuple[bool, int, int]:
        """Sliding-window check shared by every process pointing at this Redis.

        Returns (allowed, count_in_window, retry_after_ms).
        """
        now_ms = int(time.time() * 1000)
        member = f"{now_ms}-{uuid.uuid4().hex}"
        allowed, count, retry_after = await self._sliding_window(
            keys=[self._normalize_rate_key(key)],
            args=[now_ms, window_ms, max_requests, member],
        )
        return bool(int(allowed)), int(count), max(0, int(retry_after))

    async def reset_rate_limit(self, key: str) -> None:
        await self.client.delete(self._normalize_rate_key(key))

    async def close(self) -> None:
        """Close Redis connection pool. Call when shutting down."""
        await self.client.aclose()
        await self.client.connection_pool.disconnect()
