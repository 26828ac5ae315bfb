from __future__ import annotations

import asyncio
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Callable, Deque, Dict, Optional, Protocol

from redis.exceptions import RedisError

from shopadmin.logging import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class RateLimitConfig:
    """Per-deployment limiter settings. Both values must be non-negative."""

    window_ms: int = 60_000
    max_requests: int = 100

    def __post_init__(self) -> None:
        if self.window_ms < 0 or self.max_requests < 0:
            raise ValueError("rate limit window and max_requests must be >= 0")


@dataclass
class RateLimitRecord:
    key: str
    timestamps: Deque[float] = field(default_factory=deque)


@dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    count: int
    retry_after_ms: int = 0

    @property
    def retry_after_seconds(self) -> int:
        # Round up so clients never retry a few ms too early
        return -(-self.retry_after_ms // 1000)


class RateLimiter:
    """Sliding-window-log limiter held in process memory.

    Each key keeps the timestamps of its admitted events. A check prunes
    entries at or before ``now - window``, denies without recording when the
    remaining count has reached the maximum, and otherwise records ``now``.
    The prune/check/append sequence runs under a lock owned by that key only.
    """

    def __init__(
        self,
        config: Optional[RateLimitConfig] = None,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.config = config or RateLimitConfig()
        # Clock returns seconds; timestamps are stored in milliseconds
        self._clock = clock
        self._records: Dict[str, RateLimitRecord] = {}
        self._locks: Dict[str, asyncio.Lock] = {}

    def _now_ms(self) -> float:
        return self._clock() * 1000.0

    def _lock_for(self, key: str) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        return lock

    async def check(self, key: str) -> RateLimitDecision:
        async with self._lock_for(key):
            now = self._now_ms()
            window_start = now - self.config.window_ms
            record = self._records.get(key)
            if record is None:
                record = RateLimitRecord(key=key)
                self._records[key] = record
            stamps = record.timestamps
            while stamps and stamps[0] <= window_start:
                stamps.popleft()
            if len(stamps) >= self.config.max_requests:
                retry_after = 0
                if stamps:
                    retry_after = max(0, int(stamps[0] + self.config.window_ms - now))
                return RateLimitDecision(False, len(stamps), retry_after)
            stamps.append(now)
            return RateLimitDecision(True, len(stamps))

    async def check_limit(self, key: str) -> bool:
        decision = await self.check(key)
        if not decision.allowed:
            logger.info("rate_limit_denied", key=key, count=decision.count)
        return decision.allowed

    async def reset_limit(self, key: str) -> None:
        async with self._lock_for(key):
            self._records.pop(key, None)

    def sweep(self) -> int:
        """Drop records whose newest event left the window. Returns the number removed."""
        window_start = self._now_ms() - self.config.window_ms
        removed = 0
        for key, record in list(self._records.items()):
            lock = self._locks.get(key)
            if lock is not None and lock.locked():
                continue
            if not record.timestamps or record.timestamps[-1] <= window_start:
                self._records.pop(key, None)
                self._locks.pop(key, None)
                removed += 1
        if removed:
            logger.debug("rate_limit_swept", removed=removed, remaining=len(self._records))
        return removed

    def __len__(self) -> int:
        return len(self._records)


class SlidingWindowBackend(Protocol):
    async def check_rate_limit(
        self, key: str, max_requests: int, window_ms: int
    ) -> tuple[bool, int, int]: ...

    async def reset_rate_limit(self, key: str) -> None: ...


class SharedRateLimiter:
    """Same contract as :class:`RateLimiter`, backed by a shared Redis sorted set.

    Used when several processes must agree on one budget. Backend failures deny
    the request and are logged instead of raised.
    """

    def __init__(
        self, backend: SlidingWindowBackend, config: Optional[RateLimitConfig] = None
    ) -> None:
        self.backend = backend
        self.config = config or RateLimitConfig()

    async def check(self, key: str) -> RateLimitDecision:
        try:
            allowed, count, retry_after = await self.backend.check_rate_limit(
                key, self.config.max_requests, self.config.window_ms
            )
        except (RedisError, OSError, asyncio.TimeoutError) as exc:
            logger.error("rate_limit_backend_failed", key=key, error=str(exc))
            return RateLimitDecision(False, 0, self.config.window_ms)
        return RateLimitDecision(allowed, count, retry_after)

    async def check_limit(self, key: str) -> bool:
        decision = await self.check(key)
        if not decision.allowed:
            logger.info("rate_limit_denied", key=key, count=decision.count)
        return decision.allowed

    async def reset_limit(self, key: str) -> None:
        try:
            await self.backend.reset_rate_limit(key)
        except (RedisError, OSError, asyncio.TimeoutError) as exc:
            logger.error("rate_limit_reset_failed", key=key, error=str(exc))

    def sweep(self) -> int:
        # Redis expires idle keys itself
        return 0
