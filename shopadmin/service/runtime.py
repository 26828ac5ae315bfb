from __future__ import annotations

import asyncio
from typing import Optional, Union
from urllib.parse import urlparse, urlunparse

from shopadmin.config import Settings, get_settings
from shopadmin.logging import get_logger
from shopadmin.service.auth import AuthService, TokenManager
from shopadmin.service.rate_limiter import RateLimitConfig, RateLimiter, SharedRateLimiter
from shopadmin.storage.memory import MemoryCache, MemoryStore
from shopadmin.storage.postgres import PostgresStore
from shopadmin.storage.redis_cache import RedisCache

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask password in URL for safe logging.

    Example: redis://:mypassword@localhost:6379 -> redis://:***@localhost:6379
    """
    if not url:
        return url
    try:
        parsed = urlparse(url)
        if parsed.password:
            netloc = parsed.hostname or ""
            if parsed.port:
                netloc = f"{netloc}:{parsed.port}"
            if parsed.username:
                netloc = f"{parsed.username}:***@{netloc}"
            else:
                netloc = f":***@{netloc}"
            return urlunparse((
                parsed.scheme,
                netloc,
                parsed.path,
                parsed.params,
                parsed.query,
                parsed.fragment,
            ))
        return url
    except ValueError:
        return "***url_parse_error***"


class Runtime:
    """One instance per process: stores, limiters and the auth services.

    Built by the application lifespan and kept on ``app.state.runtime``.
    """

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )

        try:
            self.store: Union[MemoryStore, PostgresStore] = (
                MemoryStore()
                if self.settings.use_memory_store
                else PostgresStore(
                    self.settings.database_url, timeout=self.settings.store_timeout_seconds
                )
            )
            logger.info(
                "runtime_store_initialized",
                store_type="memory" if self.settings.use_memory_store else "postgres",
            )
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type="memory" if self.settings.use_memory_store else "postgres",
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise

        self.redis: Optional[RedisCache] = None
        redis_error: Exception | None = None
        if self.settings.redis_url:
            try:
                cache = RedisCache(
                    self.settings.redis_url,
                    socket_timeout=self.settings.store_timeout_seconds,
                )
                cache.verify_connection()
                self.redis = cache
            except Exception as exc:
                redis_error = exc
                self.redis = None

        if self.redis is None:
            if (
                not self.settings.test_mode
                and not self.settings.allow_redis_fallback_dev
            ):
                raise RuntimeError(
                    "Redis is required for sessions and rate limits; "
                    "start Redis or set TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true for local fallback."
                ) from redis_error
            fallback_mode = (
                "TEST_MODE" if self.settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV"
            )
            logger.warning(
                "redis_disabled_fallback",
                redis_url=_mask_url_password(self.settings.redis_url),
                error=str(redis_error) if redis_error else "redis_url_missing",
                message=(
                    f"Running without Redis under {fallback_mode}; sessions and rate limits "
                    "are kept in process memory and are not shared across workers."
                ),
            )

        default_config = RateLimitConfig(
            window_ms=self.settings.rate_limit_window_ms,
            max_requests=self.settings.rate_limit_max_requests,
        )
        login_config = RateLimitConfig(
            window_ms=self.settings.login_rate_limit_window_ms,
            max_requests=self.settings.login_rate_limit_max_requests,
        )
        self.cache: Union[RedisCache, MemoryCache]
        self.rate_limiter: Union[RateLimiter, SharedRateLimiter]
        self.login_limiter: Union[RateLimiter, SharedRateLimiter]
        if self.redis is not None:
            self.cache = self.redis
            self.rate_limiter = SharedRateLimiter(self.redis, default_config)
            self.login_limiter = SharedRateLimiter(self.redis, login_config)
        else:
            self.cache = MemoryCache()
            self.rate_limiter = RateLimiter(default_config)
            self.login_limiter = RateLimiter(login_config)

        self.tokens = TokenManager.from_settings(self.settings, self.store, self.cache)
        self.auth = AuthService(self.store, self.tokens, self.login_limiter)
        logger.info(
            "runtime_init_completed",
            cache_type="redis" if self.redis is not None else "memory",
        )

    def sweep_rate_limits(self) -> int:
        return self.rate_limiter.sweep() + self.login_limiter.sweep()

    async def run_sweeper(self) -> None:
        """Reclaim idle rate-limit records and expired refresh tokens until cancelled."""
        interval = self.settings.rate_limit_sweep_interval_seconds
        while True:
            await asyncio.sleep(interval)
            try:
                removed = self.sweep_rate_limits()
                purged = await asyncio.to_thread(self.store.purge_expired_refresh_tokens)
                logger.debug("runtime_sweep_completed", rate_limits_removed=removed, refresh_purged=purged)
            except Exception as exc:
                logger.warning("runtime_sweep_failed", error_type=type(exc).__name__, error=str(exc))

    async def close(self) -> None:
        await self.cache.close()
        if isinstance(self.store, PostgresStore):
            await asyncio.to_thread(self.store.close)
        logger.info("runtime_closed")
