from __future__ import annotations

import math
import threading
import time
from typing import Dict, Optional, Tuple, Union
from urllib.parse import urlparse, urlunparse

from oceanblog.config import get_settings, reset_settings_cache
from oceanblog.logging import get_logger
from oceanblog.service.auth import AuthService
from oceanblog.service.email import EmailService
from oceanblog.service.realtime import RealtimeHub
from oceanblog.storage.memory import MemoryStore
from oceanblog.storage.postgres import PostgresStore
from oceanblog.storage.redis_cache import RedisCache

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Replace the password component of a URL with ``***`` for logging."""
    if not url:
        return url
    parsed = urlparse(url)
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    netloc = f"{parsed.username or ''}:***@{netloc}"
    return urlunparse(
        (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
    )


class Runtime:
    """Holds singleton service instances for the FastAPI app."""

    def __init__(self):
        self.settings = get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )

        store_type = "memory" if self.settings.use_memory_store else "postgres"
        try:
            self.store = (
                MemoryStore(fs_root=self.settings.data_root, persist=not self.settings.test_mode)
                if self.settings.use_memory_store
                else PostgresStore(self.settings.database_url)
            )
            logger.info("runtime_store_initialized", store_type=store_type)
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type=store_type,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise

        self.cache: Optional[RedisCache] = None
        if self.settings.redis_url:
            cache = RedisCache(self.settings.redis_url)
            try:
                cache.verify_connection()
                self.cache = cache
            except Exception as exc:
                logger.warning(
                    "redis_disabled_fallback",
                    redis_url=_mask_url_password(self.settings.redis_url),
                    error=str(exc),
                    message="Rate limits fall back to per-process counters",
                )

        self.email = EmailService.from_settings(self.settings)
        self.auth = AuthService(self.store, self.settings, self.email)
        self.realtime = RealtimeHub()
        # key -> (hits in window, window start on the monotonic clock)
        self._local_rate_limits: Dict[str, Tuple[int, float]] = {}
        self._local_rate_limit_lock = threading.Lock()

        logger.info(
            "runtime_initialized",
            store_type=store_type,
            redis_enabled=self.cache is not None,
            email_mode=self.email.mode,
            access_token_ttl_minutes=self.settings.access_token_ttl_minutes,
        )

    async def close(self) -> None:
        """Release pooled connections held by the store and cache."""
        self.store.close()
        if self.cache is not None:
            await self.cache.close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton (double-checked locking)."""
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""
    global runtime

    with _runtime_lock:
        if runtime is not None:
            runtime.store.close()
        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime()
        return runtime


async def check_rate_limit(
    runtime: Runtime,
    key: str,
    limit: int,
    window_seconds: int,
    *,
    return_remaining: bool = False,
) -> Union[bool, Tuple[bool, int, int]]:
    """Fixed-window request counting, in Redis when configured, else per process.

    Args:
        runtime: Runtime instance with cache
        key: Rate limit subject, e.g. ``login:<email>``
        limit: Maximum requests per window
        window_seconds: Window duration in seconds
        return_remaining: If True, return tuple of (allowed, remaining, reset_seconds)

    Returns:
        bool if return_remaining is False, else (bool, int, int) tuple
    """
    if limit <= 0:
        return (True, limit, 0) if return_remaining else True
    if window_seconds <= 0:
        logger.warning("rate_limit_invalid_window", key=key, window_seconds=window_seconds)
        window_seconds = 60
    if runtime.cache:
        return await runtime.cache.check_rate_limit(
            key, limit, window_seconds, return_remaining=return_remaining
        )
    now = time.monotonic()
    with runtime._local_rate_limit_lock:
        hits, window_start = runtime._local_rate_limits.get(key, (0, now))
        if now - window_start >= window_seconds:
            hits, window_start = 0, now
        hits += 1
        runtime._local_rate_limits[key] = (hits, window_start)
    allowed = hits <= limit
    if return_remaining:
        reset_seconds = max(1, math.ceil(window_start + window_seconds - now))
        return (allowed, max(0, limit - hits), reset_seconds)
    return allowed
