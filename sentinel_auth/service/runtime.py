from __future__ import annotations

import asyncio
import threading
from datetime import datetime, timedelta
from typing import Dict, Optional, Tuple, Union
from urllib.parse import urlparse, urlunparse

from sentinel_auth.config import get_settings, reset_settings_cache
from sentinel_auth.logging import get_logger
from sentinel_auth.service.auth import AuthService
from sentinel_auth.service.email import EmailService
from sentinel_auth.service.sessions import SessionTracker, dormant_network_policy
from sentinel_auth.service.tokens import TokenIssuer
from sentinel_auth.storage.memory import MemoryStore
from sentinel_auth.storage.models import utcnow
from sentinel_auth.storage.postgres import PostgresStore
from sentinel_auth.storage.redis_cache import RedisCache, SyncRedisCache

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Replace the password component of a URL with ``***`` for logging.

    redis://:secret@localhost:6379 -> redis://:***@localhost:6379
    """
    if not url:
        return url
    try:
        parsed = urlparse(url)
    except ValueError:
        return "***url_parse_error***"
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    if parsed.username:
        netloc = f"{parsed.username}:***@{netloc}"
    else:
        netloc = f":***@{netloc}"
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
                MemoryStore(fs_root=self.settings.shared_fs_root)
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

        self.cache = None
        if self.settings.redis_url:
            try:
                # Sync client under TEST_MODE avoids binding to a per-test event loop
                if self.settings.test_mode:
                    cache = SyncRedisCache(self.settings.redis_url)
                else:
                    cache = RedisCache(self.settings.redis_url)
                cache.verify_connection()
                self.cache = cache
            except Exception as exc:
                logger.warning(
                    "redis_disabled_fallback",
                    redis_url=_mask_url_password(self.settings.redis_url),
                    error=str(exc),
                    message="Rate limits are tracked in-process only.",
                )

        self.email = EmailService.from_settings(self.settings)
        self.issuer = TokenIssuer(self.settings)
        self.sessions = SessionTracker(
            self.store,
            self.email,
            policy=dormant_network_policy(
                timedelta(days=self.settings.login_alert_threshold_days)
            ),
        )
        self.auth = AuthService(
            self.store,
            self.settings,
            issuer=self.issuer,
            notifier=self.email,
            tracker=self.sessions,
        )
        self._local_rate_limits: Dict[str, Tuple[int, datetime]] = {}
        self._local_rate_limit_lock = asyncio.Lock()

        logger.info(
            "runtime_initialized",
            store_type=store_type,
            redis_enabled=self.cache is not None,
            mail_transport=self.email.transport,
        )

    async def close(self) -> None:
        if self.cache is not None:
            await self.cache.close()
        self.email.close()
        self.store.close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton.

    Double-checked locking: the fast path skips the lock once the runtime exists.
    """
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
        if runtime is not None and runtime.cache is not None:
            try:
                if isinstance(runtime.cache, SyncRedisCache):
                    runtime.cache.client.close()
                else:
                    try:
                        loop = asyncio.get_running_loop()
                        loop.create_task(runtime.cache.close())
                    except RuntimeError:
                        asyncio.run(runtime.cache.close())
            except Exception as exc:
                logger.warning("runtime_cache_close_failed", error=str(exc))

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
    """Count one request against ``key`` in a fixed window.

    Uses Redis when configured so limits hold across workers, else an
    in-process counter.

    Returns:
        bool if return_remaining is False, else (allowed, remaining, reset_seconds)
    """
    if limit <= 0:
        return (True, limit, 0) if return_remaining else True
    if window_seconds <= 0:
        logger.warning(
            "rate_limit_invalid_window",
            key=key,
            window_seconds=window_seconds,
            message="Invalid rate limit window_seconds; defaulting to 60 seconds",
        )
        window_seconds = 60
    if runtime.cache:
        result = await runtime.cache.check_rate_limit(key, limit, window_seconds)
        return result if return_remaining else result[0]

    now = utcnow()
    window = timedelta(seconds=window_seconds)
    async with runtime._local_rate_limit_lock:
        count, window_start = runtime._local_rate_limits.get(key, (0, now))
        if now - window_start >= window:
            count, window_start = 0, now
        count += 1
        runtime._local_rate_limits[key] = (count, window_start)
        allowed = count <= limit
        remaining = max(0, limit - count)
        reset_seconds = max(0, int((window_start + window - now).total_seconds()))
    if return_remaining:
        return (allowed, remaining, reset_seconds)
    return allowed
