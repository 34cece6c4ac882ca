from __future__ import annotations

import asyncio
import threading
from datetime import datetime, timedelta
from typing import Dict, Optional, Tuple
from urllib.parse import urlparse, urlunparse

from hotelbook.config import get_settings, reset_settings_cache
from hotelbook.logging import get_logger
from hotelbook.service.audit import AuditRecorder
from hotelbook.service.auth import AuthService
from hotelbook.service.crypto import FieldCipher
from hotelbook.service.email import EmailService
from hotelbook.storage.memory import MemoryStore
from hotelbook.storage.postgres import PostgresStore
from hotelbook.storage.models import utcnow
from hotelbook.storage.redis_cache import RedisCache

logger = get_logger(__name__)

# Fallback buckets beyond this count trigger a sweep of full buckets
LOCAL_RATE_LIMIT_MAX_KEYS = 10_000


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

        try:
            self.store = (
                MemoryStore()
                if self.settings.use_memory_store
                else PostgresStore(self.settings.database_url)
            )
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type="memory" if self.settings.use_memory_store else "postgres",
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise

        self.cache: Optional[RedisCache] = None
        redis_error: Exception | None = None
        if self.settings.redis_url:
            try:
                cache = RedisCache(self.settings.redis_url)
                cache.verify_connection()
                self.cache = cache
            except Exception as exc:
                redis_error = exc
                self.cache = None

        if not self.cache:
            if not self.settings.test_mode and not self.settings.allow_redis_fallback_dev:
                raise RuntimeError(
                    "Redis is required for shared rate limits; start Redis or set "
                    "TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true for local fallback."
                ) from redis_error
            logger.warning(
                "redis_disabled_fallback",
                redis_url=_mask_url_password(self.settings.redis_url),
                error=str(redis_error) if redis_error else "redis_url_missing",
                mode="TEST_MODE" if self.settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV",
            )

        self.cipher = FieldCipher(self.settings.encryption_key or self.settings.jwt_secret)
        self.email = EmailService(
            smtp_host=self.settings.smtp_host,
            smtp_port=self.settings.smtp_port,
            smtp_user=self.settings.smtp_user,
            smtp_password=self.settings.smtp_password,
            smtp_use_tls=self.settings.smtp_use_tls,
            from_email=self.settings.email_from_address,
            from_name=self.settings.email_from_name,
        )
        self.audit = AuditRecorder(self.store)
        self.auth = AuthService(
            self.store,
            self.settings,
            delivery=self.email,
            audit=self.audit,
            cipher=self.cipher,
        )
        self._local_rate_limits: Dict[str, Tuple[float, datetime, datetime]] = {}
        self._local_rate_limit_lock = asyncio.Lock()
        logger.info("runtime_init_completed", redis_enabled=self.cache is not None)

    async def close(self) -> None:
        if self.cache is not None:
            await self.cache.close()
        self.store.close()


runtime: Optional[Runtime] = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton.

    Double-checked locking: the lock is only taken while the runtime is
    still being built.
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
        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime()
        return runtime


def _prune_full_buckets(buckets: Dict[str, Tuple[float, datetime, datetime]], now: datetime) -> None:
    """Drop buckets that have refilled; a full bucket behaves like a missing one."""
    for key in [key for key, (_, _, full_at) in buckets.items() if full_at <= now]:
        del buckets[key]


async def check_rate_limit(
    runtime: Runtime,
    key: str,
    limit: int,
    window_seconds: int,
    *,
    cost: int = 1,
) -> Tuple[bool, int, int]:
    """Consume from the token bucket for ``key``.

    Uses Redis when available and an in-process bucket otherwise.
    Returns ``(allowed, remaining, reset_seconds)``.
    """
    if limit <= 0:
        return (True, limit, 0)
    if window_seconds <= 0:
        logger.warning(
            "rate_limit_invalid_window",
            key=key,
            window_seconds=window_seconds,
        )
        window_seconds = 60
    if runtime.cache:
        return await runtime.cache.check_rate_limit(key, limit, window_seconds, cost=cost)
    now = utcnow()
    refill_rate = float(limit) / float(window_seconds)
    async with runtime._local_rate_limit_lock:
        tokens, last_ts, _ = runtime._local_rate_limits.get(key, (float(limit), now, now))
        elapsed = max(0.0, (now - last_ts).total_seconds())
        tokens = min(float(limit), tokens + elapsed * refill_rate)
        allowed = tokens >= cost
        if allowed:
            tokens -= cost
        full_at = now + timedelta(seconds=(float(limit) - tokens) / refill_rate)
        runtime._local_rate_limits[key] = (tokens, now, full_at)
        if len(runtime._local_rate_limits) > LOCAL_RATE_LIMIT_MAX_KEYS:
            _prune_full_buckets(runtime._local_rate_limits, now)
        reset_seconds = int((cost - tokens) / refill_rate) + 1 if not allowed else 0
        remaining = int(tokens)
    return (allowed, remaining, reset_seconds)


__all__ = [
    "Runtime",
    "get_runtime",
    "reset_runtime_for_tests",
    "check_rate_limit",
]
