from __future__ import annotations

import asyncio
import threading
from typing import Optional, Union
from urllib.parse import urlparse, urlunparse

from sessionledger.config import get_settings, reset_settings_cache
from sessionledger.logging import get_logger
from sessionledger.service.codec import HmacCredentialCodec
from sessionledger.service.engine import CredentialEngine
from sessionledger.service.errors import StoreUnavailableError
from sessionledger.service.passwords import Argon2PasswordComparator
from sessionledger.storage.errors import StoreUnavailable
from sessionledger.storage.memory import MemoryCache, MemoryMemberDirectory
from sessionledger.storage.redis_cache import RedisCache, SyncRedisCache
from sessionledger.storage.sessions import RefreshSessionStore, RevocationLedger

logger = get_logger(__name__)

CacheBackend = Union[RedisCache, SyncRedisCache, MemoryCache]


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Replace the password component of a URL with '***' for logging."""
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
    netloc = f"{parsed.username}:***@{netloc}" if parsed.username else f":***@{netloc}"
    return urlunparse(
        (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
    )


class Runtime:
    """Holds singleton service instances for the FastAPI app."""

    def __init__(self):
        self.settings = get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_cache=self.settings.use_memory_cache,
            test_mode=self.settings.test_mode,
        )
        self.cache: CacheBackend = self._build_cache()
        self.cache_backend = "memory" if isinstance(self.cache, MemoryCache) else "redis"

        self.codec = HmacCredentialCodec(
            self.settings.jwt_secret,
            issuer=self.settings.jwt_issuer,
            audience=self.settings.jwt_audience,
        )
        self.passwords = Argon2PasswordComparator()
        self.members = MemoryMemberDirectory(self.passwords)
        self.engine = CredentialEngine(
            RefreshSessionStore(self.cache),
            RevocationLedger(self.cache),
            self.codec,
            self.passwords,
            self.members,
            access_ttl_seconds=self.settings.access_token_ttl_seconds,
            refresh_ttl_seconds=self.settings.refresh_token_ttl_seconds,
            reissue_threshold_seconds=self.settings.reissue_threshold_seconds,
            clock_skew_leeway_seconds=self.settings.clock_skew_leeway_seconds,
        )
        logger.info(
            "runtime_initialized",
            cache_backend=self.cache_backend,
            access_ttl=self.settings.access_token_ttl_seconds,
            refresh_ttl=self.settings.refresh_token_ttl_seconds,
            reissue_threshold=self.settings.reissue_threshold_seconds,
        )

    def _build_cache(self) -> CacheBackend:
        if self.settings.use_memory_cache:
            logger.warning(
                "memory_cache_enabled",
                message="Sessions and the revocation ledger are local to this process",
            )
            return MemoryCache()

        redis_error: Exception | None = None
        if self.settings.redis_url:
            try:
                # Sync client in test mode avoids binding to a short-lived event loop
                if self.settings.test_mode:
                    cache: CacheBackend = SyncRedisCache(
                        self.settings.redis_url,
                        socket_timeout=self.settings.redis_socket_timeout,
                    )
                else:
                    cache = RedisCache(
                        self.settings.redis_url,
                        socket_timeout=self.settings.redis_socket_timeout,
                    )
                cache.verify_connection()
                return cache
            except Exception as exc:
                redis_error = exc

        if not self.settings.test_mode and not self.settings.allow_redis_fallback_dev:
            raise RuntimeError(
                "Redis is required for refresh sessions and the revocation ledger; "
                "start Redis or set TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true for local fallback."
            ) from redis_error

        fallback_mode = "TEST_MODE" if self.settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV"
        logger.warning(
            "redis_disabled_fallback",
            redis_url=_mask_url_password(self.settings.redis_url),
            error=str(redis_error) if redis_error else "redis_url_missing",
            message=(
                f"Running without Redis under {fallback_mode}; logouts and renewal "
                "sessions are not shared between processes."
            ),
            mode=fallback_mode,
        )
        return MemoryCache()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton, double-checking under the lock."""
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


_pending_closes: set[asyncio.Task] = set()


def _on_close_done(task: asyncio.Task) -> None:
    _pending_closes.discard(task)
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.warning("runtime_cache_close_failed", error=str(exc))


def _close_cache(cache: CacheBackend) -> Optional[asyncio.Task]:
    """Close ``cache``; inside a running loop the close is scheduled and tracked."""
    if isinstance(cache, SyncRedisCache):
        cache.client.close()
        return None
    try:
        loop = asyncio.get_running_loop()
    except RuntimeError:
        asyncio.run(cache.close())
        return None
    task = loop.create_task(cache.close())
    _pending_closes.add(task)
    task.add_done_callback(_on_close_done)
    return task


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""
    global runtime

    with _runtime_lock:
        if runtime is not None:
            try:
                _close_cache(runtime.cache)
            except Exception as exc:
                logger.debug("runtime_cache_close_failed", error=str(exc))

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
    window_seconds: int = 60,
) -> bool:
    """Fixed-window limiter on the shared store's atomic counter.

    Returns True while the caller is within ``limit`` hits for the current
    window. A limit of zero or less disables the check.
    """
    if limit <= 0:
        return True
    if window_seconds <= 0:
        logger.warning("rate_limit_invalid_window", key=key, window_seconds=window_seconds)
        window_seconds = 60
    try:
        count = await runtime.cache.incr(f"rate:{key}", window_seconds)
    except StoreUnavailable as exc:
        raise StoreUnavailableError(exc.message, detail={"operation": "rate_limit"}) from exc
    if count > limit:
        logger.info("rate_limit_exceeded", key=key, limit=limit, window_seconds=window_seconds)
        return False
    return True
