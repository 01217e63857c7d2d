from __future__ import annotations

import asyncio
import threading
from typing import Optional
from urllib.parse import urlparse, urlunparse

from communityhub.config import get_settings, reset_settings_cache
from communityhub.logging import get_logger
from communityhub.service.auth import AuthService
from communityhub.service.forum import ForumService
from communityhub.service.identity import IdentityResolver
from communityhub.service.shopify import ShopifyCustomerAccountClient
from communityhub.service.state_store import InMemoryStateStore, RedisStateStore
from communityhub.service.tokens import TokenCodec
from communityhub.storage.memory import MemoryStore
from communityhub.storage.postgres import PostgresStore
from communityhub.storage.redis_cache import RedisCache, SyncRedisCache

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """``redis://:secret@host:6379`` -> ``redis://:***@host:6379`` for logging."""
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
                MemoryStore(fs_root=self.settings.shared_fs_root)
                if self.settings.use_memory_store
                else PostgresStore(
                    self.settings.database_url, fs_root=self.settings.shared_fs_root
                )
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

        self.cache: RedisCache | SyncRedisCache | None = None
        redis_error: Exception | None = None
        if self.settings.redis_url:
            try:
                # Sync client under tests to avoid binding to a closed event loop
                if self.settings.test_mode:
                    cache = SyncRedisCache(self.settings.redis_url)
                else:
                    cache = RedisCache(self.settings.redis_url)
                cache.verify_connection()
                self.cache = cache
            except Exception as exc:
                redis_error = exc
                self.cache = None

        state_ttl = self.settings.oauth_state_ttl_minutes * 60
        if self.cache is not None:
            self.state_store: InMemoryStateStore | RedisStateStore = RedisStateStore(
                self.cache, state_ttl
            )
        else:
            if self.settings.redis_url and not (
                self.settings.test_mode or self.settings.allow_redis_fallback_dev
            ):
                raise RuntimeError(
                    "Redis is configured for OAuth state but unreachable; "
                    "start Redis or set TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true for local fallback."
                ) from redis_error
            logger.warning(
                "redis_disabled_fallback",
                redis_url=_mask_url_password(self.settings.redis_url),
                error=str(redis_error) if redis_error else "redis_url_missing",
                message=(
                    "OAuth state is held in process memory; logins only complete "
                    "when the callback reaches the same instance."
                ),
            )
            self.state_store = InMemoryStateStore(
                state_ttl,
                sweep_interval_seconds=self.settings.state_sweep_interval_minutes * 60,
            )

        self.tokens = TokenCodec(
            self.settings.jwt_secret,
            ttl_seconds=self.settings.token_ttl_days * 24 * 60 * 60,
            issuer=self.settings.jwt_issuer,
            audience=self.settings.jwt_audience,
        )
        self.shopify = ShopifyCustomerAccountClient.from_settings(self.settings)
        self.identity = IdentityResolver(
            self.store,
            default_community_id=self.settings.default_community_id,
            community_tag_prefix=self.settings.community_tag_prefix,
        )
        self.auth = AuthService(
            settings=self.settings,
            state_store=self.state_store,
            tokens=self.tokens,
            provider=self.shopify,
            identity=self.identity,
        )
        self.forum = ForumService(self.store)

        logger.info(
            "runtime_initialized",
            store_type=store_type,
            state_backend=self.state_store.backend,
            redis_enabled=self.cache is not None,
            shopify_configured=bool(
                self.settings.shopify_client_id and self.settings.shopify_shop_id
            ),
        )

    async def close(self) -> None:
        if self.cache is not None:
            await self.cache.close()
        close_store = getattr(self.store, "close", None)
        if callable(close_store):
            close_store()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton.

    Double-checked locking: the unlocked read is the fast path, the locked
    re-check prevents two threads building competing runtimes.
    """
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


_pending_cache_closes: set[asyncio.Task] = set()


def _cache_close_done(task: asyncio.Task) -> None:
    _pending_cache_closes.discard(task)
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.warning("runtime_cache_close_failed", error=str(exc))


def _close_cache(cache: RedisCache | SyncRedisCache) -> Optional[asyncio.Task]:
    """Close ``cache``; inside a running loop returns the scheduled close task."""
    if isinstance(cache, SyncRedisCache):
        cache.client.close()
        return None
    try:
        loop = asyncio.get_running_loop()
    except RuntimeError:
        asyncio.run(cache.close())
        return None
    task = loop.create_task(cache.close())
    _pending_cache_closes.add(task)
    task.add_done_callback(_cache_close_done)
    return task


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""
    global runtime

    with _runtime_lock:
        if runtime is not None and runtime.cache is not None:
            try:
                _close_cache(runtime.cache)
            except Exception as exc:
                logger.warning("runtime_cache_close_failed", error=str(exc))

        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime()
        return runtime
