from __future__ import annotations

import asyncio
import threading
from typing import Optional, Union
from urllib.parse import urlparse, urlunparse

from taskman.config import RevocationBackend, get_settings, reset_settings_cache
from taskman.logging import get_logger
from taskman.service.auth import AuthService, RevocationStore
from taskman.service.tasks import TaskService
from taskman.service.tokens import TokenCodec
from taskman.storage.memory import MemoryStore
from taskman.storage.postgres import PostgresStore
from taskman.storage.redis_cache import RedisRevocationStore, SyncRedisRevocationStore
from taskman.storage.revocations import StoreRevocationList

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Replace the password in a connection URL with ``***`` for logging."""
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
    """Holds singleton store and service instances for the FastAPI app."""

    def __init__(self):
        self.settings = get_settings()
        store_type = "memory" if self.settings.use_memory_store else "postgres"
        logger.info(
            "runtime_init_started",
            store_type=store_type,
            revocation_backend=self.settings.revocation_backend.value,
            test_mode=self.settings.test_mode,
        )

        try:
            self.store: Union[MemoryStore, PostgresStore] = (
                MemoryStore(fs_root=self.settings.shared_fs_root)
                if self.settings.use_memory_store
                else PostgresStore(
                    self.settings.database_url, fs_root=self.settings.shared_fs_root
                )
            )
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type=store_type,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise
        logger.info("runtime_store_initialized", store_type=store_type)

        self.redis: Optional[RedisRevocationStore] = None
        if self.settings.revocation_backend == RevocationBackend.REDIS:
            self.redis = self._connect_redis()
            self.revocations: RevocationStore = self.redis
        else:
            self.revocations = StoreRevocationList(self.store)

        self.tokens = TokenCodec(
            self.settings.jwt_secret,
            issuer=self.settings.jwt_issuer,
            audience=self.settings.jwt_audience,
            leeway_seconds=self.settings.jwt_leeway_seconds,
        )
        self.auth = AuthService(
            self.store, self.revocations, self.settings, codec=self.tokens
        )
        self.tasks = TaskService(self.store)

    def _connect_redis(self) -> RedisRevocationStore:
        redis_url = self.settings.redis_url
        if not redis_url:
            raise RuntimeError("REVOCATION_BACKEND=redis requires REDIS_URL to be set")
        ttl = self.settings.access_token_ttl_minutes * 60
        # Sync client in test mode; every TestClient runs its own event loop
        store_cls = SyncRedisRevocationStore if self.settings.test_mode else RedisRevocationStore
        store = store_cls(redis_url, default_ttl_seconds=ttl)
        try:
            store.verify_connection()
        except Exception as exc:
            logger.error(
                "runtime_redis_unavailable",
                redis_url=_mask_url_password(redis_url),
                error=str(exc),
            )
            raise RuntimeError("Redis revocation backend is unreachable") from exc
        logger.info("runtime_redis_initialized", redis_url=_mask_url_password(redis_url))
        return store


runtime: Optional[Runtime] = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton with double-checked locking."""
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def _close_redis(store: RedisRevocationStore) -> None:
    try:
        loop = asyncio.get_running_loop()
    except RuntimeError:
        asyncio.run(store.close())
    else:
        loop.create_task(store.close())


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""

    global runtime

    with _runtime_lock:
        if runtime is not None and runtime.redis is not None:
            try:
                _close_redis(runtime.redis)
            except Exception as exc:
                # Connection may already be closed
                logger.warning("runtime_redis_close_failed", error=str(exc))

        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime()
        return runtime
