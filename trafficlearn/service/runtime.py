from __future__ import annotations

import threading
from typing import Optional
from urllib.parse import urlparse, urlunparse

from trafficlearn.config import get_settings, reset_settings_cache
from trafficlearn.logging import get_logger
from trafficlearn.service.auth import AuthService
from trafficlearn.storage.memory import MemoryStore
from trafficlearn.storage.postgres import PostgresStore
from trafficlearn.storage.redis_cache import RedisSessionStore

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Replace the password component of a URL with ``***`` for logging."""
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
                MemoryStore()
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

        self.redis: RedisSessionStore | None = None
        redis_error: Exception | None = None
        if self.settings.redis_url:
            try:
                redis_sessions = RedisSessionStore(self.settings.redis_url)
                redis_sessions.verify_connection()
                self.redis = redis_sessions
            except Exception as exc:
                redis_error = exc
                self.redis = None

        if self.redis is None:
            if not self.settings.test_mode and not self.settings.allow_redis_fallback_dev:
                raise RuntimeError(
                    "Redis is required for sessions; start Redis or set "
                    "TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true for local fallback."
                ) from redis_error
            fallback_mode = "TEST_MODE" if self.settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV"
            logger.warning(
                "redis_disabled_fallback",
                redis_url=_mask_url_password(self.settings.redis_url),
                error=str(redis_error) if redis_error else "redis_url_missing",
                message=f"Running without Redis under {fallback_mode}; sessions are in-memory only.",
                mode=fallback_mode,
            )
            self.sessions = self.store if isinstance(self.store, MemoryStore) else MemoryStore()
        else:
            self.sessions = self.redis

        self.auth = AuthService(self.store, self.sessions, self.settings)
        logger.info(
            "runtime_initialized",
            store_type=store_type,
            session_backend="redis" if self.redis else "memory",
        )

    def close(self) -> None:
        if self.redis is not None:
            self.redis.close()
        if isinstance(self.store, PostgresStore):
            self.store.close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton in a thread-safe manner."""
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
        if runtime is not None and runtime.redis is not None:
            try:
                runtime.redis.close()
            except Exception as exc:
                logger.warning("runtime_redis_close_failed", error=str(exc))

        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime()
        return runtime
