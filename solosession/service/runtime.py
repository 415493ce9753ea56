from __future__ import annotations

import asyncio
import threading
from typing import Optional, Union
from urllib.parse import urlparse, urlunparse

from solosession.config import Settings, get_settings, reset_settings_cache
from solosession.logging import get_logger
from solosession.service.sessions import SessionAuthority
from solosession.storage.errors import StoreUnavailableError
from solosession.storage.memory import MemoryStore
from solosession.storage.redis_store import RedisStore

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password in a Redis URL for logging.

    Example: redis://:secret@localhost:6379 -> redis://:***@localhost:6379
    """
    if not url:
        return url
    try:
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
    except ValueError:
        return "***url_parse_error***"


class Runtime:
    """Holds the store and session authority shared by the FastAPI app."""

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        self.fallback_mode: Optional[str] = None
        self.store: Union[RedisStore, MemoryStore] = self._build_store()
        self.sessions = SessionAuthority.from_settings(self.store, self.settings)
        logger.info(
            "runtime_initialized",
            store_type=self.store_type,
            cluster=self.store.is_cluster,
            test_mode=self.settings.test_mode,
        )

    @property
    def store_type(self) -> str:
        return "memory" if isinstance(self.store, MemoryStore) else "redis"

    def _build_store(self) -> Union[RedisStore, MemoryStore]:
        if self.settings.use_memory_store:
            return MemoryStore()
        return RedisStore(
            self.settings.redis_url,
            cluster_nodes=self.settings.cluster_nodes,
            password=self.settings.redis_password,
            socket_timeout=self.settings.redis_socket_timeout,
            max_connect_attempts=self.settings.redis_connect_max_attempts,
            backoff_base_ms=self.settings.redis_connect_backoff_base_ms,
            backoff_cap_ms=self.settings.redis_connect_backoff_cap_ms,
        )

    async def startup(self) -> None:
        """Connect the store, falling back to memory only where allowed."""
        try:
            await self.store.connect()
            return
        except StoreUnavailableError as exc:
            if not self.settings.test_mode and not self.settings.allow_redis_fallback_dev:
                raise RuntimeError(
                    "Redis is required for session state; start Redis or set "
                    "TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true for local fallback."
                ) from exc
            redis_error = exc

        self.fallback_mode = (
            "TEST_MODE" if self.settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV"
        )
        logger.warning(
            "redis_disabled_fallback",
            redis_url=_mask_url_password(self.settings.redis_url),
            error=str(redis_error),
            mode=self.fallback_mode,
            message="Session state is in-memory only and is lost on restart.",
        )
        self.store = MemoryStore()
        await self.store.connect()
        self.sessions = SessionAuthority.from_settings(self.store, self.settings)

    async def close(self) -> None:
        try:
            await self.store.quit()
        except StoreUnavailableError as exc:
            logger.warning("runtime_store_close_failed", error=str(exc))


runtime: Optional[Runtime] = None
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


def _close_quietly(previous: Runtime) -> None:
    if not isinstance(previous.store, RedisStore) or not previous.store.connected:
        return
    try:
        loop = asyncio.get_running_loop()
    except RuntimeError:
        asyncio.run(previous.close())
    else:
        loop.create_task(previous.close())


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""
    global runtime

    with _runtime_lock:
        if runtime is not None:
            _close_quietly(runtime)
        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime(settings)
        return runtime


__all__ = ["Runtime", "get_runtime", "reset_runtime_for_tests"]
