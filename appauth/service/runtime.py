from __future__ import annotations

import asyncio
from typing import Optional
from urllib.parse import urlparse, urlunparse

from appauth.config import Settings
from appauth.logging import get_logger
from appauth.service.auth import AuthService
from appauth.service.email import EmailService
from appauth.storage.memory import MemoryStore
from appauth.storage.postgres import PostgresStore
from appauth.storage.redis_cache import RedisCache

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password component of a URL before it reaches the logs.

    Example: redis://:mypassword@localhost:6379 -> redis://:***@localhost:6379
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
    """Explicitly constructed service graph for one application instance.

    Nothing touches the network in ``__init__``; ``connect`` builds the store
    and optional Redis cache (unless they were injected), ``health_check``
    checks them and ``close`` releases them.
    """

    def __init__(
        self,
        settings: Settings,
        *,
        store=None,
        cache=None,
        email_service: Optional[EmailService] = None,
    ) -> None:
        self.settings = settings
        self.store = store
        self.cache = cache
        self._email_service = email_service
        self._auth: Optional[AuthService] = None

    @property
    def connected(self) -> bool:
        return self._auth is not None

    @property
    def auth(self) -> AuthService:
        if self._auth is None:
            raise RuntimeError("runtime is not connected")
        return self._auth

    def _build_store(self):
        store_type = "memory" if self.settings.use_memory_store else "postgres"
        try:
            if self.settings.use_memory_store:
                store = MemoryStore(fs_root=self.settings.data_root)
            else:
                store = PostgresStore(self.settings.database_url, fs_root=self.settings.data_root)
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type=store_type,
                database_url=_mask_url_password(self.settings.database_url),
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise
        logger.info("runtime_store_initialized", store_type=store_type)
        return store

    def _build_cache(self) -> Optional[RedisCache]:
        if not self.settings.redis_url:
            return None
        cache = RedisCache(self.settings.redis_url)
        try:
            cache.verify_connection()
        except Exception as exc:
            if not self.settings.test_mode:
                raise RuntimeError(
                    "REDIS_URL is set but Redis is unreachable; unset it to keep OAuth state in-process"
                ) from exc
            logger.warning(
                "redis_disabled_fallback",
                redis_url=_mask_url_password(self.settings.redis_url),
                error=str(exc),
            )
            return None
        return cache

    def connect(self) -> "Runtime":
        if self._auth is not None:
            return self
        logger.info(
            "runtime_connect_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )
        if self.store is None:
            self.store = self._build_store()
        if self.cache is None:
            self.cache = self._build_cache()
        self._auth = AuthService(
            self.store,
            self.cache,
            self.settings,
            email_service=self._email_service,
        )
        self._auth.tokens.cleanup_expired()
        return self

    async def health_check(self, timeout: float = 2.0) -> dict:
        checks: dict[str, str] = {}
        if self.store is None:
            checks["store"] = "not_connected"
        else:
            try:
                await asyncio.wait_for(
                    asyncio.to_thread(self.store.verify_connection), timeout=timeout
                )
                checks["store"] = "ok"
            except Exception as exc:
                logger.warning("health_store_failed", error=str(exc))
                checks["store"] = "error"
        if self.cache is None:
            checks["redis"] = "disabled"
        else:
            try:
                await asyncio.wait_for(
                    asyncio.to_thread(self.cache.verify_connection), timeout=timeout
                )
                checks["redis"] = "ok"
            except Exception as exc:
                logger.warning("health_redis_failed", error=str(exc))
                checks["redis"] = "error"
        healthy = checks["store"] == "ok" and checks["redis"] in {"ok", "disabled"}
        return {"status": "healthy" if healthy else "unhealthy", "checks": checks}

    async def close(self) -> None:
        if self.cache is not None:
            await self.cache.close()
        if self.store is not None:
            self.store.close()
        self._auth = None
        logger.info("runtime_closed")
