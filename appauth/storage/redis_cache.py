from __future__ import annotations

import json
from datetime import datetime, timezone
from typing import Optional, Tuple

import redis.asyncio as aioredis
from redis import Redis


class RedisCache:
    """Thin Redis wrapper holding short-lived OAuth handshake state."""

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    @staticmethod
    def _ttl_seconds(expires_at: datetime) -> int:
        """TTL from an absolute expiry, clamped to at least one second."""

        if expires_at.tzinfo is None:
            expires_at = expires_at.replace(tzinfo=timezone.utc)
        else:
            expires_at = expires_at.astimezone(timezone.utc)
        return max(1, int((expires_at - datetime.now(timezone.utc)).total_seconds()))

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""

        # Short-lived sync client so the async client is not bound to a startup loop
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def set_oauth_state(
        self, state: str, provider: str, app_endpoint: str, expires_at: datetime
    ) -> None:
        if expires_at.tzinfo is None:
            expires_at = expires_at.replace(tzinfo=timezone.utc)
        ttl = self._ttl_seconds(expires_at)
        payload = {
            "provider": provider,
            "app_endpoint": app_endpoint,
            "expires_at": expires_at.isoformat(),
        }
        await self.client.set(f"auth:oauth:{state}", json.dumps(payload), ex=ttl)

    async def pop_oauth_state(
        self, state: str
    ) -> Optional[Tuple[str, str, datetime]]:
        """Atomically read and delete OAuth state so it cannot be replayed.

        Returns:
            Tuple of (provider, app_endpoint, expires_at) or None if unknown
        """
        key = f"auth:oauth:{state}"
        try:
            cached = await self.client.getdel(key)
        except AttributeError:
            lua_script = """
            local value = redis.call('GET', KEYS[1])
            if value then
                redis.call('DEL', KEYS[1])
            end
            return value
            """
            cached = await self.client.eval(lua_script, 1, key)

        if cached is None:
            return None
        try:
            data = json.loads(cached)
        except (json.JSONDecodeError, TypeError):
            return None

        expires_at = datetime.now(timezone.utc)
        expires_raw = data.get("expires_at")
        if isinstance(expires_raw, str):
            try:
                expires_at = datetime.fromisoformat(expires_raw)
            except ValueError:
                pass
        return data.get("provider"), data.get("app_endpoint"), expires_at

    async def close(self) -> None:
        """Close the connection pool."""
        await self.client.close()
        await self.client.connection_pool.disconnect()
