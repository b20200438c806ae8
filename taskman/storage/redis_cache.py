from __future__ import annotations

import hashlib
from datetime import datetime, timezone
from typing import Optional

import redis.asyncio as aioredis
from redis import Redis


def _revoked_key(token: str) -> str:
    # Tokens are hashed so raw bearer credentials never sit in Redis
    digest = hashlib.sha256(token.encode()).hexdigest()
    return f"auth:token:revoked:{digest}"


class RedisRevocationStore:
    """Revoked-token list kept as Redis keys that expire with the token."""

    def __init__(
        self,
        redis_url: str,
        *,
        default_ttl_seconds: int = 3600,
        socket_timeout: float = 5.0,
    ):
        self.redis_url = redis_url
        self.default_ttl_seconds = default_ttl_seconds
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    def _ttl_seconds(self, expires_at: Optional[datetime]) -> int:
        """TTL for a revocation entry, clamped to at least one second.

        An entry whose token expiry is unknown falls back to
        ``default_ttl_seconds``; naive timestamps are read as UTC.
        """

        if expires_at is None:
            return max(1, self.default_ttl_seconds)
        if expires_at.tzinfo is None:
            expires_at = expires_at.replace(tzinfo=timezone.utc)
        else:
            expires_at = expires_at.astimezone(timezone.utc)
        return max(1, int((expires_at - datetime.now(timezone.utc)).total_seconds()))

    def verify_connection(self) -> None:
        """Assert Redis connectivity before serving requests."""

        # A short-lived sync client keeps the async one off the startup event loop
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def revoke(self, token: str, expires_at: Optional[datetime] = None) -> None:
        await self.client.set(_revoked_key(token), "1", ex=self._ttl_seconds(expires_at))

    async def is_revoked(self, token: str) -> bool:
        return bool(await self.client.exists(_revoked_key(token)))

    async def prune(self, now: Optional[datetime] = None) -> int:
        # Redis drops entries on its own once their TTL lapses
        return 0

    async def close(self) -> None:
        """Close the connection pool. Call when shutting down or resetting runtime."""
        await self.client.close()
        await self.client.connection_pool.disconnect()


class _SyncClientAdapter:
    """Wraps a sync Redis client with the async method signatures used above."""

    def __init__(self, sync_client: Redis):
        self._sync = sync_client

    async def set(self, key: str, value: str, ex: Optional[int] = None) -> bool:
        return self._sync.set(key, value, ex=ex)

    async def exists(self, key: str) -> int:
        return self._sync.exists(key)

    async def delete(self, key: str) -> int:
        return self._sync.delete(key)


class SyncRedisRevocationStore(RedisRevocationStore):
    """Redis revocation store backed by a synchronous client.

    Used in test mode: the TestClient runs each app instance on its own event
    loop, and an async connection pool bound to one loop breaks on the next.
    The async methods simply call sync Redis operations.
    """

    def __init__(
        self,
        redis_url: str,
        *,
        default_ttl_seconds: int = 3600,
        socket_timeout: float = 5.0,
    ):
        self.redis_url = redis_url
        self.default_ttl_seconds = default_ttl_seconds
        self._sync_client = Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self.client = _SyncClientAdapter(self._sync_client)

    def verify_connection(self) -> None:
        self._sync_client.ping()

    async def close(self) -> None:
        self._sync_client.close()
