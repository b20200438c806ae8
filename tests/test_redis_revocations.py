"""Tests for the Redis revocation backend with a stub client."""

import hashlib
from datetime import datetime, timedelta, timezone

import pytest

from taskman.storage.redis_cache import RedisRevocationStore


class StubRedis:
    def __init__(self):
        self.values = {}
        self.ttls = {}

    async def set(self, key, value, ex=None):
        self.values[key] = value
        self.ttls[key] = ex
        return True

    async def exists(self, key):
        return int(key in self.values)


@pytest.fixture
def stub():
    return StubRedis()


@pytest.fixture
def store(stub):
    revocations: RedisRevocationStore = RedisRevocationStore.__new__(RedisRevocationStore)
    revocations.redis_url = "redis://stub"
    revocations.default_ttl_seconds = 3600
    revocations.client = stub
    return revocations


@pytest.mark.asyncio
async def test_revoke_keys_by_hash_with_token_lifetime(store, stub):
    expires_at = datetime.now(timezone.utc) + timedelta(minutes=10)
    await store.revoke("raw-token", expires_at)

    key = f"auth:token:revoked:{hashlib.sha256(b'raw-token').hexdigest()}"
    assert list(stub.values) == [key]
    assert 590 <= stub.ttls[key] <= 600
    assert await store.is_revoked("raw-token")
    assert not await store.is_revoked("another-token")


@pytest.mark.asyncio
async def test_unknown_expiry_uses_default_ttl(store, stub):
    await store.revoke("raw-token")
    assert list(stub.ttls.values()) == [3600]


@pytest.mark.asyncio
async def test_already_expired_token_gets_minimum_ttl(store, stub):
    await store.revoke("raw-token", datetime.now(timezone.utc) - timedelta(minutes=1))
    assert list(stub.ttls.values()) == [1]


@pytest.mark.asyncio
async def test_prune_is_left_to_redis(store):
    assert await store.prune() == 0


def test_naive_expiry_read_as_utc(store):
    naive = datetime.now(timezone.utc).replace(tzinfo=None) + timedelta(minutes=5)
    assert 290 <= store._ttl_seconds(naive) <= 300
