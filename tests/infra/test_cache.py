# tests/infra/test_cache.py
"""
Тесты кэша с TTL.
"""

from __future__ import annotations

from unittest.mock import AsyncMock

import pytest

from trip_matching.common.clock import ManualClock
from trip_matching.infra.cache import InMemoryCache, RedisCache


class TestInMemoryCache:
    """Тесты локального кэша."""

    @pytest.fixture
    def cache(self, clock: ManualClock) -> InMemoryCache:
        return InMemoryCache(clock)

    @pytest.mark.asyncio
    async def test_set_get(self, cache: InMemoryCache) -> None:
        await cache.set("k", "v")

        assert await cache.get("k") == "v"
        assert await cache.ttl("k") == -1

    @pytest.mark.asyncio
    async def test_missing(self, cache: InMemoryCache) -> None:
        assert await cache.get("nope") is None
        assert await cache.ttl("nope") == -2
        assert await cache.expire("nope", 10) is False

    @pytest.mark.asyncio
    async def test_ttl_expiry(self, cache: InMemoryCache, clock: ManualClock) -> None:
        """Ключ пропадает по истечении TTL."""
        await cache.set("k", "v", ttl=10)
        clock.advance(9)
        assert await cache.ttl("k") == pytest.approx(1.0)

        clock.advance(1)
        assert await cache.get("k") is None

    @pytest.mark.asyncio
    async def test_incr_keeps_first_ttl(self, cache: InMemoryCache, clock: ManualClock) -> None:
        """TTL применяется только при создании счётчика."""
        assert await cache.incr("c", ttl=10) == 1
        clock.advance(5)
        assert await cache.incr("c", ttl=10) == 2
        assert await cache.ttl("c") == pytest.approx(5.0)

        clock.advance(5)
        assert await cache.incr("c", ttl=10) == 1

    @pytest.mark.asyncio
    async def test_expire_and_delete(self, cache: InMemoryCache, clock: ManualClock) -> None:
        await cache.set("k", "v")
        assert await cache.expire("k", 3) is True
        clock.advance(3)
        assert await cache.get("k") is None

        await cache.set("k2", "v")
        await cache.delete("k2")
        assert await cache.get("k2") is None

    @pytest.mark.asyncio
    async def test_sweep(self, cache: InMemoryCache, clock: ManualClock) -> None:
        await cache.set("short", "1", ttl=1)
        await cache.set("long", "1", ttl=100)
        await cache.set("forever", "1")
        clock.advance(2)

        assert await cache.sweep() == 1
        assert len(cache) == 2


class TestRedisCache:
    """RedisCache делегирует клиенту Redis."""

    @pytest.mark.asyncio
    async def test_delegates(self) -> None:
        client = AsyncMock()
        client.incr = AsyncMock(return_value=4)
        client.ttl = AsyncMock(return_value=12)
        client.get = AsyncMock(return_value="v")
        cache = RedisCache(client)

        assert await cache.incr("c", ttl=60) == 4
        assert await cache.ttl("c") == 12.0
        assert await cache.get("k") == "v"
        await cache.set("k", "v", ttl=5)

        client.incr.assert_awaited_once_with("c", ttl=60)
        client.set.assert_awaited_once_with("k", "v", ttl=5)

    @pytest.mark.asyncio
    async def test_sweep_is_noop(self) -> None:
        client = AsyncMock()

        assert await RedisCache(client).sweep() == 0
        assert client.method_calls == []
