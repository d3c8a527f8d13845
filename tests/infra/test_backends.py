# tests/infra/test_backends.py
"""
Тесты выбора бэкендов по настройкам.
"""

from __future__ import annotations

from typing import Any
from unittest.mock import AsyncMock, patch

import pytest

from trip_matching.config.loader import Settings
from trip_matching.infra.backends import Backends, close_backends, open_backends
from trip_matching.infra.cache import InMemoryCache, RedisCache
from trip_matching.infra.event_bus import InMemoryEventStream
from trip_matching.infra.pricing_client import HttpPricingEstimator
from trip_matching.infra.store.memory import InMemoryMatchingStore
from trip_matching.infra.store.postgres import PostgresMatchingStore


class TestOpenBackends:
    """Тесты open_backends."""

    @pytest.mark.asyncio
    async def test_memory_backends(self, mock_config: dict[str, Any]) -> None:
        """Бэкенды в памяти не открывают внешних подключений."""
        backends = await open_backends(Settings.from_dict(mock_config))

        assert isinstance(backends.store, InMemoryMatchingStore)
        assert isinstance(backends.publisher, InMemoryEventStream)
        assert isinstance(backends.cache, InMemoryCache)
        assert isinstance(backends.pricing, HttpPricingEstimator)
        assert backends.opened == set()

        await close_backends(backends)

    @pytest.mark.asyncio
    async def test_external_backends(self, mock_config: dict[str, Any]) -> None:
        mock_config.update(STORE_BACKEND="postgres", CACHE_BACKEND="redis")

        with patch("trip_matching.infra.backends.init_db", AsyncMock()), \
             patch("trip_matching.infra.backends.init_redis", AsyncMock()):
            backends = await open_backends(Settings.from_dict(mock_config))

        assert isinstance(backends.store, PostgresMatchingStore)
        assert isinstance(backends.cache, RedisCache)
        assert backends.opened == {"postgres", "redis"}

    @pytest.mark.asyncio
    async def test_unknown_backend(self, mock_config: dict[str, Any]) -> None:
        mock_config["EVENT_BACKEND"] = "kafka"

        with pytest.raises(ValueError):
            await open_backends(Settings.from_dict(mock_config))


class TestCloseBackends:
    """Тесты close_backends."""

    @pytest.mark.asyncio
    async def test_closes_only_opened(self) -> None:
        """Закрываются только подключения из opened."""
        pricing = HttpPricingEstimator(url="http://pricing.test", retry=AsyncMock())
        backends = Backends(
            store=InMemoryMatchingStore(),
            publisher=InMemoryEventStream(),
            cache=InMemoryCache(),
            pricing=pricing,
            opened={"redis"},
        )

        with patch("trip_matching.infra.backends.close_redis", AsyncMock()) as close_redis, \
             patch("trip_matching.infra.backends.close_db", AsyncMock()) as close_db, \
             patch("trip_matching.infra.backends.close_event_bus", AsyncMock()) as close_bus:
            await close_backends(backends)

        close_redis.assert_awaited_once()
        close_db.assert_not_awaited()
        close_bus.assert_not_awaited()
