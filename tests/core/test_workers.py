# tests/core/test_workers.py
"""
Тесты приёма геопозиций исполнителей.
"""

from __future__ import annotations

from datetime import timedelta

import pytest

from trip_matching.common.constants import ServiceClass
from trip_matching.common.exceptions import ValidationError


class TestIngestPing:
    """Тесты пингов."""

    @pytest.mark.asyncio
    async def test_first_ping(self, engine) -> None:
        stored = await engine.locations.ingest_ping("w-1", -4.32, 15.31, "comfort")

        assert stored.service_class == ServiceClass.COMFORT
        assert stored.last_ping_at == engine.clock()
        assert stored.is_free

    @pytest.mark.asyncio
    async def test_delivery_type_accepted(self, engine) -> None:
        stored = await engine.locations.ingest_ping("w-1", -4.32, 15.31, "flash")

        assert stored.service_class == ServiceClass.MOTO

    @pytest.mark.asyncio
    async def test_invalid_ping(self, engine) -> None:
        with pytest.raises(ValidationError) as exc_info:
            await engine.locations.ingest_ping("", 91.0, -181.0, "spaceship")

        assert set(exc_info.value.errors) == {"worker_id", "latitude", "longitude", "service_class"}

    @pytest.mark.asyncio
    async def test_out_of_order_ping_ignored(self, engine) -> None:
        now = engine.clock()
        await engine.locations.ingest_ping("w-1", 1.0, 1.0, "standard", timestamp=now)

        stored = await engine.locations.ingest_ping(
            "w-1", 2.0, 2.0, "standard", timestamp=now - timedelta(seconds=5)
        )

        assert stored.latitude == 1.0
        assert stored.last_ping_at == now

    @pytest.mark.asyncio
    async def test_naive_timestamp(self, engine) -> None:
        naive = engine.clock().replace(tzinfo=None)

        stored = await engine.locations.ingest_ping("w-1", 1.0, 1.0, "standard", timestamp=naive)

        assert stored.last_ping_at == engine.clock()

    @pytest.mark.asyncio
    async def test_assignment_survives_ping(self, engine, place_worker, create_order) -> None:
        await place_worker("w-1")
        order = await create_order()
        offer = await engine.bidding.submit_offer(order.id, "w-1", 9000.0)
        await engine.arbiter.accept_offer(order.id, offer.id, "client-1")
        engine.clock.advance(10)

        stored = await engine.locations.ingest_ping("w-1", -4.33, 15.32, "standard")

        assert stored.current_assignment == order.id
        assert not stored.is_free

    @pytest.mark.asyncio
    async def test_going_offline(self, engine) -> None:
        await engine.locations.ingest_ping("w-1", 1.0, 1.0, "standard")
        engine.clock.advance(1)

        stored = await engine.locations.ingest_ping("w-1", 1.0, 1.0, "standard", online=False)

        assert not stored.is_free
