# tests/core/test_locator.py
"""
Тесты поиска исполнителей с расширением радиуса.
"""

from __future__ import annotations

import pytest

from trip_matching.common.constants import ServiceClass
from trip_matching.common.exceptions import NoDriversAvailable
from trip_matching.config.loader import SearchSettings


async def search(engine, pickup, **kwargs):
    return await engine.locator.find_candidates(
        pickup.latitude, pickup.longitude, ServiceClass.STANDARD, **kwargs
    )


class TestNextRadius:
    def test_expansion(self, engine) -> None:
        assert engine.locator.next_radius(3000) == 4500
        assert engine.locator.next_radius(4500) == 6750

    def test_capped(self, engine) -> None:
        assert engine.locator.next_radius(12000) == 15000
        assert engine.locator.next_radius(15000) == 15000


class TestFindCandidates:
    """Тесты поиска."""

    @pytest.mark.asyncio
    async def test_found_in_first_radius(self, engine, place_worker, pickup) -> None:
        await place_worker("w-1", meters=1000)

        result = await search(engine, pickup)

        assert result.radius_m == 3000
        assert result.attempts == 1
        assert result.candidates[0].worker_id == "w-1"
        assert result.candidates[0].distance_m == pytest.approx(1000, rel=1e-3)
        assert result.candidates[0].eta_minutes == 3

    @pytest.mark.asyncio
    async def test_radius_grows_until_found(self, engine, place_worker, pickup) -> None:
        await place_worker("w-far", meters=6000)
        await place_worker("w-mid", meters=5000)

        result = await search(engine, pickup)

        assert result.radius_m == 6750
        assert result.attempts == 3
        assert [c.worker_id for c in result.candidates] == ["w-mid", "w-far"]

    @pytest.mark.asyncio
    async def test_sorted_by_distance(self, engine, place_worker, pickup) -> None:
        for worker_id, meters in (("w-3", 2500), ("w-1", 300), ("w-2", 1200)):
            await place_worker(worker_id, meters=meters)

        result = await search(engine, pickup)

        assert [c.worker_id for c in result.candidates] == ["w-1", "w-2", "w-3"]

    @pytest.mark.asyncio
    async def test_excluded_workers(self, engine, place_worker, pickup) -> None:
        await place_worker("stale", meters=100, seconds_ago=121)
        await place_worker("offline", meters=100, online=False)
        await place_worker("moto", meters=100, service_class=ServiceClass.MOTO)
        await place_worker("ok", meters=400, seconds_ago=120)

        result = await search(engine, pickup)

        assert [c.worker_id for c in result.candidates] == ["ok"]

    @pytest.mark.asyncio
    async def test_busy_worker_excluded(self, engine, place_worker, create_order, pickup) -> None:
        await place_worker("w-1", meters=100)
        await place_worker("w-2", meters=200)
        order = await create_order()
        offer = await engine.bidding.submit_offer(order.id, "w-1", 9000.0)
        await engine.arbiter.accept_offer(order.id, offer.id, "client-1")

        result = await search(engine, pickup)

        assert [c.worker_id for c in result.candidates] == ["w-2"]

    @pytest.mark.asyncio
    async def test_worker_accepted_before_first_ping_excluded(
        self, engine, place_worker, create_order, pickup
    ) -> None:
        """Назначение, полученное до первого пинга, сохраняется и после него."""
        await place_worker("w-2", meters=200)
        order = await create_order()
        offer = await engine.bidding.submit_offer(order.id, "w-9", 9000.0)
        await engine.arbiter.accept_offer(order.id, offer.id, "client-1")
        await place_worker("w-9", meters=50)

        result = await search(engine, pickup)

        assert [c.worker_id for c in result.candidates] == ["w-2"]

    @pytest.mark.asyncio
    async def test_max_candidates(self, engine_factory, pickup) -> None:
        engine = engine_factory(search_config=SearchSettings(MAX_CANDIDATES=2))
        for index in range(4):
            latitude = pickup.latitude + (index + 1) * 0.001
            await engine.locations.ingest_ping(f"w-{index}", latitude, pickup.longitude, "standard")

        result = await search(engine, pickup)

        assert [c.worker_id for c in result.candidates] == ["w-0", "w-1"]

    @pytest.mark.asyncio
    async def test_nobody_found(self, engine, place_worker, pickup) -> None:
        await place_worker("w-1", meters=12000)

        with pytest.raises(NoDriversAvailable) as exc_info:
            await search(engine, pickup)

        assert exc_info.value.radius_m == 10125
        assert exc_info.value.attempts == 4

    @pytest.mark.asyncio
    async def test_explicit_start_radius(self, engine, place_worker, pickup) -> None:
        await place_worker("w-1", meters=12000)

        result = await search(engine, pickup, radius_m=10125)

        assert result.radius_m == 15000
        assert result.attempts == 2

    @pytest.mark.asyncio
    async def test_cap_stops_expansion(self, engine, place_worker, pickup) -> None:
        await place_worker("w-1", meters=20000)

        with pytest.raises(NoDriversAvailable) as exc_info:
            await search(engine, pickup, radius_m=15000)

        assert exc_info.value.radius_m == 15000
        assert exc_info.value.attempts == 1
