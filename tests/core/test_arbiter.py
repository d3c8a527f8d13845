# tests/core/test_arbiter.py
"""
Тесты арбитра принятия: ручное и автоматическое принятие, идемпотентность,
гонка параллельных принятий.
"""

from __future__ import annotations

import asyncio
from datetime import datetime

import pytest

from trip_matching.common.constants import CallerRole, OfferStatus, OrderStatus
from trip_matching.common.exceptions import (
    ConflictError,
    InvalidStateTransition,
    NotFoundError,
    ValidationError,
)
from trip_matching.core.bidding.models import Offer
from trip_matching.core.orders.models import TripRequest
from trip_matching.events import EventTypes
from trip_matching.infra.store.memory import InMemoryMatchingStore


class YieldingStore(InMemoryMatchingStore):
    """Хранилище, которое отдаёт управление перед чтением и записью (имитация сетевого вызова)."""

    async def get_request(self, request_id: str) -> TripRequest | None:
        await asyncio.sleep(0)
        return await super().get_request(request_id)

    async def commit_acceptance(self, request_id: str, offer_id: str, now: datetime) -> TripRequest | None:
        await asyncio.sleep(0)
        return await super().commit_acceptance(request_id, offer_id, now)


class SlowOfferStore(YieldingStore):
    """Ещё и чтение предложения уступает управление: между записью принятия и её событиями."""

    async def get_offer(self, offer_id: str) -> Offer | None:
        await asyncio.sleep(0)
        return await super().get_offer(offer_id)


class TestAcceptOffer:
    """Тесты ручного принятия."""

    @pytest.mark.asyncio
    async def test_accept(self, engine, place_worker, create_order) -> None:
        await place_worker("w-1")
        order = await create_order()
        offer = await engine.bidding.submit_offer(order.id, "w-1", 9000.0)
        other = await engine.bidding.submit_offer(order.id, "w-2", 9500.0)

        result = await engine.arbiter.accept_offer(order.id, offer.id, "client-1")

        assert not result.already_accepted
        assert result.request.status == OrderStatus.ACCEPTED
        assert result.request.worker_id == "w-1"
        assert result.request.final_price == 9000.0
        assert result.request.accepted_at == engine.clock()
        assert result.offer.status == OfferStatus.ACCEPTED
        assert (await engine.store.get_offer(other.id)).status == OfferStatus.REJECTED
        assert (await engine.store.get_worker("w-1")).current_assignment == order.id

        types = engine.events.event_types(order.id)
        assert types[-2:] == [EventTypes.OFFER_ACCEPTED, EventTypes.STATUS_CHANGED]

    @pytest.mark.asyncio
    async def test_accept_from_pending(self, engine, create_order) -> None:
        order = await create_order()
        offer = await engine.bidding.submit_offer(order.id, "w-1", 9000.0)

        result = await engine.arbiter.accept_offer(order.id, offer.id, "client-1")

        assert result.request.status == OrderStatus.ACCEPTED
        assert result.request.worker_id == "w-1"

    @pytest.mark.asyncio
    async def test_repeat_accept_is_idempotent(self, engine, create_order) -> None:
        order = await create_order()
        offer = await engine.bidding.submit_offer(order.id, "w-1", 9000.0)
        first = await engine.arbiter.accept_offer(order.id, offer.id, "client-1")
        events_before = len(engine.events.history(order.id))

        second = await engine.arbiter.accept_offer(order.id, offer.id, "client-1")

        assert second.already_accepted
        assert second.request.version == first.request.version
        assert len(engine.events.history(order.id)) == events_before

    @pytest.mark.asyncio
    async def test_other_offer_after_acceptance(self, engine, create_order) -> None:
        order = await create_order()
        offer = await engine.bidding.submit_offer(order.id, "w-1", 9000.0)
        other = await engine.bidding.submit_offer(order.id, "w-2", 9500.0)
        await engine.arbiter.accept_offer(order.id, offer.id, "client-1")

        with pytest.raises(ConflictError):
            await engine.arbiter.accept_offer(order.id, other.id, "client-1")

    @pytest.mark.asyncio
    async def test_wrong_requester(self, engine, create_order) -> None:
        order = await create_order()
        offer = await engine.bidding.submit_offer(order.id, "w-1", 9000.0)

        with pytest.raises(ValidationError):
            await engine.arbiter.accept_offer(order.id, offer.id, "client-2")

    @pytest.mark.asyncio
    async def test_admin_may_accept(self, engine, create_order) -> None:
        order = await create_order()
        offer = await engine.bidding.submit_offer(order.id, "w-1", 9000.0)

        result = await engine.arbiter.accept_offer(order.id, offer.id, "admin-1", CallerRole.ADMIN)

        assert result.request.status == OrderStatus.ACCEPTED

    @pytest.mark.asyncio
    async def test_offer_of_other_order(self, engine, create_order) -> None:
        first = await create_order("client-1")
        second = await create_order("client-2")
        offer = await engine.bidding.submit_offer(second.id, "w-1", 9000.0)

        with pytest.raises(NotFoundError):
            await engine.arbiter.accept_offer(first.id, offer.id, "client-1")

    @pytest.mark.asyncio
    async def test_withdrawn_offer(self, engine, create_order) -> None:
        order = await create_order()
        offer = await engine.bidding.submit_offer(order.id, "w-1", 9000.0)
        await engine.bidding.withdraw_offer(offer.id, "w-1")

        with pytest.raises(ConflictError):
            await engine.arbiter.accept_offer(order.id, offer.id, "client-1")

    @pytest.mark.asyncio
    async def test_cancelled_order(self, engine, create_order) -> None:
        order = await create_order()
        offer = await engine.bidding.submit_offer(order.id, "w-1", 9000.0)
        await engine.cancellation.cancel_order(order.id, "client-1", CallerRole.CLIENT)

        with pytest.raises(InvalidStateTransition):
            await engine.arbiter.accept_offer(order.id, offer.id, "client-1")

    @pytest.mark.asyncio
    async def test_busy_worker(self, engine, place_worker, create_order) -> None:
        await place_worker("w-1")
        first = await create_order("client-1")
        second = await create_order("client-2")
        offer_a = await engine.bidding.submit_offer(first.id, "w-1", 9000.0)
        offer_b = await engine.bidding.submit_offer(second.id, "w-1", 9000.0)
        await engine.arbiter.accept_offer(first.id, offer_a.id, "client-1")

        with pytest.raises(ConflictError):
            await engine.arbiter.accept_offer(second.id, offer_b.id, "client-2")

        assert (await engine.lifecycle.get_order(second.id)).is_biddable
        assert (await engine.store.get_offer(offer_b.id)).status == OfferStatus.REJECTED
        assert EventTypes.OFFER_WITHDRAWN in engine.events.event_types(second.id)

    @pytest.mark.asyncio
    async def test_unknown_order(self, engine) -> None:
        with pytest.raises(NotFoundError):
            await engine.arbiter.accept_offer("missing", "offer", "client-1")


class TestConcurrentAcceptance:
    """Параллельные принятия: ровно одно проходит."""

    @pytest.mark.asyncio
    async def test_two_manual_accepts(self, engine_factory, trip_dto) -> None:
        engine = engine_factory(store=YieldingStore())
        order = await engine.intake.create_request(trip_dto())
        await engine.intake.drain()
        offer_a = await engine.bidding.submit_offer(order.id, "w-1", 9000.0)
        offer_b = await engine.bidding.submit_offer(order.id, "w-2", 9500.0)

        results = await asyncio.gather(
            engine.arbiter.accept_offer(order.id, offer_a.id, "client-1"),
            engine.arbiter.accept_offer(order.id, offer_b.id, "client-1"),
            return_exceptions=True,
        )

        successes = [r for r in results if not isinstance(r, Exception)]
        failures = [r for r in results if isinstance(r, Exception)]
        assert len(successes) == 1
        assert len(failures) == 1
        assert isinstance(failures[0], ConflictError)

        offers = await engine.store.list_offers(order.id, [OfferStatus.ACCEPTED])
        assert len(offers) == 1
        assert engine.events.event_types(order.id).count(EventTypes.OFFER_ACCEPTED) == 1

    @pytest.mark.asyncio
    async def test_manual_accept_races_expiry(self, engine_factory, trip_dto) -> None:
        engine = engine_factory(store=YieldingStore())
        order = await engine.intake.create_request(trip_dto())
        await engine.intake.drain()
        manual = await engine.bidding.submit_offer(order.id, "w-1", 9500.0)
        await engine.bidding.submit_offer(order.id, "w-2", 9000.0)
        engine.clock.advance(60)

        results = await asyncio.gather(
            engine.arbiter.accept_offer(order.id, manual.id, "client-1"),
            engine.bidding.expire_session(order.id),
            return_exceptions=True,
        )

        final = await engine.lifecycle.get_order(order.id)
        assert final.status == OrderStatus.ACCEPTED
        assert len(await engine.store.list_offers(order.id, [OfferStatus.ACCEPTED])) == 1
        assert engine.events.event_types(order.id).count(EventTypes.OFFER_ACCEPTED) == 1
        assert not isinstance(results[1], Exception)
        if isinstance(results[0], Exception):
            assert isinstance(results[0], ConflictError)
        else:
            assert final.accepted_offer_id == manual.id


class TestEventOrder:
    """Номера событий заказа идут в порядке версий, даже при параллельных записях."""

    @pytest.mark.asyncio
    async def test_accept_and_cancel_publish_in_commit_order(self, engine_factory, trip_dto) -> None:
        engine = engine_factory(store=SlowOfferStore())
        order = await engine.intake.create_request(trip_dto())
        await engine.intake.drain()
        offer = await engine.bidding.submit_offer(order.id, "w-1", 9000.0)

        await asyncio.gather(
            engine.arbiter.accept_offer(order.id, offer.id, "client-1"),
            engine.cancellation.cancel_order(order.id, "client-1", CallerRole.CLIENT),
            return_exceptions=True,
        )

        final = await engine.lifecycle.get_order(order.id)
        assert final.status == OrderStatus.CANCELLED

        history = engine.events.history(order.id)
        assert [event.sequence for event in history] == list(range(1, len(history) + 1))
        versions = [event.version for event in history if event.event_type == EventTypes.STATUS_CHANGED]
        assert versions == sorted(versions)
        assert len(versions) == len(set(versions))
        assert versions[-1] == final.version

        types = [event.event_type for event in history]
        if EventTypes.OFFER_ACCEPTED in types:
            assert types.index(EventTypes.OFFER_ACCEPTED) < types.index(EventTypes.ORDER_CANCELLED)
