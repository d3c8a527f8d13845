# tests/infra/test_memory_store.py
"""
Тесты хранилища в памяти: условные записи и составные операции.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from trip_matching.common.constants import (
    BIDDABLE_STATUSES,
    CallerRole,
    OfferStatus,
    OrderStatus,
    ServiceClass,
)
from trip_matching.core.bidding.models import Offer
from trip_matching.core.orders.models import CancellationRecord, TripRequest
from trip_matching.core.workers.models import WorkerAvailability
from trip_matching.infra.store.memory import InMemoryMatchingStore

NOW = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def make_request(pickup, dropoff):
    def _make(status: OrderStatus = OrderStatus.BIDDING_OPEN, **overrides) -> TripRequest:
        data = {
            "requester_id": "client-1",
            "origin": pickup,
            "destination": dropoff,
            "service_class": ServiceClass.STANDARD,
            "estimated_price": 10000.0,
            "search_radius_m": 3000.0,
            "bidding_expires_at": NOW + timedelta(seconds=60),
            "status": status,
        }
        data.update(overrides)
        return TripRequest(**data)

    return _make


def make_worker(worker_id: str = "w-1", seconds: int = 0, **overrides) -> WorkerAvailability:
    data = {
        "worker_id": worker_id,
        "service_class": ServiceClass.STANDARD,
        "latitude": -4.32,
        "longitude": 15.32,
        "last_ping_at": NOW + timedelta(seconds=seconds),
    }
    data.update(overrides)
    return WorkerAvailability(**data)


async def assign_worker(store: InMemoryMatchingStore, make_request, worker_id: str) -> str:
    """Назначает исполнителя на отдельный заказ через принятие предложения."""
    other = await store.create_request(make_request(requester_id="client-9"))
    offer = await store.create_offer(Offer(request_id=other.id, worker_id=worker_id, offered_price=9000))
    await store.commit_acceptance(other.id, offer.id, NOW)
    return other.id


class TestRequests:
    """Тесты операций с заказами."""

    @pytest.mark.asyncio
    async def test_returns_copies(self, store: InMemoryMatchingStore, make_request) -> None:
        """Изменение отданной модели не меняет хранимую."""
        request = await store.create_request(make_request())
        request.status = OrderStatus.COMPLETED

        fetched = await store.get_request(request.id)

        assert fetched.status == OrderStatus.BIDDING_OPEN

    @pytest.mark.asyncio
    async def test_transition_checks_expected(self, store: InMemoryMatchingStore, make_request) -> None:
        request = await store.create_request(make_request(OrderStatus.PENDING))

        lost = await store.transition_request(request.id, [OrderStatus.BIDDING_OPEN], OrderStatus.ACCEPTED)
        moved = await store.transition_request(
            request.id,
            [OrderStatus.PENDING],
            OrderStatus.BIDDING_OPEN,
        )

        assert lost is None
        assert moved.status == OrderStatus.BIDDING_OPEN
        assert moved.version == 1

    @pytest.mark.asyncio
    async def test_open_request_for_requester(self, store: InMemoryMatchingStore, make_request) -> None:
        await store.create_request(make_request(OrderStatus.CANCELLED))
        assert await store.get_open_request_for_requester("client-1") is None

        active = await store.create_request(make_request())
        found = await store.get_open_request_for_requester("client-1")

        assert found.id == active.id

    @pytest.mark.asyncio
    async def test_exclusive_create(self, store: InMemoryMatchingStore, make_request) -> None:
        """Эксклюзивная вставка не проходит при открытом заказе клиента."""
        first = await store.create_request(make_request(), exclusive=True)
        second = await store.create_request(make_request(), exclusive=True)
        other_client = await store.create_request(make_request(requester_id="client-2"), exclusive=True)

        assert first is not None
        assert second is None
        assert other_client is not None
        assert (await store.get_open_request_for_requester("client-1")).id == first.id

    @pytest.mark.asyncio
    async def test_search_radius_only_while_biddable(self, store: InMemoryMatchingStore, make_request) -> None:
        open_request = await store.create_request(make_request())
        closed_request = await store.create_request(make_request(OrderStatus.ACCEPTED))

        widened = await store.update_search_radius(open_request.id, 4500.0)

        assert widened.search_radius_m == 4500.0
        assert await store.update_search_radius(closed_request.id, 4500.0) is None

    @pytest.mark.asyncio
    async def test_list_expired_sessions(self, store: InMemoryMatchingStore, make_request) -> None:
        """В выборку попадают только открытые торги с истёкшим окном."""
        expired = await store.create_request(make_request(bidding_expires_at=NOW - timedelta(seconds=1)))
        await store.create_request(make_request())
        await store.create_request(
            make_request(OrderStatus.CANCELLED, bidding_expires_at=NOW - timedelta(seconds=1))
        )

        result = await store.list_expired_sessions(NOW)

        assert [r.id for r in result] == [expired.id]
        assert all(r.status in BIDDABLE_STATUSES for r in result)


class TestOffers:
    """Тесты операций с предложениями."""

    @pytest.mark.asyncio
    async def test_one_pending_offer_per_worker(self, store: InMemoryMatchingStore) -> None:
        first = await store.create_offer(Offer(request_id="o-1", worker_id="w-1", offered_price=9000))

        duplicate = await store.create_offer(Offer(request_id="o-1", worker_id="w-1", offered_price=8000))
        await store.set_offer_status(first.id, OfferStatus.PENDING, OfferStatus.WITHDRAWN, NOW)
        again = await store.create_offer(Offer(request_id="o-1", worker_id="w-1", offered_price=8000))

        assert duplicate is None
        assert again is not None

    @pytest.mark.asyncio
    async def test_update_only_pending(self, store: InMemoryMatchingStore) -> None:
        offer = await store.create_offer(Offer(request_id="o-1", worker_id="w-1", offered_price=9000))
        await store.set_offer_status(offer.id, OfferStatus.PENDING, OfferStatus.REJECTED, NOW)

        result = await store.update_offer(
            offer.id, offered_price=8000, message=None, eta_minutes=None, now=NOW
        )

        assert result is None

    @pytest.mark.asyncio
    async def test_close_pending(self, store: InMemoryMatchingStore) -> None:
        for worker_id in ("w-1", "w-2"):
            await store.create_offer(Offer(request_id="o-1", worker_id=worker_id, offered_price=9000))
        await store.create_offer(Offer(request_id="o-2", worker_id="w-1", offered_price=9000))

        closed = await store.close_pending_offers("o-1", OfferStatus.EXPIRED, NOW)

        assert closed == 2
        assert len(await store.list_offers("o-2", [OfferStatus.PENDING])) == 1


class TestCompositeWrites:
    """Тесты составных операций принятия и отмены."""

    @pytest.mark.asyncio
    async def test_commit_acceptance(self, store: InMemoryMatchingStore, make_request) -> None:
        """Принятие закрывает остальные предложения и назначает исполнителя."""
        request = await store.create_request(make_request())
        await store.upsert_worker_location(make_worker("w-1"))
        winner = await store.create_offer(Offer(request_id=request.id, worker_id="w-1", offered_price=9000))
        loser = await store.create_offer(Offer(request_id=request.id, worker_id="w-2", offered_price=9500))

        accepted = await store.commit_acceptance(request.id, winner.id, NOW)

        assert accepted.status == OrderStatus.ACCEPTED
        assert accepted.final_price == 9000
        assert accepted.worker_id == "w-1"
        assert (await store.get_offer(loser.id)).status == OfferStatus.REJECTED
        assert (await store.get_worker("w-1")).current_assignment == request.id

    @pytest.mark.asyncio
    async def test_acceptance_refused_for_busy_worker(
        self, store: InMemoryMatchingStore, make_request
    ) -> None:
        request = await store.create_request(make_request())
        await store.upsert_worker_location(make_worker("w-1"))
        await assign_worker(store, make_request, "w-1")
        offer = await store.create_offer(Offer(request_id=request.id, worker_id="w-1", offered_price=9000))

        assert await store.commit_acceptance(request.id, offer.id, NOW) is None
        assert (await store.get_request(request.id)).status == OrderStatus.BIDDING_OPEN

    @pytest.mark.asyncio
    async def test_acceptance_assigns_worker_without_ping(
        self, store: InMemoryMatchingStore, make_request
    ) -> None:
        """Исполнитель без пингов всё равно получает назначение и не попадает в выборку после пинга."""
        request = await store.create_request(make_request())
        offer = await store.create_offer(Offer(request_id=request.id, worker_id="w-new", offered_price=9000))

        await store.commit_acceptance(request.id, offer.id, NOW)
        placeholder = await store.get_worker("w-new")
        await store.upsert_worker_location(make_worker("w-new", seconds=5))

        assert placeholder.current_assignment == request.id
        assert placeholder.online is False
        assert (await store.get_worker("w-new")).current_assignment == request.id
        assert await store.list_available_workers(ServiceClass.STANDARD, NOW - timedelta(seconds=120)) == []

    @pytest.mark.asyncio
    async def test_worker_without_ping_cannot_take_second_order(
        self, store: InMemoryMatchingStore, make_request
    ) -> None:
        await assign_worker(store, make_request, "w-new")
        request = await store.create_request(make_request(requester_id="client-2"))
        offer = await store.create_offer(Offer(request_id=request.id, worker_id="w-new", offered_price=9000))

        assert await store.commit_acceptance(request.id, offer.id, NOW) is None

    @pytest.mark.asyncio
    async def test_second_acceptance_lost(self, store: InMemoryMatchingStore, make_request) -> None:
        request = await store.create_request(make_request())
        first = await store.create_offer(Offer(request_id=request.id, worker_id="w-1", offered_price=9000))
        second = await store.create_offer(Offer(request_id=request.id, worker_id="w-2", offered_price=9500))

        assert await store.commit_acceptance(request.id, first.id, NOW) is not None
        assert await store.commit_acceptance(request.id, second.id, NOW) is None

    @pytest.mark.asyncio
    async def test_commit_cancellation(self, store: InMemoryMatchingStore, make_request) -> None:
        """Отмена пишет запись и освобождает исполнителя."""
        request = await store.create_request(make_request())
        await store.upsert_worker_location(make_worker("w-1"))
        offer = await store.create_offer(Offer(request_id=request.id, worker_id="w-1", offered_price=9000))
        await store.commit_acceptance(request.id, offer.id, NOW)
        record = CancellationRecord(
            order_id=request.id,
            initiator_id="client-1",
            initiator_role=CallerRole.CLIENT,
            fee_amount=900.0,
            status_at_cancellation=OrderStatus.ACCEPTED,
        )

        lost = await store.commit_cancellation(request.id, OrderStatus.BIDDING_OPEN, record, NOW)
        cancelled = await store.commit_cancellation(request.id, OrderStatus.ACCEPTED, record, NOW)

        assert lost is None
        assert cancelled.status == OrderStatus.CANCELLED
        assert (await store.get_worker("w-1")).current_assignment is None
        assert [r.fee_amount for r in await store.list_cancellations(request.id)] == [900.0]


class TestWorkers:
    """Тесты состояния исполнителей."""

    @pytest.mark.asyncio
    async def test_older_ping_ignored(self, store: InMemoryMatchingStore) -> None:
        await store.upsert_worker_location(make_worker(seconds=10, latitude=-4.30))

        current = await store.upsert_worker_location(make_worker(seconds=5, latitude=-4.40))

        assert current.latitude == -4.30

    @pytest.mark.asyncio
    async def test_ping_keeps_assignment(self, store: InMemoryMatchingStore, make_request) -> None:
        """Новый пинг не снимает назначение."""
        await store.upsert_worker_location(make_worker())
        order_id = await assign_worker(store, make_request, "w-1")

        updated = await store.upsert_worker_location(make_worker(seconds=5, current_assignment=None))

        assert updated.current_assignment == order_id

    @pytest.mark.asyncio
    async def test_list_available(self, store: InMemoryMatchingStore, make_request) -> None:
        """Выборка по классу, свободе и свежести пинга."""
        await store.upsert_worker_location(make_worker("fresh", seconds=0))
        await store.upsert_worker_location(make_worker("stale", seconds=-300))
        await store.upsert_worker_location(make_worker("moto", service_class=ServiceClass.MOTO))
        await store.upsert_worker_location(make_worker("offline", online=False))
        await store.upsert_worker_location(make_worker("busy"))
        await assign_worker(store, make_request, "busy")

        result = await store.list_available_workers(ServiceClass.STANDARD, NOW - timedelta(seconds=120))

        assert [w.worker_id for w in result] == ["fresh"]
