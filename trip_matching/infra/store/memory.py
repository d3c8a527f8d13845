# trip_matching/infra/store/memory.py
"""
Хранилище в памяти процесса.

Каждый метод выполняется без await внутри, поэтому в рамках одного event loop
условные записи атомарны. Наружу отдаются копии моделей.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Collection

from trip_matching.common.constants import (
    BIDDABLE_STATUSES,
    TERMINAL_STATUSES,
    OfferStatus,
    OrderStatus,
    ServiceClass,
)
from trip_matching.core.bidding.models import Offer
from trip_matching.core.orders.models import CancellationRecord, TripRequest
from trip_matching.core.workers.models import WorkerAvailability
from trip_matching.infra.store.base import MatchingStore


class InMemoryMatchingStore(MatchingStore):
    """Эталонная реализация для одного процесса и для тестов."""

    def __init__(self) -> None:
        self._requests: dict[str, TripRequest] = {}
        self._offers: dict[str, Offer] = {}
        self._workers: dict[str, WorkerAvailability] = {}
        self._cancellations: list[CancellationRecord] = []

    # =========================================================================
    # ЗАКАЗЫ
    # =========================================================================

    async def create_request(self, request: TripRequest, *, exclusive: bool = False) -> TripRequest | None:
        if exclusive and self._find_open(request.requester_id) is not None:
            return None
        self._requests[request.id] = request.model_copy(deep=True)
        return request.model_copy(deep=True)

    async def get_request(self, request_id: str) -> TripRequest | None:
        request = self._requests.get(request_id)
        return request.model_copy(deep=True) if request else None

    async def get_open_request_for_requester(self, requester_id: str) -> TripRequest | None:
        request = self._find_open(requester_id)
        return request.model_copy(deep=True) if request else None

    def _find_open(self, requester_id: str) -> TripRequest | None:
        for request in self._requests.values():
            if request.requester_id == requester_id and request.status not in TERMINAL_STATUSES:
                return request
        return None

    async def transition_request(
        self,
        request_id: str,
        expected: Collection[OrderStatus],
        new_status: OrderStatus,
        *,
        fields: dict[str, Any] | None = None,
        release_worker: bool = False,
    ) -> TripRequest | None:
        request = self._requests.get(request_id)
        if request is None or request.status not in expected:
            return None

        updated = request.model_copy(
            update={**(fields or {}), "status": new_status, "version": request.version + 1},
            deep=True,
        )
        if release_worker:
            self._release_worker(updated)
        self._requests[request_id] = updated
        return updated.model_copy(deep=True)

    async def update_search_radius(self, request_id: str, radius_m: float) -> TripRequest | None:
        request = self._requests.get(request_id)
        if request is None or request.status not in BIDDABLE_STATUSES:
            return None
        request.search_radius_m = radius_m
        return request.model_copy(deep=True)

    async def list_expired_sessions(self, now: datetime) -> list[TripRequest]:
        return [
            request.model_copy(deep=True)
            for request in self._requests.values()
            if request.status in BIDDABLE_STATUSES and request.bidding_expires_at <= now
        ]

    # =========================================================================
    # ПРЕДЛОЖЕНИЯ
    # =========================================================================

    async def create_offer(self, offer: Offer) -> Offer | None:
        for existing in self._offers.values():
            if (
                existing.request_id == offer.request_id
                and existing.worker_id == offer.worker_id
                and existing.is_pending
            ):
                return None
        self._offers[offer.id] = offer.model_copy(deep=True)
        return offer.model_copy(deep=True)

    async def get_offer(self, offer_id: str) -> Offer | None:
        offer = self._offers.get(offer_id)
        return offer.model_copy(deep=True) if offer else None

    async def list_offers(
        self,
        request_id: str,
        statuses: Collection[OfferStatus] | None = None,
    ) -> list[Offer]:
        return [
            offer.model_copy(deep=True)
            for offer in self._offers.values()
            if offer.request_id == request_id and (statuses is None or offer.status in statuses)
        ]

    async def set_offer_status(
        self,
        offer_id: str,
        expected: OfferStatus,
        new_status: OfferStatus,
        now: datetime,
    ) -> Offer | None:
        offer = self._offers.get(offer_id)
        if offer is None or offer.status != expected:
            return None
        offer.status = new_status
        offer.updated_at = now
        return offer.model_copy(deep=True)

    async def update_offer(
        self,
        offer_id: str,
        *,
        offered_price: float,
        message: str | None,
        eta_minutes: int | None,
        now: datetime,
    ) -> Offer | None:
        offer = self._offers.get(offer_id)
        if offer is None or not offer.is_pending:
            return None
        offer.offered_price = offered_price
        offer.message = message
        offer.eta_minutes = eta_minutes
        offer.updated_at = now
        return offer.model_copy(deep=True)

    async def close_pending_offers(
        self,
        request_id: str,
        new_status: OfferStatus,
        now: datetime,
    ) -> int:
        return self._close_pending(request_id, new_status, now)

    def _close_pending(
        self,
        request_id: str,
        new_status: OfferStatus,
        now: datetime,
        keep: str | None = None,
    ) -> int:
        closed = 0
        for offer in self._offers.values():
            if offer.request_id == request_id and offer.is_pending and offer.id != keep:
                offer.status = new_status
                offer.updated_at = now
                closed += 1
        return closed

    # =========================================================================
    # СОСТАВНЫЕ ОПЕРАЦИИ
    # =========================================================================

    async def commit_acceptance(
        self,
        request_id: str,
        offer_id: str,
        now: datetime,
    ) -> TripRequest | None:
        request = self._requests.get(request_id)
        offer = self._offers.get(offer_id)
        if request is None or request.status not in BIDDABLE_STATUSES:
            return None
        if offer is None or offer.request_id != request_id or not offer.is_pending:
            return None

        worker = self._workers.get(offer.worker_id)
        if worker is not None and worker.current_assignment not in (None, request_id):
            return None

        # Все проверки пройдены: дальше только запись
        updated = request.model_copy(
            update={
                "status": OrderStatus.ACCEPTED,
                "accepted_offer_id": offer.id,
                "worker_id": offer.worker_id,
                "final_price": offer.offered_price,
                "accepted_at": now,
                "version": request.version + 1,
            },
            deep=True,
        )
        self._requests[request_id] = updated

        offer.status = OfferStatus.ACCEPTED
        offer.updated_at = now
        self._close_pending(request_id, OfferStatus.REJECTED, now, keep=offer.id)

        if worker is None:
            self._workers[offer.worker_id] = WorkerAvailability.assigned_before_ping(
                offer.worker_id,
                request_id,
                request.service_class,
                request.origin.latitude,
                request.origin.longitude,
            )
        else:
            worker.current_assignment = request_id

        return updated.model_copy(deep=True)

    async def commit_cancellation(
        self,
        request_id: str,
        expected_status: OrderStatus,
        record: CancellationRecord,
        now: datetime,
    ) -> TripRequest | None:
        request = self._requests.get(request_id)
        if request is None or request.status != expected_status:
            return None

        updated = request.model_copy(
            update={
                "status": OrderStatus.CANCELLED,
                "cancelled_at": now,
                "version": request.version + 1,
            },
            deep=True,
        )
        self._requests[request_id] = updated
        self._cancellations.append(record.model_copy(deep=True))
        self._close_pending(request_id, OfferStatus.REJECTED, now)
        self._release_worker(updated)

        return updated.model_copy(deep=True)

    async def list_cancellations(self, order_id: str) -> list[CancellationRecord]:
        return [
            record.model_copy(deep=True)
            for record in self._cancellations
            if record.order_id == order_id
        ]

    # =========================================================================
    # ИСПОЛНИТЕЛИ
    # =========================================================================

    def _release_worker(self, request: TripRequest) -> None:
        if request.worker_id is None:
            return
        worker = self._workers.get(request.worker_id)
        if worker is not None and worker.current_assignment == request.id:
            worker.current_assignment = None

    async def upsert_worker_location(self, worker: WorkerAvailability) -> WorkerAvailability:
        current = self._workers.get(worker.worker_id)
        if current is not None and worker.last_ping_at < current.last_ping_at:
            return current.model_copy(deep=True)

        stored = worker.model_copy(
            update={"current_assignment": current.current_assignment if current else None},
            deep=True,
        )
        self._workers[worker.worker_id] = stored
        return stored.model_copy(deep=True)

    async def get_worker(self, worker_id: str) -> WorkerAvailability | None:
        worker = self._workers.get(worker_id)
        return worker.model_copy(deep=True) if worker else None

    async def list_available_workers(
        self,
        service_class: ServiceClass,
        seen_after: datetime,
    ) -> list[WorkerAvailability]:
        return [
            worker.model_copy(deep=True)
            for worker in self._workers.values()
            if worker.service_class == service_class
            and worker.is_free
            and worker.last_ping_at >= seen_after
        ]
