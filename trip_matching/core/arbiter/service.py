# trip_matching/core/arbiter/service.py
"""
Арбитр принятия предложения.

Единственное место, где предложение становится accepted.
Победитель определяется одной условной записью в хранилище,
а не блокировкой в приложении: так гарантия держится между процессами.
"""

from __future__ import annotations

from dataclasses import dataclass

from trip_matching.common.clock import Clock, utc_now
from trip_matching.common.constants import CallerRole, OfferStatus, OrderStatus, TypeMsg
from trip_matching.common.exceptions import (
    ConflictError,
    InvalidStateTransition,
    NotFoundError,
    ValidationError,
)
from trip_matching.common.logger import log_info
from trip_matching.core.bidding.models import Offer
from trip_matching.core.orders.models import TripRequest
from trip_matching.core.orders.service import OrderLifecycleService
from trip_matching.events import OfferAccepted, OfferWithdrawn
from trip_matching.infra.event_bus import EventPublisher
from trip_matching.infra.store.base import MatchingStore

# Роли, которые принимают предложение не будучи клиентом заказа
PRIVILEGED_ROLES = frozenset({CallerRole.SYSTEM, CallerRole.ADMIN})


@dataclass
class AcceptanceResult:
    """Результат принятия предложения."""
    request: TripRequest
    offer: Offer
    already_accepted: bool = False


class AcceptanceArbiter:
    """Принятие предложения: ручное (клиент) или автоматическое (система)."""

    def __init__(
        self,
        store: MatchingStore,
        events: EventPublisher,
        lifecycle: OrderLifecycleService,
        clock: Clock = utc_now,
    ) -> None:
        self._store = store
        self._events = events
        self._lifecycle = lifecycle
        self._clock = clock

    async def accept_offer(
        self,
        request_id: str,
        offer_id: str,
        actor_id: str,
        actor_role: CallerRole = CallerRole.CLIENT,
    ) -> AcceptanceResult:
        """
        Принимает предложение.

        Args:
            request_id: ID заказа
            offer_id: ID предложения
            actor_id: Кто принимает (клиент или system)
            actor_role: Роль принимающего

        Returns:
            AcceptanceResult; повторный вызов для уже принятого предложения
            возвращает тот же результат с already_accepted=True

        Raises:
            NotFoundError: нет заказа или предложения
            ValidationError: предложение не этого заказа или чужой заказ
            ConflictError: победило другое предложение или предложение уже не активно
            InvalidStateTransition: заказ закрыт без принятия (отменён)
        """
        request = await self._store.get_request(request_id)
        if request is None:
            raise NotFoundError("Заказ", request_id)
        offer = await self._store.get_offer(offer_id)
        if offer is None or offer.request_id != request_id:
            raise NotFoundError("Предложение", offer_id)

        if actor_role not in PRIVILEGED_ROLES and actor_id != request.requester_id:
            raise ValidationError({"requester_id": "Принять предложение может только клиент заказа"})

        if request.accepted_offer_id == offer_id:
            return await self._already_accepted(request, offer)
        self._ensure_acceptable(request, offer)

        async with self._events.order_lock(request_id):
            updated = await self._store.commit_acceptance(request_id, offer_id, self._clock())
            if updated is None:
                return await self._resolve_lost_write(request_id, offer_id)

            accepted_offer = await self._store.get_offer(offer_id) or offer
            await log_info(
                f"Заказ {request_id}: принято предложение {offer_id} исполнителя {offer.worker_id} "
                f"за {offer.offered_price} ({actor_role})",
                type_msg=TypeMsg.INFO,
            )

            await self._events.publish(
                OfferAccepted(
                    order_id=request_id,
                    offer_id=offer_id,
                    worker_id=offer.worker_id,
                    final_price=offer.offered_price,
                    actor=actor_role,
                )
            )
            await self._lifecycle.publish_status(request.status, updated)

        return AcceptanceResult(request=updated, offer=accepted_offer)

    @staticmethod
    def _ensure_acceptable(request: TripRequest, offer: Offer) -> None:
        if request.accepted_offer_id is not None:
            raise ConflictError(f"По заказу {request.id} уже принято другое предложение")
        if not request.is_biddable:
            raise InvalidStateTransition(request.status, OrderStatus.ACCEPTED, request.id)
        if not offer.is_pending:
            raise ConflictError(f"Предложение {offer.id} уже не активно ({offer.status})")

    async def _already_accepted(self, request: TripRequest, offer: Offer) -> AcceptanceResult:
        await log_info(
            f"Повторное принятие предложения {offer.id} по заказу {request.id}",
            type_msg=TypeMsg.DEBUG,
        )
        return AcceptanceResult(request=request, offer=offer, already_accepted=True)

    async def _resolve_lost_write(self, request_id: str, offer_id: str) -> AcceptanceResult:
        """Условная запись не прошла: определяем причину по свежему состоянию."""
        fresh = await self._store.get_request(request_id)
        offer = await self._store.get_offer(offer_id)
        if fresh is None or offer is None:
            raise NotFoundError("Заказ", request_id)

        if fresh.accepted_offer_id == offer_id:
            return await self._already_accepted(fresh, offer)

        await log_info(
            f"Заказ {request_id}: принятие {offer_id} проиграло параллельной записи "
            f"(статус {fresh.status}, предложение {offer.status})",
            type_msg=TypeMsg.WARNING,
        )
        if fresh.accepted_offer_id is not None:
            raise ConflictError(f"По заказу {request_id} уже принято другое предложение")
        if not fresh.is_biddable:
            raise InvalidStateTransition(fresh.status, OrderStatus.ACCEPTED, request_id)
        if not offer.is_pending:
            raise ConflictError(f"Предложение {offer_id} уже не активно ({offer.status})")
        await self._reject_busy_offer(offer)
        raise ConflictError(f"Исполнитель {offer.worker_id} уже занят другим заказом")

    async def _reject_busy_offer(self, offer: Offer) -> None:
        """Исполнитель занят другим заказом: предложение больше не может выиграть."""
        rejected = await self._store.set_offer_status(
            offer.id, OfferStatus.PENDING, OfferStatus.REJECTED, self._clock()
        )
        if rejected is None:
            return
        await self._events.publish(
            OfferWithdrawn(
                order_id=offer.request_id,
                offer_id=offer.id,
                worker_id=offer.worker_id,
                reason="rejected",
            )
        )
