# trip_matching/core/orders/service.py
"""
Сервис жизненного цикла заказа.
Все смены статуса проходят через условную запись и публикуют status_changed.
"""

from __future__ import annotations

from typing import Collection

from trip_matching.common.clock import Clock, utc_now
from trip_matching.common.constants import OfferStatus, OrderStatus, TypeMsg
from trip_matching.common.exceptions import NotFoundError, ValidationError
from trip_matching.common.logger import log_info
from trip_matching.core.bidding.models import Offer
from trip_matching.core.orders.models import TripRequest
from trip_matching.core.orders.state_machine import TRANSITION_TIMESTAMPS, OrderStateMachine
from trip_matching.events import StatusChanged
from trip_matching.infra.event_bus import EventPublisher
from trip_matching.infra.store.base import MatchingStore


class OrderLifecycleService:
    """Сервис переходов статуса заказа."""

    def __init__(
        self,
        store: MatchingStore,
        events: EventPublisher,
        clock: Clock = utc_now,
    ) -> None:
        """
        Args:
            store: Хранилище (Dependency Injection)
            events: Публикатор событий
            clock: Источник времени
        """
        self._store = store
        self._events = events
        self._clock = clock

    # =========================================================================
    # ЧТЕНИЕ
    # =========================================================================

    async def get_order(self, order_id: str) -> TripRequest:
        """
        Получает заказ по ID.

        Raises:
            NotFoundError: заказ не найден
        """
        request = await self._store.get_request(order_id)
        if request is None:
            raise NotFoundError("Заказ", order_id)
        return request

    async def list_offers(
        self,
        order_id: str,
        statuses: Collection[OfferStatus] | None = None,
    ) -> list[Offer]:
        await self.get_order(order_id)
        return await self._store.list_offers(order_id, statuses)

    # =========================================================================
    # ПЕРЕХОДЫ
    # =========================================================================

    async def transition(
        self,
        order_id: str,
        target: OrderStatus,
        *,
        release_worker: bool = False,
    ) -> TripRequest:
        """
        Переводит заказ в новый статус условной записью.

        Args:
            order_id: ID заказа
            target: Целевой статус
            release_worker: Снять назначение с исполнителя в той же записи

        Returns:
            Обновлённый заказ

        Raises:
            NotFoundError: заказ не найден
            InvalidStateTransition: переход запрещён
            ConflictError: статус изменён параллельно
        """
        request = await self.get_order(order_id)
        await OrderStateMachine.ensure(request, target)

        fields = {}
        if target in TRANSITION_TIMESTAMPS:
            fields[TRANSITION_TIMESTAMPS[target]] = self._clock()

        async with self._events.order_lock(order_id):
            updated = await self._store.transition_request(
                order_id,
                OrderStateMachine.predecessors(target),
                target,
                fields=fields,
                release_worker=release_worker,
            )
            if updated is None:
                fresh = await self._store.get_request(order_id)
                raise await OrderStateMachine.explain_failed_write(fresh, order_id, target)

            await self.publish_status(request.status, updated)
        return updated

    async def publish_status(self, previous: OrderStatus, updated: TripRequest) -> None:
        """Публикует status_changed с версией заказа."""
        await log_info(
            f"Заказ {updated.id}: {previous} -> {updated.status} (v{updated.version})",
            type_msg=TypeMsg.INFO,
        )
        await self._events.publish(
            StatusChanged(
                order_id=updated.id,
                previous_status=previous,
                status=updated.status,
                version=updated.version,
            )
        )

    # =========================================================================
    # ДЕЙСТВИЯ ИСПОЛНИТЕЛЯ
    # =========================================================================

    async def _ensure_assigned_worker(self, order_id: str, worker_id: str) -> None:
        request = await self.get_order(order_id)
        if request.worker_id is None or request.worker_id != worker_id:
            raise ValidationError({"worker_id": "Действие доступно только назначенному исполнителю"})

    async def mark_worker_arrived(self, order_id: str, worker_id: str) -> TripRequest:
        """Исполнитель прибыл на место подачи."""
        await self._ensure_assigned_worker(order_id, worker_id)
        return await self.transition(order_id, OrderStatus.WORKER_ARRIVED)

    async def start_trip(self, order_id: str, worker_id: str) -> TripRequest:
        """Начало поездки."""
        await self._ensure_assigned_worker(order_id, worker_id)
        return await self.transition(order_id, OrderStatus.IN_PROGRESS)

    async def complete_trip(self, order_id: str, worker_id: str) -> TripRequest:
        """Завершение поездки: исполнитель освобождается в той же записи."""
        await self._ensure_assigned_worker(order_id, worker_id)
        return await self.transition(order_id, OrderStatus.COMPLETED, release_worker=True)
