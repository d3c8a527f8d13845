# trip_matching/core/cancellation/service.py
"""
Отмена заказа со штрафом.

Запись об отмене, перевод в cancelled, отклонение активных предложений
и освобождение исполнителя выполняются одной атомарной операцией хранилища.
"""

from __future__ import annotations

from dataclasses import dataclass

from trip_matching.common.clock import Clock, utc_now
from trip_matching.common.constants import CallerRole, OrderStatus, TypeMsg
from trip_matching.common.exceptions import ConflictError, NotFoundError, ValidationError
from trip_matching.common.logger import log_info
from trip_matching.config.loader import CancellationSettings
from trip_matching.core.cancellation.fees import FeePolicy
from trip_matching.core.orders.models import CancellationRecord, TripRequest
from trip_matching.core.orders.service import OrderLifecycleService
from trip_matching.core.orders.state_machine import OrderStateMachine
from trip_matching.events import OrderCancelled
from trip_matching.infra.event_bus import EventPublisher
from trip_matching.infra.store.base import MatchingStore


@dataclass
class CancellationResult:
    """Результат отмены."""
    request: TripRequest
    record: CancellationRecord


class CancellationService:
    """Сервис отмены заказов."""

    def __init__(
        self,
        store: MatchingStore,
        events: EventPublisher,
        lifecycle: OrderLifecycleService,
        clock: Clock = utc_now,
        config: CancellationSettings | None = None,
    ) -> None:
        if config is None:
            from trip_matching.config import settings
            config = settings.cancellation

        self._store = store
        self._events = events
        self._lifecycle = lifecycle
        self._clock = clock
        self._config = config
        self._fees = FeePolicy(config)

    @property
    def fees(self) -> FeePolicy:
        return self._fees

    async def cancel_order(
        self,
        order_id: str,
        initiator_id: str,
        initiator_role: CallerRole,
        reason: str = "",
        admin_override: bool = False,
    ) -> CancellationResult:
        """
        Отменяет заказ.

        Если статус изменился между чтением и записью, штраф пересчитывается
        по свежему состоянию (не больше CANCEL_MAX_ATTEMPTS попыток).

        Raises:
            NotFoundError: заказ не найден
            ValidationError: отменяющий не участник заказа или override без прав
            InvalidStateTransition: заказ завершён, отменён или в пути без override
            ConflictError: статус менялся на каждой попытке
        """
        if admin_override and initiator_role != CallerRole.ADMIN:
            raise ValidationError({"admin_override": "Административная отмена доступна только администратору"})

        for attempt in range(1, self._config.CANCEL_MAX_ATTEMPTS + 1):
            request = await self._store.get_request(order_id)
            if request is None:
                raise NotFoundError("Заказ", order_id)

            self._ensure_participant(request, initiator_id, initiator_role)
            await OrderStateMachine.ensure(request, OrderStatus.CANCELLED, admin_override=admin_override)

            now = self._clock()
            quote = self._fees.quote(request, initiator_role)
            record = CancellationRecord(
                order_id=order_id,
                initiator_id=initiator_id,
                initiator_role=initiator_role,
                reason=reason,
                fee_amount=quote.fee_amount,
                fee_percent=quote.fee_percent,
                price_basis=quote.price_basis,
                status_at_cancellation=request.status,
                admin_override=admin_override,
                created_at=now,
            )

            async with self._events.order_lock(order_id):
                updated = await self._store.commit_cancellation(order_id, request.status, record, now)
                if updated is None:
                    await log_info(
                        f"Заказ {order_id}: статус изменился во время отмены (попытка {attempt}), пересчёт",
                        type_msg=TypeMsg.WARNING,
                    )
                    continue

                await log_info(
                    f"Заказ {order_id} отменён ({initiator_role} {initiator_id}) из {request.status}, "
                    f"штраф {quote.fee_amount} ({quote.fee_percent}%)",
                    type_msg=TypeMsg.INFO,
                )
                await self._events.publish(
                    OrderCancelled(
                        order_id=order_id,
                        initiator_id=initiator_id,
                        initiator_role=initiator_role,
                        reason=reason,
                        fee_amount=quote.fee_amount,
                        status_at_cancellation=request.status,
                    )
                )
                await self._lifecycle.publish_status(request.status, updated)
                return CancellationResult(request=updated, record=record)

        raise ConflictError(f"Заказ {order_id} менялся при каждой попытке отмены")

    @staticmethod
    def _ensure_participant(request: TripRequest, initiator_id: str, initiator_role: CallerRole) -> None:
        if initiator_role in (CallerRole.SYSTEM, CallerRole.ADMIN):
            return
        if initiator_id in (request.requester_id, request.worker_id):
            return
        raise ValidationError({"initiator_id": "Отменить заказ может только его участник"})
