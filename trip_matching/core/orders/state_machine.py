# trip_matching/core/orders/state_machine.py
"""
Конечный автомат статусов заказа.

Переходы только вперёд:
pending -> bidding_open -> accepted -> worker_arrived -> in_progress -> completed.
Отмена возможна из любого нетерминального статуса, кроме in_progress;
из in_progress только с административным решением.
"""

from __future__ import annotations

from trip_matching.common.constants import OrderStatus, TypeMsg
from trip_matching.common.exceptions import ConflictError, InvalidStateTransition, NotFoundError
from trip_matching.common.logger import log_info
from trip_matching.core.orders.models import TripRequest

S = OrderStatus

# Целевой статус -> допустимые предыдущие
ALLOWED_PREDECESSORS: dict[OrderStatus, frozenset[OrderStatus]] = {
    S.PENDING: frozenset(),
    S.BIDDING_OPEN: frozenset({S.PENDING}),
    S.ACCEPTED: frozenset({S.PENDING, S.BIDDING_OPEN}),
    S.WORKER_ARRIVED: frozenset({S.ACCEPTED}),
    S.IN_PROGRESS: frozenset({S.WORKER_ARRIVED}),
    S.COMPLETED: frozenset({S.IN_PROGRESS}),
    S.CANCELLED: frozenset({S.PENDING, S.BIDDING_OPEN, S.ACCEPTED, S.WORKER_ARRIVED}),
}

# Отмена из этих статусов требует административного решения
ADMIN_CANCELLABLE: frozenset[OrderStatus] = frozenset({S.IN_PROGRESS})

# Поле времени, которое выставляется при входе в статус
TRANSITION_TIMESTAMPS: dict[OrderStatus, str] = {
    S.ACCEPTED: "accepted_at",
    S.WORKER_ARRIVED: "worker_arrived_at",
    S.IN_PROGRESS: "started_at",
    S.COMPLETED: "completed_at",
    S.CANCELLED: "cancelled_at",
}


class OrderStateMachine:
    """Таблица допустимых переходов и проверки."""

    @staticmethod
    def predecessors(target: OrderStatus, *, admin_override: bool = False) -> frozenset[OrderStatus]:
        allowed = ALLOWED_PREDECESSORS.get(target, frozenset())
        if target == S.CANCELLED and admin_override:
            return allowed | ADMIN_CANCELLABLE
        return allowed

    @classmethod
    def can_transition(
        cls,
        current: OrderStatus,
        target: OrderStatus,
        *,
        admin_override: bool = False,
    ) -> bool:
        return current in cls.predecessors(target, admin_override=admin_override)

    @classmethod
    async def ensure(
        cls,
        request: TripRequest,
        target: OrderStatus,
        *,
        admin_override: bool = False,
    ) -> None:
        """
        Проверяет переход и логирует нарушение.

        Raises:
            InvalidStateTransition: переход запрещён
        """
        if cls.can_transition(request.status, target, admin_override=admin_override):
            return

        await log_info(
            f"Запрещённый переход заказа {request.id}: {request.status} -> {target}",
            type_msg=TypeMsg.WARNING,
            extra={"order_id": request.id, "current": str(request.status), "target": str(target)},
        )
        raise InvalidStateTransition(request.status, target, request.id)

    @classmethod
    async def explain_failed_write(
        cls,
        fresh: TripRequest | None,
        order_id: str,
        target: OrderStatus,
        *,
        admin_override: bool = False,
    ) -> Exception:
        """
        Причина неудачной условной записи по свежему состоянию заказа.

        Returns:
            NotFoundError: заказа нет
            ConflictError: статус ещё допускает переход (параллельная запись)
            InvalidStateTransition: статус ушёл туда, откуда переход запрещён
        """
        if fresh is None:
            return NotFoundError("Заказ", order_id)
        if cls.can_transition(fresh.status, target, admin_override=admin_override):
            return ConflictError(f"Заказ {order_id} изменён параллельно, повторите запрос")

        await log_info(
            f"Переход {fresh.status} -> {target} заказа {order_id} отклонён после параллельной записи",
            type_msg=TypeMsg.WARNING,
        )
        return InvalidStateTransition(fresh.status, target, order_id)
