# trip_matching/core/cancellation/fees.py
"""
Политика штрафа за отмену.
Единственный источник правил: процент зависит от статуса заказа в момент отмены.
"""

from __future__ import annotations

from dataclasses import dataclass

from trip_matching.common.constants import BIDDABLE_STATUSES, CallerRole, OrderStatus
from trip_matching.config.loader import CancellationSettings
from trip_matching.core.orders.models import TripRequest

# Отмена после назначения исполнителя
FEE_STATUSES: frozenset[OrderStatus] = frozenset({
    OrderStatus.ACCEPTED,
    OrderStatus.WORKER_ARRIVED,
})


@dataclass(frozen=True)
class FeeQuote:
    """Расчёт штрафа."""
    fee_percent: float
    price_basis: float
    fee_amount: float


class FeePolicy:
    """
    Правила:
    - pending / bidding_open: 0%
    - accepted / worker_arrived: CANCELLATION_FEE_PERCENT от цены принятого предложения
    - in_progress (только админ): ADMIN_OVERRIDE_FEE_PERCENT
    - отмена системой: 0%
    """

    def __init__(self, config: CancellationSettings | None = None) -> None:
        if config is None:
            from trip_matching.config import settings
            config = settings.cancellation
        self._config = config

    def quote(self, request: TripRequest, initiator_role: CallerRole) -> FeeQuote:
        """Штраф для текущего статуса заказа."""
        basis = request.price

        if initiator_role == CallerRole.SYSTEM or request.status in BIDDABLE_STATUSES:
            percent = 0.0
        elif request.status in FEE_STATUSES:
            percent = self._config.CANCELLATION_FEE_PERCENT
        elif request.status == OrderStatus.IN_PROGRESS:
            percent = self._config.ADMIN_OVERRIDE_FEE_PERCENT
        else:
            percent = 0.0

        return FeeQuote(
            fee_percent=percent,
            price_basis=basis,
            fee_amount=round(basis * percent / 100.0, 2),
        )
