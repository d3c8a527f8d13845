# trip_matching/core/orders/models.py
"""
Модели данных заказа (TripRequest) и записи об отмене.
"""

from __future__ import annotations

from datetime import datetime
from typing import Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field

from trip_matching.common.clock import utc_now
from trip_matching.common.constants import (
    BIDDABLE_STATUSES,
    TERMINAL_STATUSES,
    CallerRole,
    OrderStatus,
    ServiceClass,
)


class Location(BaseModel):
    """Точка маршрута: адрес и координаты."""

    address: str = Field(..., description="Адрес")
    latitude: float = Field(..., description="Широта")
    longitude: float = Field(..., description="Долгота")


class TripRequest(BaseModel):
    """Заявка на поездку/доставку (заказ)."""

    model_config = ConfigDict(from_attributes=True)

    id: str = Field(default_factory=lambda: str(uuid4()), description="UUID заказа")
    requester_id: str = Field(..., description="ID клиента")

    origin: Location
    destination: Location
    service_class: ServiceClass

    # Оценка
    estimated_price: float = Field(..., gt=0.0, description="Оценочная стоимость")
    estimated_distance_km: float = Field(0.0, ge=0.0)
    estimated_duration_min: int = Field(0, ge=0)
    currency: str = "CDF"

    # Торги
    status: OrderStatus = OrderStatus.PENDING
    search_radius_m: float = Field(..., gt=0.0)
    bidding_expires_at: datetime
    scheduled_at: Optional[datetime] = None

    # Итог торгов
    accepted_offer_id: Optional[str] = None
    worker_id: Optional[str] = None
    final_price: Optional[float] = None

    version: int = Field(0, description="Увеличивается при каждой записи статуса")

    # Временные метки
    created_at: datetime = Field(default_factory=utc_now)
    accepted_at: Optional[datetime] = None
    worker_arrived_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None

    @property
    def is_biddable(self) -> bool:
        """Идут ли торги."""
        return self.status in BIDDABLE_STATUSES

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def price(self) -> float:
        """Цена принятого предложения или оценочная стоимость."""
        return self.final_price if self.final_price is not None else self.estimated_price

    def bidding_window_passed(self, now: datetime) -> bool:
        return now >= self.bidding_expires_at


class CancellationRecord(BaseModel):
    """Запись об отмене заказа (только добавление)."""

    model_config = ConfigDict(from_attributes=True)

    id: str = Field(default_factory=lambda: str(uuid4()))
    order_id: str
    initiator_id: str
    initiator_role: CallerRole
    reason: str = ""
    fee_amount: float = Field(0.0, ge=0.0)
    fee_percent: float = Field(0.0, ge=0.0)
    price_basis: float = Field(0.0, ge=0.0)
    status_at_cancellation: OrderStatus
    admin_override: bool = False
    created_at: datetime = Field(default_factory=utc_now)
