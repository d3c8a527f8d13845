# trip_matching/events/base.py
"""
Базовое доменное событие.
Все события привязаны к заказу: order_id задаёт порядок доставки.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any
from uuid import uuid4

from pydantic import BaseModel, Field

from trip_matching.common.clock import utc_now


class DomainEvent(BaseModel):
    """Базовый класс для доменных событий."""

    event_id: str = Field(default_factory=lambda: str(uuid4()))
    event_type: str = ""
    order_id: str
    sequence: int = Field(0, description="Порядковый номер события в рамках заказа")
    occurred_at: datetime = Field(default_factory=utc_now)

    @property
    def routing_key(self) -> str:
        """Ключ маршрутизации: order.<id>.<тип>."""
        return f"order.{self.order_id}.{self.event_type}"

    def to_json(self) -> str:
        """Сериализует событие в JSON."""
        return self.model_dump_json()

    def payload(self) -> dict[str, Any]:
        """Поля события без служебных."""
        return self.model_dump(
            mode="json",
            exclude={"event_id", "event_type", "order_id", "sequence", "occurred_at"},
        )
