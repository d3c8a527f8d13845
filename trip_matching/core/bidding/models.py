# trip_matching/core/bidding/models.py
"""
Модели торгов: предложение исполнителя.
"""

from __future__ import annotations

from datetime import datetime
from typing import Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field

from trip_matching.common.clock import utc_now
from trip_matching.common.constants import OfferStatus


class Offer(BaseModel):
    """Ценовое предложение исполнителя по заказу."""

    model_config = ConfigDict(from_attributes=True)

    id: str = Field(default_factory=lambda: str(uuid4()))
    request_id: str
    worker_id: str
    offered_price: float = Field(..., gt=0.0)
    message: Optional[str] = None
    eta_minutes: Optional[int] = Field(None, ge=0)
    distance_to_pickup_m: Optional[float] = Field(None, ge=0.0)
    status: OfferStatus = OfferStatus.PENDING
    submitted_at: datetime = Field(default_factory=utc_now)
    updated_at: Optional[datetime] = None

    @property
    def is_pending(self) -> bool:
        return self.status == OfferStatus.PENDING


def pick_best_offer(offers: list[Offer]) -> Offer | None:
    """
    Лучшее предложение: минимальная цена, при равенстве более раннее.
    Порядок списка (порядок вставки) разрешает совпадение времени.
    """
    pending = [offer for offer in offers if offer.is_pending]
    if not pending:
        return None
    return min(
        enumerate(pending),
        key=lambda item: (item[1].offered_price, item[1].submitted_at, item[0]),
    )[1]
