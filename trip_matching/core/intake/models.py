# trip_matching/core/intake/models.py
"""
DTO приёма заявки.
Координаты и адреса проверяются сервисом, чтобы вернуть все ошибки разом.
"""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from pydantic import BaseModel

from trip_matching.core.orders.models import Location


class CreateTripRequestDTO(BaseModel):
    """DTO для создания заявки."""

    requester_id: str = ""
    origin: Location
    destination: Location
    service_class: str
    scheduled_at: Optional[datetime] = None
