# trip_matching/services/matching_api/schemas.py
"""
Тела запросов и ответов HTTP API.
"""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field

from trip_matching.core.bidding.models import Offer
from trip_matching.core.orders.models import CancellationRecord, TripRequest
from trip_matching.events import CandidateInfo


# === REQUESTS ===

class OfferTermsBody(BaseModel):
    """Условия предложения исполнителя."""
    price: float
    message: Optional[str] = None
    eta_minutes: Optional[int] = None


class CancelOrderBody(BaseModel):
    reason: str = ""
    admin_override: bool = False


class LocationPingBody(BaseModel):
    """Пинг геопозиции исполнителя."""
    latitude: float
    longitude: float
    service_class: str
    timestamp: Optional[datetime] = None
    online: bool = True


# === RESPONSES ===

class AcceptanceResponse(BaseModel):
    order: TripRequest
    offer: Offer
    already_accepted: bool = False


class CancellationResponse(BaseModel):
    order: TripRequest
    cancellation: CancellationRecord


class SearchResponse(BaseModel):
    """Результат расширенного поиска."""
    radius_m: float
    attempts: int
    candidates: list[CandidateInfo] = Field(default_factory=list)


class HealthStatus(BaseModel):
    status: str
    service: str
    version: str
