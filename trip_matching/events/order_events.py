# trip_matching/events/order_events.py
"""
События жизненного цикла заказа и торгов.
"""

from __future__ import annotations

from datetime import datetime
from typing import Literal, Optional

from pydantic import BaseModel, Field

from trip_matching.common.constants import CallerRole, OrderStatus, ServiceClass
from trip_matching.events.base import DomainEvent


class EventTypes:
    """Константы типов событий."""
    REQUEST_CREATED = "request_created"
    CANDIDATES_FOUND = "candidates_found"
    NO_DRIVERS_AVAILABLE = "no_drivers_available"
    OFFER_RECEIVED = "offer_received"
    OFFER_WITHDRAWN = "offer_withdrawn"
    OFFER_ACCEPTED = "offer_accepted"
    STATUS_CHANGED = "status_changed"
    ORDER_CANCELLED = "order_cancelled"


class CandidateInfo(BaseModel):
    """Кандидат в событии поиска."""
    worker_id: str
    distance_m: float
    eta_minutes: int


class RequestCreated(DomainEvent):
    event_type: Literal["request_created"] = EventTypes.REQUEST_CREATED
    requester_id: str
    service_class: ServiceClass
    estimated_price: float
    bidding_expires_at: datetime


class CandidatesFound(DomainEvent):
    """Найдены исполнители: коллаборатор уведомлений рассылает им заказ."""
    event_type: Literal["candidates_found"] = EventTypes.CANDIDATES_FOUND
    radius_m: float
    candidates: list[CandidateInfo] = Field(default_factory=list)


class NoDriversAvailableEvent(DomainEvent):
    """Исполнители не найдены: клиенту предлагается расширить поиск."""
    event_type: Literal["no_drivers_available"] = EventTypes.NO_DRIVERS_AVAILABLE
    radius_m: float
    attempts: int
    widen_search: bool = True


class OfferReceived(DomainEvent):
    event_type: Literal["offer_received"] = EventTypes.OFFER_RECEIVED
    offer_id: str
    worker_id: str
    offered_price: float
    eta_minutes: Optional[int] = None
    updated: bool = False
    best_offer_id: Optional[str] = None
    best_price: Optional[float] = None
    offer_count: int = 0


class OfferWithdrawn(DomainEvent):
    """Предложение снято исполнителем или отклонено клиентом."""
    event_type: Literal["offer_withdrawn"] = EventTypes.OFFER_WITHDRAWN
    offer_id: str
    worker_id: str
    reason: Literal["withdrawn", "rejected"] = "withdrawn"


class OfferAccepted(DomainEvent):
    event_type: Literal["offer_accepted"] = EventTypes.OFFER_ACCEPTED
    offer_id: str
    worker_id: str
    final_price: float
    actor: CallerRole


class StatusChanged(DomainEvent):
    event_type: Literal["status_changed"] = EventTypes.STATUS_CHANGED
    previous_status: OrderStatus
    status: OrderStatus
    version: int


class OrderCancelled(DomainEvent):
    event_type: Literal["order_cancelled"] = EventTypes.ORDER_CANCELLED
    initiator_id: str
    initiator_role: CallerRole
    reason: str = ""
    fee_amount: float
    status_at_cancellation: OrderStatus


EVENT_MODELS: dict[str, type[DomainEvent]] = {
    model.model_fields["event_type"].default: model
    for model in (
        RequestCreated,
        CandidatesFound,
        NoDriversAvailableEvent,
        OfferReceived,
        OfferWithdrawn,
        OfferAccepted,
        StatusChanged,
        OrderCancelled,
    )
}


def parse_event(data: str | bytes) -> DomainEvent:
    """Десериализует событие по его event_type."""
    envelope = DomainEvent.model_validate_json(data)
    model = EVENT_MODELS.get(envelope.event_type, DomainEvent)
    return model.model_validate_json(data)
