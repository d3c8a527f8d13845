# trip_matching/events/__init__.py
"""
Доменные события движка подбора.
"""

from trip_matching.events.base import DomainEvent
from trip_matching.events.order_events import (
    CandidateInfo,
    CandidatesFound,
    EVENT_MODELS,
    EventTypes,
    NoDriversAvailableEvent,
    OfferAccepted,
    OfferReceived,
    OfferWithdrawn,
    OrderCancelled,
    RequestCreated,
    StatusChanged,
    parse_event,
)

__all__ = [
    "DomainEvent",
    "EventTypes",
    "CandidateInfo",
    "RequestCreated",
    "CandidatesFound",
    "NoDriversAvailableEvent",
    "OfferReceived",
    "OfferWithdrawn",
    "OfferAccepted",
    "StatusChanged",
    "OrderCancelled",
    "EVENT_MODELS",
    "parse_event",
]
