# trip_matching/services/matching_api/routes.py
"""
Маршруты HTTP API.

Endpoints:
- POST /api/v1/orders - создать заявку
- GET /api/v1/orders/{order_id} - заказ
- GET /api/v1/orders/{order_id}/offers - предложения по заказу
- POST /api/v1/orders/{order_id}/widen-search - расширить поиск
- POST /api/v1/orders/{order_id}/offers - подать предложение
- POST /api/v1/orders/{order_id}/offers/{offer_id}/accept - принять предложение
- POST /api/v1/orders/{order_id}/cancel - отменить заказ
- POST /api/v1/orders/{order_id}/arrived|start|complete - действия исполнителя
- PATCH /api/v1/offers/{offer_id} - изменить предложение
- POST /api/v1/offers/{offer_id}/withdraw|reject - снять / отклонить предложение
- POST /api/v1/workers/location - пинг геопозиции
"""

from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Query, status

from trip_matching.common.constants import OfferStatus
from trip_matching.core.bidding.models import Offer
from trip_matching.core.gateway import CallerContext, MatchingGateway
from trip_matching.core.intake import CreateTripRequestDTO
from trip_matching.core.orders.models import TripRequest
from trip_matching.core.workers.models import WorkerAvailability
from trip_matching.events import CandidateInfo
from trip_matching.services.matching_api.dependencies import get_caller, get_gateway
from trip_matching.services.matching_api.schemas import (
    AcceptanceResponse,
    CancellationResponse,
    CancelOrderBody,
    LocationPingBody,
    OfferTermsBody,
    SearchResponse,
)

orders_router = APIRouter(prefix="/orders", tags=["Orders"])
offers_router = APIRouter(prefix="/offers", tags=["Offers"])
workers_router = APIRouter(prefix="/workers", tags=["Workers"])


# === ORDERS ===

@orders_router.post("", response_model=TripRequest, status_code=status.HTTP_201_CREATED)
async def create_order(
    body: CreateTripRequestDTO,
    caller: CallerContext = Depends(get_caller),
    gateway: MatchingGateway = Depends(get_gateway),
) -> TripRequest:
    return await gateway.create_request(caller, body)


@orders_router.get("/{order_id}", response_model=TripRequest)
async def get_order(
    order_id: str,
    caller: CallerContext = Depends(get_caller),
    gateway: MatchingGateway = Depends(get_gateway),
) -> TripRequest:
    return await gateway.get_order(caller, order_id)


@orders_router.get("/{order_id}/offers", response_model=list[Offer])
async def list_offers(
    order_id: str,
    offer_status: Optional[list[OfferStatus]] = Query(None, alias="status"),
    caller: CallerContext = Depends(get_caller),
    gateway: MatchingGateway = Depends(get_gateway),
) -> list[Offer]:
    return await gateway.list_offers(caller, order_id, offer_status)


@orders_router.post("/{order_id}/widen-search", response_model=SearchResponse)
async def widen_search(
    order_id: str,
    caller: CallerContext = Depends(get_caller),
    gateway: MatchingGateway = Depends(get_gateway),
) -> SearchResponse:
    """Повторный поиск с увеличенным радиусом."""
    result = await gateway.widen_search(caller, order_id)
    return SearchResponse(
        radius_m=result.radius_m,
        attempts=result.attempts,
        candidates=[
            CandidateInfo(
                worker_id=candidate.worker_id,
                distance_m=round(candidate.distance_m, 1),
                eta_minutes=candidate.eta_minutes,
            )
            for candidate in result.candidates
        ],
    )


@orders_router.post("/{order_id}/offers", response_model=Offer, status_code=status.HTTP_201_CREATED)
async def submit_offer(
    order_id: str,
    body: OfferTermsBody,
    caller: CallerContext = Depends(get_caller),
    gateway: MatchingGateway = Depends(get_gateway),
) -> Offer:
    return await gateway.submit_offer(
        caller, order_id, body.price, message=body.message, eta_minutes=body.eta_minutes
    )


@orders_router.post("/{order_id}/offers/{offer_id}/accept", response_model=AcceptanceResponse)
async def accept_offer(
    order_id: str,
    offer_id: str,
    caller: CallerContext = Depends(get_caller),
    gateway: MatchingGateway = Depends(get_gateway),
) -> AcceptanceResponse:
    result = await gateway.accept_offer(caller, order_id, offer_id)
    return AcceptanceResponse(
        order=result.request,
        offer=result.offer,
        already_accepted=result.already_accepted,
    )


@orders_router.post("/{order_id}/cancel", response_model=CancellationResponse)
async def cancel_order(
    order_id: str,
    body: CancelOrderBody,
    caller: CallerContext = Depends(get_caller),
    gateway: MatchingGateway = Depends(get_gateway),
) -> CancellationResponse:
    result = await gateway.cancel_order(
        caller, order_id, reason=body.reason, admin_override=body.admin_override
    )
    return CancellationResponse(order=result.request, cancellation=result.record)


@orders_router.post("/{order_id}/arrived", response_model=TripRequest)
async def mark_worker_arrived(
    order_id: str,
    caller: CallerContext = Depends(get_caller),
    gateway: MatchingGateway = Depends(get_gateway),
) -> TripRequest:
    return await gateway.mark_worker_arrived(caller, order_id)


@orders_router.post("/{order_id}/start", response_model=TripRequest)
async def start_trip(
    order_id: str,
    caller: CallerContext = Depends(get_caller),
    gateway: MatchingGateway = Depends(get_gateway),
) -> TripRequest:
    return await gateway.start_trip(caller, order_id)


@orders_router.post("/{order_id}/complete", response_model=TripRequest)
async def complete_trip(
    order_id: str,
    caller: CallerContext = Depends(get_caller),
    gateway: MatchingGateway = Depends(get_gateway),
) -> TripRequest:
    return await gateway.complete_trip(caller, order_id)


# === OFFERS ===

@offers_router.patch("/{offer_id}", response_model=Offer)
async def update_offer(
    offer_id: str,
    body: OfferTermsBody,
    caller: CallerContext = Depends(get_caller),
    gateway: MatchingGateway = Depends(get_gateway),
) -> Offer:
    return await gateway.update_offer(
        caller, offer_id, body.price, message=body.message, eta_minutes=body.eta_minutes
    )


@offers_router.post("/{offer_id}/withdraw", response_model=Offer)
async def withdraw_offer(
    offer_id: str,
    caller: CallerContext = Depends(get_caller),
    gateway: MatchingGateway = Depends(get_gateway),
) -> Offer:
    return await gateway.withdraw_offer(caller, offer_id)


@offers_router.post("/{offer_id}/reject", response_model=Offer)
async def reject_offer(
    offer_id: str,
    caller: CallerContext = Depends(get_caller),
    gateway: MatchingGateway = Depends(get_gateway),
) -> Offer:
    return await gateway.reject_offer(caller, offer_id)


# === WORKERS ===

@workers_router.post("/location", response_model=WorkerAvailability)
async def report_location(
    body: LocationPingBody,
    caller: CallerContext = Depends(get_caller),
    gateway: MatchingGateway = Depends(get_gateway),
) -> WorkerAvailability:
    return await gateway.report_location(
        caller,
        body.latitude,
        body.longitude,
        body.service_class,
        timestamp=body.timestamp,
        online=body.online,
    )
