# trip_matching/core/gateway/service.py
"""
Фасад операций движка.

Каждая операция проходит лимитер по классу операции и роли вызывающего,
затем делегируется доменному сервису. Транспорт (HTTP, очередь) только
собирает CallerContext и вызывает методы шлюза.
"""

from __future__ import annotations

import functools
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Awaitable, Callable, Collection, TypeVar

from trip_matching.common.clock import Clock, utc_now
from trip_matching.common.constants import CallerRole, EndpointClass, OfferStatus
from trip_matching.common.exceptions import ValidationError
from trip_matching.config.loader import Settings
from trip_matching.core.arbiter.service import AcceptanceArbiter, AcceptanceResult
from trip_matching.core.bidding.models import Offer
from trip_matching.core.bidding.service import BiddingSessionManager
from trip_matching.core.cancellation.service import CancellationResult, CancellationService
from trip_matching.core.intake.models import CreateTripRequestDTO
from trip_matching.core.intake.service import RequestIntakeService
from trip_matching.core.locator.service import CandidateLocator, CandidateSearchResult
from trip_matching.core.orders.models import TripRequest
from trip_matching.core.orders.service import OrderLifecycleService
from trip_matching.core.rate_limit.service import RateLimiter, identity_key
from trip_matching.core.workers.models import WorkerAvailability
from trip_matching.core.workers.service import WorkerLocationService
from trip_matching.infra.cache import CacheBackend
from trip_matching.infra.event_bus import EventPublisher
from trip_matching.infra.pricing_client import PricingEstimator
from trip_matching.infra.store.base import MatchingStore

T = TypeVar("T")

# Роли, действующие от имени другого участника
ACTING_ROLES = frozenset({CallerRole.ADMIN, CallerRole.SYSTEM})


@dataclass(frozen=True)
class CallerContext:
    """Кто вызывает операцию."""
    caller_id: str | None
    role: CallerRole = CallerRole.ANONYMOUS
    origin: str | None = None

    @property
    def identity_key(self) -> str:
        return identity_key(self.caller_id, self.origin)

    def require_id(self, field: str) -> str:
        if not self.caller_id:
            raise ValidationError({field: "Требуется идентификация вызывающего"})
        return self.caller_id


def rate_limited(endpoint_class: EndpointClass) -> Callable:
    """Декоратор: учитывает вызов в лимитере до выполнения операции."""

    def decorator(func: Callable[..., Awaitable[T]]) -> Callable[..., Awaitable[T]]:
        @functools.wraps(func)
        async def wrapper(self: MatchingGateway, caller: CallerContext, *args: Any, **kwargs: Any) -> T:
            await self.limiter.check(caller.identity_key, endpoint_class, caller.role)
            return await func(self, caller, *args, **kwargs)

        return wrapper

    return decorator


class MatchingGateway:
    """Точка входа для всех операций над заказами и предложениями."""

    def __init__(
        self,
        *,
        limiter: RateLimiter,
        intake: RequestIntakeService,
        bidding: BiddingSessionManager,
        arbiter: AcceptanceArbiter,
        cancellation: CancellationService,
        lifecycle: OrderLifecycleService,
        locations: WorkerLocationService,
    ) -> None:
        self.limiter = limiter
        self.intake = intake
        self.bidding = bidding
        self.arbiter = arbiter
        self.cancellation = cancellation
        self.lifecycle = lifecycle
        self.locations = locations

    # =========================================================================
    # ЗАЯВКИ
    # =========================================================================

    @rate_limited(EndpointClass.REQUEST_CREATION)
    async def create_request(self, caller: CallerContext, dto: CreateTripRequestDTO) -> TripRequest:
        """Создание заявки. Клиент создаёт заявку только от своего имени."""
        if caller.role not in ACTING_ROLES:
            dto = dto.model_copy(update={"requester_id": caller.require_id("requester_id")})
        return await self.intake.create_request(dto)

    @rate_limited(EndpointClass.REQUEST_CREATION)
    async def widen_search(self, caller: CallerContext, order_id: str) -> CandidateSearchResult:
        requester_id = caller.require_id("requester_id")
        if caller.role in ACTING_ROLES:
            requester_id = (await self.lifecycle.get_order(order_id)).requester_id
        return await self.intake.widen_search(order_id, requester_id)

    # =========================================================================
    # ПРЕДЛОЖЕНИЯ
    # =========================================================================

    @rate_limited(EndpointClass.OFFER_WRITE)
    async def submit_offer(
        self,
        caller: CallerContext,
        order_id: str,
        price: float,
        message: str | None = None,
        eta_minutes: int | None = None,
    ) -> Offer:
        return await self.bidding.submit_offer(
            order_id, caller.require_id("worker_id"), price, message=message, eta_minutes=eta_minutes
        )

    @rate_limited(EndpointClass.OFFER_WRITE)
    async def update_offer(
        self,
        caller: CallerContext,
        offer_id: str,
        price: float,
        message: str | None = None,
        eta_minutes: int | None = None,
    ) -> Offer:
        return await self.bidding.update_offer(
            offer_id, caller.require_id("worker_id"), price, message=message, eta_minutes=eta_minutes
        )

    @rate_limited(EndpointClass.OFFER_WRITE)
    async def withdraw_offer(self, caller: CallerContext, offer_id: str) -> Offer:
        return await self.bidding.withdraw_offer(offer_id, caller.require_id("worker_id"))

    @rate_limited(EndpointClass.LIFECYCLE)
    async def reject_offer(self, caller: CallerContext, offer_id: str) -> Offer:
        return await self.bidding.reject_offer(offer_id, caller.require_id("requester_id"))

    @rate_limited(EndpointClass.PAYMENT_ADJACENT)
    async def accept_offer(self, caller: CallerContext, order_id: str, offer_id: str) -> AcceptanceResult:
        """Ручное принятие. Таймер окна торгов после принятия больше не нужен."""
        result = await self.arbiter.accept_offer(
            order_id,
            offer_id,
            actor_id=caller.require_id("requester_id"),
            actor_role=caller.role,
        )
        self.bidding.cancel_expiry(order_id)
        return result

    # =========================================================================
    # ЖИЗНЕННЫЙ ЦИКЛ
    # =========================================================================

    @rate_limited(EndpointClass.PAYMENT_ADJACENT)
    async def cancel_order(
        self,
        caller: CallerContext,
        order_id: str,
        reason: str = "",
        admin_override: bool = False,
    ) -> CancellationResult:
        result = await self.cancellation.cancel_order(
            order_id,
            initiator_id=caller.require_id("initiator_id"),
            initiator_role=caller.role,
            reason=reason,
            admin_override=admin_override,
        )
        self.bidding.cancel_expiry(order_id)
        return result

    @rate_limited(EndpointClass.READ)
    async def get_order(self, caller: CallerContext, order_id: str) -> TripRequest:
        return await self.lifecycle.get_order(order_id)

    @rate_limited(EndpointClass.READ)
    async def list_offers(
        self,
        caller: CallerContext,
        order_id: str,
        statuses: Collection[OfferStatus] | None = None,
    ) -> list[Offer]:
        return await self.lifecycle.list_offers(order_id, statuses)

    @rate_limited(EndpointClass.LIFECYCLE)
    async def mark_worker_arrived(self, caller: CallerContext, order_id: str) -> TripRequest:
        return await self.lifecycle.mark_worker_arrived(order_id, caller.require_id("worker_id"))

    @rate_limited(EndpointClass.LIFECYCLE)
    async def start_trip(self, caller: CallerContext, order_id: str) -> TripRequest:
        return await self.lifecycle.start_trip(order_id, caller.require_id("worker_id"))

    @rate_limited(EndpointClass.LIFECYCLE)
    async def complete_trip(self, caller: CallerContext, order_id: str) -> TripRequest:
        return await self.lifecycle.complete_trip(order_id, caller.require_id("worker_id"))

    @rate_limited(EndpointClass.LIFECYCLE)
    async def report_location(
        self,
        caller: CallerContext,
        latitude: float,
        longitude: float,
        service_class: str,
        timestamp: datetime | None = None,
        online: bool = True,
    ) -> WorkerAvailability:
        return await self.locations.ingest_ping(
            caller.require_id("worker_id"),
            latitude,
            longitude,
            service_class,
            timestamp=timestamp,
            online=online,
        )

    # =========================================================================
    # ОСТАНОВКА
    # =========================================================================

    async def shutdown(self) -> None:
        """Останавливает таймеры торгов и фоновый поиск."""
        await self.intake.shutdown()
        await self.bidding.shutdown()


def build_gateway(
    store: MatchingStore,
    publisher: EventPublisher,
    cache: CacheBackend,
    pricing: PricingEstimator,
    clock: Clock = utc_now,
    settings: Settings | None = None,
) -> MatchingGateway:
    """
    Собирает все сервисы движка поверх переданных бэкендов.

    Args:
        store: Хранилище заказов и предложений
        publisher: Публикатор событий
        cache: Кэш счётчиков лимитов
        pricing: Сервис оценки стоимости
        clock: Источник времени
        settings: Настройки (глобальные если None)
    """
    if settings is None:
        from trip_matching.config import settings as global_settings
        settings = global_settings

    lifecycle = OrderLifecycleService(store, publisher, clock)
    arbiter = AcceptanceArbiter(store, publisher, lifecycle, clock)
    cancellation = CancellationService(store, publisher, lifecycle, clock, settings.cancellation)
    bidding = BiddingSessionManager(
        store, publisher, lifecycle, arbiter, cancellation, clock, settings.bidding
    )
    locator = CandidateLocator(store, clock, settings.search)
    intake = RequestIntakeService(
        store,
        pricing,
        publisher,
        locator,
        bidding,
        clock,
        bidding_config=settings.bidding,
        search_config=settings.search,
    )

    return MatchingGateway(
        limiter=RateLimiter(cache, clock, settings.rate_limit),
        intake=intake,
        bidding=bidding,
        arbiter=arbiter,
        cancellation=cancellation,
        lifecycle=lifecycle,
        locations=WorkerLocationService(store, clock),
    )
