# trip_matching/core/intake/service.py
"""
Приём заявок.

Проверка всех полей, оценка стоимости, сохранение в pending,
запуск таймера торгов и фоновый поиск исполнителей.
"""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Any, Coroutine

from trip_matching.common.clock import Clock, utc_now
from trip_matching.common.constants import OrderStatus, TypeMsg, resolve_service_class
from trip_matching.common.exceptions import (
    ConflictError,
    ExpiredSession,
    InvalidStateTransition,
    NoDriversAvailable,
    NotFoundError,
    ValidationError,
)
from trip_matching.common.geo import is_valid_latitude, is_valid_longitude
from trip_matching.common.logger import log_error, log_info
from trip_matching.config.loader import BiddingSettings, SearchSettings
from trip_matching.core.bidding.service import BiddingSessionManager
from trip_matching.core.intake.models import CreateTripRequestDTO
from trip_matching.core.locator.service import CandidateLocator, CandidateSearchResult
from trip_matching.core.orders.models import Location, TripRequest
from trip_matching.events import CandidateInfo, CandidatesFound, NoDriversAvailableEvent, RequestCreated
from trip_matching.infra.event_bus import EventPublisher
from trip_matching.infra.pricing_client import PricingEstimator
from trip_matching.infra.store.base import MatchingStore


def _validate_location(prefix: str, location: Location, errors: dict[str, str]) -> None:
    if not location.address or not location.address.strip():
        errors[f"{prefix}.address"] = "Адрес не может быть пустым"
    if not is_valid_latitude(location.latitude):
        errors[f"{prefix}.latitude"] = "Широта должна быть в диапазоне [-90, 90]"
    if not is_valid_longitude(location.longitude):
        errors[f"{prefix}.longitude"] = "Долгота должна быть в диапазоне [-180, 180]"


class RequestIntakeService:
    """Сервис приёма заявок."""

    def __init__(
        self,
        store: MatchingStore,
        pricing: PricingEstimator,
        events: EventPublisher,
        locator: CandidateLocator,
        bidding: BiddingSessionManager,
        clock: Clock = utc_now,
        bidding_config: BiddingSettings | None = None,
        search_config: SearchSettings | None = None,
    ) -> None:
        if bidding_config is None or search_config is None:
            from trip_matching.config import settings
            bidding_config = bidding_config or settings.bidding
            search_config = search_config or settings.search

        self._store = store
        self._pricing = pricing
        self._events = events
        self._locator = locator
        self._bidding = bidding
        self._clock = clock
        self._bidding_config = bidding_config
        self._search_config = search_config
        self._background: set[asyncio.Task] = set()

    # =========================================================================
    # СОЗДАНИЕ ЗАЯВКИ
    # =========================================================================

    async def validate(self, dto: CreateTripRequestDTO) -> dict[str, str]:
        """Проверяет все поля заявки и возвращает словарь ошибок."""
        errors: dict[str, str] = {}

        if not dto.requester_id:
            errors["requester_id"] = "Не указан клиент"
        _validate_location("origin", dto.origin, errors)
        _validate_location("destination", dto.destination, errors)

        if resolve_service_class(dto.service_class) is None:
            errors["service_class"] = f"Неизвестный класс транспорта: {dto.service_class}"

        if dto.scheduled_at is not None:
            scheduled = dto.scheduled_at
            if scheduled.tzinfo is None:
                scheduled = scheduled.replace(tzinfo=timezone.utc)
            if scheduled < self._clock():
                errors["scheduled_at"] = "Время подачи уже прошло"

        if dto.requester_id and not self._bidding_config.ALLOW_MULTIPLE_OPEN_REQUESTS:
            open_request = await self._store.get_open_request_for_requester(dto.requester_id)
            if open_request is not None:
                errors["requester_id"] = f"У клиента уже есть незавершённый заказ {open_request.id}"

        return errors

    async def create_request(self, dto: CreateTripRequestDTO) -> TripRequest:
        """
        Создаёт заявку.

        Returns:
            Заявка в статусе pending

        Raises:
            ValidationError: все некорректные поля разом
            ServiceUnavailable: сервис оценки недоступен
        """
        errors = await self.validate(dto)
        if errors:
            await log_info(
                f"Заявка клиента {dto.requester_id or '?'} отклонена: {sorted(errors)}",
                type_msg=TypeMsg.WARNING,
            )
            raise ValidationError(errors)

        service_class = resolve_service_class(dto.service_class)
        estimate = await self._pricing.estimate(dto.origin, dto.destination, service_class)

        now = self._clock()
        scheduled_at = dto.scheduled_at
        if scheduled_at is not None and scheduled_at.tzinfo is None:
            scheduled_at = scheduled_at.replace(tzinfo=timezone.utc)

        request = await self._store.create_request(
            TripRequest(
                requester_id=dto.requester_id,
                origin=dto.origin,
                destination=dto.destination,
                service_class=service_class,
                estimated_price=estimate.price,
                estimated_distance_km=estimate.distance_km,
                estimated_duration_min=estimate.duration_min,
                currency=estimate.currency,
                status=OrderStatus.PENDING,
                search_radius_m=self._search_config.DEFAULT_SEARCH_RADIUS_M,
                bidding_expires_at=now + timedelta(seconds=self._bidding.window_seconds(service_class.value)),
                scheduled_at=scheduled_at,
                created_at=now,
            ),
            exclusive=not self._bidding_config.ALLOW_MULTIPLE_OPEN_REQUESTS,
        )
        if request is None:
            await log_info(
                f"Заявка клиента {dto.requester_id} отклонена: параллельно открыт другой заказ",
                type_msg=TypeMsg.WARNING,
            )
            raise ValidationError({"requester_id": "У клиента уже есть незавершённый заказ"})

        await log_info(
            f"Создан заказ {request.id} ({service_class}) клиента {request.requester_id}, "
            f"оценка {request.estimated_price} {request.currency}",
            type_msg=TypeMsg.INFO,
        )
        await self._events.publish(
            RequestCreated(
                order_id=request.id,
                requester_id=request.requester_id,
                service_class=request.service_class,
                estimated_price=request.estimated_price,
                bidding_expires_at=request.bidding_expires_at,
            )
        )

        self._bidding.schedule_expiry(request)
        self._spawn(self._dispatch(request), name=f"dispatch-{request.id}")
        return request

    # =========================================================================
    # ПОИСК ИСПОЛНИТЕЛЕЙ
    # =========================================================================

    async def _dispatch(self, request: TripRequest) -> None:
        """Фоновый поиск: открывает торги и оповещает о кандидатах."""
        try:
            result = await self._locator.find_candidates(
                request.origin.latitude,
                request.origin.longitude,
                request.service_class,
                radius_m=request.search_radius_m,
            )
        except NoDriversAvailable as e:
            await self._store.update_search_radius(request.id, e.radius_m)
            await self._publish_no_drivers(request.id, e)
            return

        await self._announce(request, result)

    async def _announce(self, request: TripRequest, result: CandidateSearchResult) -> None:
        if result.radius_m != request.search_radius_m:
            await self._store.update_search_radius(request.id, result.radius_m)

        if request.status == OrderStatus.PENDING:
            try:
                await self._bidding.open_session(request.id)
            except (ConflictError, InvalidStateTransition) as e:
                await log_info(
                    f"Торги по заказу {request.id} не открыты: {e}",
                    type_msg=TypeMsg.WARNING,
                )
                return

        await self._events.publish(
            CandidatesFound(
                order_id=request.id,
                radius_m=result.radius_m,
                candidates=[
                    CandidateInfo(
                        worker_id=candidate.worker_id,
                        distance_m=round(candidate.distance_m, 1),
                        eta_minutes=candidate.eta_minutes,
                    )
                    for candidate in result.candidates
                ],
            )
        )

    async def _publish_no_drivers(self, order_id: str, error: NoDriversAvailable) -> None:
        await self._events.publish(
            NoDriversAvailableEvent(
                order_id=order_id,
                radius_m=error.radius_m,
                attempts=error.attempts,
            )
        )

    async def widen_search(self, order_id: str, requester_id: str) -> CandidateSearchResult:
        """
        Повторный поиск с увеличенным радиусом по запросу клиента.

        Raises:
            NotFoundError: заказ не найден
            ValidationError: заказ другого клиента
            ExpiredSession: торги уже закрыты
            NoDriversAvailable: исполнители не найдены и в новом радиусе
        """
        request = await self._store.get_request(order_id)
        if request is None:
            raise NotFoundError("Заказ", order_id)
        if request.requester_id != requester_id:
            raise ValidationError({"requester_id": "Расширить поиск может только клиент заказа"})
        if not request.is_biddable:
            raise ExpiredSession(f"Торги по заказу {order_id} закрыты")

        radius = self._locator.next_radius(request.search_radius_m)
        try:
            result = await self._locator.find_candidates(
                request.origin.latitude,
                request.origin.longitude,
                request.service_class,
                radius_m=radius,
            )
        except NoDriversAvailable as e:
            await self._store.update_search_radius(order_id, e.radius_m)
            await self._publish_no_drivers(order_id, e)
            raise

        await self._announce(request, result)
        return result

    # =========================================================================
    # ФОНОВЫЕ ЗАДАЧИ
    # =========================================================================

    def _spawn(self, coro: Coroutine[Any, Any, None], name: str) -> asyncio.Task:
        task = asyncio.create_task(self._guard(coro, name), name=name)
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    @staticmethod
    async def _guard(coro: Coroutine[Any, Any, None], name: str) -> None:
        try:
            await coro
        except asyncio.CancelledError:
            raise
        except Exception as e:
            await log_error(f"Ошибка фоновой задачи {name}: {e}", exc_info=True)

    async def drain(self) -> None:
        """Дожидается завершения фоновых задач."""
        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    async def shutdown(self) -> None:
        """Отменяет фоновые задачи."""
        tasks = list(self._background)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
