# trip_matching/core/bidding/service.py
"""
Менеджер сессии торгов.

Окно торгов открывается при создании заказа и закрывается:
- принятием предложения (арбитр),
- отменой заказа,
- истечением окна (таймер или фоновая сверка).
"""

from __future__ import annotations

import asyncio
from typing import Awaitable, Callable, Collection

from trip_matching.common.clock import Clock, utc_now
from trip_matching.common.constants import CallerRole, OfferStatus, OrderStatus, SessionOutcome, TypeMsg
from trip_matching.common.exceptions import (
    ConflictError,
    ExpiredSession,
    InvalidStateTransition,
    NotFoundError,
    ValidationError,
)
from trip_matching.common.geo import estimate_eta_minutes, haversine_m
from trip_matching.common.logger import log_error, log_info
from trip_matching.config.loader import BiddingSettings
from trip_matching.core.arbiter.service import AcceptanceArbiter
from trip_matching.core.bidding.models import Offer, pick_best_offer
from trip_matching.core.cancellation.service import CancellationService
from trip_matching.core.orders.models import TripRequest
from trip_matching.core.orders.service import OrderLifecycleService
from trip_matching.events import OfferReceived, OfferWithdrawn
from trip_matching.infra.event_bus import EventPublisher
from trip_matching.infra.store.base import MatchingStore

MAX_MESSAGE_LENGTH = 500

SYSTEM_ACTOR = "system"


class BiddingSessionManager:
    """
    Сервис торгов.

    Предложения принимаются, пока заказ в pending/bidding_open и окно не истекло.
    """

    def __init__(
        self,
        store: MatchingStore,
        events: EventPublisher,
        lifecycle: OrderLifecycleService,
        arbiter: AcceptanceArbiter,
        cancellation: CancellationService,
        clock: Clock = utc_now,
        config: BiddingSettings | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        """
        Args:
            store: Хранилище
            events: Публикатор событий
            lifecycle: Сервис переходов статуса
            arbiter: Арбитр принятия (для автопринятия)
            cancellation: Сервис отмены (закрытие без предложений)
            clock: Источник времени
            config: Настройки торгов (из конфига если None)
            sleep: Функция ожидания для таймеров
        """
        if config is None:
            from trip_matching.config import settings
            config = settings.bidding

        self._store = store
        self._events = events
        self._lifecycle = lifecycle
        self._arbiter = arbiter
        self._cancellation = cancellation
        self._clock = clock
        self._config = config
        self._sleep = sleep
        self._timers: dict[str, asyncio.Task] = {}

    @property
    def config(self) -> BiddingSettings:
        return self._config

    def window_seconds(self, service_class: str) -> int:
        return self._config.window_for(service_class)

    # =========================================================================
    # СЕССИЯ
    # =========================================================================

    async def open_session(self, request_id: str) -> TripRequest:
        """pending -> bidding_open."""
        return await self._lifecycle.transition(request_id, OrderStatus.BIDDING_OPEN)

    async def close_session(self, request_id: str, outcome: SessionOutcome) -> int:
        """
        Закрывает все активные предложения заказа.

        Returns:
            Количество закрытых предложений
        """
        new_status = OfferStatus.EXPIRED if outcome == SessionOutcome.EXPIRED else OfferStatus.REJECTED
        closed = await self._store.close_pending_offers(request_id, new_status, self._clock())
        self.cancel_expiry(request_id)

        await log_info(
            f"Торги по заказу {request_id} закрыты ({outcome}), предложений закрыто: {closed}",
            type_msg=TypeMsg.DEBUG,
        )
        return closed

    async def expire_session(self, request_id: str) -> TripRequest | None:
        """
        Истечение окна торгов.

        При AUTO_ACCEPT_AT_EXPIRY предложения пробуются от лучшего к худшему, каждое один раз,
        пока одно не будет принято от имени системы.
        Без предложений (или без автопринятия) предложения истекают,
        а заказ отменяется системой без штрафа.

        Returns:
            Актуальное состояние заказа
        """
        self.cancel_expiry(request_id)

        request = await self._store.get_request(request_id)
        if request is None or not request.is_biddable:
            return request

        if self._config.AUTO_ACCEPT_AT_EXPIRY:
            tried: set[str] = set()
            while True:
                pending = await self._store.list_offers(request_id, [OfferStatus.PENDING])
                best = pick_best_offer([offer for offer in pending if offer.id not in tried])
                if best is None:
                    break
                tried.add(best.id)
                try:
                    result = await self._arbiter.accept_offer(
                        request_id,
                        best.id,
                        actor_id=SYSTEM_ACTOR,
                        actor_role=CallerRole.SYSTEM,
                    )
                    return result.request
                except (ConflictError, InvalidStateTransition) as e:
                    await log_info(
                        f"Автопринятие по заказу {request_id} не удалось: {e}",
                        type_msg=TypeMsg.WARNING,
                    )
                    fresh = await self._store.get_request(request_id)
                    if fresh is None or not fresh.is_biddable:
                        return fresh

        await self.close_session(request_id, SessionOutcome.EXPIRED)
        try:
            result = await self._cancellation.cancel_order(
                request_id,
                initiator_id=SYSTEM_ACTOR,
                initiator_role=CallerRole.SYSTEM,
                reason="bidding_expired",
            )
        except (ConflictError, InvalidStateTransition) as e:
            await log_info(
                f"Заказ {request_id} закрыт параллельно при истечении торгов: {e}",
                type_msg=TypeMsg.WARNING,
            )
            return await self._store.get_request(request_id)

        await log_info(f"Торги по заказу {request_id} истекли без принятия", type_msg=TypeMsg.INFO)
        return result.request

    # =========================================================================
    # ТАЙМЕРЫ
    # =========================================================================

    def schedule_expiry(self, request: TripRequest) -> asyncio.Task:
        """Запускает таймер истечения окна торгов для заказа."""
        self.cancel_expiry(request.id)
        delay = max(0.0, (request.bidding_expires_at - self._clock()).total_seconds())
        task = asyncio.create_task(self._expire_after(request.id, delay), name=f"bidding-expiry-{request.id}")
        self._timers[request.id] = task
        return task

    def cancel_expiry(self, request_id: str) -> None:
        task = self._timers.pop(request_id, None)
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()

    @property
    def active_timers(self) -> int:
        return len(self._timers)

    async def _expire_after(self, request_id: str, delay: float) -> None:
        try:
            await self._sleep(delay)
            await self.expire_session(request_id)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            await log_error(f"Ошибка таймера торгов заказа {request_id}: {e}", exc_info=True)

    async def shutdown(self) -> None:
        """Останавливает все таймеры."""
        tasks = list(self._timers.values())
        self._timers.clear()
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

    async def sweep_expired(self) -> int:
        """
        Сверка: закрывает все сессии с истёкшим окном (на случай потерянных таймеров).

        Returns:
            Количество обработанных сессий
        """
        expired = await self._store.list_expired_sessions(self._clock())
        processed = 0
        for request in expired:
            try:
                await self.expire_session(request.id)
                processed += 1
            except Exception as e:
                await log_error(f"Ошибка закрытия торгов заказа {request.id}: {e}", exc_info=True)

        if processed:
            await log_info(f"Сверка торгов: закрыто сессий {processed}", type_msg=TypeMsg.INFO)
        return processed

    # =========================================================================
    # ПРЕДЛОЖЕНИЯ
    # =========================================================================

    async def _get_open_request(self, request_id: str) -> TripRequest:
        request = await self._store.get_request(request_id)
        if request is None:
            raise NotFoundError("Заказ", request_id)
        if not request.is_biddable or request.bidding_window_passed(self._clock()):
            raise ExpiredSession(f"Торги по заказу {request_id} закрыты")
        return request

    def _validate_terms(
        self,
        request: TripRequest,
        price: float,
        message: str | None,
        eta_minutes: int | None,
    ) -> dict[str, str]:
        errors: dict[str, str] = {}
        low = round(request.estimated_price * self._config.PRICE_BAND_MIN, 2)
        high = round(request.estimated_price * self._config.PRICE_BAND_MAX, 2)

        if price is None or not low <= price <= high:
            errors["offered_price"] = f"Цена должна быть в диапазоне [{low}, {high}]"
        if eta_minutes is not None and eta_minutes < 0:
            errors["eta_minutes"] = "Время подачи не может быть отрицательным"
        if message is not None and len(message) > MAX_MESSAGE_LENGTH:
            errors["message"] = f"Сообщение длиннее {MAX_MESSAGE_LENGTH} символов"
        return errors

    async def submit_offer(
        self,
        request_id: str,
        worker_id: str,
        price: float,
        message: str | None = None,
        eta_minutes: int | None = None,
    ) -> Offer:
        """
        Принимает предложение исполнителя.

        Raises:
            NotFoundError: заказ не найден
            ExpiredSession: торги закрыты или окно истекло
            ValidationError: цена вне коридора, отрицательное время подачи
            ConflictError: у исполнителя уже есть активное предложение
        """
        request = await self._get_open_request(request_id)

        errors = self._validate_terms(request, price, message, eta_minutes)
        if not worker_id:
            errors["worker_id"] = "Не указан исполнитель"
        if errors:
            raise ValidationError(errors)

        distance_m: float | None = None
        worker = await self._store.get_worker(worker_id)
        if worker is not None:
            distance_m = haversine_m(
                request.origin.latitude,
                request.origin.longitude,
                worker.latitude,
                worker.longitude,
            )
            if eta_minutes is None:
                eta_minutes = estimate_eta_minutes(distance_m)

        now = self._clock()
        created = await self._store.create_offer(
            Offer(
                request_id=request_id,
                worker_id=worker_id,
                offered_price=price,
                message=message,
                eta_minutes=eta_minutes,
                distance_to_pickup_m=distance_m,
                submitted_at=now,
            )
        )
        if created is None:
            raise ConflictError(f"У исполнителя {worker_id} уже есть активное предложение по заказу {request_id}")

        # Сессия могла закрыться между проверкой и вставкой
        fresh = await self._store.get_request(request_id)
        if fresh is None or not fresh.is_biddable:
            await self._store.set_offer_status(created.id, OfferStatus.PENDING, OfferStatus.EXPIRED, self._clock())
            raise ExpiredSession(f"Торги по заказу {request_id} закрылись во время подачи предложения")

        await log_info(
            f"Предложение {created.id} по заказу {request_id}: {worker_id} за {price}",
            type_msg=TypeMsg.INFO,
        )
        await self._publish_offer(created, updated=False)
        return created

    async def update_offer(
        self,
        offer_id: str,
        worker_id: str,
        price: float,
        message: str | None = None,
        eta_minutes: int | None = None,
    ) -> Offer:
        """
        Исполнитель меняет условия своего активного предложения.

        Raises:
            NotFoundError: предложение не найдено
            ValidationError: чужое предложение или условия вне коридора
            ExpiredSession: торги закрыты
            ConflictError: предложение уже не активно
        """
        offer = await self._get_own_offer(offer_id, worker_id)
        request = await self._get_open_request(offer.request_id)

        errors = self._validate_terms(request, price, message, eta_minutes)
        if errors:
            raise ValidationError(errors)
        if not offer.is_pending:
            raise ConflictError(f"Предложение {offer_id} уже не активно ({offer.status})")

        updated = await self._store.update_offer(
            offer_id,
            offered_price=price,
            message=message,
            eta_minutes=eta_minutes if eta_minutes is not None else offer.eta_minutes,
            now=self._clock(),
        )
        if updated is None:
            raise ConflictError(f"Предложение {offer_id} изменилось параллельно")

        await self._publish_offer(updated, updated=True)
        return updated

    async def withdraw_offer(self, offer_id: str, worker_id: str) -> Offer:
        """
        Исполнитель снимает своё предложение.

        Raises:
            NotFoundError: предложение не найдено
            ValidationError: предложение другого исполнителя
            ExpiredSession: торги закрыты
            ConflictError: предложение уже не активно
        """
        offer = await self._get_own_offer(offer_id, worker_id)
        await self._get_open_request(offer.request_id)

        withdrawn = await self._store.set_offer_status(
            offer_id, OfferStatus.PENDING, OfferStatus.WITHDRAWN, self._clock()
        )
        if withdrawn is None:
            raise ConflictError(f"Предложение {offer_id} уже не активно")

        await log_info(f"Предложение {offer_id} снято исполнителем {worker_id}", type_msg=TypeMsg.INFO)
        await self._events.publish(
            OfferWithdrawn(
                order_id=offer.request_id,
                offer_id=offer_id,
                worker_id=worker_id,
                reason="withdrawn",
            )
        )
        return withdrawn

    async def reject_offer(self, offer_id: str, requester_id: str) -> Offer:
        """
        Клиент отклоняет одно предложение, торги продолжаются.

        Raises:
            NotFoundError: предложение не найдено
            ValidationError: заказ другого клиента
            ExpiredSession: торги закрыты
            ConflictError: предложение уже не активно
        """
        offer = await self._store.get_offer(offer_id)
        if offer is None:
            raise NotFoundError("Предложение", offer_id)
        request = await self._store.get_request(offer.request_id)
        if request is None:
            raise NotFoundError("Заказ", offer.request_id)
        if request.requester_id != requester_id:
            raise ValidationError({"requester_id": "Отклонить предложение может только клиент заказа"})
        if not request.is_biddable:
            raise ExpiredSession(f"Торги по заказу {request.id} закрыты")

        rejected = await self._store.set_offer_status(
            offer_id, OfferStatus.PENDING, OfferStatus.REJECTED, self._clock()
        )
        if rejected is None:
            raise ConflictError(f"Предложение {offer_id} уже не активно")

        await self._events.publish(
            OfferWithdrawn(
                order_id=request.id,
                offer_id=offer_id,
                worker_id=offer.worker_id,
                reason="rejected",
            )
        )
        return rejected

    async def best_offer(self, request_id: str) -> Offer | None:
        """Лучшее активное предложение: минимальная цена, при равенстве более раннее."""
        offers = await self._store.list_offers(request_id, [OfferStatus.PENDING])
        return pick_best_offer(offers)

    async def list_offers(
        self,
        request_id: str,
        statuses: Collection[OfferStatus] | None = None,
    ) -> list[Offer]:
        return await self._store.list_offers(request_id, statuses)

    # =========================================================================
    # ВСПОМОГАТЕЛЬНЫЕ
    # =========================================================================

    async def _get_own_offer(self, offer_id: str, worker_id: str) -> Offer:
        offer = await self._store.get_offer(offer_id)
        if offer is None:
            raise NotFoundError("Предложение", offer_id)
        if offer.worker_id != worker_id:
            raise ValidationError({"worker_id": "Предложение принадлежит другому исполнителю"})
        return offer

    async def _publish_offer(self, offer: Offer, *, updated: bool) -> None:
        pending = await self._store.list_offers(offer.request_id, [OfferStatus.PENDING])
        best = pick_best_offer(pending)
        await self._events.publish(
            OfferReceived(
                order_id=offer.request_id,
                offer_id=offer.id,
                worker_id=offer.worker_id,
                offered_price=offer.offered_price,
                eta_minutes=offer.eta_minutes,
                updated=updated,
                best_offer_id=best.id if best else None,
                best_price=best.offered_price if best else None,
                offer_count=len(pending),
            )
        )
