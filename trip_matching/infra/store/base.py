# trip_matching/infra/store/base.py
"""
Интерфейс хранилища движка подбора.

Все изменения статусов выполняются условной записью (compare-and-set):
запись применяется только если текущий статус входит в ожидаемый набор.
Составные операции (принятие предложения, отмена) атомарны целиком.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Collection

from trip_matching.common.constants import OfferStatus, OrderStatus, ServiceClass
from trip_matching.core.bidding.models import Offer
from trip_matching.core.orders.models import CancellationRecord, TripRequest
from trip_matching.core.workers.models import WorkerAvailability


class MatchingStore(ABC):
    """Долговременное хранилище заказов, предложений и исполнителей."""

    # =========================================================================
    # ЗАКАЗЫ
    # =========================================================================

    @abstractmethod
    async def create_request(self, request: TripRequest, *, exclusive: bool = False) -> TripRequest | None:
        """
        Сохраняет заказ.

        При exclusive=True заказ не сохраняется (возвращается None), если у клиента
        уже есть незавершённый заказ. Проверка и вставка выполняются атомарно.
        """

    @abstractmethod
    async def get_request(self, request_id: str) -> TripRequest | None: ...

    @abstractmethod
    async def get_open_request_for_requester(self, requester_id: str) -> TripRequest | None:
        """Незавершённый заказ клиента (любой нетерминальный статус)."""

    @abstractmethod
    async def transition_request(
        self,
        request_id: str,
        expected: Collection[OrderStatus],
        new_status: OrderStatus,
        *,
        fields: dict[str, Any] | None = None,
        release_worker: bool = False,
    ) -> TripRequest | None:
        """
        Условная смена статуса заказа.

        Args:
            request_id: ID заказа
            expected: Допустимые текущие статусы
            new_status: Новый статус
            fields: Дополнительные поля (временные метки)
            release_worker: Снять назначение с исполнителя заказа в той же записи

        Returns:
            Обновлённый заказ или None, если статус не совпал
        """

    @abstractmethod
    async def update_search_radius(self, request_id: str, radius_m: float) -> TripRequest | None:
        """Меняет радиус поиска, пока идут торги."""

    @abstractmethod
    async def list_expired_sessions(self, now: datetime) -> list[TripRequest]:
        """Заказы в торгах, у которых окно истекло."""

    # =========================================================================
    # ПРЕДЛОЖЕНИЯ
    # =========================================================================

    @abstractmethod
    async def create_offer(self, offer: Offer) -> Offer | None:
        """
        Сохраняет предложение.

        Returns:
            Offer или None, если у исполнителя уже есть активное предложение по заказу
        """

    @abstractmethod
    async def get_offer(self, offer_id: str) -> Offer | None: ...

    @abstractmethod
    async def list_offers(
        self,
        request_id: str,
        statuses: Collection[OfferStatus] | None = None,
    ) -> list[Offer]:
        """Предложения заказа в порядке подачи."""

    @abstractmethod
    async def set_offer_status(
        self,
        offer_id: str,
        expected: OfferStatus,
        new_status: OfferStatus,
        now: datetime,
    ) -> Offer | None:
        """Условная смена статуса предложения."""

    @abstractmethod
    async def update_offer(
        self,
        offer_id: str,
        *,
        offered_price: float,
        message: str | None,
        eta_minutes: int | None,
        now: datetime,
    ) -> Offer | None:
        """Меняет условия активного предложения. None, если оно уже не pending."""

    @abstractmethod
    async def close_pending_offers(
        self,
        request_id: str,
        new_status: OfferStatus,
        now: datetime,
    ) -> int:
        """Переводит все pending предложения заказа в new_status."""

    # =========================================================================
    # СОСТАВНЫЕ ОПЕРАЦИИ
    # =========================================================================

    @abstractmethod
    async def commit_acceptance(
        self,
        request_id: str,
        offer_id: str,
        now: datetime,
    ) -> TripRequest | None:
        """
        Атомарное принятие предложения.

        Одна запись: заказ pending/bidding_open -> accepted, предложение pending -> accepted,
        назначение исполнителя (если он свободен), остальные pending -> rejected.

        Returns:
            Обновлённый заказ или None, если хоть одно условие не выполнено
        """

    @abstractmethod
    async def commit_cancellation(
        self,
        request_id: str,
        expected_status: OrderStatus,
        record: CancellationRecord,
        now: datetime,
    ) -> TripRequest | None:
        """
        Атомарная отмена.

        Одна запись: заказ expected_status -> cancelled, запись об отмене,
        pending предложения -> rejected, снятие назначения исполнителя.

        Returns:
            Обновлённый заказ или None, если статус изменился
        """

    @abstractmethod
    async def list_cancellations(self, order_id: str) -> list[CancellationRecord]: ...

    # =========================================================================
    # ИСПОЛНИТЕЛИ
    # =========================================================================

    @abstractmethod
    async def upsert_worker_location(self, worker: WorkerAvailability) -> WorkerAvailability:
        """
        Сохраняет пинг. Пинг старше сохранённого игнорируется.
        Назначение исполнителя пингом не меняется.

        Returns:
            Актуальное состояние исполнителя
        """

    @abstractmethod
    async def get_worker(self, worker_id: str) -> WorkerAvailability | None: ...

    @abstractmethod
    async def list_available_workers(
        self,
        service_class: ServiceClass,
        seen_after: datetime,
    ) -> list[WorkerAvailability]:
        """Свободные исполнители класса с пингом не раньше seen_after."""
