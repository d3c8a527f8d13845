# trip_matching/core/workers/service.py
"""
Поток геопозиций исполнителей.
Пинги, пришедшие не по порядку, игнорируются хранилищем.
"""

from __future__ import annotations

from datetime import datetime, timezone

from trip_matching.common.clock import Clock, utc_now
from trip_matching.common.constants import ServiceClass, TypeMsg, resolve_service_class
from trip_matching.common.exceptions import ValidationError
from trip_matching.common.geo import is_valid_latitude, is_valid_longitude
from trip_matching.common.logger import log_info
from trip_matching.core.workers.models import WorkerAvailability
from trip_matching.infra.store.base import MatchingStore


class WorkerLocationService:
    """Приём пингов исполнителей."""

    def __init__(self, store: MatchingStore, clock: Clock = utc_now) -> None:
        self._store = store
        self._clock = clock

    async def ingest_ping(
        self,
        worker_id: str,
        latitude: float,
        longitude: float,
        service_class: ServiceClass | str,
        timestamp: datetime | None = None,
        online: bool = True,
    ) -> WorkerAvailability:
        """
        Сохраняет пинг исполнителя.

        Args:
            worker_id: ID исполнителя
            latitude: Широта
            longitude: Долгота
            service_class: Класс транспорта (или тип доставки)
            timestamp: Время пинга (текущее если None)
            online: Исполнитель на линии

        Returns:
            Актуальное состояние (старый пинг не перезаписывает новый)

        Raises:
            ValidationError: некорректные координаты или класс
        """
        errors: dict[str, str] = {}
        if not worker_id:
            errors["worker_id"] = "Не указан исполнитель"
        if not is_valid_latitude(latitude):
            errors["latitude"] = "Широта должна быть в диапазоне [-90, 90]"
        if not is_valid_longitude(longitude):
            errors["longitude"] = "Долгота должна быть в диапазоне [-180, 180]"
        resolved = resolve_service_class(service_class)
        if resolved is None:
            errors["service_class"] = f"Неизвестный класс транспорта: {service_class}"
        if errors:
            raise ValidationError(errors)

        ping_at = timestamp or self._clock()
        if ping_at.tzinfo is None:
            ping_at = ping_at.replace(tzinfo=timezone.utc)

        stored = await self._store.upsert_worker_location(
            WorkerAvailability(
                worker_id=worker_id,
                service_class=resolved,
                latitude=latitude,
                longitude=longitude,
                last_ping_at=ping_at,
                online=online,
            )
        )
        if stored.last_ping_at > ping_at:
            await log_info(
                f"Устаревший пинг исполнителя {worker_id} проигнорирован",
                type_msg=TypeMsg.DEBUG,
            )
        return stored
