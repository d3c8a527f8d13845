# trip_matching/core/locator/service.py
"""
Поиск исполнителей рядом с точкой подачи.
Радиус увеличивается ступенями, пока не найдутся кандидаты или не исчерпаны попытки.
Результат рекомендательный: исполнители не резервируются.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import timedelta

from trip_matching.common.clock import Clock, utc_now
from trip_matching.common.constants import ServiceClass, TypeMsg
from trip_matching.common.exceptions import NoDriversAvailable
from trip_matching.common.geo import estimate_eta_minutes, haversine_m
from trip_matching.common.logger import log_info
from trip_matching.config.loader import SearchSettings
from trip_matching.infra.store.base import MatchingStore


@dataclass
class WorkerCandidate:
    """Кандидат-исполнитель для заказа."""
    worker_id: str
    distance_m: float
    eta_minutes: int
    latitude: float
    longitude: float


@dataclass
class CandidateSearchResult:
    """Итог поиска: кандидаты по возрастанию расстояния и последний радиус."""
    radius_m: float
    attempts: int
    candidates: list[WorkerCandidate] = field(default_factory=list)


class CandidateLocator:
    """
    Сервис поиска исполнителей.

    Учитывает только исполнителей в сети, без текущего назначения,
    нужного класса и с пингом не старше LOCATION_STALENESS_SECONDS.
    """

    def __init__(
        self,
        store: MatchingStore,
        clock: Clock = utc_now,
        config: SearchSettings | None = None,
    ) -> None:
        """
        Args:
            store: Хранилище (источник позиций исполнителей)
            clock: Источник времени
            config: Настройки поиска (из конфига если None)
        """
        if config is None:
            from trip_matching.config import settings
            config = settings.search

        self._store = store
        self._clock = clock
        self._config = config

    @property
    def config(self) -> SearchSettings:
        return self._config

    def next_radius(self, radius_m: float) -> float:
        """Следующая ступень радиуса, не больше максимального."""
        return min(radius_m * self._config.RADIUS_EXPANSION_FACTOR, self._config.MAX_SEARCH_RADIUS_M)

    async def find_candidates(
        self,
        latitude: float,
        longitude: float,
        service_class: ServiceClass,
        radius_m: float | None = None,
    ) -> CandidateSearchResult:
        """
        Ищет исполнителей с постепенным увеличением радиуса.

        Args:
            latitude: Широта точки подачи
            longitude: Долгота точки подачи
            service_class: Класс транспорта
            radius_m: Начальный радиус (DEFAULT_SEARCH_RADIUS_M если None)

        Returns:
            Не больше MAX_CANDIDATES кандидатов по возрастанию расстояния

        Raises:
            NoDriversAvailable: никого нет даже после всех расширений
        """
        now = self._clock()
        seen_after = now - timedelta(seconds=self._config.LOCATION_STALENESS_SECONDS)
        workers = await self._store.list_available_workers(service_class, seen_after)

        pool = [
            WorkerCandidate(
                worker_id=worker.worker_id,
                distance_m=haversine_m(latitude, longitude, worker.latitude, worker.longitude),
                eta_minutes=0,
                latitude=worker.latitude,
                longitude=worker.longitude,
            )
            for worker in workers
            if worker.is_free and worker.is_fresh(now, self._config.LOCATION_STALENESS_SECONDS)
        ]
        pool.sort(key=lambda candidate: (candidate.distance_m, candidate.worker_id))

        radius = min(radius_m or self._config.DEFAULT_SEARCH_RADIUS_M, self._config.MAX_SEARCH_RADIUS_M)
        attempts = 0

        for expansion in range(self._config.MAX_RADIUS_EXPANSIONS + 1):
            attempts += 1
            found = [candidate for candidate in pool if candidate.distance_m <= radius]
            if found:
                selected = found[: self._config.MAX_CANDIDATES]
                for candidate in selected:
                    candidate.eta_minutes = estimate_eta_minutes(candidate.distance_m)

                await log_info(
                    f"Найдено {len(found)} исполнителей ({service_class}) в радиусе {radius:.0f} м",
                    type_msg=TypeMsg.DEBUG,
                )
                return CandidateSearchResult(radius_m=radius, attempts=attempts, candidates=selected)

            if expansion == self._config.MAX_RADIUS_EXPANSIONS:
                break
            wider = self.next_radius(radius)
            if wider <= radius:
                break
            radius = wider

        await log_info(
            f"Исполнители ({service_class}) не найдены, последний радиус {radius:.0f} м",
            type_msg=TypeMsg.WARNING,
        )
        raise NoDriversAvailable(radius, attempts)
