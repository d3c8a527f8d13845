# trip_matching/worker/maintenance.py
"""
Воркер обслуживания торгов.
"""

from __future__ import annotations

import asyncio
from typing import Awaitable, Callable, List

from trip_matching.config.loader import MaintenanceSettings
from trip_matching.core.bidding.service import BiddingSessionManager
from trip_matching.core.rate_limit.service import RateLimiter
from trip_matching.worker.base import BaseWorker, PeriodicJob


class BiddingMaintenanceWorker(BaseWorker):
    """
    Сверка торгов и очистка счётчиков.

    Закрывает сессии с истёкшим окном, для которых таймер потерян
    (рестарт процесса, другой экземпляр API), и удаляет истёкшие счётчики лимитов.
    """

    def __init__(
        self,
        bidding: BiddingSessionManager,
        limiter: RateLimiter,
        config: MaintenanceSettings | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        if config is None:
            from trip_matching.config import settings
            config = settings.maintenance

        super().__init__(sleep=sleep)
        self._bidding = bidding
        self._limiter = limiter
        self._config = config

    @property
    def name(self) -> str:
        return "BiddingMaintenanceWorker"

    @property
    def jobs(self) -> List[PeriodicJob]:
        return [
            PeriodicJob("bidding_sweep", self._config.SESSION_SWEEP_INTERVAL, self._bidding.sweep_expired),
            PeriodicJob("rate_limit_sweep", self._config.RATE_LIMIT_SWEEP_INTERVAL, self._limiter.sweep),
        ]
