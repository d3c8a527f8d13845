# trip_matching/worker/__init__.py
"""
Фоновые воркеры: сверка торгов и очистка счётчиков лимитов.
"""

from trip_matching.worker.base import BaseWorker, PeriodicJob
from trip_matching.worker.maintenance import BiddingMaintenanceWorker

__all__ = ["BaseWorker", "PeriodicJob", "BiddingMaintenanceWorker"]
