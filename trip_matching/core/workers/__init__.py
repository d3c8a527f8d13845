# trip_matching/core/workers/__init__.py
"""
Исполнители: поток геопозиций и доступность.
"""

from trip_matching.core.workers.models import WorkerAvailability

__all__ = ["WorkerAvailability"]
