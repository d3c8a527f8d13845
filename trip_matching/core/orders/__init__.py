# trip_matching/core/orders/__init__.py
"""
Домен заказов: модели, конечный автомат статусов, жизненный цикл.
"""

from trip_matching.core.orders.models import CancellationRecord, Location, TripRequest

__all__ = [
    "CancellationRecord",
    "Location",
    "TripRequest",
]
