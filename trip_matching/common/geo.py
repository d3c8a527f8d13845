# trip_matching/common/geo.py
"""
Геометрия: расстояния и проверка координат.
"""

import math

EARTH_RADIUS_M = 6371000.0

# Оценка времени подачи: 2.5 минуты на километр
MINUTES_PER_KM = 2.5


def haversine_m(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """
    Вычисляет расстояние между двумя точками (в метрах) по формуле Haversine.
    """
    dlat = math.radians(lat2 - lat1)
    dlon = math.radians(lon2 - lon1)

    a = (math.sin(dlat / 2) ** 2 +
         math.cos(math.radians(lat1)) * math.cos(math.radians(lat2)) *
         math.sin(dlon / 2) ** 2)

    c = 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))

    return EARTH_RADIUS_M * c


def is_valid_latitude(value: float) -> bool:
    return isinstance(value, (int, float)) and not math.isnan(value) and -90.0 <= value <= 90.0


def is_valid_longitude(value: float) -> bool:
    return isinstance(value, (int, float)) and not math.isnan(value) and -180.0 <= value <= 180.0


def estimate_eta_minutes(distance_m: float) -> int:
    """Оценка времени подачи в минутах."""
    return max(1, math.ceil(distance_m / 1000.0 * MINUTES_PER_KM))
