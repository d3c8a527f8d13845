# trip_matching/common/clock.py
"""
Источник текущего времени (UTC).
Подменяется в тестах.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Callable

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    """Текущее время в UTC."""
    return datetime.now(timezone.utc)


class ManualClock:
    """Управляемые часы для сценариев и тестов."""

    def __init__(self, start: datetime | None = None) -> None:
        self._now = start or datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self._now

    def advance(self, seconds: float) -> datetime:
        """Сдвигает часы вперёд."""
        self._now += timedelta(seconds=seconds)
        return self._now

    def set(self, moment: datetime) -> None:
        self._now = moment
