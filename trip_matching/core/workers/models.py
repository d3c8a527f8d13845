# trip_matching/core/workers/models.py
"""
Доступность исполнителя: последняя известная позиция и текущее назначение.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from trip_matching.common.constants import ServiceClass

# Время пинга для записи, созданной принятием до первого пинга исполнителя
NEVER_PINGED = datetime(1970, 1, 1, tzinfo=timezone.utc)


class WorkerAvailability(BaseModel):
    """Состояние исполнителя по последнему пингу."""

    model_config = ConfigDict(from_attributes=True)

    worker_id: str
    service_class: ServiceClass
    latitude: float = Field(..., ge=-90.0, le=90.0)
    longitude: float = Field(..., ge=-180.0, le=180.0)
    last_ping_at: datetime
    online: bool = True
    current_assignment: Optional[str] = Field(None, description="ID заказа, на котором занят исполнитель")

    @classmethod
    def assigned_before_ping(
        cls,
        worker_id: str,
        order_id: str,
        service_class: ServiceClass,
        latitude: float,
        longitude: float,
    ) -> WorkerAvailability:
        """
        Запись для исполнителя без пингов, чьё предложение приняли.
        Офлайн и с нулевым временем пинга: первый настоящий пинг её заменит,
        а назначение сохранится.
        """
        return cls(
            worker_id=worker_id,
            service_class=service_class,
            latitude=latitude,
            longitude=longitude,
            last_ping_at=NEVER_PINGED,
            online=False,
            current_assignment=order_id,
        )

    def is_fresh(self, now: datetime, staleness_seconds: float) -> bool:
        """Пинг не старше порога."""
        return now - self.last_ping_at <= timedelta(seconds=staleness_seconds)

    @property
    def is_free(self) -> bool:
        return self.online and self.current_assignment is None
