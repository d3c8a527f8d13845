# trip_matching/common/constants.py
"""
Общие константы и перечисления.
"""

from enum import Enum


class TypeMsg(str, Enum):
    """Типы сообщений для логирования."""
    DEBUG = "debug"
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


class OrderStatus(str, Enum):
    """Статусы заказа (TripRequest)."""
    PENDING = "pending"
    BIDDING_OPEN = "bidding_open"
    ACCEPTED = "accepted"
    WORKER_ARRIVED = "worker_arrived"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"

    def __str__(self) -> str:
        return self.value


# Статусы, в которых идёт аукцион и можно принимать предложения
BIDDABLE_STATUSES: frozenset[OrderStatus] = frozenset({
    OrderStatus.PENDING,
    OrderStatus.BIDDING_OPEN,
})

# Финальные статусы
TERMINAL_STATUSES: frozenset[OrderStatus] = frozenset({
    OrderStatus.COMPLETED,
    OrderStatus.CANCELLED,
})


class OfferStatus(str, Enum):
    """Статусы предложения исполнителя."""
    PENDING = "pending"
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    EXPIRED = "expired"
    WITHDRAWN = "withdrawn"

    def __str__(self) -> str:
        return self.value


class ServiceClass(str, Enum):
    """Классы транспорта."""
    MOTO = "moto"
    STANDARD = "standard"
    COMFORT = "comfort"
    PREMIUM = "premium"
    TRUCK = "truck"

    def __str__(self) -> str:
        return self.value


# Типы доставки сводятся к классу транспорта
DELIVERY_TYPE_TO_SERVICE_CLASS: dict[str, ServiceClass] = {
    "flash": ServiceClass.MOTO,
    "flex": ServiceClass.STANDARD,
    "maxicharge": ServiceClass.TRUCK,
}


def resolve_service_class(value: str | ServiceClass | None) -> ServiceClass | None:
    """
    Приводит класс транспорта или тип доставки к ServiceClass.

    Returns:
        ServiceClass или None, если значение неизвестно
    """
    if value is None:
        return None
    if isinstance(value, ServiceClass):
        return value

    normalized = str(value).strip().lower()
    if normalized in DELIVERY_TYPE_TO_SERVICE_CLASS:
        return DELIVERY_TYPE_TO_SERVICE_CLASS[normalized]
    try:
        return ServiceClass(normalized)
    except ValueError:
        return None


class CallerRole(str, Enum):
    """Роли вызывающей стороны (по возрастанию квоты)."""
    ANONYMOUS = "anonymous"
    CLIENT = "client"
    WORKER = "worker"
    PARTNER = "partner"
    ADMIN = "admin"
    SYSTEM = "system"

    def __str__(self) -> str:
        return self.value


class EndpointClass(str, Enum):
    """Классы операций для лимитов запросов."""
    REQUEST_CREATION = "request_creation"
    OFFER_WRITE = "offer_write"
    PAYMENT_ADJACENT = "payment_adjacent"
    LIFECYCLE = "lifecycle"
    READ = "read"

    def __str__(self) -> str:
        return self.value


class SessionOutcome(str, Enum):
    """Причина закрытия аукциона."""
    ACCEPTED = "accepted"
    EXPIRED = "expired"
    CANCELLED = "cancelled"
