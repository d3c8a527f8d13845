# trip_matching/common/exceptions.py
"""
Типизированные ошибки движка подбора и торгов.
"""

from __future__ import annotations

from typing import Any


class MatchingError(Exception):
    """Базовая ошибка движка."""

    code: str = "matching_error"

    def __init__(self, message: str = "") -> None:
        super().__init__(message or self.__class__.__doc__ or self.code)
        self.message = message or (self.__class__.__doc__ or self.code).strip()

    def to_dict(self) -> dict[str, Any]:
        """Сериализует ошибку для ответа API."""
        return {"error": self.code, "message": self.message}


class ValidationError(MatchingError):
    """Некорректные входные данные."""

    code = "validation_error"

    def __init__(self, errors: dict[str, str], message: str = "") -> None:
        self.errors = dict(errors)
        fields = ", ".join(sorted(self.errors))
        super().__init__(message or f"Некорректные поля: {fields}")

    def to_dict(self) -> dict[str, Any]:
        data = super().to_dict()
        data["fields"] = self.errors
        return data


class NotFoundError(MatchingError):
    """Объект не найден."""

    code = "not_found"

    def __init__(self, entity: str, entity_id: Any) -> None:
        self.entity = entity
        self.entity_id = entity_id
        super().__init__(f"{entity} {entity_id} не найден")


class ConflictError(MatchingError):
    """Состояние изменилось параллельно, нужно перечитать данные."""

    code = "conflict"


class InvalidStateTransition(MatchingError):
    """Недопустимый переход жизненного цикла."""

    code = "invalid_state_transition"

    def __init__(self, current: Any, target: Any, entity_id: Any = None) -> None:
        self.current = current
        self.target = target
        self.entity_id = entity_id
        super().__init__(f"Переход {current} -> {target} запрещён (заказ {entity_id})")

    def to_dict(self) -> dict[str, Any]:
        data = super().to_dict()
        data["current"] = str(self.current)
        data["target"] = str(self.target)
        return data


class RateLimitExceeded(MatchingError):
    """Превышен лимит запросов."""

    code = "rate_limit_exceeded"

    def __init__(self, retry_after: float, limit: int = 0, identity_key: str = "") -> None:
        self.retry_after = max(0.0, retry_after)
        self.limit = limit
        self.identity_key = identity_key
        super().__init__(f"Лимит {limit} запросов исчерпан, повторите через {self.retry_after:.0f} с")

    def to_dict(self) -> dict[str, Any]:
        data = super().to_dict()
        data["retry_after"] = self.retry_after
        return data


class NoDriversAvailable(MatchingError):
    """Исполнители не найдены даже после расширения радиуса."""

    code = "no_drivers_available"

    def __init__(self, radius_m: float, attempts: int) -> None:
        self.radius_m = radius_m
        self.attempts = attempts
        super().__init__(f"Нет доступных исполнителей в радиусе {radius_m:.0f} м (попыток: {attempts})")

    def to_dict(self) -> dict[str, Any]:
        data = super().to_dict()
        data["radius_m"] = self.radius_m
        data["widen_search"] = True
        return data


class ExpiredSession(MatchingError):
    """Окно торгов уже закрыто."""

    code = "expired_session"


class ServiceUnavailable(MatchingError):
    """Внешний сервис недоступен после всех повторов."""

    code = "service_unavailable"
