# trip_matching/common/retry.py
"""
Единая политика повторов для вызовов внешних сервисов.
Экспоненциальная задержка с ограничением числа попыток.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from functools import wraps
from typing import Any, Awaitable, Callable, TypeVar

from trip_matching.common.constants import TypeMsg
from trip_matching.common.exceptions import MatchingError, ServiceUnavailable
from trip_matching.common.logger import log_error, log_info

T = TypeVar("T")


def default_retryable(error: BaseException) -> bool:
    """Сетевые и инфраструктурные ошибки повторяем, доменные не повторяем."""
    if isinstance(error, MatchingError):
        return False
    return isinstance(error, (ConnectionError, TimeoutError, OSError, asyncio.TimeoutError))


@dataclass
class RetryPolicy:
    """
    Политика повторов.

    Attributes:
        max_attempts: Максимальное количество попыток (включая первую)
        base_delay: Задержка перед второй попыткой (секунды)
        max_delay: Верхняя граница задержки
        multiplier: Множитель экспоненты
        retryable: Предикат "ошибку можно повторить"
    """
    max_attempts: int = 3
    base_delay: float = 0.2
    max_delay: float = 5.0
    multiplier: float = 2.0
    retryable: Callable[[BaseException], bool] = field(default=default_retryable)
    sleep: Callable[[float], Awaitable[None]] = field(default=asyncio.sleep, repr=False)

    @classmethod
    def from_settings(cls, **overrides: Any) -> "RetryPolicy":
        """Создаёт политику из конфигурации."""
        from trip_matching.config import settings

        params = {
            "max_attempts": settings.retry.RETRY_MAX_ATTEMPTS,
            "base_delay": settings.retry.RETRY_BASE_DELAY,
            "max_delay": settings.retry.RETRY_MAX_DELAY,
            "multiplier": settings.retry.RETRY_MULTIPLIER,
        }
        params.update(overrides)
        return cls(**params)

    def backoff(self, attempt: int) -> float:
        """Задержка после неудачной попытки номер attempt (с 1)."""
        return min(self.max_delay, self.base_delay * (self.multiplier ** (attempt - 1)))

    async def run(
        self,
        func: Callable[..., Awaitable[T]],
        *args: Any,
        operation: str = "",
        **kwargs: Any,
    ) -> T:
        """
        Выполняет корутину с повторами.

        Raises:
            ServiceUnavailable: если все попытки исчерпаны
            Exception: неповторяемая ошибка пробрасывается как есть
        """
        name = operation or getattr(func, "__name__", "operation")

        for attempt in range(1, self.max_attempts + 1):
            try:
                return await func(*args, **kwargs)
            except Exception as e:
                if not self.retryable(e):
                    raise
                if attempt >= self.max_attempts:
                    await log_error(f"{name}: не удалось выполнить после {self.max_attempts} попыток: {e}")
                    raise ServiceUnavailable(f"{name} недоступен: {e}") from e

                delay = self.backoff(attempt)
                await log_info(
                    f"{name}: ошибка (попытка {attempt}/{self.max_attempts}), повтор через {delay:.2f} с: {e}",
                    type_msg=TypeMsg.WARNING,
                )
                await self.sleep(delay)

        raise ServiceUnavailable(f"{name} недоступен")


def with_retry(
    policy: RetryPolicy | None = None,
    **overrides: Any,
) -> Callable[[Callable[..., Awaitable[T]]], Callable[..., Awaitable[T]]]:
    """
    Декоратор: оборачивает корутину политикой повторов.

    Args:
        policy: Политика (если None, берётся из конфига при вызове)
        **overrides: Поля политики, заменяющие значения из конфига
    """
    def decorator(func: Callable[..., Awaitable[T]]) -> Callable[..., Awaitable[T]]:
        @wraps(func)
        async def wrapper(*args: Any, **kwargs: Any) -> T:
            active = policy or RetryPolicy.from_settings(**overrides)
            return await active.run(func, *args, operation=func.__qualname__, **kwargs)

        return wrapper

    return decorator
