# trip_matching/core/rate_limit/service.py
"""
Ограничение частоты запросов.

Фиксированное окно по ключу (идентичность, класс операции).
Лимит = базовый лимит класса операции x множитель роли.
Счётчики хранятся в подключаемом кэше: локально или в Redis.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import datetime, timezone

from trip_matching.common.clock import Clock, utc_now
from trip_matching.common.constants import CallerRole, EndpointClass, TypeMsg
from trip_matching.common.exceptions import RateLimitExceeded
from trip_matching.common.logger import log_info
from trip_matching.config.loader import RateLimitSettings
from trip_matching.infra.cache import CacheBackend


@dataclass(frozen=True)
class RateLimitRule:
    limit: int
    window_seconds: int


@dataclass
class RateLimitBucket:
    """Состояние счётчика в текущем окне."""
    identity_key: str
    endpoint_class: EndpointClass
    window_start: datetime
    request_count: int
    limit: int
    window_seconds: int

    @property
    def remaining(self) -> int:
        return max(0, self.limit - self.request_count)


def identity_key(caller_id: str | None, origin: str | None) -> str:
    """Идентичность: ID вызывающего или ip:<сетевой источник> для анонимов."""
    if caller_id:
        return str(caller_id)
    return f"ip:{origin or 'unknown'}"


class RateLimiter:
    """Лимитер запросов с фиксированным окном."""

    def __init__(
        self,
        cache: CacheBackend,
        clock: Clock = utc_now,
        config: RateLimitSettings | None = None,
    ) -> None:
        """
        Args:
            cache: Хранилище счётчиков
            clock: Источник времени
            config: Лимиты (из конфига если None)
        """
        if config is None:
            from trip_matching.config import settings
            config = settings.rate_limit

        self._cache = cache
        self._clock = clock
        self._config = config

    def rule_for(self, endpoint_class: EndpointClass, role: CallerRole) -> RateLimitRule:
        """Лимит для класса операции и роли."""
        base_limit, window = self._config.BASE_LIMITS[endpoint_class.value]
        multiplier = self._config.ROLE_MULTIPLIERS.get(role.value, 1.0)
        return RateLimitRule(limit=max(1, math.floor(base_limit * multiplier)), window_seconds=window)

    async def check(
        self,
        key: str,
        endpoint_class: EndpointClass,
        role: CallerRole = CallerRole.ANONYMOUS,
    ) -> RateLimitBucket | None:
        """
        Учитывает запрос и проверяет лимит.

        Returns:
            Состояние счётчика (None для системных вызовов, они не ограничиваются)

        Raises:
            RateLimitExceeded: лимит в текущем окне исчерпан
        """
        if role == CallerRole.SYSTEM:
            return None

        rule = self.rule_for(endpoint_class, role)
        now = self._clock().timestamp()
        window_start = math.floor(now / rule.window_seconds) * rule.window_seconds

        cache_key = f"ratelimit:{key}:{endpoint_class.value}:{window_start}"
        count = await self._cache.incr(cache_key, ttl=rule.window_seconds)

        bucket = RateLimitBucket(
            identity_key=key,
            endpoint_class=endpoint_class,
            window_start=datetime.fromtimestamp(window_start, tz=timezone.utc),
            request_count=count,
            limit=rule.limit,
            window_seconds=rule.window_seconds,
        )

        if count > rule.limit:
            retry_after = window_start + rule.window_seconds - now
            await log_info(
                f"Лимит {endpoint_class} для {key} ({role}) исчерпан: {count}/{rule.limit}, "
                f"повтор через {retry_after:.1f} с",
                type_msg=TypeMsg.WARNING,
            )
            raise RateLimitExceeded(retry_after, limit=rule.limit, identity_key=key)

        return bucket

    async def sweep(self) -> int:
        """Удаляет истёкшие счётчики."""
        removed = await self._cache.sweep()
        if removed:
            await log_info(f"Удалено истёкших счётчиков лимитов: {removed}", type_msg=TypeMsg.DEBUG)
        return removed
