# trip_matching/infra/cache.py
"""
Кэш с TTL: общий интерфейс, локальная реализация и реализация на Redis.
Используется для счётчиков лимитов запросов.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timedelta

from trip_matching.common.clock import Clock, utc_now
from trip_matching.infra.redis_client import RedisClient


class CacheBackend(ABC):
    """Интерфейс кэша (get/set/expire/incr)."""

    @abstractmethod
    async def get(self, key: str) -> str | None: ...

    @abstractmethod
    async def set(self, key: str, value: str, ttl: int | None = None) -> None: ...

    @abstractmethod
    async def delete(self, key: str) -> None: ...

    @abstractmethod
    async def expire(self, key: str, ttl: int) -> bool: ...

    @abstractmethod
    async def incr(self, key: str, ttl: int | None = None) -> int:
        """Атомарно увеличивает счётчик; ttl применяется только к новому ключу."""

    @abstractmethod
    async def ttl(self, key: str) -> float:
        """Оставшееся время жизни ключа в секундах (-1 без TTL, -2 если ключа нет)."""

    @abstractmethod
    async def sweep(self) -> int:
        """Удаляет истёкшие ключи. Возвращает количество удалённых."""


@dataclass
class _Entry:
    value: str
    expires_at: datetime | None = None


class InMemoryCache(CacheBackend):
    """
    Кэш в памяти процесса.
    Операции не содержат await внутри, поэтому атомарны в рамках event loop.
    """

    def __init__(self, clock: Clock = utc_now) -> None:
        self._clock = clock
        self._data: dict[str, _Entry] = {}

    def __len__(self) -> int:
        return len(self._data)

    def _alive(self, key: str) -> _Entry | None:
        entry = self._data.get(key)
        if entry is None:
            return None
        if entry.expires_at is not None and entry.expires_at <= self._clock():
            del self._data[key]
            return None
        return entry

    def _deadline(self, ttl: int | None) -> datetime | None:
        if ttl is None:
            return None
        return self._clock() + timedelta(seconds=ttl)

    async def get(self, key: str) -> str | None:
        entry = self._alive(key)
        return entry.value if entry else None

    async def set(self, key: str, value: str, ttl: int | None = None) -> None:
        self._data[key] = _Entry(value=value, expires_at=self._deadline(ttl))

    async def delete(self, key: str) -> None:
        self._data.pop(key, None)

    async def expire(self, key: str, ttl: int) -> bool:
        entry = self._alive(key)
        if entry is None:
            return False
        entry.expires_at = self._deadline(ttl)
        return True

    async def incr(self, key: str, ttl: int | None = None) -> int:
        entry = self._alive(key)
        if entry is None:
            self._data[key] = _Entry(value="1", expires_at=self._deadline(ttl))
            return 1
        count = int(entry.value) + 1
        entry.value = str(count)
        return count

    async def ttl(self, key: str) -> float:
        entry = self._alive(key)
        if entry is None:
            return -2
        if entry.expires_at is None:
            return -1
        return (entry.expires_at - self._clock()).total_seconds()

    async def sweep(self) -> int:
        now = self._clock()
        expired = [
            key for key, entry in self._data.items()
            if entry.expires_at is not None and entry.expires_at <= now
        ]
        for key in expired:
            del self._data[key]
        return len(expired)


class RedisCache(CacheBackend):
    """
    Кэш на Redis: счётчики общие для всех процессов.
    Истёкшие ключи Redis удаляет сам.
    """

    def __init__(self, client: RedisClient) -> None:
        self._client = client

    async def get(self, key: str) -> str | None:
        return await self._client.get(key)

    async def set(self, key: str, value: str, ttl: int | None = None) -> None:
        await self._client.set(key, value, ttl=ttl)

    async def delete(self, key: str) -> None:
        await self._client.delete(key)

    async def expire(self, key: str, ttl: int) -> bool:
        return await self._client.expire(key, ttl)

    async def incr(self, key: str, ttl: int | None = None) -> int:
        return await self._client.incr(key, ttl=ttl)

    async def ttl(self, key: str) -> float:
        return float(await self._client.ttl(key))

    async def sweep(self) -> int:
        return 0
