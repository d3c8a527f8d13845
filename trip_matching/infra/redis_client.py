# trip_matching/infra/redis_client.py
"""
Клиент Redis для распределённых счётчиков и кэша.
"""

from __future__ import annotations

import redis.asyncio as redis

from trip_matching.common.constants import TypeMsg
from trip_matching.common.logger import log_error, log_info


class RedisClient:
    """
    Асинхронный клиент Redis.
    Поддерживает:
    - Базовые get/set/delete с TTL
    - Атомарный инкремент счётчика с установкой TTL
    """

    _instance: RedisClient | None = None
    _client: redis.Redis | None = None

    def __new__(cls) -> RedisClient:
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __init__(self) -> None:
        if hasattr(self, "_initialized"):
            return
        self._initialized = True
        self._client = None
        self._namespace = "matching"

    @property
    def client(self) -> redis.Redis:
        """Возвращает клиент Redis."""
        if self._client is None:
            raise RuntimeError("Redis клиент не инициализирован. Вызовите connect() сначала.")
        return self._client

    def _make_key(self, key: str) -> str:
        """Добавляет namespace к ключу."""
        return f"{self._namespace}:{key}"

    async def connect(
        self,
        url: str | None = None,
        max_connections: int = 50,
        namespace: str | None = None,
    ) -> None:
        """
        Подключается к Redis.

        Args:
            url: URL Redis (если None, берётся из конфига)
            max_connections: Максимальное количество соединений
            namespace: Префикс ключей
        """
        if self._client is not None:
            return

        if url is None:
            from trip_matching.config import settings
            url = settings.redis.url
            max_connections = settings.redis.REDIS_MAX_CONNECTIONS
            namespace = settings.redis.REDIS_NAMESPACE

        if namespace:
            self._namespace = namespace

        await log_info("Подключение к Redis...", type_msg=TypeMsg.INFO)

        self._client = redis.from_url(
            url,
            max_connections=max_connections,
            decode_responses=True,
        )
        await self._client.ping()

        await log_info("Подключение к Redis установлено", type_msg=TypeMsg.INFO)

    async def disconnect(self) -> None:
        """Закрывает соединение с Redis."""
        if self._client is not None:
            await self._client.aclose()
            self._client = None
            await log_info("Соединение с Redis закрыто", type_msg=TypeMsg.INFO)

    # =========================================================================
    # БАЗОВЫЕ ОПЕРАЦИИ
    # =========================================================================

    async def get(self, key: str) -> str | None:
        """Получает значение по ключу."""
        return await self.client.get(self._make_key(key))

    async def set(self, key: str, value: str, ttl: int | None = None) -> bool:
        """Устанавливает значение (ttl в секундах)."""
        return bool(await self.client.set(self._make_key(key), value, ex=ttl))

    async def delete(self, key: str) -> int:
        """Удаляет ключ."""
        return await self.client.delete(self._make_key(key))

    async def expire(self, key: str, ttl: int) -> bool:
        """Устанавливает TTL для ключа."""
        return bool(await self.client.expire(self._make_key(key), ttl))

    async def ttl(self, key: str) -> int:
        """Возвращает оставшееся время жизни ключа."""
        return await self.client.ttl(self._make_key(key))

    # =========================================================================
    # СЧЁТЧИКИ
    # =========================================================================

    async def incr(self, key: str, ttl: int | None = None) -> int:
        """
        Атомарно увеличивает счётчик.
        TTL выставляется только при создании ключа.

        Returns:
            Новое значение счётчика
        """
        full_key = self._make_key(key)
        async with self.client.pipeline(transaction=True) as pipe:
            pipe.incr(full_key)
            if ttl is not None:
                pipe.expire(full_key, ttl, nx=True)
            results = await pipe.execute()
        return int(results[0])

    # =========================================================================
    # HEALTH CHECK
    # =========================================================================

    async def health_check(self) -> bool:
        """
        Проверяет здоровье подключения к Redis.

        Returns:
            True если подключение работает
        """
        try:
            return bool(await self.client.ping())
        except Exception as e:
            await log_error(f"Health check Redis failed: {e}")
            return False


def get_redis() -> RedisClient:
    """Возвращает глобальный экземпляр RedisClient."""
    return RedisClient()


async def init_redis() -> RedisClient:
    """
    Инициализирует подключение к Redis.
    Использует настройки из конфигурации.
    """
    from trip_matching.config import settings

    redis_client = get_redis()
    await redis_client.connect(
        url=settings.redis.url,
        max_connections=settings.redis.REDIS_MAX_CONNECTIONS,
        namespace=settings.redis.REDIS_NAMESPACE,
    )
    await log_info(
        f"Redis подключён: {settings.redis.REDIS_HOST}:{settings.redis.REDIS_PORT}/{settings.redis.REDIS_DB}",
        type_msg=TypeMsg.INFO,
    )
    return redis_client


async def close_redis() -> None:
    """Закрывает подключение к Redis."""
    await get_redis().disconnect()
