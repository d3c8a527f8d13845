# trip_matching/infra/backends.py
"""
Выбор и инициализация бэкендов по настройкам system.*_BACKEND.

postgres / memory для хранилища, rabbitmq / memory для событий,
redis / memory для кэша лимитов.
"""

from __future__ import annotations

from dataclasses import dataclass, field

from trip_matching.common.constants import TypeMsg
from trip_matching.common.logger import log_info
from trip_matching.config.loader import Settings
from trip_matching.infra.cache import CacheBackend, InMemoryCache, RedisCache
from trip_matching.infra.database import close_db, init_db
from trip_matching.infra.event_bus import EventPublisher, InMemoryEventStream, close_event_bus, init_event_bus
from trip_matching.infra.pricing_client import HttpPricingEstimator, PricingEstimator
from trip_matching.infra.redis_client import close_redis, init_redis
from trip_matching.infra.store.base import MatchingStore
from trip_matching.infra.store.memory import InMemoryMatchingStore
from trip_matching.infra.store.postgres import PostgresMatchingStore


@dataclass
class Backends:
    """Открытые подключения движка."""
    store: MatchingStore
    publisher: EventPublisher
    cache: CacheBackend
    pricing: PricingEstimator
    opened: set[str] = field(default_factory=set)


async def open_backends(settings: Settings) -> Backends:
    """
    Подключает бэкенды, выбранные в конфиге.

    Raises:
        ValueError: неизвестное имя бэкенда
    """
    system = settings.system
    opened: set[str] = set()

    if system.STORE_BACKEND == "postgres":
        store: MatchingStore = PostgresMatchingStore(await init_db())
        opened.add("postgres")
    elif system.STORE_BACKEND == "memory":
        store = InMemoryMatchingStore()
    else:
        raise ValueError(f"Неизвестный STORE_BACKEND: {system.STORE_BACKEND}")

    if system.EVENT_BACKEND == "rabbitmq":
        publisher: EventPublisher = await init_event_bus()
        opened.add("rabbitmq")
    elif system.EVENT_BACKEND == "memory":
        publisher = InMemoryEventStream()
    else:
        raise ValueError(f"Неизвестный EVENT_BACKEND: {system.EVENT_BACKEND}")

    if system.CACHE_BACKEND == "redis":
        cache: CacheBackend = RedisCache(await init_redis())
        opened.add("redis")
    elif system.CACHE_BACKEND == "memory":
        cache = InMemoryCache()
    else:
        raise ValueError(f"Неизвестный CACHE_BACKEND: {system.CACHE_BACKEND}")

    pricing = HttpPricingEstimator(
        url=settings.pricing.PRICING_SERVICE_URL,
        timeout=settings.pricing.PRICING_TIMEOUT,
    )

    await log_info(
        f"Бэкенды: store={system.STORE_BACKEND}, events={system.EVENT_BACKEND}, cache={system.CACHE_BACKEND}",
        type_msg=TypeMsg.INFO,
    )
    return Backends(store=store, publisher=publisher, cache=cache, pricing=pricing, opened=opened)


async def close_backends(backends: Backends) -> None:
    """Закрывает подключения, открытые в open_backends."""
    if isinstance(backends.pricing, HttpPricingEstimator):
        await backends.pricing.close()
    if "rabbitmq" in backends.opened:
        await close_event_bus()
    if "redis" in backends.opened:
        await close_redis()
    if "postgres" in backends.opened:
        await close_db()
