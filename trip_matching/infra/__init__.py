# trip_matching/infra/__init__.py
"""
Инфраструктурный слой.
Работа с внешними сервисами: PostgreSQL, Redis, RabbitMQ, сервис оценки стоимости.
"""

from trip_matching.infra.cache import CacheBackend, InMemoryCache, RedisCache
from trip_matching.infra.database import DatabaseManager, get_db
from trip_matching.infra.event_bus import EventPublisher, InMemoryEventStream, RabbitMQEventBus, get_event_bus
from trip_matching.infra.redis_client import RedisClient, get_redis

__all__ = [
    "CacheBackend",
    "InMemoryCache",
    "RedisCache",
    "DatabaseManager",
    "get_db",
    "EventPublisher",
    "InMemoryEventStream",
    "RabbitMQEventBus",
    "get_event_bus",
    "RedisClient",
    "get_redis",
]
