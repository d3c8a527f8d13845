# trip_matching/infra/store/__init__.py
"""
Хранилище: интерфейс, PostgreSQL и реализация в памяти.
"""

from trip_matching.infra.store.base import MatchingStore
from trip_matching.infra.store.memory import InMemoryMatchingStore
from trip_matching.infra.store.postgres import PostgresMatchingStore

__all__ = [
    "MatchingStore",
    "InMemoryMatchingStore",
    "PostgresMatchingStore",
]
