# trip_matching/infra/database.py
"""
Менеджер базы данных PostgreSQL.
Пул соединений, транзакции и повторы при ошибках подключения.

Повторяются получение соединения из пула и чтения; отправленная запись не повторяется.
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator

import asyncpg
from asyncpg import Connection, Pool, Record

from trip_matching.common.constants import TypeMsg
from trip_matching.common.logger import log_error, log_info
from trip_matching.common.retry import with_retry


def is_connection_error(error: BaseException) -> bool:
    """Ошибки подключения к PostgreSQL, которые имеет смысл повторить."""
    return isinstance(
        error,
        (
            asyncpg.PostgresConnectionError,
            asyncpg.InterfaceError,
            ConnectionRefusedError,
            OSError,
        ),
    )


class DatabaseManager:
    """
    Менеджер подключений к PostgreSQL.
    Реализует паттерн Singleton для пула соединений.
    """

    _instance: DatabaseManager | None = None
    _pool: Pool | None = None

    def __new__(cls) -> DatabaseManager:
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __init__(self) -> None:
        if hasattr(self, "_initialized"):
            return
        self._initialized = True
        self._pool = None

    @property
    def pool(self) -> Pool:
        """Возвращает пул соединений."""
        if self._pool is None:
            raise RuntimeError("Пул соединений не инициализирован. Вызовите connect() сначала.")
        return self._pool

    @with_retry(retryable=is_connection_error)
    async def connect(
        self,
        dsn: str | None = None,
        min_size: int = 5,
        max_size: int = 20,
        command_timeout: int = 60,
    ) -> None:
        """
        Создаёт пул соединений к PostgreSQL.

        Args:
            dsn: DSN строка подключения (если None, берётся из конфига)
            min_size: Минимальный размер пула
            max_size: Максимальный размер пула
            command_timeout: Таймаут команд (секунды)
        """
        if self._pool is not None:
            return

        if dsn is None:
            from trip_matching.config import settings
            dsn = settings.database.dsn
            min_size = settings.database.DB_MIN_POOL_SIZE
            max_size = settings.database.DB_MAX_POOL_SIZE
            command_timeout = settings.database.DB_COMMAND_TIMEOUT

        await log_info("Подключение к PostgreSQL...", type_msg=TypeMsg.INFO)

        self._pool = await asyncpg.create_pool(
            dsn=dsn,
            min_size=min_size,
            max_size=max_size,
            command_timeout=command_timeout,
        )

        await log_info("Подключение к PostgreSQL установлено", type_msg=TypeMsg.INFO)

    async def disconnect(self) -> None:
        """Закрывает пул соединений."""
        if self._pool is not None:
            await self._pool.close()
            self._pool = None
            await log_info("Соединение с PostgreSQL закрыто", type_msg=TypeMsg.INFO)

    @with_retry(retryable=is_connection_error)
    async def _checkout(self) -> Connection:
        return await self.pool.acquire()

    @asynccontextmanager
    async def acquire(self) -> AsyncGenerator[Connection, None]:
        """Соединение из пула."""
        connection = await self._checkout()
        try:
            yield connection
        finally:
            await self.pool.release(connection)

    @asynccontextmanager
    async def transaction(self) -> AsyncGenerator[Connection, None]:
        """
        Контекстный менеджер для транзакции.
        Commit при успехе, rollback при ошибке.

        Example:
            async with db.transaction() as conn:
                row = await conn.fetchrow("UPDATE trip_requests ... RETURNING *")
                await conn.execute("UPDATE offers ...")
        """
        async with self.acquire() as connection:
            async with connection.transaction():
                yield connection

    async def execute(self, query: str, *args: Any) -> str:
        """Выполняет SQL запрос без возврата данных. Без повторов."""
        async with self.acquire() as conn:
            return await conn.execute(query, *args)

    async def fetch(self, query: str, *args: Any) -> list[Record]:
        """Выполняет SELECT и возвращает все строки."""
        return await self._read("fetch", query, *args)

    async def fetchrow(self, query: str, *args: Any, idempotent: bool = False) -> Record | None:
        """
        Выполняет SQL запрос и возвращает одну строку.

        Args:
            query: SQL запрос
            idempotent: Запрос только читает; повторяется при ошибках подключения.
                INSERT/UPDATE ... RETURNING передаются без этого флага.
        """
        if idempotent:
            return await self._read("fetchrow", query, *args)
        async with self.acquire() as conn:
            return await conn.fetchrow(query, *args)

    async def fetchval(self, query: str, *args: Any, column: int = 0) -> Any:
        """Выполняет SELECT и возвращает одно значение."""
        return await self._read("fetchval", query, *args, column=column)

    @with_retry(retryable=is_connection_error)
    async def _read(self, method: str, query: str, *args: Any, **kwargs: Any) -> Any:
        connection = await self.pool.acquire()
        try:
            return await getattr(connection, method)(query, *args, **kwargs)
        finally:
            await self.pool.release(connection)

    async def health_check(self) -> bool:
        """
        Проверяет здоровье подключения к БД.

        Returns:
            True если подключение работает
        """
        try:
            result = await self.fetchval("SELECT 1")
            return result == 1
        except Exception as e:
            await log_error(f"Health check PostgreSQL failed: {e}")
            return False


# Глобальный экземпляр
_db_manager: DatabaseManager | None = None


def get_db() -> DatabaseManager:
    """Возвращает глобальный экземпляр DatabaseManager."""
    global _db_manager
    if _db_manager is None:
        _db_manager = DatabaseManager()
    return _db_manager


async def init_db() -> DatabaseManager:
    """
    Подключается к базе данных и применяет схему.
    Использует настройки из конфигурации.
    """
    from trip_matching.config import settings

    db = get_db()
    await db.connect(
        dsn=settings.database.dsn,
        min_size=settings.database.DB_MIN_POOL_SIZE,
        max_size=settings.database.DB_MAX_POOL_SIZE,
        command_timeout=settings.database.DB_COMMAND_TIMEOUT,
    )
    await log_info(
        f"PostgreSQL подключён: {settings.database.DB_HOST}:{settings.database.DB_PORT}/{settings.database.DB_NAME}",
        type_msg=TypeMsg.INFO,
    )

    await _init_schema(db)
    return db


async def _init_schema(db: DatabaseManager) -> None:
    """Выполняет начальную миграцию БД."""
    from trip_matching.config.loader import get_project_root

    schema_path = get_project_root() / "migrations" / "init.sql"
    if not schema_path.exists():
        await log_error(f"Файл схемы БД не найден: {schema_path}")
        return

    with open(schema_path, "r", encoding="utf-8") as f:
        schema_sql = f.read()

    await log_info("Применение схемы БД...", type_msg=TypeMsg.INFO)

    # Advisory lock: несколько процессов могут стартовать одновременно
    async with db.transaction() as conn:
        await conn.execute("SELECT pg_advisory_xact_lock(727001)")
        await conn.execute(schema_sql)

    await log_info("Схема БД успешно применена", type_msg=TypeMsg.INFO)


async def close_db() -> None:
    """Закрывает подключение к базе данных."""
    db = get_db()
    await db.disconnect()
