# trip_matching/infra/store/postgres.py
"""
Хранилище на PostgreSQL.

Условные записи: UPDATE ... WHERE status = ANY($n) RETURNING.
Составные операции выполняются в одной транзакции.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Collection

from asyncpg import Connection, Record

from trip_matching.common.constants import (
    BIDDABLE_STATUSES,
    TERMINAL_STATUSES,
    OfferStatus,
    OrderStatus,
    ServiceClass,
    TypeMsg,
)
from trip_matching.common.logger import log_info
from trip_matching.core.bidding.models import Offer
from trip_matching.core.orders.models import CancellationRecord, Location, TripRequest
from trip_matching.core.workers.models import NEVER_PINGED, WorkerAvailability
from trip_matching.infra.database import DatabaseManager
from trip_matching.infra.store.base import MatchingStore

# Поля, которые можно менять вместе со статусом
_TRANSITION_FIELDS = frozenset({
    "accepted_at",
    "worker_arrived_at",
    "started_at",
    "completed_at",
    "cancelled_at",
})

_REQUEST_COLUMNS = """
    id, requester_id,
    origin_address, origin_latitude, origin_longitude,
    destination_address, destination_latitude, destination_longitude,
    service_class, estimated_price, estimated_distance_km, estimated_duration_min, currency,
    status, search_radius_m, bidding_expires_at, scheduled_at,
    accepted_offer_id, worker_id, final_price, version,
    created_at, accepted_at, worker_arrived_at, started_at, completed_at, cancelled_at
"""

_OFFER_COLUMNS = """
    id, request_id, worker_id, offered_price, message, eta_minutes,
    distance_to_pickup_m, status, submitted_at, updated_at
"""

_WORKER_COLUMNS = """
    worker_id, service_class, latitude, longitude, last_ping_at, online, current_assignment
"""


def _values(statuses: Collection[OrderStatus] | Collection[OfferStatus]) -> list[str]:
    return [status.value for status in statuses]


class _Rollback(Exception):
    """Откат транзакции составной операции."""


class PostgresMatchingStore(MatchingStore):
    """Реализация MatchingStore на asyncpg."""

    def __init__(self, db: DatabaseManager) -> None:
        """
        Args:
            db: Менеджер базы данных (Dependency Injection)
        """
        self._db = db

    # =========================================================================
    # ПРЕОБРАЗОВАНИЕ СТРОК
    # =========================================================================

    @staticmethod
    def _row_to_request(row: Record) -> TripRequest:
        return TripRequest(
            id=row["id"],
            requester_id=row["requester_id"],
            origin=Location(
                address=row["origin_address"],
                latitude=row["origin_latitude"],
                longitude=row["origin_longitude"],
            ),
            destination=Location(
                address=row["destination_address"],
                latitude=row["destination_latitude"],
                longitude=row["destination_longitude"],
            ),
            service_class=ServiceClass(row["service_class"]),
            estimated_price=row["estimated_price"],
            estimated_distance_km=row["estimated_distance_km"],
            estimated_duration_min=row["estimated_duration_min"],
            currency=row["currency"],
            status=OrderStatus(row["status"]),
            search_radius_m=row["search_radius_m"],
            bidding_expires_at=row["bidding_expires_at"],
            scheduled_at=row["scheduled_at"],
            accepted_offer_id=row["accepted_offer_id"],
            worker_id=row["worker_id"],
            final_price=row["final_price"],
            version=row["version"],
            created_at=row["created_at"],
            accepted_at=row["accepted_at"],
            worker_arrived_at=row["worker_arrived_at"],
            started_at=row["started_at"],
            completed_at=row["completed_at"],
            cancelled_at=row["cancelled_at"],
        )

    @staticmethod
    def _row_to_offer(row: Record) -> Offer:
        return Offer(
            id=row["id"],
            request_id=row["request_id"],
            worker_id=row["worker_id"],
            offered_price=row["offered_price"],
            message=row["message"],
            eta_minutes=row["eta_minutes"],
            distance_to_pickup_m=row["distance_to_pickup_m"],
            status=OfferStatus(row["status"]),
            submitted_at=row["submitted_at"],
            updated_at=row["updated_at"],
        )

    @staticmethod
    def _row_to_worker(row: Record) -> WorkerAvailability:
        return WorkerAvailability(
            worker_id=row["worker_id"],
            service_class=ServiceClass(row["service_class"]),
            latitude=row["latitude"],
            longitude=row["longitude"],
            last_ping_at=row["last_ping_at"],
            online=row["online"],
            current_assignment=row["current_assignment"],
        )

    @staticmethod
    def _row_to_cancellation(row: Record) -> CancellationRecord:
        return CancellationRecord.model_validate(dict(row))

    # =========================================================================
    # ЗАКАЗЫ
    # =========================================================================

    async def create_request(self, request: TripRequest, *, exclusive: bool = False) -> TripRequest | None:
        if not exclusive:
            row = await self._insert_request(self._db, request)
        else:
            async with self._db.transaction() as conn:
                # Параллельные заявки одного клиента выстраиваются в очередь на этой блокировке
                await conn.execute("SELECT pg_advisory_xact_lock(hashtext($1))", request.requester_id)
                open_id = await conn.fetchval(
                    """
                    SELECT id FROM trip_requests
                    WHERE requester_id = $1 AND NOT (status = ANY($2::text[]))
                    LIMIT 1
                    """,
                    request.requester_id,
                    _values(TERMINAL_STATUSES),
                )
                if open_id is not None:
                    await log_info(
                        f"Заказ клиента {request.requester_id} не сохранён: открыт {open_id}",
                        type_msg=TypeMsg.DEBUG,
                    )
                    return None
                row = await self._insert_request(conn, request)

        await log_info(f"Заказ {request.id} сохранён", type_msg=TypeMsg.DEBUG)
        return self._row_to_request(row)

    @staticmethod
    async def _insert_request(executor: DatabaseManager | Connection, request: TripRequest) -> Record:
        return await executor.fetchrow(
            f"""
            INSERT INTO trip_requests ({_REQUEST_COLUMNS})
            VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12, $13, $14,
                    $15, $16, $17, $18, $19, $20, $21, $22, $23, $24, $25, $26, $27)
            RETURNING {_REQUEST_COLUMNS}
            """,
            request.id,
            request.requester_id,
            request.origin.address,
            request.origin.latitude,
            request.origin.longitude,
            request.destination.address,
            request.destination.latitude,
            request.destination.longitude,
            request.service_class.value,
            request.estimated_price,
            request.estimated_distance_km,
            request.estimated_duration_min,
            request.currency,
            request.status.value,
            request.search_radius_m,
            request.bidding_expires_at,
            request.scheduled_at,
            request.accepted_offer_id,
            request.worker_id,
            request.final_price,
            request.version,
            request.created_at,
            request.accepted_at,
            request.worker_arrived_at,
            request.started_at,
            request.completed_at,
            request.cancelled_at,
        )

    async def get_request(self, request_id: str) -> TripRequest | None:
        row = await self._db.fetchrow(
            f"SELECT {_REQUEST_COLUMNS} FROM trip_requests WHERE id = $1",
            request_id,
            idempotent=True,
        )
        return self._row_to_request(row) if row else None

    async def get_open_request_for_requester(self, requester_id: str) -> TripRequest | None:
        row = await self._db.fetchrow(
            f"""
            SELECT {_REQUEST_COLUMNS} FROM trip_requests
            WHERE requester_id = $1 AND NOT (status = ANY($2::text[]))
            ORDER BY created_at DESC
            LIMIT 1
            """,
            requester_id,
            _values(TERMINAL_STATUSES),
            idempotent=True,
        )
        return self._row_to_request(row) if row else None

    async def transition_request(
        self,
        request_id: str,
        expected: Collection[OrderStatus],
        new_status: OrderStatus,
        *,
        fields: dict[str, Any] | None = None,
        release_worker: bool = False,
    ) -> TripRequest | None:
        fields = fields or {}
        unknown = set(fields) - _TRANSITION_FIELDS
        if unknown:
            raise ValueError(f"Недопустимые поля перехода: {sorted(unknown)}")

        assignments = ["status = $3", "version = version + 1"]
        args: list[Any] = [request_id, _values(expected), new_status.value]
        for name, value in fields.items():
            args.append(value)
            assignments.append(f"{name} = ${len(args)}")

        async with self._db.transaction() as conn:
            row = await conn.fetchrow(
                f"""
                UPDATE trip_requests SET {", ".join(assignments)}
                WHERE id = $1 AND status = ANY($2::text[])
                RETURNING {_REQUEST_COLUMNS}
                """,
                *args,
            )
            if row is None:
                return None
            if release_worker and row["worker_id"]:
                await self._release_worker(conn, row["worker_id"], request_id)

        return self._row_to_request(row)

    async def update_search_radius(self, request_id: str, radius_m: float) -> TripRequest | None:
        row = await self._db.fetchrow(
            f"""
            UPDATE trip_requests SET search_radius_m = $2
            WHERE id = $1 AND status = ANY($3::text[])
            RETURNING {_REQUEST_COLUMNS}
            """,
            request_id,
            radius_m,
            _values(BIDDABLE_STATUSES),
        )
        return self._row_to_request(row) if row else None

    async def list_expired_sessions(self, now: datetime) -> list[TripRequest]:
        rows = await self._db.fetch(
            f"""
            SELECT {_REQUEST_COLUMNS} FROM trip_requests
            WHERE status = ANY($1::text[]) AND bidding_expires_at <= $2
            ORDER BY bidding_expires_at
            """,
            _values(BIDDABLE_STATUSES),
            now,
        )
        return [self._row_to_request(row) for row in rows]

    # =========================================================================
    # ПРЕДЛОЖЕНИЯ
    # =========================================================================

    async def create_offer(self, offer: Offer) -> Offer | None:
        row = await self._db.fetchrow(
            f"""
            INSERT INTO offers ({_OFFER_COLUMNS})
            VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10)
            ON CONFLICT (request_id, worker_id) WHERE status = 'pending' DO NOTHING
            RETURNING {_OFFER_COLUMNS}
            """,
            offer.id,
            offer.request_id,
            offer.worker_id,
            offer.offered_price,
            offer.message,
            offer.eta_minutes,
            offer.distance_to_pickup_m,
            offer.status.value,
            offer.submitted_at,
            offer.updated_at,
        )
        return self._row_to_offer(row) if row else None

    async def get_offer(self, offer_id: str) -> Offer | None:
        row = await self._db.fetchrow(
            f"SELECT {_OFFER_COLUMNS} FROM offers WHERE id = $1",
            offer_id,
            idempotent=True,
        )
        return self._row_to_offer(row) if row else None

    async def list_offers(
        self,
        request_id: str,
        statuses: Collection[OfferStatus] | None = None,
    ) -> list[Offer]:
        if statuses is None:
            rows = await self._db.fetch(
                f"SELECT {_OFFER_COLUMNS} FROM offers WHERE request_id = $1 ORDER BY seq",
                request_id,
            )
        else:
            rows = await self._db.fetch(
                f"""
                SELECT {_OFFER_COLUMNS} FROM offers
                WHERE request_id = $1 AND status = ANY($2::text[])
                ORDER BY seq
                """,
                request_id,
                _values(statuses),
            )
        return [self._row_to_offer(row) for row in rows]

    async def set_offer_status(
        self,
        offer_id: str,
        expected: OfferStatus,
        new_status: OfferStatus,
        now: datetime,
    ) -> Offer | None:
        row = await self._db.fetchrow(
            f"""
            UPDATE offers SET status = $3, updated_at = $4
            WHERE id = $1 AND status = $2
            RETURNING {_OFFER_COLUMNS}
            """,
            offer_id,
            expected.value,
            new_status.value,
            now,
        )
        return self._row_to_offer(row) if row else None

    async def update_offer(
        self,
        offer_id: str,
        *,
        offered_price: float,
        message: str | None,
        eta_minutes: int | None,
        now: datetime,
    ) -> Offer | None:
        row = await self._db.fetchrow(
            f"""
            UPDATE offers SET offered_price = $2, message = $3, eta_minutes = $4, updated_at = $5
            WHERE id = $1 AND status = 'pending'
            RETURNING {_OFFER_COLUMNS}
            """,
            offer_id,
            offered_price,
            message,
            eta_minutes,
            now,
        )
        return self._row_to_offer(row) if row else None

    async def close_pending_offers(
        self,
        request_id: str,
        new_status: OfferStatus,
        now: datetime,
    ) -> int:
        status = await self._db.execute(
            """
            UPDATE offers SET status = $2, updated_at = $3
            WHERE request_id = $1 AND status = 'pending'
            """,
            request_id,
            new_status.value,
            now,
        )
        return _affected(status)

    # =========================================================================
    # СОСТАВНЫЕ ОПЕРАЦИИ
    # =========================================================================

    async def commit_acceptance(
        self,
        request_id: str,
        offer_id: str,
        now: datetime,
    ) -> TripRequest | None:
        try:
            async with self._db.transaction() as conn:
                offer = await conn.fetchrow(
                    """
                    SELECT worker_id, offered_price FROM offers
                    WHERE id = $1 AND request_id = $2 AND status = 'pending'
                    FOR UPDATE
                    """,
                    offer_id,
                    request_id,
                )
                if offer is None:
                    raise _Rollback()

                # Конкурирующая транзакция ждёт блокировку строки заказа
                # и после commit победителя не проходит условие по статусу
                row = await conn.fetchrow(
                    f"""
                    UPDATE trip_requests
                    SET status = 'accepted', accepted_offer_id = $2, worker_id = $3,
                        final_price = $4, accepted_at = $5, version = version + 1
                    WHERE id = $1 AND status = ANY($6::text[])
                    RETURNING {_REQUEST_COLUMNS}
                    """,
                    request_id,
                    offer_id,
                    offer["worker_id"],
                    offer["offered_price"],
                    now,
                    _values(BIDDABLE_STATUSES),
                )
                if row is None:
                    raise _Rollback()

                # Исполнитель без пингов получает офлайн-запись с назначением;
                # занятый другим заказом не проходит условие DO UPDATE
                assigned = await conn.fetchrow(
                    """
                    INSERT INTO worker_availability (
                        worker_id, service_class, latitude, longitude,
                        last_ping_at, online, current_assignment
                    ) VALUES ($1, $3, $4, $5, $6, false, $2)
                    ON CONFLICT (worker_id) DO UPDATE
                    SET current_assignment = EXCLUDED.current_assignment
                    WHERE worker_availability.current_assignment IS NULL
                       OR worker_availability.current_assignment = EXCLUDED.current_assignment
                    RETURNING worker_id
                    """,
                    offer["worker_id"],
                    request_id,
                    row["service_class"],
                    row["origin_latitude"],
                    row["origin_longitude"],
                    NEVER_PINGED,
                )
                if assigned is None:
                    raise _Rollback()

                await conn.execute(
                    "UPDATE offers SET status = 'accepted', updated_at = $2 WHERE id = $1",
                    offer_id,
                    now,
                )
                await conn.execute(
                    """
                    UPDATE offers SET status = 'rejected', updated_at = $3
                    WHERE request_id = $1 AND id <> $2 AND status = 'pending'
                    """,
                    request_id,
                    offer_id,
                    now,
                )
        except _Rollback:
            return None

        return self._row_to_request(row)

    async def commit_cancellation(
        self,
        request_id: str,
        expected_status: OrderStatus,
        record: CancellationRecord,
        now: datetime,
    ) -> TripRequest | None:
        async with self._db.transaction() as conn:
            row = await conn.fetchrow(
                f"""
                UPDATE trip_requests
                SET status = 'cancelled', cancelled_at = $3, version = version + 1
                WHERE id = $1 AND status = $2
                RETURNING {_REQUEST_COLUMNS}
                """,
                request_id,
                expected_status.value,
                now,
            )
            if row is None:
                return None

            await conn.execute(
                """
                INSERT INTO cancellation_records (
                    id, order_id, initiator_id, initiator_role, reason, fee_amount,
                    fee_percent, price_basis, status_at_cancellation, admin_override, created_at
                )
                VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11)
                """,
                record.id,
                record.order_id,
                record.initiator_id,
                record.initiator_role.value,
                record.reason,
                record.fee_amount,
                record.fee_percent,
                record.price_basis,
                record.status_at_cancellation.value,
                record.admin_override,
                record.created_at,
            )
            await conn.execute(
                """
                UPDATE offers SET status = 'rejected', updated_at = $2
                WHERE request_id = $1 AND status = 'pending'
                """,
                request_id,
                now,
            )
            if row["worker_id"]:
                await self._release_worker(conn, row["worker_id"], request_id)

        return self._row_to_request(row)

    async def list_cancellations(self, order_id: str) -> list[CancellationRecord]:
        rows = await self._db.fetch(
            """
            SELECT id, order_id, initiator_id, initiator_role, reason, fee_amount,
                   fee_percent, price_basis, status_at_cancellation, admin_override, created_at
            FROM cancellation_records
            WHERE order_id = $1
            ORDER BY created_at
            """,
            order_id,
        )
        return [self._row_to_cancellation(row) for row in rows]

    # =========================================================================
    # ИСПОЛНИТЕЛИ
    # =========================================================================

    @staticmethod
    async def _release_worker(conn: Connection, worker_id: str, request_id: str) -> None:
        await conn.execute(
            """
            UPDATE worker_availability SET current_assignment = NULL
            WHERE worker_id = $1 AND current_assignment = $2
            """,
            worker_id,
            request_id,
        )

    async def upsert_worker_location(self, worker: WorkerAvailability) -> WorkerAvailability:
        row = await self._db.fetchrow(
            f"""
            INSERT INTO worker_availability (worker_id, service_class, latitude, longitude, last_ping_at, online)
            VALUES ($1, $2, $3, $4, $5, $6)
            ON CONFLICT (worker_id) DO UPDATE
            SET service_class = EXCLUDED.service_class,
                latitude = EXCLUDED.latitude,
                longitude = EXCLUDED.longitude,
                last_ping_at = EXCLUDED.last_ping_at,
                online = EXCLUDED.online
            WHERE worker_availability.last_ping_at <= EXCLUDED.last_ping_at
            RETURNING {_WORKER_COLUMNS}
            """,
            worker.worker_id,
            worker.service_class.value,
            worker.latitude,
            worker.longitude,
            worker.last_ping_at,
            worker.online,
        )
        if row is None:
            current = await self.get_worker(worker.worker_id)
            if current is None:
                raise RuntimeError(f"Исполнитель {worker.worker_id} пропал во время записи пинга")
            return current
        return self._row_to_worker(row)

    async def get_worker(self, worker_id: str) -> WorkerAvailability | None:
        row = await self._db.fetchrow(
            f"SELECT {_WORKER_COLUMNS} FROM worker_availability WHERE worker_id = $1",
            worker_id,
            idempotent=True,
        )
        return self._row_to_worker(row) if row else None

    async def list_available_workers(
        self,
        service_class: ServiceClass,
        seen_after: datetime,
    ) -> list[WorkerAvailability]:
        rows = await self._db.fetch(
            f"""
            SELECT {_WORKER_COLUMNS} FROM worker_availability
            WHERE service_class = $1
              AND online
              AND current_assignment IS NULL
              AND last_ping_at >= $2
            """,
            service_class.value,
            seen_after,
        )
        return [self._row_to_worker(row) for row in rows]


def _affected(status: str) -> int:
    """Количество строк из статуса asyncpg ("UPDATE 3")."""
    try:
        return int(status.rsplit(" ", 1)[-1])
    except (ValueError, IndexError):
        return 0
