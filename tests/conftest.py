# tests/conftest.py
"""
Общие фикстуры и настройки для тестов.
"""

from __future__ import annotations

import asyncio
import os
from dataclasses import dataclass, field
from datetime import timedelta
from pathlib import Path
from typing import Any, AsyncGenerator, Awaitable, Callable
from unittest.mock import AsyncMock

import pytest
import pytest_asyncio

# Устанавливаем переменные окружения перед импортом модулей
os.environ.setdefault("DB_PASSWORD", "test_password")
os.environ.setdefault("REDIS_PASSWORD", "")
os.environ.setdefault("RABBITMQ_PASSWORD", "guest")

from trip_matching.common.clock import ManualClock
from trip_matching.common.constants import CallerRole, ServiceClass
from trip_matching.config.loader import (
    BiddingSettings,
    CancellationSettings,
    MaintenanceSettings,
    RateLimitSettings,
    SearchSettings,
)
from trip_matching.core.arbiter import AcceptanceArbiter
from trip_matching.core.bidding.service import BiddingSessionManager
from trip_matching.core.cancellation import CancellationService
from trip_matching.core.gateway import CallerContext, MatchingGateway
from trip_matching.core.intake import CreateTripRequestDTO, RequestIntakeService
from trip_matching.core.locator import CandidateLocator
from trip_matching.core.orders.models import Location, TripRequest
from trip_matching.core.orders.service import OrderLifecycleService
from trip_matching.core.rate_limit import RateLimiter
from trip_matching.core.workers.service import WorkerLocationService
from trip_matching.infra.cache import InMemoryCache
from trip_matching.infra.event_bus import InMemoryEventStream
from trip_matching.infra.pricing_client import PriceEstimate
from trip_matching.infra.store.memory import InMemoryMatchingStore

# Точка подачи по умолчанию (Киншаса)
PICKUP = Location(address="Boulevard du 30 Juin, Kinshasa", latitude=-4.3250, longitude=15.3222)
DROPOFF = Location(address="Rond-point Victoire, Kinshasa", latitude=-4.3390, longitude=15.3110)

# Метров в градусе широты для EARTH_RADIUS_M = 6371000
METERS_PER_DEGREE = 111194.93


def north_of(location: Location, meters: float) -> tuple[float, float]:
    """Координаты точки в meters метрах к северу."""
    return location.latitude + meters / METERS_PER_DEGREE, location.longitude


# =============================================================================
# ТЕСТОВЫЕ ДУБЛЁРЫ
# =============================================================================

class StubPricingEstimator:
    """Сервис оценки с фиксированной ценой."""

    def __init__(self, price: float = 10000.0) -> None:
        self.price = price
        self.calls: list[tuple[Location, Location, ServiceClass]] = []

    async def estimate(
        self,
        origin: Location,
        destination: Location,
        service_class: ServiceClass,
    ) -> PriceEstimate:
        self.calls.append((origin, destination, service_class))
        return PriceEstimate(price=self.price, distance_km=5.2, duration_min=18, currency="CDF")


class ControlledSleep:
    """
    Подмена asyncio.sleep для таймеров.
    Запоминает задержки и ждёт release() (или возвращается сразу при instant=True).
    """

    def __init__(self, instant: bool = False) -> None:
        self.instant = instant
        self.delays: list[float] = []
        self._gate = asyncio.Event()

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)
        if self.instant:
            return
        await self._gate.wait()

    def release(self) -> None:
        self._gate.set()


@dataclass
class Engine:
    """Собранный движок поверх хранилищ в памяти."""
    clock: ManualClock
    store: InMemoryMatchingStore
    events: InMemoryEventStream
    cache: InMemoryCache
    pricing: StubPricingEstimator
    sleep: ControlledSleep
    lifecycle: OrderLifecycleService
    arbiter: AcceptanceArbiter
    cancellation: CancellationService
    bidding: BiddingSessionManager
    locator: CandidateLocator
    intake: RequestIntakeService
    limiter: RateLimiter
    locations: WorkerLocationService
    gateway: MatchingGateway
    extras: dict[str, Any] = field(default_factory=dict)

    async def shutdown(self) -> None:
        await self.gateway.shutdown()


def build_engine(
    store: InMemoryMatchingStore | None = None,
    bidding_config: BiddingSettings | None = None,
    search_config: SearchSettings | None = None,
    cancellation_config: CancellationSettings | None = None,
    rate_limit_config: RateLimitSettings | None = None,
    price: float = 10000.0,
) -> Engine:
    """Собирает движок так же, как build_gateway, но с управляемыми часами и таймерами."""
    clock = ManualClock()
    store = store or InMemoryMatchingStore()
    events = InMemoryEventStream()
    cache = InMemoryCache(clock)
    pricing = StubPricingEstimator(price)
    sleep = ControlledSleep()

    bidding_config = bidding_config or BiddingSettings()
    search_config = search_config or SearchSettings()

    lifecycle = OrderLifecycleService(store, events, clock)
    arbiter = AcceptanceArbiter(store, events, lifecycle, clock)
    cancellation = CancellationService(store, events, lifecycle, clock, cancellation_config or CancellationSettings())
    bidding = BiddingSessionManager(
        store, events, lifecycle, arbiter, cancellation, clock, bidding_config, sleep=sleep
    )
    locator = CandidateLocator(store, clock, search_config)
    intake = RequestIntakeService(
        store, pricing, events, locator, bidding, clock,
        bidding_config=bidding_config,
        search_config=search_config,
    )
    limiter = RateLimiter(cache, clock, rate_limit_config or RateLimitSettings())
    locations = WorkerLocationService(store, clock)
    gateway = MatchingGateway(
        limiter=limiter,
        intake=intake,
        bidding=bidding,
        arbiter=arbiter,
        cancellation=cancellation,
        lifecycle=lifecycle,
        locations=locations,
    )
    return Engine(
        clock=clock,
        store=store,
        events=events,
        cache=cache,
        pricing=pricing,
        sleep=sleep,
        lifecycle=lifecycle,
        arbiter=arbiter,
        cancellation=cancellation,
        bidding=bidding,
        locator=locator,
        intake=intake,
        limiter=limiter,
        locations=locations,
        gateway=gateway,
    )


# =============================================================================
# ФИКСТУРЫ КОНФИГУРАЦИИ
# =============================================================================

@pytest.fixture(scope="session")
def project_root() -> Path:
    """Корневая директория проекта."""
    return Path(__file__).parent.parent


@pytest.fixture(scope="session")
def config_path(project_root: Path) -> Path:
    """Путь к файлу конфигурации."""
    return project_root / "config" / "config.json"


@pytest.fixture
def mock_config() -> dict[str, Any]:
    """Мок конфигурации для тестов (плоский формат config.json)."""
    return {
        "_comment_system": "Системные настройки",
        "PROJECT_NAME": "trip_matching_test",
        "VERSION": "1.0.0-test",
        "DEBUG": True,
        "ENVIRONMENT": "test",
        "STORE_BACKEND": "Memory",
        "EVENT_BACKEND": "memory",
        "CACHE_BACKEND": "memory",
        "LOG_LEVEL": "DEBUG",
        "LOG_TO_FILE": False,
        "DB_HOST": "localhost",
        "DB_PORT": 5432,
        "DB_NAME": "trip_matching_test",
        "DB_USER": "postgres",
        "REDIS_HOST": "localhost",
        "REDIS_PORT": 6379,
        "REDIS_DB": 1,
        "REDIS_NAMESPACE": "matching_test",
        "RABBITMQ_HOST": "localhost",
        "RABBITMQ_EXCHANGE": "matching.test",
        "BIDDING_WINDOW_SECONDS": {"standard": 45, "truck": 240},
        "PRICE_BAND_MIN": 0.6,
        "PRICE_BAND_MAX": 1.4,
        "DEFAULT_SEARCH_RADIUS_M": 2000,
        "CANCELLATION_FEE_PERCENT": 15,
        "BASE_LIMITS": {"request_creation": [3, 30]},
        "RETRY_MAX_ATTEMPTS": 4,
        "SESSION_SWEEP_INTERVAL": 1.5,
    }


@pytest.fixture
def temp_config_file(tmp_path: Path, mock_config: dict[str, Any]) -> Path:
    """Временный config.json."""
    import json

    config_file = tmp_path / "config.json"
    config_file.write_text(json.dumps(mock_config), encoding="utf-8")
    return config_file


# =============================================================================
# ФИКСТУРЫ ДВИЖКА
# =============================================================================

@pytest.fixture
def clock() -> ManualClock:
    return ManualClock()


@pytest.fixture
def store() -> InMemoryMatchingStore:
    return InMemoryMatchingStore()


@pytest.fixture
def events() -> InMemoryEventStream:
    return InMemoryEventStream()


@pytest.fixture
def mock_event_bus() -> AsyncMock:
    """Мок публикатора событий."""
    bus = AsyncMock()
    bus.publish = AsyncMock(side_effect=lambda event: event)
    return bus


@pytest_asyncio.fixture
async def engine() -> AsyncGenerator[Engine, None]:
    """Движок на хранилищах в памяти; таймеры и фоновые задачи останавливаются после теста."""
    built = build_engine()
    yield built
    await built.shutdown()


@pytest.fixture
def client_caller() -> CallerContext:
    return CallerContext(caller_id="client-1", role=CallerRole.CLIENT, origin="10.0.0.1")


@pytest.fixture
def place_worker(engine: Engine) -> Callable[..., Awaitable[None]]:
    """Ставит исполнителя в meters метрах к северу от точки подачи."""

    async def _place(
        worker_id: str,
        meters: float = 500.0,
        service_class: ServiceClass = ServiceClass.STANDARD,
        seconds_ago: float = 0.0,
        online: bool = True,
    ) -> None:
        latitude, longitude = north_of(PICKUP, meters)
        await engine.locations.ingest_ping(
            worker_id,
            latitude,
            longitude,
            service_class,
            timestamp=engine.clock() - timedelta(seconds=seconds_ago),
            online=online,
        )

    return _place


@pytest.fixture
def create_order(engine: Engine) -> Callable[..., Awaitable[TripRequest]]:
    """Создаёт заказ и дожидается фонового поиска исполнителей."""

    async def _create(
        requester_id: str = "client-1",
        service_class: str = "standard",
        drain: bool = True,
    ) -> TripRequest:
        request = await engine.intake.create_request(
            CreateTripRequestDTO(
                requester_id=requester_id,
                origin=PICKUP,
                destination=DROPOFF,
                service_class=service_class,
            )
        )
        if drain:
            await engine.intake.drain()
        return request

    return _create


@pytest.fixture
def maintenance_settings() -> MaintenanceSettings:
    return MaintenanceSettings(SESSION_SWEEP_INTERVAL=0.01, RATE_LIMIT_SWEEP_INTERVAL=0.01)


@pytest.fixture
def pickup() -> Location:
    return PICKUP


@pytest.fixture
def dropoff() -> Location:
    return DROPOFF


@pytest.fixture
def trip_dto() -> Callable[..., CreateTripRequestDTO]:
    """Фабрика DTO заявки с корректными полями по умолчанию."""

    def _make(requester_id: str = "client-1", **overrides: Any) -> CreateTripRequestDTO:
        data: dict[str, Any] = {
            "requester_id": requester_id,
            "origin": PICKUP,
            "destination": DROPOFF,
            "service_class": "standard",
        }
        data.update(overrides)
        return CreateTripRequestDTO(**data)

    return _make


@pytest_asyncio.fixture
async def engine_factory() -> AsyncGenerator[Callable[..., Engine], None]:
    """Фабрика движков с нестандартными настройками; все движки останавливаются после теста."""
    built: list[Engine] = []

    def _build(**kwargs: Any) -> Engine:
        instance = build_engine(**kwargs)
        built.append(instance)
        return instance

    yield _build
    for instance in built:
        await instance.shutdown()
