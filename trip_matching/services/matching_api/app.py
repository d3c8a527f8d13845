# trip_matching/services/matching_api/app.py
"""
FastAPI приложение движка подбора исполнителей и торгов.

Ошибки движка отображаются в HTTP статусы единым обработчиком.
"""

from __future__ import annotations

import math
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from trip_matching.common.constants import TypeMsg
from trip_matching.common.exceptions import (
    ConflictError,
    ExpiredSession,
    InvalidStateTransition,
    MatchingError,
    NoDriversAvailable,
    NotFoundError,
    RateLimitExceeded,
    ServiceUnavailable,
    ValidationError,
)
from trip_matching.common.logger import log_error, log_info
from trip_matching.config.loader import Settings
from trip_matching.core.gateway import MatchingGateway, build_gateway
from trip_matching.infra.backends import close_backends, open_backends
from trip_matching.services.matching_api.routes import offers_router, orders_router, workers_router
from trip_matching.services.matching_api.schemas import HealthStatus

SERVICE_NAME = "matching_api"

ERROR_STATUS: dict[type[MatchingError], int] = {
    ValidationError: 422,
    NotFoundError: 404,
    ConflictError: 409,
    InvalidStateTransition: 409,
    RateLimitExceeded: 429,
    NoDriversAvailable: 404,
    ExpiredSession: 410,
    ServiceUnavailable: 503,
}


def status_for(error: MatchingError) -> int:
    for error_type, status_code in ERROR_STATUS.items():
        if isinstance(error, error_type):
            return status_code
    return 500


async def matching_error_handler(request: Request, exc: MatchingError) -> JSONResponse:
    status_code = status_for(exc)
    headers = {}
    if isinstance(exc, RateLimitExceeded):
        headers["Retry-After"] = str(max(1, math.ceil(exc.retry_after)))
    if status_code >= 500:
        await log_error(f"{request.method} {request.url.path}: {exc}")
    return JSONResponse(status_code=status_code, content=exc.to_dict(), headers=headers)


def create_app(
    gateway: MatchingGateway | None = None,
    settings: Settings | None = None,
) -> FastAPI:
    """
    Создаёт приложение.

    Args:
        gateway: Готовый шлюз (бэкенды не открываются, если передан)
        settings: Настройки (глобальные если None)
    """
    if settings is None:
        from trip_matching.config import settings as global_settings
        settings = global_settings

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Жизненный цикл приложения."""
        backends = None
        if app.state.gateway is None:
            backends = await open_backends(settings)
            app.state.gateway = build_gateway(
                backends.store,
                backends.publisher,
                backends.cache,
                backends.pricing,
                settings=settings,
            )
        await log_info(f"{SERVICE_NAME} запущен", type_msg=TypeMsg.INFO)

        yield

        await app.state.gateway.shutdown()
        if backends is not None:
            await close_backends(backends)
        await log_info(f"{SERVICE_NAME} остановлен", type_msg=TypeMsg.INFO)

    app = FastAPI(
        title="Trip Matching Service",
        description="Подбор исполнителей, торги и жизненный цикл заказа.",
        version=settings.system.VERSION,
        lifespan=lifespan,
        docs_url="/docs",
        redoc_url="/redoc",
    )
    app.state.gateway = gateway
    app.add_exception_handler(MatchingError, matching_error_handler)

    app.include_router(orders_router, prefix="/api/v1")
    app.include_router(offers_router, prefix="/api/v1")
    app.include_router(workers_router, prefix="/api/v1")

    @app.get("/health", response_model=HealthStatus, tags=["Health"])
    async def health_check() -> HealthStatus:
        """Проверка здоровья сервиса."""
        return HealthStatus(status="healthy", service=SERVICE_NAME, version=settings.system.VERSION)

    return app
