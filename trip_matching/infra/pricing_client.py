# trip_matching/infra/pricing_client.py
"""
Клиент внешнего сервиса оценки стоимости.
Модель ценообразования находится вне этого сервиса: здесь только вызов и повторы.
"""

from __future__ import annotations

from typing import Protocol

import httpx
from pydantic import BaseModel, Field

from trip_matching.common.constants import ServiceClass, TypeMsg
from trip_matching.common.exceptions import ServiceUnavailable, ValidationError
from trip_matching.common.logger import log_info
from trip_matching.common.retry import RetryPolicy, default_retryable
from trip_matching.core.orders.models import Location


class PriceEstimate(BaseModel):
    """Оценка стоимости и маршрута."""

    price: float = Field(..., gt=0.0)
    distance_km: float = Field(0.0, ge=0.0)
    duration_min: int = Field(0, ge=0)
    currency: str = "CDF"


class PricingEstimator(Protocol):
    """Интерфейс оценки стоимости."""

    async def estimate(
        self,
        origin: Location,
        destination: Location,
        service_class: ServiceClass,
    ) -> PriceEstimate: ...


def is_retryable_http_error(error: BaseException) -> bool:
    """Сетевые ошибки и ответы 5xx повторяем, 4xx не повторяем."""
    if isinstance(error, httpx.HTTPStatusError):
        return error.response.status_code >= 500
    if isinstance(error, httpx.TransportError):
        return True
    return default_retryable(error)


class HttpPricingEstimator:
    """
    HTTP клиент сервиса оценки стоимости.
    Каждый вызов идёт через общую политику повторов.
    """

    def __init__(
        self,
        url: str | None = None,
        timeout: float = 5.0,
        retry: RetryPolicy | None = None,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        """
        Args:
            url: Адрес эндпоинта оценки (берётся из конфига если None)
            timeout: Таймаут запроса (секунды)
            retry: Политика повторов
            client: Готовый httpx клиент (для тестов)
        """
        if url is None:
            from trip_matching.config import settings
            url = settings.pricing.PRICING_SERVICE_URL
            timeout = settings.pricing.PRICING_TIMEOUT

        self._url = url
        self._client = client or httpx.AsyncClient(timeout=timeout)
        self._retry = retry or RetryPolicy.from_settings(retryable=is_retryable_http_error)

    async def close(self) -> None:
        """Закрывает HTTP клиент."""
        await self._client.aclose()

    async def estimate(
        self,
        origin: Location,
        destination: Location,
        service_class: ServiceClass,
    ) -> PriceEstimate:
        """
        Запрашивает оценку стоимости.

        Raises:
            ValidationError: сервис отклонил маршрут (4xx)
            ServiceUnavailable: сервис недоступен после всех повторов
        """
        try:
            data = await self._retry.run(
                self._request,
                origin,
                destination,
                service_class,
                operation="pricing.estimate",
            )
        except httpx.HTTPStatusError as e:
            raise ValidationError(
                {"route": f"Сервис оценки отклонил маршрут: HTTP {e.response.status_code}"}
            ) from e

        estimate = PriceEstimate.model_validate(data)
        await log_info(
            f"Оценка стоимости {service_class}: {estimate.price} {estimate.currency}, {estimate.distance_km} км",
            type_msg=TypeMsg.DEBUG,
        )
        return estimate

    async def _request(
        self,
        origin: Location,
        destination: Location,
        service_class: ServiceClass,
    ) -> dict:
        response = await self._client.post(
            self._url,
            json={
                "origin": origin.model_dump(),
                "destination": destination.model_dump(),
                "service_class": service_class.value,
            },
        )
        response.raise_for_status()
        data = response.json()
        if not isinstance(data, dict):
            raise ServiceUnavailable("Некорректный ответ сервиса оценки")
        return data
