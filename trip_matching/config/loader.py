# trip_matching/config/loader.py
"""
Загрузчик конфигурации проекта.
Единственный источник истины: config/config.json.
Секретные данные и адреса инфраструктуры переопределяются из переменных окружения.
"""

from __future__ import annotations

import json
import os
from functools import lru_cache
from pathlib import Path
from typing import Any, TypeVar

from pydantic import BaseModel, Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


# =============================================================================
# ОПРЕДЕЛЕНИЕ ПУТЕЙ
# =============================================================================

def get_project_root() -> Path:
    """Возвращает корневую директорию проекта."""
    return Path(__file__).parent.parent.parent


def get_config_path() -> Path:
    """Возвращает путь к файлу конфигурации (TRIP_MATCHING_CONFIG переопределяет)."""
    override = os.getenv("TRIP_MATCHING_CONFIG")
    if override:
        return Path(override)
    return get_project_root() / "config" / "config.json"


def load_config_json(path: Path | None = None) -> dict[str, Any]:
    """Загружает config.json и возвращает словарь без ключей-комментариев."""
    config_path = path or get_config_path()
    if not config_path.exists():
        raise FileNotFoundError(f"Файл конфигурации не найден: {config_path}")

    with open(config_path, "r", encoding="utf-8") as f:
        data = json.load(f)

    return {k: v for k, v in data.items() if not k.startswith("_comment_")}


# =============================================================================
# PYDANTIC МОДЕЛИ КОНФИГУРАЦИИ
# =============================================================================

class SystemSettings(BaseModel):
    """Системные настройки."""
    PROJECT_NAME: str = "trip_matching"
    VERSION: str = "1.0.0"
    DEBUG: bool = True
    ENVIRONMENT: str = "development"
    STORE_BACKEND: str = "postgres"
    EVENT_BACKEND: str = "rabbitmq"
    CACHE_BACKEND: str = "memory"
    API_HOST: str = "0.0.0.0"
    API_PORT: int = 8092
    COMPONENT_MODE: str = "all"

    @field_validator("STORE_BACKEND", "EVENT_BACKEND", "CACHE_BACKEND", mode="before")
    @classmethod
    def normalize_backend(cls, v: str) -> str:
        return str(v).strip().lower()


class LoggingSettings(BaseModel):
    """Настройки логирования."""
    LOG_LEVEL: str = "DEBUG"
    LOG_TO_FILE: bool = False
    LOG_FILE_PATH: str = "logs/app.log"
    LOG_FORMAT: str = "colored"
    LOG_MAX_BYTES: int = 10485760


class DatabaseSettings(BaseModel):
    """Настройки PostgreSQL."""
    DB_HOST: str = "localhost"
    DB_PORT: int = 5432
    DB_NAME: str = "trip_matching"
    DB_USER: str = "postgres"
    DB_PASSWORD: str = Field("", validate_default=True)
    DB_MIN_POOL_SIZE: int = 5
    DB_MAX_POOL_SIZE: int = 20
    DB_COMMAND_TIMEOUT: int = 60

    @field_validator("DB_PASSWORD", mode="before")
    @classmethod
    def get_from_env(cls, v: str) -> str:
        """Получает пароль из переменных окружения."""
        return os.getenv("DB_PASSWORD", "") or v or ""

    @property
    def dsn(self) -> str:
        """Возвращает DSN для подключения к PostgreSQL."""
        return (
            f"postgresql://{self.DB_USER}:{self.DB_PASSWORD}"
            f"@{self.DB_HOST}:{self.DB_PORT}/{self.DB_NAME}"
        )


class RedisSettings(BaseModel):
    """Настройки Redis."""
    REDIS_HOST: str = "localhost"
    REDIS_PORT: int = 6379
    REDIS_DB: int = 0
    REDIS_PASSWORD: str = Field("", validate_default=True)
    REDIS_NAMESPACE: str = "matching"
    REDIS_MAX_CONNECTIONS: int = 50

    @field_validator("REDIS_PASSWORD", mode="before")
    @classmethod
    def get_from_env(cls, v: str) -> str:
        """Получает пароль из переменных окружения."""
        return os.getenv("REDIS_PASSWORD", "") or v or ""

    @property
    def url(self) -> str:
        """Возвращает URL для подключения к Redis."""
        auth = f":{self.REDIS_PASSWORD}@" if self.REDIS_PASSWORD else ""
        return f"redis://{auth}{self.REDIS_HOST}:{self.REDIS_PORT}/{self.REDIS_DB}"


class RabbitMQSettings(BaseModel):
    """Настройки RabbitMQ."""
    RABBITMQ_HOST: str = "localhost"
    RABBITMQ_PORT: int = 5672
    RABBITMQ_USER: str = "guest"
    RABBITMQ_PASSWORD: str = Field("guest", validate_default=True)
    RABBITMQ_VHOST: str = "/"
    RABBITMQ_EXCHANGE: str = "matching.orders"
    RABBITMQ_PREFETCH_COUNT: int = 10

    @field_validator("RABBITMQ_PASSWORD", mode="before")
    @classmethod
    def get_from_env(cls, v: str) -> str:
        """Получает пароль из переменных окружения."""
        return os.getenv("RABBITMQ_PASSWORD", "") or v

    @property
    def url(self) -> str:
        """Возвращает URL для подключения к RabbitMQ."""
        return (
            f"amqp://{self.RABBITMQ_USER}:{self.RABBITMQ_PASSWORD}"
            f"@{self.RABBITMQ_HOST}:{self.RABBITMQ_PORT}{self.RABBITMQ_VHOST}"
        )


class PricingSettings(BaseModel):
    """Настройки клиента сервиса оценки стоимости."""
    PRICING_SERVICE_URL: str = "http://pricing_service:8086/api/v1/pricing/estimate"
    PRICING_TIMEOUT: float = 5.0
    CURRENCY: str = "CDF"


class BiddingSettings(BaseModel):
    """Настройки торгов."""
    BIDDING_WINDOW_SECONDS: dict[str, int] = Field(default_factory=lambda: {
        "moto": 60,
        "standard": 60,
        "comfort": 90,
        "premium": 120,
        "truck": 180,
    })
    DEFAULT_BIDDING_WINDOW_SECONDS: int = 60
    PRICE_BAND_MIN: float = 0.5
    PRICE_BAND_MAX: float = 1.5
    AUTO_ACCEPT_AT_EXPIRY: bool = True
    ALLOW_MULTIPLE_OPEN_REQUESTS: bool = False

    @model_validator(mode="after")
    def check_band(self) -> "BiddingSettings":
        if not 0 < self.PRICE_BAND_MIN <= 1.0 <= self.PRICE_BAND_MAX:
            raise ValueError("Коридор цены должен содержать оценочную стоимость")
        return self

    def window_for(self, service_class: str) -> int:
        """Длительность окна торгов для класса транспорта."""
        return self.BIDDING_WINDOW_SECONDS.get(str(service_class), self.DEFAULT_BIDDING_WINDOW_SECONDS)


class SearchSettings(BaseModel):
    """Настройки поиска исполнителей."""
    DEFAULT_SEARCH_RADIUS_M: float = 3000.0
    RADIUS_EXPANSION_FACTOR: float = 1.5
    MAX_RADIUS_EXPANSIONS: int = 3
    MAX_SEARCH_RADIUS_M: float = 15000.0
    MAX_CANDIDATES: int = 10
    LOCATION_STALENESS_SECONDS: int = 120


class CancellationSettings(BaseModel):
    """Настройки отмены и штрафов."""
    CANCELLATION_FEE_PERCENT: float = 10.0
    ADMIN_OVERRIDE_FEE_PERCENT: float = 0.0
    CANCEL_MAX_ATTEMPTS: int = 3


class RateLimitSettings(BaseModel):
    """Лимиты запросов: базовый лимит на класс операции и множитель роли."""
    BASE_LIMITS: dict[str, list[int]] = Field(default_factory=lambda: {
        "request_creation": [5, 60],
        "offer_write": [20, 60],
        "payment_adjacent": [5, 60],
        "lifecycle": [30, 60],
        "read": [60, 60],
    })
    ROLE_MULTIPLIERS: dict[str, float] = Field(default_factory=lambda: {
        "anonymous": 0.4,
        "client": 1.0,
        "worker": 1.5,
        "partner": 4.0,
        "admin": 20.0,
    })


class RetrySettings(BaseModel):
    """Политика повторов для внешних вызовов."""
    RETRY_MAX_ATTEMPTS: int = 3
    RETRY_BASE_DELAY: float = 0.2
    RETRY_MAX_DELAY: float = 5.0
    RETRY_MULTIPLIER: float = 2.0


class MaintenanceSettings(BaseModel):
    """Интервалы фоновых задач."""
    SESSION_SWEEP_INTERVAL: float = 5.0
    RATE_LIMIT_SWEEP_INTERVAL: float = 60.0


# =============================================================================
# ГЛАВНЫЙ КЛАСС НАСТРОЕК
# =============================================================================

SectionT = TypeVar("SectionT", bound=BaseModel)

# Переменные окружения, которые переопределяют значения из config.json
ENV_OVERRIDES: tuple[str, ...] = (
    "ENVIRONMENT",
    "COMPONENT_MODE",
    "STORE_BACKEND",
    "EVENT_BACKEND",
    "CACHE_BACKEND",
    "LOG_LEVEL",
    "DB_HOST",
    "DB_PORT",
    "DB_NAME",
    "DB_USER",
    "REDIS_HOST",
    "REDIS_PORT",
    "RABBITMQ_HOST",
    "RABBITMQ_PORT",
    "RABBITMQ_USER",
    "PRICING_SERVICE_URL",
)


def _section(model: type[SectionT], data: dict[str, Any]) -> SectionT:
    """Собирает секцию из плоского словаря конфигурации."""
    return model(**{key: data[key] for key in model.model_fields if key in data})


class Settings(BaseSettings):
    """
    Главный класс настроек приложения.
    Агрегирует все секции конфигурации.
    """
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    system: SystemSettings = Field(default_factory=SystemSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)
    database: DatabaseSettings = Field(default_factory=DatabaseSettings)
    redis: RedisSettings = Field(default_factory=RedisSettings)
    rabbitmq: RabbitMQSettings = Field(default_factory=RabbitMQSettings)
    pricing: PricingSettings = Field(default_factory=PricingSettings)
    bidding: BiddingSettings = Field(default_factory=BiddingSettings)
    search: SearchSettings = Field(default_factory=SearchSettings)
    cancellation: CancellationSettings = Field(default_factory=CancellationSettings)
    rate_limit: RateLimitSettings = Field(default_factory=RateLimitSettings)
    retry: RetrySettings = Field(default_factory=RetrySettings)
    maintenance: MaintenanceSettings = Field(default_factory=MaintenanceSettings)

    @classmethod
    def from_dict(cls, config_data: dict[str, Any]) -> "Settings":
        """Создаёт Settings из плоского словаря (формат config.json)."""
        data = dict(config_data)
        for key in ENV_OVERRIDES:
            value = os.getenv(key)
            if value:
                data[key] = value

        return cls(
            system=_section(SystemSettings, data),
            logging=_section(LoggingSettings, data),
            database=_section(DatabaseSettings, data),
            redis=_section(RedisSettings, data),
            rabbitmq=_section(RabbitMQSettings, data),
            pricing=_section(PricingSettings, data),
            bidding=_section(BiddingSettings, data),
            search=_section(SearchSettings, data),
            cancellation=_section(CancellationSettings, data),
            rate_limit=_section(RateLimitSettings, data),
            retry=_section(RetrySettings, data),
            maintenance=_section(MaintenanceSettings, data),
        )

    @classmethod
    def from_config_json(cls, path: Path | None = None) -> "Settings":
        """
        Создаёт объект Settings из config.json.
        Секреты переопределяются из переменных окружения.
        """
        return cls.from_dict(load_config_json(path))


@lru_cache()
def get_settings() -> Settings:
    """
    Возвращает синглтон настроек приложения.
    """
    from dotenv import load_dotenv

    env_path = get_project_root() / ".env"
    if env_path.exists():
        load_dotenv(env_path)

    return Settings.from_config_json()


# Экспорт синглтона для удобного импорта
settings = get_settings()
