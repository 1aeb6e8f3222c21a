# src/config/loader.py
"""
Загрузчик конфигурации проекта.
Единственный источник истины - config/config.json.
Секретные данные и адреса сервисов переопределяются из переменных окружения.
"""

from __future__ import annotations

import json
import os
from functools import lru_cache
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings


# =============================================================================
# ОПРЕДЕЛЕНИЕ ПУТЕЙ
# =============================================================================

def get_project_root() -> Path:
    """Возвращает корневую директорию проекта."""
    return Path(__file__).parent.parent.parent


def get_config_path() -> Path:
    """Возвращает путь к файлу конфигурации."""
    return get_project_root() / "config" / "config.json"


def load_config_json() -> dict[str, Any]:
    """Загружает config.json и возвращает словарь."""
    config_path = get_config_path()
    if not config_path.exists():
        raise FileNotFoundError(f"Файл конфигурации не найден: {config_path}")

    with open(config_path, "r", encoding="utf-8") as f:
        return json.load(f)


# =============================================================================
# PYDANTIC МОДЕЛИ КОНФИГУРАЦИИ
# =============================================================================

class SystemSettings(BaseModel):
    """Системные настройки."""
    PROJECT_NAME: str = "family_tracking"
    VERSION: str = "1.0.0"
    DEBUG: bool = True
    LOG_LEVEL: str = "DEBUG"
    ENVIRONMENT: str = "development"
    COMPONENT_MODE: str = "all"


class DeploymentSettings(BaseModel):
    """Настройки развертывания компонентов."""
    TRACKING_API_HOST: str = "0.0.0.0"
    TRACKING_API_PORT: int = 8090
    TRACKING_API_INSTANCES_COUNT: int = 1
    WORKER_INSTANCES_COUNT: int = 1


class LoggingSettings(BaseModel):
    """Настройки логирования."""
    LOG_LEVEL: str = "DEBUG"
    LOG_TO_FILE: bool = True
    LOG_FILE_PATH: str = "logs/app.log"
    LOG_FORMAT: str = "colored"
    LOG_MAX_BYTES: int = 10485760
    LOG_BACKUP_COUNT: int = 5


class DatabaseSettings(BaseModel):
    """Настройки PostgreSQL."""
    DB_HOST: str = "localhost"
    DB_PORT: int = 5432
    DB_NAME: str = "family_tracking"
    DB_USER: str = "postgres"
    DB_PASSWORD: str = ""
    DB_MIN_POOL_SIZE: int = 5
    DB_MAX_POOL_SIZE: int = 20
    DB_COMMAND_TIMEOUT: int = 60
    DB_RETRY_ATTEMPTS: int = 3
    DB_RETRY_DELAY: float = 1.0

    @field_validator("DB_PASSWORD", mode="before")
    @classmethod
    def get_from_env(cls, v: str) -> str:
        """Получает пароль из переменных окружения."""
        if not v:
            return os.getenv("DB_PASSWORD", "")
        return v

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
    REDIS_PASSWORD: str = ""
    REDIS_NAMESPACE: str = "trk"
    REDIS_MAX_CONNECTIONS: int = 50
    REDIS_SOCKET_TIMEOUT: float = 2.0

    @field_validator("REDIS_PASSWORD", mode="before")
    @classmethod
    def get_from_env(cls, v: str) -> str:
        """Получает пароль из переменных окружения."""
        if not v:
            return os.getenv("REDIS_PASSWORD", "")
        return v

    @property
    def url(self) -> str:
        """Возвращает URL для подключения к Redis."""
        auth = f":{self.REDIS_PASSWORD}@" if self.REDIS_PASSWORD else ""
        return f"redis://{auth}{self.REDIS_HOST}:{self.REDIS_PORT}/{self.REDIS_DB}"


class TrackingCacheTTLSettings(BaseModel):
    """TTL ключей кэша трекинга (секунды)."""
    LIVE_TTL: int = 300
    CURRENT_TTL: int = 120
    FAMILY_SNAPSHOT_TTL: int = 10
    SETTINGS_TTL: int = 600
    RATE_LIMIT_WINDOW: int = 60
    DEDUPE_TTL: int = 300
    SESSION_LIVENESS_TTL: int = 120
    GEOFENCES_TTL: int = 600
    GEOFENCE_STATE_TTL: int = 600
    PLACES_TTL: int = 600
    DIRECTIONS_TTL: int = 21600
    ALERT_RULES_TTL: int = 600


class QualityGateSettings(BaseModel):
    """Пороги фильтра качества точек."""
    NOISY_ACCURACY_M: float = 200.0
    POOR_ACCURACY_M: float = 100.0
    GOOD_LAST_ACCURACY_M: float = 50.0
    GOOD_LAST_MAX_AGE_S: int = 600
    STATIONARY_JITTER_M: float = 30.0
    JUMP_CHECK_MAX_AGE_S: int = 300
    MAX_STATIONARY_SPEED_KMH: float = 180.0
    IMPOSSIBLE_SPEED_KMH: float = 300.0


class DedupeSettings(BaseModel):
    """Настройки фильтра дубликатов."""
    MIN_DISTANCE_M: float = 10.0


class RateLimitSettings(BaseModel):
    """Настройки ограничения частоты."""
    UPDATE_MAX_PER_MINUTE: int = 10
    SESSION_MAX_PER_MINUTE: int = 10


class SessionSettings(BaseModel):
    """Настройки сессий live-трекинга."""
    DEFAULT_DURATION_S: int = 7200
    DEFAULT_INTERVAL_S: int = 30
    MIN_INTERVAL_S: int = 5
    MAX_INTERVAL_S: int = 300
    EXPIRY_SWEEP_INTERVAL_S: int = 300


class BatchIngestSettings(BaseModel):
    """Настройки пакетного приёма точек."""
    MAX_FIXES_PER_BATCH: int = 100


class GeofenceQueueSettings(BaseModel):
    """Настройки фоновой обработки очереди геозон."""
    INLINE_EVALUATION: bool = True
    BATCH_SIZE: int = 100
    MAX_RUNTIME_S: float = 55.0
    RUN_INTERVAL_S: int = 60
    LOCK_TTL_S: int = 120
    FAILED_RETRY_WINDOW_S: int = 3600
    PROCESSED_RETENTION_S: int = 86400
    FAILED_RETENTION_S: int = 3600
    LOW_BATTERY_PERCENT: int = 15
    LOW_BATTERY_SUPPRESS_S: int = 3600


class AlertSettings(BaseModel):
    """Настройки оповещений."""
    COOLDOWN_SECONDS: int = 900


class RetentionSettings(BaseModel):
    """Настройки очистки истории и событий."""
    HISTORY_RETENTION_DAYS: int = 30
    EVENTS_RETENTION_DAYS: int = 90
    PRUNE_BATCH_SIZE: int = 5000
    PRUNE_BATCH_DELAY_S: float = 0.1
    PRUNE_INTERVAL_S: int = 86400


class RabbitMQSettings(BaseModel):
    """Настройки RabbitMQ."""
    RABBITMQ_HOST: str = "localhost"
    RABBITMQ_PORT: int = 5672
    RABBITMQ_USER: str = "guest"
    RABBITMQ_PASSWORD: str = "guest"
    RABBITMQ_VHOST: str = "/"
    RABBITMQ_EXCHANGE: str = "tracking.events"
    RABBITMQ_PREFETCH_COUNT: int = 10

    @field_validator("RABBITMQ_PASSWORD", mode="before")
    @classmethod
    def get_from_env(cls, v: str) -> str:
        """Получает пароль из переменных окружения."""
        env_pass = os.getenv("RABBITMQ_PASSWORD", "")
        if env_pass:
            return env_pass
        return v

    @property
    def url(self) -> str:
        """Возвращает URL для подключения к RabbitMQ."""
        return (
            f"amqp://{self.RABBITMQ_USER}:{self.RABBITMQ_PASSWORD}"
            f"@{self.RABBITMQ_HOST}:{self.RABBITMQ_PORT}{self.RABBITMQ_VHOST}"
        )


class DirectionsSettings(BaseModel):
    """Настройки Mapbox Directions API."""
    MAPBOX_API_KEY: str = ""
    MAPBOX_API_URL: str = "https://api.mapbox.com/directions/v5/mapbox"
    REQUEST_TIMEOUT_S: float = 10.0

    @field_validator("MAPBOX_API_KEY", mode="before")
    @classmethod
    def get_from_env(cls, v: str) -> str:
        """Получает API ключ из переменных окружения (MAPBOX_API_KEY или MAPBOX_TOKEN)."""
        if not v:
            return os.getenv("MAPBOX_API_KEY") or os.getenv("MAPBOX_TOKEN", "")
        return v


# =============================================================================
# ГЛАВНЫЙ КЛАСС НАСТРОЕК
# =============================================================================

def _section(model: type[BaseModel], data: dict[str, Any], env_keys: tuple[str, ...] = ()) -> BaseModel:
    """
    Собирает секцию из плоского словаря config.json.
    Ключи из env_keys сначала ищутся в переменных окружения.
    """
    values: dict[str, Any] = {}
    for name in model.model_fields:
        if name in env_keys and os.getenv(name):
            values[name] = os.getenv(name)
        elif name in data:
            values[name] = data[name]
    return model(**values)


class Settings(BaseSettings):
    """
    Главный класс настроек приложения.
    Агрегирует все секции конфигурации.
    """
    system: SystemSettings = Field(default_factory=SystemSettings)
    deployment: DeploymentSettings = Field(default_factory=DeploymentSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)
    database: DatabaseSettings = Field(default_factory=DatabaseSettings)
    redis: RedisSettings = Field(default_factory=RedisSettings)
    tracking_cache: TrackingCacheTTLSettings = Field(default_factory=TrackingCacheTTLSettings)
    quality_gate: QualityGateSettings = Field(default_factory=QualityGateSettings)
    dedupe: DedupeSettings = Field(default_factory=DedupeSettings)
    rate_limit: RateLimitSettings = Field(default_factory=RateLimitSettings)
    session: SessionSettings = Field(default_factory=SessionSettings)
    batch: BatchIngestSettings = Field(default_factory=BatchIngestSettings)
    geofence_queue: GeofenceQueueSettings = Field(default_factory=GeofenceQueueSettings)
    alerts: AlertSettings = Field(default_factory=AlertSettings)
    retention: RetentionSettings = Field(default_factory=RetentionSettings)
    rabbitmq: RabbitMQSettings = Field(default_factory=RabbitMQSettings)
    directions: DirectionsSettings = Field(default_factory=DirectionsSettings)

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        extra = "ignore"

    @classmethod
    def from_config_json(cls) -> "Settings":
        """
        Создаёт объект Settings из config.json.
        Секреты и адреса переопределяются из переменных окружения.
        """
        config_data = load_config_json()

        # Фильтруем комментарии (ключи, начинающиеся с _comment_)
        data = {k: v for k, v in config_data.items() if not k.startswith("_comment_")}

        return cls(
            system=_section(SystemSettings, data, ("COMPONENT_MODE",)),
            deployment=_section(DeploymentSettings, data, ("TRACKING_API_HOST",)),
            logging=_section(LoggingSettings, data),
            database=_section(
                DatabaseSettings, data,
                ("DB_HOST", "DB_PORT", "DB_NAME", "DB_USER", "DB_PASSWORD"),
            ),
            redis=_section(RedisSettings, data, ("REDIS_HOST", "REDIS_PORT", "REDIS_PASSWORD")),
            tracking_cache=_section(TrackingCacheTTLSettings, data),
            quality_gate=_section(QualityGateSettings, data),
            dedupe=_section(DedupeSettings, data),
            rate_limit=_section(RateLimitSettings, data),
            session=_section(SessionSettings, data),
            batch=_section(BatchIngestSettings, data),
            geofence_queue=_section(GeofenceQueueSettings, data),
            alerts=_section(AlertSettings, data),
            retention=_section(RetentionSettings, data),
            rabbitmq=_section(
                RabbitMQSettings, data,
                ("RABBITMQ_HOST", "RABBITMQ_PORT", "RABBITMQ_USER", "RABBITMQ_PASSWORD"),
            ),
            directions=_section(DirectionsSettings, data, ("MAPBOX_API_KEY",)),
        )


@lru_cache()
def get_settings() -> Settings:
    """
    Возвращает синглтон настроек приложения.
    Использует кэширование для производительности.
    """
    from dotenv import load_dotenv

    env_path = get_project_root() / ".env"
    if env_path.exists():
        load_dotenv(env_path)

    return Settings.from_config_json()


# Экспорт синглтона для удобного импорта
settings = get_settings()
