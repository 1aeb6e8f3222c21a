# src/services/tracking/dependencies.py
"""
Dependency Injection для Tracking API.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Annotated

from fastapi import Header

if TYPE_CHECKING:
    from src.infra.database import DatabaseManager
    from src.infra.redis_client import RedisClient
    from src.infra.event_bus import EventBus
    from src.core.geo.service import DirectionsService
    from src.core.alerts.repository import AlertRuleRepository
    from src.core.geofences.repository import GeofenceRepository
    from src.core.places.repository import PlaceRepository
    from src.core.tracking.cache import TrackingCache
    from src.core.tracking.rate_limiter import RateLimiter
    from src.core.tracking.service import TrackingService


# Синглтоны для инфраструктуры
_db: "DatabaseManager | None" = None
_redis: "RedisClient | None" = None
_event_bus: "EventBus | None" = None
_cache: "TrackingCache | None" = None

# Синглтоны для сервисов
_tracking_service: "TrackingService | None" = None
_place_repository: "PlaceRepository | None" = None
_geofence_repository: "GeofenceRepository | None" = None
_alert_rule_repository: "AlertRuleRepository | None" = None
_directions_service: "DirectionsService | None" = None
_rate_limiter: "RateLimiter | None" = None


@dataclass(frozen=True)
class Identity:
    """Пользователь запроса (заголовки доверенного шлюза)."""
    user_id: int
    family_id: int


def get_identity(
    x_user_id: Annotated[int, Header(description="ID пользователя от шлюза")],
    x_family_id: Annotated[int, Header(description="ID семьи от шлюза")],
) -> Identity:
    """Идентичность из заголовков X-User-Id и X-Family-Id."""
    return Identity(user_id=x_user_id, family_id=x_family_id)


async def init_dependencies(
    db: "DatabaseManager",
    redis: "RedisClient",
    event_bus: "EventBus",
) -> None:
    """Инициализировать зависимости при старте приложения."""
    from src.core.tracking.cache import TrackingCache

    global _db, _redis, _event_bus, _cache
    _db = db
    _redis = redis
    _event_bus = event_bus
    _cache = TrackingCache(redis)


def get_db() -> "DatabaseManager":
    """Получить менеджер базы данных."""
    if _db is None:
        raise RuntimeError("База данных не инициализирована. Вызовите init_dependencies()")
    return _db


def get_event_bus() -> "EventBus":
    """Получить шину событий."""
    if _event_bus is None:
        raise RuntimeError("EventBus не инициализирован. Вызовите init_dependencies()")
    return _event_bus


def get_cache() -> "TrackingCache":
    """Получить кэш трекинга."""
    if _cache is None:
        raise RuntimeError("Кэш не инициализирован. Вызовите init_dependencies()")
    return _cache


def get_tracking_service() -> "TrackingService":
    """Получить сервис трекинга."""
    global _tracking_service

    if _tracking_service is None:
        from src.core.tracking.service import TrackingService
        _tracking_service = TrackingService(
            db=get_db(),
            cache=get_cache(),
            event_bus=get_event_bus(),
        )

    return _tracking_service


def get_place_repository() -> "PlaceRepository":
    """Получить репозиторий мест."""
    global _place_repository

    if _place_repository is None:
        from src.core.places.repository import PlaceRepository
        _place_repository = PlaceRepository(get_db(), get_cache())

    return _place_repository


def get_geofence_repository() -> "GeofenceRepository":
    """Получить репозиторий геозон."""
    global _geofence_repository

    if _geofence_repository is None:
        from src.core.geofences.repository import GeofenceRepository
        _geofence_repository = GeofenceRepository(get_db(), get_cache())

    return _geofence_repository


def get_alert_rule_repository() -> "AlertRuleRepository":
    """Получить репозиторий правил оповещений."""
    global _alert_rule_repository

    if _alert_rule_repository is None:
        from src.core.alerts.repository import AlertRuleRepository
        _alert_rule_repository = AlertRuleRepository(get_db(), get_cache())

    return _alert_rule_repository


def get_directions_service() -> "DirectionsService":
    """Получить сервис маршрутов."""
    global _directions_service

    if _directions_service is None:
        from src.core.geo.service import DirectionsService
        _directions_service = DirectionsService(get_cache())

    return _directions_service


def get_rate_limiter() -> "RateLimiter":
    """Получить ограничитель частоты."""
    global _rate_limiter

    if _rate_limiter is None:
        from src.core.tracking.rate_limiter import RateLimiter
        _rate_limiter = RateLimiter(get_cache())

    return _rate_limiter


async def cleanup_dependencies() -> None:
    """Очистить ресурсы при остановке приложения."""
    global _tracking_service, _place_repository, _directions_service, _rate_limiter
    global _geofence_repository, _alert_rule_repository
    if _directions_service is not None:
        await _directions_service.close()
    _tracking_service = None
    _place_repository = None
    _geofence_repository = None
    _alert_rule_repository = None
    _directions_service = None
    _rate_limiter = None
