# src/services/tracking/app.py
"""
FastAPI приложение для Tracking API.

Тонкий HTTP слой над ядром трекинга. Пользователь и семья приходят
в заголовках X-User-Id / X-Family-Id от доверенного шлюза.

Endpoints:
- POST /api/v1/location - принять точку
- POST /api/v1/location/batch - принять пакет точек
- GET /api/v1/location/me - моя текущая позиция
- GET /api/v1/location/{user_id} - позиция участника семьи
- GET /api/v1/location/{user_id}/history - история участника
- GET /api/v1/family/locations - позиции всей семьи
- GET /api/v1/family/history - история семьи
- GET /api/v1/family/events - журнал событий семьи
- GET /api/v1/family/live - кто сейчас в live-сессии
- GET/PUT /api/v1/family/settings - настройки трекинга семьи
- POST /api/v1/session/start|stop|keepalive - управление сессией
- GET /api/v1/session - статус сессии
- GET/POST /api/v1/places, DELETE /api/v1/places/{id} - места семьи
- GET/POST /api/v1/geofences, PATCH/DELETE /api/v1/geofences/{id} - геозоны
- GET/POST /api/v1/alerts/rules, PATCH/DELETE /api/v1/alerts/rules/{id} - правила оповещений
- GET /api/v1/directions - маршрут
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from datetime import datetime
from typing import Annotated, Any, List, Optional

from fastapi import Body, FastAPI, Depends, HTTPException, Query, Request, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from src.common.constants import SessionMode, TrackingEventType
from src.common.exceptions import (
    NotFoundError,
    PersistenceError,
    RateLimitExceeded,
    SessionInactive,
    ValidationError,
)
from src.common.logger import log_error
from src.core.alerts.models import AlertRule, AlertRuleCreate, AlertRuleUpdate
from src.core.alerts.repository import AlertRuleRepository
from src.core.audit.repository import TrackingEvent
from src.core.geo.service import DirectionsService
from src.core.geofences.models import Geofence, GeofenceCreate, GeofenceUpdate
from src.core.geofences.repository import GeofenceRepository
from src.core.places.repository import Place, PlaceRepository
from src.core.sessions.models import TrackingSession
from src.core.settings.models import FamilySettingsUpdate, FamilyTrackingSettings
from src.core.tracking.models import BatchResult, CurrentLocation, HistoryPoint, IngestResult
from src.core.tracking.rate_limiter import RateLimiter
from src.core.tracking.service import TrackingService
from src.shared.models.common import ErrorResponse, HealthStatus
from src.services.tracking.dependencies import (
    Identity,
    cleanup_dependencies,
    get_alert_rule_repository,
    get_directions_service,
    get_geofence_repository,
    get_identity,
    get_place_repository,
    get_rate_limiter,
    get_tracking_service,
    init_dependencies,
)

SERVICE_NAME = "tracking_api"
SERVICE_VERSION = "1.0.0"
SESSION_ACTION = "session"


# === REQUEST/RESPONSE MODELS ===

class BatchRequest(BaseModel):
    """Пакет точек. Каждая точка в том же формате, что и одиночная."""
    locations: list[dict[str, Any]] = Field(..., description="Точки, от 1 до MAX_FIXES_PER_BATCH")


class SessionStartRequest(BaseModel):
    """Запрос на старт сессии."""
    mode: SessionMode = SessionMode.LIVE
    interval_seconds: int | None = Field(default=None, description="Интервал точек, 5..300 с")
    duration_seconds: int | None = Field(default=None, gt=0, description="Длительность сессии")


class SessionStatusResponse(BaseModel):
    """Статус сессии пользователя."""
    active: bool
    session: TrackingSession | None = None
    expires_in_seconds: int | None = None


class SessionStopResponse(BaseModel):
    """Итог остановки."""
    stopped: int


class FamilyLiveResponse(BaseModel):
    """Кто в семье сейчас в live-сессии."""
    family_id: int
    live: bool
    user_ids: list[int]


class PlaceCreateRequest(BaseModel):
    """Новое место."""
    label: str = Field(..., min_length=1, max_length=100)
    lat: float = Field(..., ge=-90, le=90)
    lng: float = Field(..., ge=-180, le=180)
    radius_m: float = Field(default=100.0, gt=0)


# === LIFESPAN ===

@asynccontextmanager
async def lifespan(app: FastAPI):
    """Жизненный цикл приложения."""
    # Startup
    from src.infra.database import init_db, close_db
    from src.infra.redis_client import init_redis, close_redis
    from src.infra.event_bus import init_event_bus, close_event_bus

    db = await init_db()
    redis = await init_redis()
    event_bus = await init_event_bus()

    await init_dependencies(db, redis, event_bus)

    yield

    # Shutdown
    await cleanup_dependencies()
    await close_event_bus()
    await close_redis()
    await close_db()


# === APP ===

app = FastAPI(
    title="Family Tracking API",
    description="Приём координат, сессии live-трекинга, геозоны и места семьи.",
    version=SERVICE_VERSION,
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url="/redoc",
)


# === ERROR HANDLERS ===

def _error(status_code: int, error_code: str, message: str, details: dict[str, Any] | None = None) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=ErrorResponse(error_code=error_code, message=message, details=details).model_dump(),
    )


@app.exception_handler(ValidationError)
async def validation_error_handler(request: Request, exc: ValidationError) -> JSONResponse:
    details = {"field": exc.field} if exc.field else None
    return _error(status.HTTP_422_UNPROCESSABLE_ENTITY, "validation_error", str(exc), details)


@app.exception_handler(RateLimitExceeded)
async def rate_limit_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    return _error(status.HTTP_429_TOO_MANY_REQUESTS, "rate_limited", str(exc), {"action": exc.action})


@app.exception_handler(SessionInactive)
async def session_inactive_handler(request: Request, exc: SessionInactive) -> JSONResponse:
    return _error(status.HTTP_409_CONFLICT, "session_off", str(exc))


@app.exception_handler(NotFoundError)
async def not_found_handler(request: Request, exc: NotFoundError) -> JSONResponse:
    return _error(status.HTTP_404_NOT_FOUND, "not_found", str(exc))


@app.exception_handler(PersistenceError)
async def persistence_error_handler(request: Request, exc: PersistenceError) -> JSONResponse:
    await log_error(f"{request.method} {request.url.path}: {exc}")
    return _error(status.HTTP_503_SERVICE_UNAVAILABLE, "storage_unavailable", str(exc))


# === HEALTH CHECK ===

@app.get("/health", response_model=HealthStatus, tags=["Health"])
async def health_check() -> HealthStatus:
    """Проверка здоровья сервиса и его зависимостей."""
    from src.services.tracking import dependencies

    checks = {
        "postgres": dependencies._db,
        "redis": dependencies._redis,
        "rabbitmq": dependencies._event_bus,
    }
    results: dict[str, str] = {}
    for name, component in checks.items():
        if component is None:
            results[name] = "unavailable"
            continue
        try:
            healthy = await component.health_check()
        except Exception as e:
            await log_error(f"Health check {name}: {e}")
            healthy = False
        results[name] = "healthy" if healthy else "unhealthy"

    # Redis и RabbitMQ вторичны: без них приём точек продолжает работать
    overall = "healthy"
    if results["postgres"] != "healthy":
        overall = "unhealthy"
    elif any(value != "healthy" for value in results.values()):
        overall = "degraded"

    return HealthStatus(
        service=SERVICE_NAME,
        status=overall,
        version=SERVICE_VERSION,
        dependencies=results,
    )


# === LOCATION ENDPOINTS ===

@app.post(
    "/api/v1/location",
    response_model=IngestResult,
    responses={
        409: {"model": ErrorResponse},
        422: {"model": ErrorResponse},
        429: {"model": ErrorResponse},
        503: {"model": ErrorResponse},
    },
    tags=["Location"],
    summary="Принять точку",
)
async def submit_location(
    payload: Annotated[dict[str, Any], Body(...)],
    identity: Annotated[Identity, Depends(get_identity)],
    service: Annotated[TrackingService, Depends(get_tracking_service)],
) -> IngestResult:
    """
    Принять точку от устройства.

    Поддерживает альтернативные имена полей (latitude/lon, speed_kmh,
    battery, timestamp в секундах или миллисекундах).
    """
    return await service.submit_fix(identity.user_id, identity.family_id, payload)


@app.post(
    "/api/v1/location/batch",
    response_model=BatchResult,
    responses={
        409: {"model": ErrorResponse},
        422: {"model": ErrorResponse},
        429: {"model": ErrorResponse},
    },
    tags=["Location"],
    summary="Принять пакет точек",
)
async def submit_location_batch(
    request: BatchRequest,
    identity: Annotated[Identity, Depends(get_identity)],
    service: Annotated[TrackingService, Depends(get_tracking_service)],
) -> BatchResult:
    """Точки, накопленные устройством без сети. Итог по каждой точке."""
    return await service.submit_batch(identity.user_id, identity.family_id, request.locations)


@app.get(
    "/api/v1/location/me",
    response_model=CurrentLocation,
    responses={404: {"model": ErrorResponse}},
    tags=["Location"],
    summary="Моя текущая позиция",
)
async def get_my_location(
    identity: Annotated[Identity, Depends(get_identity)],
    service: Annotated[TrackingService, Depends(get_tracking_service)],
) -> CurrentLocation:
    current = await service.get_current(identity.user_id)
    if current is None:
        raise HTTPException(status_code=404, detail="Позиция не найдена")
    return current


async def _family_member_location(
    service: TrackingService,
    identity: Identity,
    user_id: int,
) -> CurrentLocation:
    """Позиция участника той же семьи, иначе NotFoundError."""
    current = await service.get_current(user_id)
    if current is None or current.family_id != identity.family_id:
        raise NotFoundError(f"Позиция пользователя {user_id} не найдена")
    return current


@app.get(
    "/api/v1/location/{user_id}",
    response_model=CurrentLocation,
    responses={404: {"model": ErrorResponse}},
    tags=["Location"],
    summary="Позиция участника семьи",
)
async def get_member_location(
    user_id: int,
    identity: Annotated[Identity, Depends(get_identity)],
    service: Annotated[TrackingService, Depends(get_tracking_service)],
) -> CurrentLocation:
    return await _family_member_location(service, identity, user_id)


@app.get(
    "/api/v1/location/{user_id}/history",
    response_model=List[HistoryPoint],
    tags=["Location"],
    summary="История участника семьи",
)
async def get_member_history(
    user_id: int,
    identity: Annotated[Identity, Depends(get_identity)],
    service: Annotated[TrackingService, Depends(get_tracking_service)],
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    limit: int = Query(default=500, ge=1, le=1000),
    offset: int = Query(default=0, ge=0),
) -> List[HistoryPoint]:
    return await service.get_history(user_id, identity.family_id, start, end, limit, offset)


# === FAMILY ENDPOINTS ===

@app.get(
    "/api/v1/family/locations",
    response_model=List[CurrentLocation],
    tags=["Family"],
    summary="Позиции всей семьи",
)
async def get_family_locations(
    identity: Annotated[Identity, Depends(get_identity)],
    service: Annotated[TrackingService, Depends(get_tracking_service)],
) -> List[CurrentLocation]:
    return await service.get_family_snapshot(identity.family_id)


@app.get(
    "/api/v1/family/history",
    response_model=List[HistoryPoint],
    tags=["Family"],
    summary="История семьи",
)
async def get_family_history(
    identity: Annotated[Identity, Depends(get_identity)],
    service: Annotated[TrackingService, Depends(get_tracking_service)],
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    user_ids: Optional[List[int]] = Query(default=None),
    limit: int = Query(default=1000, ge=1, le=2000),
) -> List[HistoryPoint]:
    """История семьи. По умолчанию за последний час."""
    return await service.get_family_history(identity.family_id, start, end, user_ids, limit)


@app.get(
    "/api/v1/family/events",
    response_model=List[TrackingEvent],
    tags=["Family"],
    summary="Журнал событий семьи",
)
async def get_family_events(
    identity: Annotated[Identity, Depends(get_identity)],
    service: Annotated[TrackingService, Depends(get_tracking_service)],
    types: Optional[List[TrackingEventType]] = Query(default=None),
    since: Optional[datetime] = None,
    limit: int = Query(default=100, ge=1, le=500),
) -> List[TrackingEvent]:
    return await service.list_events(identity.family_id, types, since, limit)


@app.get(
    "/api/v1/family/live",
    response_model=FamilyLiveResponse,
    tags=["Family"],
    summary="Кто сейчас в live-сессии",
)
async def get_family_live(
    identity: Annotated[Identity, Depends(get_identity)],
    service: Annotated[TrackingService, Depends(get_tracking_service)],
) -> FamilyLiveResponse:
    user_ids = await service.sessions.family_live_users(identity.family_id)
    return FamilyLiveResponse(family_id=identity.family_id, live=bool(user_ids), user_ids=user_ids)


@app.get(
    "/api/v1/family/settings",
    response_model=FamilyTrackingSettings,
    tags=["Family"],
    summary="Настройки трекинга семьи",
)
async def get_family_settings(
    identity: Annotated[Identity, Depends(get_identity)],
    service: Annotated[TrackingService, Depends(get_tracking_service)],
) -> FamilyTrackingSettings:
    return await service.get_family_settings(identity.family_id)


@app.put(
    "/api/v1/family/settings",
    response_model=FamilyTrackingSettings,
    responses={422: {"model": ErrorResponse}, 503: {"model": ErrorResponse}},
    tags=["Family"],
    summary="Изменить настройки трекинга семьи",
)
async def update_family_settings(
    request: FamilySettingsUpdate,
    identity: Annotated[Identity, Depends(get_identity)],
    service: Annotated[TrackingService, Depends(get_tracking_service)],
) -> FamilyTrackingSettings:
    """Передаются только меняемые поля. Значения вне диапазона дают 422."""
    return await service.update_family_settings(identity.family_id, identity.user_id, request)


# === SESSION ENDPOINTS ===

@app.post(
    "/api/v1/session/start",
    response_model=TrackingSession,
    responses={422: {"model": ErrorResponse}, 429: {"model": ErrorResponse}},
    tags=["Session"],
    summary="Запустить live-сессию",
)
async def start_session(
    request: SessionStartRequest,
    identity: Annotated[Identity, Depends(get_identity)],
    service: Annotated[TrackingService, Depends(get_tracking_service)],
    limiter: Annotated[RateLimiter, Depends(get_rate_limiter)],
) -> TrackingSession:
    """Запустить сессию. Прежняя активная сессия пользователя останавливается."""
    if not await limiter.allow(
        SESSION_ACTION, identity.user_id, service.config.rate_limit.SESSION_MAX_PER_MINUTE,
    ):
        raise RateLimitExceeded(SESSION_ACTION, identity.user_id)

    return await service.sessions.start(
        identity.user_id,
        identity.family_id,
        mode=request.mode.value,
        interval_seconds=request.interval_seconds,
        duration_seconds=request.duration_seconds,
    )


@app.post(
    "/api/v1/session/stop",
    response_model=SessionStopResponse,
    tags=["Session"],
    summary="Остановить сессию",
)
async def stop_session(
    identity: Annotated[Identity, Depends(get_identity)],
    service: Annotated[TrackingService, Depends(get_tracking_service)],
) -> SessionStopResponse:
    stopped = await service.sessions.stop(identity.user_id, identity.family_id)
    return SessionStopResponse(stopped=stopped)


@app.post(
    "/api/v1/session/keepalive",
    response_model=TrackingSession,
    responses={404: {"model": ErrorResponse}},
    tags=["Session"],
    summary="Продлить сессию",
)
async def keepalive_session(
    identity: Annotated[Identity, Depends(get_identity)],
    service: Annotated[TrackingService, Depends(get_tracking_service)],
) -> TrackingSession:
    session = await service.sessions.keepalive(identity.user_id, identity.family_id)
    if session is None:
        raise NotFoundError("Активная сессия не найдена")
    return session


@app.get(
    "/api/v1/session",
    response_model=SessionStatusResponse,
    tags=["Session"],
    summary="Статус сессии",
)
async def get_session_status(
    identity: Annotated[Identity, Depends(get_identity)],
    service: Annotated[TrackingService, Depends(get_tracking_service)],
) -> SessionStatusResponse:
    session = await service.sessions.get_status(identity.user_id)
    if session is None:
        return SessionStatusResponse(active=False)
    return SessionStatusResponse(
        active=True,
        session=session,
        expires_in_seconds=session.expires_in_seconds,
    )


# === PLACES ENDPOINTS ===

@app.get(
    "/api/v1/places",
    response_model=List[Place],
    tags=["Places"],
    summary="Места семьи",
)
async def list_places(
    identity: Annotated[Identity, Depends(get_identity)],
    places: Annotated[PlaceRepository, Depends(get_place_repository)],
) -> List[Place]:
    return await places.list(identity.family_id)


@app.post(
    "/api/v1/places",
    response_model=Place,
    status_code=status.HTTP_201_CREATED,
    tags=["Places"],
    summary="Добавить место",
)
async def create_place(
    request: PlaceCreateRequest,
    identity: Annotated[Identity, Depends(get_identity)],
    places: Annotated[PlaceRepository, Depends(get_place_repository)],
) -> Place:
    return await places.create(
        identity.family_id,
        request.label,
        request.lat,
        request.lng,
        request.radius_m,
        created_by=identity.user_id,
    )


@app.delete(
    "/api/v1/places/{place_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    responses={404: {"model": ErrorResponse}},
    tags=["Places"],
    summary="Удалить место",
)
async def delete_place(
    place_id: int,
    identity: Annotated[Identity, Depends(get_identity)],
    places: Annotated[PlaceRepository, Depends(get_place_repository)],
) -> None:
    if not await places.delete(identity.family_id, place_id):
        raise NotFoundError(f"Место {place_id} не найдено")


# === GEOFENCE ENDPOINTS ===

@app.get(
    "/api/v1/geofences",
    response_model=List[Geofence],
    tags=["Geofences"],
    summary="Геозоны семьи",
)
async def list_geofences(
    identity: Annotated[Identity, Depends(get_identity)],
    geofences: Annotated[GeofenceRepository, Depends(get_geofence_repository)],
) -> List[Geofence]:
    return await geofences.list_all(identity.family_id)


@app.post(
    "/api/v1/geofences",
    response_model=Geofence,
    status_code=status.HTTP_201_CREATED,
    tags=["Geofences"],
    summary="Добавить геозону",
)
async def create_geofence(
    request: GeofenceCreate,
    identity: Annotated[Identity, Depends(get_identity)],
    geofences: Annotated[GeofenceRepository, Depends(get_geofence_repository)],
) -> Geofence:
    return await geofences.create(identity.family_id, request)


@app.patch(
    "/api/v1/geofences/{geofence_id}",
    response_model=Geofence,
    responses={404: {"model": ErrorResponse}, 422: {"model": ErrorResponse}},
    tags=["Geofences"],
    summary="Изменить геозону",
)
async def update_geofence(
    geofence_id: int,
    request: GeofenceUpdate,
    identity: Annotated[Identity, Depends(get_identity)],
    geofences: Annotated[GeofenceRepository, Depends(get_geofence_repository)],
) -> Geofence:
    return await geofences.update(identity.family_id, geofence_id, request)


@app.delete(
    "/api/v1/geofences/{geofence_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    responses={404: {"model": ErrorResponse}},
    tags=["Geofences"],
    summary="Удалить геозону",
)
async def delete_geofence(
    geofence_id: int,
    identity: Annotated[Identity, Depends(get_identity)],
    geofences: Annotated[GeofenceRepository, Depends(get_geofence_repository)],
) -> None:
    if not await geofences.delete(identity.family_id, geofence_id):
        raise NotFoundError(f"Геозона {geofence_id} не найдена")


# === ALERT RULE ENDPOINTS ===

@app.get(
    "/api/v1/alerts/rules",
    response_model=List[AlertRule],
    tags=["Alerts"],
    summary="Правила оповещений семьи",
)
async def list_alert_rules(
    identity: Annotated[Identity, Depends(get_identity)],
    rules: Annotated[AlertRuleRepository, Depends(get_alert_rule_repository)],
) -> List[AlertRule]:
    return await rules.list_all(identity.family_id)


@app.post(
    "/api/v1/alerts/rules",
    response_model=AlertRule,
    status_code=status.HTTP_201_CREATED,
    tags=["Alerts"],
    summary="Добавить правило",
)
async def create_alert_rule(
    request: AlertRuleCreate,
    identity: Annotated[Identity, Depends(get_identity)],
    rules: Annotated[AlertRuleRepository, Depends(get_alert_rule_repository)],
) -> AlertRule:
    return await rules.create(identity.family_id, request)


@app.patch(
    "/api/v1/alerts/rules/{rule_id}",
    response_model=AlertRule,
    responses={404: {"model": ErrorResponse}, 422: {"model": ErrorResponse}},
    tags=["Alerts"],
    summary="Изменить правило",
)
async def update_alert_rule(
    rule_id: int,
    request: AlertRuleUpdate,
    identity: Annotated[Identity, Depends(get_identity)],
    rules: Annotated[AlertRuleRepository, Depends(get_alert_rule_repository)],
) -> AlertRule:
    return await rules.update(identity.family_id, rule_id, request)


@app.delete(
    "/api/v1/alerts/rules/{rule_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    responses={404: {"model": ErrorResponse}},
    tags=["Alerts"],
    summary="Удалить правило",
)
async def delete_alert_rule(
    rule_id: int,
    identity: Annotated[Identity, Depends(get_identity)],
    rules: Annotated[AlertRuleRepository, Depends(get_alert_rule_repository)],
) -> None:
    if not await rules.delete(identity.family_id, rule_id):
        raise NotFoundError(f"Правило {rule_id} не найдено")


# === DIRECTIONS ENDPOINT ===

@app.get(
    "/api/v1/directions",
    responses={404: {"model": ErrorResponse}, 422: {"model": ErrorResponse}},
    tags=["Directions"],
    summary="Маршрут",
)
async def get_directions(
    identity: Annotated[Identity, Depends(get_identity)],
    service: Annotated[TrackingService, Depends(get_tracking_service)],
    places: Annotated[PlaceRepository, Depends(get_place_repository)],
    directions: Annotated[DirectionsService, Depends(get_directions_service)],
    to_lat: Optional[float] = Query(default=None, ge=-90, le=90),
    to_lng: Optional[float] = Query(default=None, ge=-180, le=180),
    to_user_id: Optional[int] = None,
    to_place_id: Optional[int] = None,
    from_lat: Optional[float] = Query(default=None, ge=-90, le=90),
    from_lng: Optional[float] = Query(default=None, ge=-180, le=180),
    profile: str = "driving",
) -> dict[str, Any]:
    """
    Маршрут до точки, до участника семьи или до места.

    Начало маршрута по умолчанию: моя текущая позиция.
    """
    if from_lat is None or from_lng is None:
        me = await service.get_current(identity.user_id)
        if me is None:
            raise ValidationError("Не задано начало маршрута и нет текущей позиции", field="from_lat")
        from_lat, from_lng = me.lat, me.lng

    if to_user_id is not None:
        target = await _family_member_location(service, identity, to_user_id)
        to_lat, to_lng = target.lat, target.lng
    elif to_place_id is not None:
        place = await places.get(identity.family_id, to_place_id)
        if place is None:
            raise NotFoundError(f"Место {to_place_id} не найдено")
        to_lat, to_lng = place.lat, place.lng
    elif to_lat is None or to_lng is None:
        raise ValidationError("Не задана цель маршрута", field="to_lat")

    route = await directions.get_route(from_lat, from_lng, to_lat, to_lng, profile)
    if route is None:
        raise HTTPException(status_code=502, detail="Сервис маршрутов недоступен")
    return route
