# src/core/tracking/models.py
"""
Модели данных трекинга: входящая точка, текущая позиция, история.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, List, Optional

from pydantic import BaseModel, Field
from pydantic import ValidationError as PydanticValidationError

from src.common.constants import FixDecision, FixSource, MotionState, MPS_TO_KMH
from src.common.exceptions import ValidationError
from src.common.geo import is_valid_coordinate

# Голое поле speed больше этого значения считается км/ч
BARE_SPEED_KMH_THRESHOLD = 50.0

# Unix-время больше этого значения считается миллисекундами
UNIX_MS_THRESHOLD = 1e12


def _first(data: dict[str, Any], *names: str) -> Any:
    """Возвращает первое непустое значение из набора альтернативных имён."""
    for name in names:
        value = data.get(name)
        if value is not None and value != "":
            return value
    return None


def _to_float(value: Any, field: str) -> Optional[float]:
    if value is None:
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        raise ValidationError(f"Поле {field} должно быть числом", field=field)


def _to_bool(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in ("1", "true", "yes", "on")
    return bool(value)


def parse_timestamp(value: Any) -> datetime:
    """
    Разбирает время точки.

    Принимает ISO строку, unix-секунды или unix-миллисекунды.
    Пустое значение означает "сейчас".
    """
    if value is None or value == "":
        return datetime.now(timezone.utc)

    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)

    if isinstance(value, (int, float)) or (isinstance(value, str) and value.replace(".", "", 1).isdigit()):
        seconds = float(value)
        if seconds > UNIX_MS_THRESHOLD:
            seconds /= 1000.0
        return datetime.fromtimestamp(seconds, tz=timezone.utc)

    try:
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        raise ValidationError(f"Некорректное время точки: {value}", field="timestamp")
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


class LocationFix(BaseModel):
    """Входящая точка от устройства. Не сохраняется как есть."""

    lat: float = Field(..., ge=-90.0, le=90.0, description="Широта")
    lng: float = Field(..., ge=-180.0, le=180.0, description="Долгота")
    accuracy_m: Optional[float] = Field(None, ge=0.0, description="Точность в метрах")
    speed_mps: Optional[float] = Field(None, ge=0.0, description="Скорость в м/с")
    heading_deg: Optional[float] = Field(None, description="Курс в градусах")
    altitude_m: Optional[float] = Field(None, description="Высота в метрах")
    battery_level: Optional[int] = Field(None, ge=0, le=100, description="Заряд батареи, %")
    is_moving: bool = Field(False, description="Устройство в движении")
    recorded_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
        description="Время снятия точки на устройстве",
    )

    @property
    def speed_kmh(self) -> Optional[float]:
        """Скорость в км/ч или None."""
        if self.speed_mps is None:
            return None
        return self.speed_mps * MPS_TO_KMH

    @classmethod
    def from_payload(cls, data: dict[str, Any]) -> LocationFix:
        """
        Собирает точку из клиентского payload с альтернативными именами полей.

        Raises:
            ValidationError: отсутствуют или некорректны координаты
        """
        lat = _to_float(_first(data, "lat", "latitude"), "lat")
        lng = _to_float(_first(data, "lng", "lon", "longitude"), "lng")
        if lat is None or lng is None:
            raise ValidationError("Не переданы координаты", field="lat" if lat is None else "lng")
        if not is_valid_coordinate(lat, lng):
            raise ValidationError(f"Координаты вне диапазона: {lat}, {lng}", field="lat")

        speed_mps = _to_float(data.get("speed_mps"), "speed_mps")
        if speed_mps is None:
            speed_kmh = _to_float(data.get("speed_kmh"), "speed_kmh")
            if speed_kmh is not None:
                speed_mps = speed_kmh / MPS_TO_KMH
            else:
                bare = _to_float(data.get("speed"), "speed")
                if bare is not None:
                    speed_mps = bare / MPS_TO_KMH if bare > BARE_SPEED_KMH_THRESHOLD else bare

        battery = _to_float(_first(data, "battery_level", "battery"), "battery_level")

        try:
            return cls(
                lat=lat,
                lng=lng,
                accuracy_m=_to_float(_first(data, "accuracy_m", "accuracy"), "accuracy_m"),
                speed_mps=speed_mps,
                heading_deg=_to_float(_first(data, "heading_deg", "heading", "bearing_deg"), "heading_deg"),
                altitude_m=_to_float(_first(data, "altitude_m", "altitude"), "altitude_m"),
                # отрицательный заряд устройства присылают как "неизвестно"
                battery_level=int(round(battery)) if battery is not None and battery >= 0 else None,
                is_moving=_to_bool(data.get("is_moving", False)),
                recorded_at=parse_timestamp(_first(data, "recorded_at", "timestamp", "client_timestamp")),
            )
        except PydanticValidationError as e:
            first_error = e.errors()[0]
            field = str(first_error["loc"][0]) if first_error.get("loc") else None
            raise ValidationError(f"Некорректная точка: {first_error['msg']}", field=field)


class CurrentLocation(BaseModel):
    """Авторитетная текущая позиция пользователя (одна запись на user_id)."""

    user_id: int = Field(..., description="ID пользователя")
    family_id: int = Field(..., description="ID семьи")
    lat: float = Field(..., description="Широта")
    lng: float = Field(..., description="Долгота")
    accuracy_m: Optional[float] = Field(None, description="Точность в метрах")
    speed_mps: Optional[float] = Field(None, description="Скорость в м/с")
    heading_deg: Optional[float] = Field(None, description="Курс")
    altitude_m: Optional[float] = Field(None, description="Высота")
    battery_level: Optional[int] = Field(None, description="Заряд батареи, %")
    is_moving: bool = Field(False, description="В движении")
    quality_score: int = Field(0, ge=0, le=100, description="Оценка качества последней позиции")
    source: FixSource = Field(FixSource.UNKNOWN, description="Источник координат")
    position_at: datetime = Field(..., description="Время последнего изменения позиции")
    updated_at: datetime = Field(..., description="Время последнего heartbeat")

    class Config:
        from_attributes = True


class HistoryPoint(BaseModel):
    """Точка истории (append-only)."""

    id: int = Field(..., description="ID записи")
    user_id: int = Field(..., description="ID пользователя")
    family_id: int = Field(..., description="ID семьи")
    lat: float = Field(..., description="Широта")
    lng: float = Field(..., description="Долгота")
    accuracy_m: Optional[float] = Field(None, description="Точность")
    speed_mps: Optional[float] = Field(None, description="Скорость в м/с")
    heading_deg: Optional[float] = Field(None, description="Курс")
    altitude_m: Optional[float] = Field(None, description="Высота")
    battery_level: Optional[int] = Field(None, description="Заряд батареи, %")
    is_moving: bool = Field(False, description="В движении")
    recorded_at: datetime = Field(..., description="Время снятия точки")
    created_at: datetime = Field(..., description="Время записи")

    class Config:
        from_attributes = True


@dataclass
class GateResult:
    """Решение фильтра качества."""
    decision: FixDecision
    quality_score: int
    source: FixSource
    reason: str


class IngestResult(BaseModel):
    """Итог обработки одной точки."""

    decision: FixDecision = Field(..., description="promote / touch / reject")
    quality_score: int = Field(..., description="Оценка качества 0..100")
    source: FixSource = Field(..., description="Источник координат")
    reason: str = Field("", description="Правило, давшее решение")
    duplicate: bool = Field(False, description="Точка признана дубликатом")
    motion_state: Optional[MotionState] = Field(None, description="moving / idle / unknown")
    history_stored: bool = Field(False, description="Точка записана в историю")
    queued: bool = Field(False, description="Точка поставлена в фоновую очередь")
    geofence_events: List[dict[str, Any]] = Field(default_factory=list, description="Переходы геозон")
    alerts: List[dict[str, Any]] = Field(default_factory=list, description="Сработавшие правила")


class BatchItemResult(BaseModel):
    """Итог одной точки пакета."""

    index: int = Field(..., description="Позиция в исходном пакете")
    client_event_id: Optional[str] = Field(None, description="ID события на устройстве")
    recorded_at: Optional[datetime] = Field(None, description="Время снятия точки")
    accepted: bool = Field(False, description="Точка принята (promote или touch)")
    decision: Optional[FixDecision] = Field(None, description="Решение фильтра качества")
    duplicate: bool = Field(False, description="Дубликат")
    motion_state: Optional[MotionState] = Field(None, description="Состояние движения")
    reason: str = Field("", description="Причина решения")


class BatchResult(BaseModel):
    """Итог пакетного приёма."""

    total: int = Field(..., description="Точек в пакете")
    accepted: int = Field(0, description="Принято")
    rejected: int = Field(0, description="Отклонено")
    results: List[BatchItemResult] = Field(default_factory=list, description="Итоги в исходном порядке")
    queued: bool = Field(False, description="Последняя точка поставлена в фоновую очередь")
    geofence_events: List[dict[str, Any]] = Field(default_factory=list, description="Переходы геозон")
    alerts: List[dict[str, Any]] = Field(default_factory=list, description="Сработавшие правила")
