# src/core/geofences/models.py
"""
Модели геозон.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, List, Optional, Tuple

from pydantic import BaseModel, Field, field_validator, model_validator

from src.common.constants import GeofenceAction, GeofenceType
from src.common.geo import haversine_m, point_in_polygon


def parse_vertices(v: Any) -> List[Tuple[float, float]]:
    """Вершины полигона из JSON строки, списка {lat, lng} или списка пар."""
    if v is None:
        return []
    if isinstance(v, str):
        v = json.loads(v) if v else []
    vertices = []
    for point in v:
        if isinstance(point, dict):
            vertices.append((float(point["lat"]), float(point["lng"])))
        else:
            vertices.append((float(point[0]), float(point[1])))
    return vertices


class Geofence(BaseModel):
    """Геозона семьи: круг (центр + радиус) или полигон."""

    id: int = Field(..., description="ID геозоны")
    family_id: int = Field(..., description="ID семьи")
    name: str = Field(..., description="Название")
    type: GeofenceType = Field(GeofenceType.CIRCLE, description="Тип")
    center_lat: Optional[float] = Field(None, description="Широта центра")
    center_lng: Optional[float] = Field(None, description="Долгота центра")
    radius_m: Optional[float] = Field(None, description="Радиус в метрах")
    polygon: List[Tuple[float, float]] = Field(default_factory=list, description="Вершины [(lat, lng)]")
    notify_enter: bool = Field(True, description="Оповещать о входе")
    notify_exit: bool = Field(True, description="Оповещать о выходе")
    active: bool = Field(True, description="Активна")

    class Config:
        from_attributes = True

    @field_validator("polygon", mode="before")
    @classmethod
    def parse_polygon(cls, v: Any) -> Any:
        return parse_vertices(v)

    def contains(self, lat: float, lng: float) -> bool:
        """Находится ли точка внутри геозоны."""
        if self.type == GeofenceType.POLYGON:
            return point_in_polygon(lat, lng, self.polygon)

        if self.center_lat is None or self.center_lng is None or self.radius_m is None:
            return False
        return haversine_m(self.center_lat, self.center_lng, lat, lng) <= self.radius_m


MIN_RADIUS_M = 10.0
MAX_RADIUS_M = 100_000.0
MIN_POLYGON_VERTICES = 3


def _check_vertices(vertices: List[Tuple[float, float]]) -> None:
    if len(vertices) < MIN_POLYGON_VERTICES:
        raise ValueError(f"Полигон должен иметь не меньше {MIN_POLYGON_VERTICES} вершин")
    for lat, lng in vertices:
        if not (-90.0 <= lat <= 90.0 and -180.0 <= lng <= 180.0):
            raise ValueError(f"Вершина полигона вне диапазона: {lat}, {lng}")


class GeofenceCreate(BaseModel):
    """Новая геозона. Круг требует центр, полигон не меньше трёх вершин."""

    name: str = Field(..., min_length=1, max_length=100, description="Название")
    type: GeofenceType = Field(GeofenceType.CIRCLE, description="Тип")
    center_lat: Optional[float] = Field(None, ge=-90.0, le=90.0)
    center_lng: Optional[float] = Field(None, ge=-180.0, le=180.0)
    radius_m: float = Field(100.0, ge=MIN_RADIUS_M, le=MAX_RADIUS_M)
    polygon: List[Tuple[float, float]] = Field(default_factory=list)
    notify_enter: bool = True
    notify_exit: bool = True
    active: bool = True

    @field_validator("polygon", mode="before")
    @classmethod
    def parse_polygon(cls, v: Any) -> Any:
        return parse_vertices(v)

    @model_validator(mode="after")
    def check_shape(self) -> GeofenceCreate:
        if self.type == GeofenceType.CIRCLE:
            if self.center_lat is None or self.center_lng is None:
                raise ValueError("Для круговой геозоны нужен центр")
        else:
            _check_vertices(self.polygon)
        return self


class GeofenceUpdate(BaseModel):
    """
    Частичное изменение геозоны.

    Форма итоговой зоны проверяется после слияния с текущей записью.
    """

    name: Optional[str] = Field(None, min_length=1, max_length=100)
    type: Optional[GeofenceType] = None
    center_lat: Optional[float] = Field(None, ge=-90.0, le=90.0)
    center_lng: Optional[float] = Field(None, ge=-180.0, le=180.0)
    radius_m: Optional[float] = Field(None, ge=MIN_RADIUS_M, le=MAX_RADIUS_M)
    polygon: Optional[List[Tuple[float, float]]] = None
    notify_enter: Optional[bool] = None
    notify_exit: Optional[bool] = None
    active: Optional[bool] = None

    @field_validator("polygon", mode="before")
    @classmethod
    def parse_polygon(cls, v: Any) -> Any:
        return None if v is None else parse_vertices(v)

    def apply(self, geofence: Geofence) -> GeofenceCreate:
        """
        Сливает изменения с текущей геозоной.

        Raises:
            pydantic.ValidationError: итоговая форма некорректна
        """
        merged = geofence.model_dump(exclude={"id", "family_id"})
        merged.update(self.model_dump(exclude_unset=True, exclude_none=True))
        if merged.get("radius_m") is None:
            merged.pop("radius_m", None)
        return GeofenceCreate.model_validate(merged)


@dataclass
class GeofenceTransition:
    """Смена состояния пары (геозона, пользователь)."""
    geofence_id: int
    geofence_name: str
    user_id: int
    family_id: int
    action: GeofenceAction
    notify: bool
    occurred_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> dict[str, Any]:
        """Дескриптор события для внешних получателей."""
        return {
            "geofence_id": self.geofence_id,
            "geofence_name": self.geofence_name,
            "user_id": self.user_id,
            "family_id": self.family_id,
            "action": self.action.value,
            "occurred_at": self.occurred_at.isoformat(),
        }
