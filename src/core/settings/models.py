# src/core/settings/models.py
"""
Настройки трекинга семьи.
"""

from __future__ import annotations

from typing import Any, Optional

from pydantic import BaseModel, Field

from src.common.constants import TrackingMode


class FamilyTrackingSettings(BaseModel):
    """Настройки трекинга семьи."""

    family_id: int = Field(..., description="ID семьи")
    mode: TrackingMode = Field(TrackingMode.SESSION_GATED, description="1 = live по сессии, 2 = по движению")
    session_ttl_seconds: int = Field(300, ge=1, description="Время жизни сессии без keepalive")
    keepalive_interval_seconds: int = Field(30, ge=1, description="Интервал keepalive")
    dedupe_radius_m: float = Field(10.0, ge=0.0, description="Радиус дедупликации")
    dedupe_time_seconds: int = Field(60, ge=0, description="Окно дедупликации")
    rate_limit_seconds: int = Field(5, ge=0, description="Минимальный интервал между точками")
    history_retention_days: int = Field(30, ge=1, description="Срок хранения истории")
    events_retention_days: int = Field(90, ge=1, description="Срок хранения событий")
    speed_alert_kmh: float = Field(120.0, gt=0.0, description="Порог скорости по умолчанию")
    battery_alert_percent: int = Field(15, ge=0, le=100, description="Порог заряда по умолчанию")
    speed_threshold_mps: float = Field(1.0, ge=0.0, description="Скорость, с которой считаем движение")
    distance_threshold_m: float = Field(50.0, ge=0.0, description="Смещение, с которого считаем движение")
    min_accuracy_m: float = Field(100.0, gt=0.0, description="Хуже этой точности состояние неизвестно")

    class Config:
        from_attributes = True


class FamilySettingsUpdate(BaseModel):
    """
    Изменение настроек семьи. Передаются только меняемые поля.

    Значения вне диапазона отклоняются целиком, без подрезки.
    """

    mode: Optional[TrackingMode] = None
    session_ttl_seconds: Optional[int] = Field(None, ge=60, le=3600)
    keepalive_interval_seconds: Optional[int] = Field(None, ge=5, le=3600)
    dedupe_radius_m: Optional[float] = Field(None, ge=0.0, le=1000.0)
    dedupe_time_seconds: Optional[int] = Field(None, ge=0, le=3600)
    rate_limit_seconds: Optional[int] = Field(None, ge=0, le=300)
    history_retention_days: Optional[int] = Field(None, ge=1, le=365)
    events_retention_days: Optional[int] = Field(None, ge=1, le=365)
    speed_alert_kmh: Optional[float] = Field(None, gt=0.0, le=500.0)
    battery_alert_percent: Optional[int] = Field(None, ge=0, le=100)
    speed_threshold_mps: Optional[float] = Field(None, ge=0.0, le=100.0)
    distance_threshold_m: Optional[float] = Field(None, ge=1.0, le=10000.0)
    min_accuracy_m: Optional[float] = Field(None, ge=1.0, le=10000.0)

    def changes(self) -> dict[str, Any]:
        """Только явно переданные и непустые поля."""
        return {
            name: value.value if isinstance(value, TrackingMode) else value
            for name, value in self.model_dump(exclude_unset=True).items()
            if value is not None
        }
