# src/core/sessions/models.py
"""
Модели сессий live-трекинга.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional

from pydantic import BaseModel, Field

from src.common.constants import SessionMode, SessionStatus


class TrackingSession(BaseModel):
    """Сессия live-трекинга. У пользователя не больше одной активной."""

    id: int = Field(..., description="ID сессии")
    user_id: int = Field(..., description="ID пользователя")
    family_id: int = Field(..., description="ID семьи")
    status: SessionStatus = Field(SessionStatus.ACTIVE, description="Статус сессии")
    mode: SessionMode = Field(SessionMode.LIVE, description="Режим")
    interval_seconds: int = Field(30, description="Интервал отправки точек")
    started_at: datetime = Field(..., description="Время старта")
    expires_at: datetime = Field(..., description="Время истечения")
    last_keepalive: datetime = Field(..., description="Последний keepalive")
    stopped_at: Optional[datetime] = Field(None, description="Время остановки")

    class Config:
        from_attributes = True

    @property
    def expires_in_seconds(self) -> int:
        """Секунд до истечения (не меньше нуля)."""
        delta = (self.expires_at - datetime.now(timezone.utc)).total_seconds()
        return max(0, int(delta))
