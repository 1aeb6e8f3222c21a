# src/core/geofences/queue.py
"""
Долговечная очередь точек для фоновой обработки геозон.

Статусы: pending -> processed | failed. Упавший элемент снова выбирается,
пока не выйдет окно повтора (по времени создания, без счётчика попыток).
"""

from __future__ import annotations

from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, Field

from src.common.constants import QueueStatus
from src.core.tracking.models import LocationFix
from src.infra.database import DatabaseManager, parse_rowcount


class QueueItem(BaseModel):
    """Элемент очереди геозон."""

    id: int = Field(..., description="ID элемента")
    user_id: int = Field(..., description="ID пользователя")
    family_id: int = Field(..., description="ID семьи")
    lat: float = Field(..., description="Широта")
    lng: float = Field(..., description="Долгота")
    accuracy_m: Optional[float] = Field(None, description="Точность")
    speed_mps: Optional[float] = Field(None, description="Скорость в м/с")
    battery_level: Optional[int] = Field(None, description="Заряд батареи, %")
    is_moving: bool = Field(False, description="В движении")
    recorded_at: datetime = Field(..., description="Время точки")
    status: QueueStatus = Field(QueueStatus.PENDING, description="Статус")
    created_at: datetime = Field(..., description="Время постановки")

    class Config:
        from_attributes = True

    def to_fix(self) -> LocationFix:
        """Восстанавливает точку для движков."""
        return LocationFix(
            lat=self.lat,
            lng=self.lng,
            accuracy_m=self.accuracy_m,
            speed_mps=self.speed_mps,
            battery_level=self.battery_level,
            is_moving=self.is_moving,
            recorded_at=self.recorded_at,
        )


class GeofenceQueueRepository:
    """Репозиторий очереди tracking_geofence_queue."""

    def __init__(self, db: DatabaseManager) -> None:
        self._db = db

    async def enqueue(self, user_id: int, family_id: int, fix: LocationFix) -> int:
        """Ставит точку в очередь. Возвращает ID элемента."""
        return await self._db.fetchval(
            """
            INSERT INTO tracking_geofence_queue (
                user_id, family_id, lat, lng, accuracy_m, speed_mps,
                battery_level, is_moving, recorded_at, status
            )
            VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10)
            RETURNING id
            """,
            user_id,
            family_id,
            fix.lat,
            fix.lng,
            fix.accuracy_m,
            fix.speed_mps,
            fix.battery_level,
            fix.is_moving,
            fix.recorded_at,
            QueueStatus.PENDING.value,
        )

    async def fetch_batch(self, limit: int, retry_window_s: int) -> List[QueueItem]:
        """
        Следующая пачка: pending и failed, созданные не раньше окна повтора.
        Старые элементы первыми.
        """
        rows = await self._db.fetch(
            """
            SELECT id, user_id, family_id, lat, lng, accuracy_m, speed_mps,
                   battery_level, is_moving, recorded_at, status, created_at
            FROM tracking_geofence_queue
            WHERE status = $1
               OR (status = $2 AND created_at > NOW() - make_interval(secs => $3))
            ORDER BY created_at
            LIMIT $4
            """,
            QueueStatus.PENDING.value,
            QueueStatus.FAILED.value,
            float(retry_window_s),
            limit,
        )
        return [QueueItem.model_validate(dict(row)) for row in rows]

    async def mark_processed(self, item_id: int) -> None:
        await self._db.execute(
            """
            UPDATE tracking_geofence_queue
            SET status = $2, error = NULL, processed_at = NOW()
            WHERE id = $1
            """,
            item_id,
            QueueStatus.PROCESSED.value,
        )

    async def mark_failed(self, item_id: int, error: str) -> None:
        await self._db.execute(
            """
            UPDATE tracking_geofence_queue
            SET status = $2, error = $3, processed_at = NOW()
            WHERE id = $1
            """,
            item_id,
            QueueStatus.FAILED.value,
            error[:1000],
        )

    async def cleanup(self, processed_age_s: int, failed_age_s: int) -> int:
        """
        Удаляет обработанные элементы старше processed_age_s и упавшие
        старше failed_age_s.

        Returns:
            Количество удалённых элементов
        """
        status = await self._db.execute(
            """
            DELETE FROM tracking_geofence_queue
            WHERE (status = $1 AND processed_at < NOW() - make_interval(secs => $2))
               OR (status = $3 AND created_at < NOW() - make_interval(secs => $4))
            """,
            QueueStatus.PROCESSED.value,
            float(processed_age_s),
            QueueStatus.FAILED.value,
            float(failed_age_s),
        )
        return parse_rowcount(status)
