# src/core/audit/repository.py
"""
Журнал событий трекинга (аудит): обновления позиции, геозоны, сессии, оповещения.
"""

from __future__ import annotations

import json
from datetime import datetime, timedelta, timezone
from typing import Any, List, Optional, Sequence

from pydantic import BaseModel, Field

from src.common.constants import TrackingEventType
from src.common.logger import log_error
from src.infra.database import DB_ERRORS, DatabaseManager

MAX_EVENTS_LIMIT = 500


class TrackingEvent(BaseModel):
    """Запись журнала событий."""

    id: int = Field(..., description="ID события")
    family_id: int = Field(..., description="ID семьи")
    user_id: Optional[int] = Field(None, description="ID пользователя")
    event_type: TrackingEventType = Field(..., description="Тип события")
    payload: dict[str, Any] = Field(default_factory=dict, description="Данные события")
    created_at: datetime = Field(..., description="Время события")

    class Config:
        from_attributes = True


class AuditRepository:
    """Репозиторий журнала событий."""

    def __init__(self, db: DatabaseManager) -> None:
        self._db = db

    async def log(
        self,
        family_id: int,
        user_id: Optional[int],
        event_type: TrackingEventType,
        payload: Optional[dict[str, Any]] = None,
    ) -> Optional[int]:
        """
        Пишет событие. Журнал вторичен: ошибка записи логируется и не пробрасывается.

        Returns:
            ID события или None
        """
        try:
            return await self._db.fetchval(
                """
                INSERT INTO tracking_events (family_id, user_id, event_type, payload)
                VALUES ($1, $2, $3, $4::jsonb)
                RETURNING id
                """,
                family_id,
                user_id,
                event_type.value,
                json.dumps(payload or {}, ensure_ascii=False, default=str),
            )
        except DB_ERRORS as e:
            await log_error(f"Ошибка записи события {event_type.value} семьи {family_id}: {e}")
            return None

    async def list(
        self,
        family_id: int,
        types: Optional[Sequence[TrackingEventType]] = None,
        since: Optional[datetime] = None,
        limit: int = 100,
    ) -> List[TrackingEvent]:
        """События семьи, новые первыми."""
        limit = max(1, min(limit, MAX_EVENTS_LIMIT))
        type_values = [t.value for t in types] if types else None

        try:
            rows = await self._db.fetch(
                """
                SELECT id, family_id, user_id, event_type, payload, created_at
                FROM tracking_events
                WHERE family_id = $1
                  AND ($2::varchar[] IS NULL OR event_type = ANY($2))
                  AND ($3::timestamptz IS NULL OR created_at >= $3)
                ORDER BY created_at DESC
                LIMIT $4
                """,
                family_id,
                type_values,
                since,
                limit,
            )
        except DB_ERRORS as e:
            await log_error(f"Ошибка чтения событий семьи {family_id}: {e}")
            return []

        return [self._row_to_event(row) for row in rows]

    async def exists_recent(
        self,
        user_id: int,
        event_type: TrackingEventType,
        within_seconds: int,
    ) -> bool:
        """Было ли событие данного типа у пользователя за последние within_seconds."""
        since = datetime.now(timezone.utc) - timedelta(seconds=within_seconds)
        found = await self._db.fetchval(
            """
            SELECT EXISTS (
                SELECT 1 FROM tracking_events
                WHERE user_id = $1 AND event_type = $2 AND created_at >= $3
            )
            """,
            user_id,
            event_type.value,
            since,
        )
        return bool(found)

    async def prune(
        self,
        family_id: int,
        retention_days: int,
        batch_size: int = 5000,
        delay: float = 0.1,
    ) -> int:
        """Удаляет события старше срока хранения семьи пачками."""
        cutoff = datetime.now(timezone.utc) - timedelta(days=retention_days)
        return await self._db.delete_in_batches(
            "tracking_events",
            "family_id = $1 AND created_at < $2",
            family_id,
            cutoff,
            batch_size=batch_size,
            delay=delay,
        )

    def _row_to_event(self, row) -> TrackingEvent:
        """Конвертирует строку БД в модель TrackingEvent."""
        payload = row["payload"]
        if isinstance(payload, str):
            payload = json.loads(payload)
        return TrackingEvent(
            id=row["id"],
            family_id=row["family_id"],
            user_id=row["user_id"],
            event_type=TrackingEventType(row["event_type"]),
            payload=payload or {},
            created_at=row["created_at"],
        )
