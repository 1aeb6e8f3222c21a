# src/core/sessions/repository.py
"""
Репозиторий сессий live-трекинга.
"""

from __future__ import annotations

from datetime import datetime
from typing import List, Optional

from src.common.constants import SessionMode, SessionStatus
from src.core.sessions.models import TrackingSession
from src.infra.database import DatabaseManager, parse_rowcount

_SESSION_COLUMNS = """
    id, user_id, family_id, status, mode, interval_seconds,
    started_at, expires_at, last_keepalive, stopped_at
"""


class SessionRepository:
    """
    Репозиторий сессий.

    Ошибки asyncpg не перехватываются: решение принимает SessionGate.
    """

    def __init__(self, db: DatabaseManager) -> None:
        self._db = db

    async def get_active(self, user_id: int) -> Optional[TrackingSession]:
        """Активная и не истёкшая сессия пользователя."""
        row = await self._db.fetchrow(
            f"""
            SELECT {_SESSION_COLUMNS}
            FROM tracking_sessions
            WHERE user_id = $1 AND status = $2 AND expires_at > NOW()
            ORDER BY started_at DESC
            LIMIT 1
            """,
            user_id,
            SessionStatus.ACTIVE.value,
        )
        return TrackingSession.model_validate(dict(row)) if row else None

    async def replace_active(
        self,
        user_id: int,
        family_id: int,
        mode: SessionMode,
        interval_seconds: int,
        duration_seconds: int,
    ) -> tuple[TrackingSession, int]:
        """
        Останавливает активные сессии пользователя и создаёт новую.

        Обе операции в одной транзакции под advisory-блокировкой по user_id,
        поэтому параллельные старты не оставят двух активных сессий.

        Returns:
            (новая сессия, количество остановленных)
        """
        async with self._db.transaction() as conn:
            await conn.execute(
                "SELECT pg_advisory_xact_lock(hashtextextended('tracking_session:' || $1::text, 0))",
                user_id,
            )
            status = await conn.execute(
                """
                UPDATE tracking_sessions
                SET status = $2, stopped_at = NOW()
                WHERE user_id = $1 AND status = $3
                """,
                user_id,
                SessionStatus.STOPPED.value,
                SessionStatus.ACTIVE.value,
            )
            row = await conn.fetchrow(
                f"""
                INSERT INTO tracking_sessions (
                    user_id, family_id, status, mode, interval_seconds,
                    started_at, expires_at, last_keepalive
                )
                VALUES ($1, $2, $3, $4, $5, NOW(), NOW() + make_interval(secs => $6), NOW())
                RETURNING {_SESSION_COLUMNS}
                """,
                user_id,
                family_id,
                SessionStatus.ACTIVE.value,
                mode.value,
                interval_seconds,
                float(duration_seconds),
            )

        return TrackingSession.model_validate(dict(row)), parse_rowcount(status)

    async def keepalive(self, user_id: int, extend_seconds: int) -> Optional[TrackingSession]:
        """
        Обновляет last_keepalive и продлевает expires_at не меньше чем до NOW() + extend_seconds.
        """
        row = await self._db.fetchrow(
            f"""
            UPDATE tracking_sessions
            SET last_keepalive = NOW(),
                expires_at = GREATEST(expires_at, NOW() + make_interval(secs => $3))
            WHERE user_id = $1 AND status = $2 AND expires_at > NOW()
            RETURNING {_SESSION_COLUMNS}
            """,
            user_id,
            SessionStatus.ACTIVE.value,
            float(extend_seconds),
        )
        return TrackingSession.model_validate(dict(row)) if row else None

    async def stop(self, user_id: int) -> List[TrackingSession]:
        """Останавливает активные сессии пользователя."""
        rows = await self._db.fetch(
            f"""
            UPDATE tracking_sessions
            SET status = $2, stopped_at = NOW()
            WHERE user_id = $1 AND status = $3
            RETURNING {_SESSION_COLUMNS}
            """,
            user_id,
            SessionStatus.STOPPED.value,
            SessionStatus.ACTIVE.value,
        )
        return [TrackingSession.model_validate(dict(row)) for row in rows]

    async def stop_family(self, family_id: int) -> List[TrackingSession]:
        """Останавливает все активные сессии семьи."""
        rows = await self._db.fetch(
            f"""
            UPDATE tracking_sessions
            SET status = $2, stopped_at = NOW()
            WHERE family_id = $1 AND status = $3
            RETURNING {_SESSION_COLUMNS}
            """,
            family_id,
            SessionStatus.STOPPED.value,
            SessionStatus.ACTIVE.value,
        )
        return [TrackingSession.model_validate(dict(row)) for row in rows]

    async def list_live(self, family_id: int) -> List[tuple[int, datetime]]:
        """Пользователи семьи с активной сессией и временем её истечения."""
        rows = await self._db.fetch(
            """
            SELECT user_id, MAX(expires_at) AS expires_at
            FROM tracking_sessions
            WHERE family_id = $1 AND status = $2 AND expires_at > NOW()
            GROUP BY user_id
            ORDER BY user_id
            """,
            family_id,
            SessionStatus.ACTIVE.value,
        )
        return [(row["user_id"], row["expires_at"]) for row in rows]

    async def expire_stale(self) -> List[TrackingSession]:
        """Переводит истёкшие активные сессии в expired."""
        rows = await self._db.fetch(
            f"""
            UPDATE tracking_sessions
            SET status = $1
            WHERE status = $2 AND expires_at < NOW()
            RETURNING {_SESSION_COLUMNS}
            """,
            SessionStatus.EXPIRED.value,
            SessionStatus.ACTIVE.value,
        )
        return [TrackingSession.model_validate(dict(row)) for row in rows]
