# src/core/tracking/repository.py
"""
Репозиторий позиций: текущая позиция пользователя и история точек.

Чтение идёт через кэш с откатом на БД и починкой кэша после промаха.
Кэш обновляется после записи в БД и не транзакционен с ней:
устаревание ограничено TTL ключа.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import List, Optional

from src.common.exceptions import PersistenceError
from src.common.logger import log_error, log_warning
from src.core.tracking.cache import TrackingCache
from src.core.tracking.models import CurrentLocation, GateResult, HistoryPoint, LocationFix
from src.infra.database import DB_ERRORS, DatabaseManager

MAX_HISTORY_LIMIT = 1000
MAX_FAMILY_HISTORY_LIMIT = 2000
DEFAULT_FAMILY_HISTORY_WINDOW = timedelta(hours=1)

_CURRENT_COLUMNS = """
    user_id, family_id, lat, lng, accuracy_m, speed_mps, heading_deg, altitude_m,
    battery_level, is_moving, quality_score, source, position_at, updated_at
"""

_HISTORY_COLUMNS = """
    id, user_id, family_id, lat, lng, accuracy_m, speed_mps, heading_deg, altitude_m,
    battery_level, is_moving, recorded_at, created_at
"""


class LocationRepository:
    """Репозиторий текущих позиций и истории."""

    def __init__(self, db: DatabaseManager, cache: TrackingCache) -> None:
        """
        Args:
            db: Менеджер базы данных (Dependency Injection)
            cache: Кэш трекинга
        """
        self._db = db
        self._cache = cache

    # =========================================================================
    # ТЕКУЩАЯ ПОЗИЦИЯ
    # =========================================================================

    async def get_current(self, user_id: int) -> Optional[CurrentLocation]:
        """
        Возвращает текущую позицию пользователя.

        Raises:
            PersistenceError: БД недоступна при промахе кэша
        """
        cached = await self._cache.get_current(user_id)
        if cached is not None:
            try:
                return CurrentLocation.model_validate(cached)
            except ValueError:
                await log_warning(f"Повреждённая запись кэша позиции пользователя {user_id}")

        try:
            row = await self._db.fetchrow(
                f"SELECT {_CURRENT_COLUMNS} FROM tracking_current WHERE user_id = $1",
                user_id,
            )
        except DB_ERRORS as e:
            await log_error(f"Ошибка чтения позиции пользователя {user_id}: {e}")
            raise PersistenceError(f"Не удалось прочитать позицию пользователя {user_id}") from e

        if row is None:
            return None

        current = CurrentLocation.model_validate(dict(row))
        await self._cache.set_current(user_id, current.model_dump(mode="json"))
        return current

    async def promote(
        self,
        user_id: int,
        family_id: int,
        fix: LocationFix,
        gate: GateResult,
    ) -> CurrentLocation:
        """
        Делает точку новой авторитетной позицией (атомарный upsert по user_id).

        Порядок не проверяется: запоздавшая точка перезапишет более новую.

        Raises:
            PersistenceError: запись не удалась
        """
        try:
            row = await self._db.fetchrow(
                f"""
                INSERT INTO tracking_current (
                    user_id, family_id, lat, lng, accuracy_m, speed_mps, heading_deg,
                    altitude_m, battery_level, is_moving, quality_score, source,
                    position_at, updated_at
                )
                VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12, NOW(), NOW())
                ON CONFLICT (user_id) DO UPDATE SET
                    family_id = EXCLUDED.family_id,
                    lat = EXCLUDED.lat,
                    lng = EXCLUDED.lng,
                    accuracy_m = EXCLUDED.accuracy_m,
                    speed_mps = EXCLUDED.speed_mps,
                    heading_deg = EXCLUDED.heading_deg,
                    altitude_m = EXCLUDED.altitude_m,
                    battery_level = COALESCE(EXCLUDED.battery_level, tracking_current.battery_level),
                    is_moving = EXCLUDED.is_moving,
                    quality_score = EXCLUDED.quality_score,
                    source = EXCLUDED.source,
                    position_at = NOW(),
                    updated_at = NOW()
                RETURNING {_CURRENT_COLUMNS}
                """,
                user_id,
                family_id,
                fix.lat,
                fix.lng,
                fix.accuracy_m,
                fix.speed_mps,
                fix.heading_deg,
                fix.altitude_m,
                fix.battery_level,
                fix.is_moving,
                gate.quality_score,
                gate.source.value,
            )
        except DB_ERRORS as e:
            await log_error(f"Ошибка записи позиции пользователя {user_id}: {e}")
            raise PersistenceError(f"Не удалось записать позицию пользователя {user_id}") from e

        current = CurrentLocation.model_validate(dict(row))
        await self._refresh_cache(current)
        return current

    async def touch(self, user_id: int, fix: LocationFix) -> Optional[CurrentLocation]:
        """
        Heartbeat: обновляет только updated_at, заряд и флаг движения.
        Координаты не меняются. Без существующей записи ничего не делает.

        Raises:
            PersistenceError: запись не удалась
        """
        try:
            row = await self._db.fetchrow(
                f"""
                UPDATE tracking_current
                SET updated_at = NOW(),
                    battery_level = COALESCE($2, battery_level),
                    is_moving = $3
                WHERE user_id = $1
                RETURNING {_CURRENT_COLUMNS}
                """,
                user_id,
                fix.battery_level,
                fix.is_moving,
            )
        except DB_ERRORS as e:
            await log_error(f"Ошибка heartbeat пользователя {user_id}: {e}")
            raise PersistenceError(f"Не удалось обновить heartbeat пользователя {user_id}") from e

        if row is None:
            return None

        current = CurrentLocation.model_validate(dict(row))
        await self._refresh_cache(current)
        return current

    async def _refresh_cache(self, current: CurrentLocation) -> None:
        await self._cache.set_current(current.user_id, current.model_dump(mode="json"))
        await self._cache.invalidate_family_snapshot(current.family_id)

    async def get_family_snapshot(self, family_id: int) -> List[CurrentLocation]:
        """
        Текущие позиции всех участников семьи (для карты).

        Raises:
            PersistenceError: БД недоступна при промахе кэша
        """
        cached = await self._cache.get_family_snapshot(family_id)
        if cached is not None:
            try:
                return [CurrentLocation.model_validate(item) for item in cached]
            except ValueError:
                await log_warning(f"Повреждённый снимок семьи {family_id} в кэше")

        try:
            rows = await self._db.fetch(
                f"""
                SELECT {_CURRENT_COLUMNS}
                FROM tracking_current
                WHERE family_id = $1
                ORDER BY user_id
                """,
                family_id,
            )
        except DB_ERRORS as e:
            await log_error(f"Ошибка чтения позиций семьи {family_id}: {e}")
            raise PersistenceError(f"Не удалось прочитать позиции семьи {family_id}") from e

        snapshot = [CurrentLocation.model_validate(dict(row)) for row in rows]
        await self._cache.set_family_snapshot(
            family_id, [item.model_dump(mode="json") for item in snapshot],
        )
        return snapshot

    async def list_sharing_members(self, family_id: int) -> List[CurrentLocation]:
        """Текущие позиции участников семьи с включённым трекингом (мимо кэша)."""
        try:
            rows = await self._db.fetch(
                f"""
                SELECT {_CURRENT_COLUMNS}
                FROM tracking_current
                WHERE family_id = $1 AND sharing_enabled
                ORDER BY user_id
                """,
                family_id,
            )
        except DB_ERRORS as e:
            await log_error(f"Ошибка чтения участников семьи {family_id}: {e}")
            return []

        return [CurrentLocation.model_validate(dict(row)) for row in rows]

    # =========================================================================
    # ИСТОРИЯ
    # =========================================================================

    async def append_history(self, user_id: int, family_id: int, fix: LocationFix) -> int:
        """
        Добавляет точку в историю.

        Returns:
            ID созданной записи

        Raises:
            PersistenceError: запись не удалась
        """
        try:
            return await self._db.fetchval(
                """
                INSERT INTO tracking_locations (
                    family_id, user_id, lat, lng, accuracy_m, speed_mps, heading_deg,
                    altitude_m, battery_level, is_moving, recorded_at
                )
                VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11)
                RETURNING id
                """,
                family_id,
                user_id,
                fix.lat,
                fix.lng,
                fix.accuracy_m,
                fix.speed_mps,
                fix.heading_deg,
                fix.altitude_m,
                fix.battery_level,
                fix.is_moving,
                fix.recorded_at,
            )
        except DB_ERRORS as e:
            await log_error(f"Ошибка записи истории пользователя {user_id}: {e}")
            raise PersistenceError(f"Не удалось записать историю пользователя {user_id}") from e

    async def get_history(
        self,
        user_id: int,
        family_id: int,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        limit: int = 500,
        offset: int = 0,
    ) -> List[HistoryPoint]:
        """
        История пользователя за период, новые точки первыми.

        Args:
            limit: Не больше 1000
        """
        limit = max(1, min(limit, MAX_HISTORY_LIMIT))
        offset = max(0, offset)

        try:
            rows = await self._db.fetch(
                f"""
                SELECT {_HISTORY_COLUMNS}
                FROM tracking_locations
                WHERE user_id = $1
                  AND family_id = $2
                  AND ($3::timestamptz IS NULL OR recorded_at >= $3)
                  AND ($4::timestamptz IS NULL OR recorded_at <= $4)
                ORDER BY recorded_at DESC
                LIMIT $5 OFFSET $6
                """,
                user_id,
                family_id,
                start,
                end,
                limit,
                offset,
            )
        except DB_ERRORS as e:
            await log_error(f"Ошибка чтения истории пользователя {user_id}: {e}")
            return []

        return [HistoryPoint.model_validate(dict(row)) for row in rows]

    async def get_family_history(
        self,
        family_id: int,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        user_ids: Optional[List[int]] = None,
        limit: int = 1000,
    ) -> List[HistoryPoint]:
        """
        История всей семьи. По умолчанию за последний час, не больше 2000 точек.
        """
        start = start or datetime.now(timezone.utc) - DEFAULT_FAMILY_HISTORY_WINDOW
        limit = max(1, min(limit, MAX_FAMILY_HISTORY_LIMIT))

        try:
            rows = await self._db.fetch(
                f"""
                SELECT {_HISTORY_COLUMNS}
                FROM tracking_locations
                WHERE family_id = $1
                  AND recorded_at >= $2
                  AND ($3::timestamptz IS NULL OR recorded_at <= $3)
                  AND ($4::bigint[] IS NULL OR user_id = ANY($4))
                ORDER BY recorded_at ASC
                LIMIT $5
                """,
                family_id,
                start,
                end,
                user_ids or None,
                limit,
            )
        except DB_ERRORS as e:
            await log_error(f"Ошибка чтения истории семьи {family_id}: {e}")
            return []

        return [HistoryPoint.model_validate(dict(row)) for row in rows]

    async def prune_history(
        self,
        family_id: int,
        retention_days: int,
        batch_size: int = 5000,
        delay: float = 0.1,
    ) -> int:
        """
        Удаляет историю старше срока хранения семьи.

        Returns:
            Количество удалённых точек
        """
        cutoff = datetime.now(timezone.utc) - timedelta(days=retention_days)
        return await self._db.delete_in_batches(
            "tracking_locations",
            "family_id = $1 AND created_at < $2",
            family_id,
            cutoff,
            batch_size=batch_size,
            delay=delay,
        )
