# src/core/geofences/repository.py
"""
Репозиторий геозон и состояний (геозона, пользователь).
"""

from __future__ import annotations

import json
from typing import Dict, List, Optional

from pydantic import ValidationError as PydanticValidationError

from src.common.exceptions import NotFoundError, ValidationError
from src.common.logger import log_info, log_warning
from src.core.geofences.models import Geofence, GeofenceCreate, GeofenceUpdate
from src.core.tracking.cache import TrackingCache
from src.infra.database import DatabaseManager

_GEOFENCE_COLUMNS = """
    id, family_id, name, type, center_lat, center_lng, radius_m, polygon,
    notify_enter, notify_exit, active
"""


class GeofenceRepository:
    """
    Геозоны читаются через кэш geo:{family}, состояния через
    geo_state:{family}:{user}. Источник истины всегда БД.
    """

    def __init__(self, db: DatabaseManager, cache: TrackingCache) -> None:
        self._db = db
        self._cache = cache

    async def list_active(self, family_id: int) -> List[Geofence]:
        """Активные геозоны семьи."""
        key = self._cache.geofences_key(family_id)
        cached = await self._cache.get_json(key)
        if cached is not None:
            try:
                return [Geofence.model_validate(item) for item in cached]
            except ValueError:
                await log_warning(f"Повреждённый список геозон семьи {family_id} в кэше")

        rows = await self._db.fetch(
            f"""
            SELECT {_GEOFENCE_COLUMNS}
            FROM tracking_geofences
            WHERE family_id = $1 AND active
            ORDER BY id
            """,
            family_id,
        )
        geofences = [Geofence.model_validate(dict(row)) for row in rows]
        await self._cache.set_json(
            key, [g.model_dump(mode="json") for g in geofences], self._cache.ttl.GEOFENCES_TTL,
        )
        return geofences

    async def get_states(self, family_id: int, user_id: int) -> Dict[int, bool]:
        """
        Состояния пользователя по геозонам семьи.

        Returns:
            {geofence_id: is_inside}. Отсутствующая пара означает "снаружи".
        """
        key = self._cache.geofence_state_key(family_id, user_id)
        cached = await self._cache.get_json(key)
        if isinstance(cached, dict):
            return {int(gid): bool(inside) for gid, inside in cached.items()}

        rows = await self._db.fetch(
            """
            SELECT geofence_id, is_inside
            FROM tracking_geofence_state
            WHERE family_id = $1 AND user_id = $2
            """,
            family_id,
            user_id,
        )
        states = {row["geofence_id"]: row["is_inside"] for row in rows}
        await self._cache.set_json(
            key, {str(gid): inside for gid, inside in states.items()},
            self._cache.ttl.GEOFENCE_STATE_TTL,
        )
        return states

    async def set_state(
        self,
        geofence_id: int,
        user_id: int,
        family_id: int,
        is_inside: bool,
    ) -> bool:
        """
        Сохраняет состояние пары и ставит отметку entered_at или exited_at.
        Кэш состояний пользователя сбрасывается.

        Строка обновляется, только если is_inside действительно меняется.

        Returns:
            True, если именно эта запись сменила состояние
        """
        changed = await self._db.fetchval(
            """
            INSERT INTO tracking_geofence_state (
                geofence_id, user_id, family_id, is_inside, entered_at, exited_at, updated_at
            )
            VALUES (
                $1, $2, $3, $4,
                CASE WHEN $4 THEN NOW() END,
                CASE WHEN NOT $4 THEN NOW() END,
                NOW()
            )
            ON CONFLICT (geofence_id, user_id) DO UPDATE SET
                is_inside = EXCLUDED.is_inside,
                entered_at = CASE WHEN EXCLUDED.is_inside THEN NOW()
                                  ELSE tracking_geofence_state.entered_at END,
                exited_at = CASE WHEN NOT EXCLUDED.is_inside THEN NOW()
                                 ELSE tracking_geofence_state.exited_at END,
                updated_at = NOW()
            WHERE tracking_geofence_state.is_inside IS DISTINCT FROM EXCLUDED.is_inside
            RETURNING 1
            """,
            geofence_id,
            user_id,
            family_id,
            is_inside,
        )
        await self._cache.invalidate_geofence_state(family_id, [user_id])
        return changed is not None

    async def list_families_with_geofences(self) -> List[int]:
        """Семьи, у которых есть активные геозоны."""
        rows = await self._db.fetch(
            "SELECT DISTINCT family_id FROM tracking_geofences WHERE active ORDER BY family_id",
        )
        return [row["family_id"] for row in rows]

    # =========================================================================
    # УПРАВЛЕНИЕ ГЕОЗОНАМИ
    # =========================================================================

    async def list_all(self, family_id: int) -> List[Geofence]:
        """Все геозоны семьи, включая выключенные. Без кэша."""
        rows = await self._db.fetch(
            f"SELECT {_GEOFENCE_COLUMNS} FROM tracking_geofences WHERE family_id = $1 ORDER BY id",
            family_id,
        )
        return [Geofence.model_validate(dict(row)) for row in rows]

    async def get(self, family_id: int, geofence_id: int) -> Optional[Geofence]:
        row = await self._db.fetchrow(
            f"SELECT {_GEOFENCE_COLUMNS} FROM tracking_geofences WHERE id = $1 AND family_id = $2",
            geofence_id,
            family_id,
        )
        return Geofence.model_validate(dict(row)) if row else None

    async def create(self, family_id: int, data: GeofenceCreate) -> Geofence:
        row = await self._db.fetchrow(
            f"""
            INSERT INTO tracking_geofences (
                family_id, name, type, center_lat, center_lng, radius_m, polygon,
                notify_enter, notify_exit, active
            )
            VALUES ($1, $2, $3, $4, $5, $6, $7::jsonb, $8, $9, $10)
            RETURNING {_GEOFENCE_COLUMNS}
            """,
            family_id,
            *self._shape_args(data),
        )
        await self._cache.invalidate_geofences(family_id)
        geofence = Geofence.model_validate(dict(row))
        await log_info(f"Создана геозона {geofence.id} '{geofence.name}' в семье {family_id}")
        return geofence

    async def update(self, family_id: int, geofence_id: int, changes: GeofenceUpdate) -> Geofence:
        """
        Меняет геозону. Кэш определений и состояний пользователей сбрасывается:
        после смены формы состояние пересчитается при следующей точке.

        Raises:
            NotFoundError: геозоны нет в семье
            ValidationError: итоговая форма некорректна
        """
        current = await self.get(family_id, geofence_id)
        if current is None:
            raise NotFoundError(f"Геозона {geofence_id} не найдена")

        try:
            data = changes.apply(current)
        except PydanticValidationError as e:
            first_error = e.errors()[0]
            field = str(first_error["loc"][0]) if first_error.get("loc") else None
            raise ValidationError(f"Некорректная геозона: {first_error['msg']}", field=field)

        row = await self._db.fetchrow(
            f"""
            UPDATE tracking_geofences
            SET name = $3, type = $4, center_lat = $5, center_lng = $6, radius_m = $7,
                polygon = $8::jsonb, notify_enter = $9, notify_exit = $10, active = $11,
                updated_at = NOW()
            WHERE id = $1 AND family_id = $2
            RETURNING {_GEOFENCE_COLUMNS}
            """,
            geofence_id,
            family_id,
            *self._shape_args(data),
        )
        if row is None:
            raise NotFoundError(f"Геозона {geofence_id} не найдена")

        await self._invalidate(family_id, await self._state_users(geofence_id))
        return Geofence.model_validate(dict(row))

    async def delete(self, family_id: int, geofence_id: int) -> bool:
        """Удаляет геозону вместе с состояниями пользователей."""
        async with self._db.transaction() as conn:
            state_rows = await conn.fetch(
                "DELETE FROM tracking_geofence_state WHERE geofence_id = $1 AND family_id = $2 RETURNING user_id",
                geofence_id,
                family_id,
            )
            deleted = await conn.fetchval(
                "DELETE FROM tracking_geofences WHERE id = $1 AND family_id = $2 RETURNING id",
                geofence_id,
                family_id,
            )

        if deleted is None:
            return False

        await self._invalidate(family_id, [row["user_id"] for row in state_rows])
        await log_info(f"Удалена геозона {geofence_id} в семье {family_id}")
        return True

    async def _state_users(self, geofence_id: int) -> List[int]:
        rows = await self._db.fetch(
            "SELECT user_id FROM tracking_geofence_state WHERE geofence_id = $1",
            geofence_id,
        )
        return [row["user_id"] for row in rows]

    async def _invalidate(self, family_id: int, user_ids: List[int]) -> None:
        await self._cache.invalidate_geofences(family_id)
        await self._cache.invalidate_geofence_state(family_id, user_ids)

    @staticmethod
    def _shape_args(data: GeofenceCreate) -> tuple:
        """Параметры формы в порядке колонок INSERT/UPDATE."""
        polygon = [{"lat": lat, "lng": lng} for lat, lng in data.polygon]
        return (
            data.name,
            data.type.value,
            data.center_lat,
            data.center_lng,
            data.radius_m,
            json.dumps(polygon) if polygon else None,
            data.notify_enter,
            data.notify_exit,
            data.active,
        )
