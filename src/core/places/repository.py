# src/core/places/repository.py
"""
Сохранённые места семьи (дом, школа, работа).
"""

from __future__ import annotations

from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, Field

from src.common.logger import log_warning
from src.core.tracking.cache import TrackingCache
from src.infra.database import DatabaseManager, parse_rowcount


class Place(BaseModel):
    """Именованная точка семьи."""

    id: int = Field(..., description="ID места")
    family_id: int = Field(..., description="ID семьи")
    label: str = Field(..., description="Название")
    lat: float = Field(..., description="Широта")
    lng: float = Field(..., description="Долгота")
    radius_m: float = Field(100.0, description="Радиус в метрах")
    created_by: Optional[int] = Field(None, description="Кто создал")
    created_at: datetime = Field(..., description="Время создания")

    class Config:
        from_attributes = True


_PLACE_COLUMNS = "id, family_id, label, lat, lng, radius_m, created_by, created_at"


class PlaceRepository:
    """Места семьи: список через кэш places:{family}, изменения сбрасывают кэш."""

    def __init__(self, db: DatabaseManager, cache: TrackingCache) -> None:
        self._db = db
        self._cache = cache

    async def list(self, family_id: int) -> List[Place]:
        key = self._cache.places_key(family_id)
        cached = await self._cache.get_json(key)
        if cached is not None:
            try:
                return [Place.model_validate(item) for item in cached]
            except ValueError:
                await log_warning(f"Повреждённый список мест семьи {family_id} в кэше")

        rows = await self._db.fetch(
            f"SELECT {_PLACE_COLUMNS} FROM tracking_places WHERE family_id = $1 ORDER BY label",
            family_id,
        )
        places = [Place.model_validate(dict(row)) for row in rows]
        await self._cache.set_json(
            key, [p.model_dump(mode="json") for p in places], self._cache.ttl.PLACES_TTL,
        )
        return places

    async def get(self, family_id: int, place_id: int) -> Optional[Place]:
        row = await self._db.fetchrow(
            f"SELECT {_PLACE_COLUMNS} FROM tracking_places WHERE id = $1 AND family_id = $2",
            place_id,
            family_id,
        )
        return Place.model_validate(dict(row)) if row else None

    async def create(
        self,
        family_id: int,
        label: str,
        lat: float,
        lng: float,
        radius_m: float = 100.0,
        created_by: Optional[int] = None,
    ) -> Place:
        row = await self._db.fetchrow(
            f"""
            INSERT INTO tracking_places (family_id, label, lat, lng, radius_m, created_by)
            VALUES ($1, $2, $3, $4, $5, $6)
            RETURNING {_PLACE_COLUMNS}
            """,
            family_id,
            label,
            lat,
            lng,
            radius_m,
            created_by,
        )
        await self._cache.delete(self._cache.places_key(family_id))
        return Place.model_validate(dict(row))

    async def delete(self, family_id: int, place_id: int) -> bool:
        status = await self._db.execute(
            "DELETE FROM tracking_places WHERE id = $1 AND family_id = $2",
            place_id,
            family_id,
        )
        await self._cache.delete(self._cache.places_key(family_id))
        return parse_rowcount(status) > 0
