# src/core/tracking/dedupe.py
"""
Фильтр дубликатов: точка ближе порога к последней записанной считается повтором.
Носит рекомендательный характер и отсекает только тяжёлую последующую обработку.
"""

from __future__ import annotations

import time
from typing import Optional

from src.common.geo import haversine_m
from src.common.logger import log_debug
from src.core.tracking.cache import TrackingCache


class DedupeFilter:
    """Дедупликация по расстоянию в коротком окне (TTL ключа dd:)."""

    def __init__(self, cache: TrackingCache, min_distance_m: Optional[float] = None) -> None:
        if min_distance_m is None:
            from src.config import settings
            min_distance_m = settings.dedupe.MIN_DISTANCE_M
        self._cache = cache
        self.min_distance_m = min_distance_m

    async def is_duplicate(
        self,
        user_id: int,
        lat: float,
        lng: float,
        min_distance_m: Optional[float] = None,
    ) -> bool:
        """
        Проверяет точку и при необходимости запоминает её.

        Расстояние меряется от последней записанной точки. Дубликат
        не сдвигает записанную точку.
        """
        threshold = self.min_distance_m if min_distance_m is None else min_distance_m
        last = await self._cache.get_dedupe(user_id)

        if last is not None:
            distance_m = haversine_m(float(last["lat"]), float(last["lng"]), lat, lng)
            if distance_m < threshold:
                await log_debug(f"Дубликат точки пользователя {user_id}: {distance_m:.1f} м")
                return True

        await self._cache.set_dedupe(user_id, {"lat": lat, "lng": lng, "ts": int(time.time())})
        return False

    async def forget(self, user_id: int) -> None:
        """Сбрасывает записанную точку, если её последующая обработка не удалась."""
        await self._cache.delete(self._cache.dedupe_key(user_id))
