# src/core/geo/service.py
"""
Сервис маршрутов через Mapbox Directions API.
Результаты кэшируются по профилю и координатам концов маршрута.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Optional

import httpx

from src.common.constants import DirectionsProfile, TypeMsg
from src.common.logger import log_error, log_info
from src.config.loader import DirectionsSettings
from src.core.tracking.cache import TrackingCache


def normalize_profile(profile: Optional[str]) -> DirectionsProfile:
    """Профиль маршрута. Неизвестный профиль превращается в driving."""
    try:
        return DirectionsProfile(profile or DirectionsProfile.DRIVING.value)
    except ValueError:
        return DirectionsProfile.DRIVING


def format_distance(meters: float) -> str:
    """
    Example:
        >>> format_distance(850)
        '850 m'
        >>> format_distance(2345)
        '2.3 km'
    """
    if meters < 1000:
        return f"{round(meters)} m"
    km = meters / 1000
    if km < 10:
        return f"{km:.1f} km"
    return f"{km:.0f} km"


def format_duration(seconds: float) -> str:
    """
    Example:
        >>> format_duration(45)
        'Less than 1 min'
        >>> format_duration(3720)
        '1 hr 2 min'
    """
    if seconds < 60:
        return "Less than 1 min"
    minutes = round(seconds / 60)
    if minutes < 60:
        return f"{minutes} min"
    hours, rest = divmod(minutes, 60)
    if rest == 0:
        return f"{hours} hr"
    return f"{hours} hr {rest} min"


class DirectionsService:
    """
    Маршрут между двумя точками через Mapbox.

    Реализует:
    - Профили driving / walking / cycling
    - Кэш результатов на 6 часов (dir:{profile}:{sha1})
    - Отсутствие ключа или ошибка API дают None
    """

    def __init__(
        self,
        cache: TrackingCache,
        config: Optional[DirectionsSettings] = None,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        """
        Args:
            cache: Кэш трекинга
            config: Настройки Mapbox (берутся из конфига если None)
            client: HTTP клиент (для тестов)
        """
        if config is None:
            from src.config import settings
            config = settings.directions

        self._cache = cache
        self._api_key = config.MAPBOX_API_KEY
        self._api_url = config.MAPBOX_API_URL.rstrip("/")
        self._client = client or httpx.AsyncClient(timeout=config.REQUEST_TIMEOUT_S)

    async def close(self) -> None:
        """Закрывает HTTP клиент."""
        await self._client.aclose()

    async def get_route(
        self,
        from_lat: float,
        from_lng: float,
        to_lat: float,
        to_lng: float,
        profile: Optional[str] = None,
    ) -> Optional[dict[str, Any]]:
        """
        Рассчитывает маршрут.

        Returns:
            {profile, from, to, distance_m, duration_s, distance_text,
            duration_text, geometry, fetched_at} или None
        """
        route_profile = normalize_profile(profile)
        coords = f"{from_lng:.6f},{from_lat:.6f};{to_lng:.6f},{to_lat:.6f}"
        cache_key = self._cache.directions_key(route_profile.value, coords)

        cached = await self._cache.get_json(cache_key)
        if cached is not None:
            return cached

        if not self._api_key:
            await log_error("Mapbox API key не настроен")
            return None

        try:
            response = await self._client.get(
                f"{self._api_url}/{route_profile.value}/{coords}",
                params={
                    "access_token": self._api_key,
                    "geometries": "geojson",
                    "overview": "full",
                    "steps": "false",
                },
            )
        except httpx.HTTPError as e:
            await log_error(f"Ошибка запроса маршрута: {e}")
            return None

        if response.status_code != 200:
            await log_info(
                f"Mapbox вернул {response.status_code} для маршрута {coords}",
                type_msg=TypeMsg.WARNING,
            )
            return None

        try:
            data = response.json()
        except ValueError as e:
            await log_error(f"Некорректный ответ Mapbox: {e}")
            return None

        routes = data.get("routes") or []
        if not routes:
            await log_info(f"Маршрут не найден: {coords}", type_msg=TypeMsg.WARNING)
            return None

        route = routes[0]
        distance_m = float(route.get("distance", 0))
        duration_s = float(route.get("duration", 0))

        result = {
            "profile": route_profile.value,
            "from": {"lat": from_lat, "lng": from_lng},
            "to": {"lat": to_lat, "lng": to_lng},
            "distance_m": round(distance_m),
            "duration_s": round(duration_s),
            "distance_text": format_distance(distance_m),
            "duration_text": format_duration(duration_s),
            "geometry": route.get("geometry"),
            "fetched_at": datetime.now(timezone.utc).isoformat(),
        }

        await self._cache.set_json(cache_key, result, self._cache.ttl.DIRECTIONS_TTL)
        return result
