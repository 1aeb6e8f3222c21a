# src/common/geo.py
"""
Геометрические утилиты: расстояние по Haversine и попадание точки в полигон.
"""

from __future__ import annotations

import math
from typing import Sequence


EARTH_RADIUS_M = 6_371_000.0


def haversine_m(lat1: float, lng1: float, lat2: float, lng2: float) -> float:
    """
    Вычисляет расстояние между двумя точками (в метрах) по формуле Haversine.
    """
    dlat = math.radians(lat2 - lat1)
    dlng = math.radians(lng2 - lng1)

    a = (math.sin(dlat / 2) ** 2 +
         math.cos(math.radians(lat1)) * math.cos(math.radians(lat2)) *
         math.sin(dlng / 2) ** 2)

    c = 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))

    return EARTH_RADIUS_M * c


def point_in_polygon(lat: float, lng: float, vertices: Sequence[tuple[float, float]]) -> bool:
    """
    Проверяет попадание точки в полигон (ray casting).

    Args:
        lat: Широта точки
        lng: Долгота точки
        vertices: Вершины полигона [(lat, lng), ...]

    Returns:
        True если точка внутри. Полигон с менее чем 3 вершинами пуст.
    """
    n = len(vertices)
    if n < 3:
        return False

    inside = False
    j = n - 1
    for i in range(n):
        lat_i, lng_i = vertices[i]
        lat_j, lng_j = vertices[j]
        if (lng_i > lng) != (lng_j > lng):
            cross_lat = (lat_j - lat_i) * (lng - lng_i) / (lng_j - lng_i) + lat_i
            if lat < cross_lat:
                inside = not inside
        j = i

    return inside


def is_valid_coordinate(lat: float | None, lng: float | None) -> bool:
    """Проверяет, что координаты заданы и лежат в допустимых пределах."""
    if lat is None or lng is None:
        return False
    if isinstance(lat, float) and math.isnan(lat):
        return False
    if isinstance(lng, float) and math.isnan(lng):
        return False
    return -90.0 <= lat <= 90.0 and -180.0 <= lng <= 180.0
