# src/core/geo/__init__.py
"""
Маршруты через внешний сервис.
"""

from src.core.geo.service import DirectionsService, format_distance, format_duration

__all__ = ["DirectionsService", "format_distance", "format_duration"]
