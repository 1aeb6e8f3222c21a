# src/core/places/__init__.py
"""
Сохранённые места семьи.
"""

from src.core.places.repository import Place, PlaceRepository

__all__ = ["Place", "PlaceRepository"]
