# src/core/geofences/__init__.py
"""
Геозоны: модели, репозиторий, движок переходов и фоновая очередь.
"""

from src.core.geofences.models import Geofence, GeofenceCreate, GeofenceTransition, GeofenceUpdate
from src.core.geofences.repository import GeofenceRepository
from src.core.geofences.engine import GeofenceEngine
from src.core.geofences.queue import GeofenceQueueRepository, QueueItem

__all__ = [
    "Geofence",
    "GeofenceCreate",
    "GeofenceTransition",
    "GeofenceUpdate",
    "GeofenceRepository",
    "GeofenceEngine",
    "GeofenceQueueRepository",
    "QueueItem",
]
