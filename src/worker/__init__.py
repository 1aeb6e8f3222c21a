# src/worker/__init__.py
"""
Фоновые воркеры трекинга: очередь геозон, обслуживание, пересчёт.
"""

from src.worker.base import BaseWorker, run_with_lease
from src.worker.geofence_queue import GeofenceQueueProcessor, GeofenceQueueWorker
from src.worker.maintenance import MaintenanceWorker, RetentionPruner
from src.worker.recompute import recompute_geofence_states

__all__ = [
    "BaseWorker",
    "run_with_lease",
    "GeofenceQueueProcessor",
    "GeofenceQueueWorker",
    "MaintenanceWorker",
    "RetentionPruner",
    "recompute_geofence_states",
]
