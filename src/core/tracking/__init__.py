# src/core/tracking/__init__.py
"""
Домен трекинга: модели точек, кэш, фильтры и хранилище позиций.
Сервис приёма импортируется напрямую из src.core.tracking.service.
"""

from src.core.tracking.cache import TrackingCache
from src.core.tracking.models import (
    CurrentLocation,
    GateResult,
    HistoryPoint,
    IngestResult,
    LocationFix,
)
from src.core.tracking.quality_gate import QualityGate, compute_score, determine_source
from src.core.tracking.dedupe import DedupeFilter
from src.core.tracking.rate_limiter import RateLimiter
from src.core.tracking.repository import LocationRepository

__all__ = [
    "TrackingCache",
    "CurrentLocation",
    "GateResult",
    "HistoryPoint",
    "IngestResult",
    "LocationFix",
    "QualityGate",
    "compute_score",
    "determine_source",
    "DedupeFilter",
    "RateLimiter",
    "LocationRepository",
]
