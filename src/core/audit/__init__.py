# src/core/audit/__init__.py
"""
Журнал событий трекинга.
"""

from src.core.audit.repository import AuditRepository, TrackingEvent

__all__ = [
    "AuditRepository",
    "TrackingEvent",
]
