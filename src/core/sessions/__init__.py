# src/core/sessions/__init__.py
"""
Сессии live-трекинга.
"""

from src.core.sessions.models import TrackingSession
from src.core.sessions.repository import SessionRepository
from src.core.sessions.gate import SessionGate

__all__ = [
    "TrackingSession",
    "SessionRepository",
    "SessionGate",
]
