# src/core/settings/__init__.py
"""
Настройки трекинга семьи.
"""

from src.core.settings.models import FamilySettingsUpdate, FamilyTrackingSettings
from src.core.settings.repository import FamilySettingsRepository

__all__ = [
    "FamilySettingsUpdate",
    "FamilyTrackingSettings",
    "FamilySettingsRepository",
]
