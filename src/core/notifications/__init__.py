# src/core/notifications/__init__.py
"""
Уведомления трекинга.
"""

from src.core.notifications.service import NotificationData, TrackingNotificationService

__all__ = ["NotificationData", "TrackingNotificationService"]
