# src/common/exceptions.py
"""
Исключения домена трекинга.
"""

from __future__ import annotations


class TrackingError(Exception):
    """Базовая ошибка подсистемы трекинга."""
    pass


class ValidationError(TrackingError):
    """Некорректные входные данные (координаты, параметры сессии)."""

    def __init__(self, message: str, field: str | None = None) -> None:
        super().__init__(message)
        self.field = field


class PersistenceError(TrackingError):
    """Хранилище недоступно или запись не удалась. Запрос можно повторить."""
    pass


class RateLimitExceeded(TrackingError):
    """Превышен лимит действий пользователя в окне."""

    def __init__(self, action: str, user_id: int) -> None:
        super().__init__(f"Превышен лимит '{action}' для пользователя {user_id}")
        self.action = action
        self.user_id = user_id


class NotFoundError(TrackingError):
    """Запрошенная сущность не найдена."""
    pass


class SessionInactive(TrackingError):
    """Семья в режиме live-сессий, но активной сессии нет: точка не принимается."""

    def __init__(self, family_id: int) -> None:
        super().__init__(f"Нет активной сессии трекинга в семье {family_id}")
        self.family_id = family_id


class GeofenceEvaluationError(TrackingError):
    """
    Часть геозон не удалось оценить.

    Переходы по остальным геозонам уже сохранены и лежат в transitions,
    их нужно довести до журнала и уведомлений.
    """

    def __init__(self, user_id: int, failed_ids: list[int], transitions: list) -> None:
        super().__init__(f"Не удалось оценить геозоны {failed_ids} для пользователя {user_id}")
        self.user_id = user_id
        self.failed_ids = failed_ids
        self.transitions = transitions
