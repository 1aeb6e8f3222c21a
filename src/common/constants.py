# src/common/constants.py
"""
Общие константы и перечисления.
"""

from enum import Enum


class TypeMsg(str, Enum):
    """Типы сообщений для логирования."""
    DEBUG = "debug"
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


class FixDecision(str, Enum):
    """Решение фильтра качества по входящей точке."""
    PROMOTE = "promote"  # новая авторитетная позиция
    TOUCH = "touch"      # только heartbeat, позиция не меняется
    REJECT = "reject"    # точка отброшена целиком


class FixSource(str, Enum):
    """Источник координат, определяемый по точности."""
    GPS = "gps"
    FUSED = "fused"
    NETWORK = "network"
    UNKNOWN = "unknown"


class SessionStatus(str, Enum):
    """Статусы сессии live-трекинга."""
    ACTIVE = "active"
    STOPPED = "stopped"
    EXPIRED = "expired"


class SessionMode(str, Enum):
    """Режимы сессии."""
    LIVE = "live"
    MOTION = "motion"


class TrackingMode(int, Enum):
    """Режим трекинга семьи."""
    SESSION_GATED = 1
    MOTION_BASED = 2


class MotionState(str, Enum):
    """Состояние движения по двум последовательным точкам."""
    MOVING = "moving"
    IDLE = "idle"
    UNKNOWN = "unknown"


class GeofenceType(str, Enum):
    """Типы геозон."""
    CIRCLE = "circle"
    POLYGON = "polygon"


class GeofenceAction(str, Enum):
    """Переход через границу геозоны."""
    ENTER = "enter"
    EXIT = "exit"


class AlertRuleType(str, Enum):
    """Типы правил оповещений."""
    SPEED = "speed"
    BATTERY = "battery"
    INACTIVITY = "inactivity"


class QueueStatus(str, Enum):
    """Статусы элемента очереди геозон."""
    PENDING = "pending"
    PROCESSED = "processed"
    FAILED = "failed"


class TrackingEventType(str, Enum):
    """Типы событий аудита трекинга."""
    LOCATION_UPDATE = "location_update"
    ENTER_GEOFENCE = "enter_geofence"
    EXIT_GEOFENCE = "exit_geofence"
    SESSION_ON = "session_on"
    SESSION_OFF = "session_off"
    SETTINGS_CHANGE = "settings_change"
    ALERT_TRIGGERED = "alert_triggered"
    BATTERY_LOW = "battery_low"


class DirectionsProfile(str, Enum):
    """Профили маршрутизации."""
    DRIVING = "driving"
    WALKING = "walking"
    CYCLING = "cycling"


# Коэффициент перевода м/с -> км/ч
MPS_TO_KMH = 3.6
