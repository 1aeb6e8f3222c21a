# src/core/tracking/motion.py
"""
Классификация движения по двум последовательным точкам.

Решает, попадает ли точка в историю: в режиме "по движению" точки
стоящего устройства в историю не пишутся. Модуль чистый, как и фильтр
качества.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from src.common.constants import MotionState, TrackingMode
from src.common.geo import haversine_m
from src.core.settings.models import FamilyTrackingSettings
from src.core.tracking.models import LocationFix

# Смещение меньше этого считается шумом при высокой скорости устройства
MIN_MOVEMENT_M = 10.0
# Скорость по смещению считается только на интервале не короче этого
MIN_TIME_FOR_SPEED_S = 5.0
# Точность, если устройство её не прислало
ASSUMED_ACCURACY_M = 50.0


@dataclass(frozen=True)
class PreviousFix:
    """Предыдущая принятая точка пользователя."""
    lat: float
    lng: float
    at: datetime


@dataclass
class MotionVerdict:
    """Состояние движения и решение о записи в историю."""
    state: MotionState
    store_history: bool
    reason: str
    distance_m: Optional[float] = None
    calculated_speed_mps: Optional[float] = None


def classify_motion(
    fix: LocationFix,
    previous: Optional[PreviousFix],
    family_settings: FamilyTrackingSettings,
) -> MotionVerdict:
    """
    Классифицирует точку относительно предыдущей.

    В режиме live по сессии в историю пишется всё. В режиме по движению
    стоящее устройство (idle) в историю не пишется.
    """
    if previous is None:
        return MotionVerdict(MotionState.UNKNOWN, True, "first_point")

    distance_m = haversine_m(previous.lat, previous.lng, fix.lat, fix.lng)
    elapsed_s = (fix.recorded_at - previous.at).total_seconds()
    calculated: Optional[float] = None
    if elapsed_s >= MIN_TIME_FOR_SPEED_S:
        calculated = distance_m / elapsed_s

    accuracy_m = fix.accuracy_m if fix.accuracy_m is not None else ASSUMED_ACCURACY_M
    if accuracy_m > family_settings.min_accuracy_m:
        return MotionVerdict(MotionState.UNKNOWN, True, "low_accuracy", distance_m, calculated)

    state = _state(fix, distance_m, elapsed_s, calculated, family_settings)

    if state == MotionState.IDLE and family_settings.mode == TrackingMode.MOTION_BASED:
        return MotionVerdict(state, False, "idle_no_history", distance_m, calculated)
    return MotionVerdict(state, True, state.value, distance_m, calculated)


def _state(
    fix: LocationFix,
    distance_m: float,
    elapsed_s: float,
    calculated: Optional[float],
    family_settings: FamilyTrackingSettings,
) -> MotionState:
    threshold = family_settings.speed_threshold_mps

    if distance_m >= family_settings.distance_threshold_m:
        return MotionState.MOVING
    if calculated is not None and calculated >= threshold:
        return MotionState.MOVING

    if fix.speed_mps is not None and fix.speed_mps >= threshold:
        if calculated is not None:
            # устройство говорит "еду", а по смещению стоим
            return MotionState.IDLE
        if distance_m < MIN_MOVEMENT_M and elapsed_s > 0:
            return MotionState.IDLE
        return MotionState.MOVING

    return MotionState.IDLE
