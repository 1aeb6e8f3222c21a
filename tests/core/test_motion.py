# tests/core/test_motion.py
"""
Тесты для классификации движения.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from src.common.constants import MotionState, TrackingMode
from src.core.settings import FamilyTrackingSettings
from src.core.tracking.models import LocationFix
from src.core.tracking.motion import PreviousFix, classify_motion

HOME = (50.4501, 30.5234)
# ~1 м широты в градусах
DEG_1M = 1 / 111_195
T0 = datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)


def fix_after(seconds: float, north_m: float, **kwargs) -> LocationFix:
    return LocationFix(
        lat=HOME[0] + north_m * DEG_1M,
        lng=HOME[1],
        recorded_at=T0 + timedelta(seconds=seconds),
        accuracy_m=kwargs.pop("accuracy_m", 10.0),
        **kwargs,
    )


PREVIOUS = PreviousFix(HOME[0], HOME[1], T0)
MOTION = FamilyTrackingSettings(family_id=10, mode=TrackingMode.MOTION_BASED)
LIVE = FamilyTrackingSettings(family_id=10, mode=TrackingMode.SESSION_GATED)


class TestClassifyMotion:
    """Тесты для classify_motion."""

    def test_first_point(self) -> None:
        verdict = classify_motion(fix_after(0, 0), None, MOTION)
        assert (verdict.state, verdict.store_history, verdict.reason) == (MotionState.UNKNOWN, True, "first_point")

    def test_low_accuracy_is_unknown(self) -> None:
        verdict = classify_motion(fix_after(60, 0, accuracy_m=150.0), PREVIOUS, MOTION)
        assert verdict.state == MotionState.UNKNOWN
        assert verdict.store_history is True

    def test_missing_accuracy_assumed_50m(self) -> None:
        """Без точности считаем 50 м: при пороге 40 м состояние неизвестно."""
        family = MOTION.model_copy(update={"min_accuracy_m": 40.0})
        verdict = classify_motion(fix_after(60, 0, accuracy_m=None), PREVIOUS, family)
        assert verdict.state == MotionState.UNKNOWN

    def test_far_move_is_moving(self) -> None:
        verdict = classify_motion(fix_after(600, 60), PREVIOUS, MOTION)
        assert verdict.state == MotionState.MOVING
        assert verdict.distance_m == pytest.approx(60, abs=0.5)

    def test_calculated_speed_is_moving(self) -> None:
        """30 м за 10 с = 3 м/с, выше порога 1 м/с."""
        verdict = classify_motion(fix_after(10, 30), PREVIOUS, MOTION)
        assert verdict.state == MotionState.MOVING
        assert verdict.calculated_speed_mps == pytest.approx(3.0, abs=0.05)

    def test_reported_speed_without_displacement_is_noise(self) -> None:
        verdict = classify_motion(fix_after(60, 2, speed_mps=5.0), PREVIOUS, MOTION)
        assert verdict.state == MotionState.IDLE

    def test_reported_speed_on_short_interval(self) -> None:
        """Интервал короче 5 с: скорость по смещению не считается."""
        assert classify_motion(fix_after(2, 5, speed_mps=5.0), PREVIOUS, MOTION).state == MotionState.IDLE
        assert classify_motion(fix_after(2, 20, speed_mps=5.0), PREVIOUS, MOTION).state == MotionState.MOVING

    def test_idle_in_motion_mode_skips_history(self) -> None:
        verdict = classify_motion(fix_after(120, 3), PREVIOUS, MOTION)
        assert verdict.state == MotionState.IDLE
        assert verdict.store_history is False
        assert verdict.reason == "idle_no_history"

    def test_idle_in_live_mode_is_stored(self) -> None:
        verdict = classify_motion(fix_after(120, 3), PREVIOUS, LIVE)
        assert verdict.state == MotionState.IDLE
        assert verdict.store_history is True
