# tests/core/test_tracking_models.py
"""
Тесты для моделей трекинга и разбора клиентского payload.
"""

from __future__ import annotations

from datetime import datetime, timezone

import pytest

from src.common.constants import FixSource
from src.common.exceptions import ValidationError
from src.core.tracking.models import CurrentLocation, LocationFix, parse_timestamp


class TestParseTimestamp:
    """Тесты для parse_timestamp."""

    def test_empty_means_now(self) -> None:
        before = datetime.now(timezone.utc)
        parsed = parse_timestamp(None)
        assert parsed >= before

    def test_unix_seconds(self) -> None:
        assert parse_timestamp(1_700_000_000) == datetime.fromtimestamp(1_700_000_000, tz=timezone.utc)

    def test_unix_milliseconds(self) -> None:
        """Значение больше 1e12 считается миллисекундами."""
        assert parse_timestamp(1_700_000_000_000) == datetime.fromtimestamp(1_700_000_000, tz=timezone.utc)

    def test_numeric_string(self) -> None:
        assert parse_timestamp("1700000000") == datetime.fromtimestamp(1_700_000_000, tz=timezone.utc)

    def test_iso_with_z(self) -> None:
        assert parse_timestamp("2026-05-01T12:00:00Z") == datetime(2026, 5, 1, 12, tzinfo=timezone.utc)

    def test_naive_iso_is_utc(self) -> None:
        assert parse_timestamp("2026-05-01T12:00:00").tzinfo == timezone.utc

    def test_garbage(self) -> None:
        with pytest.raises(ValidationError) as exc_info:
            parse_timestamp("yesterday")
        assert exc_info.value.field == "timestamp"


class TestLocationFixFromPayload:
    """Тесты для LocationFix.from_payload."""

    def test_canonical_names(self) -> None:
        fix = LocationFix.from_payload({
            "lat": 50.45, "lng": 30.52, "accuracy_m": 8, "speed_mps": 2.0,
            "heading_deg": 90, "altitude_m": 120, "battery_level": 77, "is_moving": True,
        })
        assert fix.lat == 50.45
        assert fix.lng == 30.52
        assert fix.accuracy_m == 8.0
        assert fix.speed_mps == 2.0
        assert fix.battery_level == 77
        assert fix.is_moving is True

    def test_alternative_names(self) -> None:
        fix = LocationFix.from_payload({
            "latitude": "50.45", "lon": "30.52", "accuracy": "12.5",
            "heading": 45, "altitude": 10, "battery": 55.4, "timestamp": 1_700_000_000_000,
        })
        assert fix.lat == 50.45
        assert fix.lng == 30.52
        assert fix.accuracy_m == 12.5
        assert fix.heading_deg == 45.0
        assert fix.battery_level == 55
        assert fix.recorded_at == datetime.fromtimestamp(1_700_000_000, tz=timezone.utc)

    def test_longitude_alias(self) -> None:
        assert LocationFix.from_payload({"lat": 1, "longitude": 2}).lng == 2.0

    def test_speed_kmh_converted(self) -> None:
        fix = LocationFix.from_payload({"lat": 1, "lng": 2, "speed_kmh": 36})
        assert fix.speed_mps == pytest.approx(10.0)
        assert fix.speed_kmh == pytest.approx(36.0)

    def test_bare_speed_small_is_mps(self) -> None:
        """Голое speed до 50 считается м/с."""
        fix = LocationFix.from_payload({"lat": 1, "lng": 2, "speed": 20})
        assert fix.speed_mps == pytest.approx(20.0)

    def test_bare_speed_large_is_kmh(self) -> None:
        """Голое speed больше 50 считается км/ч."""
        fix = LocationFix.from_payload({"lat": 1, "lng": 2, "speed": 72})
        assert fix.speed_mps == pytest.approx(20.0)

    def test_negative_battery_is_unknown(self) -> None:
        fix = LocationFix.from_payload({"lat": 1, "lng": 2, "battery": -1})
        assert fix.battery_level is None

    def test_is_moving_string(self) -> None:
        assert LocationFix.from_payload({"lat": 1, "lng": 2, "is_moving": "true"}).is_moving is True
        assert LocationFix.from_payload({"lat": 1, "lng": 2, "is_moving": "0"}).is_moving is False

    def test_missing_coordinates(self) -> None:
        with pytest.raises(ValidationError) as exc_info:
            LocationFix.from_payload({"lat": 1})
        assert exc_info.value.field == "lng"

    def test_out_of_range(self) -> None:
        with pytest.raises(ValidationError):
            LocationFix.from_payload({"lat": 91, "lng": 0})

    def test_non_numeric(self) -> None:
        with pytest.raises(ValidationError) as exc_info:
            LocationFix.from_payload({"lat": "north", "lng": 0})
        assert exc_info.value.field == "lat"

    def test_negative_accuracy_rejected(self) -> None:
        with pytest.raises(ValidationError) as exc_info:
            LocationFix.from_payload({"lat": 1, "lng": 2, "accuracy": -5})
        assert exc_info.value.field == "accuracy_m"


class TestCurrentLocation:
    """Тесты для CurrentLocation."""

    def test_from_row(self, current_row: dict) -> None:
        current = CurrentLocation.model_validate(current_row)
        assert current.source == FixSource.GPS
        assert current.quality_score == 100

    def test_json_roundtrip(self, current_row: dict) -> None:
        """Запись кэша восстанавливается в ту же модель."""
        current = CurrentLocation.model_validate(current_row)
        restored = CurrentLocation.model_validate(current.model_dump(mode="json"))
        assert restored == current
