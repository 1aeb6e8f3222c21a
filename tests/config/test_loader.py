# tests/config/test_loader.py
"""
Тесты для загрузчика конфигурации.
"""

from __future__ import annotations

import json
from pathlib import Path
from unittest.mock import patch

import pytest

from src.config.loader import (
    DatabaseSettings,
    DirectionsSettings,
    QualityGateSettings,
    RedisSettings,
    Settings,
    get_config_path,
    get_project_root,
    load_config_json,
)


class TestPaths:
    """Тесты для путей конфигурации."""

    def test_project_root_contains_config(self) -> None:
        assert (get_project_root() / "config").is_dir()

    def test_config_path(self, config_path: Path) -> None:
        assert get_config_path() == config_path


class TestLoadConfigJson:
    """Тесты для load_config_json."""

    def test_loads_real_config(self) -> None:
        data = load_config_json()
        assert data["PROJECT_NAME"] == "family_tracking"
        assert data["MIN_DISTANCE_M"] == 10.0

    def test_missing_file(self, tmp_path: Path) -> None:
        with patch("src.config.loader.get_config_path", return_value=tmp_path / "nope.json"):
            with pytest.raises(FileNotFoundError):
                load_config_json()


class TestSections:
    """Тесты для секций настроек."""

    def test_database_dsn(self) -> None:
        db = DatabaseSettings(DB_USER="u", DB_PASSWORD="p", DB_HOST="h", DB_PORT=1, DB_NAME="n")
        assert db.dsn == "postgresql://u:p@h:1/n"

    def test_database_password_from_env(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("DB_PASSWORD", "secret")
        assert DatabaseSettings(DB_PASSWORD="").DB_PASSWORD == "secret"

    def test_redis_url_without_password(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("REDIS_PASSWORD", "")
        redis = RedisSettings(REDIS_HOST="r", REDIS_PORT=6380, REDIS_DB=2)
        assert redis.url == "redis://r:6380/2"

    def test_redis_url_with_password(self) -> None:
        redis = RedisSettings(REDIS_PASSWORD="pw")
        assert redis.url == "redis://:pw@localhost:6379/0"

    def test_mapbox_token_alias(self, monkeypatch: pytest.MonkeyPatch) -> None:
        """MAPBOX_TOKEN принимается, если MAPBOX_API_KEY не задан."""
        monkeypatch.delenv("MAPBOX_API_KEY", raising=False)
        monkeypatch.setenv("MAPBOX_TOKEN", "tok")
        assert DirectionsSettings(MAPBOX_API_KEY="").MAPBOX_API_KEY == "tok"

    def test_quality_gate_defaults(self) -> None:
        gate = QualityGateSettings()
        assert gate.NOISY_ACCURACY_M == 200.0
        assert gate.MAX_STATIONARY_SPEED_KMH == 180.0


class TestSettingsFromConfigJson:
    """Тесты для сборки Settings."""

    def test_sections_filled_from_json(self) -> None:
        settings = Settings.from_config_json()
        assert settings.system.PROJECT_NAME == "family_tracking"
        assert settings.tracking_cache.CURRENT_TTL == 120
        assert settings.geofence_queue.MAX_RUNTIME_S == 55.0
        assert settings.alerts.COOLDOWN_SECONDS == 900
        assert settings.batch.MAX_FIXES_PER_BATCH == 100

    def test_comments_are_ignored(self, tmp_path: Path) -> None:
        config_file = tmp_path / "config.json"
        config_file.write_text(json.dumps({"_comment_x": "skip", "BATCH_SIZE": 7}))
        with patch("src.config.loader.get_config_path", return_value=config_file):
            settings = Settings.from_config_json()
        assert settings.geofence_queue.BATCH_SIZE == 7
        assert settings.dedupe.MIN_DISTANCE_M == 10.0

    def test_env_overrides_component_mode(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("COMPONENT_MODE", "worker")
        assert Settings.from_config_json().system.COMPONENT_MODE == "worker"
