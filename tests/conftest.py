# tests/conftest.py
"""
Общие фикстуры и настройки для тестов.
"""

from __future__ import annotations

import json
import os
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any
from unittest.mock import AsyncMock

import pytest

# Устанавливаем переменные окружения перед импортом модулей
os.environ.setdefault("DB_PASSWORD", "test_password")
os.environ.setdefault("REDIS_PASSWORD", "")
os.environ.setdefault("MAPBOX_API_KEY", "test_mapbox_key")

from src.config.loader import TrackingCacheTTLSettings  # noqa: E402
from src.core.tracking.cache import TrackingCache  # noqa: E402


# =============================================================================
# ФИКСТУРЫ КОНФИГУРАЦИИ
# =============================================================================

@pytest.fixture(scope="session")
def project_root() -> Path:
    """Корневая директория проекта."""
    return Path(__file__).parent.parent


@pytest.fixture(scope="session")
def config_path(project_root: Path) -> Path:
    """Путь к файлу конфигурации."""
    return project_root / "config" / "config.json"


@pytest.fixture
def mock_lang_dict() -> dict[str, dict[str, str]]:
    """Мок словаря локализации для тестов."""
    return {
        "GREETING": {
            "en": "Hello, {name}!",
            "ru": "Привет, {name}!",
        },
        "ONLY_RU": {
            "ru": "Только по-русски",
        },
    }


@pytest.fixture
def temp_lang_dict_file(tmp_path: Path, mock_lang_dict: dict[str, dict[str, str]]) -> Path:
    """Создаёт временный файл локализации."""
    lang_file = tmp_path / "lang_dict.json"
    lang_file.write_text(json.dumps(mock_lang_dict, ensure_ascii=False, indent=2))
    return lang_file


# =============================================================================
# IN-MEMORY REDIS
# =============================================================================

class FakeLock:
    """Lease-блокировка поверх FakeRedisClient."""

    def __init__(self, owner: "FakeRedisClient", name: str) -> None:
        self._owner = owner
        self._name = name
        self.owned = False

    async def acquire(self) -> bool:
        if self._name in self._owner.locks:
            return False
        self._owner.locks.add(self._name)
        self.owned = True
        return True

    async def release(self) -> None:
        if self.owned:
            self._owner.locks.discard(self._name)
            self.owned = False


class FakeRedisClient:
    """
    Словарь с истечением ключей по управляемым часам.
    Повторяет интерфейс RedisClient, которым пользуется TrackingCache.
    """

    def __init__(self) -> None:
        self.data: dict[str, str] = {}
        self.expiry: dict[str, float] = {}
        self.locks: set[str] = set()
        self.now = 0.0

    def advance(self, seconds: float) -> None:
        """Сдвигает часы вперёд."""
        self.now += seconds

    def _alive(self, key: str) -> bool:
        deadline = self.expiry.get(key)
        if deadline is not None and deadline <= self.now:
            self.data.pop(key, None)
            self.expiry.pop(key, None)
        return key in self.data

    async def get(self, key: str) -> str | None:
        return self.data[key] if self._alive(key) else None

    async def set(self, key: str, value: Any, ttl: int | None = None, nx: bool = False) -> bool:
        if nx and self._alive(key):
            return False
        self.data[key] = str(value)
        if ttl is not None:
            self.expiry[key] = self.now + ttl
        else:
            self.expiry.pop(key, None)
        return True

    async def delete(self, *keys: str) -> int:
        removed = 0
        for key in keys:
            if self._alive(key):
                removed += 1
            self.data.pop(key, None)
            self.expiry.pop(key, None)
        return removed

    async def get_json(self, key: str) -> Any:
        raw = await self.get(key)
        return json.loads(raw) if raw is not None else None

    async def set_json(self, key: str, data: Any, ttl: int | None = None) -> bool:
        return await self.set(key, json.dumps(data, default=str), ttl=ttl)

    async def incr_window(self, key: str, window: int) -> int:
        if not self._alive(key):
            self.data[key] = "0"
            self.expiry[key] = self.now + window
        self.data[key] = str(int(self.data[key]) + 1)
        return int(self.data[key])

    def lock(self, name: str, ttl: int) -> FakeLock:
        return FakeLock(self, name)


@pytest.fixture
def fake_redis() -> FakeRedisClient:
    """In-memory Redis с управляемыми часами."""
    return FakeRedisClient()


@pytest.fixture
def cache(fake_redis: FakeRedisClient) -> TrackingCache:
    """Кэш трекинга поверх in-memory Redis."""
    return TrackingCache(fake_redis, TrackingCacheTTLSettings())


# =============================================================================
# ФИКСТУРЫ ИНФРАСТРУКТУРЫ (МОКИ)
# =============================================================================

@pytest.fixture
def mock_db() -> AsyncMock:
    """Мок менеджера базы данных."""
    db = AsyncMock()
    db.fetchrow = AsyncMock(return_value=None)
    db.fetch = AsyncMock(return_value=[])
    db.execute = AsyncMock(return_value="UPDATE 0")
    db.fetchval = AsyncMock(return_value=None)
    return db


@pytest.fixture
def mock_redis() -> AsyncMock:
    """Мок клиента Redis."""
    redis = AsyncMock()
    redis.get = AsyncMock(return_value=None)
    redis.set = AsyncMock(return_value=True)
    redis.delete = AsyncMock(return_value=1)
    redis.get_json = AsyncMock(return_value=None)
    redis.set_json = AsyncMock(return_value=True)
    redis.incr_window = AsyncMock(return_value=1)
    return redis


@pytest.fixture
def mock_event_bus() -> AsyncMock:
    """Мок шины событий."""
    event_bus = AsyncMock()
    event_bus.publish = AsyncMock(return_value=True)
    event_bus.subscribe = AsyncMock(return_value=None)
    event_bus.is_connected = True
    return event_bus


# =============================================================================
# ФИКСТУРЫ МОДЕЛЕЙ
# =============================================================================

@pytest.fixture
def now() -> datetime:
    """Фиксированный момент времени."""
    return datetime(2026, 5, 1, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def current_row(now: datetime) -> dict[str, Any]:
    """Строка tracking_current."""
    return {
        "user_id": 1,
        "family_id": 10,
        "lat": 50.4501,
        "lng": 30.5234,
        "accuracy_m": 8.0,
        "speed_mps": 0.0,
        "heading_deg": None,
        "altitude_m": None,
        "battery_level": 80,
        "is_moving": False,
        "quality_score": 100,
        "source": "gps",
        "position_at": now - timedelta(minutes=5),
        "updated_at": now - timedelta(minutes=1),
    }


@pytest.fixture
def session_row(now: datetime) -> dict[str, Any]:
    """Строка tracking_sessions."""
    return {
        "id": 7,
        "user_id": 1,
        "family_id": 10,
        "status": "active",
        "mode": "live",
        "interval_seconds": 30,
        "started_at": now,
        "expires_at": now + timedelta(hours=2),
        "last_keepalive": now,
        "stopped_at": None,
    }


@pytest.fixture
def settings_row() -> dict[str, Any]:
    """Строка tracking_family_settings."""
    return {
        "family_id": 10,
        "mode": 2,
        "session_ttl_seconds": 300,
        "keepalive_interval_seconds": 30,
        "dedupe_radius_m": 10.0,
        "dedupe_time_seconds": 60,
        "rate_limit_seconds": 5,
        "history_retention_days": 30,
        "events_retention_days": 90,
        "speed_alert_kmh": 120.0,
        "battery_alert_percent": 15,
        "speed_threshold_mps": 1.0,
        "distance_threshold_m": 50.0,
        "min_accuracy_m": 100.0,
    }
