# src/core/settings/repository.py
"""
Репозиторий настроек трекинга семьи.
"""

from __future__ import annotations

from typing import Any, List, Tuple

from src.common.exceptions import PersistenceError, ValidationError
from src.common.logger import log_error, log_warning
from src.core.settings.models import FamilySettingsUpdate, FamilyTrackingSettings
from src.core.tracking.cache import TrackingCache
from src.infra.database import DB_ERRORS, DatabaseManager

_SETTINGS_COLUMNS = """
    family_id, mode, session_ttl_seconds, keepalive_interval_seconds, dedupe_radius_m,
    dedupe_time_seconds, rate_limit_seconds, history_retention_days, events_retention_days,
    speed_alert_kmh, battery_alert_percent, speed_threshold_mps, distance_threshold_m,
    min_accuracy_m
"""

# Колонки, которые разрешено менять через save
EDITABLE_FIELDS = frozenset(FamilySettingsUpdate.model_fields)


class FamilySettingsRepository:
    """Настройки семьи: кэш, затем БД, при отсутствии строки создаются значения по умолчанию."""

    def __init__(self, db: DatabaseManager, cache: TrackingCache) -> None:
        self._db = db
        self._cache = cache

    async def get(self, family_id: int) -> FamilyTrackingSettings:
        """
        Возвращает настройки семьи.

        Недоступность БД не ломает приём точек: отдаются значения по умолчанию.
        """
        key = self._cache.settings_key(family_id)
        cached = await self._cache.get_json(key)
        if cached is not None:
            try:
                return FamilyTrackingSettings.model_validate(cached)
            except ValueError:
                await log_warning(f"Повреждённые настройки семьи {family_id} в кэше")

        try:
            row = await self._db.fetchrow(
                f"SELECT {_SETTINGS_COLUMNS} FROM tracking_family_settings WHERE family_id = $1",
                family_id,
            )
            if row is None:
                row = await self._db.fetchrow(
                    f"""
                    INSERT INTO tracking_family_settings (family_id)
                    VALUES ($1)
                    ON CONFLICT (family_id) DO UPDATE SET family_id = EXCLUDED.family_id
                    RETURNING {_SETTINGS_COLUMNS}
                    """,
                    family_id,
                )
        except DB_ERRORS as e:
            await log_error(f"Ошибка чтения настроек семьи {family_id}: {e}")
            return FamilyTrackingSettings(family_id=family_id)

        family_settings = FamilyTrackingSettings.model_validate(dict(row))
        await self._cache.set_json(
            key, family_settings.model_dump(mode="json"), self._cache.ttl.SETTINGS_TTL,
        )
        return family_settings

    async def list_retention(
        self,
        default_history_days: int,
        default_events_days: int,
    ) -> List[Tuple[int, int, int]]:
        """
        Сроки хранения для всех семей с данными трекинга.

        Returns:
            [(family_id, history_days, events_days), ...]
        """
        rows = await self._db.fetch(
            """
            SELECT f.family_id,
                   COALESCE(s.history_retention_days, $1) AS history_days,
                   COALESCE(s.events_retention_days, $2) AS events_days
            FROM (
                SELECT family_id FROM tracking_current
                UNION
                SELECT family_id FROM tracking_family_settings
            ) f
            LEFT JOIN tracking_family_settings s ON s.family_id = f.family_id
            ORDER BY f.family_id
            """,
            default_history_days,
            default_events_days,
        )
        return [(row["family_id"], row["history_days"], row["events_days"]) for row in rows]

    async def save(self, family_id: int, changes: dict[str, Any]) -> FamilyTrackingSettings:
        """
        Сохраняет изменённые поля и возвращает свежие настройки.

        Строка создаётся, если её ещё нет. Кэш settings:{family} сбрасывается.

        Raises:
            ValidationError: поле не из белого списка или пустой набор изменений
            PersistenceError: запись не удалась
        """
        unknown = set(changes) - EDITABLE_FIELDS
        if unknown:
            raise ValidationError(f"Неизвестные поля настроек: {sorted(unknown)}", field=sorted(unknown)[0])
        if not changes:
            raise ValidationError("Нет изменений настроек")

        columns = sorted(changes)
        column_list = ", ".join(columns)
        placeholders = ", ".join(f"${i}" for i in range(2, len(columns) + 2))
        assignments = ", ".join(f"{column} = EXCLUDED.{column}" for column in columns)

        try:
            row = await self._db.fetchrow(
                f"""
                INSERT INTO tracking_family_settings (family_id, {column_list})
                VALUES ($1, {placeholders})
                ON CONFLICT (family_id) DO UPDATE SET {assignments}, updated_at = NOW()
                RETURNING {_SETTINGS_COLUMNS}
                """,
                family_id,
                *(changes[column] for column in columns),
            )
        except DB_ERRORS as e:
            await log_error(f"Ошибка записи настроек семьи {family_id}: {e}")
            raise PersistenceError(f"Не удалось сохранить настройки семьи {family_id}") from e

        await self._cache.delete(self._cache.settings_key(family_id))
        return FamilyTrackingSettings.model_validate(dict(row))
