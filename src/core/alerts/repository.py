# src/core/alerts/repository.py
"""
Репозиторий правил оповещений.
"""

from __future__ import annotations

import json
from typing import List, Optional

from pydantic import ValidationError as PydanticValidationError

from src.common.exceptions import NotFoundError, ValidationError
from src.common.logger import log_info, log_warning
from src.core.alerts.models import AlertRule, AlertRuleCreate, AlertRuleUpdate
from src.core.tracking.cache import TrackingCache
from src.infra.database import DatabaseManager

_RULE_COLUMNS = """
    id, family_id, name, rule_type, conditions, target_user_id, notify_user_ids, active
"""


class AlertRuleRepository:
    """Активные правила семьи, через кэш alerts:{family}. Любая запись сбрасывает кэш."""

    def __init__(self, db: DatabaseManager, cache: TrackingCache) -> None:
        self._db = db
        self._cache = cache

    async def list_active(self, family_id: int) -> List[AlertRule]:
        key = self._cache.alert_rules_key(family_id)
        cached = await self._cache.get_json(key)
        if cached is not None:
            try:
                return [AlertRule.model_validate(item) for item in cached]
            except ValueError:
                await log_warning(f"Повреждённые правила семьи {family_id} в кэше")

        rows = await self._db.fetch(
            f"""
            SELECT {_RULE_COLUMNS}
            FROM tracking_alert_rules
            WHERE family_id = $1 AND active
            ORDER BY id
            """,
            family_id,
        )

        rules = await self._parse_rows(rows)
        await self._cache.set_json(
            key, [r.model_dump(mode="json") for r in rules], self._cache.ttl.ALERT_RULES_TTL,
        )
        return rules

    async def list_all(self, family_id: int) -> List[AlertRule]:
        rows = await self._db.fetch(
            f"SELECT {_RULE_COLUMNS} FROM tracking_alert_rules WHERE family_id = $1 ORDER BY id",
            family_id,
        )
        return await self._parse_rows(rows)

    async def get(self, family_id: int, rule_id: int) -> Optional[AlertRule]:
        row = await self._db.fetchrow(
            f"SELECT {_RULE_COLUMNS} FROM tracking_alert_rules WHERE id = $1 AND family_id = $2",
            rule_id,
            family_id,
        )
        return AlertRule.model_validate(dict(row)) if row else None

    async def create(self, family_id: int, data: AlertRuleCreate) -> AlertRule:
        row = await self._db.fetchrow(
            f"""
            INSERT INTO tracking_alert_rules (
                family_id, name, rule_type, conditions, target_user_id, notify_user_ids, active
            )
            VALUES ($1, $2, $3, $4::jsonb, $5, $6, $7)
            RETURNING {_RULE_COLUMNS}
            """,
            family_id,
            *self._rule_args(data),
        )
        await self._invalidate(family_id)
        rule = AlertRule.model_validate(dict(row))
        await log_info(f"Создано правило {rule.id} ({rule.rule_type.value}) в семье {family_id}")
        return rule

    async def update(self, family_id: int, rule_id: int, changes: AlertRuleUpdate) -> AlertRule:
        """
        Raises:
            NotFoundError: правила нет в семье
            ValidationError: итоговые условия некорректны
        """
        current = await self.get(family_id, rule_id)
        if current is None:
            raise NotFoundError(f"Правило {rule_id} не найдено")

        try:
            data = changes.apply(current)
        except PydanticValidationError as e:
            raise ValidationError(f"Некорректное правило: {e.errors()[0]['msg']}", field="conditions")

        row = await self._db.fetchrow(
            f"""
            UPDATE tracking_alert_rules
            SET name = $3, rule_type = $4, conditions = $5::jsonb, target_user_id = $6,
                notify_user_ids = $7, active = $8
            WHERE id = $1 AND family_id = $2
            RETURNING {_RULE_COLUMNS}
            """,
            rule_id,
            family_id,
            *self._rule_args(data),
        )
        if row is None:
            raise NotFoundError(f"Правило {rule_id} не найдено")

        await self._invalidate(family_id)
        return AlertRule.model_validate(dict(row))

    async def delete(self, family_id: int, rule_id: int) -> bool:
        deleted = await self._db.fetchval(
            "DELETE FROM tracking_alert_rules WHERE id = $1 AND family_id = $2 RETURNING id",
            rule_id,
            family_id,
        )
        if deleted is None:
            return False
        await self._invalidate(family_id)
        return True

    async def _parse_rows(self, rows: list) -> List[AlertRule]:
        rules: List[AlertRule] = []
        for row in rows:
            try:
                rules.append(AlertRule.model_validate(dict(row)))
            except ValueError as e:
                await log_warning(f"Пропущено некорректное правило {row['id']}: {e}")
        return rules

    async def _invalidate(self, family_id: int) -> None:
        await self._cache.delete(self._cache.alert_rules_key(family_id))

    @staticmethod
    def _rule_args(data: AlertRuleCreate) -> tuple:
        return (
            data.name,
            data.rule_type.value,
            json.dumps(data.conditions, ensure_ascii=False),
            data.target_user_id,
            data.notify_user_ids,
            data.active,
        )
