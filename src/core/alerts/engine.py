# src/core/alerts/engine.py
"""
Движок оповещений: проверка правил семьи по одной точке.
"""

from __future__ import annotations

from typing import List, Optional

from src.common.constants import TypeMsg
from src.common.logger import log_error, log_info
from src.core.alerts.models import (
    AlertRule,
    AlertTrigger,
    BatteryRule,
    InactivityRule,
    RuleCondition,
    SpeedRule,
)
from src.core.alerts.repository import AlertRuleRepository
from src.core.tracking.cache import TrackingCache
from src.core.tracking.models import LocationFix


def evaluate_condition(condition: RuleCondition, fix: LocationFix) -> Optional[tuple[float, float]]:
    """
    Чистая проверка условия по точке.

    Returns:
        (значение, порог), если условие сработало, иначе None
    """
    match condition:
        case SpeedRule(max_kmh=limit):
            speed_kmh = fix.speed_kmh
            if speed_kmh is not None and speed_kmh > limit:
                return speed_kmh, limit
            return None
        case BatteryRule(min_percent=floor):
            if fix.battery_level is not None and fix.battery_level < floor:
                return float(fix.battery_level), float(floor)
            return None
        case InactivityRule():
            # требует отсутствия точек во времени, одна точка ничего не говорит
            return None
    return None


class AlertsEngine:
    """
    Оценивает активные правила семьи для пользователя.

    Сработавшее правило глушится на время cooldown по ключу
    alerts_cd:{family}:{rule}:{user}:{target}.
    """

    def __init__(
        self,
        repository: AlertRuleRepository,
        cache: TrackingCache,
        cooldown_seconds: Optional[int] = None,
    ) -> None:
        if cooldown_seconds is None:
            from src.config import settings
            cooldown_seconds = settings.alerts.COOLDOWN_SECONDS
        self._repo = repository
        self._cache = cache
        self.cooldown_seconds = cooldown_seconds

    async def evaluate(
        self,
        user_id: int,
        family_id: int,
        fix: LocationFix,
        default_speed_kmh: float = 120.0,
        default_battery_percent: int = 15,
    ) -> List[AlertTrigger]:
        """
        Возвращает сработавшие правила.

        Ошибка в одном правиле логируется и не мешает остальным.
        """
        rules = await self._repo.list_active(family_id)
        triggers: List[AlertTrigger] = []

        for rule in rules:
            if not rule.applies_to(user_id):
                continue
            try:
                trigger = await self._evaluate_rule(
                    rule, user_id, family_id, fix, default_speed_kmh, default_battery_percent,
                )
            except Exception as e:
                await log_error(f"Ошибка оценки правила {rule.id} ({rule.rule_type.value}): {e}")
                continue

            if trigger is not None:
                triggers.append(trigger)

        return triggers

    async def _evaluate_rule(
        self,
        rule: AlertRule,
        user_id: int,
        family_id: int,
        fix: LocationFix,
        default_speed_kmh: float,
        default_battery_percent: int,
    ) -> Optional[AlertTrigger]:
        hit = evaluate_condition(rule.condition(default_speed_kmh, default_battery_percent), fix)
        if hit is None:
            return None

        cooldown_key = self._cache.alert_cooldown_key(
            family_id, rule.id, user_id, rule.target_user_id or 0,
        )
        if not await self._cache.set_once(cooldown_key, self.cooldown_seconds):
            await log_info(f"Правило {rule.id} для пользователя {user_id} в cooldown", type_msg=TypeMsg.DEBUG)
            return None

        value, threshold = hit
        await log_info(
            f"Сработало правило {rule.id} '{rule.name}' для пользователя {user_id}: {value:.1f} / {threshold:.1f}",
            type_msg=TypeMsg.DEBUG,
        )
        return AlertTrigger(
            rule_id=rule.id,
            name=rule.name,
            type=rule.rule_type,
            user_id=user_id,
            family_id=family_id,
            value=value,
            threshold=threshold,
            notify_user_ids=list(rule.notify_user_ids),
        )
