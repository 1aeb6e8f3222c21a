# src/core/alerts/models.py
"""
Правила оповещений.

Условие правила моделируется вариантом: SpeedRule | BatteryRule | InactivityRule.
Строка rule_type из БД разбирается в вариант, дальше движок работает
с вариантами через match.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, List, Optional, Union

from pydantic import BaseModel, Field, field_validator, model_validator

from src.common.constants import AlertRuleType


# =============================================================================
# ВАРИАНТЫ УСЛОВИЙ
# =============================================================================

@dataclass(frozen=True)
class SpeedRule:
    """Скорость выше потолка."""
    max_kmh: float = 120.0


@dataclass(frozen=True)
class BatteryRule:
    """Заряд ниже порога."""
    min_percent: int = 15


@dataclass(frozen=True)
class InactivityRule:
    """Нет точек дольше заданного времени. Оценивается только в фоне."""
    max_idle_minutes: int = 60


RuleCondition = Union[SpeedRule, BatteryRule, InactivityRule]


def _number(conditions: dict[str, Any], *names: str) -> Optional[float]:
    for name in names:
        value = conditions.get(name)
        if value is not None:
            return float(value)
    return None


def parse_condition(
    rule_type: str,
    conditions: dict[str, Any] | str | None,
    default_speed_kmh: float = 120.0,
    default_battery_percent: int = 15,
) -> RuleCondition:
    """
    Разбирает JSON условия в вариант.

    Raises:
        ValueError: неизвестный тип правила
    """
    if isinstance(conditions, str):
        conditions = json.loads(conditions) if conditions else {}
    conditions = conditions or {}

    match AlertRuleType(rule_type):
        case AlertRuleType.SPEED:
            limit = _number(conditions, "max_speed_kmh", "max_kmh", "threshold")
            return SpeedRule(max_kmh=limit if limit is not None else default_speed_kmh)
        case AlertRuleType.BATTERY:
            floor = _number(conditions, "min_battery_percent", "min_percent", "threshold")
            return BatteryRule(min_percent=int(floor) if floor is not None else default_battery_percent)
        case AlertRuleType.INACTIVITY:
            minutes = _number(conditions, "max_idle_minutes", "minutes")
            return InactivityRule(max_idle_minutes=int(minutes) if minutes is not None else 60)


class AlertRule(BaseModel):
    """Правило оповещения семьи."""

    id: int = Field(..., description="ID правила")
    family_id: int = Field(..., description="ID семьи")
    name: str = Field(..., description="Название")
    rule_type: AlertRuleType = Field(..., description="Тип правила")
    conditions: dict[str, Any] = Field(default_factory=dict, description="Условия в исходном виде")
    target_user_id: Optional[int] = Field(None, description="Только для этого пользователя (None = все)")
    notify_user_ids: List[int] = Field(default_factory=list, description="Кого оповещать")
    active: bool = Field(True, description="Активно")

    class Config:
        from_attributes = True

    @field_validator("conditions", mode="before")
    @classmethod
    def parse_conditions(cls, v: Any) -> Any:
        """JSONB из asyncpg приходит строкой."""
        if isinstance(v, str):
            return json.loads(v) if v else {}
        return v or {}

    def applies_to(self, user_id: int) -> bool:
        """Относится ли правило к пользователю."""
        return self.target_user_id is None or self.target_user_id == user_id

    def condition(self, default_speed_kmh: float = 120.0, default_battery_percent: int = 15) -> RuleCondition:
        """Условие правила как вариант."""
        return parse_condition(
            self.rule_type.value, self.conditions, default_speed_kmh, default_battery_percent,
        )


class AlertRuleCreate(BaseModel):
    """Новое правило. Условия должны разбираться в вариант своего типа."""

    name: str = Field(..., min_length=1, max_length=100)
    rule_type: AlertRuleType
    conditions: dict[str, Any] = Field(default_factory=dict)
    target_user_id: Optional[int] = None
    notify_user_ids: List[int] = Field(default_factory=list)
    active: bool = True

    @model_validator(mode="after")
    def check_conditions(self) -> AlertRuleCreate:
        _check_condition(self.rule_type, self.conditions)
        return self


class AlertRuleUpdate(BaseModel):
    """Частичное изменение правила."""

    name: Optional[str] = Field(None, min_length=1, max_length=100)
    rule_type: Optional[AlertRuleType] = None
    conditions: Optional[dict[str, Any]] = None
    target_user_id: Optional[int] = None
    notify_user_ids: Optional[List[int]] = None
    active: Optional[bool] = None

    def apply(self, rule: AlertRule) -> AlertRuleCreate:
        """
        Сливает изменения с текущим правилом.

        target_user_id можно сбросить в null явной передачей.
        """
        merged = rule.model_dump(exclude={"id", "family_id"})
        merged.update({
            name: value
            for name, value in self.model_dump(exclude_unset=True).items()
            if value is not None or name == "target_user_id"
        })
        return AlertRuleCreate.model_validate(merged)


def _check_condition(rule_type: AlertRuleType, conditions: dict[str, Any]) -> None:
    """Условие разбирается, пороги неотрицательны."""
    try:
        condition = parse_condition(rule_type.value, conditions)
    except (TypeError, ValueError) as e:
        raise ValueError(f"Некорректные условия правила: {e}")
    for value in vars(condition).values():
        if value < 0:
            raise ValueError("Порог правила не может быть отрицательным")


@dataclass
class AlertTrigger:
    """Сработавшее правило."""
    rule_id: int
    name: str
    type: AlertRuleType
    user_id: int
    family_id: int
    value: float
    threshold: float
    notify_user_ids: List[int] = field(default_factory=list)
    occurred_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> dict[str, Any]:
        """Дескриптор для внешних получателей."""
        return {
            "rule_id": self.rule_id,
            "name": self.name,
            "type": self.type.value,
            "user_id": self.user_id,
            "family_id": self.family_id,
            "value": self.value,
            "threshold": self.threshold,
            "notify_user_ids": self.notify_user_ids,
            "occurred_at": self.occurred_at.isoformat(),
        }
