# src/core/alerts/__init__.py
"""
Правила оповещений и их движок.
"""

from src.core.alerts.models import (
    AlertRule,
    AlertRuleCreate,
    AlertRuleUpdate,
    AlertTrigger,
    BatteryRule,
    InactivityRule,
    SpeedRule,
    parse_condition,
)
from src.core.alerts.repository import AlertRuleRepository
from src.core.alerts.engine import AlertsEngine, evaluate_condition

__all__ = [
    "AlertRule",
    "AlertRuleCreate",
    "AlertRuleUpdate",
    "AlertTrigger",
    "BatteryRule",
    "InactivityRule",
    "SpeedRule",
    "parse_condition",
    "AlertRuleRepository",
    "AlertsEngine",
    "evaluate_condition",
]
