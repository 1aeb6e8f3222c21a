# src/core/tracking/quality_gate.py
"""
Фильтр качества входящих точек.

Оценивает точку (0..100) и решает, что с ней делать:
- promote: новая авторитетная позиция
- touch: устройство живо, позиция не меняется
- reject: точка отбрасывается без единой записи

Модуль чистый: не ходит ни в БД, ни в кэш.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional

from src.common.constants import FixDecision, FixSource
from src.common.geo import haversine_m
from src.config.loader import QualityGateSettings
from src.core.tracking.models import CurrentLocation, GateResult, LocationFix


# Штрафы за точность: (верхняя граница в метрах, штраф)
ACCURACY_PENALTIES: tuple[tuple[float, int], ...] = (
    (10.0, 0),
    (25.0, 5),
    (50.0, 10),
    (100.0, 25),
    (200.0, 50),
)
ACCURACY_PENALTY_WORST = 70
ACCURACY_PENALTY_UNKNOWN = 30

IMPOSSIBLE_SPEED_PENALTY = 40
STATIONARY_SPEED_PENALTY = 30

GPS_MAX_ACCURACY_M = 20.0
FUSED_MAX_ACCURACY_M = 50.0


def compute_score(
    accuracy_m: Optional[float],
    speed_kmh: Optional[float],
    is_moving: bool,
    thresholds: Optional[QualityGateSettings] = None,
) -> int:
    """
    Считает оценку качества точки в диапазоне [0, 100].

    Args:
        accuracy_m: Точность в метрах (None, если неизвестна)
        speed_kmh: Скорость, сообщённая устройством, км/ч
        is_moving: Флаг движения от устройства
        thresholds: Пороги скоростей
    """
    thresholds = thresholds or QualityGateSettings()
    score = 100

    if accuracy_m is None:
        score -= ACCURACY_PENALTY_UNKNOWN
    else:
        for limit, penalty in ACCURACY_PENALTIES:
            if accuracy_m <= limit:
                score -= penalty
                break
        else:
            score -= ACCURACY_PENALTY_WORST

    if speed_kmh is not None:
        if speed_kmh > thresholds.IMPOSSIBLE_SPEED_KMH:
            score -= IMPOSSIBLE_SPEED_PENALTY
        elif speed_kmh > thresholds.MAX_STATIONARY_SPEED_KMH and not is_moving:
            score -= STATIONARY_SPEED_PENALTY

    return max(0, min(100, score))


def determine_source(accuracy_m: Optional[float]) -> FixSource:
    """Классифицирует источник координат по точности."""
    if accuracy_m is None:
        return FixSource.UNKNOWN
    if accuracy_m <= GPS_MAX_ACCURACY_M:
        return FixSource.GPS
    if accuracy_m <= FUSED_MAX_ACCURACY_M:
        return FixSource.FUSED
    return FixSource.NETWORK


class QualityGate:
    """
    Решение promote / touch / reject для одной точки.

    Правила проверяются строго по порядку, срабатывает первое.
    Правила 2 и 5 ловят одно и то же (скорость без движения) по разным
    источникам: скорость устройства и скорость, выведенная из смещения.
    """

    def __init__(self, thresholds: Optional[QualityGateSettings] = None) -> None:
        if thresholds is None:
            from src.config import settings
            thresholds = settings.quality_gate
        self.thresholds = thresholds

    def decide(
        self,
        fix: LocationFix,
        last_best: Optional[CurrentLocation],
        now: Optional[datetime] = None,
    ) -> GateResult:
        """
        Классифицирует точку.

        Args:
            fix: Входящая точка
            last_best: Текущая авторитетная позиция пользователя (или None)
            now: Момент оценки (для тестов)

        Returns:
            GateResult с решением, оценкой, источником и названием правила
        """
        t = self.thresholds
        score = compute_score(fix.accuracy_m, fix.speed_kmh, fix.is_moving, t)
        source = determine_source(fix.accuracy_m)

        def result(decision: FixDecision, reason: str) -> GateResult:
            return GateResult(decision=decision, quality_score=score, source=source, reason=reason)

        accuracy = fix.accuracy_m
        speed_kmh = fix.speed_kmh

        # 1. Слишком шумная точка: только heartbeat
        if accuracy is not None and accuracy > t.NOISY_ACCURACY_M:
            return result(FixDecision.TOUCH, "noisy_accuracy")

        # 2. Скорость устройства невозможна для стоящего телефона
        if speed_kmh is not None and speed_kmh > t.MAX_STATIONARY_SPEED_KMH and not fix.is_moving:
            return result(FixDecision.REJECT, "reported_speed_while_stationary")

        if last_best is None:
            return result(FixDecision.PROMOTE, "no_previous_fix")

        now = now or datetime.now(timezone.utc)
        age_s = (now - last_best.position_at).total_seconds()
        distance_m = haversine_m(last_best.lat, last_best.lng, fix.lat, fix.lng)

        # 3. Не портим свежую хорошую точку худшей
        if (
            accuracy is not None
            and accuracy > t.POOR_ACCURACY_M
            and last_best.accuracy_m is not None
            and last_best.accuracy_m < t.GOOD_LAST_ACCURACY_M
            and age_s < t.GOOD_LAST_MAX_AGE_S
        ):
            return result(FixDecision.TOUCH, "keep_recent_good_fix")

        # 4. Дрожание GPS на месте
        if not fix.is_moving and distance_m < max(t.STATIONARY_JITTER_M, accuracy or 0.0):
            return result(FixDecision.TOUCH, "stationary_jitter")

        # 5. Телепорт: скорость по смещению
        if age_s < t.JUMP_CHECK_MAX_AGE_S:
            implied_kmh = distance_m / max(1.0, age_s) * 3.6
            if implied_kmh > t.MAX_STATIONARY_SPEED_KMH and not fix.is_moving:
                return result(FixDecision.REJECT, "implied_speed_while_stationary")

        return result(FixDecision.PROMOTE, "accepted")
