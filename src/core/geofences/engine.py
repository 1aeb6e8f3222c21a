# src/core/geofences/engine.py
"""
Движок геозон: сравнивает новую позицию с прошлым состоянием пары
(геозона, пользователь) и фиксирует переходы вход/выход.

Событие возникает только при смене is_inside. Повторные точки с тем же
результатом ничего не пишут. Запись состояния условная: из двух
конкурентных точек переход получает только та, чья запись изменила строку.
"""

from __future__ import annotations

from typing import List

from src.common.constants import GeofenceAction, TypeMsg
from src.common.exceptions import GeofenceEvaluationError
from src.common.logger import log_error, log_info
from src.core.geofences.models import Geofence, GeofenceTransition
from src.core.geofences.repository import GeofenceRepository


class GeofenceEngine:
    """Оценка точки относительно всех активных геозон семьи."""

    def __init__(self, repository: GeofenceRepository) -> None:
        self._repo = repository

    async def evaluate(
        self,
        user_id: int,
        family_id: int,
        lat: float,
        lng: float,
        strict: bool = False,
    ) -> List[GeofenceTransition]:
        """
        Пересчитывает состояния и сохраняет изменившиеся.

        Каждая геозона оценивается независимо: ошибка одной не мешает
        остальным, пользователь может быть внутри нескольких сразу.

        Args:
            strict: После обхода всех геозон поднять GeofenceEvaluationError,
                если какую-то оценить не удалось (фоновая очередь)

        Returns:
            Все переходы, включая те, о которых оповещать не нужно
        """
        geofences = await self._repo.list_active(family_id)
        if not geofences:
            return []

        states = await self._repo.get_states(family_id, user_id)
        transitions: List[GeofenceTransition] = []
        failed_ids: List[int] = []

        for geofence in geofences:
            try:
                transition = await self._evaluate_one(
                    geofence, user_id, family_id, lat, lng, states.get(geofence.id, False),
                )
            except Exception as e:
                failed_ids.append(geofence.id)
                await log_error(
                    f"Ошибка оценки геозоны {geofence.id} для пользователя {user_id}: {e}",
                )
                continue

            if transition is not None:
                transitions.append(transition)

        if strict and failed_ids:
            raise GeofenceEvaluationError(user_id, failed_ids, transitions)
        return transitions

    async def process(
        self,
        user_id: int,
        family_id: int,
        lat: float,
        lng: float,
    ) -> List[GeofenceTransition]:
        """
        То же, что evaluate(), но возвращает только переходы с включённым
        оповещением (notify_enter / notify_exit).
        """
        transitions = await self.evaluate(user_id, family_id, lat, lng)
        return [t for t in transitions if t.notify]

    async def _evaluate_one(
        self,
        geofence: Geofence,
        user_id: int,
        family_id: int,
        lat: float,
        lng: float,
        was_inside: bool,
    ) -> GeofenceTransition | None:
        is_inside = geofence.contains(lat, lng)
        if is_inside == was_inside:
            return None

        if not await self._repo.set_state(geofence.id, user_id, family_id, is_inside):
            # Состояние уже сменила конкурентная точка
            await log_info(
                f"Пользователь {user_id}: геозона {geofence.id} уже в состоянии is_inside={is_inside}",
                type_msg=TypeMsg.DEBUG,
            )
            return None

        action = GeofenceAction.ENTER if is_inside else GeofenceAction.EXIT
        notify = geofence.notify_enter if is_inside else geofence.notify_exit

        await log_info(
            f"Пользователь {user_id}: {action.value} геозона '{geofence.name}' ({geofence.id})",
            type_msg=TypeMsg.DEBUG,
        )
        return GeofenceTransition(
            geofence_id=geofence.id,
            geofence_name=geofence.name,
            user_id=user_id,
            family_id=family_id,
            action=action,
            notify=notify,
        )
