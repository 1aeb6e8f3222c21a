# src/worker/recompute.py
"""
Пересчёт состояний геозон по текущим позициям.

Нужен после изменения геозон или сбоя обработки очереди. Переходы
сохраняются молча: уведомления и события журнала не создаются.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Optional

from src.common.constants import TypeMsg
from src.common.logger import log_error, log_info
from src.core.geofences.engine import GeofenceEngine
from src.core.geofences.repository import GeofenceRepository
from src.core.tracking.cache import TrackingCache
from src.core.tracking.repository import LocationRepository
from src.infra.database import DatabaseManager

# Позиции старше этого не участвуют в пересчёте
MAX_LOCATION_AGE = timedelta(hours=1)


async def recompute_geofence_states(
    db: DatabaseManager,
    cache: TrackingCache,
    family_id: Optional[int] = None,
) -> dict[str, int]:
    """
    Пересчитывает пары (геозона, пользователь) для одной семьи или для всех
    семей с активными геозонами.

    Returns:
        {"families": ..., "pairs": ..., "changed": ...}
    """
    geofence_repo = GeofenceRepository(db, cache)
    locations = LocationRepository(db, cache)
    engine = GeofenceEngine(geofence_repo)

    if family_id is None:
        family_ids = await geofence_repo.list_families_with_geofences()
    else:
        family_ids = [family_id]

    stats = {"families": 0, "pairs": 0, "changed": 0}
    cutoff = datetime.now(timezone.utc) - MAX_LOCATION_AGE

    for fid in family_ids:
        members = await locations.list_sharing_members(fid)

        # Читаем геозоны и состояния из БД, а не из возможно устаревшего кэша
        await cache.invalidate_geofences(fid)
        await cache.invalidate_geofence_state(fid, [m.user_id for m in members])
        geofence_count = len(await geofence_repo.list_active(fid))

        for member in members:
            if member.position_at < cutoff:
                continue
            try:
                transitions = await engine.evaluate(member.user_id, fid, member.lat, member.lng)
            except Exception as e:
                await log_error(f"Ошибка пересчёта геозон пользователя {member.user_id}: {e}")
                continue
            stats["pairs"] += geofence_count
            stats["changed"] += len(transitions)

        stats["families"] += 1

    await log_info(
        f"Пересчёт геозон: семей {stats['families']}, пар {stats['pairs']}, "
        f"изменений {stats['changed']}",
        type_msg=TypeMsg.INFO,
    )
    return stats
