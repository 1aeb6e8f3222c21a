# src/worker/maintenance.py
"""
Обслуживающие задачи: истечение сессий и очистка старых данных.
"""

from __future__ import annotations

from typing import List, Optional

from src.common.constants import TypeMsg
from src.common.logger import log_info
from src.config.loader import RetentionSettings
from src.core.audit.repository import AuditRepository
from src.core.sessions.gate import SessionGate
from src.core.settings.repository import FamilySettingsRepository
from src.core.tracking.cache import TrackingCache
from src.core.tracking.repository import LocationRepository
from src.infra.database import DatabaseManager
from src.worker.base import BaseWorker, PeriodicJob, run_with_lease

PRUNE_LOCK_NAME = "retention_prune"
PRUNE_LOCK_TTL_S = 3600


class RetentionPruner:
    """Удаляет историю и события старше сроков хранения каждой семьи."""

    def __init__(
        self,
        db: DatabaseManager,
        cache: TrackingCache,
        config: Optional[RetentionSettings] = None,
    ) -> None:
        if config is None:
            from src.config import settings
            config = settings.retention
        self.config = config
        self._cache = cache
        self._settings_repo = FamilySettingsRepository(db, cache)
        self._locations = LocationRepository(db, cache)
        self._audit = AuditRepository(db)

    async def run(self) -> Optional[dict[str, int]]:
        """Очистка под блокировкой. None, если запуск пропущен."""
        return await run_with_lease(self._cache, PRUNE_LOCK_NAME, PRUNE_LOCK_TTL_S, self._prune)

    async def _prune(self) -> dict[str, int]:
        cfg = self.config
        totals = {"families": 0, "history": 0, "events": 0}

        families = await self._settings_repo.list_retention(
            cfg.HISTORY_RETENTION_DAYS, cfg.EVENTS_RETENTION_DAYS,
        )
        for family_id, history_days, events_days in families:
            totals["history"] += await self._locations.prune_history(
                family_id, history_days, cfg.PRUNE_BATCH_SIZE, cfg.PRUNE_BATCH_DELAY_S,
            )
            totals["events"] += await self._audit.prune(
                family_id, events_days, cfg.PRUNE_BATCH_SIZE, cfg.PRUNE_BATCH_DELAY_S,
            )
            totals["families"] += 1

        await log_info(
            f"Очистка: семей {totals['families']}, точек {totals['history']}, событий {totals['events']}",
            type_msg=TypeMsg.INFO,
        )
        return totals


class MaintenanceWorker(BaseWorker):
    """Периодические задачи без подписок на события."""

    def __init__(self, *args, **kwargs) -> None:
        super().__init__(*args, **kwargs)
        self.sessions = SessionGate(self.db, self.cache, self.event_bus)
        self.pruner = RetentionPruner(self.db, self.cache)

    @property
    def name(self) -> str:
        return "MaintenanceWorker"

    def periodic_jobs(self) -> List[PeriodicJob]:
        return [
            (self.sessions.config.EXPIRY_SWEEP_INTERVAL_S, self.expire_sessions),
            (self.pruner.config.PRUNE_INTERVAL_S, self.pruner.run),
        ]

    async def expire_sessions(self) -> int:
        return await self.sessions.expire_stale()
