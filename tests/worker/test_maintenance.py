# tests/worker/test_maintenance.py
"""
Тесты для обслуживающих задач.
"""

from __future__ import annotations

from unittest.mock import AsyncMock

import pytest

from src.config.loader import RetentionSettings
from src.core.audit.repository import AuditRepository
from src.core.sessions.gate import SessionGate
from src.core.settings.repository import FamilySettingsRepository
from src.core.tracking.cache import TrackingCache
from src.core.tracking.repository import LocationRepository
from src.worker.maintenance import MaintenanceWorker, RetentionPruner


@pytest.fixture
def pruner(mock_db: AsyncMock, cache: TrackingCache) -> RetentionPruner:
    pruner = RetentionPruner(mock_db, cache, RetentionSettings(PRUNE_BATCH_SIZE=100, PRUNE_BATCH_DELAY_S=0))
    pruner._settings_repo = AsyncMock(spec=FamilySettingsRepository)
    pruner._settings_repo.list_retention.return_value = [(10, 30, 90), (11, 7, 14)]
    pruner._locations = AsyncMock(spec=LocationRepository)
    pruner._locations.prune_history.return_value = 5
    pruner._audit = AsyncMock(spec=AuditRepository)
    pruner._audit.prune.return_value = 2
    return pruner


class TestRetentionPruner:
    """Тесты для RetentionPruner."""

    @pytest.mark.asyncio
    async def test_per_family_retention(self, pruner: RetentionPruner) -> None:
        totals = await pruner.run()

        assert totals == {"families": 2, "history": 10, "events": 4}
        pruner._settings_repo.list_retention.assert_awaited_once_with(30, 90)
        assert [c.args for c in pruner._locations.prune_history.call_args_list] == [
            (10, 30, 100, 0), (11, 7, 100, 0),
        ]
        assert [c.args for c in pruner._audit.prune.call_args_list] == [
            (10, 90, 100, 0), (11, 14, 100, 0),
        ]

    @pytest.mark.asyncio
    async def test_skipped_when_locked(self, pruner: RetentionPruner, fake_redis) -> None:
        fake_redis.locks.add("retention_prune")
        assert await pruner.run() is None
        pruner._settings_repo.list_retention.assert_not_called()


class TestMaintenanceWorker:
    """Тесты для MaintenanceWorker."""

    @pytest.fixture
    def worker(self, mock_event_bus: AsyncMock, mock_db: AsyncMock, fake_redis) -> MaintenanceWorker:
        return MaintenanceWorker(event_bus=mock_event_bus, db=mock_db, redis=fake_redis)

    def test_jobs(self, worker: MaintenanceWorker) -> None:
        jobs = worker.periodic_jobs()
        assert [interval for interval, _ in jobs] == [
            worker.sessions.config.EXPIRY_SWEEP_INTERVAL_S,
            worker.pruner.config.PRUNE_INTERVAL_S,
        ]
        assert worker.subscriptions == []

    @pytest.mark.asyncio
    async def test_expire_sessions(self, worker: MaintenanceWorker) -> None:
        worker.sessions = AsyncMock(spec=SessionGate)
        worker.sessions.expire_stale.return_value = 3
        assert await worker.expire_sessions() == 3
