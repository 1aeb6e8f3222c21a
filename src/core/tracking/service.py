# src/core/tracking/service.py
"""
Сервис трекинга.
Координирует приём точки: лимит, сессии, фильтр качества, запись,
дедупликацию, историю, геозоны и оповещения.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, List, Optional, Sequence, Union

from src.common.constants import (
    FixDecision,
    FixSource,
    GeofenceAction,
    TrackingEventType,
    TrackingMode,
    TypeMsg,
)
from src.common.exceptions import (
    GeofenceEvaluationError,
    PersistenceError,
    RateLimitExceeded,
    SessionInactive,
    ValidationError,
)
from src.common.logger import log_error, log_info
from src.config.loader import Settings
from src.core.alerts.engine import AlertsEngine
from src.core.alerts.models import AlertTrigger
from src.core.alerts.repository import AlertRuleRepository
from src.core.audit.repository import AuditRepository, TrackingEvent
from src.core.geofences.engine import GeofenceEngine
from src.core.geofences.models import GeofenceTransition
from src.core.geofences.queue import GeofenceQueueRepository
from src.core.geofences.repository import GeofenceRepository
from src.core.notifications.service import TrackingNotificationService
from src.core.sessions.gate import SessionGate
from src.core.settings.models import FamilySettingsUpdate, FamilyTrackingSettings
from src.core.settings.repository import FamilySettingsRepository
from src.core.tracking.cache import TrackingCache
from src.core.tracking.dedupe import DedupeFilter
from src.core.tracking.models import (
    BatchItemResult,
    BatchResult,
    CurrentLocation,
    HistoryPoint,
    IngestResult,
    LocationFix,
)
from src.core.tracking.motion import PreviousFix, classify_motion
from src.core.tracking.quality_gate import QualityGate
from src.core.tracking.rate_limiter import RateLimiter
from src.core.tracking.repository import LocationRepository
from src.infra.database import DB_ERRORS, DatabaseManager
from src.infra.event_bus import DomainEvent, EventBus, EventTypes

UPDATE_ACTION = "update"

# Причины в итогах пакета
INVALID = "invalid"
STORAGE_UNAVAILABLE = "storage_unavailable"


def _client_event_id(payload: dict[str, Any]) -> Optional[str]:
    value = payload.get("client_event_id")
    return None if value is None else str(value)


class TrackingService:
    """
    Сервис приёма координат.

    Авторитетное состояние (текущая позиция, история) пишется в БД.
    Геозоны, оповещения и аудит вторичны: их ошибки логируются и не
    отменяют принятую точку.
    """

    def __init__(
        self,
        db: DatabaseManager,
        cache: TrackingCache,
        event_bus: EventBus,
        config: Optional[Settings] = None,
    ) -> None:
        """
        Инициализация сервиса.

        Args:
            db: Менеджер базы данных
            cache: Кэш трекинга
            event_bus: Шина событий
            config: Настройки (по умолчанию из config.json)
        """
        if config is None:
            from src.config import settings
            config = settings
        self.config = config

        self._cache = cache
        self._event_bus = event_bus
        self._locations = LocationRepository(db, cache)
        self._family_settings = FamilySettingsRepository(db, cache)
        self._audit = AuditRepository(db)
        self._queue = GeofenceQueueRepository(db)
        self._gate = QualityGate(config.quality_gate)
        self._dedupe = DedupeFilter(cache, config.dedupe.MIN_DISTANCE_M)
        self._rate_limiter = RateLimiter(cache)
        self._sessions = SessionGate(db, cache, event_bus, config.session)
        self._geofences = GeofenceEngine(GeofenceRepository(db, cache))
        self._alerts = AlertsEngine(
            AlertRuleRepository(db, cache), cache, config.alerts.COOLDOWN_SECONDS,
        )
        self._notifications = TrackingNotificationService(event_bus)

    @property
    def sessions(self) -> SessionGate:
        """Session Gate (старт, keepalive, стоп)."""
        return self._sessions

    # =========================================================================
    # ПРИЁМ ТОЧКИ
    # =========================================================================

    async def submit_fix(
        self,
        user_id: int,
        family_id: int,
        fix: Union[LocationFix, dict[str, Any]],
    ) -> IngestResult:
        """
        Принимает точку от устройства.

        Args:
            user_id: ID пользователя
            family_id: ID семьи
            fix: Точка или сырой payload клиента

        Returns:
            IngestResult с решением фильтра и побочными эффектами

        Raises:
            ValidationError: некорректная точка
            RateLimitExceeded: превышен лимит обновлений
            SessionInactive: семья в режиме сессий, активной сессии нет
            PersistenceError: не удалось прочитать или записать позицию
        """
        if not isinstance(fix, LocationFix):
            fix = LocationFix.from_payload(fix)

        family_settings = await self._admit(user_id, family_id)
        result = await self._ingest(user_id, family_id, fix, family_settings)

        if result.decision == FixDecision.PROMOTE and not result.duplicate:
            await self._dispatch(user_id, family_id, fix, family_settings, result)
        return result

    async def submit_batch(
        self,
        user_id: int,
        family_id: int,
        payloads: Sequence[dict[str, Any]],
    ) -> BatchResult:
        """
        Принимает пакет точек, накопленных устройством офлайн.

        Лимит частоты и сессия проверяются один раз на пакет. Точки идут
        от старых к новым через тот же путь, что и одиночная точка.
        Геозоны и правила оцениваются один раз, по последней точке,
        записанной в историю.

        Raises:
            ValidationError: пустой пакет или больше MAX_FIXES_PER_BATCH точек
            RateLimitExceeded: превышен лимит обновлений
            SessionInactive: семья в режиме сессий, активной сессии нет
        """
        max_fixes = self.config.batch.MAX_FIXES_PER_BATCH
        if not payloads:
            raise ValidationError("Пустой пакет точек", field="locations")
        if len(payloads) > max_fixes:
            raise ValidationError(f"В пакете больше {max_fixes} точек", field="locations")

        family_settings = await self._admit(user_id, family_id)

        results: List[BatchItemResult] = []
        parsed: List[tuple[int, LocationFix]] = []
        for index, payload in enumerate(payloads):
            try:
                parsed.append((index, LocationFix.from_payload(payload)))
            except ValidationError as e:
                await log_info(f"Точка {index} пакета пользователя {user_id} отклонена: {e}", type_msg=TypeMsg.DEBUG)
                results.append(BatchItemResult(
                    index=index, client_event_id=_client_event_id(payload), reason=INVALID,
                ))

        # сортировка стабильна: точки с одинаковым временем сохраняют порядок пакета
        parsed.sort(key=lambda item: item[1].recorded_at)

        previous: Optional[PreviousFix] = None
        last_stored: Optional[LocationFix] = None
        storage_failed = False

        for index, fix in parsed:
            item = BatchItemResult(
                index=index,
                client_event_id=_client_event_id(payloads[index]),
                recorded_at=fix.recorded_at,
            )
            results.append(item)
            if storage_failed:
                item.reason = STORAGE_UNAVAILABLE
                continue

            try:
                ingest = await self._ingest(user_id, family_id, fix, family_settings, previous)
            except PersistenceError as e:
                await log_error(f"Пакет пользователя {user_id} прерван на точке {index}: {e}")
                storage_failed = True
                item.reason = STORAGE_UNAVAILABLE
                continue

            item.decision = ingest.decision
            item.accepted = ingest.decision != FixDecision.REJECT
            item.duplicate = ingest.duplicate
            item.motion_state = ingest.motion_state
            item.reason = ingest.reason

            if ingest.decision == FixDecision.PROMOTE:
                previous = PreviousFix(fix.lat, fix.lng, fix.recorded_at)
            if ingest.history_stored:
                last_stored = fix

        results.sort(key=lambda r: r.index)
        accepted = sum(1 for r in results if r.accepted)
        batch = BatchResult(
            total=len(payloads), accepted=accepted, rejected=len(payloads) - accepted, results=results,
        )

        if last_stored is not None:
            tail = IngestResult(decision=FixDecision.PROMOTE, quality_score=0, source=FixSource.UNKNOWN)
            await self._dispatch(user_id, family_id, last_stored, family_settings, tail)
            batch.queued = tail.queued
            batch.geofence_events = tail.geofence_events
            batch.alerts = tail.alerts

        await log_info(
            f"Пакет пользователя {user_id}: принято {accepted} из {len(payloads)}",
            type_msg=TypeMsg.DEBUG,
        )
        return batch

    async def _admit(self, user_id: int, family_id: int) -> FamilyTrackingSettings:
        """Лимит частоты и сессия семьи. Возвращает настройки семьи."""
        if not await self._rate_limiter.allow(
            UPDATE_ACTION, user_id, self.config.rate_limit.UPDATE_MAX_PER_MINUTE,
        ):
            raise RateLimitExceeded(UPDATE_ACTION, user_id)

        family_settings = await self._family_settings.get(family_id)
        if family_settings.mode == TrackingMode.SESSION_GATED:
            live_users = await self._sessions.family_live_users(family_id)
            if not live_users:
                await log_info(
                    f"Точка пользователя {user_id} отклонена: в семье {family_id} нет активной сессии",
                    type_msg=TypeMsg.DEBUG,
                )
                raise SessionInactive(family_id)
        return family_settings

    async def _ingest(
        self,
        user_id: int,
        family_id: int,
        fix: LocationFix,
        family_settings: FamilyTrackingSettings,
        previous: Optional[PreviousFix] = None,
    ) -> IngestResult:
        """
        Фильтр качества, запись позиции, дубликаты и история.
        Геозоны и правила здесь не оцениваются.

        Args:
            previous: Предыдущая точка для оценки движения
                (по умолчанию текущая позиция из хранилища)
        """
        last_best = await self._locations.get_current(user_id)
        gate = self._gate.decide(fix, last_best)

        result = IngestResult(
            decision=gate.decision,
            quality_score=gate.quality_score,
            source=gate.source,
            reason=gate.reason,
        )

        if gate.decision == FixDecision.REJECT:
            await log_info(
                f"Точка пользователя {user_id} отброшена: {gate.reason}",
                type_msg=TypeMsg.DEBUG,
            )
            return result

        if gate.decision == FixDecision.TOUCH:
            await self._locations.touch(user_id, fix)
            return result

        if previous is None and last_best is not None:
            previous = PreviousFix(last_best.lat, last_best.lng, last_best.position_at)

        await self._locations.promote(user_id, family_id, fix, gate)

        if await self._dedupe.is_duplicate(user_id, fix.lat, fix.lng, family_settings.dedupe_radius_m):
            result.duplicate = True
            return result

        motion = classify_motion(fix, previous, family_settings)
        result.motion_state = motion.state
        if not motion.store_history:
            return result

        try:
            await self._locations.append_history(user_id, family_id, fix)
        except PersistenceError:
            # Повтор той же точки клиентом не должен стать дубликатом
            await self._dedupe.forget(user_id)
            raise
        result.history_stored = True

        await self._audit.log(
            family_id,
            user_id,
            TrackingEventType.LOCATION_UPDATE,
            {
                "lat": fix.lat,
                "lng": fix.lng,
                "accuracy_m": fix.accuracy_m,
                "quality_score": gate.quality_score,
                "source": gate.source.value,
                "motion_state": motion.state.value,
            },
        )
        return result

    async def _dispatch(
        self,
        user_id: int,
        family_id: int,
        fix: LocationFix,
        family_settings: FamilyTrackingSettings,
        result: IngestResult,
    ) -> None:
        """Геозоны и правила сразу или через фоновую очередь."""
        if not self.config.geofence_queue.INLINE_EVALUATION:
            result.queued = await self._enqueue(user_id, family_id, fix)
            return

        transitions, triggers = await self.evaluate_fix(user_id, family_id, fix, family_settings)
        result.geofence_events = [t.to_dict() for t in transitions]
        result.alerts = [t.to_dict() for t in triggers]

    async def _enqueue(self, user_id: int, family_id: int, fix: LocationFix) -> bool:
        """Ставит точку в очередь фоновой обработки и будит воркер."""
        try:
            item_id = await self._queue.enqueue(user_id, family_id, fix)
        except DB_ERRORS as e:
            await log_error(f"Не удалось поставить точку пользователя {user_id} в очередь: {e}")
            return False

        await self._event_bus.publish(DomainEvent(
            event_type=EventTypes.FIX_QUEUED,
            payload={"queue_id": item_id, "user_id": user_id, "family_id": family_id},
        ))
        return True

    # =========================================================================
    # ГЕОЗОНЫ И ОПОВЕЩЕНИЯ
    # =========================================================================

    async def evaluate_fix(
        self,
        user_id: int,
        family_id: int,
        fix: LocationFix,
        family_settings: Optional[FamilyTrackingSettings] = None,
        raise_errors: bool = False,
    ) -> tuple[List[GeofenceTransition], List[AlertTrigger]]:
        """
        Геозоны и правила оповещений для принятой точки.

        Используется и при приёме, и фоновым обработчиком очереди.
        При приёме ошибки только логируются: точка уже сохранена.

        Args:
            raise_errors: Поднять первую ошибку после записи всего, что
                удалось оценить (очередь помечает элемент failed и повторяет)

        Returns:
            (переходы с включённым оповещением, сработавшие правила)
        """
        if family_settings is None:
            family_settings = await self._family_settings.get(family_id)

        error: Optional[Exception] = None

        transitions: List[GeofenceTransition] = []
        try:
            transitions = await self._geofences.evaluate(
                user_id, family_id, fix.lat, fix.lng, strict=raise_errors,
            )
        except GeofenceEvaluationError as e:
            transitions = e.transitions
            error = e
            await log_error(f"Ошибка оценки геозон для пользователя {user_id}: {e}")
        except Exception as e:
            error = e
            await log_error(f"Ошибка оценки геозон для пользователя {user_id}: {e}")

        triggers: List[AlertTrigger] = []
        try:
            triggers = await self._alerts.evaluate(
                user_id,
                family_id,
                fix,
                default_speed_kmh=family_settings.speed_alert_kmh,
                default_battery_percent=family_settings.battery_alert_percent,
            )
        except Exception as e:
            error = error or e
            await log_error(f"Ошибка оценки правил оповещений для пользователя {user_id}: {e}")

        for transition in transitions:
            await self._record_transition(transition)
        for trigger in triggers:
            await self._record_trigger(trigger)

        if raise_errors and error is not None:
            raise error
        return [t for t in transitions if t.notify], triggers

    async def _record_transition(self, transition: GeofenceTransition) -> None:
        event_type = (
            TrackingEventType.ENTER_GEOFENCE
            if transition.action == GeofenceAction.ENTER
            else TrackingEventType.EXIT_GEOFENCE
        )
        await self._audit.log(transition.family_id, transition.user_id, event_type, transition.to_dict())

        if not transition.notify:
            return

        await self._event_bus.publish(DomainEvent(
            event_type=EventTypes.GEOFENCE_TRANSITION,
            payload=transition.to_dict(),
        ))
        await self._notifications.notify_geofence(transition)

    async def _record_trigger(self, trigger: AlertTrigger) -> None:
        await self._audit.log(
            trigger.family_id, trigger.user_id, TrackingEventType.ALERT_TRIGGERED, trigger.to_dict(),
        )
        await self._event_bus.publish(DomainEvent(
            event_type=EventTypes.ALERT_TRIGGERED,
            payload=trigger.to_dict(),
        ))
        await self._notifications.notify_alert(trigger)

    # =========================================================================
    # ЧТЕНИЕ
    # =========================================================================

    async def get_current(self, user_id: int) -> Optional[CurrentLocation]:
        return await self._locations.get_current(user_id)

    async def get_family_snapshot(self, family_id: int) -> List[CurrentLocation]:
        return await self._locations.get_family_snapshot(family_id)

    async def get_history(
        self,
        user_id: int,
        family_id: int,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        limit: int = 500,
        offset: int = 0,
    ) -> List[HistoryPoint]:
        return await self._locations.get_history(user_id, family_id, start, end, limit, offset)

    async def get_family_history(
        self,
        family_id: int,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        user_ids: Optional[List[int]] = None,
        limit: int = 1000,
    ) -> List[HistoryPoint]:
        return await self._locations.get_family_history(family_id, start, end, user_ids, limit)

    async def list_events(
        self,
        family_id: int,
        types: Optional[Sequence[TrackingEventType]] = None,
        since: Optional[datetime] = None,
        limit: int = 100,
    ) -> List[TrackingEvent]:
        """Журнал событий семьи."""
        return await self._audit.list(family_id, types, since, limit)

    async def get_family_settings(self, family_id: int) -> FamilyTrackingSettings:
        return await self._family_settings.get(family_id)

    async def update_family_settings(
        self,
        family_id: int,
        user_id: int,
        update: FamilySettingsUpdate,
    ) -> FamilyTrackingSettings:
        """
        Меняет настройки семьи и пишет событие settings_change
        со списком реально изменённых полей.

        Raises:
            ValidationError: не передано ни одного поля
            PersistenceError: запись не удалась
        """
        changes = update.changes()
        if not changes:
            raise ValidationError("Нет изменений настроек")

        before = await self._family_settings.get(family_id)
        saved = await self._family_settings.save(family_id, changes)

        changed_fields = sorted(
            name for name in changes if getattr(before, name) != getattr(saved, name)
        )
        if changed_fields:
            await self._audit.log(
                family_id,
                user_id,
                TrackingEventType.SETTINGS_CHANGE,
                {"changed_fields": changed_fields},
            )
            await log_info(f"Настройки семьи {family_id} изменены пользователем {user_id}: {changed_fields}")
        return saved
