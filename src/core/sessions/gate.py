# src/core/sessions/gate.py
"""
Session Gate: активна ли у пользователя live-сессия.

Проверка идёт через флаг в кэше (TTL ~120 с) с откатом на БД и
восстановлением флага. Инвариант "не больше одной активной сессии
на пользователя" обеспечивается в start(): остановка, затем создание.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import List, Optional

from src.common.constants import SessionMode, TrackingEventType, TypeMsg
from src.common.exceptions import PersistenceError, ValidationError
from src.common.logger import log_error, log_info, log_warning
from src.config.loader import SessionSettings
from src.core.audit.repository import AuditRepository
from src.core.sessions.models import TrackingSession
from src.core.sessions.repository import SessionRepository
from src.core.settings.repository import FamilySettingsRepository
from src.core.tracking.cache import TrackingCache
from src.infra.database import DB_ERRORS, DatabaseManager
from src.infra.event_bus import DomainEvent, EventBus, EventTypes


class SessionGate:
    """Управление сессиями live-трекинга."""

    def __init__(
        self,
        db: DatabaseManager,
        cache: TrackingCache,
        event_bus: Optional[EventBus] = None,
        config: Optional[SessionSettings] = None,
    ) -> None:
        """
        Args:
            db: Менеджер базы данных
            cache: Кэш трекинга
            event_bus: Шина событий (для session_started / session_stopped)
            config: Настройки сессий (по умолчанию из конфигурации)
        """
        if config is None:
            from src.config import settings
            config = settings.session
        self._repo = SessionRepository(db)
        self._audit = AuditRepository(db)
        self._settings_repo = FamilySettingsRepository(db, cache)
        self._cache = cache
        self._event_bus = event_bus
        self.config = config

    # =========================================================================
    # ПРОВЕРКИ
    # =========================================================================

    async def is_active(self, user_id: int) -> bool:
        """
        Есть ли у пользователя активная сессия.
        Кэш, затем БД с восстановлением кэша.
        """
        flag = await self._cache.get_session_flag(user_id)
        if flag is not None:
            return flag

        try:
            session = await self._repo.get_active(user_id)
        except DB_ERRORS as e:
            await log_error(f"Ошибка проверки сессии пользователя {user_id}: {e}")
            return False

        active = session is not None
        await self._cache.set_session_flag(user_id, active)
        return active

    async def get_status(self, user_id: int) -> Optional[TrackingSession]:
        """Активная сессия пользователя или None."""
        try:
            return await self._repo.get_active(user_id)
        except DB_ERRORS as e:
            await log_error(f"Ошибка чтения сессии пользователя {user_id}: {e}")
            raise PersistenceError(f"Не удалось прочитать сессию пользователя {user_id}") from e

    async def family_live_users(self, family_id: int) -> List[int]:
        """
        Пользователи семьи с активной сессией ("кто сейчас live").

        В кэше хранится user_id -> expires_at, и при чтении истёкшие
        сессии отбрасываются: TTL списка дольше, чем живёт сессия
        без keepalive.
        """
        now = datetime.now(timezone.utc)
        key = self._cache.live_key(family_id)
        cached = await self._cache.get_json(key)
        if isinstance(cached, dict):
            try:
                return sorted(
                    int(uid) for uid, expires_at in cached.items()
                    if datetime.fromisoformat(expires_at) > now
                )
            except (TypeError, ValueError) as e:
                await log_warning(f"Повреждён кэш live-пользователей семьи {family_id}: {e}")

        try:
            live = await self._repo.list_live(family_id)
        except DB_ERRORS as e:
            await log_error(f"Ошибка чтения live-пользователей семьи {family_id}: {e}")
            raise PersistenceError(f"Не удалось прочитать сессии семьи {family_id}") from e

        await self._cache.set_json(
            key,
            {str(uid): expires_at.isoformat() for uid, expires_at in live},
            self._cache.ttl.LIVE_TTL,
        )
        return [uid for uid, expires_at in live if expires_at > now]

    # =========================================================================
    # ИЗМЕНЕНИЯ
    # =========================================================================

    def _clamp_interval(self, interval_seconds: Optional[int]) -> int:
        if interval_seconds is None:
            return self.config.DEFAULT_INTERVAL_S
        return max(self.config.MIN_INTERVAL_S, min(self.config.MAX_INTERVAL_S, int(interval_seconds)))

    async def start(
        self,
        user_id: int,
        family_id: int,
        mode: str = SessionMode.LIVE.value,
        interval_seconds: Optional[int] = None,
        duration_seconds: Optional[int] = None,
    ) -> TrackingSession:
        """
        Запускает сессию. Предыдущая активная сессия пользователя останавливается.

        Raises:
            ValidationError: неизвестный режим
            PersistenceError: БД недоступна
        """
        try:
            session_mode = SessionMode(mode)
        except ValueError:
            raise ValidationError(f"Неизвестный режим сессии: {mode}", field="mode")

        interval = self._clamp_interval(interval_seconds)
        duration = duration_seconds or self.config.DEFAULT_DURATION_S
        if duration <= 0:
            raise ValidationError("Длительность сессии должна быть положительной", field="duration_seconds")

        try:
            session, stopped = await self._repo.replace_active(
                user_id=user_id,
                family_id=family_id,
                mode=session_mode,
                interval_seconds=interval,
                duration_seconds=duration,
            )
        except DB_ERRORS as e:
            await log_error(f"Ошибка старта сессии пользователя {user_id}: {e}")
            raise PersistenceError(f"Не удалось запустить сессию пользователя {user_id}") from e

        await self._cache.set_session_flag(user_id, True)
        await self._cache.delete(self._cache.live_key(family_id))

        await self._audit.log(
            family_id, user_id, TrackingEventType.SESSION_ON,
            {"session_id": session.id, "mode": session.mode.value, "interval_seconds": interval},
        )
        await self._publish(EventTypes.SESSION_STARTED, session)

        await log_info(
            f"Сессия {session.id} пользователя {user_id} запущена (остановлено прежних: {stopped})",
            type_msg=TypeMsg.DEBUG,
        )
        return session

    async def keepalive(self, user_id: int, family_id: int) -> Optional[TrackingSession]:
        """
        Продлевает активную сессию и обновляет флаг в кэше.

        Returns:
            Сессия или None, если активной сессии нет
        """
        family_settings = await self._settings_repo.get(family_id)

        try:
            session = await self._repo.keepalive(user_id, family_settings.session_ttl_seconds)
        except DB_ERRORS as e:
            await log_error(f"Ошибка keepalive пользователя {user_id}: {e}")
            raise PersistenceError(f"Не удалось продлить сессию пользователя {user_id}") from e

        await self._cache.set_session_flag(user_id, session is not None)
        # expires_at сдвинулся, кэшированный список устарел
        await self._cache.delete(self._cache.live_key(family_id))
        return session

    async def stop(self, user_id: int, family_id: int) -> int:
        """
        Останавливает сессию пользователя.

        Returns:
            Количество остановленных сессий
        """
        try:
            sessions = await self._repo.stop(user_id)
        except DB_ERRORS as e:
            await log_error(f"Ошибка остановки сессии пользователя {user_id}: {e}")
            raise PersistenceError(f"Не удалось остановить сессию пользователя {user_id}") from e

        await self._cache.clear_session_flag(user_id)
        await self._cache.delete(self._cache.live_key(family_id))

        for session in sessions:
            await self._audit.log(
                session.family_id, user_id, TrackingEventType.SESSION_OFF,
                {"session_id": session.id, "reason": "stopped"},
            )
            await self._publish(EventTypes.SESSION_STOPPED, session)

        return len(sessions)

    async def stop_all(self, family_id: int) -> int:
        """Останавливает все активные сессии семьи."""
        try:
            sessions = await self._repo.stop_family(family_id)
        except DB_ERRORS as e:
            await log_error(f"Ошибка остановки сессий семьи {family_id}: {e}")
            raise PersistenceError(f"Не удалось остановить сессии семьи {family_id}") from e

        for session in sessions:
            await self._cache.clear_session_flag(session.user_id)
            await self._audit.log(
                family_id, session.user_id, TrackingEventType.SESSION_OFF,
                {"session_id": session.id, "reason": "stopped"},
            )
            await self._publish(EventTypes.SESSION_STOPPED, session)
        await self._cache.delete(self._cache.live_key(family_id))

        return len(sessions)

    async def expire_stale(self) -> int:
        """
        Фоновая очистка: истёкшие активные сессии получают статус expired.

        Returns:
            Количество истёкших сессий
        """
        sessions = await self._repo.expire_stale()

        for family_id in {s.family_id for s in sessions}:
            await self._cache.delete(self._cache.live_key(family_id))
        for session in sessions:
            await self._cache.clear_session_flag(session.user_id)
            await self._audit.log(
                session.family_id, session.user_id, TrackingEventType.SESSION_OFF,
                {"session_id": session.id, "reason": "expired"},
            )

        if sessions:
            await log_info(f"Истекло сессий: {len(sessions)}", type_msg=TypeMsg.INFO)
        return len(sessions)

    async def _publish(self, event_type: str, session: TrackingSession) -> None:
        if self._event_bus is None:
            return
        await self._event_bus.publish(DomainEvent(
            event_type=event_type,
            payload={
                "session_id": session.id,
                "user_id": session.user_id,
                "family_id": session.family_id,
                "mode": session.mode.value,
                "status": session.status.value,
            },
        ))
