# src/core/notifications/service.py
"""
Сервис уведомлений трекинга.
Формирует тексты и публикует события доставки в шину.
Фактическая доставка (push, in-app) происходит во внешнем сервисе.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, List, Optional

from src.common.constants import AlertRuleType, GeofenceAction, TypeMsg
from src.common.localization import DEFAULT_LANGUAGE, get_text
from src.common.logger import log_error, log_info
from src.core.alerts.models import AlertTrigger
from src.core.geofences.models import GeofenceTransition
from src.infra.event_bus import DomainEvent, EventBus, EventTypes


@dataclass
class NotificationData:
    """Данные для уведомления."""
    family_id: int
    subject_user_id: int  # О ком уведомление
    kind: str
    message_key: str  # Ключ из lang_dict
    recipients: List[int] = field(default_factory=list)  # пусто = вся семья
    language: str = DEFAULT_LANGUAGE
    kwargs: dict[str, Any] = field(default_factory=dict)
    data: dict[str, Any] = field(default_factory=dict)


def _display_name(user_id: int, name: Optional[str]) -> str:
    return name or f"#{user_id}"


class TrackingNotificationService:
    """
    Публикует события notification.send.

    Ошибки шины не пробрасываются: состояние уже записано в БД.
    """

    def __init__(self, event_bus: EventBus, language: str = DEFAULT_LANGUAGE) -> None:
        """
        Args:
            event_bus: Шина событий
            language: Язык текстов по умолчанию
        """
        self._event_bus = event_bus
        self._language = language

    async def send_notification(self, data: NotificationData) -> bool:
        """
        Публикует уведомление.

        Returns:
            True если событие опубликовано
        """
        try:
            text = get_text(data.message_key, data.language, **data.kwargs)

            published = await self._event_bus.publish(DomainEvent(
                event_type=EventTypes.NOTIFICATION_SEND,
                payload={
                    "family_id": data.family_id,
                    "user_id": data.subject_user_id,
                    "recipients": data.recipients,
                    "kind": data.kind,
                    "text": text,
                    "data": data.data,
                },
            ))

            await log_info(
                f"Уведомление {data.kind} поставлено в очередь: family={data.family_id}, user={data.subject_user_id}",
                type_msg=TypeMsg.DEBUG,
            )
            return published
        except Exception as e:
            await log_error(f"Ошибка отправки уведомления: {e}")
            return False

    async def notify_geofence(
        self,
        transition: GeofenceTransition,
        user_name: Optional[str] = None,
    ) -> bool:
        """Уведомление о входе в геозону или выходе из неё."""
        key = "GEOFENCE_ENTER" if transition.action == GeofenceAction.ENTER else "GEOFENCE_EXIT"
        return await self.send_notification(NotificationData(
            family_id=transition.family_id,
            subject_user_id=transition.user_id,
            kind=f"geofence_{transition.action.value}",
            message_key=key,
            language=self._language,
            kwargs={
                "name": _display_name(transition.user_id, user_name),
                "zone": transition.geofence_name,
            },
            data=transition.to_dict(),
        ))

    async def notify_alert(
        self,
        trigger: AlertTrigger,
        user_name: Optional[str] = None,
    ) -> bool:
        """Уведомление о сработавшем правиле."""
        name = _display_name(trigger.user_id, user_name)
        match trigger.type:
            case AlertRuleType.SPEED:
                key = "ALERT_SPEED"
                kwargs = {"name": name, "speed": round(trigger.value), "limit": round(trigger.threshold)}
            case AlertRuleType.BATTERY:
                key = "ALERT_BATTERY"
                kwargs = {"name": name, "battery": round(trigger.value)}
            case _:
                await log_error(f"Нет шаблона уведомления для правила типа {trigger.type.value}")
                return False

        return await self.send_notification(NotificationData(
            family_id=trigger.family_id,
            subject_user_id=trigger.user_id,
            kind=f"alert_{trigger.type.value}",
            message_key=key,
            recipients=trigger.notify_user_ids,
            language=self._language,
            kwargs=kwargs,
            data=trigger.to_dict(),
        ))

    async def notify_battery_low(
        self,
        user_id: int,
        family_id: int,
        battery_level: int,
        user_name: Optional[str] = None,
    ) -> bool:
        """Уведомление о низком заряде (фоновая обработка очереди)."""
        return await self.send_notification(NotificationData(
            family_id=family_id,
            subject_user_id=user_id,
            kind="battery_low",
            message_key="BATTERY_LOW",
            language=self._language,
            kwargs={"name": _display_name(user_id, user_name), "battery": battery_level},
            data={"battery_level": battery_level},
        ))
