# src/infra/event_bus.py
"""
Шина событий на базе RabbitMQ.
Связывает приём координат с фоновыми воркерами и доставкой уведомлений.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Awaitable
from uuid import uuid4

import aio_pika
from aio_pika import Message, ExchangeType
from aio_pika.abc import AbstractRobustConnection, AbstractChannel, AbstractExchange, AbstractQueue

from src.common.logger import log_error, log_info, log_warning
from src.common.constants import TypeMsg


# =============================================================================
# ДОМЕННЫЕ СОБЫТИЯ
# =============================================================================

def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


@dataclass
class DomainEvent:
    """Событие, передаваемое через шину."""
    event_id: str = field(default_factory=lambda: str(uuid4()))
    event_type: str = ""
    timestamp: str = field(default_factory=_utc_now_iso)
    payload: dict[str, Any] = field(default_factory=dict)

    def to_json(self) -> str:
        """Сериализует событие в JSON."""
        return json.dumps({
            "event_id": self.event_id,
            "event_type": self.event_type,
            "timestamp": self.timestamp,
            "payload": self.payload,
        }, ensure_ascii=False, default=str)

    @classmethod
    def from_json(cls, data: str | bytes) -> DomainEvent:
        """Десериализует событие из JSON."""
        parsed = json.loads(data)
        return cls(
            event_id=parsed.get("event_id", str(uuid4())),
            event_type=parsed.get("event_type", ""),
            timestamp=parsed.get("timestamp", ""),
            payload=parsed.get("payload", {}),
        )


class EventTypes:
    """Константы типов событий (routing keys)."""
    # Трекинг
    FIX_QUEUED = "tracking.fix_queued"
    GEOFENCE_TRANSITION = "tracking.geofence_transition"
    ALERT_TRIGGERED = "tracking.alert_triggered"
    SESSION_STARTED = "tracking.session_started"
    SESSION_STOPPED = "tracking.session_stopped"

    # Уведомления (доставка во внешнем сервисе)
    NOTIFICATION_SEND = "notification.send"


EventHandler = Callable[[DomainEvent], Awaitable[None]]


class EventBus:
    """
    Шина событий на базе RabbitMQ (topic exchange).

    Реализует:
    - Публикацию событий в exchange
    - Подписку на события через durable очереди
    - Автоматическое переподключение (connect_robust)
    """

    def __init__(self, exchange_name: str = "tracking.events") -> None:
        self._connection: AbstractRobustConnection | None = None
        self._channel: AbstractChannel | None = None
        self._exchange: AbstractExchange | None = None
        self._handlers: dict[str, list[EventHandler]] = {}
        self._queues: dict[str, AbstractQueue] = {}
        self._exchange_name = exchange_name

    @property
    def is_connected(self) -> bool:
        """Проверяет, активно ли соединение."""
        return self._connection is not None and not self._connection.is_closed

    async def connect(
        self,
        url: str | None = None,
        exchange_name: str | None = None,
        prefetch_count: int = 10,
    ) -> None:
        """
        Подключается к RabbitMQ.

        Args:
            url: URL RabbitMQ (если None, берётся из конфига)
            exchange_name: Имя exchange
            prefetch_count: Количество сообщений для prefetch
        """
        if self.is_connected:
            return

        if url is None:
            from src.config import settings
            url = settings.rabbitmq.url
            exchange_name = settings.rabbitmq.RABBITMQ_EXCHANGE
            prefetch_count = settings.rabbitmq.RABBITMQ_PREFETCH_COUNT

        if exchange_name:
            self._exchange_name = exchange_name

        await log_info("Подключение к RabbitMQ...", type_msg=TypeMsg.INFO)

        self._connection = await aio_pika.connect_robust(url)
        self._channel = await self._connection.channel()
        await self._channel.set_qos(prefetch_count=prefetch_count)

        self._exchange = await self._channel.declare_exchange(
            self._exchange_name,
            ExchangeType.TOPIC,
            durable=True,
        )

        await log_info("Подключение к RabbitMQ установлено", type_msg=TypeMsg.INFO)

    async def disconnect(self) -> None:
        """Закрывает соединение с RabbitMQ."""
        if self._connection is not None:
            await self._connection.close()
            self._connection = None
            self._channel = None
            self._exchange = None
            self._queues = {}
            await log_info("Соединение с RabbitMQ закрыто", type_msg=TypeMsg.INFO)

    async def publish(self, event: DomainEvent) -> bool:
        """
        Публикует событие в exchange.

        Ошибки публикации не пробрасываются: шина используется для
        best-effort уведомлений, авторитетное состояние уже записано в БД.

        Args:
            event: Событие

        Returns:
            True если событие отправлено
        """
        if not self.is_connected or self._exchange is None:
            await log_warning(f"Событие {event.event_type} не опубликовано: нет соединения с RabbitMQ")
            return False

        try:
            message = Message(
                body=event.to_json().encode(),
                content_type="application/json",
                message_id=event.event_id,
                timestamp=datetime.now(timezone.utc),
            )

            await self._exchange.publish(message, routing_key=event.event_type)

            await log_info(f"Событие опубликовано: {event.event_type}", type_msg=TypeMsg.DEBUG)
            return True
        except Exception as e:
            await log_error(f"Ошибка публикации события {event.event_type}: {e}")
            return False

    async def subscribe(
        self,
        event_type: str,
        handler: EventHandler,
        queue_name: str | None = None,
    ) -> None:
        """
        Подписывается на события определённого типа.

        Args:
            event_type: Тип события (routing_key pattern)
            handler: Асинхронный обработчик события
            queue_name: Имя очереди (если None, генерируется из event_type)
        """
        if not self.is_connected or self._channel is None or self._exchange is None:
            await log_error("Не удалось подписаться: нет соединения с RabbitMQ")
            return

        self._handlers.setdefault(event_type, []).append(handler)

        if queue_name is None:
            queue_name = f"tracking.{event_type.replace('.', '_')}"

        if queue_name not in self._queues:
            queue = await self._channel.declare_queue(queue_name, durable=True)
            await queue.bind(self._exchange, routing_key=event_type)
            self._queues[queue_name] = queue
            await queue.consume(self._make_consumer(event_type))

        await log_info(f"Подписка на события: {event_type}", type_msg=TypeMsg.DEBUG)

    def _make_consumer(self, event_type: str) -> Callable[[aio_pika.abc.AbstractIncomingMessage], Awaitable[None]]:
        """Создаёт consumer для обработки сообщений."""
        async def consumer(message: aio_pika.abc.AbstractIncomingMessage) -> None:
            async with message.process():
                try:
                    event = DomainEvent.from_json(message.body.decode())
                except (ValueError, UnicodeDecodeError) as e:
                    await log_error(f"Некорректное сообщение в очереди {event_type}: {e}")
                    return

                for handler in self._handlers.get(event_type, []):
                    try:
                        await handler(event)
                    except Exception as e:
                        await log_error(f"Ошибка в обработчике {getattr(handler, '__name__', handler)}: {e}")

        return consumer

    async def health_check(self) -> bool:
        """Проверяет здоровье подключения к RabbitMQ."""
        return self.is_connected


# Экземпляр процесса (создаётся в точке сборки)
_event_bus: EventBus | None = None


def get_event_bus() -> EventBus:
    """Возвращает экземпляр EventBus процесса."""
    global _event_bus
    if _event_bus is None:
        _event_bus = EventBus()
    return _event_bus


async def init_event_bus() -> EventBus:
    """
    Инициализирует подключение к RabbitMQ.
    Использует настройки из конфигурации.
    """
    from src.config import settings

    event_bus = get_event_bus()
    await event_bus.connect(
        url=settings.rabbitmq.url,
        exchange_name=settings.rabbitmq.RABBITMQ_EXCHANGE,
        prefetch_count=settings.rabbitmq.RABBITMQ_PREFETCH_COUNT,
    )
    await log_info(
        f"RabbitMQ подключён: {settings.rabbitmq.RABBITMQ_HOST}:{settings.rabbitmq.RABBITMQ_PORT}",
        type_msg=TypeMsg.INFO,
    )
    return event_bus


async def close_event_bus() -> None:
    """Закрывает подключение к RabbitMQ."""
    event_bus = get_event_bus()
    await event_bus.disconnect()
    await log_info("RabbitMQ отключён", type_msg=TypeMsg.INFO)
