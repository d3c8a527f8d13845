# trip_matching/infra/event_bus.py
"""
Публикация событий заказа.
Поток событий привязан к order_id: события одного заказа доставляются в порядке публикации.

Реализации:
- InMemoryEventStream: очереди подписчиков внутри процесса
- RabbitMQEventBus: topic exchange, ключ маршрутизации order.<id>.<тип>
"""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from collections import defaultdict
from datetime import datetime, timezone
from typing import Awaitable, Callable

import aio_pika
from aio_pika import ExchangeType, Message
from aio_pika.abc import (
    AbstractChannel,
    AbstractConnection,
    AbstractExchange,
    AbstractIncomingMessage,
    AbstractQueue,
)

from trip_matching.common.constants import TypeMsg
from trip_matching.common.logger import log_error, log_info
from trip_matching.common.retry import RetryPolicy
from trip_matching.events import DomainEvent, parse_event

# Тип обработчика событий
EventHandler = Callable[[DomainEvent], Awaitable[None]]

ALL_ORDERS = "*"


class EventPublisher(ABC):
    """Интерфейс публикации событий."""

    @abstractmethod
    async def publish(self, event: DomainEvent) -> DomainEvent:
        """Публикует событие. Возвращает событие с присвоенным номером."""

    @abstractmethod
    def order_lock(self, order_id: str) -> asyncio.Lock:
        """
        Блокировка заказа: запись в хранилище и публикация её событий идут под ней,
        так номера событий заказа возрастают вместе с его версией.
        """


class _SequenceMixin:
    """Порядковые номера событий в рамках заказа."""

    def _init_sequences(self) -> None:
        self._sequences: dict[str, int] = defaultdict(int)
        self._order_locks: dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    def order_lock(self, order_id: str) -> asyncio.Lock:
        return self._order_locks[order_id]

    def _next_sequence(self, event: DomainEvent) -> DomainEvent:
        self._sequences[event.order_id] += 1
        return event.model_copy(update={"sequence": self._sequences[event.order_id]})


class InMemoryEventStream(_SequenceMixin, EventPublisher):
    """
    Поток событий внутри процесса.
    Подписка на конкретный заказ или на все заказы (ALL_ORDERS).
    """

    def __init__(self) -> None:
        self._init_sequences()
        self._history: dict[str, list[DomainEvent]] = defaultdict(list)
        self._subscribers: dict[str, list[asyncio.Queue[DomainEvent]]] = defaultdict(list)

    async def publish(self, event: DomainEvent) -> DomainEvent:
        numbered = self._next_sequence(event)
        self._history[numbered.order_id].append(numbered)

        for key in (numbered.order_id, ALL_ORDERS):
            for queue in self._subscribers.get(key, []):
                queue.put_nowait(numbered)

        await log_info(
            f"Событие {numbered.event_type} #{numbered.sequence} по заказу {numbered.order_id}",
            type_msg=TypeMsg.DEBUG,
        )
        return numbered

    def subscribe(self, order_id: str = ALL_ORDERS) -> asyncio.Queue[DomainEvent]:
        """Возвращает очередь, в которую приходят события заказа."""
        queue: asyncio.Queue[DomainEvent] = asyncio.Queue()
        self._subscribers[order_id].append(queue)
        return queue

    def unsubscribe(self, queue: asyncio.Queue[DomainEvent], order_id: str = ALL_ORDERS) -> None:
        subscribers = self._subscribers.get(order_id, [])
        if queue in subscribers:
            subscribers.remove(queue)

    def history(self, order_id: str) -> list[DomainEvent]:
        """Все события заказа в порядке публикации."""
        return list(self._history.get(order_id, []))

    def event_types(self, order_id: str) -> list[str]:
        return [event.event_type for event in self.history(order_id)]


class RabbitMQEventBus(_SequenceMixin, EventPublisher):
    """
    Шина событий на базе RabbitMQ.

    Реализует:
    - Публикацию событий в topic exchange с повторами
    - Подписку на события по шаблону ключа (order.*.offer_received, order.#)
    """

    _instance: RabbitMQEventBus | None = None

    def __new__(cls) -> RabbitMQEventBus:
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __init__(self) -> None:
        if hasattr(self, "_initialized"):
            return
        self._initialized = True
        self._init_sequences()
        self._connection: AbstractConnection | None = None
        self._channel: AbstractChannel | None = None
        self._exchange: AbstractExchange | None = None
        self._handlers: dict[str, list[EventHandler]] = {}
        self._queues: dict[str, AbstractQueue] = {}
        self._exchange_name = "matching.orders"
        self._retry: RetryPolicy | None = None

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
            from trip_matching.config import settings
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

    async def publish(self, event: DomainEvent) -> DomainEvent:
        """
        Публикует событие в exchange.

        Raises:
            ServiceUnavailable: публикация не удалась после всех повторов
        """
        numbered = self._next_sequence(event)
        if self._retry is None:
            self._retry = RetryPolicy.from_settings()
        await self._retry.run(self._publish_once, numbered, operation="event_bus.publish")

        await log_info(f"Событие опубликовано: {numbered.routing_key}", type_msg=TypeMsg.DEBUG)
        return numbered

    async def _publish_once(self, event: DomainEvent) -> None:
        if not self.is_connected or self._exchange is None:
            raise ConnectionError("Нет соединения с RabbitMQ")

        message = Message(
            body=event.to_json().encode(),
            content_type="application/json",
            message_id=event.event_id,
            timestamp=datetime.now(timezone.utc),
            headers={"order_id": event.order_id, "sequence": event.sequence},
        )
        await self._exchange.publish(message, routing_key=event.routing_key)

    async def subscribe(
        self,
        pattern: str,
        handler: EventHandler,
        queue_name: str | None = None,
    ) -> None:
        """
        Подписывается на события по шаблону ключа маршрутизации.

        Args:
            pattern: Шаблон (например, "order.*.offer_received")
            handler: Асинхронный обработчик события
            queue_name: Имя очереди (если None, генерируется из шаблона)
        """
        if not self.is_connected or self._channel is None or self._exchange is None:
            raise ConnectionError("Не удалось подписаться: нет соединения с RabbitMQ")

        self._handlers.setdefault(pattern, []).append(handler)

        if queue_name is None:
            queue_name = f"matching.{pattern.replace('.', '_').replace('*', 'any').replace('#', 'all')}"

        if queue_name not in self._queues:
            queue = await self._channel.declare_queue(queue_name, durable=True)
            await queue.bind(self._exchange, routing_key=pattern)
            self._queues[queue_name] = queue
            await queue.consume(self._make_consumer(pattern))

        await log_info(f"Подписка на события: {pattern}", type_msg=TypeMsg.DEBUG)

    def _make_consumer(self, pattern: str) -> Callable[[AbstractIncomingMessage], Awaitable[None]]:
        """Создаёт consumer для обработки сообщений."""
        async def consumer(message: AbstractIncomingMessage) -> None:
            async with message.process():
                event = parse_event(message.body)
                for handler in self._handlers.get(pattern, []):
                    try:
                        await handler(event)
                    except Exception as e:
                        await log_error(
                            f"Ошибка в обработчике {getattr(handler, '__name__', handler)}: {e}",
                            exc_info=True,
                        )

        return consumer

    async def health_check(self) -> bool:
        """Проверяет здоровье подключения к RabbitMQ."""
        return self.is_connected


def get_event_bus() -> RabbitMQEventBus:
    """Возвращает глобальный экземпляр RabbitMQEventBus."""
    return RabbitMQEventBus()


async def init_event_bus() -> RabbitMQEventBus:
    """
    Инициализирует подключение к RabbitMQ.
    Использует настройки из конфигурации.
    """
    from trip_matching.config import settings

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
    await get_event_bus().disconnect()
