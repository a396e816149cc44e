"""RabbitMQ connection manager.

Each process owns exactly one BrokerConnection, which owns one connection
and one channel. All channel operations (publish, subscribe, ack, nack)
go through this object and are serialized by a single channel lock.

Reconnection policy:
- Any failed connect, or an unexpected connection/channel closure,
  starts a background retry loop. The loop never gives up; the delay
  doubles from BROKER_RECONNECT_DELAY_SECONDS up to
  BROKER_RECONNECT_MAX_DELAY_SECONDS.
- In-band callers (publishers) try a synchronous connect only while the
  consecutive-failure counter is below BROKER_MAX_CONNECT_ATTEMPTS.
  Past that they are told the broker is unavailable straight away and
  the background loop keeps trying. A successful connect resets the
  counter.
"""

import asyncio
import contextlib
import logging
import re
from collections.abc import Awaitable, Callable
from datetime import datetime, timezone
from enum import Enum
from typing import Any
from uuid import uuid4

import aio_pika
from aio_pika import DeliveryMode, Message
from aio_pika.abc import (
    AbstractChannel,
    AbstractConnection,
    AbstractIncomingMessage,
    AbstractQueue,
)
from aio_pika.exceptions import DeliveryError

from app.config import Settings, get_settings
from app.events.errors import BrokerUnavailableError, PublishError

logger = logging.getLogger(__name__)

MessageCallback = Callable[[AbstractIncomingMessage], Awaitable[Any]]
ReconnectListener = Callable[[], Awaitable[None]]
ConnectFactory = Callable[..., Awaitable[AbstractConnection]]


class ConnectionState(str, Enum):
    """Process-local broker connection state."""

    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    FAILED = "failed"


def sanitize_url(url: str) -> str:
    """Remove credentials from a broker URL for logging."""
    return re.sub(r"://[^:/@]+:[^@]+@", "://***:***@", url)


class BrokerConnection:
    """Owner of the process's single broker connection and channel."""

    def __init__(
        self,
        settings: Settings | None = None,
        connect_factory: ConnectFactory | None = None,
    ) -> None:
        """Initialize the connection manager.

        Args:
            settings: Settings to use (default: cached environment settings)
            connect_factory: Coroutine function opening a connection from a
                URL (default: aio_pika.connect)
        """
        self._settings = settings or get_settings()
        self._connect_factory = connect_factory or aio_pika.connect

        self._connection: AbstractConnection | None = None
        self._channel: AbstractChannel | None = None
        self._queues: dict[str, AbstractQueue] = {}
        self._state = ConnectionState.DISCONNECTED
        self._failed_attempts = 0
        self._closing = False

        self._channel_lock = asyncio.Lock()
        self._connect_task: asyncio.Task[bool] | None = None
        self._reconnect_task: asyncio.Task[None] | None = None
        self._cleanup_tasks: set[asyncio.Task[None]] = set()

        # queue name -> (callback, prefetch count)
        self._subscriptions: dict[str, tuple[MessageCallback, int]] = {}
        # queue name -> consumer tag on the current channel
        self._consumer_tags: dict[str, str] = {}
        self._reconnect_listeners: list[ReconnectListener] = []

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def failed_attempts(self) -> int:
        """Consecutive failed connection attempts since the last success."""
        return self._failed_attempts

    @property
    def is_connected(self) -> bool:
        return (
            self._state == ConnectionState.CONNECTED
            and self._channel is not None
            and not self._channel.is_closed
        )

    @property
    def is_closing(self) -> bool:
        return self._closing

    @property
    def queue_names(self) -> list[str]:
        """Durable queues declared on every (re)connect."""
        names = [self._settings.TASKS_QUEUE, self._settings.NOTIFICATIONS_QUEUE]
        if self._settings.TASK_MAX_DELIVERIES > 0:
            names.append(self._settings.DEAD_LETTER_QUEUE)
        return names

    def reconnect_delay(self, attempt: int) -> float:
        """Delay before background reconnect attempt number ``attempt``."""
        base = self._settings.BROKER_RECONNECT_DELAY_SECONDS
        cap = self._settings.BROKER_RECONNECT_MAX_DELAY_SECONDS
        return min(base * (2 ** max(attempt - 1, 0)), cap)

    def add_reconnect_listener(self, listener: ReconnectListener) -> None:
        """Register a coroutine called after every successful (re)connect."""
        if listener not in self._reconnect_listeners:
            self._reconnect_listeners.append(listener)

    # ------------------------------------------------------------------
    # Connect / reconnect
    # ------------------------------------------------------------------

    async def connect(self) -> bool:
        """Open the connection and channel and declare the durable queues.

        Never raises. Concurrent callers wait for the attempt already in
        flight instead of starting a second one.

        Returns:
            True if a live channel is available afterwards
        """
        if self._closing:
            return False
        if self.is_connected:
            return True

        if self._connect_task is not None and not self._connect_task.done():
            logger.debug("RabbitMQ connection attempt already in progress, waiting")
        else:
            self._connect_task = asyncio.create_task(self._open())

        task = self._connect_task
        try:
            return await asyncio.shield(task)
        except asyncio.CancelledError:
            # close() cancelled the attempt; callers just see "not connected"
            if self._closing and task.cancelled():
                return False
            raise

    async def ensure_connected(self) -> bool:
        """In-band connect used on publish paths.

        Returns False without trying once too many consecutive attempts
        have failed; the background retry loop is left running.
        """
        if self.is_connected:
            return True
        if self._closing:
            return False

        max_attempts = self._settings.BROKER_MAX_CONNECT_ATTEMPTS
        if self._failed_attempts >= max_attempts:
            logger.warning(
                f"Maximum RabbitMQ connection attempts ({max_attempts}) reached, "
                "operating without broker",
                extra={"failed_attempts": self._failed_attempts},
            )
            self._schedule_reconnect()
            return False

        return await self.connect()

    async def _open(self) -> bool:
        settings = self._settings
        timeout = settings.BROKER_OPERATION_TIMEOUT_SECONDS
        url = settings.broker_url
        attempt = self._failed_attempts + 1

        self._state = ConnectionState.CONNECTING
        logger.info(
            f"Connecting to RabbitMQ at {settings.RABBITMQ_HOST} (attempt {attempt})",
            extra={"rabbitmq_url": sanitize_url(url), "attempt": attempt},
        )

        connection: AbstractConnection | None = None
        try:
            connection = await asyncio.wait_for(self._connect_factory(url), timeout)
            channel = await asyncio.wait_for(
                connection.channel(publisher_confirms=True), timeout
            )

            queues: dict[str, AbstractQueue] = {}
            for name in self.queue_names:
                queues[name] = await asyncio.wait_for(
                    channel.declare_queue(name, durable=True), timeout
                )

            self._connection = connection
            self._channel = channel
            self._queues = queues

            for queue_name, (callback, prefetch) in self._subscriptions.items():
                await self._subscribe(queue_name, callback, prefetch)

        except Exception as e:
            self._drop_channel()
            self._failed_attempts += 1
            self._state = ConnectionState.FAILED
            logger.error(
                f"Error connecting to RabbitMQ: {e}",
                extra={
                    "rabbitmq_url": sanitize_url(url),
                    "failed_attempts": self._failed_attempts,
                    "error_type": type(e).__name__,
                },
            )
            if connection is not None:
                await self._close_quietly(connection)
            self._schedule_reconnect()
            return False

        connection.close_callbacks.add(self._on_connection_close)
        channel.close_callbacks.add(self._on_channel_close)

        self._failed_attempts = 0
        self._state = ConnectionState.CONNECTED
        logger.info(
            "Connected to RabbitMQ successfully",
            extra={"queues": list(queues), "subscriptions": list(self._subscriptions)},
        )

        for listener in self._reconnect_listeners:
            try:
                await listener()
            except Exception as e:
                logger.error(
                    f"Reconnect listener failed: {e}",
                    extra={"listener": getattr(listener, "__qualname__", repr(listener))},
                    exc_info=True,
                )
        return True

    def _schedule_reconnect(self) -> None:
        if self._closing:
            return
        if self._reconnect_task is not None and not self._reconnect_task.done():
            return
        self._reconnect_task = asyncio.create_task(self._reconnect_loop())

    async def _reconnect_loop(self) -> None:
        attempt = 0
        while not self._closing and not self.is_connected:
            attempt += 1
            delay = self.reconnect_delay(attempt)
            logger.info(
                f"Reconnecting to RabbitMQ in {delay:g}s",
                extra={"attempt": attempt, "delay_seconds": delay},
            )
            await asyncio.sleep(delay)
            if self._closing:
                break
            if await self.connect():
                break

    def _on_connection_close(
        self, sender: Any, exc: BaseException | None = None, *args: Any
    ) -> None:
        if self._closing or sender is not self._connection:
            return
        logger.warning(
            "RabbitMQ connection closed, will try to reconnect",
            extra={"error": str(exc) if exc else None},
        )
        self._drop_channel()
        self._schedule_reconnect()

    def _on_channel_close(
        self, sender: Any, exc: BaseException | None = None, *args: Any
    ) -> None:
        if self._closing or sender is not self._channel:
            return
        logger.warning(
            "RabbitMQ channel closed, reopening connection",
            extra={"error": str(exc) if exc else None},
        )
        connection = self._connection
        self._drop_channel()
        if connection is not None and not connection.is_closed:
            task = asyncio.create_task(self._close_quietly(connection))
            self._cleanup_tasks.add(task)
            task.add_done_callback(self._cleanup_tasks.discard)
        self._schedule_reconnect()

    def _drop_channel(self) -> None:
        self._connection = None
        self._channel = None
        self._queues = {}
        self._consumer_tags.clear()
        self._state = ConnectionState.DISCONNECTED

    async def _close_quietly(self, resource: Any) -> None:
        try:
            await resource.close()
        except Exception as e:
            logger.debug(f"Ignoring error while closing {type(resource).__name__}: {e}")

    # ------------------------------------------------------------------
    # Channel operations
    # ------------------------------------------------------------------

    async def publish(
        self,
        queue_name: str,
        body: bytes,
        headers: dict[str, Any] | None = None,
    ) -> bool:
        """Publish a persistent JSON message to a queue.

        Args:
            queue_name: Destination queue (default exchange routing)
            body: UTF-8 JSON payload
            headers: Optional AMQP headers

        Returns:
            True if the broker accepted the message, False if it refused it

        Raises:
            BrokerUnavailableError: If no live channel could be obtained
            PublishError: If the publish failed or timed out
        """
        if not await self.ensure_connected():
            raise BrokerUnavailableError("RabbitMQ channel not available")

        message = Message(
            body,
            content_type="application/json",
            content_encoding="utf-8",
            delivery_mode=DeliveryMode.PERSISTENT,
            message_id=uuid4().hex,
            timestamp=datetime.now(timezone.utc),
            headers=headers or {},
        )

        async with self._channel_lock:
            channel = self._channel
            if channel is None or channel.is_closed:
                raise BrokerUnavailableError("RabbitMQ channel not available")
            try:
                await asyncio.wait_for(
                    channel.default_exchange.publish(message, routing_key=queue_name),
                    self._settings.BROKER_OPERATION_TIMEOUT_SECONDS,
                )
            except DeliveryError as e:
                logger.warning(
                    f"Broker refused message for {queue_name}: {e}",
                    extra={"queue": queue_name, "message_id": message.message_id},
                )
                return False
            except asyncio.TimeoutError as e:
                raise PublishError(f"Publish to {queue_name} timed out") from e
            except Exception as e:
                raise PublishError(f"Publish to {queue_name} failed: {e}") from e

        return True

    async def consume(
        self,
        queue_name: str,
        callback: MessageCallback,
        prefetch_count: int | None = None,
    ) -> bool:
        """Subscribe a callback to a queue with manual acknowledgment.

        The subscription is remembered and re-established after every
        reconnect, so a False return only means it is not active yet.
        """
        prefetch = prefetch_count or self._settings.CONSUMER_PREFETCH_COUNT
        self._subscriptions[queue_name] = (callback, prefetch)

        if not await self.ensure_connected():
            logger.warning(
                f"RabbitMQ not available, subscription to {queue_name} deferred",
                extra={"queue": queue_name},
            )
            return False

        # A fresh connect already restored the subscription
        if queue_name in self._consumer_tags:
            return True

        try:
            await self._subscribe(queue_name, callback, prefetch)
        except Exception as e:
            logger.error(
                f"Error consuming from queue {queue_name}: {e}",
                extra={"queue": queue_name},
                exc_info=True,
            )
            return False
        return True

    async def _subscribe(
        self, queue_name: str, callback: MessageCallback, prefetch: int
    ) -> None:
        channel = self._channel
        if channel is None:
            raise BrokerUnavailableError("RabbitMQ channel not available")

        async with self._channel_lock:
            await channel.set_qos(prefetch_count=prefetch)
            queue = self._queues.get(queue_name)
            if queue is None:
                queue = await channel.declare_queue(queue_name, durable=True)
                self._queues[queue_name] = queue
            tag = await queue.consume(callback, no_ack=False)

        self._consumer_tags[queue_name] = tag
        logger.info(
            f"Consumer set up for queue: {queue_name}",
            extra={"queue": queue_name, "prefetch_count": prefetch, "consumer_tag": tag},
        )

    async def unsubscribe(self, queue_name: str) -> None:
        """Stop delivering messages from a queue to its callback."""
        self._subscriptions.pop(queue_name, None)
        tag = self._consumer_tags.pop(queue_name, None)
        queue = self._queues.get(queue_name)
        if tag is None or queue is None or not self.is_connected:
            return
        async with self._channel_lock:
            await queue.cancel(tag)

    async def ack(self, message: AbstractIncomingMessage) -> None:
        async with self._channel_lock:
            await message.ack()

    async def nack(self, message: AbstractIncomingMessage, requeue: bool = True) -> None:
        async with self._channel_lock:
            await message.nack(requeue=requeue)

    # ------------------------------------------------------------------
    # Teardown
    # ------------------------------------------------------------------

    async def close(self) -> None:
        """Close channel then connection; no reconnection afterwards."""
        if self._closing and self._connection is None:
            return
        self._closing = True

        for task in (self._reconnect_task, self._connect_task):
            if task is not None and not task.done():
                task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await task
        self._reconnect_task = None
        self._connect_task = None

        channel, connection = self._channel, self._connection
        self._drop_channel()

        if channel is not None and not channel.is_closed:
            await self._close_quietly(channel)
        if connection is not None and not connection.is_closed:
            await self._close_quietly(connection)

        logger.info("RabbitMQ connection closed")


_broker_instance: BrokerConnection | None = None


def get_broker_connection() -> BrokerConnection:
    """Get or create the process-wide broker connection.

    Returns:
        BrokerConnection: The singleton connection manager
    """
    global _broker_instance
    if _broker_instance is None:
        _broker_instance = BrokerConnection()
    return _broker_instance
