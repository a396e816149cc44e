"""Shared fixtures: in-memory stand-ins for aio-pika connections.

The fakes implement only the surface BrokerConnection uses, so tests can
simulate broker outages, refused publishes, and dropped connections
without a running RabbitMQ.
"""

import asyncio
import itertools
import json
from typing import Any

import pytest
import pytest_asyncio

from app.config import get_settings
from app.events.broker import BrokerConnection, ConnectionState


class FakeExchange:
    """Default exchange recording every published message."""

    def __init__(self, amqp: "FakeAMQP") -> None:
        self._amqp = amqp

    async def publish(self, message: Any, routing_key: str, **kwargs: Any) -> None:
        amqp = self._amqp
        amqp.active_publishes += 1
        amqp.peak_publishes = max(amqp.peak_publishes, amqp.active_publishes)
        try:
            if amqp.publish_delay:
                await asyncio.sleep(amqp.publish_delay)
            if amqp.publish_error is not None:
                raise amqp.publish_error
            amqp.published.append((routing_key, message))
        finally:
            amqp.active_publishes -= 1


class FakeQueue:
    _tags = itertools.count(1)

    def __init__(self, name: str, durable: bool) -> None:
        self.name = name
        self.durable = durable
        self.consumers: dict[str, Any] = {}
        self.no_ack: bool | None = None

    async def consume(self, callback: Any, no_ack: bool = False) -> str:
        tag = f"ctag-{next(self._tags)}"
        self.consumers[tag] = callback
        self.no_ack = no_ack
        return tag

    async def cancel(self, consumer_tag: str) -> None:
        self.consumers.pop(consumer_tag, None)


class FakeChannel:
    def __init__(self, amqp: "FakeAMQP") -> None:
        self._amqp = amqp
        self.is_closed = False
        self.close_callbacks: set[Any] = set()
        self.default_exchange = FakeExchange(amqp)
        self.queues: dict[str, FakeQueue] = {}
        self.prefetch_count: int | None = None

    async def declare_queue(self, name: str, durable: bool = False, **kwargs: Any) -> FakeQueue:
        if name not in self.queues:
            self.queues[name] = FakeQueue(name, durable)
        return self.queues[name]

    async def set_qos(self, prefetch_count: int = 0, **kwargs: Any) -> None:
        self.prefetch_count = prefetch_count

    async def close(self) -> None:
        self.is_closed = True
        self._amqp.closed.append("channel")


class FakeConnection:
    def __init__(self, amqp: "FakeAMQP") -> None:
        self._amqp = amqp
        self.is_closed = False
        self.close_callbacks: set[Any] = set()
        self.channels: list[FakeChannel] = []
        self.publisher_confirms: bool | None = None

    async def channel(self, publisher_confirms: bool = True, **kwargs: Any) -> FakeChannel:
        self.publisher_confirms = publisher_confirms
        channel = FakeChannel(self._amqp)
        self.channels.append(channel)
        return channel

    async def close(self) -> None:
        self.is_closed = True
        for channel in self.channels:
            channel.is_closed = True
        self._amqp.closed.append("connection")

    def simulate_loss(self, exc: BaseException | None = None) -> None:
        """Drop the connection the way the client library reports it."""
        self.is_closed = True
        for channel in self.channels:
            channel.is_closed = True
        for callback in list(self.close_callbacks):
            callback(self, exc or ConnectionResetError("connection reset by broker"))


class FakeAMQP:
    """Connection factory standing in for aio_pika.connect."""

    def __init__(self) -> None:
        self.available = True
        self.connect_calls = 0
        self.connect_delay = 0.0
        self.connections: list[FakeConnection] = []
        self.closed: list[str] = []
        self.published: list[tuple[str, Any]] = []
        self.publish_error: BaseException | None = None
        self.publish_delay = 0.0
        self.active_publishes = 0
        self.peak_publishes = 0

    async def connect(self, url: str, **kwargs: Any) -> FakeConnection:
        self.connect_calls += 1
        if self.connect_delay:
            await asyncio.sleep(self.connect_delay)
        if not self.available:
            raise ConnectionRefusedError("broker unreachable")
        connection = FakeConnection(self)
        self.connections.append(connection)
        return connection

    @property
    def connection(self) -> FakeConnection:
        return self.connections[-1]

    @property
    def channel(self) -> FakeChannel:
        return self.connection.channels[-1]

    def bodies(self, queue_name: str) -> list[dict[str, Any]]:
        """Decoded JSON bodies published to a queue."""
        return [
            json.loads(message.body.decode("utf-8"))
            for routing_key, message in self.published
            if routing_key == queue_name
        ]

    def messages(self, queue_name: str) -> list[Any]:
        return [message for routing_key, message in self.published if routing_key == queue_name]


class FakeIncomingMessage:
    """Delivered message recording how it was settled."""

    _ids = itertools.count(1)

    def __init__(
        self,
        body: bytes | dict[str, Any],
        headers: dict[str, Any] | None = None,
        redelivered: bool = False,
    ) -> None:
        if isinstance(body, dict):
            body = json.dumps(body).encode("utf-8")
        self.body = body
        self.headers = headers or {}
        self.redelivered = redelivered
        self.message_id = f"msg-{next(self._ids)}"
        self.acked = False
        self.nacked = False
        self.requeued: bool | None = None

    async def ack(self, multiple: bool = False) -> None:
        self.acked = True

    async def nack(self, multiple: bool = False, requeue: bool = True) -> None:
        self.nacked = True
        self.requeued = requeue


async def wait_for_state(
    broker: BrokerConnection, state: ConnectionState, timeout: float = 2.0
) -> None:
    """Poll until the broker reaches a state or fail the test."""
    deadline = asyncio.get_running_loop().time() + timeout
    while broker.state != state:
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError(f"broker stayed {broker.state.value}, expected {state.value}")
        await asyncio.sleep(0.005)


@pytest.fixture(autouse=True)
def fast_settings(monkeypatch):
    """Settings with tiny delays so retry paths run quickly."""
    monkeypatch.setenv("RABBITMQ_HOST", "localhost")
    monkeypatch.setenv("BROKER_RECONNECT_DELAY_SECONDS", "0.01")
    monkeypatch.setenv("BROKER_RECONNECT_MAX_DELAY_SECONDS", "0.02")
    monkeypatch.setenv("BROKER_MAX_CONNECT_ATTEMPTS", "5")
    monkeypatch.setenv("BROKER_OPERATION_TIMEOUT_SECONDS", "1")
    monkeypatch.setenv("TASK_PROCESSING_DELAY_SECONDS", "0")
    monkeypatch.setenv("TASK_MAX_DELIVERIES", "0")
    monkeypatch.setenv("EVENTS_ENABLED", "true")
    monkeypatch.setenv("DATABASE_URL", "sqlite://")
    for name in ("TASKS_QUEUE", "NOTIFICATIONS_QUEUE", "DEAD_LETTER_QUEUE", "CONSUMER_PREFETCH_COUNT"):
        monkeypatch.delenv(name, raising=False)
    get_settings.cache_clear()
    yield get_settings()
    get_settings.cache_clear()


@pytest.fixture
def amqp() -> FakeAMQP:
    return FakeAMQP()


@pytest_asyncio.fixture
async def broker(fast_settings, amqp):
    connection = BrokerConnection(settings=fast_settings, connect_factory=amqp.connect)
    yield connection
    await connection.close()


@pytest.fixture
def task_created_payload() -> dict[str, Any]:
    return {
        "action": "TASK_CREATED",
        "taskId": "t1",
        "userId": "u1",
        "title": "Buy milk",
        "timestamp": "2024-01-01T00:00:00Z",
    }
