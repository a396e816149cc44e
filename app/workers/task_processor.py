"""Work-queue consumer for task events.

Processes messages from tasks_queue one at a time:
1. Decodes the payload into a task event
2. Dispatches it to the handler for its action
3. Acks on success or on an unknown action
4. On any failure, requeues the message or, once the delivery limit is
   reached, moves it to the dead-letter queue
"""

import asyncio
import logging
import time
from typing import Any

from aio_pika.abc import AbstractIncomingMessage

from app.config import get_settings
from app.events.broker import BrokerConnection, get_broker_connection
from app.events.consumers import DispatchResult, EventDispatcher, get_event_dispatcher
from app.events.notifier import NotificationEmitter
from app.events.types import decode_task_event
from app.workers.base import ConsumerStats, ProcessingOutcome

logger = logging.getLogger(__name__)

DELIVERY_ATTEMPT_HEADER = "x-delivery-attempt"


def delivery_attempt(headers: dict[str, Any] | None) -> int:
    """Read the 1-based delivery attempt from message headers."""
    value = (headers or {}).get(DELIVERY_ATTEMPT_HEADER)
    if value is None:
        return 1
    try:
        return max(int(str(value)), 1)
    except ValueError:
        return 1


class TaskEventConsumer:
    """Consumes task events with explicit acknowledgment.

    With max_deliveries == 0 a failed message is nacked with requeue and
    may be redelivered forever. With a positive limit, a failed message is
    republished with an incremented x-delivery-attempt header and the
    original acked; the attempt that reaches the limit goes to the
    dead-letter queue instead.
    """

    def __init__(
        self,
        broker: BrokerConnection | None = None,
        dispatcher: EventDispatcher | None = None,
        prefetch_count: int | None = None,
        max_deliveries: int | None = None,
    ) -> None:
        """Initialize the consumer.

        Args:
            broker: Connection manager (default: process-wide instance)
            dispatcher: Event dispatcher (default: the process-wide dispatcher,
                or one emitting through broker when a broker is given)
            prefetch_count: Unacked messages in flight (default from config)
            max_deliveries: Delivery limit before dead-lettering, 0 for none
        """
        settings = get_settings()
        self.broker = broker or get_broker_connection()
        if dispatcher is None:
            dispatcher = (
                get_event_dispatcher() if broker is None
                else EventDispatcher(NotificationEmitter(broker))
            )
        self.dispatcher = dispatcher
        self.queue_name = settings.TASKS_QUEUE
        self.dead_letter_queue = settings.DEAD_LETTER_QUEUE
        self.prefetch_count = prefetch_count or settings.CONSUMER_PREFETCH_COUNT
        self.max_deliveries = (
            settings.TASK_MAX_DELIVERIES if max_deliveries is None else max_deliveries
        )

        self.stats = ConsumerStats()
        self._running = False
        self._stopping = False
        self._has_connected = False
        self._in_flight = 0
        self._idle = asyncio.Event()
        self._idle.set()

    @property
    def is_running(self) -> bool:
        return self._running

    async def start(self) -> bool:
        """Subscribe to the work queue.

        Returns:
            True if the subscription is active now; otherwise it becomes
            active when the broker reconnects
        """
        if self._running:
            return True
        self._running = True
        self._stopping = False
        self._has_connected = self.broker.is_connected
        self.broker.add_reconnect_listener(self._on_reconnect)

        subscribed = await self.broker.consume(
            self.queue_name, self.handle_message, prefetch_count=self.prefetch_count
        )
        if subscribed:
            logger.info("Task consumer started successfully", extra={"queue": self.queue_name})
        else:
            logger.warning(
                "Task consumer waiting for RabbitMQ connection", extra={"queue": self.queue_name}
            )
        return subscribed

    async def stop(self, timeout: float = 30.0) -> None:
        """Stop accepting messages and wait for all in-flight ones."""
        if not self._running:
            return
        self._running = False
        self._stopping = True

        try:
            await self.broker.unsubscribe(self.queue_name)
        except Exception as e:
            logger.warning(f"Error cancelling task consumer: {e}")

        try:
            await asyncio.wait_for(self._idle.wait(), timeout)
        except asyncio.TimeoutError:
            logger.warning(
                "Timed out waiting for in-flight task messages",
                extra={"timeout_seconds": timeout, "in_flight": self._in_flight},
            )

        logger.info("Task consumer stopped", extra=self.stats.to_dict())

    async def _on_reconnect(self) -> None:
        if not self._running:
            return
        if not self._has_connected:
            # First connection, not a reconnect
            self._has_connected = True
            return
        self.stats.reconnections += 1
        logger.info(
            "Task consumer resubscribed after reconnect",
            extra={"reconnections": self.stats.reconnections},
        )

    async def handle_message(self, message: AbstractIncomingMessage) -> ProcessingOutcome:
        """Process one delivered message and settle it.

        Args:
            message: The incoming AMQP message

        Returns:
            ProcessingOutcome describing how the message was settled
        """
        if self._stopping:
            # Delivered after shutdown began; leave it for another consumer
            await self.broker.nack(message, requeue=True)
            self.stats.record(ProcessingOutcome.REQUEUED)
            return ProcessingOutcome.REQUEUED

        self._in_flight += 1
        self._idle.clear()
        try:
            outcome = await self._process(message)
        finally:
            self._in_flight -= 1
            if self._in_flight == 0:
                self._idle.set()
        self.stats.record(outcome)
        return outcome

    async def _process(self, message: AbstractIncomingMessage) -> ProcessingOutcome:
        self.stats.received += 1
        attempt = delivery_attempt(message.headers)
        start = time.monotonic()
        log_extra: dict[str, Any] = {
            "message_id": message.message_id,
            "attempt": attempt,
            "redelivered": bool(message.redelivered),
        }
        logger.debug("Received task message", extra=log_extra)

        try:
            event = decode_task_event(message.body)
            result = await self.dispatcher.dispatch(event)
        except Exception as e:
            self.stats.last_error = str(e)[:500]
            logger.error(
                f"Error processing task message: {e}",
                extra={**log_extra, "error_type": type(e).__name__},
                exc_info=True,
            )
            return await self._handle_failure(message, e, attempt)

        await self.broker.ack(message)
        logger.debug(
            "Task message acknowledged",
            extra={
                **log_extra,
                "action": getattr(event.action, "value", event.action),
                "duration_ms": (time.monotonic() - start) * 1000,
            },
        )
        if result == DispatchResult.IGNORED:
            return ProcessingOutcome.DROPPED
        return ProcessingOutcome.ACKED

    async def _handle_failure(
        self,
        message: AbstractIncomingMessage,
        error: Exception,
        attempt: int,
    ) -> ProcessingOutcome:
        if self.max_deliveries <= 0:
            await self.broker.nack(message, requeue=True)
            return ProcessingOutcome.REQUEUED

        headers = dict(message.headers or {})
        if attempt >= self.max_deliveries:
            headers.update({
                DELIVERY_ATTEMPT_HEADER: attempt,
                "x-death-reason": str(error)[:500],
                "x-error-type": type(error).__name__,
                "x-original-queue": self.queue_name,
            })
            target, outcome = self.dead_letter_queue, ProcessingOutcome.DEAD_LETTERED
        else:
            headers[DELIVERY_ATTEMPT_HEADER] = attempt + 1
            target, outcome = self.queue_name, ProcessingOutcome.REQUEUED

        try:
            accepted = await self.broker.publish(target, message.body, headers)
        except Exception as e:
            logger.error(
                f"Could not forward failed task message to {target}: {e}",
                extra={"message_id": message.message_id, "target": target},
            )
            accepted = False

        if not accepted:
            await self.broker.nack(message, requeue=True)
            return ProcessingOutcome.REQUEUED

        await self.broker.ack(message)
        if outcome == ProcessingOutcome.DEAD_LETTERED:
            logger.warning(
                f"Task message dead-lettered after {attempt} attempts",
                extra={"message_id": message.message_id, "queue": target},
            )
        return outcome
