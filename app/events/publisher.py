"""Task event publisher.

Publishing is best-effort and never fails the domain operation that
triggered it:
1. The task write has already committed when publish() is called
2. Without a live channel the publisher asks the broker to connect
3. If that fails, or the broker refuses the message, the event is
   dropped, logged, and False is returned
"""

import logging

from app.config import get_settings
from app.events.broker import BrokerConnection, get_broker_connection
from app.events.errors import BrokerUnavailableError, PublishError
from app.events.types import TaskEventData

logger = logging.getLogger(__name__)


class EventPublisher:
    """Publishes task lifecycle events to the durable work queue."""

    def __init__(
        self,
        broker: BrokerConnection | None = None,
        queue_name: str | None = None,
        enabled: bool | None = None,
    ) -> None:
        """Initialize the event publisher.

        Args:
            broker: Connection manager (default: process-wide instance)
            queue_name: Work queue name (default: TASKS_QUEUE setting)
            enabled: Override the EVENTS_ENABLED setting
        """
        settings = get_settings()
        self._broker = broker
        self.queue_name = queue_name or settings.TASKS_QUEUE
        self.enabled = settings.EVENTS_ENABLED if enabled is None else enabled

    @property
    def broker(self) -> BrokerConnection:
        """Lazy-resolve the connection manager."""
        if self._broker is None:
            self._broker = get_broker_connection()
        return self._broker

    async def publish(self, event: TaskEventData) -> bool:
        """Send a task event to the work queue.

        Failures are logged but do NOT raise exceptions.

        Args:
            event: The task event to publish

        Returns:
            bool: True if the broker accepted the event, False otherwise
        """
        log_extra = {
            "action": event.action.value,
            "task_id": event.task_id,
            "user_id": event.user_id,
        }

        if not self.enabled:
            logger.debug("Event publishing disabled, skipping", extra=log_extra)
            return False

        try:
            accepted = await self.broker.publish(self.queue_name, event.to_json_bytes())

        except BrokerUnavailableError:
            logger.warning(
                "RabbitMQ not available, skipping async processing for task",
                extra=log_extra,
            )
            return False

        except PublishError as e:
            logger.error(
                "Error sending task to queue",
                extra={**log_extra, "error": str(e)},
            )
            return False

        except Exception as e:
            logger.error(
                "Unexpected error publishing task event",
                extra={**log_extra, "error": str(e)},
                exc_info=True,
            )
            return False

        if accepted:
            logger.info(
                f"Task sent to queue: {event.action.value} for task {event.task_id}",
                extra=log_extra,
            )
        else:
            logger.warning("Failed to send task to queue - broker refused message", extra=log_extra)
        return accepted


_publisher_instance: EventPublisher | None = None


def get_event_publisher() -> EventPublisher:
    """Get or create the event publisher singleton.

    Returns:
        EventPublisher: The publisher instance
    """
    global _publisher_instance
    if _publisher_instance is None:
        _publisher_instance = EventPublisher()
    return _publisher_instance
