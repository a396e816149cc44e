"""Notification emitter for processed task events.

Unlike the task event publisher, the emitter propagates failures: a lost
notification has no other recovery path, so the originating task event
must be requeued.
"""

import logging

from app.config import get_settings
from app.events.broker import BrokerConnection, get_broker_connection
from app.events.errors import NotificationPublishError
from app.events.types import NotificationEventData, NotificationType, TaskEventData, utc_now

logger = logging.getLogger(__name__)

MESSAGE_TEMPLATES: dict[NotificationType, str] = {
    NotificationType.TASK_CREATED: 'New task "{title}" has been created.',
    NotificationType.TASK_COMPLETED: 'Congratulations! Your task "{title}" has been completed.',
    NotificationType.TASK_DELETED: 'Task "{title}" has been deleted.',
}


def build_notification(
    notification_type: NotificationType, event: TaskEventData
) -> NotificationEventData:
    """Derive a notification from a task event."""
    return NotificationEventData(
        type=notification_type,
        user_id=event.user_id,
        task_id=event.task_id,
        title=event.title,
        message=MESSAGE_TEMPLATES[notification_type].format(title=event.title),
        timestamp=utc_now(),
    )


class NotificationEmitter:
    """Publishes notifications to the durable notification queue."""

    def __init__(
        self,
        broker: BrokerConnection | None = None,
        queue_name: str | None = None,
    ) -> None:
        self._broker = broker
        self.queue_name = queue_name or get_settings().NOTIFICATIONS_QUEUE

    @property
    def broker(self) -> BrokerConnection:
        if self._broker is None:
            self._broker = get_broker_connection()
        return self._broker

    async def emit(self, notification: NotificationEventData) -> None:
        """Publish a notification.

        Raises:
            NotificationPublishError: If the notification was not accepted
        """
        try:
            accepted = await self.broker.publish(
                self.queue_name, notification.to_json_bytes()
            )
        except Exception as e:
            logger.error(
                "Error sending notification",
                extra={
                    "notification_type": notification.type.value,
                    "task_id": notification.task_id,
                    "error": str(e),
                },
            )
            raise NotificationPublishError(
                f"Could not publish {notification.type.value} notification: {e}"
            ) from e

        if not accepted:
            logger.error(
                "Failed to send notification - broker refused message",
                extra={"notification_type": notification.type.value, "task_id": notification.task_id},
            )
            raise NotificationPublishError(
                f"Broker refused {notification.type.value} notification"
            )

        logger.info(
            f"Notification sent: {notification.type.value} for task {notification.task_id}",
            extra={"notification_type": notification.type.value, "user_id": notification.user_id},
        )
