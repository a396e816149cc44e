"""Task lifecycle event pipeline.

Components:
- types.py: Task and notification message schemas
- broker.py: Per-process RabbitMQ connection manager
- publisher.py: Best-effort task event publishing
- consumers.py: Handlers and the dispatcher routing to them
- notifier.py: Notification publishing (failures propagate)
"""

from app.events.broker import BrokerConnection, ConnectionState, get_broker_connection
from app.events.consumers import (
    DispatchResult,
    EventDispatcher,
    TaskCreatedHandler,
    TaskDeletedHandler,
    TaskEventHandler,
    TaskStatusChangedHandler,
    get_event_dispatcher,
)
from app.events.errors import (
    BrokerUnavailableError,
    EventDecodeError,
    EventPipelineError,
    NotificationPublishError,
    PublishError,
)
from app.events.notifier import NotificationEmitter, build_notification
from app.events.publisher import EventPublisher, get_event_publisher
from app.events.types import (
    NotificationEventData,
    NotificationType,
    TaskAction,
    TaskEventData,
    TaskStatus,
    UnknownTaskEvent,
    decode_task_event,
)

__all__ = [
    # Types
    "NotificationEventData",
    "NotificationType",
    "TaskAction",
    "TaskEventData",
    "TaskStatus",
    "UnknownTaskEvent",
    "decode_task_event",
    # Errors
    "BrokerUnavailableError",
    "EventDecodeError",
    "EventPipelineError",
    "NotificationPublishError",
    "PublishError",
    # Connection
    "BrokerConnection",
    "ConnectionState",
    "get_broker_connection",
    # Publisher
    "EventPublisher",
    "get_event_publisher",
    # Consumers
    "DispatchResult",
    "EventDispatcher",
    "TaskCreatedHandler",
    "TaskDeletedHandler",
    "TaskEventHandler",
    "TaskStatusChangedHandler",
    "get_event_dispatcher",
    # Notifications
    "NotificationEmitter",
    "build_notification",
]
