"""Task event handlers and the dispatcher that routes to them.

Event Flow:
    tasks_queue → TaskEventConsumer → EventDispatcher → handler
                                                          ↓
                                    NotificationEmitter → notifications_queue

Handlers may raise; the consumer turns any exception into a requeue of
the task event. Unknown actions are dropped by the dispatcher.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from enum import Enum

from app.config import get_settings
from app.events.notifier import NotificationEmitter, build_notification
from app.events.types import (
    NotificationType,
    TaskAction,
    TaskEventData,
    TaskStatus,
    UnknownTaskEvent,
)

logger = logging.getLogger(__name__)


class DispatchResult(str, Enum):
    """Outcome of dispatching one event."""

    HANDLED = "handled"
    IGNORED = "ignored"


# -----------------------------------------------------------------------------
# Handler Base Class
# -----------------------------------------------------------------------------


class TaskEventHandler(ABC):
    """Abstract base class for task event handlers.

    Each handler processes exactly one action and may emit notifications.
    """

    def __init__(
        self,
        emitter: NotificationEmitter,
        processing_delay: float | None = None,
    ) -> None:
        """Initialize the handler.

        Args:
            emitter: Notification emitter used for derived events
            processing_delay: Seconds of simulated work before emitting
                (default: TASK_PROCESSING_DELAY_SECONDS setting)
        """
        self.emitter = emitter
        if processing_delay is None:
            processing_delay = get_settings().TASK_PROCESSING_DELAY_SECONDS
        self.processing_delay = processing_delay

    @property
    @abstractmethod
    def action(self) -> TaskAction:
        """The action this handler processes."""
        pass

    @abstractmethod
    async def handle(self, event: TaskEventData) -> None:
        """Process an event.

        Raises:
            Exception: If processing fails and the event must be retried
        """
        pass

    async def simulate_work(self) -> None:
        """Placeholder for downstream business logic."""
        if self.processing_delay > 0:
            await asyncio.sleep(self.processing_delay)

    async def notify(self, notification_type: NotificationType, event: TaskEventData) -> None:
        await self.emitter.emit(build_notification(notification_type, event))


# -----------------------------------------------------------------------------
# Handlers
# -----------------------------------------------------------------------------


class TaskCreatedHandler(TaskEventHandler):
    """Sends a TASK_CREATED notification for every new task."""

    @property
    def action(self) -> TaskAction:
        return TaskAction.CREATED

    async def handle(self, event: TaskEventData) -> None:
        logger.info(f"Processing new task creation: {event.task_id}")
        await self.simulate_work()
        await self.notify(NotificationType.TASK_CREATED, event)
        logger.info(f"Task creation processed: {event.task_id}")


class TaskStatusChangedHandler(TaskEventHandler):
    """Logs every status change; notifies only on completion."""

    @property
    def action(self) -> TaskAction:
        return TaskAction.STATUS_CHANGED

    async def handle(self, event: TaskEventData) -> None:
        old = event.old_status.value if event.old_status else None
        new = event.new_status.value if event.new_status else None
        logger.info(
            f"Processing task status change: {event.task_id} ({old} -> {new})",
            extra={"task_id": event.task_id, "old_status": old, "new_status": new},
        )
        await self.simulate_work()

        if event.new_status == TaskStatus.COMPLETED:
            logger.info(f"Task {event.task_id} marked as completed")
            await self.notify(NotificationType.TASK_COMPLETED, event)

        logger.info(f"Task status change processed: {event.task_id}")


class TaskDeletedHandler(TaskEventHandler):
    """Sends a TASK_DELETED notification."""

    @property
    def action(self) -> TaskAction:
        return TaskAction.DELETED

    async def handle(self, event: TaskEventData) -> None:
        logger.info(f"Processing task deletion: {event.task_id}")
        await self.simulate_work()
        await self.notify(NotificationType.TASK_DELETED, event)
        logger.info(f"Task deletion processed: {event.task_id}")


# -----------------------------------------------------------------------------
# Event Dispatcher
# -----------------------------------------------------------------------------


class EventDispatcher:
    """Routes a decoded task event to the handler for its action.

    Unlike a fan-out, exactly one handler runs per event and its errors
    propagate to the caller so the message can be requeued.
    """

    def __init__(
        self,
        emitter: NotificationEmitter | None = None,
        processing_delay: float | None = None,
    ) -> None:
        """Initialize the dispatcher with the default handlers."""
        self.emitter = emitter or NotificationEmitter()
        self._handlers: dict[TaskAction, TaskEventHandler] = {}
        for handler_cls in (TaskCreatedHandler, TaskStatusChangedHandler, TaskDeletedHandler):
            self.register(handler_cls(self.emitter, processing_delay))

    @property
    def handlers(self) -> dict[TaskAction, TaskEventHandler]:
        return dict(self._handlers)

    def register(self, handler: TaskEventHandler) -> None:
        """Register a handler, replacing any existing one for its action."""
        self._handlers[handler.action] = handler

    async def dispatch(self, event: TaskEventData | UnknownTaskEvent) -> DispatchResult:
        """Dispatch an event to its handler.

        Returns:
            DispatchResult.IGNORED for actions without a handler

        Raises:
            Exception: Whatever the handler raised
        """
        if isinstance(event, UnknownTaskEvent):
            logger.warning(
                f"Unknown task action: {event.action}",
                extra={"action": event.action, "task_id": event.task_id},
            )
            return DispatchResult.IGNORED

        handler = self._handlers.get(event.action)
        if handler is None:
            logger.warning(
                f"No handler registered for action: {event.action.value}",
                extra={"action": event.action.value, "task_id": event.task_id},
            )
            return DispatchResult.IGNORED

        await handler.handle(event)
        return DispatchResult.HANDLED


_dispatcher_instance: EventDispatcher | None = None


def get_event_dispatcher() -> EventDispatcher:
    """Get or create the event dispatcher singleton.

    Returns:
        EventDispatcher: The singleton dispatcher instance
    """
    global _dispatcher_instance
    if _dispatcher_instance is None:
        _dispatcher_instance = EventDispatcher()
    return _dispatcher_instance
