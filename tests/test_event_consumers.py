"""Tests for task event handlers and the dispatcher.

These tests run handlers against an in-memory broker and inspect what
reaches the notification queue.
"""

import pytest
from unittest.mock import AsyncMock

from app.events.consumers import (
    DispatchResult,
    EventDispatcher,
    TaskCreatedHandler,
    TaskEventHandler,
    get_event_dispatcher,
)
from app.events.errors import NotificationPublishError
from app.events.notifier import NotificationEmitter
from app.events.types import (
    TaskAction,
    TaskStatus,
    UnknownTaskEvent,
    task_created_event,
    task_deleted_event,
    task_status_changed_event,
)


@pytest.fixture
def emitter(broker):
    return NotificationEmitter(broker=broker)


@pytest.fixture
def dispatcher(emitter):
    return EventDispatcher(emitter=emitter, processing_delay=0)


class TestEventDispatcher:
    """Test routing by action."""

    def test_dispatcher_has_default_handlers(self):
        """Every known action has a handler."""
        dispatcher = get_event_dispatcher()

        assert set(dispatcher.handlers) == set(TaskAction)

    @pytest.mark.asyncio
    async def test_created_emits_one_notification(self, dispatcher, amqp):
        event = task_created_event("t1", "u1", "Buy milk")

        result = await dispatcher.dispatch(event)

        assert result == DispatchResult.HANDLED
        [notification] = amqp.bodies("notifications_queue")
        assert notification["type"] == "TASK_CREATED"
        assert notification["taskId"] == "t1"
        assert notification["userId"] == "u1"
        assert notification["title"] == "Buy milk"
        assert notification["message"] == 'New task "Buy milk" has been created.'
        assert "timestamp" in notification

    @pytest.mark.asyncio
    async def test_completed_status_emits_one_notification(self, dispatcher, amqp):
        event = task_status_changed_event(
            "t1", "u1", "Buy milk", TaskStatus.PENDING, TaskStatus.COMPLETED
        )

        await dispatcher.dispatch(event)

        [notification] = amqp.bodies("notifications_queue")
        assert notification["type"] == "TASK_COMPLETED"
        assert notification["message"] == (
            'Congratulations! Your task "Buy milk" has been completed.'
        )

    @pytest.mark.asyncio
    async def test_reverting_to_pending_emits_nothing(self, dispatcher, amqp):
        """Un-completing a task is logged but not notified."""
        event = task_status_changed_event(
            "t1", "u1", "Buy milk", TaskStatus.COMPLETED, TaskStatus.PENDING
        )

        result = await dispatcher.dispatch(event)

        assert result == DispatchResult.HANDLED
        assert amqp.bodies("notifications_queue") == []

    @pytest.mark.asyncio
    async def test_deleted_emits_one_notification(self, dispatcher, amqp):
        event = task_deleted_event("t1", "u1", "Buy milk")

        await dispatcher.dispatch(event)

        [notification] = amqp.bodies("notifications_queue")
        assert notification["type"] == "TASK_DELETED"
        assert notification["message"] == 'Task "Buy milk" has been deleted.'

    @pytest.mark.asyncio
    async def test_unknown_action_ignored(self, dispatcher, amqp):
        event = UnknownTaskEvent(action="TASK_ARCHIVED", task_id="t1")

        result = await dispatcher.dispatch(event)

        assert result == DispatchResult.IGNORED
        assert amqp.published == []

    @pytest.mark.asyncio
    async def test_emitter_failure_propagates(self, dispatcher, emitter):
        """A lost notification fails the dispatch."""
        emitter.emit = AsyncMock(side_effect=NotificationPublishError("broker down"))

        with pytest.raises(NotificationPublishError):
            await dispatcher.dispatch(task_created_event("t1", "u1", "Buy milk"))

    @pytest.mark.asyncio
    async def test_register_replaces_handler(self, dispatcher, emitter):
        """A registered handler takes over its action."""

        class CountingHandler(TaskEventHandler):
            calls = 0

            @property
            def action(self):
                return TaskAction.CREATED

            async def handle(self, event):
                CountingHandler.calls += 1

        dispatcher.register(CountingHandler(emitter, processing_delay=0))
        await dispatcher.dispatch(task_created_event("t1", "u1", "Buy milk"))

        assert CountingHandler.calls == 1
        assert not isinstance(dispatcher.handlers[TaskAction.CREATED], TaskCreatedHandler)


class TestNotificationEmitter:
    """Test notification publishing failures."""

    @pytest.mark.asyncio
    async def test_broker_down_raises(self, emitter, amqp):
        amqp.available = False
        event = task_created_event("t1", "u1", "Buy milk")

        with pytest.raises(NotificationPublishError):
            await dispatcher_for(emitter).dispatch(event)

    @pytest.mark.asyncio
    async def test_refused_publish_raises(self, emitter, broker):
        broker.publish = AsyncMock(return_value=False)

        with pytest.raises(NotificationPublishError):
            await dispatcher_for(emitter).dispatch(task_deleted_event("t1", "u1", "Buy milk"))


def dispatcher_for(emitter: NotificationEmitter) -> EventDispatcher:
    return EventDispatcher(emitter=emitter, processing_delay=0)
