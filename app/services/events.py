"""Task event emission for domain operations.

Called by request handlers after a task mutation has committed. None of
these functions raise: messaging failures are logged and reported as
False so the primary write path is unaffected by broker health.

Usage:
    from app.services.events import emit_task_created, schedule_task_event

    # Await the publish (still never raises)
    await emit_task_created(str(task.id), str(user.id), task.title)

    # Fire-and-forget from a handler that must not wait on the broker
    schedule_task_event(task_deleted_event(str(task.id), str(user.id), task.title))
"""

import asyncio
import logging

from app.events.publisher import get_event_publisher
from app.events.types import (
    TaskEventData,
    TaskStatus,
    task_created_event,
    task_deleted_event,
    task_status_changed_event,
)

logger = logging.getLogger(__name__)

# Strong references so scheduled publishes are not garbage-collected
_pending: set[asyncio.Task[bool]] = set()


async def emit_task_event(event: TaskEventData) -> bool:
    """Publish a task event, converting any failure to False.

    Args:
        event: The fully-formed task event

    Returns:
        True if the broker accepted the event
    """
    try:
        return await get_event_publisher().publish(event)
    except Exception as e:
        logger.error(
            "Task event emission failed",
            extra={"action": event.action.value, "task_id": event.task_id, "error": str(e)},
            exc_info=True,
        )
        return False


async def emit_task_created(task_id: str, user_id: str, title: str) -> bool:
    return await emit_task_event(task_created_event(task_id, user_id, title))


async def emit_task_status_changed(
    task_id: str,
    user_id: str,
    title: str,
    old_status: TaskStatus,
    new_status: TaskStatus,
) -> bool:
    return await emit_task_event(
        task_status_changed_event(task_id, user_id, title, old_status, new_status)
    )


async def emit_task_deleted(task_id: str, user_id: str, title: str) -> bool:
    return await emit_task_event(task_deleted_event(task_id, user_id, title))


def schedule_task_event(event: TaskEventData) -> asyncio.Task[bool]:
    """Schedule a publish on the running loop without waiting for it.

    Must be called from within a running event loop.

    Returns:
        The scheduled task (callers normally ignore it)
    """
    task = asyncio.get_running_loop().create_task(emit_task_event(event))
    _pending.add(task)
    task.add_done_callback(_pending.discard)
    return task
