"""Domain-side services.

Services:
- events.py: Task event emission called after task mutations commit
"""

from app.services.events import (
    emit_task_created,
    emit_task_deleted,
    emit_task_event,
    emit_task_status_changed,
    schedule_task_event,
)

__all__ = [
    "emit_task_created",
    "emit_task_deleted",
    "emit_task_event",
    "emit_task_status_changed",
    "schedule_task_event",
]
