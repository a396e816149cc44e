"""Message schemas for the task and notification queues.

Both queues carry UTF-8 JSON objects with camelCase keys. Models are
frozen: consumers derive new notifications from a task event and never
mutate the event they received.
"""

import json
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator

from app.events.errors import EventDecodeError


class TaskAction(str, Enum):
    """Kind of task mutation carried by a work-queue message."""

    CREATED = "TASK_CREATED"
    STATUS_CHANGED = "TASK_STATUS_CHANGED"
    DELETED = "TASK_DELETED"


class TaskStatus(str, Enum):
    """Completion status of a task."""

    PENDING = "pending"
    COMPLETED = "completed"


class NotificationType(str, Enum):
    """Kind of notification emitted to the notification queue."""

    TASK_CREATED = "TASK_CREATED"
    TASK_COMPLETED = "TASK_COMPLETED"
    TASK_DELETED = "TASK_DELETED"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class _WireModel(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True, use_enum_values=False)

    def to_dict(self) -> dict[str, Any]:
        """Wire representation as a plain dict."""
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)

    def to_json_bytes(self) -> bytes:
        """Wire representation as UTF-8 JSON."""
        return self.model_dump_json(by_alias=True, exclude_none=True).encode("utf-8")


class TaskEventData(_WireModel):
    """Task lifecycle event published to the work queue."""

    action: TaskAction
    task_id: str = Field(alias="taskId", min_length=1)
    user_id: str = Field(alias="userId", min_length=1)
    title: str
    old_status: TaskStatus | None = Field(default=None, alias="oldStatus")
    new_status: TaskStatus | None = Field(default=None, alias="newStatus")
    timestamp: datetime

    @model_validator(mode="after")
    def _check_status_fields(self) -> "TaskEventData":
        if self.action == TaskAction.STATUS_CHANGED:
            if self.old_status is None or self.new_status is None:
                raise ValueError("status change events require oldStatus and newStatus")
        elif self.old_status is not None or self.new_status is not None:
            raise ValueError(
                f"oldStatus/newStatus are only allowed on {TaskAction.STATUS_CHANGED.value}"
            )
        return self

    @classmethod
    def from_json_bytes(cls, body: bytes) -> "TaskEventData":
        try:
            return cls.model_validate_json(body)
        except ValidationError as e:
            raise EventDecodeError(str(e)) from e


class UnknownTaskEvent(BaseModel):
    """Envelope for a work-queue message whose action is not recognised.

    Kept so the dispatcher can log and drop forward-incompatible events
    instead of failing to decode them.
    """

    model_config = ConfigDict(frozen=True)

    action: str
    task_id: str | None = None
    payload: dict[str, Any] = Field(default_factory=dict)


class NotificationEventData(_WireModel):
    """Notification derived from a processed task event."""

    type: NotificationType
    user_id: str = Field(alias="userId")
    task_id: str = Field(alias="taskId")
    title: str
    message: str
    timestamp: datetime = Field(default_factory=utc_now)


def decode_task_event(body: bytes) -> TaskEventData | UnknownTaskEvent:
    """Decode a work-queue payload.

    Raises:
        EventDecodeError: If the body is not a JSON object or a known
            action fails validation.
    """
    try:
        payload = json.loads(body.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise EventDecodeError(f"Payload is not valid JSON: {e}") from e

    if not isinstance(payload, dict):
        raise EventDecodeError("Payload must be a JSON object")

    action = payload.get("action")
    if action not in {a.value for a in TaskAction}:
        task_id = payload.get("taskId")
        return UnknownTaskEvent(
            action=str(action),
            task_id=str(task_id) if task_id is not None else None,
            payload=payload,
        )

    try:
        return TaskEventData.model_validate(payload)
    except ValidationError as e:
        raise EventDecodeError(str(e)) from e


def task_created_event(task_id: str, user_id: str, title: str) -> TaskEventData:
    return TaskEventData(
        action=TaskAction.CREATED,
        task_id=task_id,
        user_id=user_id,
        title=title,
        timestamp=utc_now(),
    )


def task_status_changed_event(
    task_id: str,
    user_id: str,
    title: str,
    old_status: TaskStatus,
    new_status: TaskStatus,
) -> TaskEventData:
    return TaskEventData(
        action=TaskAction.STATUS_CHANGED,
        task_id=task_id,
        user_id=user_id,
        title=title,
        old_status=old_status,
        new_status=new_status,
        timestamp=utc_now(),
    )


def task_deleted_event(task_id: str, user_id: str, title: str) -> TaskEventData:
    return TaskEventData(
        action=TaskAction.DELETED,
        task_id=task_id,
        user_id=user_id,
        title=title,
        timestamp=utc_now(),
    )
