"""Shared result types for queue workers."""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any


class ProcessingOutcome(str, Enum):
    """What happened to a single delivered message."""

    ACKED = "acked"
    REQUEUED = "requeued"
    DEAD_LETTERED = "dead_lettered"
    DROPPED = "dropped"  # Acked without processing (unknown action)


@dataclass
class ConsumerStats:
    """Running counters for a consumer.

    Attributes:
        received: Messages delivered to the consumer
        acked: Messages processed and acknowledged
        requeued: Failed messages returned to the work queue
        dead_lettered: Failed messages moved to the dead-letter queue
        dropped: Unknown-action messages acknowledged without processing
        reconnections: Times the subscription was re-established
        last_error: Most recent processing error message
    """

    received: int = 0
    acked: int = 0
    requeued: int = 0
    dead_lettered: int = 0
    dropped: int = 0
    reconnections: int = 0
    last_error: str | None = None
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def record(self, outcome: ProcessingOutcome) -> None:
        if outcome == ProcessingOutcome.ACKED:
            self.acked += 1
        elif outcome == ProcessingOutcome.REQUEUED:
            self.requeued += 1
        elif outcome == ProcessingOutcome.DEAD_LETTERED:
            self.dead_lettered += 1
        elif outcome == ProcessingOutcome.DROPPED:
            self.dropped += 1

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for logging."""
        return {
            "received": self.received,
            "acked": self.acked,
            "requeued": self.requeued,
            "dead_lettered": self.dead_lettered,
            "dropped": self.dropped,
            "reconnections": self.reconnections,
            "last_error": self.last_error,
            "started_at": self.started_at.isoformat(),
        }
