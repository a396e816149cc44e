"""Task processor worker module.

Consumes task events from the work queue and emits notifications:
- task_processor.py: work-queue consumer with ack/requeue/dead-letter
- runner.py: process lifecycle (datastore, broker, signals)

Start via:
- run_processor(): blocks until SIGINT/SIGTERM
"""

from app.workers.base import ConsumerStats, ProcessingOutcome
from app.workers.runner import (
    ProcessorRunner,
    configure_worker_logging,
    run_processor,
)
from app.workers.task_processor import TaskEventConsumer

__all__ = [
    # Results
    "ConsumerStats",
    "ProcessingOutcome",
    # Consumer
    "TaskEventConsumer",
    # Runner
    "ProcessorRunner",
    "configure_worker_logging",
    "run_processor",
]
