"""Task processor process runner.

Startup order:
1. Datastore handle (the process exits with status 1 if unreachable)
2. Broker connection (failures fall back to background retries)
3. Work-queue consumer

On SIGINT/SIGTERM the consumer stops accepting messages, the channel and
connection are closed, and the datastore engine is disposed, in that
order.
"""

import asyncio
import logging
import signal

from app.config import get_settings
from app.db.session import check_database_connection, close_database
from app.events.broker import BrokerConnection, get_broker_connection
from app.workers.task_processor import TaskEventConsumer

logger = logging.getLogger(__name__)


class ProcessorRunner:
    """Owns the lifecycle of the task processor process.

    Usage:
        runner = ProcessorRunner()
        exit_code = asyncio.run(runner.run())
    """

    def __init__(
        self,
        broker: BrokerConnection | None = None,
        consumer: TaskEventConsumer | None = None,
        prefetch_count: int | None = None,
        max_deliveries: int | None = None,
    ) -> None:
        """Initialize the runner.

        Args:
            broker: Connection manager (default: process-wide instance)
            consumer: Consumer to run (default: one built on broker)
            prefetch_count: Override CONSUMER_PREFETCH_COUNT
            max_deliveries: Override TASK_MAX_DELIVERIES
        """
        self.broker = broker or get_broker_connection()
        self.consumer = consumer or TaskEventConsumer(
            broker=self.broker,
            prefetch_count=prefetch_count,
            max_deliveries=max_deliveries,
        )
        self._logger = logging.getLogger(self.__class__.__name__)
        self._shutdown_event: asyncio.Event | None = None
        self._shutdown_requested = False

    async def run(self) -> int:
        """Run until a shutdown is requested.

        Returns:
            Process exit code
        """
        try:
            check_database_connection()
        except Exception as e:
            self._logger.error(f"Datastore connection error: {e}", exc_info=True)
            return 1

        self._shutdown_event = asyncio.Event()
        if self._shutdown_requested:
            self._shutdown_event.set()
        self._setup_signal_handlers()

        try:
            if not await self.broker.connect():
                self._logger.warning("RabbitMQ unavailable at startup, retrying in background")
            await self.consumer.start()
            self._logger.info("Task processor service is running")

            await self._shutdown_event.wait()
        finally:
            await self.shutdown()

        return 0

    async def shutdown(self) -> None:
        """Stop consuming and release the broker and datastore handles."""
        self._logger.info("Shutting down gracefully...")
        try:
            await self.consumer.stop()
        finally:
            try:
                await self.broker.close()
            finally:
                close_database()

    def request_shutdown(self) -> None:
        """Request graceful shutdown of the process."""
        self._shutdown_requested = True
        if self._shutdown_event is not None:
            self._shutdown_event.set()

    def _setup_signal_handlers(self) -> None:
        """Setup signal handlers for graceful shutdown."""
        loop = asyncio.get_running_loop()
        for signum in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(signum, self._handle_signal, signum)
            except (NotImplementedError, RuntimeError):
                # Not supported on this platform or outside the main thread
                signal.signal(signum, lambda s, _frame: loop.call_soon_threadsafe(self._handle_signal, s))

    def _handle_signal(self, signum: int) -> None:
        self._logger.info(f"Received signal {signum}, requesting shutdown")
        self.request_shutdown()


def run_processor(
    prefetch_count: int | None = None,
    max_deliveries: int | None = None,
) -> int:
    """Run the task processor until interrupted.

    Args:
        prefetch_count: Override CONSUMER_PREFETCH_COUNT
        max_deliveries: Override TASK_MAX_DELIVERIES

    Returns:
        Process exit code
    """
    get_settings().validate()
    runner = ProcessorRunner(prefetch_count=prefetch_count, max_deliveries=max_deliveries)
    return asyncio.run(runner.run())


def configure_worker_logging(level: int = logging.INFO) -> None:
    """Configure logging for worker processes.

    Args:
        level: Logging level (default: INFO)
    """
    logging.basicConfig(
        level=level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    logging.getLogger("app").setLevel(level)
    logging.getLogger("aio_pika").setLevel(logging.WARNING)
    logging.getLogger("aiormq").setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
