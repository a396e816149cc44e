#!/usr/bin/env python3
"""Entrypoint for the task processor service.

Usage:
    # Consume until Ctrl+C / SIGTERM
    python scripts/run_task_processor.py

    # Dead-letter a message after 5 failed deliveries
    python scripts/run_task_processor.py --max-deliveries 5

Environment variables:
    RABBITMQ_HOST / RABBITMQ_USER / RABBITMQ_PASSWORD: Broker endpoint
    DATABASE_URL: Datastore for the processor (default: local sqlite)
    CONSUMER_PREFETCH_COUNT: Unacked messages in flight (default: 1)
    TASK_MAX_DELIVERIES: Deliveries before dead-lettering (default: 0, never)
    TASK_PROCESSING_DELAY_SECONDS: Simulated work per event (default: 0.5)
"""

import argparse
import logging
import sys
from pathlib import Path

# Add parent directory to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

from app.config import get_settings
from app.workers import configure_worker_logging, run_processor


def main() -> int:
    """Main entrypoint for the task processor."""
    parser = argparse.ArgumentParser(
        description="Consume task events and emit notifications",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )

    parser.add_argument(
        "--prefetch",
        type=int,
        default=None,
        help="Unacknowledged messages in flight per consumer",
    )
    parser.add_argument(
        "--max-deliveries",
        type=int,
        default=None,
        help="Deliveries before a failing message is dead-lettered (0 = never)",
    )

    # Logging
    parser.add_argument(
        "--verbose", "-v",
        action="store_true",
        help="Enable verbose (DEBUG) logging",
    )
    parser.add_argument(
        "--quiet", "-q",
        action="store_true",
        help="Reduce logging to warnings only",
    )

    args = parser.parse_args()

    if args.verbose:
        configure_worker_logging(logging.DEBUG)
    elif args.quiet:
        configure_worker_logging(logging.WARNING)
    else:
        configure_worker_logging(getattr(logging, get_settings().LOG_LEVEL, logging.INFO))

    logger = logging.getLogger(__name__)

    try:
        return run_processor(
            prefetch_count=args.prefetch,
            max_deliveries=args.max_deliveries,
        )
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
        return 0
    except Exception as e:
        logger.error(f"Task processor failed: {e}", exc_info=True)
        return 1


if __name__ == "__main__":
    sys.exit(main())
