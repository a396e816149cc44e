"""FastAPI application hosting the task event producer."""

import asyncio
import contextlib
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from app.config import get_settings
from app.events.broker import get_broker_connection

logger = logging.getLogger(__name__)

settings = get_settings()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Connect to the broker in the background; close it on shutdown."""
    broker = get_broker_connection()
    connect_task = None
    if settings.EVENTS_ENABLED:
        # Startup must not wait on, or fail because of, the broker
        connect_task = asyncio.create_task(broker.connect())
    yield
    if connect_task is not None and not connect_task.done():
        connect_task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await connect_task
    await broker.close()


app = FastAPI(
    title="Task Event Pipeline",
    description="Task service host publishing task lifecycle events",
    version="1.0.0",
    lifespan=lifespan,
)


@app.get("/health")
def health_check() -> dict[str, str]:
    """Health check endpoint. Broker state is informational only."""
    return {"status": "healthy", "broker": get_broker_connection().state.value}
