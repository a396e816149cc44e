"""Environment configuration for the task event pipeline."""

import os
from functools import lru_cache
from urllib.parse import quote

from dotenv import load_dotenv

load_dotenv()


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


class Settings:
    """Application settings loaded from environment variables."""

    def __init__(self) -> None:
        # Broker connection
        self.RABBITMQ_HOST: str = os.getenv("RABBITMQ_HOST", "rabbitmq")
        self.RABBITMQ_PORT: int = int(os.getenv("RABBITMQ_PORT", "5672"))
        self.RABBITMQ_USER: str = os.getenv("RABBITMQ_USER", "guest")
        self.RABBITMQ_PASSWORD: str = os.getenv("RABBITMQ_PASSWORD", "guest")
        self.RABBITMQ_VHOST: str = os.getenv("RABBITMQ_VHOST", "/")

        # Queue names
        self.TASKS_QUEUE: str = os.getenv("TASKS_QUEUE", "tasks_queue")
        self.NOTIFICATIONS_QUEUE: str = os.getenv(
            "NOTIFICATIONS_QUEUE", "notifications_queue"
        )
        self.DEAD_LETTER_QUEUE: str = os.getenv(
            "DEAD_LETTER_QUEUE", "tasks_queue.dead_letter"
        )

        # Reconnection and timeouts
        self.BROKER_RECONNECT_DELAY_SECONDS: float = float(
            os.getenv("BROKER_RECONNECT_DELAY_SECONDS", "5")
        )
        self.BROKER_RECONNECT_MAX_DELAY_SECONDS: float = float(
            os.getenv("BROKER_RECONNECT_MAX_DELAY_SECONDS", "60")
        )
        self.BROKER_MAX_CONNECT_ATTEMPTS: int = int(
            os.getenv("BROKER_MAX_CONNECT_ATTEMPTS", "5")
        )
        self.BROKER_OPERATION_TIMEOUT_SECONDS: float = float(
            os.getenv("BROKER_OPERATION_TIMEOUT_SECONDS", "10")
        )

        # Consumer
        self.CONSUMER_PREFETCH_COUNT: int = int(os.getenv("CONSUMER_PREFETCH_COUNT", "1"))
        self.TASK_MAX_DELIVERIES: int = int(os.getenv("TASK_MAX_DELIVERIES", "0"))
        self.TASK_PROCESSING_DELAY_SECONDS: float = float(
            os.getenv("TASK_PROCESSING_DELAY_SECONDS", "0.5")
        )

        self.EVENTS_ENABLED: bool = _env_bool("EVENTS_ENABLED", True)

        # Consumer datastore handle
        self.DATABASE_URL: str = os.getenv("DATABASE_URL", "sqlite:///./task_processor.db")

        self.LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO").upper()

    @property
    def broker_url(self) -> str:
        """AMQP URL built from the individual connection settings."""
        user = quote(self.RABBITMQ_USER, safe="")
        password = quote(self.RABBITMQ_PASSWORD, safe="")
        vhost = quote(self.RABBITMQ_VHOST, safe="")
        return f"amqp://{user}:{password}@{self.RABBITMQ_HOST}:{self.RABBITMQ_PORT}/{vhost}"

    def validate(self) -> None:
        """Validate numeric settings."""
        if self.BROKER_RECONNECT_DELAY_SECONDS <= 0:
            raise ValueError("BROKER_RECONNECT_DELAY_SECONDS must be positive")
        if self.BROKER_RECONNECT_MAX_DELAY_SECONDS < self.BROKER_RECONNECT_DELAY_SECONDS:
            raise ValueError(
                "BROKER_RECONNECT_MAX_DELAY_SECONDS must not be smaller than "
                "BROKER_RECONNECT_DELAY_SECONDS"
            )
        if self.BROKER_MAX_CONNECT_ATTEMPTS < 1:
            raise ValueError("BROKER_MAX_CONNECT_ATTEMPTS must be at least 1")
        if self.BROKER_OPERATION_TIMEOUT_SECONDS <= 0:
            raise ValueError("BROKER_OPERATION_TIMEOUT_SECONDS must be positive")
        if self.CONSUMER_PREFETCH_COUNT < 1:
            raise ValueError("CONSUMER_PREFETCH_COUNT must be at least 1")
        if self.TASK_MAX_DELIVERIES < 0:
            raise ValueError("TASK_MAX_DELIVERIES must not be negative")


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    settings = Settings()
    return settings
