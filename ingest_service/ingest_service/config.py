"""Runtime settings for the order ingest service."""

import os
from typing import Literal, Optional

from pydantic import BaseModel, Field

SENDGRID_API_URL = "https://api.sendgrid.com/v3/mail/send"


def _env_flag(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).lower() in ("1", "true", "yes", "y")


class IngestSettings(BaseModel):
    """Settings consumed by the consumer, writer and notifier.

    Attributes:
        bootstrap_servers: Kafka bootstrap servers (broker connection descriptor)
        group_id: Kafka consumer group
        topic: Topic the order documents are published to (queue name)
        dead_letter_topic: Topic for messages that cannot be processed, if any
        ack_mode: ``before_process`` acknowledges on receipt (best effort),
            ``after_process`` acknowledges once the document is persisted or
            dead-lettered (at least once)
        max_workers: Upper bound on concurrently running message handlers
        max_retries: Extra attempts for a failed persist before giving up
        retry_backoff_seconds: Backoff unit between persist attempts
        atomic_persistence: Write the order and its line items in one transaction
        database_url: SQLAlchemy database URL
        db_pool_timeout: Seconds to wait for a pooled store connection
        connect_timeout_ms: Broker connection setup timeout
        shutdown_timeout_seconds: Bound on the wait in ``stop()``; None waits forever
        shutdown_grace_seconds: Time in-flight handlers get to finish on shutdown
        notify_channel: Failure notification transport
    """

    bootstrap_servers: str = "kafka:9092"
    group_id: str = "order-ingest"
    topic: str = "orders.packaged"
    dead_letter_topic: Optional[str] = None
    ack_mode: Literal["before_process", "after_process"] = "before_process"
    max_workers: int = Field(12, ge=1)
    max_retries: int = Field(0, ge=0)
    retry_backoff_seconds: float = Field(1.0, ge=0)
    atomic_persistence: bool = False

    database_url: str = "sqlite:///./orders.db"
    db_pool_timeout: float = Field(30.0, gt=0)

    connect_timeout_ms: int = Field(10000, gt=0)
    shutdown_timeout_seconds: Optional[float] = Field(None, gt=0)
    shutdown_grace_seconds: float = Field(30.0, ge=0)

    notify_channel: Literal["log", "http", "smtp"] = "log"
    notify_to: str = "ops@example.com"
    notify_from: str = "order-ingest@example.com"
    notify_api_url: str = SENDGRID_API_URL
    notify_api_key: str = ""
    notify_timeout_seconds: float = Field(10.0, gt=0)
    smtp_host: str = "localhost"
    smtp_port: int = 587
    smtp_user: str = ""
    smtp_pass: str = ""
    smtp_starttls: bool = True

    @classmethod
    def from_env(cls) -> "IngestSettings":
        """Build settings from environment variables.

        Unset variables fall back to the field defaults.

        Raises:
            ValidationError: If a variable holds an invalid value.
        """
        env = {
            "bootstrap_servers": os.getenv("KAFKA_BOOTSTRAP_SERVERS"),
            "group_id": os.getenv("KAFKA_CONSUMER_GROUP"),
            "topic": os.getenv("ORDER_TOPIC"),
            "dead_letter_topic": os.getenv("DEAD_LETTER_TOPIC"),
            "ack_mode": os.getenv("ACK_MODE"),
            "max_workers": os.getenv("MAX_WORKERS"),
            "max_retries": os.getenv("MAX_RETRIES"),
            "retry_backoff_seconds": os.getenv("RETRY_BACKOFF_SECONDS"),
            "database_url": os.getenv("DATABASE_URL"),
            "db_pool_timeout": os.getenv("DB_POOL_TIMEOUT"),
            "connect_timeout_ms": os.getenv("CONNECT_TIMEOUT_MS"),
            "shutdown_timeout_seconds": os.getenv("SHUTDOWN_TIMEOUT_SECONDS"),
            "shutdown_grace_seconds": os.getenv("SHUTDOWN_GRACE_SECONDS"),
            "notify_channel": os.getenv("NOTIFY_CHANNEL"),
            "notify_to": os.getenv("NOTIFY_TO"),
            "notify_from": os.getenv("NOTIFY_FROM"),
            "notify_api_url": os.getenv("NOTIFY_API_URL"),
            "notify_api_key": os.getenv("NOTIFY_API_KEY"),
            "notify_timeout_seconds": os.getenv("NOTIFY_TIMEOUT_SECONDS"),
            "smtp_host": os.getenv("SMTP_HOST"),
            "smtp_port": os.getenv("SMTP_PORT"),
            "smtp_user": os.getenv("SMTP_USER"),
            "smtp_pass": os.getenv("SMTP_PASS"),
        }
        values = {key: value for key, value in env.items() if value not in (None, "")}
        values["atomic_persistence"] = _env_flag("ATOMIC_PERSISTENCE")
        values["smtp_starttls"] = _env_flag("SMTP_STARTTLS", "true")
        return cls(**values)
