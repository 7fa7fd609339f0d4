"""FastAPI host for the Order Ingest Service.

The HTTP surface only exposes health and statistics; the app's lifespan
starts the ingest consumer on a background thread and stops it on shutdown.
"""

import threading
from contextlib import asynccontextmanager
from typing import Optional

from confluent_kafka.admin import AdminClient
from fastapi import FastAPI

from .config import IngestSettings
from .consumer import ConsumerState, OrderIngestConsumer, create_consumer
from .exceptions import TransportError
from .logger import logger
from .notifier import FailureNotifier, create_channel
from .producer import DeadLetterProducer
from .store import OrderStore
from .writer import PersistenceWriter


class IngestState:
    """Class to manage the ingest service's long-lived objects."""

    def __init__(self) -> None:
        self.settings: Optional[IngestSettings] = None
        self.store: Optional[OrderStore] = None
        self.consumer: Optional[OrderIngestConsumer] = None
        self.dead_letter: Optional[DeadLetterProducer] = None
        self.thread: Optional[threading.Thread] = None

    def build(self, settings: IngestSettings) -> None:
        """Wire the store, writer, notifier and consumer from ``settings``."""
        self.settings = settings
        self.thread = None
        self.dead_letter = None
        self.store = OrderStore.from_url(settings.database_url, pool_timeout=settings.db_pool_timeout)
        self.store.create_schema()

        if settings.dead_letter_topic:
            self.dead_letter = DeadLetterProducer(settings.bootstrap_servers, settings.dead_letter_topic)

        self.consumer = OrderIngestConsumer(
            settings=settings,
            writer=PersistenceWriter(self.store, atomic=settings.atomic_persistence),
            notifier=FailureNotifier(create_channel(settings)),
            dead_letter=self.dead_letter,
            consumer_factory=create_consumer,
        )

    def start(self) -> None:
        """Connect the consumer and run its poll loop on a background thread."""
        try:
            self.consumer.start()
        except TransportError as e:
            logger.error(f"Order ingest consumer failed to start: {e}")
            return

        self.thread = threading.Thread(target=self.consumer.run, name="order-ingest-consumer", daemon=True)
        self.thread.start()
        logger.info("Consumer thread started")

    def shutdown(self) -> None:
        """Stop the consumer, then release the producer and the store."""
        if self.consumer:
            stopped = self.consumer.stop()
            if not stopped:
                logger.warning("Consumer shutdown timed out; exiting with handlers still running")
        if self.thread:
            self.thread.join(timeout=self.settings.shutdown_timeout_seconds)
        if self.dead_letter:
            self.dead_letter.close()
        if self.store:
            self.store.dispose()


state = IngestState()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Manage the lifecycle of the FastAPI application.

    Args:
        app: The FastAPI application instance
    """
    # Startup
    state.build(IngestSettings.from_env())
    state.start()

    yield

    # Shutdown
    logger.info("Shutting down order ingest service...")
    state.shutdown()
    logger.info("Shutdown complete")


app = FastAPI(title="Order Ingest Service", lifespan=lifespan)


@app.get("/health")
async def health_check():
    """Basic health check endpoint."""
    return {"status": "healthy"}


@app.get("/health/ready")
def readiness_check():
    """Readiness check that verifies the Kafka connection and consumer state."""
    consumer_state = state.consumer.state.value if state.consumer else ConsumerState.STOPPED.value
    try:
        admin = AdminClient({"bootstrap.servers": state.settings.bootstrap_servers})
        cluster_metadata = admin.list_topics(timeout=10)
        kafka_ok = cluster_metadata is not None
    except Exception as e:
        logger.error(f"Kafka connection failed: {e}")
        kafka_ok = False

    ready = kafka_ok and consumer_state == ConsumerState.RUNNING.value
    return {
        "status": "ready" if ready else "not ready",
        "kafka": "connected" if kafka_ok else "disconnected",
        "consumer": consumer_state,
    }


@app.get("/stats")
async def stats():
    """Return the consumer's message counters."""
    if not state.consumer:
        return {"state": ConsumerState.STOPPED.value}
    return state.consumer.snapshot()
