"""Test fixtures for the order ingest service tests."""

import json
import queue
import threading
import time
from unittest.mock import MagicMock, Mock

import pytest

from ingest_service.config import IngestSettings
from ingest_service.store import OrderStore
from ingest_service.writer import PersistenceWriter


def order_payload(customer_id=42, sold_by_id=7, created="2023-05-01T10:00:00+02:00", items=2):
    """Build a packaged order dict in the upstream producer's format."""
    return {
        "Order": {"CreatedDate": created, "CustomerId": customer_id, "SoldById": sold_by_id},
        "OrderProducts": [
            {"ProductId": 100 + n, "Quantity": n + 1, "Price": 9.99} for n in range(items)
        ],
    }


def make_message(value, offset=0, topic="orders.packaged", partition=0):
    """Build a Kafka message double carrying ``value``."""
    if isinstance(value, dict):
        value = json.dumps(value).encode("utf-8")
    elif isinstance(value, str):
        value = value.encode("utf-8")

    msg = Mock()
    msg.error.return_value = None
    msg.value.return_value = value
    msg.key.return_value = f"key-{offset}".encode("utf-8")
    msg.topic.return_value = topic
    msg.partition.return_value = partition
    msg.offset.return_value = offset
    return msg


class FakeKafkaConsumer:
    """In-memory stand-in for ``confluent_kafka.Consumer``.

    Hands out queued messages from ``poll`` and calls ``on_drained`` the
    first time the queue is found empty.
    """

    def __init__(self, messages=(), on_drained=None):
        self._messages = queue.Queue()
        for msg in messages:
            self._messages.put(msg)
        self.on_drained = on_drained
        self.subscribed = []
        self.committed = []
        self.events = []
        self.close_calls = 0
        self._drained = False
        self._lock = threading.Lock()

    def subscribe(self, topics):
        self.subscribed.append(list(topics))

    def poll(self, timeout=None):
        try:
            return self._messages.get_nowait()
        except queue.Empty:
            if not self._drained:
                self._drained = True
                if self.on_drained:
                    self.on_drained()
            time.sleep(0.01)
            return None

    def commit(self, message=None, asynchronous=True):
        with self._lock:
            self.committed.append(message.offset())
            self.events.append(("ack", message.offset()))

    def close(self):
        self.close_calls += 1


@pytest.fixture
def settings(tmp_path):
    """Settings pointing at a throwaway SQLite database."""
    return IngestSettings(
        database_url=f"sqlite:///{tmp_path / 'orders.db'}",
        max_workers=1,
        retry_backoff_seconds=0,
        shutdown_grace_seconds=5,
    )


@pytest.fixture
def store(settings):
    """An order store with the schema created."""
    store = OrderStore.from_url(settings.database_url)
    store.create_schema()
    yield store
    store.dispose()


@pytest.fixture
def writer(store):
    return PersistenceWriter(store)


@pytest.fixture
def notifier():
    """A notifier double that records reported errors."""
    notifier = MagicMock()
    notifier.notify.return_value = True
    return notifier
