"""Tests for the order ingest consumer."""

import threading
import time
from unittest.mock import MagicMock, Mock

import pytest
from confluent_kafka import KafkaError, KafkaException
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ingest_service.consumer import ConsumerState, OrderIngestConsumer, create_consumer
from ingest_service.exceptions import DecodeError, PersistenceError, TransportError
from ingest_service.store import OrderRecord, UnitOfWork
from ingest_service.writer import PersistenceWriter

from conftest import FakeKafkaConsumer, make_message, order_payload


def _run_until_drained(service, fake):
    """Start the consumer and run it until the fake broker has no messages left."""
    fake.on_drained = lambda: threading.Thread(target=service.stop).start()
    service.start()
    service.run()


@pytest.fixture
def recording_writer():
    """A writer double that records each persist call in ``events``."""
    writer = Mock()
    writer.events = []

    def persist(document):
        writer.events.append(("persist", document.order.customer_id))
        return len(writer.events)

    writer.persist.side_effect = persist
    return writer


@pytest.fixture
def fake_kafka():
    return FakeKafkaConsumer()


@pytest.fixture
def service(settings, recording_writer, notifier, fake_kafka):
    return OrderIngestConsumer(settings, recording_writer, notifier, consumer=fake_kafka)


def test_create_consumer(settings, mocker):
    """Offsets are never auto-committed."""
    mock_consumer = mocker.patch("ingest_service.consumer.Consumer")

    create_consumer(settings)

    mock_consumer.assert_called_once_with(
        {
            "bootstrap.servers": "kafka:9092",
            "group.id": "order-ingest",
            "auto.offset.reset": "earliest",
            "enable.auto.commit": False,
            "socket.connection.setup.timeout.ms": 10000,
        }
    )


def test_acknowledges_before_processing(service, fake_kafka, recording_writer):
    events = []
    fake_kafka.events = events
    recording_writer.events = events

    order_id = service.handle_message(make_message(order_payload(), offset=3))

    assert order_id == 2
    assert events == [("ack", 3), ("persist", 42)]
    assert service.stats["persisted"] == 1


def test_malformed_payload_is_acknowledged_and_reported(service, fake_kafka, recording_writer, notifier):
    result = service.handle_message(make_message({"Order": {"CustomerId": 42}}, offset=5))

    assert result is None
    assert fake_kafka.committed == [5]
    recording_writer.persist.assert_not_called()
    error = notifier.notify.call_args.args[0]
    assert isinstance(error, DecodeError)
    assert notifier.notify.call_args.kwargs["offset"] == 5
    assert service.stats["decode_errors"] == 1


def test_persistence_failure_is_reported(service, recording_writer, notifier):
    recording_writer.persist.side_effect = PersistenceError("store down")

    assert service.handle_message(make_message(order_payload())) is None

    assert isinstance(notifier.notify.call_args.args[0], PersistenceError)
    assert service.stats["persistence_errors"] == 1


def test_unexpected_handler_error_is_reported(service, recording_writer, notifier):
    recording_writer.persist.side_effect = ValueError("bug")

    assert service.handle_message(make_message(order_payload())) is None

    assert isinstance(notifier.notify.call_args.args[0], ValueError)
    assert service.stats["unexpected_errors"] == 1


def test_acknowledge_failure_is_logged_only(service, fake_kafka, recording_writer, notifier, mocker):
    mocker.patch.object(fake_kafka, "commit", side_effect=KafkaException(KafkaError(KafkaError._TRANSPORT)))

    assert service.handle_message(make_message(order_payload())) is None

    recording_writer.persist.assert_not_called()
    notifier.notify.assert_not_called()
    assert service.stats["transport_errors"] == 1


def test_persist_is_retried(settings, recording_writer, notifier, fake_kafka):
    settings.max_retries = 2
    recording_writer.persist.side_effect = [PersistenceError("locked"), PersistenceError("locked"), 11]
    service = OrderIngestConsumer(settings, recording_writer, notifier, consumer=fake_kafka)

    assert service.handle_message(make_message(order_payload())) == 11

    assert recording_writer.persist.call_count == 3
    notifier.notify.assert_not_called()


def test_retries_exhausted(settings, recording_writer, notifier, fake_kafka):
    settings.max_retries = 1
    recording_writer.persist.side_effect = PersistenceError("locked")
    service = OrderIngestConsumer(settings, recording_writer, notifier, consumer=fake_kafka)

    assert service.handle_message(make_message(order_payload())) is None

    assert recording_writer.persist.call_count == 2
    assert notifier.notify.call_args.args[0].attempts == 2


def test_orphaned_order_is_not_retried(settings, recording_writer, notifier, fake_kafka):
    """Retrying after the order row was committed would duplicate it."""
    settings.max_retries = 3
    recording_writer.persist.side_effect = PersistenceError("items failed", order_id=9)
    service = OrderIngestConsumer(settings, recording_writer, notifier, consumer=fake_kafka)

    service.handle_message(make_message(order_payload()))

    assert recording_writer.persist.call_count == 1


class TestAfterProcessAcknowledgement:
    """Acknowledge only once the document is stored or dead-lettered."""

    @pytest.fixture
    def dead_letter(self):
        producer = MagicMock()
        producer.topic = "orders.packaged.dlq"
        return producer

    @pytest.fixture
    def service(self, settings, recording_writer, notifier, fake_kafka, dead_letter):
        settings.ack_mode = "after_process"
        return OrderIngestConsumer(settings, recording_writer, notifier, dead_letter=dead_letter, consumer=fake_kafka)

    def test_acknowledges_after_persist(self, service, fake_kafka, recording_writer):
        events = []
        fake_kafka.events = events
        recording_writer.events = events

        service.handle_message(make_message(order_payload(), offset=8))

        assert events == [("persist", 42), ("ack", 8)]

    def test_failure_is_dead_lettered_then_acknowledged(self, service, fake_kafka, dead_letter, notifier):
        msg = make_message("{broken", offset=4)

        service.handle_message(msg)

        dead_letter.send.assert_called_once()
        sent_msg, error, attempts = dead_letter.send.call_args.args
        assert sent_msg is msg
        assert isinstance(error, DecodeError)
        assert attempts == 1
        assert fake_kafka.committed == [4]
        assert service.stats["dead_lettered"] == 1
        notifier.notify.assert_called_once()

    def test_dead_letter_failure_leaves_message_unacknowledged(self, service, fake_kafka, dead_letter, notifier):
        dead_letter.send.side_effect = TransportError("dlq unavailable")

        service.handle_message(make_message("{broken", offset=4))

        assert fake_kafka.committed == []
        assert notifier.notify.call_count == 2
        assert notifier.notify.call_args.kwargs["stage"] == "dead_letter"

    def test_without_dead_letter_topic_failure_is_acknowledged(
        self, settings, recording_writer, notifier, fake_kafka
    ):
        settings.ack_mode = "after_process"
        service = OrderIngestConsumer(settings, recording_writer, notifier, consumer=fake_kafka)

        service.handle_message(make_message("{broken", offset=6))

        assert fake_kafka.committed == [6]


def test_lifecycle(service, fake_kafka):
    assert service.state is ConsumerState.STOPPED

    service.start()
    assert service.state is ConsumerState.STARTING
    assert fake_kafka.subscribed == [["orders.packaged"]]

    worker = threading.Thread(target=service.run)
    worker.start()
    assert service.stop(timeout=5) is True
    worker.join(timeout=5)

    assert service.state is ConsumerState.STOPPED
    assert fake_kafka.close_calls == 1
    assert service.stop() is True
    assert fake_kafka.close_calls == 1


def test_stop_before_run_closes_client(service, fake_kafka):
    service.start()

    assert service.stop() is True
    service.run()

    assert service.state is ConsumerState.STOPPED
    assert fake_kafka.close_calls == 1


def test_run_requires_start(service):
    with pytest.raises(RuntimeError):
        service.run()


def test_start_twice_is_rejected(service):
    service.start()

    with pytest.raises(RuntimeError):
        service.start()


def test_start_failure_raises_transport_error(settings, recording_writer, notifier):
    client = MagicMock()
    client.subscribe.side_effect = KafkaException(KafkaError(KafkaError._TRANSPORT))
    service = OrderIngestConsumer(settings, recording_writer, notifier, consumer_factory=lambda s: client)

    with pytest.raises(TransportError):
        service.start()

    assert service.state is ConsumerState.STOPPED
    client.close.assert_called_once()


def test_receive_errors_do_not_stop_the_loop(service, fake_kafka, recording_writer, notifier):
    eof = Mock()
    eof.error.return_value = KafkaError(KafkaError._PARTITION_EOF)
    broken = Mock()
    broken.error.return_value = KafkaError(KafkaError._TRANSPORT)
    for msg in (eof, broken, make_message(order_payload(customer_id=5), offset=1)):
        fake_kafka._messages.put(msg)

    _run_until_drained(service, fake_kafka)

    assert recording_writer.events == [("persist", 5)]
    assert service.stats["transport_errors"] == 1
    notifier.notify.assert_not_called()


def test_orphan_order_reported_and_next_message_processed(settings, store, notifier, monkeypatch):
    """A line item failure leaves the order behind and the loop moves on."""
    original = UnitOfWork.insert_line_items
    calls = {"count": 0}

    def flaky_insert_line_items(self, items):
        calls["count"] += 1
        if calls["count"] == 1:
            raise SQLAlchemyError("line items rejected")
        return original(self, items)

    monkeypatch.setattr(UnitOfWork, "insert_line_items", flaky_insert_line_items)
    fake = FakeKafkaConsumer(
        [
            make_message(order_payload(customer_id=1), offset=0),
            make_message(order_payload(customer_id=2), offset=1),
        ]
    )
    service = OrderIngestConsumer(settings, PersistenceWriter(store), notifier, consumer=fake)

    _run_until_drained(service, fake)

    assert store.count_orders() == 2
    error = notifier.notify.call_args.args[0]
    assert isinstance(error, PersistenceError)
    assert store.line_items_for(error.order_id) == []
    with Session(store.engine) as session:
        second = session.scalars(select(OrderRecord).where(OrderRecord.customer_id == 2)).one()
    assert len(store.line_items_for(second.id)) == 2
    assert fake.committed == [0, 1]


def test_malformed_message_does_not_stop_the_loop(settings, store, notifier):
    fake = FakeKafkaConsumer(
        [make_message("not json", offset=0), make_message(order_payload(customer_id=3), offset=1)]
    )
    service = OrderIngestConsumer(settings, PersistenceWriter(store), notifier, consumer=fake)

    _run_until_drained(service, fake)

    assert store.count_orders() == 1
    assert isinstance(notifier.notify.call_args.args[0], DecodeError)
    assert service.snapshot()["decode_errors"] == 1


def test_concurrent_messages_get_distinct_orders(settings, store, notifier):
    """100 messages handled by parallel workers produce 100 orders, items attached correctly."""
    settings.max_workers = 4
    messages = [make_message(order_payload(customer_id=n, items=n % 3), offset=n) for n in range(100)]
    fake = FakeKafkaConsumer(messages)
    service = OrderIngestConsumer(settings, PersistenceWriter(store), notifier, consumer=fake)

    _run_until_drained(service, fake)

    notifier.notify.assert_not_called()
    assert store.count_orders() == 100
    with Session(store.engine) as session:
        orders = session.scalars(select(OrderRecord)).all()
    assert len({order.id for order in orders}) == 100
    assert sorted(order.customer_id for order in orders) == list(range(100))
    total_items = 0
    for order in orders:
        items = store.line_items_for(order.id)
        assert len(items) == order.customer_id % 3
        total_items += len(items)
    assert total_items == sum(n % 3 for n in range(100))
    assert fake.committed == list(range(100))


class SlowCommitConsumer(FakeKafkaConsumer):
    """Takes longer to commit even offsets than odd ones."""

    def commit(self, message=None, asynchronous=True):
        if message.offset() % 2 == 0:
            time.sleep(0.005)
        super().commit(message=message, asynchronous=asynchronous)


def test_receipt_acknowledgements_follow_offset_order(settings, recording_writer, notifier):
    """With several workers, offsets are still committed lowest first."""
    settings.max_workers = 4

    def slow_persist(document):
        # later messages finish first
        time.sleep(0.002 * (50 - document.order.customer_id))
        return document.order.customer_id

    recording_writer.persist.side_effect = slow_persist
    fake = SlowCommitConsumer([make_message(order_payload(customer_id=n), offset=n) for n in range(50)])
    service = OrderIngestConsumer(settings, recording_writer, notifier, consumer=fake)

    _run_until_drained(service, fake)

    assert fake.committed == list(range(50))
    assert service.stats["persisted"] == 50


def test_stop_wait_is_bounded(settings, notifier, fake_kafka):
    """stop() returns after its timeout while a handler is still busy."""
    entered = threading.Event()
    release = threading.Event()
    writer = Mock()

    def slow_persist(document):
        entered.set()
        release.wait(5)
        return 1

    writer.persist.side_effect = slow_persist
    fake_kafka._messages.put(make_message(order_payload()))
    service = OrderIngestConsumer(settings, writer, notifier, consumer=fake_kafka)
    service.start()
    worker = threading.Thread(target=service.run)
    worker.start()
    assert entered.wait(5)

    assert service.stop(timeout=0.1) is False
    assert service.state is ConsumerState.STOPPING

    release.set()
    worker.join(timeout=5)
    assert service.state is ConsumerState.STOPPED
    assert service.stats["persisted"] == 1
    assert fake_kafka.close_calls == 1
