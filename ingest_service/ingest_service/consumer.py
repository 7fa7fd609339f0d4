"""Kafka consumer that ingests packaged order documents into the store."""

import threading
import time
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from enum import Enum
from typing import Optional

from confluent_kafka import Consumer, KafkaError, KafkaException
from logging_utils.config import get_kafka_logger

from .config import IngestSettings
from .decoder import decode_document
from .exceptions import DecodeError, PersistenceError, TransportError
from .notifier import FailureNotifier
from .producer import DeadLetterProducer
from .writer import PersistenceWriter

logger = get_kafka_logger("order-ingest")

STATUS_LOG_INTERVAL = 300  # seconds
POLL_TIMEOUT = 1.0

_UNSET = object()


class ConsumerState(str, Enum):
    """Lifecycle states of the ingest consumer."""

    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"


def create_consumer(settings: IngestSettings) -> Consumer:
    """Create a Kafka consumer instance.

    Offsets are committed explicitly by the ingest consumer, never automatically.
    """
    return Consumer(
        {
            "bootstrap.servers": settings.bootstrap_servers,
            "group.id": settings.group_id,
            "auto.offset.reset": "earliest",
            "enable.auto.commit": False,
            "socket.connection.setup.timeout.ms": settings.connect_timeout_ms,
        }
    )


class OrderIngestConsumer:
    """Consumes order documents and persists them.

    Lifecycle: ``start()`` connects and subscribes, ``run()`` blocks in the
    poll loop until ``stop()`` is requested from another thread, then waits
    for in-flight handlers and closes the broker client exactly once.

    Each received message is counted and, with
    ``ack_mode="before_process"``, committed on the poll thread before it is
    handed to a worker, so commits follow offset order whatever the worker
    count. A message that later fails to decode or persist is reported but
    never redelivered. With
    ``ack_mode="after_process"`` the offset is committed only after the
    document is persisted or the message has been dead-lettered.
    """

    def __init__(
        self,
        settings: IngestSettings,
        writer: PersistenceWriter,
        notifier: FailureNotifier,
        dead_letter: Optional[DeadLetterProducer] = None,
        consumer: Optional[Consumer] = None,
        consumer_factory=create_consumer,
    ):
        """Initialize the ingest consumer.

        Args:
            settings: Service settings
            writer: Writer used to persist decoded documents
            notifier: Receives every failure after a message was received
            dead_letter: Producer for messages that cannot be ingested
            consumer: Already created Kafka client to use instead of the factory
            consumer_factory: Builds the Kafka client in ``start()``
        """
        self.settings = settings
        self.writer = writer
        self.notifier = notifier
        self.dead_letter = dead_letter
        self.consumer = consumer
        self._consumer_factory = consumer_factory

        self._state = ConsumerState.STOPPED
        self._state_lock = threading.Lock()
        self._stats_lock = threading.Lock()
        self._stop_event = threading.Event()
        self._closed = threading.Event()
        self._closed.set()

        self.stats = {
            "received": 0,
            "persisted": 0,
            "decode_errors": 0,
            "persistence_errors": 0,
            "transport_errors": 0,
            "dead_lettered": 0,
            "unexpected_errors": 0,
            "start_time": time.time(),
        }

    @property
    def state(self) -> ConsumerState:
        return self._state

    def _set_state(self, state: ConsumerState) -> None:
        logger.info(f"Consumer state {self._state.value} -> {state.value}")
        self._state = state

    def _bump(self, counter: str) -> None:
        with self._stats_lock:
            self.stats[counter] += 1

    def snapshot(self) -> dict:
        """Return a copy of the counters together with state and uptime."""
        with self._stats_lock:
            data = dict(self.stats)
        data["uptime_seconds"] = round(time.time() - data.pop("start_time"), 2)
        data["state"] = self._state.value
        return data

    def start(self) -> None:
        """Connect to the broker and subscribe to the order topic.

        Raises:
            RuntimeError: If the consumer is not stopped
            TransportError: If the client cannot be created or subscribed
        """
        with self._state_lock:
            if self._state is not ConsumerState.STOPPED:
                raise RuntimeError(f"Cannot start consumer in state {self._state.value}")
            self._set_state(ConsumerState.STARTING)
            self._stop_event.clear()
            self._closed.clear()

        logger.info(
            f"Connecting consumer | bootstrap_servers={self.settings.bootstrap_servers} | "
            f"group_id={self.settings.group_id} | topic={self.settings.topic} | ack_mode={self.settings.ack_mode}"
        )
        try:
            if self.consumer is None:
                self.consumer = self._consumer_factory(self.settings)
            self.consumer.subscribe([self.settings.topic])
        except KafkaException as e:
            logger.error(f"Failed to connect consumer: {e}")
            self._close_client()
            with self._state_lock:
                self._set_state(ConsumerState.STOPPED)
            self._closed.set()
            raise TransportError(f"Could not subscribe to {self.settings.topic}: {e}") from e

        with self._stats_lock:
            self.stats["start_time"] = time.time()
        logger.info(f"Subscribed to topic: {self.settings.topic}")

    def run(self) -> None:
        """Poll for messages until a stop is requested.

        Raises:
            RuntimeError: If ``start()`` has not been called
        """
        with self._state_lock:
            if self._state is ConsumerState.STOPPED and self._stop_event.is_set():
                logger.info("Stop requested before the poll loop started")
                return
            if self._state is not ConsumerState.STARTING:
                raise RuntimeError(f"Cannot run consumer in state {self._state.value}")
            self._set_state(ConsumerState.RUNNING)

        executor = ThreadPoolExecutor(max_workers=self.settings.max_workers, thread_name_prefix="order-ingest")
        pending: set[Future] = set()
        last_status_log = time.time()
        logger.info("Starting message processing loop")

        try:
            while not self._stop_event.is_set():
                now = time.time()
                if now - last_status_log >= STATUS_LOG_INTERVAL:
                    self._log_status()
                    last_status_log = now

                msg = self._receive()
                if msg is None:
                    continue

                if len(pending) >= self.settings.max_workers:
                    _, pending = wait(pending, return_when=FIRST_COMPLETED)
                if not self._accept(msg):
                    continue
                pending.add(executor.submit(self._process, msg))
                pending = {future for future in pending if not future.done()}
        finally:
            self._shutdown(executor, pending)

    def _receive(self):
        """Poll one message; broker errors are logged and yield None."""
        try:
            msg = self.consumer.poll(timeout=POLL_TIMEOUT)
        except (KafkaException, RuntimeError) as e:
            logger.error(f"Error retrieving message: {e}")
            self._bump("transport_errors")
            return None

        if msg is None:
            return None

        if msg.error():
            if msg.error().code() == KafkaError._PARTITION_EOF:
                logger.debug("Reached end of partition")
                return None
            logger.error(f"Error retrieving message: {msg.error()}")
            self._bump("transport_errors")
            return None

        return msg

    def _acknowledge(self, msg) -> None:
        consumer = self.consumer
        if consumer is None:
            raise TransportError(f"Consumer closed before offset {msg.offset()} was acknowledged")
        try:
            consumer.commit(message=msg, asynchronous=False)
        except (KafkaException, RuntimeError) as e:
            raise TransportError(f"Could not acknowledge offset {msg.offset()}: {e}") from e

    def handle_message(self, msg) -> Optional[int]:
        """Acknowledge, decode and persist one message.

        Never raises: receive and acknowledge failures are logged, every
        failure after that is also routed to the notifier.

        Args:
            msg: A Kafka message without error

        Returns:
            The identifier of the persisted order, or None if the message failed
        """
        if not self._accept(msg):
            return None
        return self._process(msg)

    def _accept(self, msg) -> bool:
        """Count the message and, in ``before_process`` mode, acknowledge it.

        Runs on the poll thread, so receipt acknowledgements are committed in
        offset order.
        """
        self._bump("received")
        logger.debug(f"Received message | topic={msg.topic()} | partition={msg.partition()} | offset={msg.offset()}")

        if self.settings.ack_mode == "before_process":
            try:
                self._acknowledge(msg)
            except TransportError as e:
                logger.error(f"Error acknowledging message: {e}")
                self._bump("transport_errors")
                return False
        return True

    def _process(self, msg) -> Optional[int]:
        try:
            document = decode_document(msg.value())
            order_id = self._persist(document)
        except DecodeError as e:
            logger.error(f"Failed to decode message at offset {msg.offset()}: {e}")
            self._bump("decode_errors")
            self._handle_failure(msg, e, attempts=1)
            return None
        except PersistenceError as e:
            logger.error(f"Failed to persist message at offset {msg.offset()}: {e}")
            self._bump("persistence_errors")
            self._handle_failure(msg, e, attempts=e.attempts)
            return None
        except Exception as e:
            logger.opt(exception=e).error(f"Unexpected error processing message at offset {msg.offset()}")
            self._bump("unexpected_errors")
            self._handle_failure(msg, e, attempts=1)
            return None

        self._bump("persisted")
        if self.settings.ack_mode == "after_process":
            self._acknowledge_quietly(msg)
        return order_id

    def _persist(self, document) -> int:
        """Persist with up to ``max_retries`` extra attempts.

        A failure that left an order row behind is not retried, since a
        second attempt would insert a duplicate order.
        """
        attempt = 0
        while True:
            attempt += 1
            try:
                return self.writer.persist(document)
            except PersistenceError as e:
                e.attempts = attempt
                if e.order_id is not None or attempt > self.settings.max_retries or self._stop_event.is_set():
                    raise
                delay = self.settings.retry_backoff_seconds * attempt
                logger.warning(f"Persist attempt {attempt} failed, retrying in {delay:.1f}s: {e}")
                self._stop_event.wait(delay)

    def _handle_failure(self, msg, error: BaseException, attempts: int) -> None:
        self.notifier.notify(error, topic=msg.topic(), partition=msg.partition(), offset=msg.offset())

        if self.settings.ack_mode != "after_process":
            return

        if self.dead_letter is not None:
            try:
                self.dead_letter.send(msg, error, attempts)
            except TransportError as e:
                logger.error(f"Failed to dead-letter offset {msg.offset()}, leaving it unacknowledged: {e}")
                self._bump("transport_errors")
                self.notifier.notify(e, stage="dead_letter", topic=msg.topic(), partition=msg.partition(), offset=msg.offset())
                return
            self._bump("dead_lettered")
            logger.warning(f"Dead-lettered offset {msg.offset()} to {self.dead_letter.topic}")

        self._acknowledge_quietly(msg)

    def _acknowledge_quietly(self, msg) -> None:
        try:
            self._acknowledge(msg)
        except TransportError as e:
            logger.error(f"Error acknowledging message: {e}")
            self._bump("transport_errors")

    def stop(self, timeout=_UNSET) -> bool:
        """Request shutdown and wait for the broker client to close.

        Args:
            timeout: Seconds to wait; defaults to ``shutdown_timeout_seconds``.
                None waits until the close has finished.

        Returns:
            bool: True if the consumer is fully stopped
        """
        if timeout is _UNSET:
            timeout = self.settings.shutdown_timeout_seconds

        with self._state_lock:
            if self._state is ConsumerState.STOPPED:
                return True
            self._stop_event.set()
            if self._state is ConsumerState.STARTING:
                # run() was never entered, nothing else will close the client
                self._close_client()
                self._set_state(ConsumerState.STOPPED)
                self._closed.set()
                return True
            self._set_state(ConsumerState.STOPPING)

        finished = self._closed.wait(timeout)
        if not finished:
            logger.warning(f"Consumer did not stop within {timeout}s")
        return finished

    def _shutdown(self, executor: ThreadPoolExecutor, pending: set) -> None:
        with self._state_lock:
            if self._state is not ConsumerState.STOPPING:
                self._set_state(ConsumerState.STOPPING)

        if pending:
            logger.info(f"Waiting for {len(pending)} in-flight messages")
            _, not_done = wait(pending, timeout=self.settings.shutdown_grace_seconds)
            if not_done:
                logger.warning(f"{len(not_done)} message handlers still running after the grace period")
        executor.shutdown(wait=False, cancel_futures=True)

        self._log_status()
        self._close_client()
        with self._state_lock:
            self._set_state(ConsumerState.STOPPED)
        self._closed.set()

    def _close_client(self) -> None:
        if self.consumer is None:
            return
        consumer, self.consumer = self.consumer, None
        try:
            consumer.close()
        except (KafkaException, RuntimeError) as e:
            logger.error(f"Error closing consumer: {e}")
        else:
            logger.info("Consumer closed")

    def _log_status(self) -> None:
        """Log consumer status and statistics."""
        data = self.snapshot()
        logger.info(
            f"Consumer status | received={data['received']} | persisted={data['persisted']} | "
            f"decode_errors={data['decode_errors']} | persistence_errors={data['persistence_errors']} | "
            f"transport_errors={data['transport_errors']} | dead_lettered={data['dead_lettered']} | "
            f"unexpected_errors={data['unexpected_errors']} | "
            f"runtime_seconds={data['uptime_seconds']:.2f}"
        )
