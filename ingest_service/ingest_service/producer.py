"""Kafka producer for dead-lettering messages that cannot be ingested."""

from typing import Optional

from confluent_kafka import KafkaException, Producer
from logging_utils.config import get_kafka_logger

from .exceptions import TransportError

logger = get_kafka_logger("order-ingest")


class DeadLetterProducer:
    """Publishes failed order payloads to a dead-letter topic.

    The original payload and key are forwarded unchanged; failure details go
    into message headers.

    Attributes:
        topic: Dead-letter topic name.
    """

    def __init__(self, bootstrap_servers: str, topic: str, producer: Optional[Producer] = None):
        """Initialize the dead-letter producer.

        Args:
            bootstrap_servers: Kafka bootstrap servers
            topic: Dead-letter topic name
            producer: Already configured producer to use instead of creating one
        """
        self.topic = topic
        self._producer = producer or Producer(
            {
                "bootstrap.servers": bootstrap_servers,
                "client.id": "order-ingest-dlq",
                "acks": "all",
                "message.timeout.ms": 10000,
            }
        )

    def _delivery_callback(self, err, msg) -> None:
        if err:
            logger.error(f"Dead-letter delivery failed: {err}")
        else:
            logger.debug(f"Dead-lettered message to {msg.topic()} [p:{msg.partition()}] @ {msg.offset()}")

    def send(self, msg, error: BaseException, attempts: int, timeout: float = 10.0) -> None:
        """Publish ``msg`` to the dead-letter topic and wait for delivery.

        Args:
            msg: The consumed Kafka message
            error: The error that made the message undeliverable
            attempts: How many processing attempts were made
            timeout: Seconds to wait for the broker to confirm delivery

        Raises:
            TransportError: If the message could not be handed to the broker in time
        """
        headers = [
            ("x-error-type", type(error).__name__.encode("utf-8")),
            ("x-error-message", str(error)[:1000].encode("utf-8")),
            ("x-source-topic", str(msg.topic()).encode("utf-8")),
            ("x-source-partition", str(msg.partition()).encode("utf-8")),
            ("x-source-offset", str(msg.offset()).encode("utf-8")),
            ("x-attempts", str(attempts).encode("utf-8")),
        ]
        delivery = {}

        def on_delivery(err, delivered):
            delivery["error"] = err
            self._delivery_callback(err, delivered)

        try:
            self._producer.produce(
                topic=self.topic,
                key=msg.key(),
                value=msg.value(),
                headers=headers,
                on_delivery=on_delivery,
            )
            remaining = self._producer.flush(timeout)
        except (BufferError, KafkaException) as e:
            raise TransportError(f"Could not dead-letter message: {e}") from e

        if remaining > 0:
            raise TransportError(f"Dead-letter delivery to {self.topic} timed out")
        if delivery.get("error") is not None:
            raise TransportError(f"Dead-letter delivery to {self.topic} failed: {delivery['error']}")

    def close(self) -> None:
        """Flush any pending dead-letter messages."""
        remaining = self._producer.flush(10.0)
        if remaining > 0:
            logger.warning(f"{remaining} dead-letter messages still pending delivery")
