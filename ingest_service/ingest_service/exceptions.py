"""Error taxonomy for the order ingest pipeline."""

from typing import Optional


class IngestError(Exception):
    """Base class for all ingest pipeline errors."""

    stage = "ingest"


class TransportError(IngestError):
    """Connecting to the broker, receiving or acknowledging a message failed."""

    stage = "transport"


class DecodeError(IngestError):
    """A message payload is not a valid order document."""

    stage = "decode"


class PersistenceError(IngestError):
    """Writing an order document to the store failed.

    Attributes:
        order_id: Identifier of the order row that was already committed when
            the failure happened, or None if nothing was left behind.
        attempts: How many times the write was attempted.
    """

    stage = "persist"

    def __init__(self, message: str, order_id: Optional[int] = None, attempts: int = 1):
        super().__init__(message)
        self.order_id = order_id
        self.attempts = attempts


class NotificationError(IngestError):
    """A notification channel could not deliver a failure report."""

    stage = "notify"
