"""Decoding of raw Kafka payloads into order documents."""

from typing import Union

from pydantic import ValidationError

from .exceptions import DecodeError
from .schemas import OrderDocument


def decode_document(payload: Union[bytes, str, None]) -> OrderDocument:
    """Parse one message payload into an order document.

    Timestamps keep the UTC offset they were serialized with; a value sent
    as ``2023-05-01T10:00:00+02:00`` decodes to a datetime whose tzinfo is
    +02:00, not to UTC or to the local zone.

    Args:
        payload: Raw message value, UTF-8 encoded JSON.

    Returns:
        OrderDocument: The decoded document, with no identifiers assigned.

    Raises:
        DecodeError: If the payload is empty, not UTF-8, not JSON, or does not
            match the order document shape.
    """
    if payload is None:
        raise DecodeError("Message has no payload")

    if isinstance(payload, bytes):
        try:
            payload = payload.decode("utf-8")
        except UnicodeDecodeError as e:
            raise DecodeError(f"Payload is not valid UTF-8: {e}") from e

    try:
        return OrderDocument.model_validate_json(payload)
    except ValidationError as e:
        raise DecodeError(f"Invalid order document: {e}") from e


def encode_document(document: OrderDocument) -> str:
    """Serialize an order document to its wire form.

    Args:
        document: The document to serialize.

    Returns:
        str: JSON using the upstream field names and ISO-8601 timestamps.
    """
    return document.model_dump_json(by_alias=True)
