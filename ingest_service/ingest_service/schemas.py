"""Pydantic models for packaged order documents and failure reports."""

import uuid
from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

# signed 64-bit INTEGER column range
DB_INT_MIN = -(2**63)
DB_INT_MAX = 2**63 - 1


class OrderLineItem(BaseModel):
    """Represents a single product line of an order.

    Attributes:
        order_id: Identifier of the parent order, assigned once the parent is stored.
        product_id: Product identifier.
        quantity: Number of units ordered.
        price: Price per unit.
    """

    order_id: Optional[int] = Field(None, alias="OrderId")
    product_id: int = Field(..., alias="ProductId", ge=DB_INT_MIN, le=DB_INT_MAX)
    quantity: int = Field(..., alias="Quantity", ge=DB_INT_MIN, le=DB_INT_MAX)
    price: Decimal = Field(..., alias="Price")

    model_config = ConfigDict(populate_by_name=True)


class Order(BaseModel):
    """Represents the parent order record.

    Attributes:
        order_id: Store-generated identifier; None until the order is inserted.
        created_at: Creation timestamp, kept with the offset it was sent with.
        customer_id: Customer who placed the order.
        sold_by_id: Seller the order was placed with.
    """

    order_id: Optional[int] = Field(None, alias="OrderId")
    created_at: datetime = Field(..., alias="CreatedDate")
    customer_id: int = Field(..., alias="CustomerId", ge=DB_INT_MIN, le=DB_INT_MAX)
    sold_by_id: int = Field(..., alias="SoldById", ge=DB_INT_MIN, le=DB_INT_MAX)

    model_config = ConfigDict(
        populate_by_name=True,
        json_schema_extra={
            "example": {
                "CreatedDate": "2023-05-01T10:00:00+02:00",
                "CustomerId": 42,
                "SoldById": 7,
            }
        },
    )


class OrderDocument(BaseModel):
    """One order plus its line items, as published by the upstream producer."""

    order: Order = Field(..., alias="Order")
    line_items: list[OrderLineItem] = Field(default_factory=list, alias="OrderProducts")

    model_config = ConfigDict(populate_by_name=True)


class FailureReport(BaseModel):
    """A human-readable report about a failure in the ingest pipeline.

    Attributes:
        report_id: Unique identifier for the report
        error_type: Class name of the error being reported
        stage: Pipeline stage the error came from
        message: Error text
        topic: Topic of the message being processed, if known
        partition: Partition of the message being processed, if known
        offset: Offset of the message being processed, if known
        occurred_at: When the report was created
    """

    report_id: str = Field(default_factory=lambda: f"fail-{uuid.uuid4().hex[:12]}")
    error_type: str
    stage: str
    message: str
    topic: Optional[str] = None
    partition: Optional[int] = None
    offset: Optional[int] = None
    occurred_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def subject(self) -> str:
        return f"Order ingest error ({self.stage}): {self.error_type}"

    def render(self) -> str:
        """Render the report as plain text for mail bodies."""
        lines = [
            f"Report: {self.report_id}",
            f"Stage: {self.stage}",
            f"Error: {self.error_type}: {self.message}",
            f"Occurred at: {self.occurred_at.isoformat()}",
        ]
        if self.topic is not None:
            lines.append(f"Message: topic={self.topic} partition={self.partition} offset={self.offset}")
        return "\n".join(lines)
