"""SQLAlchemy store for ingested orders and their line items.

Two tables hold the ingested documents: ``orders`` (one row per document,
with a store-generated integer key) and ``order_line_items`` (one row per
product line, referencing its parent through ``order_id``).

``created_at`` is persisted as ISO-8601 text through :class:`OffsetDateTime`
so the UTC offset the order was sent with survives on every backend.
Timestamp-with-time-zone columns would normalize it to UTC.
"""

from contextlib import contextmanager
from datetime import datetime
from typing import Iterator, Optional, Sequence

from sqlalchemy import ForeignKey, Integer, Numeric, String, create_engine, func, select
from sqlalchemy.engine import Engine
from sqlalchemy.orm import DeclarativeBase, Session, mapped_column, sessionmaker
from sqlalchemy.types import TypeDecorator

from .logger import logger
from .schemas import Order, OrderLineItem


class OffsetDateTime(TypeDecorator):
    """Datetime column stored as ISO-8601 text, offset included."""

    impl = String(40)
    cache_ok = True

    def process_bind_param(self, value: Optional[datetime], dialect) -> Optional[str]:
        if value is None:
            return None
        return value.isoformat()

    def process_result_value(self, value: Optional[str], dialect) -> Optional[datetime]:
        if value is None:
            return None
        return datetime.fromisoformat(value)


class Base(DeclarativeBase):
    pass


class OrderRecord(Base):
    """SQLAlchemy model for a persisted order.

    Attributes:
        id: Store-generated primary key.
        created_at: Creation timestamp with its original offset.
        customer_id: Customer who placed the order.
        sold_by_id: Seller the order was placed with.
    """

    __tablename__ = "orders"

    id = mapped_column(Integer, primary_key=True, autoincrement=True)
    created_at = mapped_column(OffsetDateTime, nullable=False)
    customer_id = mapped_column(Integer, nullable=False)
    sold_by_id = mapped_column(Integer, nullable=False)


class OrderLineItemRecord(Base):
    """SQLAlchemy model for a persisted order line item."""

    __tablename__ = "order_line_items"

    id = mapped_column(Integer, primary_key=True, autoincrement=True)
    order_id = mapped_column(Integer, ForeignKey("orders.id"), nullable=False, index=True)
    product_id = mapped_column(Integer, nullable=False)
    quantity = mapped_column(Integer, nullable=False)
    price = mapped_column(Numeric(12, 2), nullable=False)


def create_store_engine(database_url: str, pool_timeout: float = 30.0) -> Engine:
    """Create the engine for ``database_url``.

    SQLite connections are opened with ``check_same_thread=False`` because
    handlers run on worker threads, each with its own session.
    """
    if database_url.startswith("sqlite"):
        return create_engine(
            database_url,
            connect_args={"check_same_thread": False, "timeout": pool_timeout},
        )
    return create_engine(database_url, pool_pre_ping=True, pool_timeout=pool_timeout)


class UnitOfWork:
    """A scoped session against the store, opened for one message.

    Wraps a SQLAlchemy session with the two inserts the ingest pipeline
    needs. Transaction boundaries are left to the caller.
    """

    def __init__(self, session: Session):
        self.session = session

    def insert_order(self, order: Order) -> int:
        """Stage an order row and flush it to obtain the generated identifier.

        Returns:
            int: The identifier the store assigned to the new row.
        """
        record = OrderRecord(
            created_at=order.created_at,
            customer_id=order.customer_id,
            sold_by_id=order.sold_by_id,
        )
        self.session.add(record)
        self.session.flush()
        return record.id

    def insert_line_items(self, items: Sequence[OrderLineItem]) -> None:
        """Stage line item rows; each item must already carry its parent id."""
        self.session.add_all(
            OrderLineItemRecord(
                order_id=item.order_id,
                product_id=item.product_id,
                quantity=item.quantity,
                price=item.price,
            )
            for item in items
        )
        self.session.flush()

    def commit(self) -> None:
        self.session.commit()

    def rollback(self) -> None:
        self.session.rollback()


class OrderStore:
    """Entry point to the relational store."""

    def __init__(self, engine: Engine):
        self.engine = engine
        self._session_factory = sessionmaker(bind=engine, expire_on_commit=False)

    @classmethod
    def from_url(cls, database_url: str, pool_timeout: float = 30.0) -> "OrderStore":
        return cls(create_store_engine(database_url, pool_timeout=pool_timeout))

    def create_schema(self) -> None:
        """Create the order tables if they do not exist yet."""
        Base.metadata.create_all(self.engine)
        logger.info(f"Order tables ready on {self.engine.url.render_as_string(hide_password=True)}")

    @contextmanager
    def open(self) -> Iterator[UnitOfWork]:
        """Yield a unit of work; its session is closed on every exit path.

        Anything not committed when the block exits is rolled back.

        Yields:
            UnitOfWork: Fresh unit of work bound to a new session.
        """
        with self._session_factory() as session:
            yield UnitOfWork(session)

    def count_orders(self) -> int:
        with self._session_factory() as session:
            return session.scalar(select(func.count()).select_from(OrderRecord))

    def get_order(self, order_id: int) -> Optional[OrderRecord]:
        with self._session_factory() as session:
            return session.get(OrderRecord, order_id)

    def line_items_for(self, order_id: int) -> list[OrderLineItemRecord]:
        with self._session_factory() as session:
            return list(
                session.scalars(
                    select(OrderLineItemRecord)
                    .where(OrderLineItemRecord.order_id == order_id)
                    .order_by(OrderLineItemRecord.id)
                )
            )

    def dispose(self) -> None:
        self.engine.dispose()
