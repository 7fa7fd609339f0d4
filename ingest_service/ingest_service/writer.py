"""Persistence of decoded order documents."""

from typing import Optional

from sqlalchemy.exc import SQLAlchemyError

from .exceptions import PersistenceError
from .logger import logger
from .schemas import OrderDocument
from .store import OrderStore

# drivers raise these directly for values they cannot bind
STORE_ERRORS = (SQLAlchemyError, OverflowError, ValueError)


class PersistenceWriter:
    """Writes one order document as an order row followed by its line items.

    The parent row is inserted first because every line item must reference
    its generated identifier.

    In the default mode the two inserts are committed separately: a failure
    while writing line items leaves the order row in place without them.
    With ``atomic=True`` both inserts share one transaction and a line item
    failure rolls the order back as well.

    Attributes:
        store: Store the unit of work is opened against.
        atomic: Whether both inserts are committed together.
    """

    def __init__(self, store: OrderStore, atomic: bool = False):
        self.store = store
        self.atomic = atomic

    def persist(self, document: OrderDocument) -> int:
        """Insert the order and its line items.

        Args:
            document: Decoded document; its identifiers are filled in place.

        Returns:
            int: The identifier generated for the order.

        Raises:
            PersistenceError: If either insert fails. ``order_id`` is set on the
                error when the order row stays committed without its items.
        """
        committed_order_id: Optional[int] = None
        try:
            with self.store.open() as uow:
                order_id = uow.insert_order(document.order)
                if not self.atomic:
                    uow.commit()
                    committed_order_id = order_id

                document.order.order_id = order_id
                for item in document.line_items:
                    item.order_id = order_id

                uow.insert_line_items(document.line_items)
                uow.commit()
        except STORE_ERRORS as e:
            if committed_order_id is not None:
                logger.error(
                    f"Line items for order {committed_order_id} were not written; "
                    f"order row left without items: {e}"
                )
                raise PersistenceError(
                    f"Failed to insert line items for order {committed_order_id}: {e}",
                    order_id=committed_order_id,
                ) from e
            # rolled back, so no identity was established
            document.order.order_id = None
            for item in document.line_items:
                item.order_id = None
            raise PersistenceError(f"Failed to persist order document: {e}") from e

        logger.info(
            f"Persisted order | order_id={order_id} | customer_id={document.order.customer_id} | "
            f"line_items={len(document.line_items)}"
        )
        return order_id
