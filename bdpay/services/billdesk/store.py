"""Persistence adapters for transactions and the storefront order boundary.

Status writes go through a conditional ``UPDATE ... WHERE status = 'pending'``
so a terminal status is written at most once, whatever order callbacks and
polls arrive in.
"""

from datetime import datetime, timezone
from decimal import Decimal

from sqlalchemy import select, update

from bdpay.common.errors import TransactionNotFound
from bdpay.common.logging import logger
from bdpay.common.state_machine import FAILED, PENDING, SUCCESS, is_terminal, validate_transition
from bdpay.services.billdesk.models import Customer, Order, Transaction


class TransactionStore:
    """Reads and monotonic writes of `Transaction` rows."""

    def __init__(self, session_factory) -> None:
        self.session_factory = session_factory

    def order_number_taken(self, order_number: str) -> bool:
        with self.session_factory() as db:
            found = db.execute(
                select(Transaction.transaction_id).where(Transaction.order_number == order_number)
            ).first()
            return found is not None

    def create_pending(self, order_id: str, order_number: str, amount: Decimal, metadata: dict) -> Transaction:
        with self.session_factory() as db:
            txn = Transaction(
                order_id=order_id,
                order_number=order_number,
                payment_method="billdesk",
                amount=amount,
                status=PENDING,
                meta=dict(metadata),
            )
            db.add(txn)
            db.commit()
            db.refresh(txn)
            logger.info("pending transaction created order_number=%s transaction_id=%s", order_number, txn.transaction_id)
            return txn

    def merge_metadata(self, transaction_id: str, fields: dict) -> None:
        with self.session_factory() as db:
            txn = db.get(Transaction, transaction_id)
            if txn is None:
                raise TransactionNotFound(transaction_id)
            # Reassign so the JSON column is flagged dirty.
            txn.meta = {**(txn.meta or {}), **fields}
            db.commit()

    def get(self, transaction_id: str) -> Transaction | None:
        with self.session_factory() as db:
            return db.get(Transaction, transaction_id)

    def find_by_order_number(self, order_number: str) -> Transaction | None:
        with self.session_factory() as db:
            return db.execute(
                select(Transaction).where(Transaction.order_number == order_number)
            ).scalar_one_or_none()

    def latest_for_order(self, order_id: str) -> Transaction | None:
        with self.session_factory() as db:
            return db.execute(
                select(Transaction)
                .where(Transaction.order_id == order_id)
                .order_by(Transaction.created_at.desc())
                .limit(1)
            ).scalar_one_or_none()

    def latest_pending_since(self, cutoff: datetime) -> Transaction | None:
        with self.session_factory() as db:
            return db.execute(
                select(Transaction)
                .where(Transaction.status == PENDING, Transaction.created_at >= cutoff)
                .order_by(Transaction.created_at.desc())
                .limit(1)
            ).scalar_one_or_none()

    def apply_gateway_status(
        self,
        order_number: str,
        new_status: str,
        gateway_transaction_id: str | None,
        raw_response: dict,
    ) -> tuple[Transaction, bool]:
        """Write a gateway-reported status; returns the stored row and whether it changed.

        Terminal rows are returned untouched. A `pending` report refreshes the
        metadata but keeps the status.
        """

        with self.session_factory() as db:
            txn = db.execute(
                select(Transaction).where(Transaction.order_number == order_number)
            ).scalar_one_or_none()
            if txn is None:
                raise TransactionNotFound(order_number)
            if is_terminal(txn.status):
                if new_status != txn.status:
                    logger.warning(
                        "ignoring %s for order_number=%s, already %s", new_status, order_number, txn.status
                    )
                return txn, False
            validate_transition(txn.status, new_status)

            now = datetime.now(timezone.utc)
            meta = {**(txn.meta or {}), "last_response": raw_response, "gateway_updated_at": now.isoformat()}
            if gateway_transaction_id:
                meta["gateway_transaction_id"] = gateway_transaction_id
            result = db.execute(
                update(Transaction)
                .where(Transaction.transaction_id == txn.transaction_id, Transaction.status == PENDING)
                .values({Transaction.status: new_status, Transaction.meta: meta, Transaction.updated_at: now})
            )
            if result.rowcount != 1:
                # Lost the race to a concurrent terminal write; report what won.
                db.rollback()
                current = db.get(Transaction, txn.transaction_id, populate_existing=True)
                logger.info("concurrent status write for order_number=%s, kept %s", order_number, current.status)
                return current, False
            db.commit()
            db.refresh(txn)
            if new_status in (SUCCESS, FAILED):
                logger.info("transaction %s order_number=%s", new_status, order_number)
            return txn, True


# Storefront payment_status/status for each local transaction status.
ORDER_STATUS_SYNC = {
    SUCCESS: ("paid", "processing"),
    FAILED: ("failed", None),
    PENDING: ("pending", None),
}


class OrderStore:
    """The slice of the storefront's order/customer tables this service touches."""

    def __init__(self, session_factory) -> None:
        self.session_factory = session_factory

    def get_order(self, order_id: str) -> Order | None:
        with self.session_factory() as db:
            return db.get(Order, order_id)

    def customer_contact(self, customer_id: str | None) -> tuple[str | None, str | None]:
        if not customer_id:
            return None, None
        with self.session_factory() as db:
            customer = db.get(Customer, customer_id)
            if customer is None:
                return None, None
            return customer.email, customer.phone

    def set_payment_status(self, order_id: str, payment_status: str, status: str | None = None) -> None:
        with self.session_factory() as db:
            order = db.get(Order, order_id)
            if order is None:
                logger.warning("order %s vanished before payment status sync", order_id)
                return
            order.payment_status = payment_status
            if status is not None:
                order.status = status
            db.commit()

    def sync_with_transaction(self, order_id: str, transaction_status: str) -> None:
        payment_status, status = ORDER_STATUS_SYNC.get(transaction_status, ORDER_STATUS_SYNC[PENDING])
        self.set_payment_status(order_id, payment_status, status)
