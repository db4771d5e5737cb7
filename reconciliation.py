"""Single authority for moving an order out of ``pending`` after a gateway confirms payment."""

import enum
import logging
from datetime import datetime
from decimal import Decimal

from sqlalchemy.orm import Session

from errors import NotFoundError
from models import Order, OrderStatus

logger = logging.getLogger(__name__)


class ReconcileOutcome(enum.Enum):
    CONFIRMED = "confirmed"
    ALREADY_CONFIRMED = "already_confirmed"
    CONFLICT = "conflict"


class OrderReconciliationService:
    def __init__(self, db: Session):
        self.db = db

    def confirm(self, order_id: str, transaction_id: str) -> ReconcileOutcome:
        """Confirm a pending order; never overwrites an earlier reconciliation"""
        updated = (
            self.db.query(Order)
            .filter(Order.id == order_id, Order.status == OrderStatus.PENDING)
            .update(
                {
                    Order.status: OrderStatus.CONFIRMED,
                    Order.payment_transaction_id: transaction_id,
                    Order.updated_at: datetime.utcnow(),
                },
                synchronize_session=False,
            )
        )
        self.db.commit()

        if updated:
            logger.info(f"Order {order_id} confirmed with transaction {transaction_id}")
            return ReconcileOutcome.CONFIRMED

        order = self.db.query(Order).filter(Order.id == order_id).first()
        if order is None:
            raise NotFoundError("Order not found")

        # Drop any identity-map copy so callers see the committed row
        self.db.refresh(order)

        if order.status == OrderStatus.CONFIRMED and order.payment_transaction_id == transaction_id:
            logger.info(f"Order {order_id} already confirmed with {transaction_id}, nothing to do")
            return ReconcileOutcome.ALREADY_CONFIRMED

        logger.error(
            f"Order {order_id} not reconciled: status={order.status.value}, "
            f"stored transaction={order.payment_transaction_id}, incoming transaction={transaction_id}"
        )
        return ReconcileOutcome.CONFLICT

    def flag_amount_mismatch(self, order_id: str, paid: Decimal, expected: Decimal, reference: str) -> None:
        """Leave a note for staff; the order status is left alone."""
        note = f"AMOUNT MISMATCH: Paid ৳{paid}, Expected ৳{expected}. Ref: {reference}"
        order = self.db.query(Order).filter(Order.id == order_id).first()
        if order is None:
            return
        if order.notes and note in order.notes.splitlines():
            logger.info(f"Amount mismatch on order {order_id} already noted for ref {reference}")
            return

        order.notes = f"{order.notes}\n{note}" if order.notes else note
        order.updated_at = datetime.utcnow()
        self.db.commit()
        logger.error(f"Amount mismatch on order {order_id}: paid {paid}, expected {expected}, ref {reference}")
