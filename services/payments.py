from typing import Any, Dict, Optional

from sqlalchemy.orm import Session

from core import clock
from core.db import atomic
from core.logging import get_logger
from models.enums import (
    LedgerAccount,
    OrderEventType,
    OrderStatus,
    PaymentStatus,
    TransactionDirection,
    TransactionType,
)
from services import inventory, ledger, notifications
from services.orders import _get_order, assert_valid_transition, log_order_event

logger = get_logger(__name__)


def confirm_payment(
    db: Session,
    order_id: int,
    payment_reference: str,
    amount: Optional[int] = None,
    currency: Optional[str] = None,
) -> Dict[str, Any]:
    """Apply a successful payment. Safe to call again for the same order.

    The store's pending balance is credited with the net of commission; the
    commission itself is written as an informational fee entry.
    """
    with atomic(db):
        order = _get_order(db, order_id)
        if order.payment_status in (PaymentStatus.PAID, PaymentStatus.REFUNDED):
            logger.info("Payment for order %s already confirmed", order.order_number)
            return {"already_processed": True}
        assert_valid_transition(order.status, OrderStatus.PAID)

        if amount is not None and amount != order.total_amount:
            logger.warning(
                "Order %s paid %s but total is %d", order.order_number, amount, order.total_amount
            )
        if currency and currency != order.currency:
            logger.warning("Order %s paid in %s, expected %s", order.order_number, currency, order.currency)

        now = clock.utcnow()
        order.status = OrderStatus.PAID
        order.payment_status = PaymentStatus.PAID
        order.payment_reference = payment_reference
        order.updated_at = now

        store = order.store
        commission = order.commission_amount or 0
        net = order.total_amount - commission
        ledger.record_entry(
            db, store,
            type=TransactionType.SALE,
            direction=TransactionDirection.CREDIT,
            account=LedgerAccount.PENDING,
            amount=net,
            order_id=order.id,
            reference=payment_reference,
            description=f"Sale {order.order_number}",
            metadata={"gross": order.total_amount, "commission": commission},
        )
        if commission > 0:
            ledger.record_entry(
                db, store,
                type=TransactionType.FEE,
                direction=TransactionDirection.DEBIT,
                account=LedgerAccount.PENDING,
                amount=commission,
                order_id=order.id,
                reference=payment_reference,
                description=f"Commission {order.order_number}",
                moves_balance=False,
            )
        store.total_orders += 1

        log_order_event(
            db, order, OrderEventType.PAID, "Payment confirmed",
            metadata={"payment_reference": payment_reference, "amount": order.total_amount},
        )

    logger.info("Payment confirmed for order %s (net %d to store %s)", order.order_number, net, store.id)
    notifications.payment_confirmed(order)
    return {"order_id": order.id, "status": order.status.value, "net_amount": net}


def fail_payment(db: Session, order_id: int, reason: Optional[str] = None) -> Dict[str, Any]:
    """Apply a failed or abandoned payment: cancel the order and give the stock back."""
    with atomic(db):
        order = _get_order(db, order_id)
        if order.payment_status in (PaymentStatus.FAILED, PaymentStatus.PAID, PaymentStatus.REFUNDED):
            return {"already_processed": True}

        order.payment_status = PaymentStatus.FAILED
        order.updated_at = clock.utcnow()
        # An order already cancelled by the customer has had its stock restored
        if order.status != OrderStatus.CANCELLED:
            order.status = OrderStatus.CANCELLED
            inventory.restore_inventory(db, order.items)
        log_order_event(
            db, order, OrderEventType.PAYMENT_FAILED, reason or "Payment failed",
            metadata={"reason": reason},
        )

    logger.info("Payment failed for order %s: %s", order.order_number, reason)
    return {"order_id": order.id, "status": order.status.value}
