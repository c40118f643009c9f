"""
Return requests and refunds.

A delivered order may be returned within the return window. The store owner
approves or rejects, confirms reception (stock comes back), then refunds,
which debits the store's spendable balance.
"""
from collections import Counter
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Sequence

from sqlalchemy.orm import Session

from core import clock
from core.config import settings
from core.db import atomic
from core.errors import (
    AuthorizationError,
    InsufficientBalance,
    InvalidTransition,
    NotFoundError,
    ValidationError,
)
from core.logging import get_logger
from core.tenancy import Actor, require_store_owner
from models.enums import (
    ActorType,
    LedgerAccount,
    OrderEventType,
    OrderStatus,
    PaymentStatus,
    ReturnReason,
    ReturnStatus,
    TransactionDirection,
    TransactionType,
)
from models.order import Order
from models.return_request import ReturnItem, ReturnRequest
from services import disbursements, inventory, ledger, notifications
from services.orders import assert_valid_transition, log_order_event

logger = get_logger(__name__)


RETURN_TRANSITIONS: Dict[ReturnStatus, set] = {
    ReturnStatus.REQUESTED: {ReturnStatus.APPROVED, ReturnStatus.REJECTED},
    ReturnStatus.APPROVED: {ReturnStatus.RECEIVED},
    ReturnStatus.RECEIVED: {ReturnStatus.REFUNDED},
    ReturnStatus.REJECTED: set(),
    ReturnStatus.REFUNDED: set(),
}

ACTIVE_RETURN_STATUSES = (ReturnStatus.REQUESTED, ReturnStatus.APPROVED, ReturnStatus.RECEIVED)
# Returns whose units count against what the order can still give back
SETTLED_RETURN_STATUSES = (ReturnStatus.RECEIVED, ReturnStatus.REFUNDED)


def assert_valid_return_transition(current: ReturnStatus, target: ReturnStatus) -> None:
    if ReturnStatus(target) not in RETURN_TRANSITIONS[ReturnStatus(current)]:
        raise InvalidTransition(ReturnStatus(current).value, ReturnStatus(target).value)


def _get_return(db: Session, return_id: int) -> ReturnRequest:
    return_request = db.get(ReturnRequest, return_id)
    if return_request is None:
        raise NotFoundError("Return request not found")
    return return_request


def check_return_eligibility(db: Session, order: Order, now: datetime) -> Optional[str]:
    """Return why the order cannot be returned, or None if it can."""
    if order.status != OrderStatus.DELIVERED:
        return "Only delivered orders can be returned"
    if order.delivered_at is None:
        return "Delivery date is unknown"
    if now - order.delivered_at > timedelta(hours=settings.RETURN_WINDOW_HOURS):
        return f"The {settings.RETURN_WINDOW_HOURS}h return window has expired"
    active = db.query(ReturnRequest.id).filter(
        ReturnRequest.order_id == order.id,
        ReturnRequest.status.in_(ACTIVE_RETURN_STATUSES),
    ).first()
    if active:
        return "A return is already in progress for this order"
    return None


def returned_quantities(
    db: Session, order: Order, statuses: Sequence[ReturnStatus], exclude_id: Optional[int] = None
) -> Counter:
    """Units already returned per (product, variant) line, across the order's returns."""
    query = (
        db.query(ReturnItem)
        .join(ReturnRequest, ReturnItem.return_id == ReturnRequest.id)
        .filter(ReturnRequest.order_id == order.id, ReturnRequest.status.in_(statuses))
    )
    if exclude_id is not None:
        query = query.filter(ReturnRequest.id != exclude_id)
    returned: Counter = Counter()
    for item in query.all():
        returned[(item.product_id, item.variant_id)] += item.quantity
    return returned


def validate_return_items(order: Order, items: Sequence, already_returned: Optional[Counter] = None) -> List[ReturnItem]:
    """Match requested lines to the order and price them from the order snapshot.

    Units in ``already_returned`` are no longer returnable.
    """
    already_returned = already_returned or Counter()
    if not items:
        raise ValidationError("Select at least one item to return")

    lines = {(line.product_id, line.variant_id): line for line in order.items}
    requested: Counter = Counter()
    built: List[ReturnItem] = []
    for item in items:
        key = (item.product_id, getattr(item, "variant_id", None) or None)
        line = lines.get(key)
        if line is None:
            raise ValidationError(f"Product {item.product_id} is not part of this order")
        if item.quantity < 1:
            raise ValidationError("Return quantity must be at least 1")
        requested[key] += item.quantity
        remaining = line.quantity - already_returned[key]
        if requested[key] > remaining:
            raise ValidationError(f"Cannot return more than {remaining} of '{line.title}'")
        built.append(
            ReturnItem(
                product_id=line.product_id,
                variant_id=line.variant_id,
                title=line.title,
                quantity=item.quantity,
                unit_price=line.unit_price,
            )
        )
    return built


def calculate_refund_amount(items: Sequence[ReturnItem]) -> int:
    return sum(item.unit_price * item.quantity for item in items)


def is_full_return(order: Order, items: Sequence[ReturnItem], already_returned: Optional[Counter] = None) -> bool:
    returned: Counter = Counter(already_returned or {})
    for item in items:
        returned[(item.product_id, item.variant_id)] += item.quantity
    return all(returned[(line.product_id, line.variant_id)] == line.quantity for line in order.items)


def request_return(
    db: Session,
    actor: Actor,
    order_id: int,
    items: Sequence,
    reason: str,
    reason_category: ReturnReason = ReturnReason.OTHER,
) -> ReturnRequest:
    with atomic(db):
        order = db.get(Order, order_id)
        if order is None:
            raise NotFoundError("Order not found")
        if order.customer_id != actor.user_id:
            raise AuthorizationError("You can only return your own orders")
        if not reason or not reason.strip():
            raise ValidationError("A reason is required")

        now = clock.utcnow()
        error = check_return_eligibility(db, order, now)
        if error:
            raise ValidationError(error)

        return_items = validate_return_items(
            order, items, returned_quantities(db, order, SETTLED_RETURN_STATUSES)
        )
        return_request = ReturnRequest(
            order_id=order.id,
            store_id=order.store_id,
            customer_id=actor.user_id,
            status=ReturnStatus.REQUESTED,
            reason=reason.strip(),
            reason_category=ReturnReason(reason_category),
            refund_amount=calculate_refund_amount(return_items),
            requested_at=now,
        )
        return_request.items = return_items
        db.add(return_request)
        db.flush()
        log_order_event(
            db, order, OrderEventType.NOTE, "Return requested",
            actor_type=ActorType.CUSTOMER, actor_id=actor.user_id,
            metadata={"return_id": return_request.id, "refund_amount": return_request.refund_amount},
        )

    logger.info("Return %s requested for order %s", return_request.id, order.order_number)
    notifications.return_requested(return_request)
    return return_request


def approve_return(db: Session, actor: Actor, return_id: int, notes: Optional[str] = None) -> ReturnRequest:
    with atomic(db):
        return_request = _get_return(db, return_id)
        require_store_owner(actor, return_request.store)
        assert_valid_return_transition(return_request.status, ReturnStatus.APPROVED)
        return_request.status = ReturnStatus.APPROVED
        return_request.approved_at = clock.utcnow()
        if notes:
            return_request.vendor_notes = notes

    notifications.return_updated(return_request)
    return return_request


def reject_return(db: Session, actor: Actor, return_id: int, reason: str) -> ReturnRequest:
    if not reason or not reason.strip():
        raise ValidationError("A rejection reason is required")
    with atomic(db):
        return_request = _get_return(db, return_id)
        require_store_owner(actor, return_request.store)
        assert_valid_return_transition(return_request.status, ReturnStatus.REJECTED)
        return_request.status = ReturnStatus.REJECTED
        return_request.rejection_reason = reason.strip()

    notifications.return_updated(return_request)
    return return_request


def confirm_received(db: Session, actor: Actor, return_id: int) -> ReturnRequest:
    """The store got the goods back; returned quantities go back into stock."""
    with atomic(db):
        return_request = _get_return(db, return_id)
        require_store_owner(actor, return_request.store)
        assert_valid_return_transition(return_request.status, ReturnStatus.RECEIVED)
        return_request.status = ReturnStatus.RECEIVED
        return_request.received_at = clock.utcnow()
        inventory.restore_inventory(db, return_request.items)
    return return_request


def process_refund(db: Session, actor: Actor, return_id: int) -> Dict[str, Any]:
    with atomic(db):
        return_request = _get_return(db, return_id)
        store = return_request.store
        require_store_owner(actor, store)
        assert_valid_return_transition(return_request.status, ReturnStatus.REFUNDED)

        amount = return_request.refund_amount
        if store.balance < amount:
            raise InsufficientBalance(
                f"Insufficient balance to refund {amount}: {store.balance} available"
            )

        order = return_request.order
        ledger.record_entry(
            db, store,
            type=TransactionType.REFUND,
            direction=TransactionDirection.DEBIT,
            account=LedgerAccount.AVAILABLE,
            amount=amount,
            order_id=order.id,
            description=f"Refund for return #{return_request.id} ({order.order_number})",
            metadata={"return_id": return_request.id},
        )

        now = clock.utcnow()
        return_request.status = ReturnStatus.REFUNDED
        return_request.refunded_at = now

        previously_refunded = returned_quantities(
            db, order, (ReturnStatus.REFUNDED,), exclude_id=return_request.id
        )
        full_refund = is_full_return(order, return_request.items, previously_refunded)
        if full_refund:
            assert_valid_transition(order.status, OrderStatus.REFUNDED)
            order.status = OrderStatus.REFUNDED
            order.payment_status = PaymentStatus.REFUNDED
            order.updated_at = now
        log_order_event(
            db, order, OrderEventType.REFUNDED,
            "Order fully refunded" if full_refund else "Partial refund issued",
            actor_type=ActorType.VENDOR, actor_id=actor.user_id,
            metadata={"return_id": return_request.id, "amount": amount},
        )

    logger.info("Return %s refunded: %d from store %s", return_request.id, amount, store.id)
    if order.payment_reference:
        disbursements.schedule_refund(return_request)
    notifications.return_updated(return_request)
    return {
        "return_id": return_request.id,
        "refund_amount": amount,
        "order_refunded": full_refund,
    }


def record_refund_reference(db: Session, return_id: int, reference: str) -> ReturnRequest:
    with atomic(db):
        return_request = _get_return(db, return_id)
        return_request.refund_reference = reference
    return return_request
