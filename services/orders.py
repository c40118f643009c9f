"""
Order lifecycle: cart validation, totals, creation, and the status machine.

Every mutating function runs as one unit of work on the given session and
commits before any notification is queued.
"""
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Sequence

from sqlalchemy import func
from sqlalchemy.orm import Session

from core import clock
from core.config import settings
from core.db import atomic
from core.errors import (
    AuthorizationError,
    InsufficientStock,
    InvalidTransition,
    NotFoundError,
    ValidationError,
)
from core.logging import get_logger
from core.tenancy import Actor, actor_type_for, can_view_order, is_store_owner, require_store_owner
from models.coupon import Coupon
from models.enums import ActorType, CouponType, OrderEventType, OrderStatus, PaymentStatus, ProductStatus
from models.order import Order
from models.order_event import OrderEvent
from models.order_item import OrderItem
from models.product import Product, ProductVariant
from models.store import Store
from services import inventory, notifications, pricing

logger = get_logger(__name__)


ORDER_TRANSITIONS: Dict[OrderStatus, set] = {
    OrderStatus.PENDING: {OrderStatus.PAID, OrderStatus.CANCELLED},
    OrderStatus.PAID: {OrderStatus.PROCESSING, OrderStatus.CANCELLED, OrderStatus.REFUNDED},
    OrderStatus.PROCESSING: {OrderStatus.SHIPPED, OrderStatus.CANCELLED},
    OrderStatus.SHIPPED: {OrderStatus.DELIVERED},
    OrderStatus.DELIVERED: {OrderStatus.REFUNDED},
    OrderStatus.CANCELLED: set(),
    OrderStatus.REFUNDED: set(),
}

# Targets a vendor may set through update_status
VENDOR_TARGETS = {OrderStatus.PROCESSING, OrderStatus.SHIPPED, OrderStatus.DELIVERED}


def can_transition(current: OrderStatus, target: OrderStatus) -> bool:
    return OrderStatus(target) in ORDER_TRANSITIONS.get(OrderStatus(current), set())


def assert_valid_transition(current: OrderStatus, target: OrderStatus) -> None:
    if not can_transition(current, target):
        raise InvalidTransition(OrderStatus(current).value, OrderStatus(target).value)


def log_order_event(
    db: Session,
    order: Order,
    type: OrderEventType,
    description: str,
    actor_type: ActorType = ActorType.SYSTEM,
    actor_id: Optional[int] = None,
    metadata: Optional[Dict[str, Any]] = None,
) -> OrderEvent:
    event = OrderEvent(
        order_id=order.id,
        store_id=order.store_id,
        type=type,
        description=description,
        actor_type=actor_type,
        actor_id=actor_id,
        event_metadata=metadata,
        created_at=clock.utcnow(),
    )
    db.add(event)
    return event


def generate_order_number(db: Session, now: datetime) -> str:
    """Next sequential number for the year, e.g. PM-2026-0042."""
    prefix = f"{settings.ORDER_NUMBER_PREFIX}-{now.year}-"
    last = db.query(Order.order_number).filter(
        Order.order_number.like(f"{prefix}%")
    ).order_by(Order.id.desc()).first()

    next_seq = 1
    if last:
        try:
            next_seq = int(last[0][len(prefix):]) + 1
        except ValueError:
            logger.warning("Unparseable order number %s, restarting sequence", last[0])
    return f"{prefix}{next_seq:04d}"


def _get_order(db: Session, order_id: int) -> Order:
    order = db.get(Order, order_id)
    if order is None:
        raise NotFoundError("Order not found")
    return order


def get_order(db: Session, actor: Actor, order_id: int) -> Order:
    order = _get_order(db, order_id)
    if not can_view_order(actor, order):
        raise AuthorizationError("You cannot access this order")
    return order


def validate_and_build_items(db: Session, store: Store, items: Sequence) -> List[OrderItem]:
    """Check each cart line against the catalog and snapshot it as an OrderItem.

    Prices always come from the catalog; a variant price overrides the product price.
    """
    if not items:
        raise ValidationError("The order must contain at least one item")

    built: List[OrderItem] = []
    for item in items:
        if item.quantity < 1:
            raise ValidationError("Item quantity must be at least 1")

        product = db.get(Product, item.product_id)
        if product is None:
            raise ValidationError(f"Product not found: {item.product_id}")
        if product.store_id != store.id:
            raise ValidationError(f"Product '{product.title}' does not belong to this store")
        if product.status != ProductStatus.ACTIVE:
            raise ValidationError(f"Product '{product.title}' is not available")

        unit_price = product.price
        sku = product.sku
        title = product.title
        variant_id = getattr(item, "variant_id", None)
        if variant_id:
            variant = db.get(ProductVariant, variant_id)
            if variant is None or variant.product_id != product.id:
                raise ValidationError(f"Variant not found for '{product.title}'")
            if not variant.is_available:
                raise InsufficientStock(f"Variant '{variant.title}' is no longer available")
            if variant.quantity < item.quantity:
                raise InsufficientStock(
                    f"Insufficient stock for '{product.title} - {variant.title}' ({variant.quantity} available)"
                )
            if variant.price is not None:
                unit_price = variant.price
            if variant.sku:
                sku = variant.sku
            title = f"{product.title} - {variant.title}"
        elif product.track_inventory and product.quantity < item.quantity:
            raise InsufficientStock(f"Insufficient stock for '{product.title}' ({product.quantity} available)")

        built.append(
            OrderItem(
                product_id=product.id,
                variant_id=variant_id,
                title=title,
                sku=sku,
                quantity=item.quantity,
                unit_price=unit_price,
                total_price=unit_price * item.quantity,
            )
        )
    return built


def quote_shipping(store: Store, items: Sequence[OrderItem]) -> int:
    """Flat per-order shipping quote from the store."""
    return store.shipping_fee or 0


def apply_coupon(db: Session, store: Store, code: str, subtotal: int, customer_id: int, now: datetime) -> Coupon:
    """Look up a store coupon by code and check it can be used for this cart."""
    normalized = code.strip().upper()
    coupon = db.query(Coupon).filter(Coupon.store_id == store.id, Coupon.code == normalized).one_or_none()
    if coupon is None:
        raise ValidationError("Invalid coupon code")

    error = pricing.validate_coupon_rules(coupon, subtotal, now)
    if error:
        raise ValidationError(error)

    if coupon.max_uses_per_user:
        used_by_customer = db.query(func.count(Order.id)).filter(
            Order.store_id == store.id,
            Order.customer_id == customer_id,
            Order.coupon_code == coupon.code,
            Order.status != OrderStatus.CANCELLED,
        ).scalar()
        if used_by_customer >= coupon.max_uses_per_user:
            raise ValidationError("You have already used this coupon")
    return coupon


def create_order(
    db: Session,
    actor: Actor,
    store_id: int,
    items: Sequence,
    shipping_address: Dict[str, Any],
    billing_address: Optional[Dict[str, Any]] = None,
    coupon_code: Optional[str] = None,
    notes: Optional[str] = None,
    payment_method: Optional[str] = None,
) -> Dict[str, Any]:
    with atomic(db):
        store = db.get(Store, store_id)
        if store is None:
            raise NotFoundError("Store not found")
        if not store.is_open:
            raise ValidationError("This store is not accepting orders")
        if is_store_owner(actor, store):
            raise ValidationError("You cannot order from your own store")

        now = clock.utcnow()
        order_items = validate_and_build_items(db, store, items)
        subtotal = sum(item.total_price for item in order_items)

        # Shipping is quoted before the coupon so free shipping can waive it
        shipping = quote_shipping(store, order_items)
        discount = 0
        coupon = None
        if coupon_code:
            coupon = apply_coupon(db, store, coupon_code, subtotal, actor.user_id, now)
            discount = pricing.calculate_discount(coupon, subtotal)
            if coupon.type == CouponType.FREE_SHIPPING:
                shipping = 0

        total = max(0, subtotal - discount + shipping)
        commission = pricing.calculate_commission(total, pricing.commission_rate_for(store.plan))

        order = Order(
            order_number=generate_order_number(db, now),
            store_id=store.id,
            customer_id=actor.user_id,
            subtotal=subtotal,
            shipping_amount=shipping,
            discount_amount=discount,
            total_amount=total,
            commission_amount=commission,
            currency=store.currency,
            status=OrderStatus.PENDING,
            payment_status=PaymentStatus.PENDING,
            payment_method=payment_method,
            shipping_address=shipping_address,
            billing_address=billing_address,
            notes=notes,
            coupon_code=coupon.code if coupon else None,
            created_at=now,
            updated_at=now,
        )
        order.items = order_items
        db.add(order)
        db.flush()

        log_order_event(
            db, order, OrderEventType.CREATED, f"Order {order.order_number} created",
            actor_type=ActorType.CUSTOMER, actor_id=actor.user_id,
            metadata={"total_amount": total, "coupon_code": order.coupon_code},
        )
        inventory.decrement_inventory(db, order_items)
        if coupon:
            coupon.used_count += 1

    logger.info("Order %s created for store %s (total %d)", order.order_number, store.id, total)
    notifications.order_created(order)
    return {
        "order_id": order.id,
        "order_number": order.order_number,
        "total_amount": order.total_amount,
        "currency": order.currency,
    }


def update_status(
    db: Session,
    actor: Actor,
    order_id: int,
    target: OrderStatus,
    tracking_number: Optional[str] = None,
    carrier: Optional[str] = None,
    estimated_delivery: Optional[datetime] = None,
) -> Order:
    target = OrderStatus(target)
    if target not in VENDOR_TARGETS:
        raise ValidationError(f"Status '{target.value}' cannot be set directly")

    with atomic(db):
        order = _get_order(db, order_id)
        require_store_owner(actor, order.store)
        assert_valid_transition(order.status, target)

        now = clock.utcnow()
        order.status = target
        order.updated_at = now
        if target == OrderStatus.SHIPPED:
            if tracking_number:
                order.tracking_number = tracking_number
            if carrier:
                order.carrier = carrier
            if estimated_delivery:
                order.estimated_delivery = estimated_delivery
        elif target == OrderStatus.DELIVERED:
            order.delivered_at = now

        log_order_event(
            db, order, OrderEventType(target.value), f"Order marked as {target.value}",
            actor_type=ActorType.VENDOR, actor_id=actor.user_id,
            metadata={"tracking_number": order.tracking_number, "carrier": order.carrier}
            if target == OrderStatus.SHIPPED else None,
        )

    logger.info("Order %s moved to %s", order.order_number, target.value)
    if target in (OrderStatus.SHIPPED, OrderStatus.DELIVERED):
        notifications.order_status_changed(order)
    return order


def add_tracking(
    db: Session,
    actor: Actor,
    order_id: int,
    tracking_number: str,
    carrier: Optional[str] = None,
    estimated_delivery: Optional[datetime] = None,
) -> Order:
    with atomic(db):
        order = _get_order(db, order_id)
        require_store_owner(actor, order.store)
        if order.status not in (OrderStatus.PROCESSING, OrderStatus.SHIPPED):
            raise ValidationError("Tracking can only be added to processing or shipped orders")

        order.tracking_number = tracking_number
        if carrier:
            order.carrier = carrier
        if estimated_delivery:
            order.estimated_delivery = estimated_delivery
        order.updated_at = clock.utcnow()
        log_order_event(
            db, order, OrderEventType.TRACKING_UPDATED, f"Tracking number {tracking_number} added",
            actor_type=ActorType.VENDOR, actor_id=actor.user_id,
            metadata={"tracking_number": tracking_number, "carrier": carrier},
        )
    return order


def confirm_delivery(db: Session, actor: Actor, order_id: int) -> Order:
    """The customer acknowledges receipt of a shipped order."""
    with atomic(db):
        order = _get_order(db, order_id)
        if order.customer_id != actor.user_id:
            raise AuthorizationError("Only the customer can confirm delivery")
        assert_valid_transition(order.status, OrderStatus.DELIVERED)

        now = clock.utcnow()
        order.status = OrderStatus.DELIVERED
        order.delivered_at = now
        order.updated_at = now
        log_order_event(
            db, order, OrderEventType.DELIVERED, "Delivery confirmed by the customer",
            actor_type=ActorType.CUSTOMER, actor_id=actor.user_id,
        )
    return order


def _check_cancel_rights(actor: Actor, order: Order, now: datetime) -> None:
    if actor.is_admin:
        return
    if order.customer_id == actor.user_id:
        if order.status == OrderStatus.PENDING:
            return
        window = timedelta(hours=settings.CANCELLATION_WINDOW_HOURS)
        if order.status == OrderStatus.PAID and now - order.created_at <= window:
            return
        raise ValidationError("This order can no longer be cancelled")
    if is_store_owner(actor, order.store):
        if order.status == OrderStatus.PROCESSING:
            return
        raise ValidationError("The store can only cancel orders being processed")
    raise AuthorizationError("You cannot cancel this order")


def cancel_order(db: Session, actor: Actor, order_id: int, reason: Optional[str] = None) -> Order:
    with atomic(db):
        order = _get_order(db, order_id)
        now = clock.utcnow()
        _check_cancel_rights(actor, order, now)
        assert_valid_transition(order.status, OrderStatus.CANCELLED)

        inventory.restore_inventory(db, order.items)
        metadata: Dict[str, Any] = {"reason": reason}
        if order.payment_status == PaymentStatus.PAID:
            # No ledger movement here; the refund is settled out of band
            order.payment_status = PaymentStatus.REFUNDED
            metadata["refund_pending"] = True
            logger.warning(
                "Paid order %s cancelled; %d to refund without a ledger entry",
                order.order_number, order.total_amount,
            )
        order.status = OrderStatus.CANCELLED
        order.updated_at = now
        log_order_event(
            db, order, OrderEventType.CANCELLED, reason or "Order cancelled",
            actor_type=actor_type_for(actor, order.store), actor_id=actor.user_id,
            metadata=metadata,
        )

    logger.info("Order %s cancelled by user %s", order.order_number, actor.user_id)
    notifications.order_status_changed(order, reason=reason)
    return order


def auto_confirm_delivery(db: Session) -> int:
    """Mark orders shipped and untouched for the configured number of days as delivered."""
    now = clock.utcnow()
    cutoff = now - timedelta(days=settings.AUTO_DELIVERY_DAYS)
    with atomic(db):
        orders = db.query(Order).filter(
            Order.status == OrderStatus.SHIPPED,
            Order.updated_at <= cutoff,
        ).all()
        for order in orders:
            assert_valid_transition(order.status, OrderStatus.DELIVERED)
            order.status = OrderStatus.DELIVERED
            order.delivered_at = now
            order.updated_at = now
            log_order_event(
                db, order, OrderEventType.DELIVERED,
                f"Delivery confirmed automatically after {settings.AUTO_DELIVERY_DAYS} days",
            )
    return len(orders)


def get_timeline(db: Session, actor: Actor, order_id: int) -> List[OrderEvent]:
    order = get_order(db, actor, order_id)
    return db.query(OrderEvent).filter(OrderEvent.order_id == order.id).order_by(
        OrderEvent.created_at, OrderEvent.id
    ).all()
