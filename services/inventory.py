from collections import Counter
from datetime import timedelta
from typing import Iterable

from sqlalchemy.orm import Session

from core import clock
from core.config import settings
from core.db import atomic
from core.errors import InsufficientStock
from core.logging import get_logger
from models.enums import ProductStatus
from models.product import Product, ProductVariant
from services import notifications

logger = get_logger(__name__)


def _stock_targets(db: Session, items: Iterable) -> tuple[list, dict, dict]:
    """Load the variant/product rows each line touches, keyed by id."""
    lines = list(items)
    variant_ids = {line.variant_id for line in lines if line.variant_id}
    product_ids = {line.product_id for line in lines if not line.variant_id}
    variants = {}
    products = {}
    if variant_ids:
        variants = {v.id: v for v in db.query(ProductVariant).filter(ProductVariant.id.in_(variant_ids)).all()}
    if product_ids:
        products = {p.id: p for p in db.query(Product).filter(Product.id.in_(product_ids)).all()}
    return lines, variants, products


def decrement_inventory(db: Session, items: Iterable) -> None:
    """Take stock for each line (anything with product_id, variant_id and quantity).

    All lines are checked before any row is touched, so a shortfall leaves stock unchanged.
    """
    lines, variants, products = _stock_targets(db, items)

    wanted_variants: Counter = Counter()
    wanted_products: Counter = Counter()
    for line in lines:
        if line.variant_id:
            wanted_variants[line.variant_id] += line.quantity
        else:
            wanted_products[line.product_id] += line.quantity

    for variant_id, qty in wanted_variants.items():
        variant = variants.get(variant_id)
        if variant and variant.quantity < qty:
            raise InsufficientStock(f"Insufficient stock for variant '{variant.title}' ({variant.quantity} available)")
    for product_id, qty in wanted_products.items():
        product = products.get(product_id)
        if product and product.track_inventory and product.quantity < qty:
            raise InsufficientStock(f"Insufficient stock for '{product.title}' ({product.quantity} available)")

    for line in lines:
        if line.variant_id:
            variant = variants.get(line.variant_id)
            if variant is None:
                continue
            variant.quantity -= line.quantity
            variant.is_available = variant.quantity > 0
        else:
            product = products.get(line.product_id)
            if product is None or not product.track_inventory:
                continue
            product.quantity -= line.quantity
            if product.quantity <= 0:
                product.status = ProductStatus.OUT_OF_STOCK
                logger.info("Product %s is out of stock", product.id)
            product.updated_at = clock.utcnow()
    db.flush()


def restore_inventory(db: Session, items: Iterable) -> None:
    """Give stock back for each line (cancellation, failed payment, received return)."""
    lines, variants, products = _stock_targets(db, items)

    for line in lines:
        if line.variant_id:
            variant = variants.get(line.variant_id)
            if variant is None:
                continue
            variant.quantity += line.quantity
            variant.is_available = True
        else:
            product = products.get(line.product_id)
            if product is None or not product.track_inventory:
                continue
            product.quantity += line.quantity
            if product.status == ProductStatus.OUT_OF_STOCK and product.quantity > 0:
                product.status = ProductStatus.ACTIVE
            product.updated_at = clock.utcnow()
    db.flush()


def check_low_stock(db: Session) -> int:
    """Alert store owners about tracked products at or under their threshold.

    Each product is alerted at most once per LOW_STOCK_ALERT_HOURS.
    """
    now = clock.utcnow()
    cutoff = now - timedelta(hours=settings.LOW_STOCK_ALERT_HOURS)
    with atomic(db):
        products = db.query(Product).filter(
            Product.track_inventory.is_(True),
            Product.status.in_((ProductStatus.ACTIVE, ProductStatus.OUT_OF_STOCK)),
            Product.quantity <= Product.low_stock_threshold,
        ).order_by(Product.id).all()
        due = [p for p in products if p.low_stock_alerted_at is None or p.low_stock_alerted_at <= cutoff]
        for product in due:
            product.low_stock_alerted_at = now

    for product in due:
        notifications.low_stock(product)
    return len(due)
