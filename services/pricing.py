"""
Commission, coupon and payout-fee arithmetic.

Everything here is pure: amounts are integers in minor currency units and
rounding is half-up to the nearest unit.
"""
from datetime import datetime

from models.coupon import Coupon
from models.enums import CouponType, PayoutMethod, StorePlan


# Commission in basis points per subscription plan
COMMISSION_RATES = {
    StorePlan.FREE: 500,
    StorePlan.PRO: 300,
    StorePlan.BUSINESS: 200,
}


def _round_half_up(numerator: int, denominator: int) -> int:
    return (2 * numerator + denominator) // (2 * denominator)


def commission_rate_for(plan) -> int:
    """Return the commission rate in bps; unknown plans fall back to the free rate."""
    try:
        return COMMISSION_RATES[StorePlan(plan)]
    except ValueError:
        return COMMISSION_RATES[StorePlan.FREE]


def calculate_commission(total: int, rate_bps: int) -> int:
    return _round_half_up(total * rate_bps, 10000)


def calculate_discount(coupon: Coupon, subtotal: int) -> int:
    """Monetary discount for a coupon. Free shipping is waived on the shipping line instead."""
    if coupon.type == CouponType.PERCENTAGE:
        return min(_round_half_up(subtotal * coupon.value, 100), subtotal)
    if coupon.type == CouponType.FIXED_AMOUNT:
        return min(coupon.value, subtotal)
    return 0


def coupon_label(coupon: Coupon) -> str:
    if coupon.type == CouponType.PERCENTAGE:
        return f"-{coupon.value}%"
    if coupon.type == CouponType.FIXED_AMOUNT:
        return f"-{coupon.value / 100:g} FCFA"
    if coupon.type == CouponType.FREE_SHIPPING:
        return "Free shipping"
    return ""


def validate_coupon_rules(coupon: Coupon, subtotal: int, now: datetime) -> str | None:
    """Return why the coupon cannot be used, or None when it applies."""
    if not coupon.is_active:
        return "This coupon is no longer active"
    if coupon.starts_at and coupon.starts_at > now:
        return "This coupon is not valid yet"
    if coupon.expires_at and coupon.expires_at < now:
        return "This coupon has expired"
    if coupon.max_uses and coupon.used_count >= coupon.max_uses:
        return "This coupon has reached its usage limit"
    if coupon.min_order_amount and subtotal < coupon.min_order_amount:
        return f"Minimum order amount is {coupon.min_order_amount / 100:g} FCFA"
    return None


def calculate_payout_fee(amount: int, method) -> int:
    if method == PayoutMethod.MOBILE_MONEY:
        return max(100, _round_half_up(amount, 100))
    if method == PayoutMethod.BANK_TRANSFER:
        return max(500, _round_half_up(amount * 15, 1000))
    if method == PayoutMethod.PAYPAL:
        return _round_half_up(amount * 2, 100)
    return 0
