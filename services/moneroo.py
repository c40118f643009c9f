import hashlib
import hmac
import requests
from typing import Any, Dict

from core.config import settings


def _headers() -> Dict[str, str]:
    return {
        "Authorization": f"Bearer {settings.MONEROO_SECRET_KEY}",
        "Content-Type": "application/json",
        "Accept": "application/json",
    }


def to_provider_amount(amount: int, currency: str) -> int:
    """Amounts are stored in centimes; XOF has no sub-unit on the provider side."""
    if currency == "XOF":
        return int(round(amount / 100))
    return amount


def _split_name(name: str | None, fallback_first: str) -> Dict[str, str]:
    parts = (name or "").split()
    return {
        "first_name": parts[0] if parts else fallback_first,
        "last_name": " ".join(parts[1:]) or "Marketplace",
    }


def _post(path: str, payload: Dict[str, Any]) -> Dict[str, Any]:
    if not settings.MONEROO_SECRET_KEY:
        raise RuntimeError("MONEROO_SECRET_KEY is not configured")
    resp = requests.post(f"{settings.MONEROO_API_URL}{path}", json=payload, headers=_headers(), timeout=20)
    resp.raise_for_status()
    return resp.json()


def _get(path: str) -> Dict[str, Any]:
    if not settings.MONEROO_SECRET_KEY:
        raise RuntimeError("MONEROO_SECRET_KEY is not configured")
    resp = requests.get(f"{settings.MONEROO_API_URL}{path}", headers=_headers(), timeout=20)
    resp.raise_for_status()
    return resp.json()


def initialize_payout(
    amount: int,
    currency: str,
    method: str,
    email: str,
    name: str | None,
    metadata: Dict[str, Any],
    phone_number: str | None = None,
    description: str | None = None,
) -> Dict[str, Any]:
    recipient = {"msisdn": phone_number} if phone_number else {}
    payload = {
        "amount": to_provider_amount(amount, currency),
        "currency": currency,
        "description": description or "Marketplace payout",
        "customer": {"email": email, **_split_name(name, "Vendor")},
        "method": method,
        "recipient": recipient,
        "metadata": metadata,
    }
    return _post("/payouts/initialize", payload)


def verify_payout(reference: str) -> Dict[str, Any]:
    """Current state of a disbursement on the provider side."""
    return _get(f"/payouts/{reference}/verify")


def refund_payment(
    amount: int,
    currency: str,
    email: str,
    name: str | None,
    metadata: Dict[str, Any],
    description: str | None = None,
) -> Dict[str, Any]:
    """Send money back to a customer. The provider exposes refunds as payouts."""
    payload = {
        "amount": to_provider_amount(amount, currency),
        "currency": currency,
        "description": description or "Marketplace refund",
        "customer": {"email": email, **_split_name(name, "Customer")},
        "metadata": {**metadata, "type": "refund"},
    }
    return _post("/payouts/initialize", payload)


def compute_signature(payload: bytes, secret: str) -> str:
    return hmac.new(secret.encode(), payload, hashlib.sha256).hexdigest()


def verify_signature(payload: bytes, signature: str, secret: str) -> bool:
    """Check the hex HMAC-SHA256 of the raw webhook body."""
    return hmac.compare_digest(compute_signature(payload, secret), signature)
