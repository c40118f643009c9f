import json

from fastapi import APIRouter, Depends, HTTPException, Request
from pydantic import ValidationError as SchemaValidationError
from sqlalchemy.orm import Session

from core.config import settings
from core.db import get_db
from core.errors import InvalidTransition, MarketplaceError, NotFoundError
from core.logging import get_logger
from schemas.payment import WebhookAck, WebhookEvent
from services import moneroo, payments, payouts

logger = get_logger(__name__)

router = APIRouter(prefix="/payments", tags=["payments"])

SIGNATURE_HEADER = "X-Moneroo-Signature"


def _from_provider_amount(amount: int | None, currency: str | None) -> int | None:
    if amount is None:
        return None
    return amount * 100 if (currency or settings.DEFAULT_CURRENCY) == "XOF" else amount


def _route_event(db: Session, event: WebhookEvent) -> str:
    data = event.data
    metadata = data.metadata or {}
    status = (data.status or "").lower()

    if metadata.get("type") == "refund":
        # Refund references are stored when the refund is initiated
        logger.info("Refund webhook for return %s: %s", metadata.get("return_id"), status)
        return "ignored"

    if metadata.get("payout_id"):
        payout_id = int(metadata["payout_id"])
        if status == "success":
            payouts.confirm_payout(db, payout_id, reference=data.id)
            return "payout_confirmed"
        if status in ("failed", "cancelled"):
            payouts.fail_payout(db, payout_id, reason=f"Provider reported {status}")
            return "payout_failed"
        return "ignored"

    if metadata.get("order_id"):
        order_id = int(metadata["order_id"])
        if status == "success":
            payments.confirm_payment(
                db,
                order_id,
                payment_reference=data.id,
                amount=_from_provider_amount(data.amount, data.currency),
                currency=data.currency,
            )
            return "payment_confirmed"
        if status in ("failed", "cancelled"):
            payments.fail_payment(db, order_id, reason=f"Payment {status}")
            return "payment_failed"
        return "ignored"

    logger.warning("Webhook without routable metadata: %s", metadata)
    return "ignored"


@router.post("/webhook", response_model=WebhookAck)
async def payment_webhook(request: Request, db: Session = Depends(get_db)):
    secret = settings.MONEROO_WEBHOOK_SECRET
    if not secret:
        logger.error("Webhook received but MONEROO_WEBHOOK_SECRET is not configured")
        raise HTTPException(status_code=500, detail="Webhook secret not configured")

    body = await request.body()
    signature = request.headers.get(SIGNATURE_HEADER)
    if not signature:
        raise HTTPException(status_code=401, detail="Missing signature")
    if not moneroo.verify_signature(body, signature, secret):
        logger.warning("Webhook rejected: invalid signature")
        raise HTTPException(status_code=401, detail="Invalid signature")

    try:
        event = WebhookEvent.model_validate(json.loads(body))
    except (json.JSONDecodeError, SchemaValidationError):
        raise HTTPException(status_code=400, detail="Invalid payload")

    try:
        action = _route_event(db, event)
    except (NotFoundError, InvalidTransition) as exc:
        # Retrying cannot change the outcome; acknowledge so the provider stops
        logger.warning("Webhook %s ignored: %s", event.event, exc.message)
        return {"received": True, "action": "ignored"}
    except MarketplaceError as exc:
        # A 5xx makes the provider retry; handlers are idempotent
        logger.exception("Webhook processing failed: %s", exc.message)
        raise HTTPException(status_code=500, detail="Webhook processing failed")

    logger.info("Webhook %s handled: %s", event.event, action)
    return {"received": True, "action": action}
