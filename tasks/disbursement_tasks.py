import requests
from celery import current_app

from core.db import db_session
from core.logging import get_logger

logger = get_logger(__name__)


@current_app.task(bind=True, max_retries=3)
def disburse_payout_task(self, payout_id: int):
    """
    Send a pending payout to the provider.
    Network errors are retried; once retries run out the payout is failed,
    which credits the gross amount back to the store.
    """
    from models.enums import PayoutStatus
    from models.payout import Payout
    from services import moneroo, payouts

    with db_session() as db:
        payout = db.get(Payout, payout_id)
        if payout is None or payout.status != PayoutStatus.PENDING:
            return {"status": "skipped", "payout_id": payout_id}
        details = payout.payout_details or {}
        try:
            resp = moneroo.initialize_payout(
                amount=payout.net_amount,
                currency=payout.currency,
                method=details.get("provider") or payout.payout_method.value,
                email=payout.store.owner.email,
                name=details.get("account_name") or payout.store.owner.name,
                phone_number=details.get("phone_number"),
                metadata={"payout_id": payout.id, "store_id": payout.store_id},
                description=f"Payout for {payout.store.name}",
            )
        except requests.RequestException as exc:
            if self.request.retries < self.max_retries:
                countdown = min(2 ** self.request.retries * 10, 300)
                raise self.retry(exc=exc, countdown=countdown)
            logger.error("Payout %s could not be sent to the provider: %s", payout_id, exc)
            payouts.fail_payout(db, payout.id, reason=f"Provider error: {exc}")
            return {"status": "failed", "payout_id": payout_id}

        reference = (resp.get("data") or {}).get("id")
        if not resp.get("success", True) or not reference:
            logger.error("Unexpected provider response for payout %s: %s", payout_id, resp)
            payouts.fail_payout(db, payout.id, reason="Unexpected provider response")
            return {"status": "failed", "payout_id": payout_id}

        payouts.mark_payout_processing(db, payout.id, reference)
        return {"status": "processing", "payout_id": payout_id, "reference": reference}


@current_app.task(bind=True, max_retries=3)
def refund_customer_task(self, return_id: int):
    """Send the refund of a processed return back to the customer."""
    from models.return_request import ReturnRequest
    from services import moneroo, returns

    with db_session() as db:
        return_request = db.get(ReturnRequest, return_id)
        if return_request is None or return_request.refund_reference:
            return {"status": "skipped", "return_id": return_id}
        order = return_request.order
        try:
            resp = moneroo.refund_payment(
                amount=return_request.refund_amount,
                currency=order.currency,
                email=order.customer.email,
                name=order.customer.name,
                metadata={"return_id": return_request.id, "order_id": order.id},
                description=f"Refund for order {order.order_number}",
            )
        except requests.RequestException as exc:
            countdown = min(2 ** self.request.retries * 10, 300)
            raise self.retry(exc=exc, countdown=countdown)

        reference = (resp.get("data") or {}).get("id")
        if not reference:
            logger.error("Unexpected provider response for refund of return %s: %s", return_id, resp)
            return {"status": "failed", "return_id": return_id}

        returns.record_refund_reference(db, return_request.id, reference)
        return {"status": "initiated", "return_id": return_id, "reference": reference}
