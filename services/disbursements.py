from core.logging import get_logger
from models.payout import Payout
from models.return_request import ReturnRequest
from tasks.disbursement_tasks import disburse_payout_task, refund_customer_task

logger = get_logger(__name__)


def schedule_payout(payout: Payout) -> None:
    """Hand the net payout to the worker once the debit is committed."""
    try:
        disburse_payout_task.delay(payout.id)
        logger.info("Payout %s queued for disbursement (%d net)", payout.id, payout.net_amount)
    except Exception:
        logger.exception("Could not queue disbursement for payout %s", payout.id)


def schedule_refund(return_request: ReturnRequest) -> None:
    try:
        refund_customer_task.delay(return_request.id)
        logger.info("Refund for return %s queued", return_request.id)
    except Exception:
        logger.exception("Could not queue refund for return %s", return_request.id)
