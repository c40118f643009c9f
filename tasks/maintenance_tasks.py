from celery import current_app

from core.db import db_session
from core.logging import get_logger

logger = get_logger(__name__)


@current_app.task
def release_balances_task():
    """Periodic: move settled order funds from pending to spendable balance."""
    from services import ledger

    with db_session() as db:
        result = ledger.release_balances(db)
    logger.info("Balance release run: %s", result)
    return result


@current_app.task
def auto_confirm_delivery_task():
    """Periodic: mark long-shipped orders as delivered."""
    from services import orders

    with db_session() as db:
        confirmed = orders.auto_confirm_delivery(db)
    logger.info("Auto-confirmed delivery of %d orders", confirmed)
    return {"confirmed": confirmed}


@current_app.task
def check_stale_payouts_task():
    """Periodic: settle or fail payouts stuck in flight."""
    from services import payouts

    with db_session() as db:
        result = payouts.check_stale_payouts(db)
    logger.info("Stale payout check: %s", result)
    return result


@current_app.task
def check_low_stock_task():
    """Periodic: warn store owners about products running out."""
    from services import inventory

    with db_session() as db:
        alerted = inventory.check_low_stock(db)
    logger.info("Sent %d low stock alerts", alerted)
    return {"alerted": alerted}
