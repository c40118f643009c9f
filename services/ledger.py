"""
Append-only store ledger.

``record_entry`` is the only code path that changes ``Store.balance`` or
``Store.pending_balance``; each entry snapshots the account before and after
the movement so the cached balances can always be re-derived from the log.
"""
from datetime import timedelta
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Session

from core import clock
from core.config import settings
from core.db import atomic
from core.errors import InsufficientBalance
from core.logging import get_logger
from models.enums import (
    LedgerAccount,
    OrderStatus,
    PaymentStatus,
    TransactionDirection,
    TransactionStatus,
    TransactionType,
)
from models.order import Order
from models.store import Store
from models.transaction import Transaction

logger = get_logger(__name__)

_BALANCE_FIELDS = {
    LedgerAccount.AVAILABLE: "balance",
    LedgerAccount.PENDING: "pending_balance",
}


def record_entry(
    db: Session,
    store: Store,
    *,
    type: TransactionType,
    direction: TransactionDirection,
    account: LedgerAccount,
    amount: int,
    description: str,
    status: TransactionStatus = TransactionStatus.COMPLETED,
    order_id: Optional[int] = None,
    payout_id: Optional[int] = None,
    reference: Optional[str] = None,
    metadata: Optional[Dict[str, Any]] = None,
    moves_balance: bool = True,
) -> Transaction:
    """Append a ledger entry and move the matching cached balance.

    With ``moves_balance=False`` the entry is informational: it is recorded
    with ``balance_before == balance_after`` and the store is left untouched.
    """
    if amount < 0:
        raise ValueError("Ledger amounts are always positive; use the direction instead")

    account = LedgerAccount(account)
    field = _BALANCE_FIELDS[account]
    balance_before = getattr(store, field)
    balance_after = balance_before
    if moves_balance:
        if direction == TransactionDirection.CREDIT:
            balance_after = balance_before + amount
        else:
            balance_after = balance_before - amount
        if balance_after < 0:
            raise InsufficientBalance(
                f"Insufficient {account.value} balance: {balance_before} available, {amount} requested"
            )

    now = clock.utcnow()
    txn = Transaction(
        store_id=store.id,
        order_id=order_id,
        payout_id=payout_id,
        type=type,
        direction=direction,
        account=account,
        amount=amount,
        currency=store.currency,
        balance_before=balance_before,
        balance_after=balance_after,
        status=status,
        reference=reference,
        description=description,
        txn_metadata=metadata,
        processed_at=now if status == TransactionStatus.COMPLETED else None,
        created_at=now,
    )
    db.add(txn)
    if moves_balance:
        setattr(store, field, balance_after)
        store.updated_at = now
    db.flush()

    logger.debug(
        "Ledger %s %s %s %d on store %s (%s: %d -> %d)",
        TransactionType(type).value, TransactionDirection(direction).value, account.value,
        amount, store.id, field, balance_before, balance_after,
    )
    return txn


def _already_released(db: Session, order: Order) -> bool:
    return db.query(Transaction.id).filter(
        Transaction.order_id == order.id,
        Transaction.type == TransactionType.TRANSFER,
    ).first() is not None


def release_balances(db: Session) -> dict:
    """Move the net of every settled order from pending to spendable balance.

    Eligible orders are delivered and paid, with ``delivered_at`` older than
    the release delay, and not released before. Each order is released in its
    own transaction so one failure does not hold back the rest.
    """
    cutoff = clock.utcnow() - timedelta(hours=settings.BALANCE_RELEASE_HOURS)
    orders = db.query(Order).filter(
        Order.status == OrderStatus.DELIVERED,
        Order.payment_status == PaymentStatus.PAID,
        Order.delivered_at.is_not(None),
        Order.delivered_at <= cutoff,
    ).order_by(Order.id).all()

    released = 0
    failed = 0
    for order in orders:
        if _already_released(db, order):
            continue
        net = order.total_amount - (order.commission_amount or 0)
        try:
            with atomic(db):
                store = db.get(Store, order.store_id)
                description = f"Release of order {order.order_number}"
                record_entry(
                    db, store,
                    type=TransactionType.TRANSFER,
                    direction=TransactionDirection.DEBIT,
                    account=LedgerAccount.PENDING,
                    amount=net,
                    order_id=order.id,
                    description=description,
                )
                record_entry(
                    db, store,
                    type=TransactionType.CREDIT,
                    direction=TransactionDirection.CREDIT,
                    account=LedgerAccount.AVAILABLE,
                    amount=net,
                    order_id=order.id,
                    description=description,
                )
        except InsufficientBalance:
            logger.exception("Could not release order %s for store %s", order.order_number, order.store_id)
            failed += 1
            continue
        released += 1
        logger.info("Released %d to store %s for order %s", net, order.store_id, order.order_number)

    return {"released": released, "failed": failed}


def audit_ledger(db: Session, store: Store) -> List[dict]:
    """Fold the ledger per account and report every break in the balance chain.

    Returns an empty list when every entry's ``balance_before`` matches the
    previous ``balance_after`` and the cached store fields match the last one.
    """
    discrepancies: List[dict] = []
    for account, field in _BALANCE_FIELDS.items():
        entries = db.query(Transaction).filter(
            Transaction.store_id == store.id,
            Transaction.account == account,
        ).order_by(Transaction.id).all()

        previous_after = 0
        for entry in entries:
            if entry.balance_before != previous_after:
                discrepancies.append({
                    "account": account.value,
                    "transaction_id": entry.id,
                    "expected_before": previous_after,
                    "balance_before": entry.balance_before,
                })
            previous_after = entry.balance_after

        cached = getattr(store, field)
        if cached != previous_after:
            discrepancies.append({
                "account": account.value,
                "transaction_id": None,
                "expected_balance": previous_after,
                "cached_balance": cached,
            })

    if discrepancies:
        logger.warning("Ledger audit found %d discrepancies for store %s", len(discrepancies), store.id)
    return discrepancies
