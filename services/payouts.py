from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

import requests
from sqlalchemy.orm import Session

from core import clock
from core.config import settings
from core.db import atomic
from core.errors import InsufficientBalance, InvalidTransition, NotFoundError, ValidationError
from core.logging import get_logger
from core.tenancy import Actor
from models.enums import (
    LedgerAccount,
    PayoutMethod,
    PayoutStatus,
    TransactionDirection,
    TransactionStatus,
    TransactionType,
)
from models.payout import Payout
from models.store import Store
from models.transaction import Transaction
from services import disbursements, ledger, moneroo, notifications, pricing

logger = get_logger(__name__)


PAYOUT_TRANSITIONS: Dict[PayoutStatus, set] = {
    PayoutStatus.PENDING: {PayoutStatus.PROCESSING, PayoutStatus.COMPLETED, PayoutStatus.FAILED},
    PayoutStatus.PROCESSING: {PayoutStatus.COMPLETED, PayoutStatus.FAILED},
    PayoutStatus.COMPLETED: set(),
    PayoutStatus.FAILED: set(),
}


def _assert_payout_transition(current: PayoutStatus, target: PayoutStatus) -> None:
    if PayoutStatus(target) not in PAYOUT_TRANSITIONS[PayoutStatus(current)]:
        raise InvalidTransition(PayoutStatus(current).value, PayoutStatus(target).value)


def get_owned_store(db: Session, actor: Actor, store_id: Optional[int] = None) -> Store:
    """The store the vendor acts for: the given one if they own it, else their first store."""
    query = db.query(Store).filter(Store.owner_id == actor.user_id)
    if store_id is not None:
        query = query.filter(Store.id == store_id)
    store = query.order_by(Store.id).first()
    if store is None:
        raise NotFoundError("Store not found")
    return store


def _get_payout(db: Session, payout_id: int) -> Payout:
    payout = db.get(Payout, payout_id)
    if payout is None:
        raise NotFoundError("Payout not found")
    return payout


def validate_payout_request(db: Session, store: Store, amount: int, now: datetime) -> None:
    """Raise unless the store may withdraw ``amount`` right now."""
    if amount < settings.MIN_PAYOUT_AMOUNT:
        raise ValidationError(f"Minimum payout amount is {settings.MIN_PAYOUT_AMOUNT}")
    if store.balance < amount:
        raise InsufficientBalance(f"Insufficient balance: {store.balance} available")

    in_flight = db.query(Payout.id).filter(
        Payout.store_id == store.id,
        Payout.status == PayoutStatus.PROCESSING,
    ).first()
    if in_flight:
        raise ValidationError("A payout is already being processed")

    last_completed = db.query(Payout).filter(
        Payout.store_id == store.id,
        Payout.status == PayoutStatus.COMPLETED,
    ).order_by(Payout.processed_at.desc()).first()
    cooldown = timedelta(hours=settings.PAYOUT_COOLDOWN_HOURS)
    if last_completed and last_completed.processed_at and now - last_completed.processed_at < cooldown:
        raise ValidationError(f"Only one payout every {settings.PAYOUT_COOLDOWN_HOURS} hours")


def request_payout(
    db: Session,
    actor: Actor,
    amount: int,
    method: PayoutMethod,
    details: Dict[str, Any],
    store_id: Optional[int] = None,
) -> Dict[str, Any]:
    method = PayoutMethod(method)
    with atomic(db):
        store = get_owned_store(db, actor, store_id)
        now = clock.utcnow()
        validate_payout_request(db, store, amount, now)

        fee = pricing.calculate_payout_fee(amount, method)
        payout = Payout(
            store_id=store.id,
            amount=amount,
            fee=fee,
            currency=store.currency,
            status=PayoutStatus.PENDING,
            payout_method=method,
            payout_details=details,
            requested_at=now,
        )
        db.add(payout)
        db.flush()

        txn = ledger.record_entry(
            db, store,
            type=TransactionType.PAYOUT,
            direction=TransactionDirection.DEBIT,
            account=LedgerAccount.AVAILABLE,
            amount=amount,
            status=TransactionStatus.PENDING,
            payout_id=payout.id,
            description=f"Payout via {method.value}",
            metadata={"fee": fee, "net_amount": amount - fee},
        )
        payout.transaction_id = txn.id

    logger.info("Payout %s requested by store %s: %d (fee %d)", payout.id, store.id, amount, fee)
    disbursements.schedule_payout(payout)
    return {
        "payout_id": payout.id,
        "amount": amount,
        "fee": fee,
        "net_amount": amount - fee,
    }


def mark_payout_processing(db: Session, payout_id: int, reference: str) -> Dict[str, Any]:
    """Record the provider reference once the disbursement has been accepted."""
    with atomic(db):
        payout = _get_payout(db, payout_id)
        if payout.status == PayoutStatus.PROCESSING and payout.reference == reference:
            return {"already_processed": True}
        _assert_payout_transition(payout.status, PayoutStatus.PROCESSING)
        payout.status = PayoutStatus.PROCESSING
        payout.reference = reference
        if payout.transaction is not None:
            payout.transaction.reference = reference
    return {"payout_id": payout.id, "status": payout.status.value}


def confirm_payout(db: Session, payout_id: int, reference: Optional[str] = None) -> Dict[str, Any]:
    with atomic(db):
        payout = _get_payout(db, payout_id)
        if payout.status == PayoutStatus.COMPLETED:
            return {"already_processed": True}
        _assert_payout_transition(payout.status, PayoutStatus.COMPLETED)

        now = clock.utcnow()
        payout.status = PayoutStatus.COMPLETED
        payout.processed_at = now
        if reference:
            payout.reference = reference
        txn = payout.transaction
        if txn is not None:
            txn.status = TransactionStatus.COMPLETED
            txn.processed_at = now
            if reference:
                txn.reference = reference

    logger.info("Payout %s completed (%s)", payout.id, payout.reference)
    notifications.payout_updated(payout)
    return {"payout_id": payout.id, "status": payout.status.value}


def fail_payout(db: Session, payout_id: int, reason: Optional[str] = None) -> Dict[str, Any]:
    """Mark a payout failed and credit the gross amount back to the store."""
    with atomic(db):
        payout = _get_payout(db, payout_id)
        if payout.status in (PayoutStatus.FAILED, PayoutStatus.COMPLETED):
            return {"already_processed": True}

        now = clock.utcnow()
        payout.status = PayoutStatus.FAILED
        payout.notes = reason
        payout.processed_at = now

        ledger.record_entry(
            db, payout.store,
            type=TransactionType.CREDIT,
            direction=TransactionDirection.CREDIT,
            account=LedgerAccount.AVAILABLE,
            amount=payout.amount,
            payout_id=payout.id,
            description=f"Payout #{payout.id} failed, amount returned",
            metadata={"reason": reason},
        )
        if payout.transaction is not None:
            payout.transaction.status = TransactionStatus.FAILED

    logger.warning("Payout %s failed: %s", payout.id, reason)
    notifications.payout_updated(payout)
    return {"payout_id": payout.id, "status": payout.status.value}


def check_stale_payouts(db: Session) -> Dict[str, int]:
    """Reconcile payouts left in flight longer than STALE_PAYOUT_HOURS.

    A payout the provider never acknowledged (no reference) is failed, which
    credits the store back. Otherwise the provider is asked for the payout's
    state and a final answer is applied; anything else is left for the next run.
    """
    cutoff = clock.utcnow() - timedelta(hours=settings.STALE_PAYOUT_HOURS)
    stale = db.query(Payout).filter(
        Payout.status.in_((PayoutStatus.PENDING, PayoutStatus.PROCESSING)),
        Payout.requested_at <= cutoff,
    ).order_by(Payout.id).all()

    counts = {"checked": len(stale), "confirmed": 0, "failed": 0}
    for payout in stale:
        if not payout.reference:
            fail_payout(db, payout.id, reason=f"No provider reference after {settings.STALE_PAYOUT_HOURS}h")
            counts["failed"] += 1
            continue

        try:
            result = moneroo.verify_payout(payout.reference)
        except (requests.RequestException, RuntimeError) as exc:
            logger.warning("Could not verify payout %s (%s): %s", payout.id, payout.reference, exc)
            continue

        data = result.get("data") or {}
        status = (data.get("status") or "").lower()
        if status == "success":
            confirm_payout(db, payout.id, reference=payout.reference)
            counts["confirmed"] += 1
        elif status in ("failed", "cancelled"):
            fail_payout(db, payout.id, reason=data.get("failure_message") or f"Provider reported {status}")
            counts["failed"] += 1
        else:
            logger.info("Payout %s still %s at the provider", payout.id, status or "unknown")
    return counts


def list_payouts(db: Session, store: Store) -> List[Payout]:
    return db.query(Payout).filter(Payout.store_id == store.id).order_by(Payout.requested_at.desc(), Payout.id.desc()).all()


def list_transactions(db: Session, store: Store, limit: int = 100) -> List[Transaction]:
    return db.query(Transaction).filter(Transaction.store_id == store.id).order_by(Transaction.id.desc()).limit(limit).all()
