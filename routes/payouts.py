from typing import List, Optional
from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from core.db import get_db
from core.tenancy import Actor, get_current_actor
from schemas.payout import LedgerOut, PayoutOut, PayoutRequest, PayoutRequested
from services import ledger
from services import payouts as payout_service

router = APIRouter(prefix="/payouts", tags=["payouts"])


@router.post("/", response_model=PayoutRequested, status_code=201)
def request_payout(data: PayoutRequest, actor: Actor = Depends(get_current_actor), db: Session = Depends(get_db)):
    return payout_service.request_payout(
        db,
        actor,
        amount=data.amount,
        method=data.payout_method,
        details=data.payout_details.model_dump(exclude_none=True),
        store_id=data.store_id,
    )


@router.get("/", response_model=List[PayoutOut])
def list_payouts(store_id: Optional[int] = None, actor: Actor = Depends(get_current_actor), db: Session = Depends(get_db)):
    store = payout_service.get_owned_store(db, actor, store_id)
    return payout_service.list_payouts(db, store)


@router.get("/ledger", response_model=LedgerOut)
def get_ledger(store_id: Optional[int] = None, actor: Actor = Depends(get_current_actor), db: Session = Depends(get_db)):
    store = payout_service.get_owned_store(db, actor, store_id)
    return {
        "store_id": store.id,
        "balance": store.balance,
        "pending_balance": store.pending_balance,
        "currency": store.currency,
        "transactions": payout_service.list_transactions(db, store),
        "discrepancies": ledger.audit_ledger(db, store),
    }
