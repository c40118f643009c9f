from datetime import datetime
from pydantic import BaseModel
from typing import Any, Dict, List, Optional

from models.enums import (
    LedgerAccount,
    PayoutMethod,
    PayoutStatus,
    TransactionDirection,
    TransactionStatus,
    TransactionType,
)


class PayoutDetails(BaseModel):
    provider: Optional[str] = None
    account_name: Optional[str] = None
    account_number: Optional[str] = None
    bank_code: Optional[str] = None
    phone_number: Optional[str] = None


class PayoutRequest(BaseModel):
    amount: int
    payout_method: PayoutMethod
    payout_details: PayoutDetails
    store_id: Optional[int] = None


class PayoutRequested(BaseModel):
    payout_id: int
    amount: int
    fee: int
    net_amount: int


class PayoutOut(BaseModel):
    id: int
    store_id: int
    amount: int
    fee: int
    net_amount: int
    currency: str
    status: PayoutStatus
    payout_method: PayoutMethod
    reference: Optional[str] = None
    notes: Optional[str] = None
    requested_at: datetime
    processed_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class TransactionOut(BaseModel):
    id: int
    order_id: Optional[int] = None
    payout_id: Optional[int] = None
    type: TransactionType
    direction: TransactionDirection
    account: LedgerAccount
    amount: int
    currency: str
    balance_before: int
    balance_after: int
    status: TransactionStatus
    reference: Optional[str] = None
    description: str
    created_at: datetime

    class Config:
        from_attributes = True


class LedgerOut(BaseModel):
    store_id: int
    balance: int
    pending_balance: int
    currency: str
    transactions: List[TransactionOut]
    discrepancies: List[Dict[str, Any]]
