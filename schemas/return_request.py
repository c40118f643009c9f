from datetime import datetime
from pydantic import BaseModel
from typing import List, Optional

from models.enums import ReturnReason, ReturnStatus


class ReturnItemIn(BaseModel):
    product_id: int
    variant_id: Optional[int] = None
    quantity: int


class ReturnCreate(BaseModel):
    order_id: int
    items: List[ReturnItemIn]
    reason: str
    reason_category: ReturnReason = ReturnReason.OTHER


class ReturnDecision(BaseModel):
    notes: Optional[str] = None


class ReturnRejection(BaseModel):
    reason: str


class ReturnItemOut(BaseModel):
    id: int
    product_id: int
    variant_id: Optional[int] = None
    title: str
    quantity: int
    unit_price: int

    class Config:
        from_attributes = True


class ReturnOut(BaseModel):
    id: int
    order_id: int
    store_id: int
    status: ReturnStatus
    reason: str
    reason_category: ReturnReason
    refund_amount: int
    vendor_notes: Optional[str] = None
    rejection_reason: Optional[str] = None
    requested_at: datetime
    approved_at: Optional[datetime] = None
    received_at: Optional[datetime] = None
    refunded_at: Optional[datetime] = None
    items: List[ReturnItemOut]

    class Config:
        from_attributes = True


class RefundOut(BaseModel):
    return_id: int
    refund_amount: int
    order_refunded: bool
