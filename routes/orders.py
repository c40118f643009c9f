from typing import List
from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from core.db import get_db
from core.tenancy import Actor, get_current_actor
from schemas.order import (
    CancelRequest,
    OrderCreate,
    OrderCreated,
    OrderEventOut,
    OrderOut,
    StatusUpdate,
    TrackingUpdate,
)
from services import orders as order_service

router = APIRouter(prefix="/orders", tags=["orders"])


@router.post("/", response_model=OrderCreated, status_code=201)
def create_order(data: OrderCreate, actor: Actor = Depends(get_current_actor), db: Session = Depends(get_db)):
    return order_service.create_order(
        db,
        actor,
        store_id=data.store_id,
        items=data.items,
        shipping_address=data.shipping_address.model_dump(),
        billing_address=data.billing_address.model_dump() if data.billing_address else None,
        coupon_code=data.coupon_code,
        notes=data.notes,
        payment_method=data.payment_method,
    )


@router.get("/{order_id}", response_model=OrderOut)
def get_order(order_id: int, actor: Actor = Depends(get_current_actor), db: Session = Depends(get_db)):
    return order_service.get_order(db, actor, order_id)


@router.get("/{order_id}/timeline", response_model=List[OrderEventOut])
def get_timeline(order_id: int, actor: Actor = Depends(get_current_actor), db: Session = Depends(get_db)):
    return order_service.get_timeline(db, actor, order_id)


@router.post("/{order_id}/status", response_model=OrderOut)
def update_status(order_id: int, data: StatusUpdate, actor: Actor = Depends(get_current_actor), db: Session = Depends(get_db)):
    return order_service.update_status(
        db,
        actor,
        order_id,
        data.status,
        tracking_number=data.tracking_number,
        carrier=data.carrier,
        estimated_delivery=data.estimated_delivery,
    )


@router.post("/{order_id}/tracking", response_model=OrderOut)
def add_tracking(order_id: int, data: TrackingUpdate, actor: Actor = Depends(get_current_actor), db: Session = Depends(get_db)):
    return order_service.add_tracking(
        db,
        actor,
        order_id,
        data.tracking_number,
        carrier=data.carrier,
        estimated_delivery=data.estimated_delivery,
    )


@router.post("/{order_id}/confirm-delivery", response_model=OrderOut)
def confirm_delivery(order_id: int, actor: Actor = Depends(get_current_actor), db: Session = Depends(get_db)):
    return order_service.confirm_delivery(db, actor, order_id)


@router.post("/{order_id}/cancel", response_model=OrderOut)
def cancel_order(
    order_id: int,
    data: CancelRequest | None = None,
    actor: Actor = Depends(get_current_actor),
    db: Session = Depends(get_db),
):
    return order_service.cancel_order(db, actor, order_id, reason=data.reason if data else None)
