from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from core.db import get_db
from core.tenancy import Actor, get_current_actor
from schemas.return_request import RefundOut, ReturnCreate, ReturnDecision, ReturnOut, ReturnRejection
from services import returns as return_service

router = APIRouter(prefix="/returns", tags=["returns"])


@router.post("/", response_model=ReturnOut, status_code=201)
def request_return(data: ReturnCreate, actor: Actor = Depends(get_current_actor), db: Session = Depends(get_db)):
    return return_service.request_return(
        db,
        actor,
        data.order_id,
        data.items,
        data.reason,
        reason_category=data.reason_category,
    )


@router.post("/{return_id}/approve", response_model=ReturnOut)
def approve_return(
    return_id: int,
    data: ReturnDecision | None = None,
    actor: Actor = Depends(get_current_actor),
    db: Session = Depends(get_db),
):
    return return_service.approve_return(db, actor, return_id, notes=data.notes if data else None)


@router.post("/{return_id}/reject", response_model=ReturnOut)
def reject_return(return_id: int, data: ReturnRejection, actor: Actor = Depends(get_current_actor), db: Session = Depends(get_db)):
    return return_service.reject_return(db, actor, return_id, data.reason)


@router.post("/{return_id}/receive", response_model=ReturnOut)
def confirm_received(return_id: int, actor: Actor = Depends(get_current_actor), db: Session = Depends(get_db)):
    return return_service.confirm_received(db, actor, return_id)


@router.post("/{return_id}/refund", response_model=RefundOut)
def process_refund(return_id: int, actor: Actor = Depends(get_current_actor), db: Session = Depends(get_db)):
    return return_service.process_refund(db, actor, return_id)
