"""Limit orders API."""

from fastapi import APIRouter, Depends
from sqlmodel import Session

from flipit.api.deps import domain_errors, get_db, require_operator
from flipit.engine import operations
from flipit.schemas.limit_order import LimitOrderCreate, LimitOrderRead, LimitOrderUpdate

router = APIRouter(prefix="/api/limit-orders", tags=["limit-orders"], dependencies=[Depends(require_operator)])


@router.get("", response_model=list[LimitOrderRead])
def list_limit_orders(status: str | None = None, session: Session = Depends(get_db)):
    return operations.list_limit_orders(session, status)


@router.get("/{order_id}", response_model=LimitOrderRead)
def get_limit_order(order_id: int, session: Session = Depends(get_db)):
    with domain_errors():
        return operations.get_limit_order(session, order_id)


@router.post("", response_model=LimitOrderRead, status_code=201)
def create_limit_order(body: LimitOrderCreate, session: Session = Depends(get_db)):
    return operations.create_limit_order(session, **body.as_order_fields())


@router.patch("/{order_id}", response_model=LimitOrderRead)
def update_limit_order(order_id: int, body: LimitOrderUpdate, session: Session = Depends(get_db)):
    """Edit a watching order. Only the fields sent are changed."""
    changes = {
        k: v for k, v in body.model_dump(exclude_unset=True).items()
        if v is not None or k == "notification_email"
    }
    with domain_errors():
        return operations.update_limit_order(session, order_id, **changes)


@router.post("/{order_id}/cancel", response_model=LimitOrderRead)
def cancel_limit_order(order_id: int, session: Session = Depends(get_db)):
    with domain_errors():
        return operations.cancel_limit_order(session, order_id)
