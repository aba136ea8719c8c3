from fastapi import APIRouter, Depends, Header, Query, status
from sqlalchemy.orm import Session
from typing import Dict, Optional

from .. import checkout, orders, schemas
from ..auth import get_current_user
from ..database import get_db

router = APIRouter(
    prefix="/orders",
    tags=["Order Service"]
)


@router.post("", response_model=schemas.OrderOut, status_code=status.HTTP_201_CREATED)
def create_order(
    body: schemas.OrderCreate,
    idempotency_key: Optional[str] = Header(None, alias="Idempotency-Key"),
    current_user: Dict = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    """Create an order directly from a list of lines, without going through the cart."""
    return checkout.create_order(
        db,
        current_user["id"],
        [i.model_dump() for i in body.items],
        idempotency_key,
    )


@router.get("/me", response_model=schemas.OrderListResponse)
def get_my_orders(
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1),
    status_filter: Optional[schemas.OrderStatus] = Query(None, alias="status"),
    current_user: Dict = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    return orders.list_by_user(
        db,
        current_user["id"],
        page=page,
        limit=limit,
        status=status_filter.value if status_filter else None,
    )


@router.get("/{order_id:int}", response_model=schemas.OrderOut)
def get_my_order(
    order_id: int,
    current_user: Dict = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    return orders.get_by_user(db, order_id, current_user["id"])


@router.patch("/{order_id:int}/cancel", response_model=schemas.OrderOut)
def cancel_my_order(
    order_id: int,
    current_user: Dict = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    """Cancel one of your pending orders; its stock goes back on the shelf."""
    return orders.cancel(db, order_id, current_user["id"])
