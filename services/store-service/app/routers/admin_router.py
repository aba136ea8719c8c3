from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session
from typing import Dict, Optional

from .. import cart, orders, schemas
from ..auth import get_current_admin
from ..database import get_db

router = APIRouter(
    prefix="/admin",
    tags=["Admin"]
)


# -----------------------------
# Orders
# -----------------------------


@router.get("/orders", response_model=schemas.OrderListResponse)
def list_orders(
    page: int = Query(1, ge=1),
    limit: int = Query(30, ge=1),
    status_filter: Optional[schemas.OrderStatus] = Query(None, alias="status"),
    user_id: Optional[int] = Query(None, gt=0),
    current_admin: Dict = Depends(get_current_admin),
    db: Session = Depends(get_db),
):
    return orders.list_all(
        db,
        page=page,
        limit=limit,
        status=status_filter.value if status_filter else None,
        user_id=user_id,
    )


@router.patch("/orders/{order_id:int}/status", response_model=schemas.OrderOut)
def update_order_status(
    order_id: int,
    body: schemas.AdminOrderStatusUpdate,
    current_admin: Dict = Depends(get_current_admin),
    db: Session = Depends(get_db),
):
    """Move an order along the state machine. Never touches stock; use /cancel to cancel."""
    return orders.update_status(
        db,
        order_id,
        status=body.status.value if body.status else None,
        payment_status=body.payment_status.value if body.payment_status else None,
    )


@router.patch("/orders/{order_id:int}/cancel", response_model=schemas.OrderOut)
def cancel_order(
    order_id: int,
    current_admin: Dict = Depends(get_current_admin),
    db: Session = Depends(get_db),
):
    return orders.cancel(db, order_id)


# -----------------------------
# Carts (customer support)
# -----------------------------


@router.get("/carts/{user_id:int}", response_model=schemas.CartOut)
def get_user_cart(
    user_id: int,
    expand: bool = Query(False),
    current_admin: Dict = Depends(get_current_admin),
    db: Session = Depends(get_db),
):
    return cart.view(db, user_id, expand=expand, create=False)


@router.delete("/carts/{user_id:int}", response_model=schemas.CartOut)
def clear_user_cart(
    user_id: int,
    current_admin: Dict = Depends(get_current_admin),
    db: Session = Depends(get_db),
):
    cart.clear(db, user_id)
    return cart.view(db, user_id)


@router.delete("/carts/{user_id:int}/items", response_model=schemas.CartOut)
def remove_user_cart_item(
    user_id: int,
    body: schemas.CartLineRemove,
    current_admin: Dict = Depends(get_current_admin),
    db: Session = Depends(get_db),
):
    cart.remove_line(db, user_id, body.product_id, body.sku)
    return cart.view(db, user_id)
