from fastapi import APIRouter, Depends, Header, Query, status
from sqlalchemy.orm import Session
from typing import Dict, Optional

from .. import cart, checkout, schemas
from ..auth import get_current_user
from ..database import get_db

router = APIRouter(
    prefix="/cart",
    tags=["Cart"]
)


@router.get("", response_model=schemas.CartOut)
def get_my_cart(
    expand: bool = Query(False, description="Attach live name/price/stock to each line"),
    current_user: Dict = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    """Return the current user's cart, creating an empty one on first access."""
    return cart.view(db, current_user["id"], expand=expand)


@router.patch("/items", response_model=schemas.CartOut)
def upsert_cart_item(
    body: schemas.CartLineIn,
    current_user: Dict = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    """Set the quantity of one (product_id, sku) line. Sets, never increments."""
    cart.upsert_line(db, current_user["id"], body.product_id, body.sku, body.quantity)
    return cart.view(db, current_user["id"])


@router.put("/items", response_model=schemas.CartOut)
def replace_cart_items(
    body: schemas.CartReplace,
    current_user: Dict = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    """Replace the whole cart (used to sync a client-side cart after login)."""
    cart.replace_lines(db, current_user["id"], [i.model_dump() for i in body.items])
    return cart.view(db, current_user["id"])


@router.delete("/items", response_model=schemas.CartOut)
def remove_cart_item(
    body: schemas.CartLineRemove,
    current_user: Dict = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    cart.remove_line(db, current_user["id"], body.product_id, body.sku)
    return cart.view(db, current_user["id"])


@router.delete("", response_model=schemas.CartOut)
def clear_cart(
    current_user: Dict = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    cart.clear(db, current_user["id"])
    return cart.view(db, current_user["id"])


@router.post("/checkout", response_model=schemas.OrderOut, status_code=status.HTTP_201_CREATED)
def checkout_my_cart(
    idempotency_key: Optional[str] = Header(None, alias="Idempotency-Key"),
    current_user: Dict = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    """Turn the cart into a pending order, deducting stock for every line.

    - Send an Idempotency-Key header so a retried request can never create a second order.
    - A replay with the same key answers 409 and names the existing order.
    """
    return checkout.checkout(db, current_user["id"], idempotency_key)
