"""Checkout: cart -> stock deductions -> order, as one idempotent unit.

All deductions and the order insert share one database transaction. If any
line is short on stock, or the idempotency key was already used, the whole
transaction rolls back and no stock stays deducted.
"""

import re
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from . import cart, catalog, orders, stock
from .errors import (
    CartEmpty,
    DuplicateSubmission,
    InvalidIdempotencyKey,
    ProductUnavailable,
    ValidationFailed,
)
from .models import Order
from .utils.logging import get_logger

logger = get_logger(__name__)

IDEMPOTENCY_KEY_MIN = 8
IDEMPOTENCY_KEY_MAX = 128
IDEMPOTENCY_KEY_RE = re.compile(r"^[A-Za-z0-9._-]+$")
CHECKOUT_KEY_PREFIX = "checkout_"


def normalize_idempotency_key(key: Optional[str]) -> Optional[str]:
    if key is None or key == "":
        return None
    trimmed = str(key).strip()
    if not IDEMPOTENCY_KEY_MIN <= len(trimmed) <= IDEMPOTENCY_KEY_MAX:
        raise InvalidIdempotencyKey(
            f"Idempotency-Key must be {IDEMPOTENCY_KEY_MIN}-{IDEMPOTENCY_KEY_MAX} characters"
        )
    if not IDEMPOTENCY_KEY_RE.match(trimmed):
        raise InvalidIdempotencyKey("Idempotency-Key may only contain letters, digits, '.', '_' and '-'")
    return trimmed


def normalize_items(items: Iterable[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """Validate order lines and merge duplicates by (product_id, sku)."""
    items = list(items or [])
    if not items:
        raise ValidationFailed("Order has no items")
    if len(items) > cart.MAX_ITEMS:
        raise ValidationFailed(f"Order can hold at most {cart.MAX_ITEMS} items")

    merged: Dict[tuple, Dict[str, Any]] = {}
    for raw in items:
        pid = cart.require_id(raw.get("product_id"), "product_id")
        sku = cart.normalize_sku(raw.get("sku"))
        quantity = cart.clamp_qty(raw.get("quantity"))
        existing = merged.get((pid, sku))
        if existing is None:
            merged[(pid, sku)] = {"product_id": pid, "sku": sku, "quantity": quantity}
        else:
            existing["quantity"] += quantity

    lines = list(merged.values())
    for line in lines:
        cart.clamp_qty(line["quantity"])
    return lines


def _existing_order_id(db: Session, user_id: int, stored_key: str) -> Optional[int]:
    row = (
        db.query(Order.id)
        .filter(Order.user_id == user_id, Order.idempotency_key == stored_key)
        .first()
    )
    return row[0] if row else None


def _place_order(db: Session, user_id: int, lines: List[Dict[str, Any]], stored_key: Optional[str]) -> Order:
    try:
        products = catalog.get_products_by_ids(db, (line["product_id"] for line in lines))

        snapshots = []
        for line in lines:
            product = products.get(line["product_id"])
            variant = catalog.variant_by_sku(product, line["sku"]) if product is not None else None
            if variant is None:
                raise ProductUnavailable(
                    f"Product or variant not found for SKU {line['sku']}",
                    product_id=line["product_id"],
                    sku=line["sku"],
                )
            snapshots.append(
                {
                    "product_id": product.id,
                    "name": product.name,
                    "sku": variant.sku,
                    "price": variant.price,
                    "quantity": line["quantity"],
                    "image_url": catalog.primary_image_url(product),
                }
            )

        stock.deduct_lines(db, [(s["product_id"], s["sku"], s["quantity"]) for s in snapshots])

        order = orders.build_order(user_id, snapshots, stored_key)
        db.add(order)
        try:
            db.flush()
        except IntegrityError:
            db.rollback()
            existing_id = _existing_order_id(db, user_id, stored_key) if stored_key else None
            if existing_id is None:
                raise
            logger.info("checkout_duplicate_submission", user_id=user_id, order_id=existing_id)
            raise DuplicateSubmission(
                "This request was already processed",
                order_id=existing_id,
            )
        db.commit()
    except Exception:
        db.rollback()
        raise

    return orders.get_order(db, order.id)


def checkout(db: Session, user_id: Any, idempotency_key: Optional[str] = None) -> Order:
    uid = cart.require_id(user_id, "user_id")
    key = normalize_idempotency_key(idempotency_key)
    stored_key = f"{CHECKOUT_KEY_PREFIX}{key}" if key else None

    user_cart = cart.get_cart(db, uid)
    if user_cart is None or not user_cart.items:
        # a replay of an already completed checkout finds the cart cleared
        existing_id = _existing_order_id(db, uid, stored_key) if stored_key else None
        if existing_id is not None:
            raise DuplicateSubmission("This request was already processed", order_id=existing_id)
        raise CartEmpty("Cart is empty")

    lines = normalize_items(user_cart.items)
    order = _place_order(db, uid, lines, stored_key)
    logger.info(
        "checkout_completed",
        user_id=uid,
        order_id=order.id,
        lines=len(lines),
        total_amount=str(order.total_amount),
    )

    try:
        cart.clear(db, uid)
    except Exception:
        # order already committed; stale lines are reconciled on the next cart view
        db.rollback()
        logger.warning("checkout_cart_clear_failed", user_id=uid, order_id=order.id, exc_info=True)

    orders.publish_order_event("order.created", order)
    return order


def create_order(db: Session, user_id: Any, items: Iterable[Dict[str, Any]], idempotency_key: Optional[str] = None) -> Order:
    """Order straight from a list of (product_id, sku, quantity), bypassing the cart."""
    uid = cart.require_id(user_id, "user_id")
    key = normalize_idempotency_key(idempotency_key)
    lines = normalize_items(items)

    order = _place_order(db, uid, lines, key)
    logger.info("order_created", user_id=uid, order_id=order.id, lines=len(lines))
    orders.publish_order_event("order.created", order)
    return order
