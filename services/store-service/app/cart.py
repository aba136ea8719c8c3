"""Cart aggregate: one document per user holding (product_id, sku, quantity) lines.

Cart writes never look at stock; availability is only enforced at checkout.
"""

from decimal import Decimal
from typing import Any, Callable, Dict, Iterable, List, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from . import catalog
from .errors import CartCapacityExceeded, Conflict, NotFound, ValidationFailed
from .models import Cart
from .utils.logging import get_logger

logger = get_logger(__name__)

MAX_ITEMS = 50
MAX_QTY_PER_ITEM = 999


def require_id(value: Any, field: str = "id") -> int:
    if isinstance(value, bool):
        raise ValidationFailed(f"{field} is invalid", field=field)
    try:
        parsed = int(value)
    except (TypeError, ValueError):
        raise ValidationFailed(f"{field} is invalid", field=field)
    if parsed <= 0 or str(parsed) != str(value).strip():
        raise ValidationFailed(f"{field} is invalid", field=field)
    return parsed


def normalize_sku(sku: Any) -> str:
    value = str(sku if sku is not None else "").strip()
    if not value:
        raise ValidationFailed("sku is invalid", field="sku")
    return value


def clamp_qty(quantity: Any) -> int:
    if isinstance(quantity, bool) or not isinstance(quantity, int):
        raise ValidationFailed("quantity must be an integer", field="quantity")
    if quantity < 1:
        raise ValidationFailed("quantity must be >= 1", field="quantity")
    if quantity > MAX_QTY_PER_ITEM:
        raise ValidationFailed(f"quantity must be <= {MAX_QTY_PER_ITEM}", field="quantity")
    return quantity


def merge_lines(items: Iterable[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """Collapse lines sharing (product_id, sku) by summing their quantities."""
    merged: Dict[tuple, Dict[str, Any]] = {}
    for item in items:
        key = (int(item["product_id"]), str(item["sku"]))
        existing = merged.get(key)
        if existing is None:
            merged[key] = {"product_id": key[0], "sku": key[1], "quantity": int(item["quantity"])}
        else:
            existing["quantity"] = min(existing["quantity"] + int(item["quantity"]), MAX_QTY_PER_ITEM)
    return list(merged.values())


def get_cart(db: Session, user_id: int) -> Optional[Cart]:
    return db.query(Cart).filter(Cart.user_id == user_id).first()


def get_or_create(db: Session, user_id: Any) -> Cart:
    uid = require_id(user_id, "user_id")
    cart = get_cart(db, uid)
    if cart is not None:
        return cart

    cart = Cart(user_id=uid, items=[])
    db.add(cart)
    try:
        db.commit()
    except IntegrityError:
        # another request created it first
        db.rollback()
        cart = get_cart(db, uid)
        if cart is None:
            raise
        return cart
    db.refresh(cart)
    return cart


def _write_lines(
    db: Session,
    user_id: int,
    change: Callable[[List[Dict[str, Any]]], List[Dict[str, Any]]],
    *,
    create: bool,
) -> Cart:
    """Read-modify-write the cart lines, retrying once on a concurrent write."""
    for attempt in (1, 2):
        cart = get_or_create(db, user_id) if create else get_cart(db, user_id)
        if cart is None:
            raise NotFound("Cart not found", user_id=user_id)

        cart.items = change([dict(item) for item in (cart.items or [])])
        try:
            db.commit()
        except StaleDataError:
            db.rollback()
            if attempt == 2:
                raise Conflict("Cart was modified concurrently, please retry", user_id=user_id)
            logger.info("cart_write_retry", user_id=user_id)
            continue
        db.refresh(cart)
        return cart
    raise AssertionError("unreachable")


def upsert_line(db: Session, user_id: Any, product_id: Any, sku: Any, quantity: Any) -> Cart:
    """Set (not add to) the quantity of one line, creating the line if needed."""
    uid = require_id(user_id, "user_id")
    pid = require_id(product_id, "product_id")
    sku = normalize_sku(sku)
    quantity = clamp_qty(quantity)

    def change(items: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        for item in items:
            if int(item["product_id"]) == pid and item["sku"] == sku:
                item["quantity"] = quantity
                break
        else:
            if len(items) >= MAX_ITEMS:
                raise CartCapacityExceeded(f"Cart can hold at most {MAX_ITEMS} items", max_items=MAX_ITEMS)
            items.append({"product_id": pid, "sku": sku, "quantity": quantity})

        merged = merge_lines(items)
        if len(merged) > MAX_ITEMS:
            raise CartCapacityExceeded(f"Cart can hold at most {MAX_ITEMS} items", max_items=MAX_ITEMS)
        return merged

    return _write_lines(db, uid, change, create=True)


def replace_lines(db: Session, user_id: Any, lines: List[Dict[str, Any]]) -> Cart:
    """Replace the whole cart with ``lines`` (client-side cart sync)."""
    uid = require_id(user_id, "user_id")
    if len(lines) > MAX_ITEMS:
        raise CartCapacityExceeded(f"Cart can hold at most {MAX_ITEMS} items", max_items=MAX_ITEMS)

    normalized = merge_lines(
        {
            "product_id": require_id(line.get("product_id"), "product_id"),
            "sku": normalize_sku(line.get("sku")),
            "quantity": clamp_qty(line.get("quantity")),
        }
        for line in lines
    )
    return _write_lines(db, uid, lambda _items: normalized, create=True)


def remove_line(db: Session, user_id: Any, product_id: Any, sku: Any) -> Cart:
    uid = require_id(user_id, "user_id")
    pid = require_id(product_id, "product_id")
    sku = normalize_sku(sku)

    def change(items: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        return [i for i in items if not (int(i["product_id"]) == pid and i["sku"] == sku)]

    return _write_lines(db, uid, change, create=False)


def clear(db: Session, user_id: Any) -> Cart:
    uid = require_id(user_id, "user_id")
    return _write_lines(db, uid, lambda _items: [], create=False)


def _cart_payload(cart: Cart) -> Dict[str, Any]:
    return {
        "id": cart.id,
        "user_id": cart.user_id,
        "items": [dict(item) for item in (cart.items or [])],
        "created_at": cart.created_at,
        "updated_at": cart.updated_at,
    }


def view(db: Session, user_id: Any, expand: bool = False, create: bool = True) -> Dict[str, Any]:
    """Return the cart; with ``expand`` each line is joined against the live catalog.

    A product or SKU that has disappeared only marks its own line invalid.
    With ``create=False`` a user without a cart is NotFound instead of getting one.
    """
    if create:
        cart = get_or_create(db, user_id)
    else:
        uid = require_id(user_id, "user_id")
        cart = get_cart(db, uid)
        if cart is None:
            raise NotFound("Cart not found", user_id=uid)
    payload = _cart_payload(cart)
    if not expand:
        return payload

    products = catalog.get_products_by_ids(db, (i["product_id"] for i in payload["items"]))
    subtotal = Decimal("0")
    expanded = []
    for item in payload["items"]:
        product = products.get(int(item["product_id"]))
        if product is None:
            expanded.append({**item, "is_valid": False})
            continue

        variant = catalog.variant_by_sku(product, item["sku"])
        line = {
            **item,
            "name": product.name,
            "image_url": catalog.primary_image_url(product),
            "is_valid": variant is not None,
        }
        if variant is not None:
            price = Decimal(str(variant.price))
            line_total = price * item["quantity"]
            line.update(price=price, line_total=line_total, available_stock=variant.stock)
            subtotal += line_total
        expanded.append(line)

    payload["items"] = expanded
    payload["subtotal"] = subtotal
    return payload
