"""Order aggregate: immutable line snapshots plus a guarded status machine.

    pending --> paid        (payment collaborator, or admin)
    pending --> cancelled   (owner or admin, restores stock)

``paid`` and ``cancelled`` are terminal. Every transition is written as
``UPDATE ... WHERE status = <expected>`` so two concurrent requests can never
both win the same transition (and a cancel can never restore stock twice).
"""

import datetime as dt
import math
from decimal import Decimal
from typing import Any, Dict, List, Optional

from sqlalchemy import update
from sqlalchemy.orm import Session, selectinload

from . import messaging, stock
from .cart import require_id
from .errors import Conflict, InvalidTransition, NotFound, StoreError, ValidationFailed
from .models import Order, OrderItem
from .utils.logging import get_logger

logger = get_logger(__name__)

ORDER_STATUSES = ("pending", "paid", "cancelled")
PAYMENT_STATUSES = ("pending", "paid", "refunded")
PAYMENT_METHODS = ("cod", "mock", "vnpay")

ALLOWED_TRANSITIONS = {
    "pending": {"paid", "cancelled"},
    "paid": set(),
    "cancelled": set(),
}

PAYMENT_TRANSITIONS = {
    "pending": {"paid"},
    "paid": {"refunded"},
    "refunded": set(),
}


def _now() -> dt.datetime:
    return dt.datetime.now(dt.timezone.utc)


def assert_transition(current: str, target: str, table: Dict[str, set] = ALLOWED_TRANSITIONS, field: str = "status") -> None:
    if target not in table.get(current, set()):
        raise InvalidTransition(
            f"Cannot change order {field} from '{current}' to '{target}'",
            current=current,
            target=target,
        )


def ensure_valid_status(value: str) -> str:
    if value not in ORDER_STATUSES:
        raise ValidationFailed("status is invalid", field="status")
    return value


# -----------------------------
# Creation
# -----------------------------


def build_order(user_id: int, lines: List[Dict[str, Any]], idempotency_key: Optional[str] = None) -> Order:
    """Build (not persist) a pending order from already-snapshotted lines."""
    total = sum((Decimal(str(line["price"])) * line["quantity"] for line in lines), Decimal("0"))
    if total < 0:
        raise ValidationFailed("Order total cannot be negative")
    return Order(
        user_id=user_id,
        items=[OrderItem(**line) for line in lines],
        total_amount=total,
        status="pending",
        payment_status="pending",
        idempotency_key=idempotency_key,
    )


# -----------------------------
# Reads
# -----------------------------


def get_order(db: Session, order_id: int) -> Optional[Order]:
    return (
        db.query(Order)
        .options(selectinload(Order.items))
        .populate_existing()
        .filter(Order.id == order_id)
        .first()
    )


def get_by_user(db: Session, order_id: Any, user_id: Any) -> Order:
    oid = require_id(order_id, "order_id")
    uid = require_id(user_id, "user_id")
    order = (
        db.query(Order)
        .options(selectinload(Order.items))
        .filter(Order.id == oid, Order.user_id == uid)
        .first()
    )
    if order is None:
        raise NotFound("Order not found", order_id=oid)
    return order


def _clamp_limit(limit: Any, maximum: int, fallback: int) -> int:
    try:
        value = int(limit)
    except (TypeError, ValueError):
        return min(fallback, maximum)
    return max(1, min(value, maximum))


def _paginate(query, page: Any, limit: int) -> Dict[str, Any]:
    try:
        page = max(1, int(page or 1))
    except (TypeError, ValueError):
        page = 1
    total = query.count()
    data = (
        query.options(selectinload(Order.items))
        .order_by(Order.created_at.desc(), Order.id.desc())
        .offset((page - 1) * limit)
        .limit(limit)
        .all()
    )
    return {
        "data": data,
        "meta": {
            "total": total,
            "page": page,
            "limit": limit,
            "total_pages": max(1, math.ceil(total / limit)),
        },
    }


def list_by_user(db: Session, user_id: Any, page: Any = 1, limit: Any = 20, status: Optional[str] = None) -> Dict[str, Any]:
    uid = require_id(user_id, "user_id")
    query = db.query(Order).filter(Order.user_id == uid)
    if status:
        query = query.filter(Order.status == ensure_valid_status(status))
    return _paginate(query, page, _clamp_limit(limit, 50, 20))


def list_all(
    db: Session,
    page: Any = 1,
    limit: Any = 30,
    status: Optional[str] = None,
    user_id: Optional[Any] = None,
) -> Dict[str, Any]:
    query = db.query(Order)
    if status:
        query = query.filter(Order.status == ensure_valid_status(status))
    if user_id is not None:
        query = query.filter(Order.user_id == require_id(user_id, "user_id"))
    return _paginate(query, page, _clamp_limit(limit, 100, 30))


# -----------------------------
# Transitions
# -----------------------------


def _guarded_transition(db: Session, order_id: int, expected: str, values: Dict[str, Any], user_id: Optional[int] = None) -> bool:
    # only an unpaid order may leave pending
    stmt = update(Order).where(
        Order.id == order_id,
        Order.status == expected,
        Order.payment_status == "pending",
    )
    if user_id is not None:
        stmt = stmt.where(Order.user_id == user_id)
    result = db.execute(stmt.values(**values).execution_options(synchronize_session=False))
    return result.rowcount == 1


def _refusal(db: Session, order_id: int, target: str, user_id: Optional[int] = None) -> StoreError:
    """Work out why a guarded transition matched no row."""
    query = db.query(Order).populate_existing().filter(Order.id == order_id)
    if user_id is not None:
        query = query.filter(Order.user_id == user_id)
    order = query.first()
    if order is None:
        return NotFound("Order not found", order_id=order_id)
    if order.status == "pending" and order.payment_status != "pending":
        return InvalidTransition(
            f"Order payment is already '{order.payment_status}'; it can no longer be {target}",
            current=order.status,
            payment_status=order.payment_status,
            target=target,
        )
    return InvalidTransition(
        f"Cannot change order status from '{order.status}' to '{target}'",
        current=order.status,
        target=target,
    )


def cancel(db: Session, order_id: Any, user_id: Optional[Any] = None) -> Order:
    """Cancel a pending order and put its stock back.

    ``user_id=None`` is the admin path (any owner). The status flip and the
    restores share one transaction; only the caller that wins the flip restores.
    """
    oid = require_id(order_id, "order_id")
    uid = require_id(user_id, "user_id") if user_id is not None else None

    try:
        if not _guarded_transition(db, oid, "pending", {"status": "cancelled", "cancelled_at": _now()}, uid):
            raise _refusal(db, oid, "cancelled", uid)

        lines = (
            db.query(OrderItem.product_id, OrderItem.sku, OrderItem.quantity)
            .filter(OrderItem.order_id == oid)
            .order_by(OrderItem.id)
            .all()
        )
        stock.restore_lines(db, [(line.product_id, line.sku, line.quantity) for line in lines])
        db.commit()
    except Exception:
        db.rollback()
        raise

    order = get_order(db, oid)
    logger.info("order_cancelled", order_id=oid, user_id=order.user_id, lines=len(order.items))
    publish_order_event("order.cancelled", order)
    return order


def mark_paid(
    db: Session,
    order_id: Any,
    *,
    provider: Optional[str] = None,
    payment_ref: Optional[str] = None,
    payment_method: Optional[str] = None,
) -> Order:
    """Payment callback: pending -> paid. A repeated callback is a no-op."""
    oid = require_id(order_id, "order_id")
    if payment_method is not None and payment_method not in PAYMENT_METHODS:
        raise ValidationFailed("payment_method is invalid", field="payment_method")

    values: Dict[str, Any] = {"status": "paid", "payment_status": "paid", "paid_at": _now()}
    if provider:
        values["payment_provider"] = provider
    if payment_ref:
        values["payment_ref"] = payment_ref
    if payment_method:
        values["payment_method"] = payment_method

    if _guarded_transition(db, oid, "pending", values):
        db.commit()
        order = get_order(db, oid)
        logger.info("order_paid", order_id=oid, provider=provider, payment_ref=payment_ref)
        publish_order_event("order.paid", order)
        return order

    db.rollback()
    order = get_order(db, oid)
    if order is None:
        raise NotFound("Order not found", order_id=oid)
    if order.status == "paid":
        return order
    raise InvalidTransition(
        f"Cannot change order status from '{order.status}' to 'paid'",
        current=order.status,
        target="paid",
    )


def update_status(db: Session, order_id: Any, status: Optional[str] = None, payment_status: Optional[str] = None) -> Order:
    """Administrative setter, still bound by the state machine.

    It never touches stock: cancelling must go through ``cancel`` so the
    restore happens exactly once.
    """
    oid = require_id(order_id, "order_id")
    if status is None and payment_status is None:
        raise ValidationFailed("status or payment_status is required")
    if status is not None:
        ensure_valid_status(status)
        if status == "cancelled":
            raise InvalidTransition(
                "Use the cancel operation to cancel an order so its stock is restored",
                target="cancelled",
            )
    if payment_status is not None and payment_status not in PAYMENT_STATUSES:
        raise ValidationFailed("payment_status is invalid", field="payment_status")

    order = get_order(db, oid)
    if order is None:
        raise NotFound("Order not found", order_id=oid)

    values: Dict[str, Any] = {}
    if status is not None and status != order.status:
        assert_transition(order.status, status)
        values["status"] = status
        if status == "paid":
            values["paid_at"] = _now()
            if payment_status is None and order.payment_status == "pending":
                values["payment_status"] = "paid"
    if payment_status is not None and payment_status != order.payment_status:
        assert_transition(order.payment_status, payment_status, PAYMENT_TRANSITIONS, "payment status")
        values["payment_status"] = payment_status

    if values.get("status", order.status) == "pending" and values.get("payment_status", order.payment_status) != "pending":
        # payment moves only with or after the order itself
        raise InvalidTransition(
            "Payment status can only change together with or after the order is paid",
            current=order.status,
            target=payment_status,
        )

    if not values:
        return order

    result = db.execute(
        update(Order)
        .where(
            Order.id == oid,
            Order.status == order.status,
            Order.payment_status == order.payment_status,
        )
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        db.rollback()
        raise Conflict("Order was modified concurrently, reload and retry", order_id=oid)
    db.commit()

    logger.info("order_status_updated", order_id=oid, **values)
    return get_order(db, oid)


# -----------------------------
# Events
# -----------------------------


def order_event_payload(event: str, order: Order) -> Dict[str, Any]:
    return {
        "event": event,
        "occurred_at": _now().isoformat().replace("+00:00", "Z"),
        "order_id": order.id,
        "user_id": order.user_id,
        "status": order.status,
        "total_amount": float(order.total_amount),
        "items": [
            {"product_id": i.product_id, "sku": i.sku, "quantity": i.quantity}
            for i in order.items
        ],
    }


def publish_order_event(event: str, order: Order) -> None:
    """Best-effort: the order is already committed, a broker outage must not undo that."""
    try:
        messaging.publish_event(event, order_event_payload(event, order))
    except Exception:
        logger.warning("order_event_publish_failed", event=event, order_id=order.id, exc_info=True)
