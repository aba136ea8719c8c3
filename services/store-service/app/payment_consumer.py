from __future__ import annotations

import os
from typing import Any, Dict

from .database import SessionLocal
from . import orders
from .errors import StoreError
from .messaging import start_consumer_in_thread
from .utils.logging import get_logger

logger = get_logger(__name__)

PAYMENT_QUEUE = os.getenv("PAYMENT_QUEUE", "store-service.payment.q")


def handle_payment_result(payload: Dict[str, Any]) -> None:
    """Apply a payment collaborator callback.

    Expected payload:
    {
      "event": "payment.succeeded" | "payment.failed",
      "order_id": 123,
      "provider": "vnpay" (optional),
      "payment_ref": "..." (optional),
      "payment_method": "vnpay" | "cod" | "mock" (optional)
    }
    Signature checks and amount matching happen in the payment service.
    """
    event = payload.get("event") or ""
    order_id = payload.get("order_id")
    if not order_id:
        logger.warning("payment_event_without_order", payment_event=event)
        return

    if event == "payment.failed":
        # the order stays pending: the customer may retry payment or cancel
        logger.info("payment_failed", order_id=order_id, payment_ref=payload.get("payment_ref"))
        return
    if event != "payment.succeeded":
        logger.debug("payment_event_ignored", payment_event=event, order_id=order_id)
        return

    payment_method = payload.get("payment_method")
    if payment_method is not None and payment_method not in orders.PAYMENT_METHODS:
        # unknown labels are dropped, the transition still applies
        logger.warning("payment_method_unknown", order_id=order_id, payment_method=payment_method)
        payment_method = None

    db = SessionLocal()
    try:
        orders.mark_paid(
            db,
            order_id,
            provider=payload.get("provider"),
            payment_ref=payload.get("payment_ref"),
            payment_method=payment_method,
        )
    except StoreError as e:
        # cancelled or unknown order: redelivery would not help
        logger.warning("payment_not_applied", order_id=order_id, reason=e.code, message=e.message)
    finally:
        db.close()


def start_payment_consumer() -> None:
    start_consumer_in_thread(
        queue_name=PAYMENT_QUEUE,
        binding_keys=["payment.succeeded", "payment.failed"],
        handler=handle_payment_result,
    )
