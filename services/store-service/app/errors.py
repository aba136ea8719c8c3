"""Error taxonomy shared by the cart, order, checkout and category modules.

Each error carries a stable machine-readable ``code`` plus a human readable
message, so callers can tell "out of stock" from "cart full" from bad input.
``main.py`` renders them as ``{"detail": {"error": code, "message": ...}}``.
"""

from __future__ import annotations

from typing import Any, Dict


class StoreError(Exception):
    status_code = 400
    code = "store_error"

    def __init__(self, message: str, **extra: Any) -> None:
        super().__init__(message)
        self.message = message
        self.extra: Dict[str, Any] = extra

    def to_detail(self) -> Dict[str, Any]:
        return {"error": self.code, "message": self.message, **self.extra}


# -----------------------------
# Validation (rejected before any mutation)
# -----------------------------


class ValidationFailed(StoreError):
    code = "validation_error"


class InvalidIdempotencyKey(ValidationFailed):
    code = "invalid_idempotency_key"


# -----------------------------
# Business rules
# -----------------------------


class BusinessRuleViolation(StoreError):
    code = "business_rule_violation"


class CartEmpty(BusinessRuleViolation):
    code = "cart_empty"


class CartCapacityExceeded(BusinessRuleViolation):
    code = "cart_full"


class InsufficientStock(BusinessRuleViolation):
    code = "insufficient_stock"


class ProductUnavailable(BusinessRuleViolation):
    code = "product_unavailable"


class InvalidTransition(BusinessRuleViolation):
    code = "invalid_status_transition"


class CategoryCycle(BusinessRuleViolation):
    code = "category_cycle"


class InvalidParent(BusinessRuleViolation):
    code = "invalid_parent"


class CategoryHasChildren(BusinessRuleViolation):
    code = "category_has_children"


# -----------------------------
# Conflicts / lookups
# -----------------------------


class Conflict(StoreError):
    status_code = 409
    code = "conflict"


class DuplicateSubmission(Conflict):
    code = "duplicate_submission"


class NotFound(StoreError):
    status_code = 404
    code = "not_found"


class CategoryIntegrityError(StoreError):
    """The stored parent graph is already corrupted (loop or runaway depth)."""

    status_code = 500
    code = "category_integrity_error"
