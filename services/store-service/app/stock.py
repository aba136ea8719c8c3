"""Stock ledger: the only writers of variant stock and product total_stock.

Both operations run inside the caller's transaction and never commit. The
decrement is a single conditional UPDATE, so the "enough stock?" check and
the write are evaluated together by the database; there is no read-then-write
window for a concurrent checkout to slip into.
"""

from typing import Iterable, List, Tuple

from sqlalchemy import update
from sqlalchemy.orm import Session

from .errors import InsufficientStock, ValidationFailed
from .models import Product, ProductVariant
from .utils.logging import get_logger

logger = get_logger(__name__)


def _require_quantity(quantity: int) -> int:
    if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity <= 0:
        raise ValidationFailed("quantity must be a positive integer", quantity=quantity)
    return quantity


def _move_total_stock(db: Session, product_id: int, delta: int) -> None:
    db.execute(
        update(Product)
        .where(Product.id == product_id)
        .values(total_stock=Product.total_stock + delta)
        .execution_options(synchronize_session=False)
    )


def deduct(db: Session, product_id: int, sku: str, quantity: int) -> bool:
    """Take ``quantity`` units of ``sku`` if, and only if, they are available.

    Returns False when the variant has fewer than ``quantity`` units (or does
    not exist); that is a normal business outcome, not an error.
    """
    quantity = _require_quantity(quantity)

    result = db.execute(
        update(ProductVariant)
        .where(
            ProductVariant.product_id == product_id,
            ProductVariant.sku == sku,
            ProductVariant.stock >= quantity,
        )
        .values(stock=ProductVariant.stock - quantity)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        logger.info("stock_deduct_refused", product_id=product_id, sku=sku, quantity=quantity)
        return False

    _move_total_stock(db, product_id, -quantity)
    return True


def restore(db: Session, product_id: int, sku: str, quantity: int) -> None:
    """Put ``quantity`` units back. Unconditional; guard against double calls upstream."""
    quantity = _require_quantity(quantity)

    result = db.execute(
        update(ProductVariant)
        .where(ProductVariant.product_id == product_id, ProductVariant.sku == sku)
        .values(stock=ProductVariant.stock + quantity)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        # variant was removed from the catalog after purchase; nothing to restore into
        logger.warning("stock_restore_skipped", product_id=product_id, sku=sku, quantity=quantity)
        return

    _move_total_stock(db, product_id, quantity)


def deduct_lines(db: Session, lines: Iterable[Tuple[int, str, int]]) -> List[Tuple[int, str, int]]:
    """Deduct every (product_id, sku, quantity) line in order.

    Raises InsufficientStock on the first line that cannot be served. The
    caller must roll back its transaction so earlier deductions are undone.
    """
    applied = []
    for product_id, sku, quantity in lines:
        if not deduct(db, product_id, sku, quantity):
            raise InsufficientStock(
                f"Not enough stock for SKU {sku}",
                product_id=product_id,
                sku=sku,
                requested=quantity,
            )
        applied.append((product_id, sku, quantity))
    return applied


def restore_lines(db: Session, lines: Iterable[Tuple[int, str, int]]) -> None:
    for product_id, sku, quantity in lines:
        restore(db, product_id, sku, quantity)
