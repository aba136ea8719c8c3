from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Iterable, List, Optional, Tuple

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, selectinload

from .errors import Conflict, ValidationFailed
from .models import Product, ProductVariant
from .utils.logging import get_logger

logger = get_logger(__name__)


def get_product(db: Session, product_id: int) -> Optional[Product]:
    return (
        db.query(Product)
        .options(selectinload(Product.variants))
        .filter(Product.id == product_id)
        .first()
    )


def get_products_by_ids(db: Session, product_ids: Iterable[int]) -> Dict[int, Product]:
    """Load many products (with variants) in one round trip, keyed by id."""
    ids = sorted({int(pid) for pid in product_ids})
    if not ids:
        return {}
    products = (
        db.query(Product)
        .options(selectinload(Product.variants))
        .filter(Product.id.in_(ids))
        .all()
    )
    return {p.id: p for p in products}


def variant_by_sku(product: Product, sku: str) -> Optional[ProductVariant]:
    for variant in product.variants or []:
        if variant.sku == sku:
            return variant
    return None


def find_variant(db: Session, product_id: int, sku: str) -> Optional[Tuple[Product, ProductVariant]]:
    product = get_product(db, product_id)
    if product is None:
        return None
    variant = variant_by_sku(product, sku)
    if variant is None:
        return None
    return product, variant


def primary_image_url(product: Product) -> Optional[str]:
    images = product.images or []
    if not images:
        return None
    first = images[0]
    if isinstance(first, dict):
        return first.get("url")
    return str(first)


def _normalize_variants(raw_variants: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    if not raw_variants:
        raise ValidationFailed("A product needs at least one variant")

    seen = set()
    variants = []
    for raw in raw_variants:
        sku = str(raw.get("sku") or "").strip()
        if not sku:
            raise ValidationFailed("Variant sku is required")
        if sku in seen:
            raise ValidationFailed(f"Duplicate sku '{sku}' in variant list", sku=sku)
        seen.add(sku)

        try:
            price = Decimal(str(raw.get("price")))
        except (InvalidOperation, ValueError):
            raise ValidationFailed(f"Invalid price for sku '{sku}'", sku=sku)
        if not price.is_finite() or price < 0:
            raise ValidationFailed(f"Invalid price for sku '{sku}'", sku=sku)

        stock = raw.get("stock", 0)
        if isinstance(stock, bool) or not isinstance(stock, int) or stock < 0:
            raise ValidationFailed(f"Invalid stock for sku '{sku}'", sku=sku)

        variants.append(
            {
                "sku": sku,
                "price": price,
                "stock": stock,
                "attributes": dict(raw.get("attributes") or {}),
            }
        )
    return variants


def create_product(db: Session, product_data: Dict[str, Any]) -> Product:
    """Insert a product with its variants; ``total_stock`` is derived, never supplied."""
    name = (product_data.get("name") or "").strip()
    if not name:
        raise ValidationFailed("Product name is required")
    slug = (product_data.get("slug") or "").strip().lower()
    if not slug:
        raise ValidationFailed("Product slug is required")

    variants = _normalize_variants(product_data.get("variants") or [])

    db_product = Product(
        name=name,
        slug=slug,
        description=product_data.get("description"),
        category_id=product_data.get("category_id"),
        brand_id=product_data.get("brand_id"),
        images=list(product_data.get("images") or []),
        status=product_data.get("status") or "active",
        total_stock=sum(v["stock"] for v in variants),
    )
    db_product.variants = [ProductVariant(**v) for v in variants]
    db.add(db_product)
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        raise Conflict("Product slug already exists", slug=slug)
    db.refresh(db_product)
    logger.info("product_created", product_id=db_product.id, slug=slug, skus=len(variants))
    return db_product
