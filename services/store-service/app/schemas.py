from pydantic import BaseModel, Field
from decimal import Decimal
from typing import Dict, List, Optional
from datetime import datetime
from enum import Enum


class OrderStatus(str, Enum):
    PENDING = "pending"
    PAID = "paid"
    CANCELLED = "cancelled"


class PaymentStatus(str, Enum):
    PENDING = "pending"
    PAID = "paid"
    REFUNDED = "refunded"


# -----------------------------
# Cart
# -----------------------------

# quantity bounds are checked by cart.clamp_qty
class CartLineIn(BaseModel):
    product_id: int = Field(..., description="Product ID")
    sku: str = Field(..., description="Variant SKU")
    quantity: int = Field(..., description="Quantity to set (1-999)")


class CartLineRemove(BaseModel):
    product_id: int = Field(..., description="Product ID")
    sku: str = Field(..., description="Variant SKU")


class CartReplace(BaseModel):
    items: List[CartLineIn] = Field(default_factory=list)


class CartLineOut(BaseModel):
    product_id: int
    sku: str
    quantity: int
    # filled only by the expanded view
    name: Optional[str] = None
    image_url: Optional[str] = None
    price: Optional[Decimal] = None
    line_total: Optional[Decimal] = None
    available_stock: Optional[int] = None
    is_valid: Optional[bool] = None


class CartOut(BaseModel):
    id: int
    user_id: int
    items: List[CartLineOut] = []
    subtotal: Optional[Decimal] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    model_config = {"from_attributes": True}


# -----------------------------
# Orders
# -----------------------------

class OrderItemCreate(BaseModel):
    product_id: int = Field(..., description="Product ID")
    sku: str = Field(..., description="Variant SKU")
    quantity: int = Field(..., description="Product quantity")


class OrderCreate(BaseModel):
    items: List[OrderItemCreate] = Field(..., min_length=1, description="List of order items")


class OrderItemOut(BaseModel):
    id: int
    product_id: int
    name: str
    sku: str
    price: Decimal
    quantity: int
    image_url: Optional[str] = None

    model_config = {"from_attributes": True}


class OrderOut(BaseModel):
    id: int
    user_id: int
    total_amount: Decimal
    status: OrderStatus
    payment_status: PaymentStatus
    payment_method: Optional[str] = None
    payment_provider: Optional[str] = None
    payment_ref: Optional[str] = None
    paid_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    items: List[OrderItemOut] = []

    model_config = {"from_attributes": True}


class PageMeta(BaseModel):
    total: int
    page: int
    limit: int
    total_pages: int


class OrderListResponse(BaseModel):
    data: List[OrderOut]
    meta: PageMeta


class AdminOrderStatusUpdate(BaseModel):
    status: Optional[OrderStatus] = None
    payment_status: Optional[PaymentStatus] = None


# -----------------------------
# Categories
# -----------------------------

class CategoryCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    slug: str = Field(..., min_length=1, max_length=120)
    parent_id: Optional[int] = None
    filterable_attributes: List[str] = Field(default_factory=list)


class CategoryUpdate(BaseModel):
    """Partial update; send ``"parent_id": null`` to move a category to the root."""

    name: Optional[str] = Field(None, min_length=1, max_length=100)
    slug: Optional[str] = Field(None, min_length=1, max_length=120)
    parent_id: Optional[int] = None
    filterable_attributes: Optional[List[str]] = None
    is_active: Optional[bool] = None


class CategoryOut(BaseModel):
    id: int
    name: str
    slug: str
    parent_id: Optional[int] = None
    filterable_attributes: List[str] = []
    is_active: bool

    model_config = {"from_attributes": True}


class CategoryNode(BaseModel):
    id: int
    name: str
    slug: str
    parent_id: Optional[int] = None
    filterable_attributes: List[str] = []
    children: List["CategoryNode"] = []


# -----------------------------
# Products (catalog seeding)
# -----------------------------

class ProductImage(BaseModel):
    url: str
    public_id: Optional[str] = None


class VariantIn(BaseModel):
    sku: str
    price: Decimal
    stock: int = 0
    attributes: Dict[str, str] = Field(default_factory=dict)


class ProductCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=200)
    slug: str = Field(..., min_length=1, max_length=200)
    description: Optional[str] = None
    category_id: Optional[int] = None
    brand_id: Optional[int] = None
    images: List[ProductImage] = Field(default_factory=list)
    variants: List[VariantIn] = Field(..., min_length=1)


class VariantOut(BaseModel):
    sku: str
    price: Decimal
    stock: int
    attributes: Dict[str, str] = {}

    model_config = {"from_attributes": True}


class ProductOut(BaseModel):
    id: int
    name: str
    slug: str
    description: Optional[str] = None
    category_id: Optional[int] = None
    brand_id: Optional[int] = None
    images: List[ProductImage] = []
    status: str
    total_stock: int
    variants: List[VariantOut] = []

    model_config = {"from_attributes": True}


CategoryNode.model_rebuild()
