from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.orm import Session
from typing import Dict

from .. import catalog, schemas
from ..auth import get_current_admin
from ..database import get_db

router = APIRouter(prefix="/products", tags=["Product Service"])
admin_router = APIRouter(prefix="/admin/products", tags=["Admin"])


@router.get("/{product_id:int}", response_model=schemas.ProductOut)
def view_product(product_id: int, db: Session = Depends(get_db)):
    product = catalog.get_product(db, product_id)
    if not product:
        raise HTTPException(status_code=404, detail="Product not found")
    return product


@admin_router.post("", response_model=schemas.ProductOut, status_code=status.HTTP_201_CREATED)
def create_product(
    body: schemas.ProductCreate,
    current_admin: Dict = Depends(get_current_admin),
    db: Session = Depends(get_db),
):
    return catalog.create_product(db, body.model_dump())
