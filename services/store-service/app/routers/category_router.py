from fastapi import APIRouter, Depends, Response, status
from sqlalchemy.orm import Session
from typing import Dict, List

from .. import categories, schemas
from ..auth import get_current_admin
from ..database import get_db

router = APIRouter(prefix="/categories", tags=["Categories"])
admin_router = APIRouter(prefix="/admin/categories", tags=["Admin"])


@router.get("", response_model=List[schemas.CategoryOut])
def list_categories(db: Session = Depends(get_db)):
    return categories.list_active(db)


@router.get("/tree", response_model=List[schemas.CategoryNode])
def category_tree(db: Session = Depends(get_db)):
    return categories.tree(db)


@admin_router.post("", response_model=schemas.CategoryOut, status_code=status.HTTP_201_CREATED)
def create_category(
    body: schemas.CategoryCreate,
    current_admin: Dict = Depends(get_current_admin),
    db: Session = Depends(get_db),
):
    return categories.create(db, body.model_dump())


@admin_router.put("/{category_id:int}", response_model=schemas.CategoryOut)
def update_category(
    category_id: int,
    body: schemas.CategoryUpdate,
    current_admin: Dict = Depends(get_current_admin),
    db: Session = Depends(get_db),
):
    # exclude_unset keeps "parent_id": null (move to root) apart from "not sent"
    return categories.update(db, category_id, body.model_dump(exclude_unset=True))


@admin_router.delete("/{category_id:int}", status_code=status.HTTP_204_NO_CONTENT)
def delete_category(
    category_id: int,
    current_admin: Dict = Depends(get_current_admin),
    db: Session = Depends(get_db),
):
    categories.remove(db, category_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)
