"""Category store and the tree guard that keeps the parent graph acyclic."""

from typing import Any, Dict, List, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from .cart import require_id
from .errors import (
    CategoryCycle,
    CategoryHasChildren,
    CategoryIntegrityError,
    Conflict,
    InvalidParent,
    NotFound,
    ValidationFailed,
)
from .models import Category
from .utils.logging import get_logger

logger = get_logger(__name__)

# hard cap on the parent walk; no legitimate tree is deeper than this
MAX_CATEGORY_DEPTH = 32


def get_category(db: Session, category_id: int) -> Optional[Category]:
    return db.query(Category).filter(Category.id == category_id).first()


def assert_no_cycle(db: Session, category_id: Optional[int], candidate_parent_id: Optional[int]) -> None:
    """Reject re-parenting ``category_id`` under ``candidate_parent_id`` if it would loop.

    Walks parent pointers upward from the candidate. Each visited row is locked
    (FOR UPDATE where the database supports it) so two concurrent moves that
    would close a loop between them serialize instead of both passing.
    """
    if candidate_parent_id is None:
        return
    if category_id is not None and candidate_parent_id == category_id:
        raise CategoryCycle("A category cannot be its own parent", category_id=category_id)

    visited = set()
    current = candidate_parent_id
    while current is not None:
        if current == category_id:
            raise CategoryCycle(
                "Moving the category there would create a cycle",
                category_id=category_id,
                parent_id=candidate_parent_id,
            )
        if current in visited:
            logger.error("category_tree_loop_detected", category_id=current)
            raise CategoryIntegrityError("Category tree already contains a loop", category_id=current)
        if len(visited) >= MAX_CATEGORY_DEPTH:
            logger.error("category_tree_too_deep", start=candidate_parent_id, depth=len(visited))
            raise CategoryIntegrityError(
                f"Category tree is deeper than {MAX_CATEGORY_DEPTH} levels",
                category_id=candidate_parent_id,
            )
        visited.add(current)

        row = (
            db.query(Category.parent_id)
            .filter(Category.id == current)
            .with_for_update()
            .first()
        )
        if row is None:
            raise InvalidParent("Parent category does not exist", parent_id=current)
        current = row[0]


def _clean_text(value: Any, field: str) -> str:
    text = str(value if value is not None else "").strip()
    if not text:
        raise ValidationFailed(f"{field} is required", field=field)
    return text


def create(db: Session, data: Dict[str, Any]) -> Category:
    name = _clean_text(data.get("name"), "name")
    slug = _clean_text(data.get("slug"), "slug").lower()
    parent_id = data.get("parent_id")
    if parent_id is not None:
        parent_id = require_id(parent_id, "parent_id")
        assert_no_cycle(db, None, parent_id)

    category = Category(
        name=name,
        slug=slug,
        parent_id=parent_id,
        filterable_attributes=list(data.get("filterable_attributes") or []),
        is_active=True,
    )
    db.add(category)
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        raise Conflict("Slug already exists", slug=slug)
    db.refresh(category)
    logger.info("category_created", category_id=category.id, parent_id=parent_id)
    return category


def update(db: Session, category_id: Any, data: Dict[str, Any]) -> Category:
    """Partial update. A ``parent_id`` key that is present (even None) moves the category."""
    cid = require_id(category_id, "category_id")
    category = (
        db.query(Category)
        .filter(Category.id == cid)
        .with_for_update()
        .first()
    )
    if category is None:
        db.rollback()
        raise NotFound("Category not found", category_id=cid)

    try:
        if "parent_id" in data:
            new_parent = data["parent_id"]
            if new_parent is not None:
                new_parent = require_id(new_parent, "parent_id")
                assert_no_cycle(db, cid, new_parent)
            category.parent_id = new_parent

        if data.get("name") is not None:
            category.name = _clean_text(data["name"], "name")
        if data.get("slug") is not None:
            category.slug = _clean_text(data["slug"], "slug").lower()
        if data.get("filterable_attributes") is not None:
            category.filterable_attributes = list(data["filterable_attributes"])
        if data.get("is_active") is not None:
            category.is_active = bool(data["is_active"])

        db.commit()
    except IntegrityError:
        db.rollback()
        raise Conflict("Slug already exists", slug=data.get("slug"))
    except Exception:
        db.rollback()
        raise

    db.refresh(category)
    return category


def remove(db: Session, category_id: Any) -> None:
    cid = require_id(category_id, "category_id")
    category = get_category(db, cid)
    if category is None:
        raise NotFound("Category not found", category_id=cid)

    has_children = db.query(Category.id).filter(Category.parent_id == cid).first() is not None
    if has_children:
        raise CategoryHasChildren("Category has child categories and cannot be deleted", category_id=cid)

    db.delete(category)
    try:
        db.commit()
    except IntegrityError:
        # a child was attached between the check and the delete
        db.rollback()
        raise CategoryHasChildren("Category has child categories and cannot be deleted", category_id=cid)
    logger.info("category_removed", category_id=cid)


def list_active(db: Session) -> List[Category]:
    return (
        db.query(Category)
        .filter(Category.is_active.is_(True))
        .order_by(Category.name.asc(), Category.id.asc())
        .all()
    )


def tree(db: Session) -> List[Dict[str, Any]]:
    """Active categories nested under their parents; orphans of inactive parents become roots."""
    categories = list_active(db)
    nodes = {
        c.id: {
            "id": c.id,
            "name": c.name,
            "slug": c.slug,
            "parent_id": c.parent_id,
            "filterable_attributes": list(c.filterable_attributes or []),
            "children": [],
        }
        for c in categories
    }
    roots = []
    for c in categories:
        node = nodes[c.id]
        parent = nodes.get(c.parent_id) if c.parent_id is not None else None
        if parent is None:
            roots.append(node)
        else:
            parent["children"].append(node)
    return roots
