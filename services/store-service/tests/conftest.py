"""Shared fixtures: in-memory SQLite schema per test, JWTs, seeded catalog."""

import os

os.environ["DATABASE_URL"] = "sqlite://"
os.environ["EVENTS_ENABLED"] = "false"
os.environ["ENV"] = "test"

import pytest
from fastapi.testclient import TestClient
from jose import jwt

from app import catalog
from app.auth import ALGORITHM, SECRET_KEY
from app.database import SessionLocal, engine
from app.main import app
from app.models import Base


# ---------------------------------------------------------------------------
# Database
# ---------------------------------------------------------------------------
@pytest.fixture(autouse=True)
def fresh_schema():
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)


@pytest.fixture()
def db():
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


# ---------------------------------------------------------------------------
# HTTP
# ---------------------------------------------------------------------------
def make_token(user_id, is_admin=False, username=None):
    claims = {
        "sub": str(user_id),
        "username": username or f"user{user_id}",
        "is_admin": is_admin,
    }
    return jwt.encode(claims, SECRET_KEY, algorithm=ALGORITHM)


def auth_headers(user_id, is_admin=False, **extra):
    headers = {"Authorization": f"Bearer {make_token(user_id, is_admin)}"}
    headers.update(extra)
    return headers


@pytest.fixture()
def client():
    return TestClient(app)


@pytest.fixture()
def user_headers():
    return auth_headers(7)


@pytest.fixture()
def admin_headers():
    return auth_headers(1, is_admin=True)


# ---------------------------------------------------------------------------
# Catalog
# ---------------------------------------------------------------------------
def seed_product(db, slug="tee", variants=None, **fields):
    data = {
        "name": fields.pop("name", slug.replace("-", " ").title()),
        "slug": slug,
        "images": [{"url": f"https://img.example.com/{slug}.jpg", "public_id": slug}],
        "variants": variants
        or [
            {"sku": f"{slug.upper()}-S", "price": "10.00", "stock": 5, "attributes": {"size": "S"}},
            {"sku": f"{slug.upper()}-M", "price": "12.50", "stock": 3, "attributes": {"size": "M"}},
        ],
    }
    data.update(fields)
    return catalog.create_product(db, data)


@pytest.fixture()
def product(db):
    return seed_product(db)


def variant_stock(db, product_id, sku):
    db.expire_all()
    found = catalog.find_variant(db, product_id, sku)
    return found[1].stock if found else None


def total_stock(db, product_id):
    db.expire_all()
    return catalog.get_product(db, product_id).total_stock
