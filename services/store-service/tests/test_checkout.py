from decimal import Decimal

import pytest
from sqlalchemy.exc import IntegrityError

from app import cart, checkout
from app.errors import (
    CartEmpty,
    Conflict,
    DuplicateSubmission,
    InsufficientStock,
    InvalidIdempotencyKey,
    ProductUnavailable,
    ValidationFailed,
)
from app.models import Order, Product

from conftest import seed_product, total_stock, variant_stock


class TestIdempotencyKey:
    @pytest.mark.parametrize("key", [None, ""])
    def test_absent_key(self, key):
        assert checkout.normalize_idempotency_key(key) is None

    def test_key_is_trimmed(self):
        assert checkout.normalize_idempotency_key("  order-1234  ") == "order-1234"

    @pytest.mark.parametrize("key", ["short", "x" * 129, "has space in it", "semi;colon!"])
    def test_invalid_keys(self, key):
        with pytest.raises(InvalidIdempotencyKey):
            checkout.normalize_idempotency_key(key)


class TestNormalizeItems:
    def test_merges_duplicate_lines(self):
        lines = checkout.normalize_items(
            [
                {"product_id": 1, "sku": "A", "quantity": 2},
                {"product_id": 1, "sku": " A ", "quantity": 3},
            ]
        )
        assert lines == [{"product_id": 1, "sku": "A", "quantity": 5}]

    def test_empty_list_rejected(self):
        with pytest.raises(ValidationFailed):
            checkout.normalize_items([])

    def test_merged_quantity_over_limit_rejected(self):
        with pytest.raises(ValidationFailed):
            checkout.normalize_items(
                [
                    {"product_id": 1, "sku": "A", "quantity": 600},
                    {"product_id": 1, "sku": "A", "quantity": 600},
                ]
            )


class TestCheckout:
    def test_creates_order_and_deducts_stock(self, db, product):
        cart.upsert_line(db, 7, product.id, "TEE-S", 2)
        cart.upsert_line(db, 7, product.id, "TEE-M", 1)

        order = checkout.checkout(db, 7, "checkout-0001")

        assert order.status == "pending"
        assert order.payment_status == "pending"
        assert order.total_amount == Decimal("32.50")
        assert order.idempotency_key == "checkout_checkout-0001"
        assert [(i.sku, i.quantity, i.price) for i in order.items] == [
            ("TEE-S", 2, Decimal("10.00")),
            ("TEE-M", 1, Decimal("12.50")),
        ]
        assert order.items[0].name == "Tee"
        assert order.items[0].image_url == "https://img.example.com/tee.jpg"

        assert variant_stock(db, product.id, "TEE-S") == 3
        assert variant_stock(db, product.id, "TEE-M") == 2
        assert total_stock(db, product.id) == 5
        assert cart.get_cart(db, 7).items == []

    def test_snapshot_is_not_affected_by_later_price_change(self, db, product):
        cart.upsert_line(db, 7, product.id, "TEE-S", 1)
        order = checkout.checkout(db, 7)

        product.variants[0].price = Decimal("99.00")
        db.commit()

        db.expire_all()
        assert db.get(Order, order.id).items[0].price == Decimal("10.00")

    def test_empty_cart(self, db):
        cart.get_or_create(db, 7)
        with pytest.raises(CartEmpty) as exc:
            checkout.checkout(db, 7)
        assert exc.value.message == "Cart is empty"

    def test_missing_cart(self, db):
        with pytest.raises(CartEmpty):
            checkout.checkout(db, 7)

    def test_zero_stock_fails_and_creates_no_order(self, db):
        sold_out = seed_product(db, slug="mug", variants=[{"sku": "MUG", "price": "8", "stock": 0}])
        cart.upsert_line(db, 7, sold_out.id, "MUG", 1)

        with pytest.raises(InsufficientStock) as exc:
            checkout.checkout(db, 7)

        assert exc.value.extra["sku"] == "MUG"
        assert db.query(Order).count() == 0
        assert variant_stock(db, sold_out.id, "MUG") == 0
        assert len(cart.get_cart(db, 7).items) == 1

    def test_failed_line_leaves_earlier_lines_untouched(self, db, product):
        scarce = seed_product(db, slug="cap", variants=[{"sku": "CAP-1", "price": "5", "stock": 1}])
        cart.upsert_line(db, 7, product.id, "TEE-S", 2)
        cart.upsert_line(db, 7, scarce.id, "CAP-1", 2)

        with pytest.raises(InsufficientStock):
            checkout.checkout(db, 7)

        assert variant_stock(db, product.id, "TEE-S") == 5
        assert total_stock(db, product.id) == 8
        assert variant_stock(db, scarce.id, "CAP-1") == 1
        assert db.query(Order).count() == 0

    def test_unknown_sku_is_unavailable(self, db, product):
        cart.upsert_line(db, 7, product.id, "TEE-XL", 1)

        with pytest.raises(ProductUnavailable):
            checkout.checkout(db, 7)
        assert db.query(Order).count() == 0

    def test_cannot_oversell_across_customers(self, db, product):
        cart.upsert_line(db, 7, product.id, "TEE-M", 2)
        cart.upsert_line(db, 8, product.id, "TEE-M", 2)

        checkout.checkout(db, 7)
        with pytest.raises(InsufficientStock):
            checkout.checkout(db, 8)

        assert variant_stock(db, product.id, "TEE-M") == 1
        assert db.query(Order).count() == 1


class TestCheckoutIdempotency:
    def test_replay_after_success_is_duplicate(self, db, product):
        cart.upsert_line(db, 7, product.id, "TEE-S", 1)
        first = checkout.checkout(db, 7, "retry-key-1")

        with pytest.raises(DuplicateSubmission) as exc:
            checkout.checkout(db, 7, "retry-key-1")

        assert exc.value.status_code == 409
        assert exc.value.extra["order_id"] == first.id
        assert db.query(Order).count() == 1
        assert variant_stock(db, product.id, "TEE-S") == 4

    def test_replay_with_refilled_cart_rolls_back_deductions(self, db, product):
        cart.upsert_line(db, 7, product.id, "TEE-S", 1)
        first = checkout.checkout(db, 7, "retry-key-2")
        cart.upsert_line(db, 7, product.id, "TEE-S", 2)

        with pytest.raises(DuplicateSubmission) as exc:
            checkout.checkout(db, 7, "retry-key-2")

        assert exc.value.extra["order_id"] == first.id
        assert db.query(Order).count() == 1
        assert variant_stock(db, product.id, "TEE-S") == 4
        assert cart.get_cart(db, 7).items[0]["quantity"] == 2

    def test_same_key_for_different_users_is_independent(self, db, product):
        cart.upsert_line(db, 7, product.id, "TEE-S", 1)
        cart.upsert_line(db, 8, product.id, "TEE-S", 1)

        checkout.checkout(db, 7, "shared-key-1")
        checkout.checkout(db, 8, "shared-key-1")

        assert db.query(Order).count() == 2

    def test_orders_without_key_are_not_deduplicated(self, db, product):
        for _ in range(2):
            cart.upsert_line(db, 7, product.id, "TEE-S", 1)
            checkout.checkout(db, 7)

        assert db.query(Order).count() == 2

    def test_invalid_key_rejected_before_any_write(self, db, product):
        cart.upsert_line(db, 7, product.id, "TEE-S", 1)

        with pytest.raises(InvalidIdempotencyKey):
            checkout.checkout(db, 7, "bad")
        assert variant_stock(db, product.id, "TEE-S") == 5


class TestCreateOrder:
    def test_direct_order_uses_raw_key(self, db, product):
        order = checkout.create_order(
            db,
            7,
            [
                {"product_id": product.id, "sku": "TEE-S", "quantity": 1},
                {"product_id": product.id, "sku": "TEE-S", "quantity": 1},
            ],
            "direct-0001",
        )

        assert order.idempotency_key == "direct-0001"
        assert len(order.items) == 1
        assert order.items[0].quantity == 2
        assert variant_stock(db, product.id, "TEE-S") == 3

    def test_direct_order_replay_is_duplicate(self, db, product):
        items = [{"product_id": product.id, "sku": "TEE-S", "quantity": 1}]
        checkout.create_order(db, 7, items, "direct-0002")

        with pytest.raises(DuplicateSubmission):
            checkout.create_order(db, 7, items, "direct-0002")
        assert variant_stock(db, product.id, "TEE-S") == 4

    def test_direct_order_does_not_touch_cart(self, db, product):
        cart.upsert_line(db, 7, product.id, "TEE-M", 1)
        checkout.create_order(db, 7, [{"product_id": product.id, "sku": "TEE-S", "quantity": 1}])

        assert len(cart.get_cart(db, 7).items) == 1


class TestCheckoutFailures:
    def test_constraint_failure_is_not_reported_as_duplicate(self, db, product):
        # product total drifted below the variant stock it should sum
        db.query(Product).filter(Product.id == product.id).update({"total_stock": 1})
        db.commit()
        cart.upsert_line(db, 7, product.id, "TEE-S", 2)

        with pytest.raises(IntegrityError):
            checkout.checkout(db, 7, "first-ever-key")

        assert db.query(Order).count() == 0
        assert variant_stock(db, product.id, "TEE-S") == 5

    def test_cart_clear_failure_keeps_the_order(self, db, product, monkeypatch):
        cart.upsert_line(db, 7, product.id, "TEE-S", 2)

        def failing_clear(session, user_id):
            raise Conflict("Cart was modified concurrently, please retry", user_id=user_id)

        monkeypatch.setattr(cart, "clear", failing_clear)

        order = checkout.checkout(db, 7, "clear-fails-1")

        assert order.status == "pending"
        assert db.query(Order).count() == 1
        assert variant_stock(db, product.id, "TEE-S") == 3
        # the stale line is left for the next cart view to reconcile
        assert cart.get_cart(db, 7).items == [{"product_id": product.id, "sku": "TEE-S", "quantity": 2}]
