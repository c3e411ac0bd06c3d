"""Tests for the persisted cart and its validation report."""

import pytest
from sqlalchemy import text

from order_service import carts
from order_service.errors import CartItemNotFound, InsufficientStock, ProductUnavailable


class TestCartMutations:

    async def test_add_item_creates_cart(self, seeded):
        async with seeded() as session:
            cart = await carts.add_item(session, "user-1", "p-shirt", None, 2)
        assert cart.status == "active"
        assert len(cart.items) == 1
        assert cart.items[0].quantity == 2
        assert cart.items[0].price_snapshot == 80

    async def test_same_item_is_merged(self, seeded):
        async with seeded() as session:
            await carts.add_item(session, "user-1", "p-tee", "v-red-m", 2)
            cart = await carts.add_item(session, "user-1", "p-tee", "v-red-m", 1)
        assert len(cart.items) == 1
        assert cart.items[0].quantity == 3

    async def test_merged_quantity_is_stock_checked(self, seeded):
        async with seeded() as session:
            await carts.add_item(session, "user-1", "p-phone", None, 2)
            with pytest.raises(InsufficientStock):
                await carts.add_item(session, "user-1", "p-phone", None, 2)
            cart = await carts.get_cart(session, "user-1")
        assert cart.items[0].quantity == 2

    async def test_inactive_product_cannot_be_added(self, seeded):
        async with seeded() as session:
            with pytest.raises(ProductUnavailable):
                await carts.add_item(session, "user-1", "p-old", None, 1)

    async def test_update_and_remove(self, seeded):
        async with seeded() as session:
            cart = await carts.add_item(session, "user-1", "p-shirt", None, 1)
            item_id = cart.items[0].id
            cart = await carts.update_item(session, "user-1", item_id, 5)
            assert cart.items[0].quantity == 5
            cart = await carts.remove_item(session, "user-1", item_id)
        assert cart.is_empty

    async def test_unknown_item(self, seeded):
        async with seeded() as session:
            with pytest.raises(CartItemNotFound):
                await carts.update_item(session, "user-1", "missing", 1)

    async def test_clear_cart(self, seeded):
        async with seeded() as session:
            await carts.add_item(session, "user-1", "p-shirt", None, 1)
            await carts.add_item(session, "user-1", "p-ebook", None, 1)
            await carts.clear_cart(session, "user-1")
            cart = await carts.get_cart(session, "user-1")
        assert cart.is_empty

    async def test_converted_cart_becomes_active_again(self, seeded):
        async with seeded() as session:
            await carts.add_item(session, "user-1", "p-shirt", None, 1)
            await carts.convert_and_clear(session, "user-1")
            await session.commit()
            cart = await carts.add_item(session, "user-1", "p-ebook", None, 1)
        assert cart.status == "active"
        assert [i.product_id for i in cart.items] == ["p-ebook"]


class TestValidateCart:

    async def test_empty_cart(self, seeded):
        async with seeded() as session:
            report = await carts.validate_cart(session, "nobody")
        assert report["is_empty"]
        assert report["is_valid"]

    async def test_clean_cart_can_proceed(self, seeded):
        async with seeded() as session:
            await carts.add_item(session, "user-1", "p-shirt", None, 2)
            report = await carts.validate_cart(session, "user-1", include_details=True)
        assert report["is_valid"]
        assert not report["needs_attention"]
        assert report["summary"]["can_proceed_to_checkout"]
        assert report["valid_items"][0]["effective_price"] == 80

    async def test_reports_errors_warnings_and_price_changes(self, seeded):
        async with seeded() as session:
            await carts.add_item(session, "user-1", "p-shirt", None, 2)
            await carts.add_item(session, "user-1", "p-phone", None, 3)
            # 追加後にカタログ側が変わる
            await session.execute(text("UPDATE products SET stock = 1, price = 1200 WHERE id = 'p-phone'"))
            await session.execute(text("UPDATE products SET is_active = :off WHERE id = 'p-shirt'"), {"off": False})
            await session.commit()
            report = await carts.validate_cart(session, "user-1")

        by_product = {entry["product_id"]: entry["issues"] for entry in report["issues"]}
        assert [i["type"] for i in by_product["p-shirt"]] == ["product_inactive"]
        phone = {i["type"]: i for i in by_product["p-phone"]}
        assert phone["insufficient_stock"]["severity"] == "warning"
        assert phone["insufficient_stock"]["available_stock"] == 1
        assert phone["price_changed"]["price_increase"] is True
        assert not report["is_valid"]
        assert report["summary"]["items_with_errors"] == 1
        assert report["summary"]["items_with_warnings"] == 1
        assert not report["summary"]["can_proceed_to_checkout"]

    async def test_out_of_stock_is_an_error(self, seeded):
        async with seeded() as session:
            await carts.add_item(session, "user-1", "p-phone", None, 1)
            await session.execute(text("UPDATE products SET stock = 0 WHERE id = 'p-phone'"))
            await session.commit()
            report = await carts.validate_cart(session, "user-1")
        assert report["issues"][0]["issues"][0]["type"] == "out_of_stock"
        assert not report["is_valid"]
