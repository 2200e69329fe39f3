"""Tests for the product catalog."""

import json
from decimal import Decimal

import pytest

from storefront import catalog
from storefront.context import AppContext
from storefront.errors import AuthorizationDenial, NotFound, ValidationFailure


class TestAddProduct:
    async def test_add(self, session, product):
        fetched = await catalog.get_product(session, "teja-shop", product.id)

        assert fetched == product
        assert fetched.price == Decimal("124.75")
        assert fetched.unit == "jar"

    async def test_publishes_to_products_feed(self, redis, product):
        channel, message = redis.published[-1]
        event = json.loads(message)

        assert channel == "store_events:teja-shop"
        assert event["collection"] == "products"
        assert event["event_type"] == "ProductAdded"

    @pytest.mark.parametrize(
        "fields",
        [
            {"name": " "},
            {"unit": ""},
            {"image_url": ""},
        ],
    )
    async def test_required_fields(self, session, redis, seller_ctx, fields):
        values = {"name": "Tea", "price": "10", "unit": "kg", "image_url": "https://img/t.jpg"}
        values.update(fields)

        with pytest.raises(ValidationFailure) as exc_info:
            await catalog.add_product(session, redis, seller_ctx, **values)

        assert exc_info.value.detail == "Please fill in all required fields and provide an image."

    @pytest.mark.parametrize(
        "price,message",
        [
            ("abc", "Price must be a number."),
            ("NaN", "Price must be a number."),
            ("Infinity", "Price must be a number."),
            ("-1", "Price must not be negative."),
        ],
    )
    async def test_invalid_price(self, session, redis, seller_ctx, price, message):
        with pytest.raises(ValidationFailure) as exc_info:
            await catalog.add_product(
                session, redis, seller_ctx, "Tea", price, "kg", "https://img/t.jpg"
            )

        assert exc_info.value.detail == message

    async def test_customer_cannot_add(self, session, redis, customer_ctx):
        with pytest.raises(AuthorizationDenial):
            await catalog.add_product(
                session, redis, customer_ctx, "Tea", "10", "kg", "https://img/t.jpg"
            )

    async def test_other_seller_cannot_add(self, session, redis, store, other_seller_user):
        ctx = AppContext(user=other_seller_user, store=store)

        with pytest.raises(AuthorizationDenial):
            await catalog.add_product(session, redis, ctx, "Tea", "10", "kg", "https://img/t.jpg")


class TestListProducts:
    async def test_newest_first_and_scoped_to_store(
        self, session, redis, seller_ctx, other_store, root_user, monkeypatch
    ):
        times = iter([1000, 2000, 3000])
        monkeypatch.setattr(catalog, "now_ms", lambda: next(times))
        old = await catalog.add_product(session, redis, seller_ctx, "Old", "1", "kg", "https://i/1")
        new = await catalog.add_product(session, redis, seller_ctx, "New", "2", "kg", "https://i/2")
        await catalog.add_product(
            session, redis, AppContext(user=root_user, store=other_store),
            "Elsewhere", "3", "kg", "https://i/3",
        )

        products = await catalog.list_products(session, "teja-shop")

        assert [p.id for p in products] == [new.id, old.id]


class TestUpdateProduct:
    async def test_partial_update(self, session, redis, seller_ctx, product):
        updated = await catalog.update_product(
            session, redis, seller_ctx, product.id, {"price": "150", "name": None}
        )

        assert updated.price == Decimal("150.00")
        assert updated.name == "Mango Pickle"
        assert (await catalog.get_product(session, "teja-shop", product.id)).price == Decimal("150.00")

    async def test_invalid_update_rejected(self, session, redis, seller_ctx, product):
        with pytest.raises(ValidationFailure):
            await catalog.update_product(session, redis, seller_ctx, product.id, {"price": "-5"})

        assert (await catalog.get_product(session, "teja-shop", product.id)).price == Decimal("124.75")

    async def test_missing_product(self, session, redis, seller_ctx, store):
        with pytest.raises(NotFound):
            await catalog.update_product(session, redis, seller_ctx, "missing", {"name": "X"})


class TestDeleteProduct:
    async def test_delete(self, session, redis, seller_ctx, product):
        await catalog.delete_product(session, redis, seller_ctx, product.id)

        with pytest.raises(NotFound):
            await catalog.get_product(session, "teja-shop", product.id)

    async def test_product_of_other_store_not_found(
        self, session, redis, product, other_store, other_seller_user
    ):
        ctx = AppContext(user=other_seller_user, store=other_store)

        with pytest.raises(NotFound):
            await catalog.delete_product(session, redis, ctx, product.id)

        assert await catalog.get_product(session, "teja-shop", product.id)
