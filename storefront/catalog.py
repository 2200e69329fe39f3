"""
Storefront — Catalog (商品)

店舗ごとの商品 CRUD。作成・編集・削除は店舗の seller (または root) だけ。
閲覧は誰でもできる。

並び順は created_at (作成時のエポックミリ秒) の新しい順。
複合インデックスを避けるため、店舗で絞り込んでから Python 側で並べ替える。
"""

import logging
from decimal import Decimal, InvalidOperation
from uuid import uuid4

import redis.asyncio as aioredis
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from . import feeds, identity, persistence
from .context import AppContext
from .errors import NotFound, ValidationFailure
from .models import Product, now_ms, to_money

logger = logging.getLogger(__name__)

EDITABLE_FIELDS = ("name", "price", "unit", "description", "image_url")


def _to_product(row) -> Product:
    return Product(
        id=row.id,
        store_id=row.store_id,
        name=row.name,
        price=Decimal(row.price),
        unit=row.unit,
        description=row.description or "",
        image_url=row.image_url or "",
        created_at=row.created_at or 0,
    )


def _validate(name: str, price, unit: str, image_url: str) -> Decimal:
    if not name.strip() or not unit.strip() or not image_url.strip():
        raise ValidationFailure("Please fill in all required fields and provide an image.")
    try:
        price = to_money(price)
        if not price.is_finite():
            raise InvalidOperation
    except InvalidOperation:
        raise ValidationFailure("Price must be a number.") from None
    if price < 0:
        raise ValidationFailure("Price must not be negative.")
    return price


# ── 読み取り ─────────────────────────────────────


async def list_products(session: AsyncSession, store_id: str) -> list[Product]:
    result = await session.execute(
        text("SELECT * FROM products WHERE store_id = :store_id"),
        {"store_id": store_id},
    )
    products = [_to_product(row) for row in result.fetchall()]
    return sorted(products, key=lambda p: p.created_at, reverse=True)


async def get_product(session: AsyncSession, store_id: str, product_id: str) -> Product:
    result = await session.execute(
        text("SELECT * FROM products WHERE id = :id AND store_id = :store_id"),
        {"id": product_id, "store_id": store_id},
    )
    row = result.fetchone()
    if not row:
        raise NotFound("Product not found")
    return _to_product(row)


async def get_products_by_ids(
    session: AsyncSession,
    store_id: str,
    product_ids: list[str],
) -> dict[str, Product]:
    """注文作成用。この店舗に属する商品だけを id → Product で返す。"""
    wanted = set(product_ids)
    return {p.id: p for p in await list_products(session, store_id) if p.id in wanted}


# ── 書き込み ─────────────────────────────────────


async def add_product(
    session: AsyncSession,
    redis: aioredis.Redis,
    ctx: AppContext,
    name: str,
    price,
    unit: str,
    image_url: str,
    description: str = "",
) -> Product:
    store_id = ctx.store.store_id
    identity.require_store_admin(ctx.user, store_id)

    product = Product(
        id=str(uuid4()),
        store_id=store_id,
        name=name.strip(),
        price=_validate(name, price, unit, image_url),
        unit=unit.strip(),
        description=description,
        image_url=image_url,
        created_at=now_ms(),
    )

    async with persistence.write(session, "add product"):
        await session.execute(
            text("""
                INSERT INTO products
                    (id, store_id, name, price, unit, description, image_url, created_at)
                VALUES
                    (:id, :store_id, :name, :price, :unit, :description, :image_url, :created_at)
            """),
            {**product.model_dump(), "price": str(product.price)},
        )

    logger.info("Product %s added to store %s", product.id, store_id)
    await feeds.publish(redis, store_id, feeds.PRODUCTS, "ProductAdded", {"product_id": product.id})
    return product


async def update_product(
    session: AsyncSession,
    redis: aioredis.Redis,
    ctx: AppContext,
    product_id: str,
    changes: dict,
) -> Product:
    """
    商品を編集する。

    既存の注文は注文時のスナップショットを持っているので、
    ここで価格を変えても過去の注文金額は変わらない。
    """
    store_id = ctx.store.store_id
    identity.require_store_admin(ctx.user, store_id)

    current = await get_product(session, store_id, product_id)
    updates = {k: v for k, v in changes.items() if k in EDITABLE_FIELDS and v is not None}
    merged = current.model_copy(update=updates)
    merged.price = _validate(merged.name, merged.price, merged.unit, merged.image_url)

    async with persistence.write(session, "update product"):
        await session.execute(
            text("""
                UPDATE products
                SET name = :name, price = :price, unit = :unit,
                    description = :description, image_url = :image_url
                WHERE id = :id AND store_id = :store_id
            """),
            {
                "id": product_id,
                "store_id": store_id,
                "name": merged.name,
                "price": str(merged.price),
                "unit": merged.unit,
                "description": merged.description,
                "image_url": merged.image_url,
            },
        )

    await feeds.publish(redis, store_id, feeds.PRODUCTS, "ProductUpdated", {"product_id": product_id})
    return merged


async def delete_product(
    session: AsyncSession,
    redis: aioredis.Redis,
    ctx: AppContext,
    product_id: str,
) -> None:
    store_id = ctx.store.store_id
    identity.require_store_admin(ctx.user, store_id)
    await get_product(session, store_id, product_id)

    async with persistence.write(session, "delete product"):
        await session.execute(
            text("DELETE FROM products WHERE id = :id AND store_id = :store_id"),
            {"id": product_id, "store_id": store_id},
        )

    logger.info("Product %s deleted from store %s", product_id, store_id)
    await feeds.publish(redis, store_id, feeds.PRODUCTS, "ProductDeleted", {"product_id": product_id})
