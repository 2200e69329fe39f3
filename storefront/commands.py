"""
Storefront — 注文コマンド (書き込み側)

注文の作成・状態遷移・削除。状態を変える操作はすべて

    1. イベントを生成
    2. イベントストアに追記 (楽観的ロック)
    3. リードモデル (orders) を更新
    4. コミット後、Redis Pub/Sub で店舗のフィードに通知

の順で行う。
"""

import json
import logging
import re
from datetime import datetime, timezone
from uuid import uuid4

import redis.asyncio as aioredis
from sqlalchemy import text
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from . import catalog, config, event_store, feeds, identity, payments, persistence, queries
from .aggregate import OrderAggregate
from .context import AppContext
from .errors import ConcurrentUpdate, ConfigurationError, NotFound, OrderValidationError
from .events import OrderPlaced
from .models import (
    CustomerDetails,
    LineItem,
    Order,
    OrderStatus,
    PlacedOrder,
    ProductSnapshot,
    now_ms,
    to_money,
)

logger = logging.getLogger(__name__)

CONTACT_PATTERN = re.compile(r"\d{10}")


def _validate_customer(customer: CustomerDetails) -> None:
    if not customer.name.strip():
        raise OrderValidationError("Please enter your full name.")
    if not customer.address.strip():
        raise OrderValidationError("Please enter your shipping address.")
    if not CONTACT_PATTERN.fullmatch(customer.contact):
        raise OrderValidationError("Please enter a valid 10-digit contact number.")


def _merge_quantities(items: list[dict]) -> dict[str, int]:
    """同じ商品の行をまとめ、数量 0 の行を捨てる。"""
    quantities: dict[str, int] = {}
    for item in items:
        quantity = int(item.get("quantity", 0))
        if quantity < 0:
            raise OrderValidationError("Quantity must not be negative.")
        if quantity == 0:
            continue
        product_id = str(item["product_id"])
        quantities[product_id] = quantities.get(product_id, 0) + quantity
    if not quantities:
        raise OrderValidationError("Please add at least one product to your order.")
    return quantities


async def place_order(
    session: AsyncSession,
    redis: aioredis.Redis,
    ctx: AppContext,
    customer: CustomerDetails,
    items: list[dict],
) -> PlacedOrder:
    """
    注文作成コマンド

    商品の価格・名前は現在のカタログからスナップショットとして写し取る。
    合計金額はここで一度だけ計算し、以後は再計算しない。
    ログインしていない注文も受け付ける (user_id は空になる)。
    """
    store = ctx.store
    _validate_customer(customer)
    quantities = _merge_quantities(items)

    products = await catalog.get_products_by_ids(session, store.store_id, list(quantities))
    missing = [pid for pid in quantities if pid not in products]
    if missing:
        raise OrderValidationError(
            f"Product {missing[0]} is not available in this store.", product_ids=missing
        )

    line_items = [
        LineItem(
            product=ProductSnapshot(
                id=p.id, name=p.name, price=p.price, unit=p.unit,
            ),
            quantity=quantities[pid],
        )
        for pid, p in ((pid, products[pid]) for pid in quantities)
    ]
    total = to_money(sum((li.subtotal for li in line_items), start=to_money(0)))

    created = now_ms()
    order = Order(
        id=str(uuid4()),
        store_id=store.store_id,
        user_id=ctx.user.id if ctx.user else None,
        order_ref=f"ORD-{created}",
        customer=customer,
        line_items=line_items,
        total_amount=total,
        status=OrderStatus.PENDING,
        created_at=created,
        updated_at=created,
    )
    # 支払いリンクが作れない注文は保存しない
    try:
        payment_url = payments.build_payment_url(
            payee_address=store.vpa,
            payee_name=store.merchant_name,
            amount=order.total_amount,
            note=f"Order #{order.order_ref}",
            reference=order.order_ref,
            currency=config.PAYMENT_CURRENCY,
        )
    except ValueError as e:
        logger.error("Store %s cannot build a payment link: %s", store.store_id, e)
        raise ConfigurationError(
            "This store is not set up to receive payments yet. Please contact the seller.",
            store_id=store.store_id,
        ) from e

    event = OrderPlaced(
        order_id=order.id,
        store_id=order.store_id,
        user_id=order.user_id,
        order_ref=order.order_ref,
        total_amount=str(order.total_amount),
        timestamp=datetime.fromtimestamp(created / 1000, timezone.utc),
    )

    async with persistence.write(session, "place order"):
        # 1. イベントストアに追記
        await event_store.append_event(
            session, order.id, "Order", "OrderPlaced", event.model_dump(mode="json"), 0
        )
        # 2. リードモデルを更新
        await session.execute(
            text("""
                INSERT INTO orders
                    (id, store_id, user_id, order_ref, customer, line_items,
                     total_amount, status, tracking_number, created_at, updated_at)
                VALUES
                    (:id, :store_id, :user_id, :order_ref, :customer, :line_items,
                     :total_amount, :status, NULL, :created_at, :updated_at)
            """),
            {
                "id": order.id,
                "store_id": order.store_id,
                "user_id": order.user_id,
                "order_ref": order.order_ref,
                "customer": json.dumps(customer.model_dump(mode="json")),
                "line_items": json.dumps([li.model_dump(mode="json") for li in line_items]),
                "total_amount": str(order.total_amount),
                "status": order.status.value,
                "created_at": order.created_at,
                "updated_at": order.updated_at,
            },
        )

    logger.info("Order %s placed in store %s for %s", order.order_ref, store.store_id, total)

    # 3. Redis Pub/Sub で店舗のフィードに通知
    await feeds.publish(
        redis, store.store_id, feeds.ORDERS, "OrderPlaced", event.model_dump(mode="json")
    )

    return PlacedOrder(order=order, payment_url=payment_url)


async def update_status(
    session: AsyncSession,
    redis: aioredis.Redis,
    ctx: AppContext,
    order_id: str,
    target: OrderStatus,
    tracking_number: str | None = None,
) -> Order:
    """
    注文状態の遷移コマンド (店舗の seller のみ)

    遷移表にない遷移は InvalidTransition で拒否し、保存済みの状態は変えない。
    2 人の seller が同時に操作した場合、後から保存しようとした側は
    バージョン衝突で ConcurrentUpdate になる。
    """
    store_id = ctx.store.store_id
    identity.require_store_admin(ctx.user, store_id)

    # 現在の集約をイベントから再構築
    agg = OrderAggregate.from_events(await event_store.load_events(session, order_id))
    if agg.id is None or agg.store_id != store_id:
        raise NotFound("Order not found")

    event = agg.plan_transition(target, tracking_number)
    event_type = type(event).__name__
    event_data = event.model_dump(mode="json")
    expected = agg.status

    async with persistence.write(session, "update order status"):
        try:
            version = await event_store.append_event(
                session, order_id, "Order", event_type, event_data, agg.version
            )
        except IntegrityError as exc:
            raise ConcurrentUpdate(
                "This order was changed by someone else. Reload and try again."
            ) from exc

        agg.apply_event(event_type, event_data)
        result = await session.execute(
            text("""
                UPDATE orders
                SET status = :status, tracking_number = :tracking_number, updated_at = :now
                WHERE id = :id AND status = :expected
            """),
            {
                "id": order_id,
                "status": agg.status.value,
                "tracking_number": agg.tracking_number,
                "now": now_ms(),
                "expected": expected.value,
            },
        )
        if result.rowcount != 1:
            raise ConcurrentUpdate(
                "This order was changed by someone else. Reload and try again."
            )

    agg.version = version
    logger.info(
        "Order %s in store %s moved %s -> %s",
        agg.order_ref, store_id, expected.value, agg.status.value,
    )
    await feeds.publish(redis, store_id, feeds.ORDERS, event_type, event_data)
    return await queries.get_order(session, store_id, order_id)


async def delete_order(
    session: AsyncSession,
    redis: aioredis.Redis,
    ctx: AppContext,
    order_id: str,
) -> None:
    """
    注文のハード削除 (店舗の seller のみ)

    状態に関係なく削除でき、元に戻せない。イベント履歴も消える。
    """
    store_id = ctx.store.store_id
    identity.require_store_admin(ctx.user, store_id)
    order = await queries.get_order(session, store_id, order_id)

    async with persistence.write(session, "delete order"):
        await session.execute(
            text("DELETE FROM orders WHERE id = :id AND store_id = :store_id"),
            {"id": order_id, "store_id": store_id},
        )
        await event_store.delete_events(session, order_id)

    logger.info("Order %s (%s) deleted from store %s", order.order_ref, order.status.value, store_id)
    await feeds.publish(redis, store_id, feeds.ORDERS, "OrderDeleted", {"order_id": order_id})
