"""
Storefront — 注文クエリ (読み取り側)

orders テーブルはイベントから作られるリードモデル。
一覧は store_id で絞り込み、作成日時の新しい順に Python 側で並べ替える。
"""

import json

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from . import event_store, identity
from .aggregate import TERMINAL_STATUSES
from .context import AppContext
from .errors import NotFound
from .models import Order, now_ms


def _load_json(value):
    return json.loads(value) if isinstance(value, str) else value


def _to_order(row) -> Order:
    return Order(
        id=row.id,
        store_id=row.store_id,
        user_id=row.user_id,
        order_ref=row.order_ref,
        customer=_load_json(row.customer),
        line_items=_load_json(row.line_items),
        total_amount=row.total_amount,
        status=row.status,
        tracking_number=row.tracking_number,
        # 作成日時が欠けている行は「今」として扱う (一覧の先頭に来る)
        created_at=row.created_at or now_ms(),
        updated_at=row.updated_at or 0,
    )


def _newest_first(orders: list[Order]) -> list[Order]:
    return sorted(orders, key=lambda o: o.created_at, reverse=True)


def filter_by_state(orders: list[Order], state: str | None) -> list[Order]:
    """
    管理画面のタブ分け

        active    : pending / paid / confirmed / shipped
        completed : delivered / cancelled
    """
    if state is None:
        return orders
    completed = state == "completed"
    return [o for o in orders if (o.status in TERMINAL_STATUSES) == completed]


async def get_order(session: AsyncSession, store_id: str, order_id: str) -> Order:
    result = await session.execute(
        text("SELECT * FROM orders WHERE id = :id AND store_id = :store_id"),
        {"id": order_id, "store_id": store_id},
    )
    row = result.fetchone()
    if not row:
        raise NotFound("Order not found")
    return _to_order(row)


async def list_orders(session: AsyncSession, store_id: str) -> list[Order]:
    """店舗の全注文 (seller 用)"""
    result = await session.execute(
        text("SELECT * FROM orders WHERE store_id = :store_id"),
        {"store_id": store_id},
    )
    return _newest_first([_to_order(row) for row in result.fetchall()])


async def list_orders_for_user(
    session: AsyncSession,
    store_id: str,
    user_id: str,
) -> list[Order]:
    """customer 自身の注文履歴"""
    result = await session.execute(
        text("SELECT * FROM orders WHERE store_id = :store_id AND user_id = :user_id"),
        {"store_id": store_id, "user_id": user_id},
    )
    return _newest_first([_to_order(row) for row in result.fetchall()])


# ── 閲覧権限つきの取得 ───────────────────────────


async def list_visible_orders(session: AsyncSession, ctx: AppContext) -> list[Order]:
    """店舗管理者には全件、それ以外のログイン済み利用者には自分の注文だけを返す。"""
    if identity.can_manage_store(ctx.user, ctx.store_id):
        return await list_orders(session, ctx.store_id)
    user = identity.require_user(ctx.user)
    return await list_orders_for_user(session, ctx.store_id, user.id)


async def get_visible_order(session: AsyncSession, ctx: AppContext, order_id: str) -> Order:
    order = await get_order(session, ctx.store_id, order_id)
    if identity.can_manage_store(ctx.user, ctx.store_id):
        return order
    user = identity.require_user(ctx.user)
    if order.user_id != user.id:
        # 他人の注文は存在自体を見せない
        raise NotFound("Order not found")
    return order


async def order_history(session: AsyncSession, ctx: AppContext, order_id: str) -> list[dict]:
    """注文のイベント履歴 (店舗管理者用)"""
    identity.require_store_admin(ctx.user, ctx.store_id)
    await get_order(session, ctx.store_id, order_id)
    return await event_store.load_events(session, order_id)
