"""
Storefront — Store Directory

テナント (店舗) の作成・一覧・取得・設定変更・削除。
店舗は人が決めた URL スラッグ (store_id) を主キーにする。

- 同じスラッグで作成すると、エラーにせず丸ごと上書きする
- 削除しても、その店舗の商品・注文は消さない (連鎖削除はしない)
- 一覧は作成日時の新しい順。サーバー側の複合インデックスに頼らず、取得後に並べ替える
"""

import logging
import re

import redis.asyncio as aioredis
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from . import feeds, identity, persistence
from .context import AppContext
from .errors import NotFound, ValidationFailure
from .models import Store, now_ms

logger = logging.getLogger(__name__)

_NOT_SLUG = re.compile(r"[^a-z0-9-]")

SETTINGS_FIELDS = ("name", "vpa", "merchant_name")

_REQUIRED_MESSAGES = {
    "name": "Store name is required.",
    "vpa": "UPI ID (VPA) is required to receive payments.",
    "merchant_name": "Merchant name is required to receive payments.",
}


def normalize_slug(raw: str) -> str:
    """'Teja Shop!' → 'tejashop'。URL に使えない文字は捨てる。"""
    return _NOT_SLUG.sub("", (raw or "").lower())


def _require_filled(values: dict) -> dict:
    """空白だけの値は保存しない。空の VPA では支払いリンクが作れない。"""
    cleaned = {}
    for field, value in values.items():
        value = (value or "").strip()
        if not value:
            raise ValidationFailure(_REQUIRED_MESSAGES[field])
        cleaned[field] = value
    return cleaned


def _to_store(row) -> Store:
    return Store(
        store_id=row.slug,
        name=row.name,
        owner_email=row.owner_email,
        owner_phone=row.owner_phone,
        vpa=row.vpa,
        merchant_name=row.merchant_name,
        created_at=row.created_at or 0,
    )


# ── 読み取り ─────────────────────────────────────


async def get_store(session: AsyncSession, store_id: str) -> Store | None:
    result = await session.execute(
        text("SELECT * FROM stores WHERE slug = :slug"),
        {"slug": store_id},
    )
    row = result.fetchone()
    return _to_store(row) if row else None


async def require_store(session: AsyncSession, store_id: str) -> Store:
    store = await get_store(session, store_id)
    if store is None:
        raise NotFound(f"Store '{store_id}' not found")
    return store


async def list_stores(session: AsyncSession) -> list[Store]:
    """全店舗を新しい順で返す。"""
    result = await session.execute(text("SELECT * FROM stores"))
    stores = [_to_store(row) for row in result.fetchall()]
    return sorted(stores, key=lambda s: s.created_at, reverse=True)


async def find_by_owner_email(session: AsyncSession, email: str) -> Store | None:
    result = await session.execute(
        text("SELECT * FROM stores WHERE owner_email = :email"),
        {"email": email},
    )
    row = result.first()
    return _to_store(row) if row else None


async def find_by_owner_phone(session: AsyncSession, phone: str) -> Store | None:
    result = await session.execute(
        text("SELECT * FROM stores WHERE owner_phone = :phone"),
        {"phone": phone},
    )
    row = result.first()
    return _to_store(row) if row else None


# ── 書き込み ─────────────────────────────────────


async def create_store(
    session: AsyncSession,
    redis: aioredis.Redis,
    ctx: AppContext,
    store_id: str,
    name: str,
    vpa: str,
    merchant_name: str,
    owner_email: str | None = None,
    owner_phone: str | None = None,
) -> Store:
    """
    店舗作成 (root のみ)

    スラッグが既に存在する場合は上書きする。作成日時も付け直される。
    """
    identity.require_root(ctx.user)

    slug = normalize_slug(store_id)
    if not slug:
        raise ValidationFailure("Invalid Store ID")
    required = _require_filled({"name": name, "vpa": vpa, "merchant_name": merchant_name})

    store = Store(
        store_id=slug,
        name=required["name"],
        owner_email=(owner_email or "").strip() or None,
        owner_phone=identity.normalize_phone(owner_phone),
        vpa=required["vpa"],
        merchant_name=required["merchant_name"],
        created_at=now_ms(),
    )

    async with persistence.write(session, "create store"):
        if await get_store(session, slug):
            logger.warning("Store %s already exists and will be overwritten", slug)
        await session.execute(
            text("""
                INSERT INTO stores
                    (slug, name, owner_email, owner_phone, vpa, merchant_name, created_at)
                VALUES
                    (:slug, :name, :owner_email, :owner_phone, :vpa, :merchant_name, :created_at)
                ON CONFLICT (slug) DO UPDATE SET
                    name = excluded.name,
                    owner_email = excluded.owner_email,
                    owner_phone = excluded.owner_phone,
                    vpa = excluded.vpa,
                    merchant_name = excluded.merchant_name,
                    created_at = excluded.created_at
            """),
            {
                "slug": store.store_id,
                "name": store.name,
                "owner_email": store.owner_email,
                "owner_phone": store.owner_phone,
                "vpa": store.vpa,
                "merchant_name": store.merchant_name,
                "created_at": store.created_at,
            },
        )

    logger.info("Store %s created by %s", slug, ctx.user.id)
    await feeds.publish(redis, slug, feeds.STORES, "StoreCreated", store.model_dump())
    return store


async def update_settings(
    session: AsyncSession,
    redis: aioredis.Redis,
    ctx: AppContext,
    changes: dict,
) -> Store:
    """店舗設定 (表示名・VPA・受取人名) をマージ更新する。店舗オーナーか root のみ。"""
    store = ctx.store
    identity.require_store_admin(ctx.user, store.store_id)

    updates = _require_filled(
        {k: v for k, v in changes.items() if k in SETTINGS_FIELDS and v is not None}
    )
    if not updates:
        return store

    async with persistence.write(session, "update store settings"):
        assignments = ", ".join(f"{field} = :{field}" for field in updates)
        await session.execute(
            text(f"UPDATE stores SET {assignments} WHERE slug = :slug"),
            {**updates, "slug": store.store_id},
        )

    updated = store.model_copy(update=updates)
    ctx.store = updated
    await feeds.publish(redis, store.store_id, feeds.STORES, "StoreUpdated", updated.model_dump())
    return updated


async def delete_store(
    session: AsyncSession,
    redis: aioredis.Redis,
    ctx: AppContext,
    store_id: str,
) -> None:
    """
    店舗削除 (root のみ)

    店舗レコードだけを消す。商品・注文は残る (既知の制約)。
    """
    identity.require_root(ctx.user)
    await require_store(session, store_id)

    async with persistence.write(session, "delete store"):
        await session.execute(
            text("DELETE FROM stores WHERE slug = :slug"),
            {"slug": store_id},
        )

    logger.warning("Store %s deleted; its products and orders are left in place", store_id)
    await feeds.publish(redis, store_id, feeds.STORES, "StoreDeleted", {"store_id": store_id})
