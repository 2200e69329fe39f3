"""
Storefront — Identity Resolver

検証済みの ID (メール / 電話番号) から利用者のロールを決める。

    1. 電話番号を数字だけに正規化
    2. ルート許可リストに一致 → root (無条件。他の判定より優先)
    3. owner_email → owner_phone の順に店舗を検索、最初の一致 → seller
    4. どれにも当たらない → customer

キャッシュはしない。認証状態が変わるたびに再計算する。
アクセス制御の判定はすべてこのモジュールを経由させ、
許可リストのチェックを他の場所で再実装しない。
"""

import logging
import re
from dataclasses import dataclass

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from . import config
from .errors import AuthenticationFailure, AuthorizationDenial
from .models import Identity, Role, Store, User

logger = logging.getLogger(__name__)

DEFAULT_NAMES = {
    Role.ROOT: "Root Admin",
    Role.SELLER: "Seller",
    Role.CUSTOMER: "Customer",
}


@dataclass(frozen=True)
class RoleResolution:
    role: Role
    store_id: str | None = None


def normalize_phone(phone: str | None) -> str | None:
    """'+91 98765-43210' → '919876543210'。数字が残らなければ None。"""
    if not phone:
        return None
    digits = re.sub(r"\D", "", phone)
    return digits or None


def is_root_operator(email: str | None, phone: str | None) -> bool:
    if email and email in config.ROOT_ADMIN_EMAILS:
        return True
    phone = normalize_phone(phone)
    if phone and phone in config.ROOT_ADMIN_PHONES:
        return True
    return False


async def find_managed_store(
    session: AsyncSession,
    email: str | None,
    phone: str | None,
) -> Store | None:
    """
    この ID が所有する店舗を探す。メールを先に見る。
    両方が別々の店舗に一致しても、メール側の店舗だけを返す。

    注意: 検索自体の失敗 (接続断・タイムアウト) は「店舗なし」として扱う。
    つまり拒否ではなく customer ロールに倒れる (fail open)。
    """
    from . import directory

    phone = normalize_phone(phone)
    try:
        if email:
            store = await directory.find_by_owner_email(session, email)
            if store:
                return store
        if phone:
            store = await directory.find_by_owner_phone(session, phone)
            if store:
                return store
    except SQLAlchemyError:
        logger.exception("Store ownership lookup failed for %s", email or phone)
        await session.rollback()
    return None


async def resolve_role(
    session: AsyncSession,
    email: str | None = None,
    phone: str | None = None,
) -> RoleResolution:
    if is_root_operator(email, phone):
        return RoleResolution(Role.ROOT)

    store = await find_managed_store(session, email, phone)
    if store:
        return RoleResolution(Role.SELLER, store.store_id)
    return RoleResolution(Role.CUSTOMER)


async def resolve_user(session: AsyncSession, identity: Identity) -> User:
    """プロバイダのコールバック内容から User を組み立てる。"""
    resolution = await resolve_role(session, identity.email, identity.phone_number)
    return User(
        id=identity.uid,
        name=identity.name or DEFAULT_NAMES[resolution.role],
        email=identity.email,
        phone_number=identity.phone_number,
        role=resolution.role,
        managed_store_id=resolution.store_id,
        avatar=identity.picture,
    )


# ── アクセス制御 ─────────────────────────────────


def is_admin(user: User | None) -> bool:
    return user is not None and user.role in (Role.ROOT, Role.SELLER)


def can_manage_store(user: User | None, store_id: str) -> bool:
    """root はすべての店舗、seller は自分の店舗だけを管理できる。"""
    if user is None:
        return False
    if user.role == Role.ROOT:
        return True
    return user.role == Role.SELLER and user.managed_store_id == store_id


def require_user(user: User | None) -> User:
    if user is None:
        raise AuthenticationFailure("Please sign in to continue.")
    return user


def require_root(user: User | None) -> User:
    user = require_user(user)
    if user.role != Role.ROOT:
        logger.warning("Root access denied for user %s", user.id)
        raise AuthorizationDenial("Only the root operator can manage stores.")
    return user


def require_store_admin(user: User | None, store_id: str) -> User:
    user = require_user(user)
    if not can_manage_store(user, store_id):
        logger.warning("Store admin access to %s denied for user %s", store_id, user.id)
        if user.role == Role.SELLER:
            raise AuthorizationDenial(
                f'You are authorized to manage "{user.managed_store_id}", not this store.'
            )
        raise AuthorizationDenial("You are not authorized to manage this store.")
    return user
