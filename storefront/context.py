"""
Storefront — アプリケーションコンテキストと画面遷移

ブラウザ側のグローバル状態 (ログイン中の利用者・表示中の店舗) を
明示的な AppContext にまとめ、各操作に引数として渡す。

ライフサイクル:
    プロバイダのコールバック (POST /api/session) で生成され、
    以後はリクエストごとにトークンから組み立て直す。
    サインアウトでプロバイダ側のセッションごと破棄される。

テナントは URL のクエリ `store=<slug>` だけで決まる。
ブラウザの戻る/進むは、新しいクエリ文字列で resolve_view を呼び直すだけ。
"""

from dataclasses import dataclass
from enum import Enum
from urllib.parse import parse_qs

from . import identity
from .errors import AuthorizationDenial
from .models import Role, Store, User


class View(str, Enum):
    LANDING = "landing"
    CUSTOMER = "customer"
    ADMIN = "admin"
    ROOT_DASHBOARD = "root-dashboard"
    LOGIN = "login"


@dataclass
class AppContext:
    user: User | None = None
    store: Store | None = None

    @property
    def store_id(self) -> str | None:
        return self.store.store_id if self.store else None

    def sign_out(self) -> None:
        self.user = None


def parse_store_param(query_string: str) -> str | None:
    """'store=Teja-Shop&x=1' → 'teja-shop'"""
    values = parse_qs(query_string.lstrip("?")).get("store")
    if not values:
        return None
    slug = values[0].strip().lower()
    return slug or None


def resolve_view(ctx: AppContext, requested: View | None = None) -> View:
    user = ctx.user

    if ctx.store is None:
        if user and user.role == Role.ROOT:
            return View.ROOT_DASHBOARD
        if requested == View.ADMIN:
            return View.ADMIN if identity.is_admin(user) else View.LOGIN
        return View.LANDING

    if requested == View.ADMIN:
        if not identity.is_admin(user):
            return View.LOGIN
        if not identity.can_manage_store(user, ctx.store.store_id):
            raise AuthorizationDenial(
                f'You are authorized to manage "{user.managed_store_id}", not this store.'
            )
        return View.ADMIN

    return View.CUSTOMER
