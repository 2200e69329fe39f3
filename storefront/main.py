"""
Storefront — FastAPI エントリーポイント

マルチテナントのストアフロント。テナント (店舗) は URL のスラッグで決まる。

  ┌──────────┐  Bearer (Firebase ID トークン)  ┌──────────────┐
  │ Browser  │ ──────────────────────────────▶ │ Storefront   │──▶ PostgreSQL
  │          │ ◀── WebSocket スナップショット ── │ API          │──▶ Redis Pub/Sub
  └──────────┘                                 └──────────────┘
        │ upi://pay?...
        ▼
   UPI アプリ (支払い結果はこのサービスには戻ってこない)

書き込みは Command (commands / catalog / directory)、
読み取りは Query (queries / catalog / directory) に分けている。
"""

import asyncio
import contextlib
import logging
from contextlib import asynccontextmanager
from decimal import Decimal
from typing import Literal

import redis.asyncio as aioredis
from fastapi import Depends, FastAPI, Header, Request, WebSocket, WebSocketDisconnect
from fastapi.concurrency import run_in_threadpool
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker

from . import catalog, commands, config, directory, feeds, identity, queries
from .aggregate import allowed_transitions
from .auth import FirebaseIdentityProvider, check_origin
from .context import AppContext, View, parse_store_param, resolve_view
from .errors import AuthenticationFailure, AuthorizationDenial, StorefrontError
from .models import CustomerDetails, Order, OrderStatus, User
from .schema import create_tables

logging.basicConfig(
    level=config.LOG_LEVEL,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

engine = create_async_engine(config.DATABASE_URL, echo=False)
async_session = sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
redis_pool: aioredis.Redis | None = None
identity_provider = FirebaseIdentityProvider()


@asynccontextmanager
async def lifespan(app: FastAPI):
    global redis_pool
    await create_tables(engine)
    redis_pool = aioredis.from_url(config.REDIS_URL, decode_responses=True)
    yield
    await redis_pool.aclose()
    await engine.dispose()


app = FastAPI(title="Storefront", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(StorefrontError)
async def handle_storefront_error(request: Request, exc: StorefrontError):
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.detail)
    else:
        logger.warning("%s %s rejected (%s): %s", request.method, request.url.path, exc.code, exc.detail)
    return JSONResponse(
        status_code=exc.status_code,
        content={"error": exc.code, "detail": exc.detail, **exc.extra},
    )


# ── Dependencies ─────────────────────────────────


async def get_session():
    async with async_session() as session:
        yield session


def get_redis() -> aioredis.Redis:
    return redis_pool


def get_identity_provider():
    return identity_provider


def _bearer_token(authorization: str | None) -> str | None:
    if not authorization:
        return None
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        raise AuthenticationFailure("Please sign in to continue.")
    return token.strip()


async def _authenticate(session: AsyncSession, provider, token: str | None) -> User | None:
    if not token:
        return None
    verified = await run_in_threadpool(provider.verify, token)
    return await identity.resolve_user(session, verified)


async def get_current_user(
    authorization: str | None = Header(default=None),
    session: AsyncSession = Depends(get_session),
    provider=Depends(get_identity_provider),
) -> User | None:
    """トークンがなければ匿名 (None)。あれば毎回ロールを引き直す。"""
    return await _authenticate(session, provider, _bearer_token(authorization))


async def get_context(user: User | None = Depends(get_current_user)) -> AppContext:
    return AppContext(user=user)


async def get_store_context(
    slug: str,
    user: User | None = Depends(get_current_user),
    session: AsyncSession = Depends(get_session),
) -> AppContext:
    store = await directory.require_store(session, slug.strip().lower())
    return AppContext(user=user, store=store)


# ── Request Models ───────────────────────────────


class SessionRequest(BaseModel):
    target_role: str = "customer"


class CreateStoreRequest(BaseModel):
    store_id: str
    name: str
    vpa: str
    merchant_name: str
    owner_email: str | None = None
    owner_phone: str | None = None


class UpdateStoreRequest(BaseModel):
    name: str | None = None
    vpa: str | None = None
    merchant_name: str | None = None


class ProductRequest(BaseModel):
    name: str
    price: Decimal | str
    unit: str
    image_url: str
    description: str = ""


class ProductUpdateRequest(BaseModel):
    name: str | None = None
    price: Decimal | str | None = None
    unit: str | None = None
    image_url: str | None = None
    description: str | None = None


class OrderItemRequest(BaseModel):
    product_id: str
    quantity: int


class PlaceOrderRequest(BaseModel):
    customer: CustomerDetails
    items: list[OrderItemRequest]


class UpdateStatusRequest(BaseModel):
    status: OrderStatus
    tracking_number: str | None = None


def _order_view(order: Order) -> dict:
    """注文 + 次に押せる状態遷移ボタン"""
    return {
        **order.model_dump(mode="json"),
        "allowed_transitions": [s.value for s in allowed_transitions(order.status)],
    }


# ── Session / Navigation ─────────────────────────


@app.get("/api/navigation")
async def navigation(
    request: Request,
    view: View | None = None,
    ctx: AppContext = Depends(get_context),
    session: AsyncSession = Depends(get_session),
):
    """クエリ文字列 (store=<slug>) から表示する画面を決める。戻る/進むのたびに呼ばれる。"""
    slug = parse_store_param(request.url.query)
    if slug:
        ctx.store = await directory.require_store(session, slug)
    return {
        "view": resolve_view(ctx, view).value,
        "store": ctx.store,
        "user": ctx.user,
    }


@app.post("/api/session")
async def create_session(
    req: SessionRequest,
    origin: str | None = Header(default=None),
    authorization: str | None = Header(default=None),
    session: AsyncSession = Depends(get_session),
    provider=Depends(get_identity_provider),
):
    """
    ID プロバイダのコールバック

    管理画面を要求したのに root でも seller でもない場合は、
    プロバイダ側のセッションも失効させてから拒否する。
    """
    check_origin(origin)
    token = _bearer_token(authorization)
    if not token:
        raise AuthenticationFailure("Please sign in to continue.")

    verified = await run_in_threadpool(provider.verify, token)
    user = await identity.resolve_user(session, verified)

    if req.target_role == "admin" and not identity.is_admin(user):
        await run_in_threadpool(provider.sign_out, verified.uid)
        who = verified.email or verified.phone_number or verified.uid
        raise AuthorizationDenial(f'Access Denied: "{who}" is not authorized as an Admin/Seller.')

    logger.info("User %s signed in as %s", user.id, user.role.value)
    return {"user": user}


@app.post("/api/session/sign-out")
async def sign_out(
    ctx: AppContext = Depends(get_context),
    provider=Depends(get_identity_provider),
):
    user = identity.require_user(ctx.user)
    await run_in_threadpool(provider.sign_out, user.id)
    ctx.sign_out()
    return {"signed_out": True}


# ── Store Directory ──────────────────────────────


@app.get("/api/stores")
async def list_stores(session: AsyncSession = Depends(get_session)):
    return await directory.list_stores(session)


@app.post("/api/stores", status_code=201)
async def create_store(
    req: CreateStoreRequest,
    ctx: AppContext = Depends(get_context),
    session: AsyncSession = Depends(get_session),
    redis: aioredis.Redis = Depends(get_redis),
):
    return await directory.create_store(
        session, redis, ctx,
        req.store_id, req.name, req.vpa, req.merchant_name,
        req.owner_email, req.owner_phone,
    )


@app.get("/api/stores/{slug}")
async def get_store(ctx: AppContext = Depends(get_store_context)):
    return ctx.store


@app.patch("/api/stores/{slug}")
async def update_store(
    req: UpdateStoreRequest,
    ctx: AppContext = Depends(get_store_context),
    session: AsyncSession = Depends(get_session),
    redis: aioredis.Redis = Depends(get_redis),
):
    return await directory.update_settings(session, redis, ctx, req.model_dump(exclude_none=True))


@app.delete("/api/stores/{slug}")
async def delete_store(
    slug: str,
    ctx: AppContext = Depends(get_context),
    session: AsyncSession = Depends(get_session),
    redis: aioredis.Redis = Depends(get_redis),
):
    await directory.delete_store(session, redis, ctx, slug.strip().lower())
    return {"deleted": slug}


# ── Catalog ──────────────────────────────────────


@app.get("/api/stores/{slug}/products")
async def list_products(
    ctx: AppContext = Depends(get_store_context),
    session: AsyncSession = Depends(get_session),
):
    return await catalog.list_products(session, ctx.store_id)


@app.post("/api/stores/{slug}/products", status_code=201)
async def add_product(
    req: ProductRequest,
    ctx: AppContext = Depends(get_store_context),
    session: AsyncSession = Depends(get_session),
    redis: aioredis.Redis = Depends(get_redis),
):
    return await catalog.add_product(
        session, redis, ctx,
        req.name, req.price, req.unit, req.image_url, req.description,
    )


@app.put("/api/stores/{slug}/products/{product_id}")
async def update_product(
    product_id: str,
    req: ProductUpdateRequest,
    ctx: AppContext = Depends(get_store_context),
    session: AsyncSession = Depends(get_session),
    redis: aioredis.Redis = Depends(get_redis),
):
    return await catalog.update_product(
        session, redis, ctx, product_id, req.model_dump(exclude_none=True)
    )


@app.delete("/api/stores/{slug}/products/{product_id}")
async def delete_product(
    product_id: str,
    ctx: AppContext = Depends(get_store_context),
    session: AsyncSession = Depends(get_session),
    redis: aioredis.Redis = Depends(get_redis),
):
    await catalog.delete_product(session, redis, ctx, product_id)
    return {"deleted": product_id}


# ── Order Ledger: Command (Write 側) ─────────────


@app.post("/api/stores/{slug}/orders", status_code=201)
async def place_order(
    req: PlaceOrderRequest,
    ctx: AppContext = Depends(get_store_context),
    session: AsyncSession = Depends(get_session),
    redis: aioredis.Redis = Depends(get_redis),
):
    """注文を作成し、UPI 支払い URL を返す。ブラウザはその URL へ遷移する。"""
    placed = await commands.place_order(
        session, redis, ctx, req.customer, [item.model_dump() for item in req.items]
    )
    return {"order": _order_view(placed.order), "payment_url": placed.payment_url}


@app.post("/api/stores/{slug}/orders/{order_id}/status")
async def update_order_status(
    order_id: str,
    req: UpdateStatusRequest,
    ctx: AppContext = Depends(get_store_context),
    session: AsyncSession = Depends(get_session),
    redis: aioredis.Redis = Depends(get_redis),
):
    order = await commands.update_status(
        session, redis, ctx, order_id, req.status, req.tracking_number
    )
    return _order_view(order)


@app.delete("/api/stores/{slug}/orders/{order_id}")
async def delete_order(
    order_id: str,
    ctx: AppContext = Depends(get_store_context),
    session: AsyncSession = Depends(get_session),
    redis: aioredis.Redis = Depends(get_redis),
):
    await commands.delete_order(session, redis, ctx, order_id)
    return {"deleted": order_id}


# ── Order Ledger: Query (Read 側) ────────────────


@app.get("/api/stores/{slug}/orders")
async def list_orders(
    state: Literal["active", "completed"] | None = None,
    ctx: AppContext = Depends(get_store_context),
    session: AsyncSession = Depends(get_session),
):
    """seller には店舗の全注文、customer には自分の注文。state で対応中/完了に絞れる。"""
    orders = await queries.list_visible_orders(session, ctx)
    return [_order_view(o) for o in queries.filter_by_state(orders, state)]


@app.get("/api/stores/{slug}/orders/{order_id}")
async def get_order(
    order_id: str,
    ctx: AppContext = Depends(get_store_context),
    session: AsyncSession = Depends(get_session),
):
    return _order_view(await queries.get_visible_order(session, ctx, order_id))


@app.get("/api/stores/{slug}/orders/{order_id}/events")
async def get_order_events(
    order_id: str,
    ctx: AppContext = Depends(get_store_context),
    session: AsyncSession = Depends(get_session),
):
    """注文のイベント履歴 (状態遷移の監査用)"""
    return await queries.order_history(session, ctx, order_id)


# ── Realtime (WebSocket) ─────────────────────────


async def _stream(websocket: WebSocket, feed) -> None:
    """
    スナップショットを送り続ける。

      pump   : feed → send_json
      listen : receive_text (切断の検知だけ)

    どちらかが終わった時点でもう片方を止め、購読を解除する。
    スナップショットの再読込に失敗したら 1011 で閉じる。
    """
    async def pump():
        async for snapshot in feed:
            await websocket.send_json(snapshot)

    async def listen():
        while True:
            await websocket.receive_text()

    sender = asyncio.create_task(pump())
    receiver = asyncio.create_task(listen())
    try:
        done, _ = await asyncio.wait({sender, receiver}, return_when=asyncio.FIRST_COMPLETED)
    finally:
        sender.cancel()
        receiver.cancel()
        await asyncio.gather(sender, receiver, return_exceptions=True)
        await feed.aclose()

    finished = sender if sender in done else receiver
    error = finished.exception()
    if error is None or isinstance(error, WebSocketDisconnect):
        logger.info("WebSocket client disconnected from %s", websocket.url.path)
        return
    if finished is receiver:
        raise error

    logger.error("Snapshot feed for %s failed: %s", websocket.url.path, error)
    with contextlib.suppress(RuntimeError, WebSocketDisconnect):
        await websocket.close(code=1011)


@app.websocket("/ws/stores/{slug}/products")
async def products_feed(
    websocket: WebSocket,
    slug: str,
    session: AsyncSession = Depends(get_session),
    redis: aioredis.Redis = Depends(get_redis),
):
    await websocket.accept()
    store = await directory.get_store(session, slug.strip().lower())
    if store is None:
        await websocket.close(code=4404)
        return

    async def load():
        products = await catalog.list_products(session, store.store_id)
        # 読み取りトランザクションを閉じ、次の再読込で最新のコミットを見る
        await session.rollback()
        return [p.model_dump(mode="json") for p in products]

    await _stream(websocket, feeds.snapshots(redis, store.store_id, feeds.PRODUCTS, load))


@app.websocket("/ws/stores/{slug}/orders")
async def orders_feed(
    websocket: WebSocket,
    slug: str,
    token: str | None = None,
    session: AsyncSession = Depends(get_session),
    redis: aioredis.Redis = Depends(get_redis),
    provider=Depends(get_identity_provider),
):
    await websocket.accept()
    store = await directory.get_store(session, slug.strip().lower())
    if store is None:
        await websocket.close(code=4404)
        return
    try:
        user = identity.require_user(await _authenticate(session, provider, token))
    except StorefrontError as e:
        logger.warning("Orders feed for %s rejected: %s", store.store_id, e.detail)
        await websocket.close(code=4401)
        return

    ctx = AppContext(user=user, store=store)

    async def load():
        orders = await queries.list_visible_orders(session, ctx)
        await session.rollback()
        return [_order_view(o) for o in orders]

    await _stream(websocket, feeds.snapshots(redis, store.store_id, feeds.ORDERS, load))


@app.get("/health")
async def health():
    return {"status": "ok", "service": "storefront"}
