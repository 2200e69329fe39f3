"""Shared pytest fixtures for storefront tests."""

import asyncio
import os
import tempfile

# storefront.config reads the environment at import time
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///" + os.path.join(
    tempfile.gettempdir(), "storefront-unused.db"
)
os.environ["ROOT_ADMIN_EMAILS"] = "admin@example.com"
os.environ["ROOT_ADMIN_PHONES"] = "9876543210"
os.environ["AUTHORIZED_DOMAINS"] = "localhost,127.0.0.1,shop.example.com"

import pytest
from httpx import ASGITransport, AsyncClient
from redis.exceptions import ConnectionError as RedisConnectionError
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker

from storefront import catalog, directory
from storefront.context import AppContext
from storefront.errors import AuthenticationFailure
from storefront.main import app, get_identity_provider, get_redis, get_session
from storefront.models import CustomerDetails, Identity, Role, User
from storefront.schema import create_tables


class FakePubSub:
    """In-memory stand-in for redis.asyncio.client.PubSub."""

    def __init__(self, redis):
        self.redis = redis
        self.channels = set()
        self.queue = asyncio.Queue()

    async def subscribe(self, *channels):
        for channel in channels:
            self.channels.add(channel)
            self.redis.subscribers.setdefault(channel, []).append(self)

    async def unsubscribe(self, *channels):
        for channel in channels or list(self.channels):
            self.channels.discard(channel)
            subscribers = self.redis.subscribers.get(channel, [])
            if self in subscribers:
                subscribers.remove(self)

    async def get_message(self, ignore_subscribe_messages=False, timeout=0.0):
        try:
            return await asyncio.wait_for(self.queue.get(), timeout)
        except asyncio.TimeoutError:
            return None

    async def aclose(self):
        self.closed = True


class FakeRedis:
    """Records every publish and delivers it to in-process subscribers."""

    def __init__(self):
        self.published = []
        self.subscribers = {}

    async def publish(self, channel, message):
        self.published.append((channel, message))
        for pubsub in self.subscribers.get(channel, []):
            pubsub.queue.put_nowait({"type": "message", "channel": channel, "data": message})
        return len(self.subscribers.get(channel, []))

    def pubsub(self):
        return FakePubSub(self)


class BrokenRedis(FakeRedis):
    async def publish(self, channel, message):
        raise RedisConnectionError("Connection refused")


class FakeIdentityProvider:
    """Maps fixed test tokens to identities and records sign-outs."""

    def __init__(self, identities):
        self.identities = identities
        self.signed_out = []

    def verify(self, id_token):
        if id_token not in self.identities:
            raise AuthenticationFailure("Invalid sign-in credentials.")
        return self.identities[id_token]

    def sign_out(self, uid):
        self.signed_out.append(uid)


# ── Database ─────────────────────────────────────


@pytest.fixture
async def engine(tmp_path):
    """A fresh SQLite database file per test."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'storefront.db'}")
    await create_tables(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
async def session(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def redis():
    return FakeRedis()


@pytest.fixture
def broken_redis():
    return BrokenRedis()


# ── Users ────────────────────────────────────────


@pytest.fixture
def root_user():
    return User(id="root-uid", name="Root Admin", email="admin@example.com", role=Role.ROOT)


@pytest.fixture
def seller_user():
    return User(
        id="seller-uid",
        name="Teja",
        email="teja@example.com",
        role=Role.SELLER,
        managed_store_id="teja-shop",
    )


@pytest.fixture
def other_seller_user():
    return User(
        id="ravi-uid",
        name="Ravi",
        email="ravi@example.com",
        role=Role.SELLER,
        managed_store_id="ravi-mart",
    )


@pytest.fixture
def customer_user():
    return User(id="priya-uid", name="Priya", email="priya@example.com", role=Role.CUSTOMER)


@pytest.fixture
def provider():
    return FakeIdentityProvider({
        "root-token": Identity(uid="root-uid", email="admin@example.com"),
        "seller-token": Identity(uid="seller-uid", email="teja@example.com", name="Teja"),
        "ravi-token": Identity(uid="ravi-uid", email="ravi@example.com", name="Ravi"),
        "priya-token": Identity(uid="priya-uid", email="priya@example.com", name="Priya"),
        "arjun-token": Identity(uid="arjun-uid", phone_number="+91 90000 11111"),
    })


# ── Tenants ──────────────────────────────────────


@pytest.fixture
async def store(session, redis, root_user):
    """Create the teja-shop tenant owned by teja@example.com."""
    return await directory.create_store(
        session, redis, AppContext(user=root_user),
        store_id="teja-shop",
        name="Teja Shop",
        vpa="teja@upi",
        merchant_name="Teja Enterprises",
        owner_email="teja@example.com",
    )


@pytest.fixture
async def other_store(session, redis, root_user):
    return await directory.create_store(
        session, redis, AppContext(user=root_user),
        store_id="ravi-mart",
        name="Ravi Mart",
        vpa="ravi@upi",
        merchant_name="Ravi Traders",
        owner_email="ravi@example.com",
    )


@pytest.fixture
def seller_ctx(store, seller_user):
    return AppContext(user=seller_user, store=store)


@pytest.fixture
def customer_ctx(store, customer_user):
    return AppContext(user=customer_user, store=store)


@pytest.fixture
async def product(session, redis, seller_ctx):
    """A 124.75 product, so two of them cost 249.50."""
    return await catalog.add_product(
        session, redis, seller_ctx,
        name="Mango Pickle",
        price="124.75",
        unit="jar",
        image_url="https://img.example.com/pickle.jpg",
        description="Homemade",
    )


@pytest.fixture
def customer_details():
    return CustomerDetails(name="Priya Sharma", address="12 MG Road, Pune", contact="9123456789")


# ── HTTP ─────────────────────────────────────────


@pytest.fixture
async def client(session_factory, redis, provider):
    """An httpx client wired to the app with test dependencies."""

    async def override_session():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_session] = override_session
    app.dependency_overrides[get_redis] = lambda: redis
    app.dependency_overrides[get_identity_provider] = lambda: provider

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        yield client

    app.dependency_overrides.clear()