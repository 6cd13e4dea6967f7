"""Shared fixtures: in-memory database, app client, signed-request helpers."""

import hashlib
import hmac
import os
import time

# Settings are read (and cached) on first import of billing.*
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ["REDIS_URL"] = ""
os.environ["SECRET_KEY"] = "test-secret-key-with-enough-bytes-for-tests"
os.environ["JWT_SECRET"] = "test-jwt-secret-with-enough-bytes-for-hs256"
os.environ["STRIPE_SECRET_KEY"] = "sk_test_dummy"
os.environ["STRIPE_WEBHOOK_SECRET"] = "whsec_test_secret"
os.environ["PAYPAL_CLIENT_ID"] = "paypal-client"
os.environ["PAYPAL_CLIENT_SECRET"] = "paypal-secret"
os.environ["PAYPAL_API_BASE"] = "https://paypal.test"
os.environ["ADYEN_API_KEY"] = "adyen-api-key"
os.environ["ADYEN_MERCHANT_ACCOUNT"] = "MarketUpTest"
os.environ["ADYEN_HMAC_KEY"] = "adyen-hmac-key"
os.environ["ADYEN_CHECKOUT_URL"] = "https://adyen.test/v71"

import httpx
import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from billing.app import create_app
from billing.constants import COOKIE_NAME
from billing.db.session import get_db
from billing.models import Base, User
from billing.services.auth_service import create_jwt


@pytest.fixture
async def engine():
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
async def user(db):
    user = User(email="alice@example.com", name="Alice")
    db.add(user)
    await db.commit()
    return user


@pytest.fixture
async def other_user(db):
    user = User(email="bob@example.com", name="Bob")
    db.add(user)
    await db.commit()
    return user


@pytest.fixture
async def staff(db):
    user = User(email="ops@example.com", name="Ops", is_staff=True)
    db.add(user)
    await db.commit()
    return user


@pytest.fixture
async def client(session_factory):
    app = create_app()

    async def override_get_db():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as c:
        yield c


@pytest.fixture
def auth_headers():
    """Build a session cookie header for a user."""

    def _headers(user: User) -> dict[str, str]:
        return {"Cookie": f"{COOKIE_NAME}={create_jwt(user.id)}"}

    return _headers


@pytest.fixture
def stripe_signature():
    """Sign a payload the way Stripe does: ``t=<ts>,v1=hex(hmac(secret, "<ts>.<body>"))``."""

    def _sign(payload: bytes, secret: str = "whsec_test_secret", timestamp: int | None = None) -> str:
        ts = timestamp if timestamp is not None else int(time.time())
        signed = f"{ts}.".encode() + payload
        digest = hmac.new(secret.encode(), signed, hashlib.sha256).hexdigest()
        return f"t={ts},v1={digest}"

    return _sign
