"""Concurrent ledger writes against a real Postgres, where the user row lock applies.

SQLite ignores SELECT ... FOR UPDATE, so these run only when TEST_POSTGRES_URL
points at a scratch database (postgresql+asyncpg://...). Tables are created and
dropped per test.
"""

import asyncio
import os

import pytest
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from billing.models import Base, PaymentRecord, Subscription, User
from billing.models.enums import PaymentOutcome, Provider, SubscriptionStatus, Tier
from billing.services.normalizer import build_event
from billing.services.subscription_service import apply_payment_event

POSTGRES_URL = os.getenv("TEST_POSTGRES_URL", "")

pytestmark = pytest.mark.skipif(
    not POSTGRES_URL.startswith("postgresql+asyncpg://"),
    reason="TEST_POSTGRES_URL not configured - skipping row-lock tests",
)


@pytest.fixture
async def pg_factory():
    engine = create_async_engine(POSTGRES_URL)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)
    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await engine.dispose()


@pytest.fixture
async def pg_user_id(pg_factory):
    async with pg_factory() as session:
        user = User(email="carol@example.com", name="Carol")
        session.add(user)
        await session.commit()
        return user.id


def event_for(user_id, external_id, tier=Tier.STANDARD):
    return build_event(
        provider=Provider.STRIPE,
        external_transaction_id=external_id,
        user_id=user_id,
        tier=tier,
        plan_id=tier.lower(),
        amount_minor_units=2999,
        currency="USD",
        outcome=PaymentOutcome.SUCCEEDED,
    )


async def apply_in_own_session(factory, event):
    async with factory() as session:
        return await apply_payment_event(session, event)


async def count(factory, query):
    async with factory() as session:
        return await session.scalar(query)


async def test_same_event_delivered_concurrently_is_applied_once(pg_factory, pg_user_id):
    event = event_for(pg_user_id, "pi_concurrent")

    results = await asyncio.gather(*(apply_in_own_session(pg_factory, event) for _ in range(5)))

    assert sum(1 for r in results if not r.duplicate) == 1
    assert await count(pg_factory, select(func.count()).select_from(Subscription)) == 1
    assert await count(pg_factory, select(func.count()).select_from(PaymentRecord)) == 1


async def test_different_events_for_one_user_leave_one_active(pg_factory, pg_user_id):
    events = [
        event_for(pg_user_id, "pi_basic", Tier.BASIC),
        event_for(pg_user_id, "pi_premium", Tier.PREMIUM),
        event_for(pg_user_id, "pi_standard", Tier.STANDARD),
    ]

    results = await asyncio.gather(*(apply_in_own_session(pg_factory, e) for e in events))

    assert all(r.granted for r in results)
    active = select(func.count()).select_from(Subscription).where(
        Subscription.user_id == pg_user_id, Subscription.status == SubscriptionStatus.ACTIVE,
    )
    assert await count(pg_factory, active) == 1
    assert await count(pg_factory, select(func.count()).select_from(Subscription)) == 3
