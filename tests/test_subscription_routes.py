from billing.models.enums import PaymentOutcome, Provider, Tier
from billing.services.normalizer import build_event
from billing.services.subscription_service import apply_payment_event


async def grant(db, user_id, external_id="tx_1", tier=Tier.PREMIUM):
    return await apply_payment_event(db, build_event(
        provider=Provider.STRIPE,
        external_transaction_id=external_id,
        user_id=user_id,
        tier=tier,
        plan_id=tier.lower(),
        amount_minor_units=4999,
        currency="USD",
        outcome=PaymentOutcome.SUCCEEDED,
    ))


async def test_health(client):
    resp = await client.get("/health")

    assert resp.status_code == 200
    assert resp.json() == {"status": "ok"}


async def test_no_subscription(client, user, auth_headers):
    resp = await client.get("/api/subscription", headers=auth_headers(user))

    assert resp.status_code == 200
    assert resp.json() == {"subscription": None}


async def test_active_subscription(client, db, user, auth_headers):
    await grant(db, user.id)

    resp = await client.get("/api/subscription", headers=auth_headers(user))

    sub = resp.json()["subscription"]
    assert sub["tier"] == Tier.PREMIUM
    assert sub["status"] == "ACTIVE"
    assert sub["cancelAtPeriodEnd"] is False
    assert {"periodStart", "periodEnd", "paymentRecordId"} <= sub.keys()


async def test_history_newest_first(client, db, user, auth_headers):
    uid = user.id
    await grant(db, uid, "tx_1", Tier.BASIC)
    await grant(db, uid, "tx_2", Tier.PREMIUM)

    resp = await client.get("/api/subscription/history", headers=auth_headers(user))

    assert [(s["tier"], s["status"]) for s in resp.json()] == [("PREMIUM", "ACTIVE"), ("BASIC", "CANCELED")]


async def test_cancel_then_reactivate(client, db, user, auth_headers):
    await grant(db, user.id)

    resp = await client.post("/api/subscription/cancel", json={"action": "cancel"}, headers=auth_headers(user))
    assert resp.status_code == 200
    assert resp.json()["cancelAtPeriodEnd"] is True
    assert resp.json()["subscription"]["status"] == "ACTIVE"

    resp = await client.post("/api/subscription/cancel", json={"action": "reactivate"}, headers=auth_headers(user))
    assert resp.status_code == 200
    assert resp.json()["subscription"]["cancelAtPeriodEnd"] is False


async def test_cancel_without_subscription(client, user, auth_headers):
    resp = await client.post("/api/subscription/cancel", json={"action": "cancel"}, headers=auth_headers(user))

    assert resp.status_code == 404


async def test_cancel_rejects_unknown_action(client, user, auth_headers):
    resp = await client.post("/api/subscription/cancel", json={"action": "pause"}, headers=auth_headers(user))

    assert resp.status_code == 422


async def test_expired_or_invalid_session(client):
    resp = await client.get("/api/subscription", headers={"Cookie": "marketup_session=not-a-jwt"})

    assert resp.status_code == 401
