"""Push notifications end to end: signature gate, ledger effects, acknowledgements."""

import base64
import hashlib
import hmac
import json

import pytest
from sqlalchemy import func, select

from billing.config import get_settings
from billing.models import PaymentRecord, ProcessedPaymentEvent, Subscription
from billing.models.enums import PaymentStatus, SubscriptionStatus, Tier

ADYEN_KEY = "adyen-hmac-key"


def checkout_completed(user_id, payment_intent="pi_123", plan_id="pro", amount=2999):
    return json.dumps({
        "id": "evt_1",
        "type": "checkout.session.completed",
        "data": {"object": {
            "id": "cs_test_1",
            "object": "checkout.session",
            "payment_status": "paid",
            "payment_intent": payment_intent,
            "amount_total": amount,
            "currency": "usd",
            "metadata": {"user_id": str(user_id), "plan_id": plan_id},
        }},
    }).encode()


def adyen_batch(*items):
    return json.dumps({
        "live": "false",
        "notificationItems": [{"NotificationRequestItem": item} for item in items],
    }).encode()


def adyen_item(psp_reference, user_id, plan_id="premium", success="true"):
    return {
        "eventCode": "AUTHORISATION",
        "success": success,
        "pspReference": psp_reference,
        "merchantReference": f"marketup-{plan_id}-{user_id}-1700000000",
        "amount": {"currency": "SEK", "value": 49900},
    }


def adyen_signature(body, key=ADYEN_KEY):
    return base64.b64encode(hmac.new(key.encode(), body, hashlib.sha256).digest()).decode()


async def row_count(db, model):
    return await db.scalar(select(func.count()).select_from(model))


async def assert_nothing_written(db):
    assert await row_count(db, PaymentRecord) == 0
    assert await row_count(db, Subscription) == 0
    assert await row_count(db, ProcessedPaymentEvent) == 0


# --- Stripe ---

async def test_stripe_checkout_grants_subscription(client, db, user, stripe_signature):
    uid = user.id
    body = checkout_completed(uid)

    resp = await client.post("/webhooks/stripe", content=body, headers={"stripe-signature": stripe_signature(body)})

    assert resp.status_code == 200
    assert resp.json() == {"received": True}
    sub = await db.scalar(select(Subscription).where(Subscription.user_id == uid))
    assert sub.tier == Tier.STANDARD
    assert sub.status == SubscriptionStatus.ACTIVE
    record = await db.scalar(select(PaymentRecord).where(PaymentRecord.user_id == uid))
    assert "pi_123" in record.source_description
    assert record.status == PaymentStatus.APPROVED


async def test_stripe_redelivery_is_acknowledged_once(client, db, user, stripe_signature):
    uid = user.id
    body = checkout_completed(uid)

    for _ in range(3):
        resp = await client.post("/webhooks/stripe", content=body, headers={"stripe-signature": stripe_signature(body)})
        assert resp.status_code == 200

    assert await row_count(db, Subscription) == 1
    assert await row_count(db, PaymentRecord) == 1


async def test_stripe_tampered_body_is_rejected(client, db, user, stripe_signature):
    body = checkout_completed(user.id)
    signature = stripe_signature(body)
    tampered = body.replace(b'"pro"', b'"premium"')

    resp = await client.post("/webhooks/stripe", content=tampered, headers={"stripe-signature": signature})

    assert resp.status_code == 401
    await assert_nothing_written(db)


async def test_stripe_signature_from_other_secret_is_rejected(client, db, user, stripe_signature):
    body = checkout_completed(user.id)

    resp = await client.post(
        "/webhooks/stripe", content=body, headers={"stripe-signature": stripe_signature(body, secret="whsec_other")},
    )

    assert resp.status_code == 401
    await assert_nothing_written(db)


async def test_stripe_stale_signature_is_rejected(client, db, user, stripe_signature):
    body = checkout_completed(user.id)

    resp = await client.post(
        "/webhooks/stripe", content=body, headers={"stripe-signature": stripe_signature(body, timestamp=1_600_000_000)},
    )

    assert resp.status_code == 401
    await assert_nothing_written(db)


async def test_stripe_missing_signature_is_rejected(client, db, user):
    resp = await client.post("/webhooks/stripe", content=checkout_completed(user.id))

    assert resp.status_code == 401
    await assert_nothing_written(db)


async def test_stripe_without_configured_secret_rejects_everything(client, db, user, stripe_signature, monkeypatch):
    body = checkout_completed(user.id)
    monkeypatch.setattr(get_settings(), "stripe_webhook_secret", "")

    resp = await client.post("/webhooks/stripe", content=body, headers={"stripe-signature": stripe_signature(body)})

    assert resp.status_code == 401
    await assert_nothing_written(db)


async def test_stripe_ignored_event_type_is_acknowledged(client, db, stripe_signature):
    body = json.dumps({"id": "evt_2", "type": "customer.created", "data": {"object": {"id": "cus_1"}}}).encode()

    resp = await client.post("/webhooks/stripe", content=body, headers={"stripe-signature": stripe_signature(body)})

    assert resp.status_code == 200
    await assert_nothing_written(db)


async def test_stripe_invoice_resolves_user_by_email(client, db, user, stripe_signature):
    uid = user.id
    body = json.dumps({
        "id": "evt_3",
        "type": "invoice.payment_succeeded",
        "data": {"object": {
            "id": "in_1",
            "customer_email": "Alice@Example.com",
            "amount_paid": 4999,
            "currency": "usd",
            "lines": {"data": [{"price": {"id": "price_1", "lookup_key": "premium"}}]},
        }},
    }).encode()

    resp = await client.post("/webhooks/stripe", content=body, headers={"stripe-signature": stripe_signature(body)})

    assert resp.status_code == 200
    sub = await db.scalar(select(Subscription).where(Subscription.user_id == uid))
    assert sub.tier == Tier.PREMIUM


def payment_intent_event(user_id, event_type, intent_id="pi_retry", plan_id="premium"):
    return json.dumps({
        "id": f"evt_{event_type}",
        "type": event_type,
        "data": {"object": {
            "id": intent_id,
            "object": "payment_intent",
            "amount": 4999,
            "currency": "usd",
            "metadata": {"user_id": str(user_id), "plan_id": plan_id},
        }},
    }).encode()


async def test_stripe_success_after_declined_card_grants(client, db, user, stripe_signature):
    uid = user.id

    for event_type in ("payment_intent.payment_failed", "payment_intent.succeeded"):
        body = payment_intent_event(uid, event_type)
        resp = await client.post("/webhooks/stripe", content=body, headers={"stripe-signature": stripe_signature(body)})
        assert resp.status_code == 200

    sub = await db.scalar(select(Subscription).where(Subscription.user_id == uid))
    assert sub.status == SubscriptionStatus.ACTIVE
    assert sub.tier == Tier.PREMIUM
    statuses = (await db.execute(
        select(PaymentRecord.status).where(PaymentRecord.user_id == uid).order_by(PaymentRecord.id)
    )).scalars().all()
    assert statuses == [PaymentStatus.REJECTED, PaymentStatus.APPROVED]
    key = await db.scalar(
        select(ProcessedPaymentEvent).where(ProcessedPaymentEvent.external_transaction_id == "pi_retry")
    )
    assert key.outcome == "SUCCEEDED"
    assert key.subscription_id == sub.id

    # The checkout.session.completed that follows carries the same intent
    body = checkout_completed(uid, payment_intent="pi_retry")
    resp = await client.post("/webhooks/stripe", content=body, headers={"stripe-signature": stripe_signature(body)})

    assert resp.status_code == 200
    assert await row_count(db, Subscription) == 1
    assert await row_count(db, PaymentRecord) == 2


async def test_stripe_failure_after_success_changes_nothing(client, db, user, stripe_signature):
    uid = user.id

    for event_type in ("payment_intent.succeeded", "payment_intent.payment_failed"):
        body = payment_intent_event(uid, event_type)
        resp = await client.post("/webhooks/stripe", content=body, headers={"stripe-signature": stripe_signature(body)})
        assert resp.status_code == 200

    assert await row_count(db, Subscription) == 1
    assert await row_count(db, PaymentRecord) == 1


async def test_stripe_event_for_unknown_user_asks_for_retry(client, db, stripe_signature):
    body = checkout_completed(4242)

    resp = await client.post("/webhooks/stripe", content=body, headers={"stripe-signature": stripe_signature(body)})

    assert resp.status_code == 500
    await assert_nothing_written(db)


async def test_stripe_signed_garbage_asks_for_retry(client, db, stripe_signature):
    body = b"not json"

    resp = await client.post("/webhooks/stripe", content=body, headers={"stripe-signature": stripe_signature(body)})

    assert resp.status_code == 500
    await assert_nothing_written(db)


# --- Adyen ---

async def test_adyen_authorisation_grants_and_acknowledges(client, db, user):
    uid = user.id
    body = adyen_batch(adyen_item("PSP0001", uid))

    resp = await client.post("/webhooks/adyen", content=body, headers={"adyen-signature": f"v1={adyen_signature(body)}"})

    assert resp.status_code == 200
    assert resp.text == "[accepted]"
    sub = await db.scalar(select(Subscription).where(Subscription.user_id == uid))
    assert sub.tier == Tier.PREMIUM
    record = await db.scalar(select(PaymentRecord).where(PaymentRecord.user_id == uid))
    assert "PSP0001" in record.source_description
    assert "marketup-premium" in record.source_description
    assert record.currency == "SEK"


async def test_adyen_any_matching_candidate_is_accepted(client, db, user):
    body = adyen_batch(adyen_item("PSP0001", user.id))
    header = f"v0=bm90LWl0,v1={adyen_signature(body)}"

    resp = await client.post("/webhooks/adyen", content=body, headers={"adyen-signature": header})

    assert resp.status_code == 200
    assert await row_count(db, Subscription) == 1


async def test_adyen_wrong_key_is_rejected(client, db, user):
    body = adyen_batch(adyen_item("PSP0001", user.id))

    resp = await client.post(
        "/webhooks/adyen", content=body, headers={"adyen-signature": f"v1={adyen_signature(body, 'other-key')}"},
    )

    assert resp.status_code == 401
    await assert_nothing_written(db)


async def test_adyen_batch_applies_each_item(client, db, user, other_user):
    uid, other_id = user.id, other_user.id
    body = adyen_batch(
        adyen_item("PSP0001", uid, "basic"),
        adyen_item("PSP0002", other_id, "premium"),
        {"eventCode": "REPORT_AVAILABLE", "success": "true", "pspReference": "PSP0003"},
    )

    resp = await client.post("/webhooks/adyen", content=body, headers={"adyen-signature": adyen_signature(body)})

    assert resp.status_code == 200
    assert await row_count(db, Subscription) == 2
    assert await row_count(db, PaymentRecord) == 2


async def test_adyen_refused_payment_is_recorded_without_grant(client, db, user):
    uid = user.id
    body = adyen_batch(adyen_item("PSP0009", uid, success="false"))

    resp = await client.post("/webhooks/adyen", content=body, headers={"adyen-signature": adyen_signature(body)})

    assert resp.status_code == 200
    record = await db.scalar(select(PaymentRecord).where(PaymentRecord.user_id == uid))
    assert record.status == PaymentStatus.REJECTED
    assert await row_count(db, Subscription) == 0


@pytest.mark.parametrize("payload", [b'{"live": "false"}', b"[]"])
async def test_adyen_unusable_payload_asks_for_retry(client, db, payload):
    resp = await client.post("/webhooks/adyen", content=payload, headers={"adyen-signature": adyen_signature(payload)})

    assert resp.status_code == 500
    await assert_nothing_written(db)
