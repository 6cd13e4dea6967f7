"""Card and wallet payments through Stripe: webhooks, checkout sessions, payment intents."""

import asyncio
import logging
from collections.abc import Mapping
from typing import Any

import stripe
from fastapi.responses import JSONResponse, Response

from billing.config import get_settings
from billing.constants import DEFAULT_CURRENCY, STRIPE_ACK_BODY, STRIPE_SIGNATURE_HEADER
from billing.errors import (
    AuthenticationFailure,
    MalformedPayload,
    PaymentNotConfirmed,
    ProviderNotConfigured,
    ProviderUnavailable,
)
from billing.models.enums import PaymentOutcome, Provider
from billing.services.gateways.base import PaymentGateway, plan_price
from billing.services.normalizer import PaymentEvent, build_event, map_plan_to_tier, parse_user_id

logger = logging.getLogger(__name__)

SESSION_EVENTS = {
    "checkout.session.completed",
    "checkout.session.async_payment_succeeded",
    "checkout.session.async_payment_failed",
}
INTENT_EVENTS = {"payment_intent.succeeded", "payment_intent.payment_failed"}
INVOICE_EVENTS = {"invoice.payment_succeeded", "invoice.paid"}


def init_stripe() -> None:
    """Set the Stripe API key from settings. Call once at startup."""
    settings = get_settings()
    stripe.api_key = settings.stripe_secret_key


def _as_dict(obj: Any) -> dict[str, Any]:
    """Plain dict view of a StripeObject (or a dict passed through untouched)."""
    if type(obj) is dict:
        return obj
    if hasattr(obj, "to_dict_recursive"):
        return obj.to_dict_recursive()
    if hasattr(obj, "to_dict"):
        return obj.to_dict()
    return dict(obj)


def _ref_id(value: Any) -> str | None:
    """Stripe references are either ids or expanded objects."""
    if isinstance(value, dict):
        return value.get("id")
    return value or None


def _metadata_user_id(metadata: Mapping[str, Any], fallback: Any = None) -> int | None:
    return parse_user_id(metadata.get("user_id") or metadata.get("userId") or fallback)


class CardWalletGateway(PaymentGateway):
    provider = Provider.STRIPE

    # --- Push ---

    def verify(self, raw_body: bytes, headers: Mapping[str, str]) -> None:
        """Check the Stripe-Signature header with the SDK, against the raw body."""
        secret = get_settings().stripe_webhook_secret
        signature = headers.get(STRIPE_SIGNATURE_HEADER)
        if not secret:
            logger.error("STRIPE_WEBHOOK_SECRET is not configured; rejecting webhook")
            raise AuthenticationFailure()
        if not signature:
            raise AuthenticationFailure()
        try:
            payload = raw_body.decode("utf-8")
            stripe.WebhookSignature.verify_header(
                payload, signature, secret, tolerance=stripe.Webhook.DEFAULT_TOLERANCE
            )
        except (UnicodeDecodeError, stripe.SignatureVerificationError) as e:
            raise AuthenticationFailure() from e

    def normalize(self, payload: dict[str, Any]) -> PaymentEvent | None:
        event_type = payload.get("type")
        obj = (payload.get("data") or {}).get("object")
        if not event_type or not isinstance(obj, dict):
            raise MalformedPayload("Stripe event without type or data.object")

        if event_type in SESSION_EVENTS:
            return self._from_checkout_session(obj, event_type)
        if event_type in INTENT_EVENTS:
            return self._from_payment_intent(obj, event_type)
        if event_type in INVOICE_EVENTS:
            return self._from_invoice(obj)

        logger.debug(f"Ignoring Stripe event type {event_type}")
        return None

    def acknowledge(self, events_applied: int) -> Response:
        return JSONResponse(STRIPE_ACK_BODY)

    # --- Payload shapes ---

    def _from_checkout_session(self, session: dict[str, Any], event_type: str | None = None) -> PaymentEvent | None:
        if event_type == "checkout.session.async_payment_failed":
            outcome = PaymentOutcome.FAILED
        elif session.get("payment_status") in ("paid", "no_payment_required"):
            outcome = PaymentOutcome.SUCCEEDED
        else:
            # Completed but unpaid (delayed methods): the async_payment_* event follows
            return None

        metadata = session.get("metadata") or {}
        plan_id = metadata.get("plan_id") or metadata.get("planId")
        customer_details = session.get("customer_details") or {}
        external_id = _ref_id(session.get("payment_intent")) or _ref_id(session.get("invoice")) or session.get("id")

        return build_event(
            provider=self.provider,
            external_transaction_id=external_id,
            user_id=_metadata_user_id(metadata, session.get("client_reference_id")),
            customer_email=session.get("customer_email") or customer_details.get("email"),
            tier=map_plan_to_tier(metadata.get("tier"), plan_id),
            plan_id=plan_id,
            amount_minor_units=session.get("amount_total") or 0,
            currency=session.get("currency") or DEFAULT_CURRENCY,
            outcome=outcome,
            raw_metadata={"checkout_session": session.get("id"), **metadata},
        )

    def _from_payment_intent(self, intent: dict[str, Any], event_type: str | None = None) -> PaymentEvent | None:
        metadata = intent.get("metadata") or {}
        plan_id = metadata.get("plan_id") or metadata.get("planId")
        if not plan_id and not metadata.get("tier"):
            # Not created by our checkout (e.g. an invoice's intent); the invoice event covers it
            return None

        if event_type == "payment_intent.payment_failed":
            outcome = PaymentOutcome.FAILED
        else:
            outcome = PaymentOutcome.SUCCEEDED

        return build_event(
            provider=self.provider,
            external_transaction_id=intent.get("id"),
            user_id=_metadata_user_id(metadata),
            customer_email=intent.get("receipt_email"),
            tier=map_plan_to_tier(metadata.get("tier"), plan_id),
            plan_id=plan_id,
            amount_minor_units=intent.get("amount_received") or intent.get("amount") or 0,
            currency=intent.get("currency") or DEFAULT_CURRENCY,
            outcome=outcome,
            raw_metadata=dict(metadata),
        )

    def _from_invoice(self, invoice: dict[str, Any]) -> PaymentEvent:
        lines = (invoice.get("lines") or {}).get("data") or [{}]
        line = lines[0] or {}
        price = line.get("price") or {}
        metadata = (
            invoice.get("metadata")
            or (invoice.get("subscription_details") or {}).get("metadata")
            or line.get("metadata")
            or {}
        )
        plan_id = metadata.get("plan_id") or metadata.get("planId") or price.get("lookup_key")

        return build_event(
            provider=self.provider,
            external_transaction_id=invoice.get("id"),
            user_id=_metadata_user_id(metadata),
            customer_email=invoice.get("customer_email"),
            tier=map_plan_to_tier(metadata.get("tier"), plan_id, price.get("id")),
            plan_id=plan_id,
            amount_minor_units=invoice.get("amount_paid") or 0,
            currency=invoice.get("currency") or DEFAULT_CURRENCY,
            outcome=PaymentOutcome.SUCCEEDED,
            raw_metadata=dict(metadata),
        )

    # --- Pull ---

    async def _retrieve(self, resource, reference: str) -> dict[str, Any]:
        if not get_settings().stripe_secret_key:
            raise ProviderNotConfigured("Stripe is not configured")
        try:
            obj = await asyncio.to_thread(resource.retrieve, reference)
        except stripe.InvalidRequestError as e:
            raise MalformedPayload(f"Unknown Stripe reference {reference}") from e
        except stripe.StripeError as e:
            logger.error("Stripe retrieve failed for %s: %s", reference, e)
            raise ProviderUnavailable("Stripe API error") from e
        return _as_dict(obj)

    async def confirm(self, external_reference: str) -> PaymentEvent:
        """Confirm a checkout session (``cs_``) or payment intent (``pi_``) with Stripe."""
        if external_reference.startswith("cs_"):
            session = await self._retrieve(stripe.checkout.Session, external_reference)
            if session.get("payment_status") not in ("paid", "no_payment_required"):
                raise PaymentNotConfirmed(f"Checkout session is {session.get('payment_status')}")
            event = self._from_checkout_session(session)
        elif external_reference.startswith("pi_"):
            intent = await self._retrieve(stripe.PaymentIntent, external_reference)
            if intent.get("status") != "succeeded":
                raise PaymentNotConfirmed(f"Payment intent is {intent.get('status')}")
            event = self._from_payment_intent(intent)
            if event is None:
                raise MalformedPayload("Missing plan information in payment metadata")
        else:
            raise MalformedPayload("Unrecognised Stripe reference")

        if event is None:
            raise PaymentNotConfirmed("Checkout session not paid")
        return event

    async def start_checkout(self, user_id: int, email: str | None, plan_id: str) -> dict[str, Any]:
        """Create a one-off Checkout session for 30 days of the plan."""
        settings = get_settings()
        if not settings.stripe_secret_key:
            raise ProviderNotConfigured("Stripe is not configured")

        amount = plan_price(plan_id, DEFAULT_CURRENCY)
        metadata = {
            "user_id": str(user_id),
            "plan_id": plan_id.lower(),
            "tier": map_plan_to_tier(plan_id).value,
        }
        try:
            session = await asyncio.to_thread(
                stripe.checkout.Session.create,
                mode="payment",
                line_items=[{
                    "price_data": {
                        "currency": DEFAULT_CURRENCY.lower(),
                        "unit_amount": amount,
                        "product_data": {"name": f"{plan_id.title()} plan - 30 days"},
                    },
                    "quantity": 1,
                }],
                customer_email=email,
                client_reference_id=str(user_id),
                success_url=f"{settings.app_url}/checkout?success=true&session_id={{CHECKOUT_SESSION_ID}}",
                cancel_url=f"{settings.app_url}/checkout?canceled=true",
                metadata=metadata,
                payment_intent_data={"metadata": metadata},
            )
        except stripe.StripeError as e:
            logger.error("Stripe checkout creation failed for user %s: %s", user_id, e)
            raise ProviderUnavailable("Stripe API error") from e
        return {"session_id": session.id, "url": session.url}
