"""Redirect-local gateway: Swish payments through Adyen Checkout.

Push notifications arrive in batches signed with a shared HMAC key; the redirect
back from Swish can also be confirmed with ``/payments/details``.
"""

import json
import logging
import time
from collections.abc import Mapping
from typing import Any

from fastapi.responses import PlainTextResponse, Response

from billing.config import get_settings
from billing.constants import ADYEN_ACK_BODY, ADYEN_REFERENCE_PREFIX, ADYEN_SIGNATURE_HEADER, SWISH_CURRENCY
from billing.errors import MalformedPayload, PaymentNotConfirmed, ProviderNotConfigured, ProviderUnavailable
from billing.http_client import provider_json, send_provider_request
from billing.models.enums import PaymentOutcome, Provider
from billing.services.crypto import require_hmac_signature
from billing.services.gateways.base import PaymentGateway, plan_price
from billing.services.normalizer import PaymentEvent, build_event, map_plan_to_tier, parse_user_id

logger = logging.getLogger(__name__)

RESULT_SUCCEEDED = {"Authorised"}
RESULT_FAILED = {"Refused", "Cancelled", "Error"}


def build_merchant_reference(plan_id: str, user_id: int) -> str:
    return f"{ADYEN_REFERENCE_PREFIX}-{plan_id.lower()}-{user_id}-{int(time.time())}"


def parse_merchant_reference(reference: str | None) -> tuple[str | None, int | None]:
    """``marketup-<plan>-<user>-<ts>`` -> (plan_id, user_id). Anything else -> (None, None)."""
    if not reference:
        return None, None
    parts = reference.split("-")
    if len(parts) != 4 or parts[0] != ADYEN_REFERENCE_PREFIX:
        return None, None
    try:
        return parts[1] or None, parse_user_id(parts[2])
    except MalformedPayload:
        return None, None


def _extract_metadata(item: Mapping[str, Any]) -> dict[str, Any]:
    """Metadata arrives as a JSON string, a dict, or flattened ``metadata.*`` keys."""
    additional = item.get("additionalData") or {}
    metadata = additional.get("metadata")
    if isinstance(metadata, str):
        try:
            metadata = json.loads(metadata)
        except json.JSONDecodeError:
            logger.warning("Unparseable Adyen metadata for %s", item.get("pspReference"))
            metadata = None
    if isinstance(metadata, dict):
        return metadata

    flattened = {}
    for key, value in additional.items():
        if key.startswith("metadata."):
            flattened[key.removeprefix("metadata.")] = value
    for key, value in (item.get("metadata") or {}).items():
        flattened.setdefault(key, value)
    return flattened


class RedirectLocalGateway(PaymentGateway):
    provider = Provider.ADYEN

    # --- Push ---

    def verify(self, raw_body: bytes, headers: Mapping[str, str]) -> None:
        require_hmac_signature(raw_body, headers.get(ADYEN_SIGNATURE_HEADER), get_settings().adyen_hmac_key)

    def notifications(self, payload: dict[str, Any]) -> list[dict[str, Any]]:
        items = payload.get("notificationItems")
        if not isinstance(items, list):
            raise MalformedPayload("Adyen notification without notificationItems")
        result = []
        for item in items:
            request_item = item.get("NotificationRequestItem") if isinstance(item, dict) else None
            if not isinstance(request_item, dict):
                raise MalformedPayload("Adyen notification item without NotificationRequestItem")
            result.append(request_item)
        return result

    def normalize(self, payload: dict[str, Any]) -> PaymentEvent | None:
        event_code = payload.get("eventCode")
        if event_code != "AUTHORISATION":
            logger.debug(f"Ignoring Adyen event code {event_code}")
            return None

        success = str(payload.get("success", "")).lower()
        if success not in ("true", "false"):
            raise MalformedPayload(f"Adyen success flag {payload.get('success')!r}")
        outcome = PaymentOutcome.SUCCEEDED if success == "true" else PaymentOutcome.FAILED

        metadata = _extract_metadata(payload)
        merchant_reference = payload.get("merchantReference")
        ref_plan, ref_user = parse_merchant_reference(merchant_reference)
        plan_id = metadata.get("plan_id") or metadata.get("planId") or ref_plan
        user_id = parse_user_id(metadata.get("user_id") or metadata.get("userId")) or ref_user
        amount = payload.get("amount") or {}
        additional = payload.get("additionalData") or {}

        return build_event(
            provider=self.provider,
            external_transaction_id=payload.get("pspReference"),
            user_id=user_id,
            customer_email=additional.get("shopperEmail") or payload.get("shopperEmail"),
            tier=map_plan_to_tier(metadata.get("tier"), plan_id),
            plan_id=plan_id,
            amount_minor_units=amount.get("value") or 0,
            currency=amount.get("currency") or SWISH_CURRENCY,
            outcome=outcome,
            raw_metadata={**metadata, "merchant_reference": merchant_reference},
        )

    def acknowledge(self, events_applied: int) -> Response:
        return PlainTextResponse(ADYEN_ACK_BODY)

    # --- Pull ---

    def _api_key(self) -> str:
        settings = get_settings()
        if not settings.adyen_api_key or not settings.adyen_merchant_account:
            raise ProviderNotConfigured("Adyen is not configured")
        return settings.adyen_api_key

    async def confirm(self, external_reference: str) -> PaymentEvent:
        """Submit the redirect result to ``/payments/details`` and read the outcome."""
        api_key = self._api_key()
        resp = await send_provider_request(
            "Adyen",
            "POST",
            f"{get_settings().adyen_checkout_url}/payments/details",
            json={"details": {"redirectResult": external_reference}},
            headers={"X-API-Key": api_key},
        )
        if 400 <= resp.status_code < 500:
            logger.info("Adyen rejected redirect result (%s)", resp.status_code)
            raise MalformedPayload("Unknown or expired Adyen redirect result")

        data = provider_json("Adyen", resp, "payment details")
        result_code = data.get("resultCode")
        if result_code in RESULT_SUCCEEDED:
            success = "true"
        elif result_code in RESULT_FAILED:
            success = "false"
        else:
            raise PaymentNotConfirmed(f"Adyen payment is {result_code}")

        return self.normalize({
            "eventCode": "AUTHORISATION",
            "success": success,
            "pspReference": data.get("pspReference"),
            "merchantReference": data.get("merchantReference"),
            "amount": data.get("amount"),
            "additionalData": data.get("additionalData") or {},
            "metadata": data.get("metadata") or {},
            "shopperEmail": data.get("shopperEmail"),
        })

    async def start_checkout(self, user_id: int, email: str | None, plan_id: str) -> dict[str, Any]:
        """Start a Swish payment; the shopper is redirected to the Swish app."""
        api_key = self._api_key()
        settings = get_settings()
        amount = plan_price(plan_id, SWISH_CURRENCY)
        reference = build_merchant_reference(plan_id, user_id)
        body = {
            "merchantAccount": settings.adyen_merchant_account,
            "amount": {"currency": SWISH_CURRENCY, "value": amount},
            "reference": reference,
            "paymentMethod": {"type": "swish"},
            "shopperEmail": email,
            "countryCode": "SE",
            "returnUrl": f"{settings.app_url}/checkout?provider=adyen",
            "metadata": {
                "user_id": str(user_id),
                "plan_id": plan_id.lower(),
                "tier": map_plan_to_tier(plan_id).value,
            },
        }
        resp = await send_provider_request(
            "Adyen", "POST", f"{settings.adyen_checkout_url}/payments", json=body, headers={"X-API-Key": api_key},
        )
        if resp.status_code not in (200, 201):
            logger.error("Adyen payment creation for user %s returned %s", user_id, resp.status_code)
            raise ProviderUnavailable(f"Adyen returned {resp.status_code}")

        data = provider_json("Adyen", resp, "payment")
        action = data.get("action") or {}
        return {
            "reference": reference,
            "psp_reference": data.get("pspReference"),
            "url": action.get("url"),
            "action": action or None,
        }
