"""Order/capture gateway (PayPal Orders v2).

There is no push transport: the browser returns with an order id after approval
and we capture it server-side, so the capture response is the authenticated
source of truth.
"""

import logging
import re
from typing import Any

from billing.config import get_settings
from billing.constants import (
    DEFAULT_CURRENCY,
    PAYPAL_BRAND_NAME,
    PAYPAL_ORDERS_PATH,
    PAYPAL_TOKEN_PATH,
)
from billing.errors import (
    MalformedPayload,
    PaymentNotConfirmed,
    ProviderNotConfigured,
    ProviderUnavailable,
)
from billing.http_client import provider_json, send_provider_request
from billing.models.enums import PaymentOutcome, Provider
from billing.services.gateways.base import PaymentGateway, plan_price
from billing.services.normalizer import (
    PaymentEvent,
    build_event,
    map_plan_to_tier,
    parse_user_id,
    to_major_units,
    to_minor_units,
)

logger = logging.getLogger(__name__)

ORDER_ID_RE = re.compile(r"^[A-Z0-9]{8,32}$")

CAPTURE_FAILED = {"DECLINED", "FAILED"}


def parse_custom_id(custom_id: str | None) -> tuple[int | None, str | None]:
    """``"<user_id>:<plan_id>"`` as set by create_order."""
    if not custom_id:
        return None, None
    user_part, _, plan_part = custom_id.partition(":")
    return parse_user_id(user_part), plan_part or None


class OrderCaptureGateway(PaymentGateway):
    provider = Provider.PAYPAL

    def _credentials(self) -> tuple[str, str]:
        settings = get_settings()
        if not settings.paypal_client_id or not settings.paypal_client_secret:
            raise ProviderNotConfigured("PayPal is not configured")
        return settings.paypal_client_id, settings.paypal_client_secret

    async def get_access_token(self) -> str:
        """Client-credentials token for the Orders API."""
        client_id, client_secret = self._credentials()
        resp = await send_provider_request(
            "PayPal",
            "POST",
            f"{get_settings().paypal_api_base}{PAYPAL_TOKEN_PATH}",
            data={"grant_type": "client_credentials"},
            auth=(client_id, client_secret),
            headers={"Content-Type": "application/x-www-form-urlencoded"},
        )
        if resp.status_code != 200:
            logger.error("PayPal token request failed with %s", resp.status_code)
            raise ProviderUnavailable("PayPal authentication failed")
        token = provider_json("PayPal", resp, "token").get("access_token")
        if not token:
            logger.error("PayPal token response has no access_token")
            raise ProviderUnavailable("PayPal authentication failed")
        return token

    async def _orders_request(self, method: str, path: str = "", **kwargs):
        token = await self.get_access_token()
        headers = {
            "Authorization": f"Bearer {token}",
            "Content-Type": "application/json",
            "Prefer": "return=representation",
        }
        url = f"{get_settings().paypal_api_base}{PAYPAL_ORDERS_PATH}{path}"
        return await send_provider_request("PayPal", method, url, headers=headers, **kwargs)

    # --- Payload shape ---

    def normalize(self, payload: dict[str, Any]) -> PaymentEvent | None:
        """Reduce a captured order to a PaymentEvent.

        Raises PaymentNotConfirmed while the capture is still pending.
        """
        units = payload.get("purchase_units") or []
        if not units:
            raise MalformedPayload("PayPal order has no purchase units")
        unit = units[0]
        captures = (unit.get("payments") or {}).get("captures") or []
        if not captures:
            raise PaymentNotConfirmed(f"PayPal order is {payload.get('status')}")
        capture = captures[0]

        status = capture.get("status")
        if status == "COMPLETED":
            outcome = PaymentOutcome.SUCCEEDED
        elif status in CAPTURE_FAILED:
            outcome = PaymentOutcome.FAILED
        else:
            raise PaymentNotConfirmed(f"PayPal capture is {status}")

        user_id, plan_id = parse_custom_id(unit.get("custom_id") or capture.get("custom_id"))
        amount = capture.get("amount") or unit.get("amount") or {}
        currency = amount.get("currency_code") or DEFAULT_CURRENCY
        payer = payload.get("payer") or {}

        return build_event(
            provider=self.provider,
            external_transaction_id=capture.get("id"),
            user_id=user_id,
            customer_email=payer.get("email_address"),
            tier=map_plan_to_tier(plan_id),
            plan_id=plan_id,
            amount_minor_units=to_minor_units(amount.get("value", "0"), currency),
            currency=currency,
            outcome=outcome,
            raw_metadata={"order_id": payload.get("id")},
        )

    # --- Pull ---

    async def confirm(self, external_reference: str) -> PaymentEvent:
        """Capture an approved order (or read back one captured earlier)."""
        if not ORDER_ID_RE.match(external_reference):
            raise MalformedPayload("Invalid PayPal order id")

        resp = await self._orders_request("POST", f"/{external_reference}/capture", json={})
        if resp.status_code == 422:
            details = provider_json("PayPal", resp, "capture").get("details") or []
            issues = {d.get("issue") for d in details if isinstance(d, dict)}
            if "ORDER_ALREADY_CAPTURED" in issues:
                # Second confirm for the same order; the guard makes it a no-op
                resp = await self._orders_request("GET", f"/{external_reference}")
            else:
                logger.info("PayPal order %s not capturable: %s", external_reference, issues)
                raise PaymentNotConfirmed(f"PayPal order not capturable: {', '.join(sorted(i for i in issues if i))}")

        if resp.status_code == 404:
            raise MalformedPayload("Unknown PayPal order")
        if resp.status_code not in (200, 201):
            logger.error("PayPal capture for %s returned %s", external_reference, resp.status_code)
            raise ProviderUnavailable(f"PayPal returned {resp.status_code}")

        return self.normalize(provider_json("PayPal", resp, "capture"))

    async def start_checkout(self, user_id: int, email: str | None, plan_id: str) -> dict[str, Any]:
        """Create a CAPTURE order for the plan; the buyer approves it on PayPal."""
        settings = get_settings()
        amount = plan_price(plan_id, DEFAULT_CURRENCY)
        body = {
            "intent": "CAPTURE",
            "purchase_units": [{
                "custom_id": f"{user_id}:{plan_id.lower()}",
                "description": f"{plan_id.title()} plan - 30 days",
                "amount": {
                    "currency_code": DEFAULT_CURRENCY,
                    "value": to_major_units(amount, DEFAULT_CURRENCY),
                },
            }],
            "application_context": {
                "brand_name": PAYPAL_BRAND_NAME,
                "user_action": "PAY_NOW",
                "return_url": f"{settings.app_url}/checkout?provider=paypal",
                "cancel_url": f"{settings.app_url}/checkout?canceled=true",
            },
        }
        resp = await self._orders_request("POST", json=body)
        if resp.status_code not in (200, 201):
            logger.error("PayPal order creation for user %s returned %s", user_id, resp.status_code)
            raise ProviderUnavailable(f"PayPal returned {resp.status_code}")

        order = provider_json("PayPal", resp, "order")
        if not order.get("id"):
            raise ProviderUnavailable("PayPal order response has no id")
        approve_url = next(
            (link["href"] for link in order.get("links", []) if link.get("rel") in ("approve", "payer-action")),
            None,
        )
        return {"order_id": order["id"], "url": approve_url}
