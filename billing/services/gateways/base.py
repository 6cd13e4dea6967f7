"""PaymentGateway — common interface for the four payment rails.

Each gateway knows its provider's signing scheme, payload shape and
acknowledgement format, so the reconciliation orchestrator stays provider-agnostic.
"""

import json
import logging
from abc import ABC, abstractmethod
from collections.abc import Mapping
from typing import Any

from fastapi.responses import JSONResponse, Response

from billing.constants import PLAN_PRICES
from billing.errors import AuthenticationFailure, MalformedPayload
from billing.models.enums import Provider
from billing.services.normalizer import PaymentEvent

logger = logging.getLogger(__name__)


def parse_json_body(raw_body: bytes) -> dict[str, Any]:
    """Parse an already-authenticated request body."""
    try:
        payload = json.loads(raw_body)
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise MalformedPayload("Request body is not valid JSON") from e
    if not isinstance(payload, dict):
        raise MalformedPayload("Request body is not a JSON object")
    return payload


def plan_price(plan_id: str, currency: str) -> int:
    """Catalog price in minor units. Unknown plans cannot be purchased."""
    try:
        return PLAN_PRICES[plan_id.lower()][currency.upper()]
    except KeyError as e:
        raise MalformedPayload(f"Plan {plan_id!r} is not sold in {currency}") from e


class PaymentGateway(ABC):
    """Provider integration: verify, normalize, acknowledge (and optionally confirm)."""

    provider: Provider

    def verify(self, raw_body: bytes, headers: Mapping[str, str]) -> None:
        """Authenticate a push notification; raise AuthenticationFailure if not authentic.

        Gateways without a push transport reject everything.
        """
        logger.warning("%s has no push transport; rejecting notification", self.provider)
        raise AuthenticationFailure()

    def notifications(self, payload: dict[str, Any]) -> list[dict[str, Any]]:
        """Split a push body into individually normalizable items."""
        return [payload]

    @abstractmethod
    def normalize(self, payload: dict[str, Any]) -> PaymentEvent | None:
        """Reduce one provider payload to a PaymentEvent, or None if it is not a payment outcome."""
        ...

    def acknowledge(self, events_applied: int) -> Response:
        """Acknowledgement body the provider's push retry policy expects."""
        return JSONResponse({"received": True, "events": events_applied})

    async def confirm(self, external_reference: str) -> PaymentEvent:
        """Re-derive a payment's outcome from the provider's own authenticated API."""
        raise MalformedPayload(f"{self.provider} payments have no pull confirmation")

    async def start_checkout(self, user_id: int, email: str | None, plan_id: str) -> dict[str, Any]:
        """Create a provider-side payment bound to this user and catalog plan."""
        raise MalformedPayload(f"{self.provider} payments have no hosted checkout")
