"""Canonical payment event and the shared normalization helpers.

Every provider payload is reduced to a ``PaymentEvent`` before it reaches the
ledger. Provider-specific field extraction lives on the gateways; the tier table
and amount conversion live here so all four rails agree on them.
"""

import logging
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from billing.config import get_settings
from billing.constants import CURRENCY_EXPONENTS, PLAN_TIERS
from billing.errors import MalformedPayload, UnknownPlanIdentifier
from billing.models.enums import PaymentOutcome, Provider, Tier

logger = logging.getLogger(__name__)


class PaymentEvent(BaseModel):
    """Provider-agnostic description of one money movement. Never persisted."""

    model_config = ConfigDict(frozen=True)

    provider: Provider
    external_transaction_id: str = Field(min_length=1, max_length=128)
    user_id: int | None = None
    customer_email: str | None = None
    tier: Tier
    plan_id: str | None = None
    amount_minor_units: int = Field(ge=0)
    currency: str = Field(min_length=3, max_length=3)
    outcome: PaymentOutcome
    raw_metadata: dict[str, Any] = Field(default_factory=dict)

    @field_validator("currency")
    @classmethod
    def _upper_currency(cls, v: str) -> str:
        return v.upper()


def build_event(**fields: Any) -> PaymentEvent:
    """Construct a PaymentEvent, turning validation errors into MalformedPayload."""
    try:
        return PaymentEvent(**fields)
    except ValidationError as e:
        raise MalformedPayload(f"Invalid payment event: {e.error_count()} field error(s)") from e


def lookup_tier(plan_id: str | None) -> Tier:
    """Strict tier lookup; raises UnknownPlanIdentifier for anything off the table."""
    if not plan_id:
        raise UnknownPlanIdentifier("No plan identifier")
    key = plan_id.strip().lower()
    if key in PLAN_TIERS:
        return Tier(PLAN_TIERS[key])
    if key.upper() in Tier.__members__:
        return Tier(key.upper())
    raise UnknownPlanIdentifier(plan_id)


def map_plan_to_tier(*plan_ids: str | None) -> Tier:
    """Map the first recognised external plan identifier to a tier.

    Unknown identifiers fall back to the configured default tier: paid traffic is
    never rejected because of a plan name we do not know.
    """
    for plan_id in plan_ids:
        try:
            return lookup_tier(plan_id)
        except UnknownPlanIdentifier:
            continue

    default = Tier(get_settings().default_tier)
    logger.warning(
        "UNKNOWN PLAN IDENTIFIER %r: granting default tier %s. Add it to PLAN_TIERS.",
        [p for p in plan_ids if p], default,
    )
    return default


def currency_exponent(currency: str) -> int:
    return CURRENCY_EXPONENTS.get(currency.upper(), 2)


def to_minor_units(amount: str | int | Decimal, currency: str) -> int:
    """Convert a major-unit decimal amount to integer minor units.

    Rounds half up: ``"29.99"`` -> 2999, ``"9.995"`` -> 1000. Floats are rejected
    so binary rounding never leaks into money.
    """
    if isinstance(amount, float):
        raise MalformedPayload("Amounts must be given as decimal strings, not floats")
    try:
        value = Decimal(str(amount).strip())
    except (InvalidOperation, ValueError) as e:
        raise MalformedPayload(f"Invalid amount {amount!r}") from e
    if not value.is_finite() or value < 0:
        raise MalformedPayload(f"Invalid amount {amount!r}")

    scaled = value.scaleb(currency_exponent(currency))
    return int(scaled.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def to_major_units(amount_minor_units: int, currency: str) -> str:
    """Format minor units as the decimal string provider APIs expect."""
    exponent = currency_exponent(currency)
    value = Decimal(amount_minor_units).scaleb(-exponent)
    return f"{value:.{exponent}f}"


def parse_user_id(value: Any) -> int | None:
    """Parse a user id carried in provider metadata (always strings on the wire)."""
    if value is None or value == "":
        return None
    try:
        return int(str(value).strip())
    except ValueError as e:
        raise MalformedPayload(f"Invalid user id in metadata: {value!r}") from e


def normalize(provider: Provider | str, raw_payload: dict[str, Any]) -> PaymentEvent | None:
    """Reduce one provider payload to a PaymentEvent.

    Returns None for notification types that do not describe a payment outcome.
    """
    from billing.services.gateways.registry import get_gateway

    return get_gateway(Provider(provider)).normalize(raw_payload)
