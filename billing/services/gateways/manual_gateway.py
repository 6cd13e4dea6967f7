"""Manual gateway: staff approve or reject bank transfers and receipts.

The trust boundary is the staff session, not a signature, so ``verify`` keeps the
base class behaviour of rejecting every push.
"""

from typing import Any

from billing.errors import MalformedPayload
from billing.models.enums import PaymentOutcome, Provider
from billing.services.gateways.base import PaymentGateway
from billing.services.normalizer import PaymentEvent, build_event, map_plan_to_tier

DECISIONS = {
    "approve": PaymentOutcome.SUCCEEDED,
    "reject": PaymentOutcome.FAILED,
}


def receipt_reference(payment_record_id: int) -> str:
    return f"receipt-{payment_record_id}"


class ManualGateway(PaymentGateway):
    provider = Provider.MANUAL

    def normalize(self, payload: dict[str, Any]) -> PaymentEvent:
        """Payload: a snapshot of the PENDING record plus ``decision`` and ``decided_by``."""
        decision = str(payload.get("decision", "")).lower()
        if decision not in DECISIONS:
            raise MalformedPayload(f"Unknown decision {payload.get('decision')!r}")
        record_id = payload.get("payment_record_id")
        if not record_id:
            raise MalformedPayload("Manual decision without payment record")

        plan_id = payload.get("plan_id")
        return build_event(
            provider=self.provider,
            external_transaction_id=receipt_reference(record_id),
            user_id=payload.get("user_id"),
            tier=map_plan_to_tier(plan_id),
            plan_id=plan_id,
            amount_minor_units=payload.get("amount_minor_units") or 0,
            currency=payload.get("currency") or "",
            outcome=DECISIONS[decision],
            raw_metadata={
                "payment_record_id": record_id,
                "decided_by": payload.get("decided_by"),
            },
        )
