"""Reconciliation orchestrator — one pipeline for push, pull and manual payments.

verify -> normalize -> resolve user -> guard + ledger -> acknowledge. The gateway
supplies the provider-specific parts; the response policy (which failures make a
provider retry, which a user sees) lives here so every rail behaves the same.
"""

import logging
from collections.abc import Mapping
from typing import Any

from fastapi import HTTPException
from fastapi.responses import JSONResponse, Response
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from billing.constants import NOT_CONFIRMED_MESSAGE
from billing.errors import (
    AuthenticationFailure,
    MalformedPayload,
    PaymentNotConfirmed,
    ProviderNotConfigured,
    ProviderUnavailable,
    ReferenceOwnershipError,
    TransientStorageFailure,
)
from billing.models.enums import PaymentOutcome, Provider
from billing.models.payment_record import PaymentRecord
from billing.models.user import User
from billing.services.gateways.base import PaymentGateway, parse_json_body
from billing.services.gateways.registry import get_gateway
from billing.services.normalizer import PaymentEvent
from billing.services.subscription_service import LedgerResult, apply_payment_event
from billing.utils import mask_reference

logger = logging.getLogger(__name__)


async def resolve_user(db: AsyncSession, event: PaymentEvent) -> PaymentEvent:
    """Fill in ``user_id`` from the customer email when metadata did not carry it."""
    if event.user_id is not None:
        return event
    if not event.customer_email:
        raise MalformedPayload(
            f"{event.provider} event {mask_reference(event.external_transaction_id)} has no user reference"
        )

    result = await db.execute(
        select(User.id).where(func.lower(User.email) == event.customer_email.strip().lower())
    )
    user_id = result.scalar_one_or_none()
    if user_id is None:
        raise MalformedPayload(
            f"No user for {event.provider} event {mask_reference(event.external_transaction_id)}"
        )
    return event.model_copy(update={"user_id": user_id})


def bind_to_caller(event: PaymentEvent, user_id: int, email: str | None) -> PaymentEvent:
    """Make sure a pulled payment belongs to the user asking for it."""
    if event.user_id is not None:
        if event.user_id != user_id:
            raise ReferenceOwnershipError()
        return event
    if event.customer_email and email and event.customer_email.strip().lower() == email.strip().lower():
        return event.model_copy(update={"user_id": user_id})
    raise ReferenceOwnershipError()


class ReconciliationOrchestrator:
    """Drive one gateway through the shared pipeline."""

    def __init__(self, gateway: PaymentGateway):
        self.gateway = gateway

    @classmethod
    def for_provider(cls, provider: Provider | str) -> "ReconciliationOrchestrator":
        return cls(get_gateway(provider))

    @property
    def provider(self) -> Provider:
        return self.gateway.provider

    # --- Push ---

    async def handle_push(self, db: AsyncSession, raw_body: bytes, headers: Mapping[str, str]) -> Response:
        """Process a signed provider notification.

        401 without touching storage if the signature does not verify. After
        verification, anything we could not apply answers 500 so the provider
        redelivers; redeliveries of applied events are acknowledged.
        """
        try:
            self.gateway.verify(raw_body, headers)
        except AuthenticationFailure as e:
            logger.warning("Rejected %s notification: %s", self.provider, e)
            return JSONResponse({"detail": str(e)}, status_code=401)

        applied = 0
        try:
            payload = parse_json_body(raw_body)
            for item in self.gateway.notifications(payload):
                event = self.gateway.normalize(item)
                if event is None:
                    continue
                event = await resolve_user(db, event)
                result = await apply_payment_event(db, event)
                if not result.duplicate:
                    applied += 1
        except MalformedPayload as e:
            logger.error("Unprocessable %s notification: %s", self.provider, e, exc_info=True)
            return JSONResponse({"detail": "Notification could not be processed"}, status_code=500)
        except TransientStorageFailure as e:
            logger.error("Storage failure for %s notification: %s", self.provider, e, exc_info=True)
            return JSONResponse({"detail": "Notification could not be stored"}, status_code=500)

        return self.gateway.acknowledge(applied)

    # --- Pull ---

    async def confirm(self, db: AsyncSession, user: User, external_reference: str) -> LedgerResult:
        """Re-query the provider for a payment the browser says completed, then apply it."""
        # The ledger may roll the session back, expiring ``user``
        user_id, email = user.id, user.email
        reference = mask_reference(external_reference)

        try:
            event = await self.gateway.confirm(external_reference)
            event = bind_to_caller(event, user_id, email)
            result = await apply_payment_event(db, event)
        except ReferenceOwnershipError as e:
            logger.warning("User %s tried to confirm %s payment %s: %s", user_id, self.provider, reference, e)
            raise HTTPException(status_code=403, detail=str(e))
        except PaymentNotConfirmed as e:
            logger.info("%s payment %s not confirmed for user %s: %s", self.provider, reference, user_id, e)
            raise HTTPException(status_code=400, detail=NOT_CONFIRMED_MESSAGE)
        except MalformedPayload as e:
            logger.error("Malformed %s confirmation %s: %s", self.provider, reference, e, exc_info=True)
            raise HTTPException(status_code=400, detail="Invalid payment reference")
        except ProviderNotConfigured as e:
            logger.error("%s confirmation unavailable: %s", self.provider, e)
            raise HTTPException(status_code=503, detail=f"{self.provider} payments are not configured")
        except ProviderUnavailable:
            raise HTTPException(status_code=502, detail=NOT_CONFIRMED_MESSAGE)
        except TransientStorageFailure:
            raise HTTPException(status_code=503, detail=NOT_CONFIRMED_MESSAGE)

        if result.outcome != PaymentOutcome.SUCCEEDED:
            raise HTTPException(status_code=400, detail="Payment was not completed")
        return result

    async def start_checkout(self, user: User, plan_id: str) -> dict[str, Any]:
        try:
            return await self.gateway.start_checkout(user.id, user.email, plan_id)
        except MalformedPayload as e:
            raise HTTPException(status_code=400, detail=str(e))
        except ProviderNotConfigured as e:
            logger.error("%s checkout unavailable: %s", self.provider, e)
            raise HTTPException(status_code=503, detail=f"{self.provider} payments are not configured")
        except ProviderUnavailable:
            raise HTTPException(status_code=502, detail="Payment provider unavailable, try again")

    # --- Manual ---

    async def decide_manual(
        self, db: AsyncSession, payment_record_id: int, decision: str, staff: User
    ) -> LedgerResult:
        """Apply a staff approve/reject decision to a manual payment.

        No signature step: the staff session is the trust boundary. A repeated
        decision on the same record is a duplicate and grants nothing.
        """
        staff_id = staff.id
        record = await db.get(PaymentRecord, payment_record_id)
        if not record or record.provider != Provider.MANUAL:
            raise HTTPException(status_code=404, detail="Manual payment not found")

        snapshot = {
            "payment_record_id": record.id,
            "user_id": record.user_id,
            "plan_id": record.plan_id,
            "amount_minor_units": record.amount_minor_units,
            "currency": record.currency,
            "decision": decision,
            "decided_by": staff_id,
        }
        try:
            event = self.gateway.normalize(snapshot)
            result = await apply_payment_event(db, event)
        except MalformedPayload as e:
            raise HTTPException(status_code=400, detail=str(e))
        except TransientStorageFailure:
            raise HTTPException(status_code=503, detail="Decision could not be saved, try again")

        logger.info(
            "Staff %s %s manual payment %s%s",
            staff_id, decision, payment_record_id, " (already decided)" if result.duplicate else "",
        )
        return result
