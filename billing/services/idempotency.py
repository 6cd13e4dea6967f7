"""Idempotency guard: exactly-once application per (provider, external transaction id).

The check and the insert run inside the caller's ledger transaction, after the
per-user row lock has been taken. The unique constraint on
``processed_payment_events`` catches anything the lock cannot (e.g. the same
external id arriving for two different users).
"""

import logging
from enum import StrEnum

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from billing.errors import DuplicateEvent
from billing.models.enums import PaymentOutcome, Provider
from billing.models.processed_event import ProcessedPaymentEvent
from billing.utils import mask_reference

logger = logging.getLogger(__name__)


class GuardDecision(StrEnum):
    FRESH = "fresh"
    SUPERSEDES_FAILURE = "supersedes_failure"
    ALREADY_APPLIED = "already_applied"


async def find_processed_event(
    db: AsyncSession, provider: str, external_transaction_id: str
) -> ProcessedPaymentEvent | None:
    result = await db.execute(
        select(ProcessedPaymentEvent).where(
            ProcessedPaymentEvent.provider == provider,
            ProcessedPaymentEvent.external_transaction_id == external_transaction_id,
        )
    )
    return result.scalar_one_or_none()


async def check_and_record(
    db: AsyncSession,
    provider: str,
    external_transaction_id: str,
    user_id: int,
    outcome: PaymentOutcome | None = None,
) -> tuple[GuardDecision, ProcessedPaymentEvent | None]:
    """Record the key if it is new.

    Returns ``(FRESH, key_row)`` when the caller should apply the event, or
    ``(ALREADY_APPLIED, None)``. A concurrent insert that loses the race on the
    unique constraint raises DuplicateEvent; the session must then be rolled back.

    A key stored for a failed attempt does not block a later success for the
    same user (a declined card retried on the same Stripe payment intent):
    the existing row is returned with ``SUPERSEDES_FAILURE`` and the caller
    overwrites it. Manual decisions are final and never superseded.
    """
    existing = await find_processed_event(db, provider, external_transaction_id)
    if (
        existing
        and provider != Provider.MANUAL
        and existing.user_id == user_id
        and existing.outcome == PaymentOutcome.FAILED
        and outcome == PaymentOutcome.SUCCEEDED
    ):
        logger.info(
            "%s event %s succeeded after a failed attempt (first seen %s)",
            provider, mask_reference(external_transaction_id), existing.created_at,
        )
        return GuardDecision.SUPERSEDES_FAILURE, existing
    if existing:
        logger.info(
            "Duplicate %s event %s (first applied %s)",
            provider, mask_reference(external_transaction_id), existing.created_at,
        )
        return GuardDecision.ALREADY_APPLIED, None

    key = ProcessedPaymentEvent(
        provider=provider,
        external_transaction_id=external_transaction_id,
        user_id=user_id,
    )
    db.add(key)
    try:
        await db.flush()
    except IntegrityError as e:
        logger.info(
            "Concurrent duplicate %s event %s lost the insert race",
            provider, mask_reference(external_transaction_id),
        )
        raise DuplicateEvent(f"{provider}:{external_transaction_id}") from e
    return GuardDecision.FRESH, key
