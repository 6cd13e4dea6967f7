"""Subscription ledger — the only code that writes subscription and payment state.

Every payment event is applied in one transaction:

1. lock the user row (serializes concurrent events for the same user across processes),
2. run the idempotency guard,
3. record the payment,
4. on success cancel the ACTIVE subscription and insert the new one.

Subscriptions are never updated in place to change tier; a new row is inserted so
"what tier did the user have on day X" stays a range query.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta

from sqlalchemy import func, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from billing.constants import SUBSCRIPTION_PERIOD_DAYS
from billing.errors import DuplicateEvent, MalformedPayload, TransientStorageFailure
from billing.models.enums import (
    PaymentOutcome,
    PaymentStatus,
    Provider,
    SubscriptionStatus,
)
from billing.models.payment_record import PaymentRecord
from billing.models.processed_event import ProcessedPaymentEvent
from billing.models.subscription import Subscription
from billing.models.user import User
from billing.services.idempotency import GuardDecision, check_and_record, find_processed_event
from billing.services.normalizer import PaymentEvent
from billing.utils import mask_reference, now_utc

logger = logging.getLogger(__name__)

PROVIDER_LABELS = {
    Provider.STRIPE: "Stripe",
    Provider.PAYPAL: "PayPal",
    Provider.ADYEN: "Adyen Swish",
    Provider.MANUAL: "Manual",
}


@dataclass
class LedgerResult:
    """Outcome of applying one payment event."""

    duplicate: bool
    subscription: Subscription | None = None
    payment_record: PaymentRecord | None = None
    outcome: PaymentOutcome | None = None

    @property
    def granted(self) -> bool:
        return not self.duplicate and self.outcome == PaymentOutcome.SUCCEEDED


def describe_source(event: PaymentEvent) -> str:
    """Audit line for a PaymentRecord. Always contains the external id verbatim."""
    lines = [
        f"{PROVIDER_LABELS.get(event.provider, event.provider)} payment",
        f"Plan: {event.plan_id or event.tier.lower()}",
        f"Reference: {event.external_transaction_id}",
    ]
    merchant_reference = event.raw_metadata.get("merchant_reference")
    if merchant_reference:
        lines.append(f"Merchant Reference: {merchant_reference}")
    return "\n".join(lines)


async def _lock_user(db: AsyncSession, user_id: int) -> User:
    result = await db.execute(select(User).where(User.id == user_id).with_for_update())
    user = result.scalar_one_or_none()
    if not user:
        raise MalformedPayload(f"Unknown user {user_id}")
    return user


async def _record_payment(db: AsyncSession, event: PaymentEvent) -> PaymentRecord:
    status = PaymentStatus.APPROVED if event.outcome == PaymentOutcome.SUCCEEDED else PaymentStatus.REJECTED

    if event.provider == Provider.MANUAL:
        # Manual payments already exist as PENDING rows; the staff decision settles them.
        record_id = event.raw_metadata.get("payment_record_id")
        result = await db.execute(
            select(PaymentRecord)
            .where(PaymentRecord.id == record_id, PaymentRecord.user_id == event.user_id)
            .with_for_update()
        )
        record = result.scalar_one_or_none()
        if not record:
            raise MalformedPayload(f"Manual payment record {record_id} not found")
        if record.status != PaymentStatus.PENDING:
            raise DuplicateEvent(f"manual:{record_id} already {record.status}")
        record.status = status
        record.decided_at = now_utc()
        record.external_transaction_id = event.external_transaction_id
        record.source_description = f"{record.source_description}\nReference: {event.external_transaction_id}"
        await db.flush()
        return record

    record = PaymentRecord(
        user_id=event.user_id,
        provider=event.provider,
        external_transaction_id=event.external_transaction_id,
        plan_id=event.plan_id,
        amount_minor_units=event.amount_minor_units,
        currency=event.currency,
        status=status,
        source_description=describe_source(event),
        decided_at=now_utc(),
    )
    db.add(record)
    await db.flush()
    return record


async def _grant_subscription(db: AsyncSession, event: PaymentEvent, record: PaymentRecord) -> Subscription:
    now = now_utc()
    await db.execute(
        update(Subscription)
        .where(
            Subscription.user_id == event.user_id,
            Subscription.status == SubscriptionStatus.ACTIVE,
        )
        .values(status=SubscriptionStatus.CANCELED, cancel_at_period_end=True, updated_at=now)
    )
    subscription = Subscription(
        user_id=event.user_id,
        tier=event.tier,
        status=SubscriptionStatus.ACTIVE,
        period_start=now,
        period_end=now + timedelta(days=SUBSCRIPTION_PERIOD_DAYS),
        cancel_at_period_end=False,
        payment_record_id=record.id,
    )
    db.add(subscription)
    await db.flush()
    return subscription


async def _duplicate_result(db: AsyncSession, event: PaymentEvent) -> LedgerResult:
    record = None
    key = await find_processed_event(db, event.provider, event.external_transaction_id)
    if key and key.payment_record_id:
        record = await db.get(PaymentRecord, key.payment_record_id)
    subscription = await get_active_subscription(db, event.user_id)
    # Report what was recorded, not what this redelivery claims
    outcome = PaymentOutcome(key.outcome) if key and key.outcome else event.outcome
    return LedgerResult(duplicate=True, subscription=subscription, payment_record=record, outcome=outcome)


async def apply_payment_event(db: AsyncSession, event: PaymentEvent) -> LedgerResult:
    """Apply a canonical payment event exactly once.

    Raises MalformedPayload (nothing written) or TransientStorageFailure (rolled
    back, safe to retry). Redelivery returns a duplicate result with the current
    ACTIVE subscription and the recorded outcome, and performs no writes. A
    success after a recorded failure of the same transaction is applied.
    """
    if event.user_id is None:
        raise MalformedPayload("Payment event has no resolved user")

    try:
        await _lock_user(db, event.user_id)
        decision, key = await check_and_record(
            db, event.provider, event.external_transaction_id, event.user_id, event.outcome
        )
        if decision == GuardDecision.ALREADY_APPLIED:
            await db.rollback()
            return await _duplicate_result(db, event)

        record = await _record_payment(db, event)
        subscription = None
        if event.outcome == PaymentOutcome.SUCCEEDED:
            subscription = await _grant_subscription(db, event, record)

        key.outcome = event.outcome
        key.payment_record_id = record.id
        key.subscription_id = subscription.id if subscription else None
        await db.commit()
    except DuplicateEvent:
        await db.rollback()
        return await _duplicate_result(db, event)
    except MalformedPayload:
        await db.rollback()
        raise
    except SQLAlchemyError as e:
        await db.rollback()
        logger.error(
            "Ledger transaction failed for %s event %s (user %s): %s",
            event.provider, mask_reference(event.external_transaction_id), event.user_id, e,
            exc_info=True,
        )
        raise TransientStorageFailure("Ledger transaction rolled back") from e

    if subscription:
        logger.info(
            "Granted %s to user %s via %s %s (subscription %s, ends %s)",
            subscription.tier, event.user_id, event.provider,
            mask_reference(event.external_transaction_id), subscription.id, subscription.period_end,
        )
    else:
        logger.info(
            "Recorded failed %s payment %s for user %s",
            event.provider, mask_reference(event.external_transaction_id), event.user_id,
        )
    return LedgerResult(duplicate=False, subscription=subscription, payment_record=record, outcome=event.outcome)


# --- Reads ---


async def get_active_subscription(db: AsyncSession, user_id: int) -> Subscription | None:
    """The user's current ACTIVE, unexpired subscription, or None."""
    result = await db.execute(
        select(Subscription)
        .where(
            Subscription.user_id == user_id,
            Subscription.status == SubscriptionStatus.ACTIVE,
            Subscription.period_end > now_utc(),
        )
        .order_by(Subscription.period_end.desc())
        .limit(1)
    )
    return result.scalar_one_or_none()


async def get_subscription_at(db: AsyncSession, user_id: int, at: datetime) -> Subscription | None:
    """The subscription whose period covered ``at`` (latest grant wins)."""
    result = await db.execute(
        select(Subscription)
        .where(
            Subscription.user_id == user_id,
            Subscription.period_start <= at,
            Subscription.period_end > at,
        )
        .order_by(Subscription.period_start.desc(), Subscription.id.desc())
        .limit(1)
    )
    return result.scalar_one_or_none()


async def list_subscription_history(db: AsyncSession, user_id: int) -> list[Subscription]:
    result = await db.execute(
        select(Subscription)
        .where(Subscription.user_id == user_id)
        .order_by(Subscription.period_start.desc(), Subscription.id.desc())
    )
    return list(result.scalars().all())


async def list_payment_records(
    db: AsyncSession,
    *,
    user_id: int | None = None,
    status: str | None = None,
    provider: str | None = None,
    offset: int = 0,
    limit: int = 20,
) -> tuple[list[PaymentRecord], int]:
    """Page through payment records, newest first. Returns (rows, total)."""
    conditions = []
    if user_id is not None:
        conditions.append(PaymentRecord.user_id == user_id)
    if status:
        conditions.append(PaymentRecord.status == status.upper())
    if provider:
        conditions.append(PaymentRecord.provider == provider.lower())

    total = await db.scalar(
        select(func.count()).select_from(PaymentRecord).where(*conditions)
    ) or 0
    result = await db.execute(
        select(PaymentRecord)
        .where(*conditions)
        .order_by(PaymentRecord.created_at.desc(), PaymentRecord.id.desc())
        .offset(offset)
        .limit(limit)
    )
    return list(result.scalars().all()), total


async def get_processed_event(
    db: AsyncSession, provider: str, external_transaction_id: str
) -> ProcessedPaymentEvent | None:
    return await find_processed_event(db, provider, external_transaction_id)


# --- User-initiated changes ---


async def set_cancel_at_period_end(db: AsyncSession, user_id: int, cancel: bool) -> int:
    """Flag (or unflag) the ACTIVE subscription to lapse at period end.

    Status stays ACTIVE either way; access ends when period_end passes.
    Returns the number of subscriptions changed.
    """
    now = now_utc()
    try:
        await _lock_user(db, user_id)
        conditions = [
            Subscription.user_id == user_id,
            Subscription.status == SubscriptionStatus.ACTIVE,
            Subscription.period_end > now,
        ]
        if not cancel:
            conditions.append(Subscription.cancel_at_period_end == True)
        result = await db.execute(
            update(Subscription)
            .where(*conditions)
            .values(cancel_at_period_end=cancel, updated_at=now)
            .execution_options(synchronize_session="fetch")
        )
        await db.commit()
    except SQLAlchemyError as e:
        await db.rollback()
        raise TransientStorageFailure("Could not update subscription") from e
    return result.rowcount


async def create_manual_payment(
    db: AsyncSession,
    *,
    user_id: int,
    amount_minor_units: int,
    currency: str,
    plan_id: str | None,
    payment_method: str,
    note: str | None = None,
    receipt_url: str | None = None,
) -> PaymentRecord:
    """Store a user-submitted bank/receipt payment awaiting staff review."""
    lines = [
        f"Manual payment - {payment_method}",
        f"Plan: {plan_id}" if plan_id else None,
        note or None,
    ]
    record = PaymentRecord(
        user_id=user_id,
        provider=Provider.MANUAL,
        plan_id=plan_id,
        amount_minor_units=amount_minor_units,
        currency=currency.upper(),
        status=PaymentStatus.PENDING,
        source_description="\n".join(line for line in lines if line),
        receipt_url=receipt_url,
    )
    db.add(record)
    try:
        await db.commit()
    except SQLAlchemyError as e:
        await db.rollback()
        raise TransientStorageFailure("Could not store manual payment") from e
    await db.refresh(record)
    logger.info("Manual payment %s submitted by user %s (%s %s)", record.id, user_id, amount_minor_units, currency)
    return record
