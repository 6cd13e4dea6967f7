"""Payment routes — pull confirmation, hosted checkout and manual submissions."""

import logging

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.ext.asyncio import AsyncSession

from billing.db.session import get_db
from billing.errors import MalformedPayload, TransientStorageFailure
from billing.models.enums import Provider
from billing.models.user import User
from billing.schemas.payments import (
    CheckoutRequest,
    ConfirmationResponse,
    ConfirmRequest,
    ManualPaymentRequest,
    PaymentRecordOut,
)
from billing.schemas.subscription import SubscriptionSummary
from billing.services.auth_service import get_current_user
from billing.services.normalizer import to_minor_units
from billing.services.rate_limit import rate_limited
from billing.services.reconciliation import ReconciliationOrchestrator
from billing.services.subscription_service import create_manual_payment

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["payments"])

CONFIRMABLE = (Provider.STRIPE, Provider.PAYPAL, Provider.ADYEN)


async def _confirm(provider: Provider, body: ConfirmRequest, user: User, db: AsyncSession) -> ConfirmationResponse:
    result = await ReconciliationOrchestrator.for_provider(provider).confirm(db, user, body.external_reference)
    subscription = SubscriptionSummary.model_validate(result.subscription) if result.subscription else None
    return ConfirmationResponse(success=True, duplicate=result.duplicate, subscription=subscription)


@router.post("/payments/stripe/confirm", response_model=ConfirmationResponse)
async def confirm_stripe(
    body: ConfirmRequest,
    user: User = Depends(rate_limited("confirm")),
    db: AsyncSession = Depends(get_db),
):
    return await _confirm(Provider.STRIPE, body, user, db)


@router.post("/payments/paypal/confirm", response_model=ConfirmationResponse)
async def confirm_paypal(
    body: ConfirmRequest,
    user: User = Depends(rate_limited("confirm")),
    db: AsyncSession = Depends(get_db),
):
    return await _confirm(Provider.PAYPAL, body, user, db)


@router.post("/payments/adyen/confirm", response_model=ConfirmationResponse)
async def confirm_adyen(
    body: ConfirmRequest,
    user: User = Depends(rate_limited("confirm")),
    db: AsyncSession = Depends(get_db),
):
    return await _confirm(Provider.ADYEN, body, user, db)


@router.post("/checkout/{provider}")
async def start_checkout(
    provider: str,
    body: CheckoutRequest,
    user: User = Depends(rate_limited("checkout")),
):
    if provider not in CONFIRMABLE:
        raise HTTPException(status_code=404, detail="Unknown payment provider")
    return await ReconciliationOrchestrator.for_provider(provider).start_checkout(user, body.plan_id)


@router.post("/payments/manual", response_model=PaymentRecordOut, status_code=201)
async def submit_manual_payment(
    body: ManualPaymentRequest,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    try:
        amount = to_minor_units(body.amount, body.currency)
        record = await create_manual_payment(
            db,
            user_id=user.id,
            amount_minor_units=amount,
            currency=body.currency,
            plan_id=body.plan_id.lower() if body.plan_id else None,
            payment_method=body.payment_method,
            note=body.note,
            receipt_url=body.receipt_url,
        )
    except MalformedPayload as e:
        raise HTTPException(status_code=400, detail=str(e))
    except TransientStorageFailure:
        raise HTTPException(status_code=503, detail="Payment could not be saved, try again")
    return record
