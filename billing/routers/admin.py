"""Staff routes — review and decide manual payments."""

import logging

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from billing.constants import MAX_PAYMENTS_PER_PAGE, PAYMENTS_PER_PAGE
from billing.db.session import get_db
from billing.models.enums import Provider
from billing.models.user import User
from billing.schemas.payments import (
    ManualDecisionRequest,
    ManualDecisionResponse,
    PaymentPage,
    PaymentRecordOut,
)
from billing.schemas.subscription import SubscriptionSummary
from billing.services.auth_service import get_staff_user
from billing.services.reconciliation import ReconciliationOrchestrator
from billing.services.subscription_service import list_payment_records

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/admin", tags=["admin"])


@router.get("/payments", response_model=PaymentPage)
async def list_payments(
    status: str | None = Query(None, pattern="^(PENDING|APPROVED|REJECTED|pending|approved|rejected)$"),
    provider: str | None = Query(None),
    user_id: int | None = Query(None),
    page: int = Query(1, ge=1),
    per_page: int = Query(PAYMENTS_PER_PAGE, ge=1, le=MAX_PAYMENTS_PER_PAGE),
    staff: User = Depends(get_staff_user),
    db: AsyncSession = Depends(get_db),
):
    rows, total = await list_payment_records(
        db,
        user_id=user_id,
        status=status,
        provider=provider,
        offset=(page - 1) * per_page,
        limit=per_page,
    )
    return PaymentPage(
        items=[PaymentRecordOut.model_validate(row) for row in rows],
        total=total,
        page=page,
        per_page=per_page,
    )


@router.post("/payments/decision", response_model=ManualDecisionResponse)
async def decide_payment(
    body: ManualDecisionRequest,
    staff: User = Depends(get_staff_user),
    db: AsyncSession = Depends(get_db),
):
    orchestrator = ReconciliationOrchestrator.for_provider(Provider.MANUAL)
    result = await orchestrator.decide_manual(db, body.payment_record_id, body.decision, staff)
    return ManualDecisionResponse(
        success=True,
        duplicate=result.duplicate,
        payment=PaymentRecordOut.model_validate(result.payment_record) if result.payment_record else None,
        subscription=SubscriptionSummary.model_validate(result.subscription) if result.subscription else None,
    )
