"""Current plan, history and cancel-at-period-end for the signed-in user."""

import logging

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.ext.asyncio import AsyncSession

from billing.db.session import get_db
from billing.errors import TransientStorageFailure
from billing.models.user import User
from billing.schemas.subscription import (
    CancelRequest,
    CancelResponse,
    SubscriptionDetail,
    SubscriptionStatusResponse,
)
from billing.services.auth_service import get_current_user
from billing.services.subscription_service import (
    get_active_subscription,
    list_subscription_history,
    set_cancel_at_period_end,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/subscription", tags=["subscription"])


@router.get("", response_model=SubscriptionStatusResponse)
async def current_subscription(
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    subscription = await get_active_subscription(db, user.id)
    return SubscriptionStatusResponse(
        subscription=SubscriptionDetail.model_validate(subscription) if subscription else None
    )


@router.get("/history", response_model=list[SubscriptionDetail])
async def subscription_history(
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    return await list_subscription_history(db, user.id)


@router.post("/cancel", response_model=CancelResponse)
async def cancel_subscription(
    body: CancelRequest,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    user_id = user.id
    cancel = body.action == "cancel"
    try:
        changed = await set_cancel_at_period_end(db, user_id, cancel)
    except TransientStorageFailure:
        raise HTTPException(status_code=503, detail="Subscription could not be updated, try again")
    if not changed:
        raise HTTPException(status_code=404, detail="No active subscription to update")

    logger.info("User %s %s subscription at period end", user_id, "canceled" if cancel else "reactivated")
    subscription = await get_active_subscription(db, user_id)
    return CancelResponse(
        success=True,
        cancel_at_period_end=cancel,
        subscription=SubscriptionDetail.model_validate(subscription) if subscription else None,
    )
