"""Webhook routes — Stripe and Adyen push notifications."""

import logging

from fastapi import APIRouter, Depends, Request
from fastapi.responses import Response
from sqlalchemy.ext.asyncio import AsyncSession

from billing.db.session import get_db
from billing.models.enums import Provider
from billing.services.reconciliation import ReconciliationOrchestrator

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/webhooks", tags=["webhooks"])


@router.post("/stripe")
async def stripe_webhook(request: Request, db: AsyncSession = Depends(get_db)) -> Response:
    # Signature is checked against the raw bytes, before any parsing
    payload = await request.body()
    return await ReconciliationOrchestrator.for_provider(Provider.STRIPE).handle_push(db, payload, request.headers)


@router.post("/adyen")
async def adyen_webhook(request: Request, db: AsyncSession = Depends(get_db)) -> Response:
    payload = await request.body()
    return await ReconciliationOrchestrator.for_provider(Provider.ADYEN).handle_push(db, payload, request.headers)
