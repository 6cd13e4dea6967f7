"""Payment-related Pydantic schemas."""

from datetime import datetime
from decimal import Decimal
from typing import Literal

from pydantic import BaseModel, Field, field_validator

from billing.schemas.subscription import CamelModel, SubscriptionSummary
from billing.utils import as_utc


class ConfirmRequest(BaseModel):
    external_reference: str = Field(min_length=1, max_length=4096)


class ConfirmationResponse(CamelModel):
    success: bool = True
    duplicate: bool = False
    subscription: SubscriptionSummary | None = None


class CheckoutRequest(BaseModel):
    plan_id: str = Field(min_length=1, max_length=64)


class ManualPaymentRequest(BaseModel):
    amount: Decimal = Field(gt=0, max_digits=12)
    currency: str = Field(min_length=3, max_length=3)
    plan_id: str | None = Field(None, max_length=64)
    payment_method: str = Field(min_length=1, max_length=64)
    note: str | None = Field(None, max_length=2000)
    receipt_url: str | None = Field(None, max_length=512)

    @field_validator("currency")
    @classmethod
    def upper_currency(cls, v: str) -> str:
        return v.upper()


class PaymentRecordOut(CamelModel):
    id: int
    user_id: int
    provider: str
    external_transaction_id: str | None = None
    plan_id: str | None = None
    amount_minor_units: int
    currency: str
    status: str
    source_description: str
    receipt_url: str | None = None
    created_at: datetime
    decided_at: datetime | None = None

    @field_validator("created_at", "decided_at")
    @classmethod
    def _utc(cls, v: datetime | None) -> datetime | None:
        return as_utc(v)


class PaymentPage(CamelModel):
    items: list[PaymentRecordOut]
    total: int
    page: int
    per_page: int


class ManualDecisionRequest(BaseModel):
    payment_record_id: int
    decision: Literal["approve", "reject"]


class ManualDecisionResponse(CamelModel):
    success: bool = True
    duplicate: bool = False
    payment: PaymentRecordOut | None = None
    subscription: SubscriptionSummary | None = None
