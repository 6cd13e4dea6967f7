"""Subscription-related Pydantic schemas."""

from datetime import datetime
from typing import Literal

from pydantic import BaseModel, ConfigDict, field_validator
from pydantic.alias_generators import to_camel

from billing.utils import as_utc


class CamelModel(BaseModel):
    """Responses use camelCase keys, as the web client expects."""

    model_config = ConfigDict(from_attributes=True, alias_generator=to_camel, populate_by_name=True)


class SubscriptionSummary(CamelModel):
    tier: str
    status: str
    period_end: datetime

    @field_validator("period_end")
    @classmethod
    def _utc(cls, v: datetime) -> datetime:
        return as_utc(v)


class SubscriptionDetail(SubscriptionSummary):
    id: int
    period_start: datetime
    cancel_at_period_end: bool
    payment_record_id: int | None = None

    @field_validator("period_start")
    @classmethod
    def _utc_start(cls, v: datetime) -> datetime:
        return as_utc(v)


class SubscriptionStatusResponse(CamelModel):
    subscription: SubscriptionDetail | None = None


class CancelRequest(BaseModel):
    action: Literal["cancel", "reactivate"]


class CancelResponse(CamelModel):
    success: bool
    cancel_at_period_end: bool
    subscription: SubscriptionDetail | None = None
