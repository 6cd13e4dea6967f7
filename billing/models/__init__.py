"""SQLAlchemy models for the billing service (PostgreSQL)."""

from .base import Base
from .enums import PaymentOutcome, PaymentStatus, Provider, SubscriptionStatus, Tier
from .user import User
from .subscription import Subscription
from .payment_record import PaymentRecord
from .processed_event import ProcessedPaymentEvent

__all__ = [
    "Base",
    "User",
    "Subscription",
    "PaymentRecord",
    "ProcessedPaymentEvent",
    "PaymentOutcome",
    "PaymentStatus",
    "Provider",
    "SubscriptionStatus",
    "Tier",
]
