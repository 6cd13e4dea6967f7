"""String enums shared by the ORM models and the reconciliation services."""

from enum import StrEnum


class Tier(StrEnum):
    BASIC = "BASIC"
    STANDARD = "STANDARD"
    PREMIUM = "PREMIUM"


class SubscriptionStatus(StrEnum):
    ACTIVE = "ACTIVE"
    CANCELED = "CANCELED"


class PaymentStatus(StrEnum):
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"


class PaymentOutcome(StrEnum):
    SUCCEEDED = "SUCCEEDED"
    FAILED = "FAILED"


class Provider(StrEnum):
    STRIPE = "stripe"
    PAYPAL = "paypal"
    ADYEN = "adyen"
    MANUAL = "manual"
