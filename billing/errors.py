"""Error taxonomy for payment reconciliation."""


class PaymentError(Exception):
    """Base class for all reconciliation errors."""


class AuthenticationFailure(PaymentError):
    """Signature missing, malformed or mismatched. Never reaches the ledger."""

    def __init__(self, message: str = "Invalid signature"):
        super().__init__(message)


class ReferenceOwnershipError(AuthenticationFailure):
    """A pull confirmation named a payment that belongs to someone else."""

    def __init__(self, message: str = "Payment does not belong to this user"):
        super().__init__(message)


class MalformedPayload(PaymentError):
    """Authenticated payload that cannot be reduced to a PaymentEvent."""


class DuplicateEvent(PaymentError):
    """The (provider, external transaction id) pair was already applied."""


class TransientStorageFailure(PaymentError):
    """The ledger transaction could not complete; nothing was written."""


class UnknownPlanIdentifier(PaymentError):
    """External plan identifier missing from the tier table."""


class PaymentNotConfirmed(PaymentError):
    """The provider does not (yet) report the payment as completed."""


class ProviderUnavailable(PaymentError):
    """The provider API could not be reached or answered with an error."""


class ProviderNotConfigured(PaymentError):
    """Credentials for a provider are missing."""
