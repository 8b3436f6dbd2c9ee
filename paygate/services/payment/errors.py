"""
Payment Errors
Error taxonomy shared by the orchestrator, adapters and routes
"""


class PaymentError(Exception):
    """Base class for all payment errors"""


class ProviderNotConfiguredError(PaymentError):
    """Organizer has no usable payment provider"""


class UnknownProviderError(PaymentError):
    """No adapter registered for the provider id"""


class ProviderConfigError(PaymentError):
    """Provider onboarding conflict (already configured, not found)"""


class ProviderConfigNotFoundError(ProviderConfigError):
    """Organizer has no configuration for the provider"""


class InvalidCredentialsError(PaymentError):
    """Plaintext credentials rejected by the provider adapter"""


class CredentialError(PaymentError):
    """Stored credential blob cannot be decrypted"""


class PaymentCreationError(PaymentError):
    """Provider failed (or timed out) while creating a payment"""

    def __init__(self, message: str = "Unable to initiate payment, please retry", payment_id: str = None):
        super().__init__(message)
        self.payment_id = payment_id


class CallbackVerificationError(PaymentError):
    """Forged or malformed provider callback"""


class PaymentNotFoundError(PaymentError):
    """Payment does not exist (or is not visible to the caller)"""


class InvalidTransitionError(PaymentError):
    """Requested status change is not allowed by the state machine"""

    def __init__(self, current, requested, payment_id: str = None):
        current_value = getattr(current, "value", current)
        requested_value = getattr(requested, "value", requested)
        super().__init__(
            f"Invalid payment transition {current_value} -> {requested_value}"
            + (f" for payment {payment_id}" if payment_id else "")
        )
        self.current = current
        self.requested = requested
        self.payment_id = payment_id


class RefundError(PaymentError):
    """Refund amount invalid or provider refund failed"""

    def __init__(self, message: str, provider_failure: bool = False):
        super().__init__(message)
        self.provider_failure = provider_failure


class ConcurrentUpdateError(PaymentError):
    """Payment kept changing underneath an update"""


class DuplicateTransactionError(PaymentError):
    """Ledger entry for this provider event already exists"""


class DuplicateMerchantTradeNoError(PaymentError):
    """Generated merchant trade number collided with an existing payment"""
