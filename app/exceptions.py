"""
Exception Classes - Strongly typed exception hierarchy.

NO DICTIONARIES - All exceptions have typed attributes.

Ledger outcomes (insufficient balance, duplicate purchase) are result values,
not exceptions. See app.models.domain.
"""


class BillingError(Exception):
    """Base exception for all billing errors."""

    pass


class WebhookVerificationError(BillingError):
    """Raised when webhook signature verification fails."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(f"Webhook verification error: {message}")


class EventValidationError(BillingError):
    """Raised when an event is missing a mandatory field."""

    def __init__(self, event_type: str, field: str) -> None:
        self.event_type = event_type
        self.field = field
        super().__init__(f"Event {event_type} missing required field: {field}")


class PeriodDerivationError(BillingError):
    """Raised when a derived billing period boundary is not a real date."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(f"Period derivation failed: {message}")


class SubscriptionNotFoundError(BillingError):
    """Raised when no subscription row matches an activation event."""

    def __init__(self, customer_id: str | None, account_id: str | None = None) -> None:
        self.customer_id = customer_id
        self.account_id = account_id
        super().__init__(
            f"Subscription not found: customer={customer_id} account={account_id}"
        )


class ProcessorUnavailableError(BillingError):
    """Raised when a processor lookup fails in a way that must not be guessed around."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(f"Payment processor unavailable: {message}")


class PaymentProviderError(BillingError):
    """Raised when a payment provider operation fails."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(f"Payment provider error: {message}")


class DataIntegrityError(BillingError):
    """Raised when data integrity constraint violated."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(f"Data integrity error: {message}")


class SubscriptionStateError(BillingError):
    """Raised when a subscription action does not apply to the stored state."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(f"Subscription state error: {message}")
