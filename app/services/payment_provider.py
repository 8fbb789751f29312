"""
Payment Processor Protocol - Processor-agnostic interface.

NO DICTIONARIES - All data uses strongly typed models.
"""

from typing import Protocol

from app.models.events import (
    CheckoutLink,
    ProcessorEvent,
    SubscriptionLookup,
    SubscriptionPayload,
)


class PaymentProcessor(Protocol):
    """
    Payment processor protocol.

    The webhook path and the subscription management routes depend only on
    this interface, so tests can substitute a fake processor without
    touching the SDK.
    """

    def verify_event(self, payload: bytes, signature: str | None) -> ProcessorEvent:
        """
        Authenticate a webhook delivery and normalize it.

        Args:
            payload: Raw request body, exactly as received
            signature: Signature header value (None if absent)

        Returns:
            Normalized processor event

        Raises:
            WebhookVerificationError: Missing header, missing secret, bad
                signature, stale timestamp or undecodable body
        """
        ...

    async def retrieve_subscription(self, subscription_id: str) -> SubscriptionLookup:
        """
        Fetch the canonical subscription object.

        Returns:
            LookupFound, LookupDegraded (gone / unreachable) or LookupFatal
        """
        ...

    async def set_cancel_at_period_end(
        self, subscription_id: str, cancel: bool
    ) -> SubscriptionPayload:
        """
        Schedule or withdraw cancellation at period end.

        Returns:
            The updated canonical subscription

        Raises:
            PaymentProviderError: If the processor rejects the update
        """
        ...

    async def create_customer(self, account_id: str, email: str | None) -> str:
        """
        Create a processor customer for an account.

        Returns:
            Processor customer id

        Raises:
            PaymentProviderError: If the processor rejects the request
        """
        ...

    async def create_pay_per_use_checkout(
        self,
        customer_id: str,
        account_id: str,
        credits: int,
        amount_cents: int,
        success_url: str,
        cancel_url: str,
    ) -> CheckoutLink:
        """
        Create a hosted one-time payment session for appraisal credits.

        Raises:
            PaymentProviderError: If the processor rejects the request
        """
        ...
