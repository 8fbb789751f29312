"""
Stripe Payment Processor Implementation.

NO DICTIONARIES - All data uses strongly typed models.
"""

import json
from typing import Any

import stripe
from structlog import get_logger

from app.exceptions import PaymentProviderError, WebhookVerificationError
from app.models.events import (
    PAY_PER_USE_PURCHASE,
    CheckoutLink,
    LookupDegraded,
    LookupFatal,
    LookupFound,
    ProcessorEvent,
    SubscriptionLookup,
    SubscriptionPayload,
)

logger = get_logger(__name__)

RESOURCE_MISSING = "resource_missing"


def _plain(obj: Any) -> Any:
    """SDK objects as plain dicts; normalization only reads dicts."""
    to_dict = getattr(obj, "to_dict", None)
    return to_dict() if callable(to_dict) else obj


class StripeProvider:
    """
    Stripe payment processor implementation.

    Implements the PaymentProcessor protocol for Stripe. API calls go through
    one StripeClient owned by this provider.
    """

    def __init__(
        self,
        api_key: str,
        webhook_secret: str,
        tolerance_seconds: int = 300,
        client: stripe.StripeClient | None = None,
    ) -> None:
        """
        Initialize Stripe provider.

        Args:
            api_key: Stripe secret API key (empty = API calls fail)
            webhook_secret: Stripe webhook signing secret (empty = fail closed)
            tolerance_seconds: Maximum accepted age of a signed timestamp
            client: Preconfigured client (tests)
        """
        self.webhook_secret = webhook_secret
        self.tolerance_seconds = tolerance_seconds
        if client is None and api_key:
            client = stripe.StripeClient(api_key)
        self.client = client

    def _api(self) -> stripe.StripeClient:
        if self.client is None:
            raise PaymentProviderError("Stripe API key is not configured")
        return self.client

    def verify_event(self, payload: bytes, signature: str | None) -> ProcessorEvent:
        """
        Verify the Stripe-Signature header over the raw body, then normalize.

        The signature is checked against the bytes as received. The body is
        only parsed after verification succeeds.

        Raises:
            WebhookVerificationError: If verification or parsing fails
        """
        if not self.webhook_secret:
            logger.error("stripe_webhook_secret_missing")
            raise WebhookVerificationError("Webhook secret is not configured")
        if not signature:
            logger.warning("stripe_webhook_signature_missing")
            raise WebhookVerificationError("Missing Stripe-Signature header")

        try:
            body = payload.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise WebhookVerificationError("Webhook body is not valid UTF-8") from exc

        try:
            stripe.WebhookSignature.verify_header(
                body, signature, self.webhook_secret, self.tolerance_seconds
            )
        except stripe.SignatureVerificationError as exc:
            logger.warning("stripe_webhook_verification_failed", error=str(exc))
            raise WebhookVerificationError("Invalid Stripe webhook signature") from exc

        try:
            event = ProcessorEvent.from_payload(json.loads(body))
        except ValueError as exc:
            logger.error("stripe_webhook_parsing_failed", error=str(exc))
            raise WebhookVerificationError(f"Failed to parse Stripe webhook: {exc}") from exc

        logger.info(
            "stripe_webhook_verified",
            event_id=event.event_id,
            event_type=event.raw_type,
        )
        return event

    async def retrieve_subscription(self, subscription_id: str) -> SubscriptionLookup:
        """
        Retrieve a subscription, classifying failures instead of raising.

        A deleted subscription or an unreachable API degrades to payload data.
        Authentication and other API errors are fatal for the event.
        """
        if self.client is None:
            logger.error("stripe_api_key_missing", subscription_id=subscription_id)
            return LookupFatal(error="Stripe API key is not configured")

        try:
            subscription = await self.client.v1.subscriptions.retrieve_async(subscription_id)
        except stripe.InvalidRequestError as exc:
            if exc.code == RESOURCE_MISSING:
                logger.warning(
                    "stripe_subscription_missing",
                    subscription_id=subscription_id,
                )
                return LookupDegraded(reason=RESOURCE_MISSING)
            logger.error(
                "stripe_subscription_lookup_failed",
                subscription_id=subscription_id,
                error=str(exc),
            )
            return LookupFatal(error=str(exc))
        except stripe.APIConnectionError as exc:
            logger.warning(
                "stripe_unreachable",
                subscription_id=subscription_id,
                error=str(exc),
            )
            return LookupDegraded(reason="connection_error")
        except stripe.StripeError as exc:
            logger.error(
                "stripe_subscription_lookup_failed",
                subscription_id=subscription_id,
                error=str(exc),
                error_type=type(exc).__name__,
            )
            return LookupFatal(error=str(exc))

        return LookupFound(subscription=SubscriptionPayload.from_payload(_plain(subscription)))

    async def set_cancel_at_period_end(
        self, subscription_id: str, cancel: bool
    ) -> SubscriptionPayload:
        """
        Schedule (or withdraw) cancellation at the end of the current period.

        Raises:
            PaymentProviderError: If Stripe rejects the update
        """
        try:
            subscription = await self._api().v1.subscriptions.update_async(
                subscription_id, params={"cancel_at_period_end": cancel}
            )
        except stripe.StripeError as exc:
            logger.error(
                "stripe_cancel_flag_update_failed",
                subscription_id=subscription_id,
                cancel_at_period_end=cancel,
                error=str(exc),
            )
            raise PaymentProviderError(f"Stripe subscription update failed: {exc}") from exc

        logger.info(
            "stripe_cancel_flag_updated",
            subscription_id=subscription_id,
            cancel_at_period_end=cancel,
        )
        return SubscriptionPayload.from_payload(_plain(subscription))

    async def create_customer(self, account_id: str, email: str | None) -> str:
        """
        Create a Stripe customer for an account.

        Raises:
            PaymentProviderError: If Stripe rejects the request
        """
        params: dict[str, Any] = {"metadata": {"account_id": account_id}}
        if email:
            params["email"] = email

        try:
            customer = await self._api().v1.customers.create_async(params=params)
        except stripe.StripeError as exc:
            logger.error("stripe_customer_create_failed", account_id=account_id, error=str(exc))
            raise PaymentProviderError(f"Stripe customer creation failed: {exc}") from exc

        logger.info("stripe_customer_created", account_id=account_id, customer_id=customer.id)
        return str(customer.id)

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
        Create a one-time payment checkout session for appraisal credits.

        The session metadata is what the checkout.session.completed handler
        reads back (user_id, type, credits).

        Raises:
            PaymentProviderError: If Stripe rejects the request
        """
        params: dict[str, Any] = {
            "customer": customer_id,
            "mode": "payment",
            "payment_method_types": ["card"],
            "line_items": [
                {
                    "price_data": {
                        "currency": "usd",
                        "product_data": {
                            "name": "Appraisal Credit",
                            "description": f"{credits} instant AI appraisal(s)",
                        },
                        "unit_amount": amount_cents,
                    },
                    "quantity": 1,
                }
            ],
            "success_url": success_url,
            "cancel_url": cancel_url,
            "metadata": {
                "user_id": account_id,
                "type": PAY_PER_USE_PURCHASE,
                "credits": str(credits),
            },
        }

        try:
            session = await self._api().v1.checkout.sessions.create_async(params=params)
        except stripe.StripeError as exc:
            logger.error(
                "stripe_checkout_create_failed",
                account_id=account_id,
                customer_id=customer_id,
                error=str(exc),
            )
            raise PaymentProviderError(f"Stripe checkout creation failed: {exc}") from exc

        logger.info(
            "stripe_checkout_created",
            account_id=account_id,
            session_id=session.id,
            credits=credits,
            amount_cents=amount_cents,
        )
        return CheckoutLink(session_id=str(session.id), url=session.url)
