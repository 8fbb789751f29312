"""
Webhook Dispatcher - routes authenticated processor events to their handlers.

Signature verification happens before this point (PaymentProcessor.verify_event).
Subscription-path events go to the state machine, pay-per-use checkouts go
through the purchase idempotency guard, everything else is acknowledged.
"""

from enum import Enum

from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from app.exceptions import EventValidationError
from app.models.domain import PurchaseIntent
from app.models.events import (
    PAY_PER_USE_PURCHASE,
    CheckoutSessionPayload,
    ProcessorEvent,
    ProcessorEventType,
)
from app.observability.metrics import metrics
from app.services.payment_provider import PaymentProcessor
from app.services.period_end import DEFAULT_PERIOD_DAYS
from app.services.purchases import PurchaseService
from app.services.subscription_state import SubscriptionStateMachine

logger = get_logger(__name__)

IGNORED = "ignored"


class WebhookDispatcher:
    """Classifies a processor event and applies it."""

    def __init__(
        self,
        session: AsyncSession,
        processor: PaymentProcessor,
        default_period_days: int = DEFAULT_PERIOD_DAYS,
        default_purchase_credits: int = 1,
        default_purchase_amount_cents: int = 199,
    ) -> None:
        self.state_machine = SubscriptionStateMachine(session, processor, default_period_days)
        self.purchases = PurchaseService(session)
        self.default_purchase_credits = default_purchase_credits
        self.default_purchase_amount_cents = default_purchase_amount_cents

    async def dispatch(self, event: ProcessorEvent) -> str:
        """
        Apply one event.

        Returns:
            Outcome label for the acknowledgement (applied, duplicate,
            no_match, skipped or ignored)

        Raises:
            EventValidationError: Mandatory field missing
            PeriodDerivationError: Derived period end is not a real date
            SubscriptionNotFoundError: Activation matched no subscription row
            ProcessorUnavailableError: Processor lookup failed fatally
        """
        try:
            result = await self._route(event)
        except Exception as exc:
            metrics.record_webhook(event.raw_type, type(exc).__name__)
            raise

        outcome = result.value if isinstance(result, Enum) else result
        metrics.record_webhook(event.raw_type, outcome)
        logger.info("webhook_event_processed", outcome=outcome)
        return outcome

    async def _route(self, event: ProcessorEvent) -> str | Enum:
        machine = self.state_machine
        match event.event_type:
            case ProcessorEventType.CHECKOUT_COMPLETED if event.checkout is not None:
                return await self._checkout_completed(event.raw_type, event.checkout)
            case ProcessorEventType.SUBSCRIPTION_CREATED if event.subscription is not None:
                return await machine.on_subscription_created(event.raw_type, event.subscription)
            case ProcessorEventType.SUBSCRIPTION_UPDATED if event.subscription is not None:
                return await machine.on_subscription_updated(event.raw_type, event.subscription)
            case ProcessorEventType.SUBSCRIPTION_DELETED if event.subscription is not None:
                return await machine.on_subscription_deleted(event.raw_type, event.subscription)
            case ProcessorEventType.SUBSCRIPTION_PAUSED if event.subscription is not None:
                return await machine.on_subscription_paused(event.raw_type, event.subscription)
            case ProcessorEventType.SUBSCRIPTION_RESUMED if event.subscription is not None:
                return await machine.on_subscription_resumed(event.raw_type, event.subscription)
            case ProcessorEventType.INVOICE_PAYMENT_FAILED if event.invoice is not None:
                return await machine.on_invoice_payment_failed(event.raw_type, event.invoice)
            case ProcessorEventType.INVOICE_PAYMENT_SUCCEEDED if event.invoice is not None:
                return await machine.on_invoice_payment_succeeded(event.raw_type, event.invoice)

        logger.info("webhook_event_unhandled", event_type=event.raw_type)
        return IGNORED

    async def _checkout_completed(
        self, event_type: str, checkout: CheckoutSessionPayload
    ) -> str | Enum:
        if checkout.mode == "subscription":
            return await self.state_machine.activate_from_checkout(event_type, checkout)

        if checkout.mode == "payment" and checkout.purchase_type == PAY_PER_USE_PURCHASE:
            if not checkout.session_id:
                raise EventValidationError(event_type, "id")
            if not checkout.purchase_account_id:
                raise EventValidationError(event_type, "metadata.user_id")
            if checkout.credits == 0:
                raise EventValidationError(event_type, "metadata.credits")

            amount_cents = checkout.amount_total
            if amount_cents is None:
                amount_cents = self.default_purchase_amount_cents

            result = await self.purchases.apply_purchase(
                PurchaseIntent(
                    session_id=checkout.session_id,
                    account_id=checkout.purchase_account_id,
                    credits=checkout.credits or self.default_purchase_credits,
                    amount_cents=max(amount_cents, 0),
                )
            )
            return result.outcome.value

        logger.info(
            "checkout_mode_ignored",
            session_id=checkout.session_id,
            mode=checkout.mode,
            purchase_type=checkout.purchase_type,
        )
        return IGNORED
