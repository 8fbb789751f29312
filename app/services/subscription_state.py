"""
Subscription State Machine - maps processor events onto the subscription row.

Every handler derives the complete target state from its own event and writes
it with a single UPDATE. Nothing reads the stored row first, so duplicate and
out-of-order deliveries converge on the same result.
"""

from datetime import datetime
from enum import Enum
from typing import Any

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from app.db.models import Subscription, utc_now
from app.exceptions import (
    EventValidationError,
    ProcessorUnavailableError,
    SubscriptionNotFoundError,
)
from app.models.api import SubscriptionStatus, SubscriptionTier
from app.models.domain import SubscriptionChange
from app.models.events import (
    RENEWAL_BILLING_REASON,
    CheckoutSessionPayload,
    InvoicePayload,
    LookupDegraded,
    LookupFatal,
    LookupFound,
    SubscriptionPayload,
)
from app.observability.metrics import metrics
from app.services.payment_provider import PaymentProcessor
from app.services.period_end import (
    DEFAULT_PERIOD_DAYS,
    resolve_period_end,
    validated_period_end,
)

logger = get_logger(__name__)


class TransitionOutcome(str, Enum):
    """What a handler did with an event."""

    APPLIED = "applied"
    NO_MATCH = "no_match"
    SKIPPED = "skipped"


_STATUS_MAP = {
    "active": SubscriptionStatus.ACTIVE,
    "past_due": SubscriptionStatus.PAST_DUE,
    "unpaid": SubscriptionStatus.PAST_DUE,
    "canceled": SubscriptionStatus.CANCELED,
    "paused": SubscriptionStatus.INACTIVE,
}


def map_processor_status(raw_status: str) -> SubscriptionStatus:
    """
    Map a processor subscription status onto the stored vocabulary.

    Statuses with no clear meaning here (trialing, incomplete, ...) become
    UNKNOWN and are logged for manual review.
    """
    status = _STATUS_MAP.get(raw_status)
    if status is None:
        logger.warning("subscription_status_unrecognized", processor_status=raw_status)
        return SubscriptionStatus.UNKNOWN
    return status


def _require(value: str | None, event_type: str, field: str) -> str:
    if not value:
        raise EventValidationError(event_type, field)
    return value


class SubscriptionStateMachine:
    """
    Applies processor events to subscription rows.

    Rows are located by processor customer id. Activations raise
    SubscriptionNotFoundError when no row matches; every other event treats
    a missing row as a no-op.
    """

    def __init__(
        self,
        session: AsyncSession,
        processor: PaymentProcessor,
        default_period_days: int = DEFAULT_PERIOD_DAYS,
    ) -> None:
        self.session = session
        self.processor = processor
        self.default_period_days = default_period_days

    # ========================================================================
    # Activation
    # ========================================================================

    async def activate_from_checkout(
        self, event_type: str, checkout: CheckoutSessionPayload
    ) -> TransitionOutcome:
        """Subscription-mode checkout completed: pro, active, fresh period end."""
        customer_id = _require(checkout.customer_id, event_type, "customer")
        subscription_id = _require(checkout.subscription_id, event_type, "subscription")

        lookup = await self.processor.retrieve_subscription(subscription_id)
        match lookup:
            case LookupFound(subscription=canonical):
                period_end = self._resolve(canonical)
            case LookupDegraded(reason=reason):
                logger.warning(
                    "checkout_period_end_fallback",
                    subscription_id=subscription_id,
                    reason=reason,
                )
                period_end = self._resolve(None)
            case LookupFatal(error=error):
                raise ProcessorUnavailableError(error)

        change = SubscriptionChange(
            status=SubscriptionStatus.ACTIVE,
            tier=SubscriptionTier.PRO,
            stripe_subscription_id=subscription_id,
            current_period_end=period_end,
            cancel_at_period_end=False,
        )
        return await self._apply_activation(change, customer_id, checkout.account_id)

    async def on_subscription_created(
        self, event_type: str, payload: SubscriptionPayload
    ) -> TransitionOutcome:
        """Active subscription created; a vanished object falls back to payload data."""
        if payload.status != "active":
            logger.info(
                "subscription_created_not_active",
                subscription_id=payload.subscription_id,
                processor_status=payload.status,
            )
            return TransitionOutcome.SKIPPED

        customer_id = _require(payload.customer_id, event_type, "customer")
        subscription_id = _require(payload.subscription_id, event_type, "id")

        source = await self._canonical_or_payload(subscription_id, payload)
        # The processor's current status wins over the event snapshot
        if source.status != "active":
            logger.info(
                "subscription_created_no_longer_active",
                subscription_id=subscription_id,
                processor_status=source.status,
            )
            return TransitionOutcome.SKIPPED

        change = SubscriptionChange(
            status=SubscriptionStatus.ACTIVE,
            tier=SubscriptionTier.PRO,
            stripe_subscription_id=subscription_id,
            current_period_end=self._resolve(source),
            cancel_at_period_end=False,
        )
        return await self._apply_activation(change, customer_id, None)

    # ========================================================================
    # Lifecycle
    # ========================================================================

    async def on_subscription_updated(
        self, event_type: str, payload: SubscriptionPayload
    ) -> TransitionOutcome:
        """
        Sync status and the cancellation flag.

        Only a processor status of canceled cancels. A scheduled cancellation
        (cancel_at_period_end with status active) stays active. The period
        end is written only when the event carries a valid one.
        """
        customer_id = _require(payload.customer_id, event_type, "customer")
        raw_status = _require(payload.status, event_type, "status")

        status = map_processor_status(raw_status)
        if status == SubscriptionStatus.CANCELED:
            change = SubscriptionChange.canceled()
        else:
            change = SubscriptionChange(
                status=status,
                current_period_end=validated_period_end(payload.current_period_end),
                cancel_at_period_end=payload.cancel_at_period_end,
            )
        return await self._apply(change, customer_id)

    async def on_subscription_deleted(
        self, event_type: str, payload: SubscriptionPayload
    ) -> TransitionOutcome:
        customer_id = _require(payload.customer_id, event_type, "customer")
        return await self._apply(SubscriptionChange.canceled(), customer_id)

    async def on_subscription_paused(
        self, event_type: str, payload: SubscriptionPayload
    ) -> TransitionOutcome:
        customer_id = _require(payload.customer_id, event_type, "customer")
        return await self._apply(SubscriptionChange(status=SubscriptionStatus.INACTIVE), customer_id)

    async def on_subscription_resumed(
        self, event_type: str, payload: SubscriptionPayload
    ) -> TransitionOutcome:
        """Active again, period end recomputed through the same fallback chain."""
        customer_id = _require(payload.customer_id, event_type, "customer")

        source: SubscriptionPayload | None = payload
        if payload.subscription_id:
            source = await self._canonical_or_payload(payload.subscription_id, payload)

        change = SubscriptionChange(
            status=SubscriptionStatus.ACTIVE,
            current_period_end=self._resolve(source),
        )
        return await self._apply(change, customer_id)

    # ========================================================================
    # Invoices
    # ========================================================================

    async def on_invoice_payment_failed(
        self, event_type: str, invoice: InvoicePayload
    ) -> TransitionOutcome:
        """Past due; tier unchanged."""
        customer_id = _require(invoice.customer_id, event_type, "customer")
        return await self._apply(SubscriptionChange(status=SubscriptionStatus.PAST_DUE), customer_id)

    async def on_invoice_payment_succeeded(
        self, event_type: str, invoice: InvoicePayload
    ) -> TransitionOutcome:
        """
        Renewal: refresh the period end from the processor.

        Any lookup problem leaves the stored row untouched.
        """
        if invoice.billing_reason != RENEWAL_BILLING_REASON:
            logger.info(
                "invoice_not_renewal",
                invoice_id=invoice.invoice_id,
                billing_reason=invoice.billing_reason,
            )
            return TransitionOutcome.SKIPPED

        if not invoice.subscription_id:
            logger.warning("renewal_invoice_without_subscription", invoice_id=invoice.invoice_id)
            return TransitionOutcome.SKIPPED

        lookup = await self.processor.retrieve_subscription(invoice.subscription_id)
        match lookup:
            case LookupFound(subscription=canonical):
                period_end = validated_period_end(canonical.current_period_end)
                customer_id = invoice.customer_id or canonical.customer_id
            case LookupDegraded(reason=reason):
                logger.warning(
                    "renewal_lookup_degraded",
                    subscription_id=invoice.subscription_id,
                    reason=reason,
                )
                return TransitionOutcome.SKIPPED
            case LookupFatal(error=error):
                logger.error(
                    "renewal_lookup_failed",
                    subscription_id=invoice.subscription_id,
                    error=error,
                )
                return TransitionOutcome.SKIPPED

        if period_end is None or not customer_id:
            logger.warning(
                "renewal_period_end_unavailable",
                subscription_id=invoice.subscription_id,
            )
            return TransitionOutcome.SKIPPED

        change = SubscriptionChange(
            status=SubscriptionStatus.ACTIVE,
            current_period_end=period_end,
        )
        return await self._apply(change, customer_id)

    # ========================================================================
    # Private Helper Methods
    # ========================================================================

    async def _canonical_or_payload(
        self, subscription_id: str, payload: SubscriptionPayload
    ) -> SubscriptionPayload:
        lookup = await self.processor.retrieve_subscription(subscription_id)
        match lookup:
            case LookupFound(subscription=canonical):
                return canonical
            case LookupDegraded(reason=reason):
                logger.warning(
                    "subscription_lookup_degraded",
                    subscription_id=subscription_id,
                    reason=reason,
                )
                return payload
            case LookupFatal(error=error):
                raise ProcessorUnavailableError(error)
        raise AssertionError(f"Unhandled lookup result: {lookup!r}")

    def _resolve(self, source: SubscriptionPayload | None) -> datetime:
        if source is None:
            resolved = resolve_period_end(None, default_days=self.default_period_days)
        else:
            resolved = resolve_period_end(
                source.current_period_end,
                created=source.created,
                interval=source.interval,
                interval_count=source.interval_count,
                default_days=self.default_period_days,
            )
        logger.debug("period_end_resolved", source=resolved.source.value, value=resolved.value.isoformat())
        return resolved.value

    def _change_values(self, change: SubscriptionChange) -> dict[str, Any]:
        values: dict[str, Any] = {"status": change.status, "updated_at": utc_now()}
        if change.tier is not None:
            values["tier"] = change.tier
        if change.clear_subscription_id:
            values["stripe_subscription_id"] = None
        elif change.stripe_subscription_id is not None:
            values["stripe_subscription_id"] = change.stripe_subscription_id
        if change.current_period_end is not None:
            values["current_period_end"] = change.current_period_end
        if change.cancel_at_period_end is not None:
            values["cancel_at_period_end"] = change.cancel_at_period_end
        return values

    async def _update_where(self, condition: Any, values: dict[str, Any]) -> str | None:
        stmt = (
            update(Subscription)
            .where(condition)
            .values(**values)
            .returning(Subscription.account_id)
            .execution_options(synchronize_session=False)
        )
        result = await self.session.execute(stmt)
        return result.scalars().first()

    async def _apply(self, change: SubscriptionChange, customer_id: str) -> TransitionOutcome:
        account_id = await self._update_where(
            Subscription.stripe_customer_id == customer_id, self._change_values(change)
        )
        if account_id is None:
            await self.session.rollback()
            logger.warning(
                "subscription_not_found_for_customer",
                customer_id=customer_id,
                target_status=change.status.value,
            )
            return TransitionOutcome.NO_MATCH

        await self.session.commit()
        self._log_applied(change, customer_id, account_id)
        return TransitionOutcome.APPLIED

    async def _apply_activation(
        self,
        change: SubscriptionChange,
        customer_id: str,
        fallback_account_id: str | None,
    ) -> TransitionOutcome:
        values = self._change_values(change)
        account_id = await self._update_where(Subscription.stripe_customer_id == customer_id, values)

        if account_id is None and fallback_account_id:
            # First checkout for this account binds the customer id to its row
            account_id = await self._update_where(
                Subscription.account_id == fallback_account_id,
                {**values, "stripe_customer_id": customer_id},
            )
            if account_id is not None:
                logger.info(
                    "stripe_customer_bound",
                    account_id=account_id,
                    customer_id=customer_id,
                )

        if account_id is None:
            await self.session.rollback()
            logger.error(
                "subscription_not_found_for_activation",
                customer_id=customer_id,
                account_id=fallback_account_id,
            )
            raise SubscriptionNotFoundError(customer_id, fallback_account_id)

        await self.session.commit()
        self._log_applied(change, customer_id, account_id)
        return TransitionOutcome.APPLIED

    def _log_applied(self, change: SubscriptionChange, customer_id: str, account_id: str) -> None:
        logger.info(
            "subscription_transition_applied",
            account_id=account_id,
            customer_id=customer_id,
            status=change.status.value,
            tier=change.tier.value if change.tier else None,
            current_period_end=(
                change.current_period_end.isoformat() if change.current_period_end else None
            ),
            cancel_at_period_end=change.cancel_at_period_end,
        )
        metrics.record_transition(change.status.value)
