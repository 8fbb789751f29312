"""
Subscription Management - account-initiated actions against the processor.

Cancelling and reactivating only flip the processor's cancel-at-period-end
flag; the resulting customer.subscription.updated webhook drives the state
machine. The local flag is written as well so reads reflect the request
before that webhook arrives.
"""

from dataclasses import dataclass
from datetime import datetime

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from app.db.models import Subscription, utc_now
from app.exceptions import (
    PaymentProviderError,
    SubscriptionNotFoundError,
    SubscriptionStateError,
)
from app.models.events import CheckoutLink, LookupDegraded, LookupFatal, LookupFound
from app.services.payment_provider import PaymentProcessor
from app.services.period_end import validated_period_end

logger = get_logger(__name__)


@dataclass(frozen=True)
class CancellationScheduled:
    account_id: str
    cancel_at: datetime | None


@dataclass(frozen=True)
class Reactivation:
    account_id: str
    renews_at: datetime | None
    already_active: bool


class SubscriptionManagementService:
    """Cancel, reactivate and start pay-per-use checkouts for an account."""

    def __init__(self, session: AsyncSession, processor: PaymentProcessor) -> None:
        self.session = session
        self.processor = processor

    async def schedule_cancellation(self, account_id: str) -> CancellationScheduled:
        """
        Cancel at period end; access continues until then.

        Raises:
            SubscriptionNotFoundError: No processor subscription on the account
            PaymentProviderError: The processor rejected the update
        """
        subscription_id = await self._subscription_id(account_id)

        updated = await self.processor.set_cancel_at_period_end(subscription_id, True)
        await self._set_cancel_flag(account_id, True)

        cancel_at = validated_period_end(updated.current_period_end)
        logger.info(
            "subscription_cancellation_scheduled",
            account_id=account_id,
            subscription_id=subscription_id,
            cancel_at=cancel_at.isoformat() if cancel_at else None,
        )
        return CancellationScheduled(account_id=account_id, cancel_at=cancel_at)

    async def reactivate(self, account_id: str) -> Reactivation:
        """
        Withdraw a scheduled cancellation.

        When the processor already shows no pending cancellation only the
        local flag is synced.

        Raises:
            SubscriptionNotFoundError: No processor subscription on the account
            SubscriptionStateError: No cancellation is scheduled
            PaymentProviderError: The processor lookup or update failed
        """
        row = await self._load(account_id)
        if row is None or not row.stripe_subscription_id:
            raise SubscriptionNotFoundError(None, account_id)
        if not row.cancel_at_period_end:
            raise SubscriptionStateError("Subscription is not scheduled for cancellation")
        subscription_id = row.stripe_subscription_id

        lookup = await self.processor.retrieve_subscription(subscription_id)
        match lookup:
            case LookupFound(subscription=current):
                pass
            case LookupDegraded(reason=reason):
                raise PaymentProviderError(f"Subscription lookup degraded: {reason}")
            case LookupFatal(error=error):
                raise PaymentProviderError(error)

        already_active = not current.cancel_at_period_end
        if already_active:
            logger.info(
                "subscription_already_active_syncing",
                account_id=account_id,
                subscription_id=subscription_id,
            )
        else:
            current = await self.processor.set_cancel_at_period_end(subscription_id, False)

        await self._set_cancel_flag(account_id, False)

        renews_at = validated_period_end(current.current_period_end)
        logger.info(
            "subscription_reactivated",
            account_id=account_id,
            subscription_id=subscription_id,
            already_active=already_active,
            renews_at=renews_at.isoformat() if renews_at else None,
        )
        return Reactivation(
            account_id=account_id, renews_at=renews_at, already_active=already_active
        )

    async def create_purchase_checkout(
        self,
        account_id: str,
        email: str | None,
        credits: int,
        amount_cents: int,
        success_url: str,
        cancel_url: str,
    ) -> CheckoutLink:
        """
        Start a pay-per-use checkout, creating the processor customer if needed.

        Raises:
            SubscriptionNotFoundError: The account has no subscription row
            PaymentProviderError: The processor rejected a request
        """
        row = await self._load(account_id)
        if row is None:
            raise SubscriptionNotFoundError(None, account_id)

        customer_id = row.stripe_customer_id
        if not customer_id:
            customer_id = await self._bind_new_customer(account_id, email)

        return await self.processor.create_pay_per_use_checkout(
            customer_id=customer_id,
            account_id=account_id,
            credits=credits,
            amount_cents=amount_cents,
            success_url=success_url,
            cancel_url=cancel_url,
        )

    # ========================================================================
    # Private Helper Methods
    # ========================================================================

    async def _load(self, account_id: str) -> Subscription | None:
        result = await self.session.execute(
            select(Subscription).where(Subscription.account_id == account_id)
        )
        return result.scalar_one_or_none()

    async def _subscription_id(self, account_id: str) -> str:
        row = await self._load(account_id)
        if row is None or not row.stripe_subscription_id:
            raise SubscriptionNotFoundError(None, account_id)
        return row.stripe_subscription_id

    async def _set_cancel_flag(self, account_id: str, cancel: bool) -> None:
        await self.session.execute(
            update(Subscription)
            .where(Subscription.account_id == account_id)
            .values(cancel_at_period_end=cancel, updated_at=utc_now())
            .execution_options(synchronize_session=False)
        )
        await self.session.commit()

    async def _bind_new_customer(self, account_id: str, email: str | None) -> str:
        customer_id = await self.processor.create_customer(account_id, email)

        # Only bind when still unbound; a concurrent request may have won
        result = await self.session.execute(
            update(Subscription)
            .where(
                Subscription.account_id == account_id,
                Subscription.stripe_customer_id.is_(None),
            )
            .values(stripe_customer_id=customer_id, updated_at=utc_now())
            .returning(Subscription.stripe_customer_id)
            .execution_options(synchronize_session=False)
        )
        bound = result.scalars().first()
        await self.session.commit()
        if bound is not None:
            logger.info("stripe_customer_bound", account_id=account_id, customer_id=customer_id)
            return bound

        row = await self._load(account_id)
        if row is None or not row.stripe_customer_id:
            raise SubscriptionNotFoundError(None, account_id)
        logger.warning(
            "stripe_customer_bind_lost_race",
            account_id=account_id,
            orphaned_customer_id=customer_id,
            customer_id=row.stripe_customer_id,
        )
        return row.stripe_customer_id
