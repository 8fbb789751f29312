"""
Store Subscription Service - platform-store (App Store) writes to the subscription row.

Verification binds an App Store transaction to an account. Notifications
locate the account by original transaction id and overwrite its state, the
same full-overwrite style the processor state machine uses. Both write only
from transactions re-fetched from the App Store Server API.
"""

from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from app.db.models import Subscription, utc_now
from app.exceptions import EventValidationError, SubscriptionNotFoundError
from app.models.api import SubscriptionStatus, SubscriptionTier
from app.models.apple_storekit import (
    GRACE_PERIOD_SUBTYPE,
    AppleNotificationType,
    AppleStoreKitWebhookEvent,
    AppleTransactionInfo,
)
from app.observability.metrics import metrics
from app.services.apple_storekit_products import get_tier_for_product

logger = get_logger(__name__)

_ACTIVATING = {
    AppleNotificationType.SUBSCRIBED,
    AppleNotificationType.DID_RENEW,
    AppleNotificationType.OFFER_REDEEMED,
}
_EXPIRING = {AppleNotificationType.EXPIRED, AppleNotificationType.GRACE_PERIOD_EXPIRED}
_REVOKING = {AppleNotificationType.REFUND, AppleNotificationType.REVOKE}


def _is_billing_failure(event: AppleStoreKitWebhookEvent) -> bool:
    """Renewal failed outside a grace period."""
    return (
        event.known_type is AppleNotificationType.DID_FAIL_TO_RENEW
        and event.subtype != GRACE_PERIOD_SUBTYPE
    )


@dataclass(frozen=True)
class StoreVerification:
    """Result of binding a verified store transaction to an account."""

    account_id: str
    tier: SubscriptionTier
    product_id: str
    expires_at: datetime | None


@dataclass(frozen=True)
class NotificationResult:
    processed: bool
    reason: str | None = None


class StoreSubscriptionService:
    """Applies App Store purchases and notifications to subscription rows."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def apply_verified_transaction(
        self, account_id: str, transaction: AppleTransactionInfo
    ) -> StoreVerification:
        """
        Activate the account from an authoritative, unrevoked transaction.

        Raises:
            EventValidationError: Revoked transaction or unknown product
            SubscriptionNotFoundError: The account has no subscription row
        """
        if transaction.is_revoked():
            logger.warning(
                "apple_transaction_revoked",
                account_id=account_id,
                transaction_id=transaction.transaction_id,
            )
            raise EventValidationError("apple.verify", "revocationDate")

        try:
            tier = get_tier_for_product(transaction.product_id)
        except ValueError as exc:
            logger.warning(
                "apple_product_unknown",
                account_id=account_id,
                product_id=transaction.product_id,
            )
            raise EventValidationError("apple.verify", "productId") from exc

        matched = await self._update_where(
            Subscription.account_id == account_id,
            {
                "tier": tier,
                "status": SubscriptionStatus.ACTIVE,
                "iap_product_id": transaction.product_id,
                "iap_original_transaction_id": transaction.original_transaction_id,
                "iap_expires_at": transaction.expires_date,
            },
        )
        if matched is None:
            await self.session.rollback()
            raise SubscriptionNotFoundError(None, account_id)

        await self.session.commit()
        logger.info(
            "apple_subscription_verified",
            account_id=account_id,
            product_id=transaction.product_id,
            original_transaction_id=transaction.original_transaction_id,
            expires_at=transaction.expires_date.isoformat() if transaction.expires_date else None,
        )
        metrics.record_transition(SubscriptionStatus.ACTIVE.value)
        return StoreVerification(
            account_id=account_id,
            tier=tier,
            product_id=transaction.product_id,
            expires_at=transaction.expires_date,
        )

    async def apply_notification(
        self,
        event: AppleStoreKitWebhookEvent,
        transaction: AppleTransactionInfo | None,
        now: datetime | None = None,
    ) -> NotificationResult:
        """
        Apply one notification. Never raises for unknown accounts or types.

        `transaction` is the App Store Server API's copy of the transaction
        the notification names. The notification only says what happened;
        state is written from the fetched transaction, and a notification
        that the transaction contradicts writes nothing.
        """
        if transaction is None:
            logger.info(
                "apple_notification_without_transaction",
                notification_type=event.notification_type,
            )
            return NotificationResult(processed=False, reason="no_transaction")

        now = now or datetime.now(UTC)
        if not self._consistent(event, transaction, now):
            logger.warning(
                "apple_notification_contradicted",
                notification_type=event.notification_type,
                subtype=event.subtype,
                transaction_id=transaction.transaction_id,
                expires_at=transaction.expires_date.isoformat() if transaction.expires_date else None,
                revoked=transaction.is_revoked(),
            )
            return NotificationResult(processed=False, reason="contradicted_by_transaction")

        values = self._values_for(event, transaction, now)
        if values is None:
            logger.info(
                "apple_notification_logged_only",
                notification_type=event.notification_type,
                subtype=event.subtype,
                original_transaction_id=transaction.original_transaction_id,
            )
            return NotificationResult(processed=True)

        account_id = await self._update_where(
            Subscription.iap_original_transaction_id == transaction.original_transaction_id,
            values,
        )
        if account_id is None:
            await self.session.rollback()
            logger.info(
                "apple_notification_account_not_found",
                notification_type=event.notification_type,
                original_transaction_id=transaction.original_transaction_id,
            )
            return NotificationResult(processed=False, reason="user_not_found")

        await self.session.commit()
        logger.info(
            "apple_notification_applied",
            account_id=account_id,
            notification_type=event.notification_type,
            subtype=event.subtype,
            status=values["status"].value,
        )
        metrics.record_transition(values["status"].value)
        return NotificationResult(processed=True)

    # ========================================================================
    # Private Helper Methods
    # ========================================================================

    def _consistent(
        self,
        event: AppleStoreKitWebhookEvent,
        transaction: AppleTransactionInfo,
        now: datetime,
    ) -> bool:
        notification_type = event.known_type
        if transaction.is_revoked():
            return True
        if notification_type in _REVOKING:
            return False

        expired = transaction.expires_date is None or transaction.expires_date <= now
        if notification_type in _ACTIVATING:
            return not expired
        if notification_type in _EXPIRING:
            return expired
        if _is_billing_failure(event):
            return expired
        return True

    def _values_for(
        self,
        event: AppleStoreKitWebhookEvent,
        transaction: AppleTransactionInfo,
        now: datetime,
    ) -> dict[str, Any] | None:
        notification_type = event.known_type

        if notification_type in _REVOKING or transaction.is_revoked():
            return {
                "tier": SubscriptionTier.FREE,
                "status": SubscriptionStatus.CANCELED,
                "iap_expires_at": now,
                "iap_original_transaction_id": None,
            }
        if notification_type in _ACTIVATING:
            return {
                "tier": SubscriptionTier.PRO,
                "status": SubscriptionStatus.ACTIVE,
                "iap_product_id": transaction.product_id,
                "iap_expires_at": transaction.expires_date,
            }
        if notification_type in _EXPIRING:
            return {
                "tier": SubscriptionTier.FREE,
                "status": SubscriptionStatus.CANCELED,
                "iap_expires_at": now,
            }
        if _is_billing_failure(event):
            return {"status": SubscriptionStatus.PAST_DUE}
        return None

    async def _update_where(self, condition: Any, values: dict[str, Any]) -> str | None:
        stmt = (
            update(Subscription)
            .where(condition)
            .values(**values, updated_at=utc_now())
            .returning(Subscription.account_id)
            .execution_options(synchronize_session=False)
        )
        result = await self.session.execute(stmt)
        return result.scalars().first()
