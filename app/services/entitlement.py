"""
Entitlement Service - read-side decision combining allow-list, subscription and ledger.

Read only. Never writes.
"""

from datetime import UTC, datetime

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from app.db.models import Subscription
from app.models.api import SubscriptionSource, SubscriptionStatus
from app.models.domain import EntitlementDecision, SubscriptionData
from app.services.token_ledger import TokenLedger

logger = get_logger(__name__)


def _as_utc(value: datetime) -> datetime:
    """Naive timestamps are stored UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value


def evaluate_pro(subscription: SubscriptionData | None, now: datetime) -> tuple[bool, str]:
    """
    Paid tier AND an active billing source.

    Store-billed subscriptions also count while their stored expiration is
    in the future, because store status sync lags real entitlement.
    """
    if subscription is None:
        return False, "no_subscription"
    if not subscription.tier.is_paid:
        return False, "free_tier"

    if subscription.status == SubscriptionStatus.ACTIVE:
        return True, f"{subscription.source.value}_active"

    if (
        subscription.source == SubscriptionSource.PLATFORM_STORE
        and subscription.iap_expires_at is not None
        and _as_utc(subscription.iap_expires_at) > now
    ):
        return True, "store_unexpired"

    return False, f"status_{subscription.status.value}"


class EntitlementService:
    """Answers "may this account use the metered feature, and is it pro?"."""

    def __init__(
        self,
        session: AsyncSession,
        operator_emails: list[str] | None = None,
        operator_account_ids: list[str] | None = None,
    ) -> None:
        self.session = session
        self.ledger = TokenLedger(session)
        self.operator_emails = {email.lower() for email in operator_emails or []}
        self.operator_account_ids = set(operator_account_ids or [])

    def is_operator(self, account_id: str, email: str | None = None) -> bool:
        if account_id in self.operator_account_ids:
            return True
        return bool(email) and email.strip().lower() in self.operator_emails

    async def get_subscription(self, account_id: str) -> SubscriptionData | None:
        stmt = select(Subscription).where(Subscription.account_id == account_id)
        result = await self.session.execute(stmt)
        row = result.scalar_one_or_none()
        if row is None:
            return None
        return SubscriptionData(
            account_id=row.account_id,
            tier=row.tier,
            status=row.status,
            stripe_customer_id=row.stripe_customer_id,
            stripe_subscription_id=row.stripe_subscription_id,
            current_period_start=row.current_period_start,
            current_period_end=row.current_period_end,
            cancel_at_period_end=row.cancel_at_period_end,
            iap_product_id=row.iap_product_id,
            iap_original_transaction_id=row.iap_original_transaction_id,
            iap_expires_at=row.iap_expires_at,
        )

    async def check(
        self,
        account_id: str,
        email: str | None = None,
        now: datetime | None = None,
    ) -> EntitlementDecision:
        """
        Evaluate entitlement for an account.

        Creating requires a positive token balance regardless of pro status;
        pro accounts receive their tokens through periodic grants.
        """
        now = _as_utc(now) if now else datetime.now(UTC)
        balance = await self.ledger.get_balance(account_id)

        if self.is_operator(account_id, email):
            is_pro, reason = True, "operator"
        else:
            is_pro, reason = evaluate_pro(await self.get_subscription(account_id), now)

        decision = EntitlementDecision(
            can_create=balance.balance > 0,
            remaining=balance.balance,
            is_pro=is_pro,
            token_balance=balance.balance,
            reason=reason,
        )
        logger.info(
            "entitlement_checked",
            account_id=account_id,
            is_pro=decision.is_pro,
            can_create=decision.can_create,
            token_balance=decision.token_balance,
            reason=reason,
        )
        return decision
