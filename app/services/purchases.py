"""
Purchase Service - idempotent application of one-time purchases.

The unique constraint on appraisal_purchases.stripe_session_id is the guard.
The purchase row and its token grant are committed together, so a row
existing means the credits were granted, and a second writer for the same
session (redelivery or a concurrent duplicate) loses on the constraint and
writes nothing.
"""

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from app.db.models import AppraisalPurchase
from app.models.api import GrantType
from app.models.domain import GrantIntent, PurchaseIntent, PurchaseOutcome, PurchaseResult
from app.observability.metrics import metrics
from app.services.token_ledger import TokenLedger

logger = get_logger(__name__)


class PurchaseService:
    """Applies one-time purchases exactly once per checkout session."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session
        self.ledger = TokenLedger(session)

    async def apply_purchase(self, intent: PurchaseIntent) -> PurchaseResult:
        """
        Record the purchase and credit its tokens in one transaction.

        Returns:
            APPLIED with the new balance, or DUPLICATE if this session was
            already applied
        """
        self.session.add(
            AppraisalPurchase(
                stripe_session_id=intent.session_id,
                account_id=intent.account_id,
                amount_cents=intent.amount_cents,
                credits_granted=intent.credits,
            )
        )
        try:
            await self.session.flush()
        except IntegrityError:
            await self.session.rollback()
            logger.info(
                "purchase_already_applied",
                session_id=intent.session_id,
                account_id=intent.account_id,
            )
            return PurchaseResult(outcome=PurchaseOutcome.DUPLICATE, session_id=intent.session_id)

        grant = await self.ledger.apply_grant(
            GrantIntent(
                account_id=intent.account_id,
                amount=intent.credits,
                grant_type=GrantType.PURCHASE,
                description=f"Purchased {intent.credits} appraisal credit(s)",
                reference_id=intent.session_id,
            )
        )

        try:
            await self.session.commit()
        except IntegrityError:
            # A concurrent delivery committed the same session first
            await self.session.rollback()
            logger.info(
                "purchase_already_applied",
                session_id=intent.session_id,
                account_id=intent.account_id,
            )
            return PurchaseResult(outcome=PurchaseOutcome.DUPLICATE, session_id=intent.session_id)

        logger.info(
            "purchase_applied",
            session_id=intent.session_id,
            account_id=intent.account_id,
            credits=intent.credits,
            amount_cents=intent.amount_cents,
            new_balance=grant.new_balance,
        )
        metrics.record_grant(GrantType.PURCHASE.value, intent.credits)
        return PurchaseResult(
            outcome=PurchaseOutcome.APPLIED,
            session_id=intent.session_id,
            new_balance=grant.new_balance,
        )
