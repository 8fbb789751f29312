"""
Hypothesis Property-Based Tests for the token ledger and entitlement rules.

Ledger properties run against an in-memory SQLite store created per example.
"""

from datetime import UTC, datetime, timedelta

import pytest
from hypothesis import given, settings
from hypothesis import strategies as st
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from app.db.models import Base
from app.models.api import ActionType, GrantType, SubscriptionStatus, SubscriptionTier
from app.models.domain import (
    ConsumeSuccess,
    GrantIntent,
    InsufficientBalance,
    PurchaseIntent,
    SubscriptionData,
)
from app.services.entitlement import evaluate_pro
from app.services.token_ledger import TokenLedger

# ============================================================================
# Hypothesis Strategies
# ============================================================================

grant_ops = st.integers(min_value=1, max_value=5).map(lambda amount: ("grant", amount))
consume_ops = st.just(("consume", 1))
ledger_ops = st.lists(st.one_of(grant_ops, consume_ops), min_size=1, max_size=25)

statuses = st.sampled_from(list(SubscriptionStatus))
tiers = st.sampled_from(list(SubscriptionTier))


# ============================================================================
# Ledger Properties
# ============================================================================


class TestLedgerProperties:
    """Balance never goes negative and always matches its log."""

    @given(ledger_ops)
    @settings(max_examples=25, deadline=None)
    @pytest.mark.asyncio
    async def test_ledger_matches_model(self, ops: list[tuple[str, int]]):
        engine = create_async_engine("sqlite+aiosqlite://")
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

        expected = 0
        try:
            for op, amount in ops:
                async with factory() as session:
                    ledger = TokenLedger(session)
                    if op == "grant":
                        result = await ledger.grant(
                            GrantIntent(
                                account_id="acct-1",
                                amount=amount,
                                grant_type=GrantType.BONUS,
                                description="property grant",
                            )
                        )
                        expected += amount
                        assert result.new_balance == expected
                    else:
                        consumed = await ledger.consume("acct-1", ActionType.APPRAISAL)
                        if expected > 0:
                            expected -= 1
                            assert isinstance(consumed, ConsumeSuccess)
                            assert consumed.new_balance == expected
                        else:
                            assert isinstance(consumed, InsufficientBalance)
                            assert consumed.balance == 0

            async with factory() as session:
                replay = await TokenLedger(session).replay("acct-1")
        finally:
            await engine.dispose()

        assert replay.consistent
        assert replay.stored.balance == expected
        assert replay.stored.balance >= 0


# ============================================================================
# Intent Validation Properties
# ============================================================================


class TestIntentValidation:
    @given(st.integers(max_value=0))
    @settings(max_examples=50)
    def test_non_positive_grant_rejected(self, amount: int):
        with pytest.raises(ValueError):
            GrantIntent(
                account_id="acct-1",
                amount=amount,
                grant_type=GrantType.ADMIN,
                description="x",
            )

    @given(st.integers(min_value=1, max_value=1_000_000))
    @settings(max_examples=50)
    def test_positive_grant_accepted(self, amount: int):
        intent = GrantIntent(
            account_id="acct-1",
            amount=amount,
            grant_type=GrantType.ADMIN,
            description="x",
        )
        assert intent.amount == amount

    @given(st.integers(max_value=0), st.integers(min_value=0, max_value=10_000))
    @settings(max_examples=50)
    def test_purchase_needs_positive_credits(self, credits: int, amount_cents: int):
        with pytest.raises(ValueError):
            PurchaseIntent(
                session_id="cs_1",
                account_id="acct-1",
                credits=credits,
                amount_cents=amount_cents,
            )


# ============================================================================
# Entitlement Properties
# ============================================================================


def make_subscription(
    tier: SubscriptionTier,
    status: SubscriptionStatus,
    iap_expires_at: datetime | None = None,
    store: bool = False,
) -> SubscriptionData:
    return SubscriptionData(
        account_id="acct-1",
        tier=tier,
        status=status,
        stripe_customer_id=None if store else "cus_1",
        stripe_subscription_id=None,
        current_period_start=None,
        current_period_end=None,
        cancel_at_period_end=False,
        iap_product_id="pro_monthly" if store else None,
        iap_original_transaction_id="2000000100" if store else None,
        iap_expires_at=iap_expires_at,
    )


class TestEntitlementProperties:
    @given(statuses, st.booleans())
    @settings(max_examples=50)
    def test_free_tier_is_never_pro(self, status: SubscriptionStatus, store: bool):
        now = datetime(2024, 6, 1, tzinfo=UTC)
        sub = make_subscription(
            SubscriptionTier.FREE, status, iap_expires_at=now + timedelta(days=1), store=store
        )
        assert evaluate_pro(sub, now)[0] is False

    @given(tiers, statuses)
    @settings(max_examples=50)
    def test_pro_iff_paid_and_active_for_processor(
        self, tier: SubscriptionTier, status: SubscriptionStatus
    ):
        now = datetime(2024, 6, 1, tzinfo=UTC)
        is_pro, _ = evaluate_pro(make_subscription(tier, status), now)
        assert is_pro == (tier.is_paid and status == SubscriptionStatus.ACTIVE)

    @given(st.integers(min_value=-10_000, max_value=10_000), statuses)
    @settings(max_examples=100)
    def test_store_expiry_boundary(self, offset_minutes: int, status: SubscriptionStatus):
        now = datetime(2024, 6, 1, tzinfo=UTC)
        sub = make_subscription(
            SubscriptionTier.PRO,
            status,
            iap_expires_at=now + timedelta(minutes=offset_minutes),
            store=True,
        )

        is_pro, _ = evaluate_pro(sub, now)

        assert is_pro == (status == SubscriptionStatus.ACTIVE or offset_minutes > 0)
