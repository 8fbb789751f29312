"""
Domain Models - Internal business logic models using dataclasses.

NO DICTIONARIES - All data structures are strongly typed immutable dataclasses.
"""

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from uuid import UUID

from app.models.api import (
    ActionType,
    GrantType,
    SubscriptionSource,
    SubscriptionStatus,
    SubscriptionTier,
    TransactionType,
)

# ============================================================================
# Token Ledger
# ============================================================================


@dataclass(frozen=True)
class TokenBalanceData:
    """Immutable balance snapshot."""

    account_id: str
    balance: int
    lifetime_earned: int
    lifetime_spent: int
    updated_at: datetime | None = None

    def __post_init__(self) -> None:
        """Validate ledger invariants."""
        if self.balance < 0:
            raise ValueError(f"Balance cannot be negative: {self.balance}")
        if self.balance != self.lifetime_earned - self.lifetime_spent:
            raise ValueError(
                f"Balance {self.balance} != earned {self.lifetime_earned} - spent {self.lifetime_spent}"
            )

    @classmethod
    def empty(cls, account_id: str) -> "TokenBalanceData":
        return cls(account_id=account_id, balance=0, lifetime_earned=0, lifetime_spent=0)


@dataclass(frozen=True)
class TokenTransactionData:
    """Immutable token transaction row."""

    transaction_id: UUID
    account_id: str
    amount: int
    transaction_type: TransactionType
    action_type: str
    reference_id: str | None
    balance_after: int
    created_at: datetime


@dataclass(frozen=True)
class GrantIntent:
    """Domain model for a grant before persistence - immutable intent."""

    account_id: str
    amount: int
    grant_type: GrantType
    description: str
    reference_id: str | None = None

    def __post_init__(self) -> None:
        """Validate grant constraints."""
        if not self.account_id:
            raise ValueError("account_id cannot be empty")
        if self.amount <= 0:
            raise ValueError(f"Grant amount must be positive: {self.amount}")
        if not self.description:
            raise ValueError("Description cannot be empty")


@dataclass(frozen=True)
class ConsumeSuccess:
    """A token was spent."""

    transaction_id: UUID
    new_balance: int
    action_type: ActionType


@dataclass(frozen=True)
class InsufficientBalance:
    """Consume refused - nothing was written."""

    balance: int
    error: str = "insufficient_balance"


ConsumeResult = ConsumeSuccess | InsufficientBalance


@dataclass(frozen=True)
class GrantSuccess:
    """Tokens were added."""

    transaction_id: UUID
    new_balance: int


@dataclass(frozen=True)
class LedgerReplay:
    """Result of rebuilding a balance from its transaction log."""

    account_id: str
    stored: TokenBalanceData
    replayed_balance: int
    replayed_earned: int
    replayed_spent: int
    transaction_count: int

    @property
    def consistent(self) -> bool:
        return (
            self.replayed_balance == self.stored.balance
            and self.replayed_earned == self.stored.lifetime_earned
            and self.replayed_spent == self.stored.lifetime_spent
        )


# ============================================================================
# Idempotent Purchases
# ============================================================================


class PurchaseOutcome(str, Enum):
    """Result of applying a one-time purchase."""

    APPLIED = "applied"
    DUPLICATE = "duplicate"


@dataclass(frozen=True)
class PurchaseIntent:
    """One-time purchase keyed by the processor's checkout session id."""

    session_id: str
    account_id: str
    credits: int
    amount_cents: int

    def __post_init__(self) -> None:
        """Validate purchase constraints."""
        if not self.session_id:
            raise ValueError("session_id cannot be empty")
        if not self.account_id:
            raise ValueError("account_id cannot be empty")
        if self.credits <= 0:
            raise ValueError(f"Credits must be positive: {self.credits}")
        if self.amount_cents < 0:
            raise ValueError(f"Amount cannot be negative: {self.amount_cents}")


@dataclass(frozen=True)
class PurchaseResult:
    """Outcome of the idempotency guard."""

    outcome: PurchaseOutcome
    session_id: str
    new_balance: int | None = None


# ============================================================================
# Subscriptions
# ============================================================================


@dataclass(frozen=True)
class SubscriptionData:
    """Immutable subscription snapshot."""

    account_id: str
    tier: SubscriptionTier
    status: SubscriptionStatus
    stripe_customer_id: str | None
    stripe_subscription_id: str | None
    current_period_start: datetime | None
    current_period_end: datetime | None
    cancel_at_period_end: bool
    iap_product_id: str | None
    iap_original_transaction_id: str | None
    iap_expires_at: datetime | None

    @property
    def source(self) -> SubscriptionSource:
        """Store-billed when store product fields are present."""
        if self.iap_product_id or self.iap_original_transaction_id:
            return SubscriptionSource.PLATFORM_STORE
        return SubscriptionSource.PROCESSOR


@dataclass(frozen=True)
class SubscriptionChange:
    """
    Full target state derived from one event.

    Fields left as None are not written. `clear_subscription_id` forces the
    stored processor subscription id to NULL.
    """

    status: SubscriptionStatus
    tier: SubscriptionTier | None = None
    stripe_subscription_id: str | None = None
    clear_subscription_id: bool = False
    current_period_end: datetime | None = None
    cancel_at_period_end: bool | None = None

    def __post_init__(self) -> None:
        """Canceled always drops to free and forgets the subscription id."""
        if self.status == SubscriptionStatus.CANCELED:
            if self.tier is not SubscriptionTier.FREE:
                raise ValueError("Canceled subscriptions must reset tier to free")
            if not self.clear_subscription_id:
                raise ValueError("Canceled subscriptions must clear the subscription id")
        if self.clear_subscription_id and self.stripe_subscription_id is not None:
            raise ValueError("Cannot both set and clear the subscription id")

    @classmethod
    def canceled(cls) -> "SubscriptionChange":
        return cls(
            status=SubscriptionStatus.CANCELED,
            tier=SubscriptionTier.FREE,
            clear_subscription_id=True,
            cancel_at_period_end=False,
        )


# ============================================================================
# Entitlement
# ============================================================================


@dataclass(frozen=True)
class EntitlementDecision:
    """Read-side decision for external feature code."""

    can_create: bool
    remaining: int
    is_pro: bool
    token_balance: int
    reason: str
