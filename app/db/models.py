"""
Database Models - SQLAlchemy ORM models with strict typing.

NO DICTIONARIES - All columns use Mapped[] type annotations.
"""

from datetime import UTC, datetime
from uuid import UUID, uuid4

from sqlalchemy import (
    BigInteger,
    Boolean,
    CheckConstraint,
    DateTime,
    Index,
    Integer,
    String,
    Text,
    Uuid,
)
from sqlalchemy import Enum as SQLEnum
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from app.models.api import SubscriptionStatus, SubscriptionTier, TransactionType


class Base(DeclarativeBase):
    """Base class for all ORM models."""

    pass


def utc_now() -> datetime:
    """Get current UTC timestamp."""
    return datetime.now(UTC)


def _string_enum(enum_cls: type, name: str, length: int = 20) -> SQLEnum:
    return SQLEnum(
        enum_cls,
        name=name,
        native_enum=False,
        length=length,
        values_callable=lambda x: [e.value for e in x],
    )


class Subscription(Base):
    """
    ORM model for subscriptions table.

    One row per account, created at signup (free/inactive) and never deleted.
    Mutated only by the subscription state machine and the platform-store path.
    """

    __tablename__ = "subscriptions"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    account_id: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)

    tier: Mapped[SubscriptionTier] = mapped_column(
        _string_enum(SubscriptionTier, "subscription_tier"),
        nullable=False,
        default=SubscriptionTier.FREE,
    )
    status: Mapped[SubscriptionStatus] = mapped_column(
        _string_enum(SubscriptionStatus, "subscription_status"),
        nullable=False,
        default=SubscriptionStatus.INACTIVE,
    )

    # Processor (Stripe) billing
    stripe_customer_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    stripe_subscription_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    current_period_start: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    current_period_end: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    cancel_at_period_end: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    # Platform store (App Store) billing
    iap_product_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    iap_original_transaction_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    iap_expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now
    )

    __table_args__ = (
        Index(
            "uq_subscriptions_stripe_customer",
            "stripe_customer_id",
            unique=True,
            postgresql_where=(stripe_customer_id.isnot(None)),
        ),
        Index(
            "idx_subscriptions_iap_original_tx",
            "iap_original_transaction_id",
            postgresql_where=(iap_original_transaction_id.isnot(None)),
        ),
        Index("idx_subscriptions_status", "status"),
    )

    def __repr__(self) -> str:
        """String representation for debugging."""
        return (
            f"<Subscription(account_id={self.account_id}, tier={self.tier}, "
            f"status={self.status}, customer={self.stripe_customer_id})>"
        )


class TokenBalance(Base):
    """
    ORM model for token_balances table.

    One row per account. Mutated only through conditional UPDATE statements.
    """

    __tablename__ = "token_balances"

    account_id: Mapped[str] = mapped_column(String(255), primary_key=True)
    balance: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    lifetime_earned: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    lifetime_spent: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now
    )

    __table_args__ = (
        CheckConstraint("balance >= 0", name="ck_token_balance_non_negative"),
        CheckConstraint("lifetime_earned >= 0", name="ck_token_earned_non_negative"),
        CheckConstraint("lifetime_spent >= 0", name="ck_token_spent_non_negative"),
        CheckConstraint(
            "balance = lifetime_earned - lifetime_spent",
            name="ck_token_balance_consistency",
        ),
    )

    def __repr__(self) -> str:
        """String representation for debugging."""
        return f"<TokenBalance(account_id={self.account_id}, balance={self.balance})>"


class TokenTransaction(Base):
    """
    ORM model for token_transactions table.

    Append-only ledger. Replaying `amount` in order reproduces the balance.
    """

    __tablename__ = "token_transactions"

    # Insertion order; breaks ties between rows sharing a created_at
    id: Mapped[int] = mapped_column(
        BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True
    )
    transaction_id: Mapped[UUID] = mapped_column(Uuid, nullable=False, unique=True, default=uuid4)
    account_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)

    # Signed effect: negative for consume, positive for grant
    amount: Mapped[int] = mapped_column(BigInteger, nullable=False)
    transaction_type: Mapped[TransactionType] = mapped_column(
        _string_enum(TransactionType, "token_transaction_type"),
        nullable=False,
    )
    # ActionType for consumes, GrantType for grants
    action_type: Mapped[str] = mapped_column(String(50), nullable=False)
    reference_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    balance_after: Mapped[int] = mapped_column(BigInteger, nullable=False)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )

    __table_args__ = (
        CheckConstraint("amount <> 0", name="ck_token_tx_amount_nonzero"),
        CheckConstraint("balance_after >= 0", name="ck_token_tx_balance_non_negative"),
        CheckConstraint(
            "(transaction_type = 'consume' AND amount < 0) "
            "OR (transaction_type = 'grant' AND amount > 0)",
            name="ck_token_tx_sign",
        ),
        Index("idx_token_tx_account_created", "account_id", "created_at", "id"),
        Index(
            "idx_token_tx_reference_id",
            "reference_id",
            postgresql_where=(reference_id.isnot(None)),
        ),
    )

    def __repr__(self) -> str:
        """String representation for debugging."""
        return (
            f"<TokenTransaction(id={self.id}, transaction_id={self.transaction_id}, "
            f"account_id={self.account_id}, "
            f"amount={self.amount}, balance_after={self.balance_after})>"
        )


class AppraisalPurchase(Base):
    """
    ORM model for appraisal_purchases table.

    Idempotency record for one-time purchases. The unique session id is the
    guard: a row existing means its tokens were already granted.
    """

    __tablename__ = "appraisal_purchases"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    stripe_session_id: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    account_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    amount_cents: Mapped[int] = mapped_column(BigInteger, nullable=False)
    credits_granted: Mapped[int] = mapped_column(BigInteger, nullable=False)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )

    __table_args__ = (
        CheckConstraint("credits_granted > 0", name="ck_purchase_credits_positive"),
        CheckConstraint("amount_cents >= 0", name="ck_purchase_amount_non_negative"),
    )

    def __repr__(self) -> str:
        """String representation for debugging."""
        return (
            f"<AppraisalPurchase(session={self.stripe_session_id}, "
            f"account_id={self.account_id}, credits={self.credits_granted})>"
        )
