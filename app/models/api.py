"""
API Models - Pydantic models for request/response validation.

NO DICTIONARIES - All data structures are strongly typed.
"""

from datetime import datetime
from enum import Enum
from uuid import UUID

from pydantic import BaseModel, Field, field_validator


class SubscriptionTier(str, Enum):
    """Billed entitlement level."""

    FREE = "free"
    PRO = "pro"
    UNLIMITED = "unlimited"

    @property
    def is_paid(self) -> bool:
        return self is not SubscriptionTier.FREE


class SubscriptionStatus(str, Enum):
    """Subscription lifecycle state, independent of tier."""

    INACTIVE = "inactive"
    ACTIVE = "active"
    PAST_DUE = "past_due"
    CANCELED = "canceled"
    # Processor status we do not model (trialing, incomplete, ...) - needs review
    UNKNOWN = "unknown"


class SubscriptionSource(str, Enum):
    """Who bills the subscription."""

    PROCESSOR = "stripe"
    PLATFORM_STORE = "apple_iap"


class TransactionType(str, Enum):
    """Token transaction direction."""

    CONSUME = "consume"
    GRANT = "grant"


class ActionType(str, Enum):
    """Metered feature actions that consume a token."""

    APPRAISAL = "appraisal"
    ENHANCED_IMAGE = "enhanced_image"
    CHAT = "chat"
    LIST_ITEM = "list_item"


class GrantType(str, Enum):
    """Reasons tokens are granted."""

    PURCHASE = "purchase"
    REFUND = "refund"
    BONUS = "bonus"
    ADMIN = "admin"
    SUBSCRIPTION_GRANT = "subscription_grant"


# ============================================================================
# Token Ledger Models
# ============================================================================


class TokenBalanceResponse(BaseModel):
    """GET /v1/tokens/{account_id} response."""

    account_id: str
    balance: int
    lifetime_earned: int
    lifetime_spent: int


class ConsumeTokenRequest(BaseModel):
    """POST /v1/tokens/{account_id}/consume request body."""

    action_type: ActionType
    reference_id: str | None = Field(None, max_length=255)


class ConsumeTokenResponse(BaseModel):
    """Consume outcome - success carries the transaction, failure the balance."""

    success: bool
    transaction_id: UUID | None = None
    new_balance: int | None = None
    balance: int | None = None
    error: str | None = None


class GrantTokenRequest(BaseModel):
    """POST /v1/tokens/{account_id}/grant request body."""

    amount: int = Field(..., gt=0, le=100_000)
    grant_type: GrantType
    description: str = Field(..., min_length=1, max_length=500)

    @field_validator("description")
    @classmethod
    def validate_description(cls, v: str) -> str:
        """Reject whitespace-only descriptions."""
        if not v.strip():
            raise ValueError("description cannot be blank")
        return v.strip()


class GrantTokenResponse(BaseModel):
    """Grant outcome."""

    success: bool
    transaction_id: UUID
    new_balance: int


class TokenTransactionItem(BaseModel):
    """Single token transaction in history."""

    transaction_id: UUID
    amount: int
    transaction_type: TransactionType
    action_type: str
    reference_id: str | None
    balance_after: int
    created_at: datetime


class TokenHistoryResponse(BaseModel):
    """GET /v1/tokens/{account_id}/transactions response."""

    account_id: str
    transactions: list[TokenTransactionItem]


# ============================================================================
# Entitlement Models
# ============================================================================


class EntitlementResponse(BaseModel):
    """GET /v1/entitlements/{account_id} response."""

    can_create: bool
    remaining: int
    is_pro: bool
    token_balance: int


# ============================================================================
# Subscription Management Models
# ============================================================================


class CancelSubscriptionResponse(BaseModel):
    """POST /v1/subscriptions/{account_id}/cancel response."""

    success: bool
    cancel_at: datetime | None


class ReactivateSubscriptionResponse(BaseModel):
    """POST /v1/subscriptions/{account_id}/reactivate response."""

    success: bool
    renews_at: datetime | None
    message: str | None = None


class PurchaseCheckoutRequest(BaseModel):
    """POST /v1/purchases/{account_id}/checkout request body."""

    email: str | None = Field(None, max_length=320)


class PurchaseCheckoutResponse(BaseModel):
    """Hosted checkout session for a pay-per-use purchase."""

    session_id: str
    url: str | None


# ============================================================================
# Webhook Models
# ============================================================================


class WebhookAck(BaseModel):
    """Response body returned to the processor."""

    received: bool = True
    event_id: str | None = None
    outcome: str


class AppleNotificationAck(BaseModel):
    """Response body returned to the App Store."""

    received: bool = True
    processed: bool
    reason: str | None = None


# ============================================================================
# Platform Store Models
# ============================================================================


class AppleVerifyRequest(BaseModel):
    """POST /v1/store/apple/verify request body."""

    account_id: str = Field(..., min_length=1, max_length=255)
    transaction_id: str | None = Field(None, min_length=1, max_length=64)
    signed_transaction: str | None = Field(None, min_length=1)


class AppleVerifyResponse(BaseModel):
    """Platform-store verification outcome."""

    success: bool
    tier: SubscriptionTier
    product_id: str
    expires_at: datetime | None


# ============================================================================
# Health
# ============================================================================


class HealthResponse(BaseModel):
    """GET /health response."""

    status: str
    database: str
    version: str
