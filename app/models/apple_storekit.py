"""
Apple StoreKit domain models - Immutable dataclasses for the platform-store path.

NO DICTIONARIES - All data uses strongly typed models.

Apple App Store Server API v2 uses JWS (JSON Web Signature) format for
transaction and notification data.
"""

from dataclasses import dataclass
from datetime import datetime
from enum import Enum


class AppleNotificationType(str, Enum):
    """App Store Server Notification v2 types this service reacts to or logs."""

    SUBSCRIBED = "SUBSCRIBED"
    DID_RENEW = "DID_RENEW"
    OFFER_REDEEMED = "OFFER_REDEEMED"
    EXPIRED = "EXPIRED"
    GRACE_PERIOD_EXPIRED = "GRACE_PERIOD_EXPIRED"
    REFUND = "REFUND"
    REVOKE = "REVOKE"
    DID_FAIL_TO_RENEW = "DID_FAIL_TO_RENEW"
    DID_CHANGE_RENEWAL_STATUS = "DID_CHANGE_RENEWAL_STATUS"
    DID_CHANGE_RENEWAL_PREF = "DID_CHANGE_RENEWAL_PREF"
    TEST = "TEST"


GRACE_PERIOD_SUBTYPE = "GRACE_PERIOD"


@dataclass(frozen=True)
class AppleTransactionInfo:
    """Decoded StoreKit 2 transaction."""

    transaction_id: str  # Unique transaction identifier
    original_transaction_id: str  # First transaction in subscription chain
    product_id: str  # Product identifier from App Store Connect
    bundle_id: str  # App's bundle ID
    purchase_date: datetime
    environment: str  # "Production" or "Sandbox"
    type: str = "Auto-Renewable Subscription"
    expires_date: datetime | None = None  # For subscriptions
    revocation_date: datetime | None = None  # If revoked

    def __post_init__(self) -> None:
        """Validate identifiers."""
        if not self.transaction_id:
            raise ValueError("transaction_id is required")
        if not self.original_transaction_id:
            raise ValueError("original_transaction_id is required")
        if not self.product_id:
            raise ValueError("product_id is required")

    def is_revoked(self) -> bool:
        return self.revocation_date is not None

    def is_sandbox(self) -> bool:
        """Check if this is a sandbox (test) transaction."""
        return self.environment.lower() == "sandbox"


@dataclass(frozen=True)
class AppleStoreKitWebhookEvent:
    """Decoded App Store Server Notification v2."""

    notification_type: str  # e.g., "REFUND", "DID_RENEW"
    subtype: str | None  # e.g., "INITIAL_BUY", "GRACE_PERIOD"
    notification_uuid: str
    signed_date: datetime | None
    environment: str
    transaction_info: AppleTransactionInfo | None

    @property
    def known_type(self) -> AppleNotificationType | None:
        try:
            return AppleNotificationType(self.notification_type)
        except ValueError:
            return None


@dataclass(frozen=True)
class AppleStoreKitConfig:
    """Configuration for Apple App Store Server API."""

    key_id: str  # Key ID from App Store Connect
    issuer_id: str  # Issuer ID from App Store Connect
    private_key: str  # Private key (.p8 contents, PEM or base64 PEM)
    bundle_id: str  # App bundle ID
    environment: str  # "production" or "sandbox"

    @property
    def api_base_url(self) -> str:
        """Get the API base URL for the configured environment."""
        if self.environment.lower() == "sandbox":
            return "https://api.storekit-sandbox.itunes.apple.com"
        return "https://api.storekit.itunes.apple.com"

    def __post_init__(self) -> None:
        """Validate configuration fields."""
        if not self.key_id:
            raise ValueError("StoreKit key_id is required")
        if not self.issuer_id:
            raise ValueError("StoreKit issuer_id is required")
        if not self.private_key:
            raise ValueError("StoreKit private_key is required")
        if not self.bundle_id:
            raise ValueError("StoreKit bundle_id is required")
        if self.environment.lower() not in ("production", "sandbox"):
            raise ValueError("Environment must be 'production' or 'sandbox'")
