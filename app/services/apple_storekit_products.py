"""
Apple StoreKit product catalog configuration.

Maps App Store subscription product IDs to the tier they entitle.
Product IDs must match those configured in App Store Connect.
"""

from dataclasses import dataclass

from app.models.api import SubscriptionTier


@dataclass(frozen=True)
class AppleStoreKitProduct:
    """Apple StoreKit subscription product."""

    product_id: str  # App Store Connect product ID
    tier: SubscriptionTier
    name: str  # Display name

    def __post_init__(self) -> None:
        """Validate product configuration."""
        if not self.product_id:
            raise ValueError("Product ID required")
        if not self.tier.is_paid:
            raise ValueError(f"Store products must grant a paid tier: {self.tier}")
        if not self.name:
            raise ValueError("Name required")


# Legacy short ids and reverse-domain ids both appear in shipped app builds
APPLE_STOREKIT_PRODUCTS: dict[str, AppleStoreKitProduct] = {
    product.product_id: product
    for product in (
        AppleStoreKitProduct("pro_monthly", SubscriptionTier.PRO, "Pro Monthly"),
        AppleStoreKitProduct("pro_annual", SubscriptionTier.PRO, "Pro Annual"),
        AppleStoreKitProduct("ai.realworth.pro.monthly", SubscriptionTier.PRO, "Pro Monthly"),
        AppleStoreKitProduct("ai.realworth.pro.annual", SubscriptionTier.PRO, "Pro Annual"),
    )
}


def get_product(product_id: str) -> AppleStoreKitProduct:
    """
    Get product configuration by ID.

    Raises:
        ValueError: If product ID not found
    """
    product = APPLE_STOREKIT_PRODUCTS.get(product_id)
    if not product:
        raise ValueError(f"Unknown product ID: {product_id}")
    return product


def get_tier_for_product(product_id: str) -> SubscriptionTier:
    return get_product(product_id).tier
