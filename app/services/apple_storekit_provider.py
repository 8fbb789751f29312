"""
Apple StoreKit Provider Implementation.

NO DICTIONARIES - All data uses strongly typed models.

Uses Apple App Store Server API v2 for transaction lookup.
https://developer.apple.com/documentation/appstoreserverapi
"""

import base64
import binascii
import json
import time
from datetime import UTC, datetime
from typing import Any

import httpx
import jwt
from structlog import get_logger

from app.exceptions import PaymentProviderError, WebhookVerificationError
from app.models.apple_storekit import (
    AppleStoreKitConfig,
    AppleStoreKitWebhookEvent,
    AppleTransactionInfo,
)

logger = get_logger(__name__)

_JWT_LIFETIME_SECONDS = 3600
_JWT_REFRESH_MARGIN_SECONDS = 300


def _from_millis(ms: Any) -> datetime | None:
    if isinstance(ms, bool) or not isinstance(ms, int | float):
        return None
    return datetime.fromtimestamp(ms / 1000, tz=UTC)


def decode_jws(signed_data: str) -> dict[str, Any]:
    """
    Decode a JWS payload from Apple without chain verification.

    Transactions used for entitlement are re-fetched from the App Store
    Server API over HTTPS, so only their ids are read from client- or
    notification-supplied JWS.

    Raises:
        PaymentProviderError: Not a decodable JWS
    """
    try:
        payload: dict[str, Any] = jwt.decode(
            signed_data,
            options={"verify_signature": False},
        )
        return payload
    except jwt.exceptions.DecodeError as e:
        raise PaymentProviderError(f"Invalid JWS data: {e}") from e


def parse_transaction_info(data: dict[str, Any]) -> AppleTransactionInfo:
    """Parse transaction info from a decoded JWS payload."""
    try:
        return AppleTransactionInfo(
            transaction_id=str(data["transactionId"]),
            original_transaction_id=str(data["originalTransactionId"]),
            product_id=str(data["productId"]),
            bundle_id=str(data.get("bundleId", "")),
            purchase_date=_from_millis(data.get("purchaseDate")) or datetime.now(UTC),
            environment=str(data.get("environment", "Production")),
            type=str(data.get("type", "Auto-Renewable Subscription")),
            expires_date=_from_millis(data.get("expiresDate")),
            revocation_date=_from_millis(data.get("revocationDate")),
        )
    except (KeyError, ValueError) as exc:
        raise PaymentProviderError(f"Malformed transaction info: {exc}") from exc


class AppleStoreKitProvider:
    """
    Apple App Store Server API provider.

    Handles transaction lookup and notification decoding.
    """

    def __init__(self, config: AppleStoreKitConfig, timeout: float = 30.0) -> None:
        """
        Initialize Apple StoreKit provider.

        Args:
            config: StoreKit configuration with API credentials
            timeout: Per-request timeout in seconds
        """
        self.config = config
        self.timeout = timeout
        self._jwt_token: str | None = None
        self._jwt_expires_at: float = 0

        logger.info(
            "apple_storekit_provider_initialized",
            bundle_id=config.bundle_id,
            environment=config.environment,
        )

    def _signing_key(self) -> str:
        """PEM private key; base64-wrapped PEM is unwrapped."""
        key = self.config.private_key.strip()
        if key.startswith("-----BEGIN"):
            return key
        try:
            return base64.b64decode(key, validate=True).decode("utf-8")
        except (binascii.Error, UnicodeDecodeError) as exc:
            raise PaymentProviderError("Apple private key is neither PEM nor base64 PEM") from exc

    def _generate_jwt(self) -> str:
        """
        Generate JWT for App Store Server API authentication.

        The JWT is valid for up to 60 minutes and reused until close to expiry.
        """
        now = time.time()

        if self._jwt_token and now < (self._jwt_expires_at - _JWT_REFRESH_MARGIN_SECONDS):
            return self._jwt_token

        expires_at = now + _JWT_LIFETIME_SECONDS
        payload = {
            "iss": self.config.issuer_id,
            "iat": int(now),
            "exp": int(expires_at),
            "aud": "appstoreconnect-v1",
            "bid": self.config.bundle_id,
        }

        # Apple requires ES256
        token = jwt.encode(
            payload,
            self._signing_key(),
            algorithm="ES256",
            headers={"kid": self.config.key_id},
        )

        self._jwt_token = token
        self._jwt_expires_at = expires_at

        return token

    async def _make_request(self, method: str, endpoint: str) -> dict[str, Any]:
        """Make authenticated request to App Store Server API."""
        url = f"{self.config.api_base_url}{endpoint}"
        headers = {
            "Authorization": f"Bearer {self._generate_jwt()}",
            "Content-Type": "application/json",
        }

        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.request(method, url, headers=headers)
        except httpx.HTTPError as exc:
            logger.error("apple_storekit_unreachable", error=str(exc))
            raise PaymentProviderError(f"App Store Server API unreachable: {exc}") from exc

        if response.status_code == 401:
            raise PaymentProviderError("Invalid API credentials")
        elif response.status_code == 404:
            raise PaymentProviderError("Transaction not found")
        elif response.status_code >= 400:
            logger.error(
                "apple_storekit_api_error",
                status=response.status_code,
                error=response.text,
            )
            raise PaymentProviderError(f"API error: {response.status_code}")

        result: dict[str, Any] = response.json()
        return result

    async def get_transaction_info(self, transaction_id: str) -> AppleTransactionInfo:
        """
        Get transaction information from App Store Server API.

        Raises:
            PaymentProviderError: If lookup fails
        """
        logger.info("getting_apple_transaction_info", transaction_id=transaction_id)

        result = await self._make_request("GET", f"/inApps/v1/transactions/{transaction_id}")

        signed_data = result.get("signedTransactionInfo")
        if not isinstance(signed_data, str) or not signed_data:
            raise PaymentProviderError("No transaction info in response")

        transaction = parse_transaction_info(decode_jws(signed_data))
        if transaction.bundle_id and transaction.bundle_id != self.config.bundle_id:
            raise PaymentProviderError(
                f"Transaction belongs to bundle {transaction.bundle_id}, "
                f"expected {self.config.bundle_id}"
            )

        logger.info(
            "apple_transaction_info_retrieved",
            transaction_id=transaction.transaction_id,
            product_id=transaction.product_id,
            environment=transaction.environment,
        )
        return transaction


def transaction_id_from_signed(signed_transaction: str) -> str:
    """Read only the transaction id out of a client-supplied signed transaction."""
    data = decode_jws(signed_transaction)
    transaction_id = data.get("transactionId")
    if transaction_id is None or str(transaction_id) == "":
        raise PaymentProviderError("Signed transaction has no transactionId")
    return str(transaction_id)


def decode_notification(payload: bytes) -> AppleStoreKitWebhookEvent:
    """
    Decode an App Store Server Notification v2 request body.

    Nothing here is verified; the embedded transaction is only good for its
    id, which callers re-fetch from the App Store Server API.

    Raises:
        WebhookVerificationError: Body is not a decodable notification
    """
    try:
        body = json.loads(payload)
    except (json.JSONDecodeError, UnicodeDecodeError) as exc:
        logger.error("apple_storekit_webhook_invalid_json", error=str(exc))
        raise WebhookVerificationError("Invalid JSON payload") from exc

    signed_payload = body.get("signedPayload") if isinstance(body, dict) else None
    if not isinstance(signed_payload, str) or not signed_payload:
        raise WebhookVerificationError("No signedPayload in webhook")

    try:
        notification = decode_jws(signed_payload)
        data = notification.get("data") or {}

        transaction_info: AppleTransactionInfo | None = None
        signed_transaction = data.get("signedTransactionInfo")
        if signed_transaction:
            transaction_info = parse_transaction_info(decode_jws(signed_transaction))
    except PaymentProviderError as exc:
        logger.error("apple_storekit_webhook_undecodable", error=str(exc))
        raise WebhookVerificationError(f"Undecodable notification: {exc}") from exc

    event = AppleStoreKitWebhookEvent(
        notification_type=str(notification.get("notificationType", "")),
        subtype=notification.get("subtype"),
        notification_uuid=str(notification.get("notificationUUID", "")),
        signed_date=_from_millis(notification.get("signedDate")),
        environment=str(data.get("environment", "Production")),
        transaction_info=transaction_info,
    )

    logger.info(
        "apple_storekit_webhook_decoded",
        notification_type=event.notification_type,
        subtype=event.subtype,
        notification_uuid=event.notification_uuid,
        transaction_id=transaction_info.transaction_id if transaction_info else None,
    )
    return event
