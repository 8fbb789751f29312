"""
Tests for the ledger, entitlement and platform-store routes.

Requests go through the ASGI app with the API key dependency active.
"""

from datetime import UTC, datetime, timedelta
from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.api.dependencies import ServiceContainer
from app.exceptions import PaymentProviderError
from app.models.api import SubscriptionStatus, SubscriptionTier
from app.models.apple_storekit import AppleTransactionInfo
from tests.conftest import load_subscription, seed_balance, seed_subscription

Factory = async_sessionmaker[AsyncSession]


class TestApiKey:
    async def test_missing_key_rejected(self, client: httpx.AsyncClient):
        response = await client.get("/v1/tokens/acct-1")
        assert response.status_code == 401

    async def test_wrong_key_rejected(self, client: httpx.AsyncClient):
        response = await client.get("/v1/tokens/acct-1", headers={"X-API-Key": "nope"})
        assert response.status_code == 401

    async def test_health_needs_no_key(self, client: httpx.AsyncClient):
        response = await client.get("/health")

        assert response.status_code == 200
        assert response.json()["database"] == "connected"
        assert response.json()["status"] == "healthy"


class TestTokenRoutes:
    async def test_balance_for_unknown_account_is_zero(
        self, client: httpx.AsyncClient, api_headers: dict[str, str]
    ):
        response = await client.get("/v1/tokens/acct-1", headers=api_headers)

        assert response.status_code == 200
        assert response.json() == {
            "account_id": "acct-1",
            "balance": 0,
            "lifetime_earned": 0,
            "lifetime_spent": 0,
        }

    async def test_consume_success(
        self,
        client: httpx.AsyncClient,
        api_headers: dict[str, str],
        session_factory: Factory,
    ):
        await seed_balance(session_factory, "acct-1", 2)

        response = await client.post(
            "/v1/tokens/acct-1/consume",
            json={"action_type": "appraisal", "reference_id": "req-1"},
            headers=api_headers,
        )

        assert response.status_code == 200
        body = response.json()
        assert body["success"] is True
        assert body["new_balance"] == 1
        assert body["transaction_id"] is not None

    async def test_consume_empty_balance_is_payment_required(
        self, client: httpx.AsyncClient, api_headers: dict[str, str]
    ):
        response = await client.post(
            "/v1/tokens/acct-1/consume",
            json={"action_type": "chat"},
            headers=api_headers,
        )

        assert response.status_code == 402
        body = response.json()
        assert body["success"] is False
        assert body["balance"] == 0
        assert body["error"] == "insufficient_balance"

    async def test_consume_unknown_action_rejected(
        self, client: httpx.AsyncClient, api_headers: dict[str, str]
    ):
        response = await client.post(
            "/v1/tokens/acct-1/consume",
            json={"action_type": "teleport"},
            headers=api_headers,
        )
        assert response.status_code == 422

    async def test_grant_then_history(self, client: httpx.AsyncClient, api_headers: dict[str, str]):
        grant = await client.post(
            "/v1/tokens/acct-1/grant",
            json={"amount": 3, "grant_type": "bonus", "description": "Launch promo"},
            headers=api_headers,
        )
        assert grant.status_code == 201
        assert grant.json()["new_balance"] == 3

        await client.post(
            "/v1/tokens/acct-1/consume", json={"action_type": "appraisal"}, headers=api_headers
        )

        history = await client.get(
            "/v1/tokens/acct-1/transactions", params={"limit": 10}, headers=api_headers
        )
        assert history.status_code == 200
        transactions = history.json()["transactions"]
        assert [tx["amount"] for tx in transactions] == [-1, 3]
        assert [tx["transaction_type"] for tx in transactions] == ["consume", "grant"]

    @pytest.mark.parametrize(
        "payload",
        [
            {"amount": 0, "grant_type": "bonus", "description": "x"},
            {"amount": 5, "grant_type": "bonus", "description": "   "},
            {"amount": 5, "grant_type": "lottery", "description": "x"},
        ],
    )
    async def test_grant_validation(
        self, client: httpx.AsyncClient, api_headers: dict[str, str], payload: dict
    ):
        response = await client.post("/v1/tokens/acct-1/grant", json=payload, headers=api_headers)
        assert response.status_code == 422

    async def test_history_limit_bounds(self, client: httpx.AsyncClient, api_headers: dict[str, str]):
        response = await client.get(
            "/v1/tokens/acct-1/transactions", params={"limit": 500}, headers=api_headers
        )
        assert response.status_code == 422


class TestEntitlementRoute:
    async def test_no_row_is_not_pro(self, client: httpx.AsyncClient, api_headers: dict[str, str]):
        response = await client.get("/v1/entitlements/acct-1", headers=api_headers)

        assert response.status_code == 200
        assert response.json() == {
            "can_create": False,
            "remaining": 0,
            "is_pro": False,
            "token_balance": 0,
        }

    async def test_active_pro_with_tokens(
        self,
        client: httpx.AsyncClient,
        api_headers: dict[str, str],
        session_factory: Factory,
    ):
        await seed_subscription(
            session_factory,
            "acct-1",
            tier=SubscriptionTier.PRO,
            status=SubscriptionStatus.ACTIVE,
            stripe_customer_id="cus_1",
        )
        await seed_balance(session_factory, "acct-1", 4)

        response = await client.get("/v1/entitlements/acct-1", headers=api_headers)

        assert response.json() == {
            "can_create": True,
            "remaining": 4,
            "is_pro": True,
            "token_balance": 4,
        }

    async def test_operator_email_is_pro(self, client: httpx.AsyncClient, api_headers: dict[str, str]):
        response = await client.get(
            "/v1/entitlements/acct-9",
            params={"email": "operator@example.com"},
            headers=api_headers,
        )

        assert response.json()["is_pro"] is True


def verified_transaction(**overrides) -> AppleTransactionInfo:
    values = {
        "transaction_id": "2000000111",
        "original_transaction_id": "2000000100",
        "product_id": "pro_monthly",
        "bundle_id": "ai.realworth.app",
        "purchase_date": datetime(2024, 1, 1, tzinfo=UTC),
        "environment": "Sandbox",
        "expires_date": datetime.now(UTC) + timedelta(days=30),
    }
    values.update(overrides)
    return AppleTransactionInfo(**values)


@pytest.fixture
def apple_provider(services: ServiceContainer) -> MagicMock:
    provider = MagicMock()
    provider.get_transaction_info = AsyncMock(return_value=verified_transaction())
    services.apple = provider
    return provider


class TestAppleVerifyRoute:
    async def test_not_configured(self, client: httpx.AsyncClient, api_headers: dict[str, str]):
        response = await client.post(
            "/v1/store/apple/verify",
            json={"account_id": "acct-1", "transaction_id": "2000000111"},
            headers=api_headers,
        )
        assert response.status_code == 503

    async def test_verify_activates_account(
        self,
        client: httpx.AsyncClient,
        api_headers: dict[str, str],
        session_factory: Factory,
        apple_provider: MagicMock,
    ):
        await seed_subscription(session_factory, "acct-1")

        response = await client.post(
            "/v1/store/apple/verify",
            json={"account_id": "acct-1", "transaction_id": "2000000111"},
            headers=api_headers,
        )

        assert response.status_code == 200
        assert response.json()["tier"] == "pro"
        apple_provider.get_transaction_info.assert_awaited_once_with("2000000111")
        row = await load_subscription(session_factory, "acct-1")
        assert row.status is SubscriptionStatus.ACTIVE
        assert row.iap_original_transaction_id == "2000000100"

    async def test_verify_requires_transaction(
        self,
        client: httpx.AsyncClient,
        api_headers: dict[str, str],
        apple_provider: MagicMock,
    ):
        response = await client.post(
            "/v1/store/apple/verify", json={"account_id": "acct-1"}, headers=api_headers
        )
        assert response.status_code == 400

    async def test_lookup_failure_is_bad_gateway(
        self,
        client: httpx.AsyncClient,
        api_headers: dict[str, str],
        apple_provider: MagicMock,
    ):
        apple_provider.get_transaction_info.side_effect = PaymentProviderError("Transaction not found")

        response = await client.post(
            "/v1/store/apple/verify",
            json={"account_id": "acct-1", "transaction_id": "2000000111"},
            headers=api_headers,
        )
        assert response.status_code == 502

    async def test_revoked_transaction_rejected(
        self,
        client: httpx.AsyncClient,
        api_headers: dict[str, str],
        session_factory: Factory,
        apple_provider: MagicMock,
    ):
        await seed_subscription(session_factory, "acct-1")
        apple_provider.get_transaction_info.return_value = verified_transaction(
            revocation_date=datetime.now(UTC)
        )

        response = await client.post(
            "/v1/store/apple/verify",
            json={"account_id": "acct-1", "transaction_id": "2000000111"},
            headers=api_headers,
        )
        assert response.status_code == 400

    async def test_unknown_account_not_found(
        self,
        client: httpx.AsyncClient,
        api_headers: dict[str, str],
        apple_provider: MagicMock,
    ):
        response = await client.post(
            "/v1/store/apple/verify",
            json={"account_id": "acct-missing", "transaction_id": "2000000111"},
            headers=api_headers,
        )
        assert response.status_code == 404
