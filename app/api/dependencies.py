"""
FastAPI Dependencies - service handles, database sessions and authentication.

NO DICTIONARIES - All dependencies return typed objects.
"""

import hmac
from collections.abc import AsyncGenerator
from dataclasses import dataclass

from fastapi import Depends, Header, HTTPException, Request, status
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker
from structlog import get_logger

from app.config import Settings
from app.db.session import session_scope
from app.services.apple_storekit_provider import AppleStoreKitProvider
from app.services.payment_provider import PaymentProcessor

logger = get_logger(__name__)


# ============================================================================
# Service Container
# ============================================================================


@dataclass
class ServiceContainer:
    """
    Process-wide service handles, constructed once by the application lifespan.

    Routes reach these through `get_services`; tests install their own
    container on `app.state`.
    """

    settings: Settings
    session_factory: async_sessionmaker[AsyncSession]
    processor: PaymentProcessor
    apple: AppleStoreKitProvider | None = None
    engine: AsyncEngine | None = None


def get_services(request: Request) -> ServiceContainer:
    """FastAPI dependency returning the container stored on app.state."""
    services: ServiceContainer | None = getattr(request.app.state, "services", None)
    if services is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Service is starting",
        )
    return services


async def get_db(
    services: ServiceContainer = Depends(get_services),
) -> AsyncGenerator[AsyncSession, None]:
    """
    FastAPI dependency for a database session.

    Usage:
        @router.get("/endpoint")
        async def endpoint(db: AsyncSession = Depends(get_db)):
            ...
    """
    async with session_scope(services.session_factory) as session:
        yield session


# ============================================================================
# API Key Authentication (for service-to-service)
# ============================================================================


async def require_api_key(
    x_api_key: str | None = Header(None, description="Service API key"),
    services: ServiceContainer = Depends(get_services),
) -> None:
    """
    FastAPI dependency validating the X-API-Key header.

    Usage:
        @router.get("/v1/tokens/{account_id}", dependencies=[Depends(require_api_key)])

    Raises:
        HTTPException 401 if missing or invalid (always, when no key is configured)
    """
    expected = services.settings.service_api_key
    if not expected or not x_api_key or not hmac.compare_digest(
        x_api_key.encode("utf-8"), expected.encode("utf-8")
    ):
        logger.warning("api_key_rejected", key_present=bool(x_api_key))
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or missing API key",
            headers={"WWW-Authenticate": "ApiKey"},
        )
