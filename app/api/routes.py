"""
API Routes - ledger and entitlement surface for internal feature services.

NO DICTIONARIES - All requests/responses use Pydantic models.
"""

from fastapi import APIRouter, Depends, HTTPException, Query, status
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from app.api.dependencies import ServiceContainer, get_db, get_services, require_api_key
from app.exceptions import (
    DataIntegrityError,
    EventValidationError,
    PaymentProviderError,
    SubscriptionNotFoundError,
    SubscriptionStateError,
)
from app.models.api import (
    AppleVerifyRequest,
    AppleVerifyResponse,
    CancelSubscriptionResponse,
    ConsumeTokenRequest,
    ConsumeTokenResponse,
    EntitlementResponse,
    GrantTokenRequest,
    GrantTokenResponse,
    HealthResponse,
    PurchaseCheckoutRequest,
    PurchaseCheckoutResponse,
    ReactivateSubscriptionResponse,
    TokenBalanceResponse,
    TokenHistoryResponse,
    TokenTransactionItem,
)
from app.models.domain import ConsumeSuccess, GrantIntent, InsufficientBalance
from app.services.apple_storekit_provider import transaction_id_from_signed
from app.services.entitlement import EntitlementService
from app.services.store_subscriptions import StoreSubscriptionService
from app.services.subscription_management import SubscriptionManagementService
from app.services.token_ledger import MAX_HISTORY_LIMIT, TokenLedger

logger = get_logger(__name__)

router = APIRouter()


# ============================================================================
# Entitlement
# ============================================================================


@router.get(
    "/v1/entitlements/{account_id}",
    response_model=EntitlementResponse,
    dependencies=[Depends(require_api_key)],
)
async def check_entitlement(
    account_id: str,
    email: str | None = Query(None, max_length=320),
    db: AsyncSession = Depends(get_db),
    services: ServiceContainer = Depends(get_services),
) -> EntitlementResponse:
    """
    Can this account use the metered feature, and is it pro?

    `email` lets callers match the operator allow-list by address.
    """
    service = EntitlementService(
        db,
        operator_emails=services.settings.operator_email_list,
        operator_account_ids=services.settings.operator_account_id_list,
    )
    decision = await service.check(account_id, email=email)
    return EntitlementResponse(
        can_create=decision.can_create,
        remaining=decision.remaining,
        is_pro=decision.is_pro,
        token_balance=decision.token_balance,
    )


# ============================================================================
# Token Ledger
# ============================================================================


@router.get(
    "/v1/tokens/{account_id}",
    response_model=TokenBalanceResponse,
    dependencies=[Depends(require_api_key)],
)
async def get_token_balance(
    account_id: str,
    db: AsyncSession = Depends(get_db),
) -> TokenBalanceResponse:
    balance = await TokenLedger(db).get_balance(account_id)
    return TokenBalanceResponse(
        account_id=balance.account_id,
        balance=balance.balance,
        lifetime_earned=balance.lifetime_earned,
        lifetime_spent=balance.lifetime_spent,
    )


@router.get(
    "/v1/tokens/{account_id}/transactions",
    response_model=TokenHistoryResponse,
    dependencies=[Depends(require_api_key)],
)
async def get_token_history(
    account_id: str,
    limit: int = Query(50, ge=1, le=MAX_HISTORY_LIMIT),
    db: AsyncSession = Depends(get_db),
) -> TokenHistoryResponse:
    """Most recent transactions first."""
    transactions = await TokenLedger(db).get_history(account_id, limit=limit)
    return TokenHistoryResponse(
        account_id=account_id,
        transactions=[
            TokenTransactionItem(
                transaction_id=tx.transaction_id,
                amount=tx.amount,
                transaction_type=tx.transaction_type,
                action_type=tx.action_type,
                reference_id=tx.reference_id,
                balance_after=tx.balance_after,
                created_at=tx.created_at,
            )
            for tx in transactions
        ],
    )


@router.post(
    "/v1/tokens/{account_id}/consume",
    response_model=ConsumeTokenResponse,
    responses={402: {"model": ConsumeTokenResponse}},
    dependencies=[Depends(require_api_key)],
)
async def consume_token(
    account_id: str,
    request: ConsumeTokenRequest,
    db: AsyncSession = Depends(get_db),
) -> ConsumeTokenResponse | JSONResponse:
    """
    Spend one token.

    Returns 200 on success and 402 with the current balance when there is
    nothing to spend.
    """
    result = await TokenLedger(db).consume(account_id, request.action_type, request.reference_id)

    match result:
        case ConsumeSuccess():
            return ConsumeTokenResponse(
                success=True,
                transaction_id=result.transaction_id,
                new_balance=result.new_balance,
            )
        case InsufficientBalance():
            body = ConsumeTokenResponse(success=False, balance=result.balance, error=result.error)
            return JSONResponse(
                status_code=status.HTTP_402_PAYMENT_REQUIRED,
                content=body.model_dump(mode="json"),
            )


@router.post(
    "/v1/tokens/{account_id}/grant",
    response_model=GrantTokenResponse,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(require_api_key)],
)
async def grant_tokens(
    account_id: str,
    request: GrantTokenRequest,
    db: AsyncSession = Depends(get_db),
) -> GrantTokenResponse:
    try:
        intent = GrantIntent(
            account_id=account_id,
            amount=request.amount,
            grant_type=request.grant_type,
            description=request.description,
        )
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc

    try:
        result = await TokenLedger(db).grant(intent)
    except DataIntegrityError as exc:
        logger.error("token_grant_failed", account_id=account_id, error=str(exc))
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Grant could not be applied",
        ) from exc

    return GrantTokenResponse(
        success=True,
        transaction_id=result.transaction_id,
        new_balance=result.new_balance,
    )


# ============================================================================
# Subscription Management
# ============================================================================


@router.post(
    "/v1/subscriptions/{account_id}/cancel",
    response_model=CancelSubscriptionResponse,
    dependencies=[Depends(require_api_key)],
)
async def cancel_subscription(
    account_id: str,
    db: AsyncSession = Depends(get_db),
    services: ServiceContainer = Depends(get_services),
) -> CancelSubscriptionResponse:
    """Cancel at period end; the account keeps pro until `cancel_at`."""
    service = SubscriptionManagementService(db, services.processor)
    try:
        scheduled = await service.schedule_cancellation(account_id)
    except SubscriptionNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except PaymentProviderError as exc:
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(exc)) from exc

    return CancelSubscriptionResponse(success=True, cancel_at=scheduled.cancel_at)


@router.post(
    "/v1/subscriptions/{account_id}/reactivate",
    response_model=ReactivateSubscriptionResponse,
    dependencies=[Depends(require_api_key)],
)
async def reactivate_subscription(
    account_id: str,
    db: AsyncSession = Depends(get_db),
    services: ServiceContainer = Depends(get_services),
) -> ReactivateSubscriptionResponse:
    service = SubscriptionManagementService(db, services.processor)
    try:
        reactivation = await service.reactivate(account_id)
    except SubscriptionNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except SubscriptionStateError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    except PaymentProviderError as exc:
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(exc)) from exc

    return ReactivateSubscriptionResponse(
        success=True,
        renews_at=reactivation.renews_at,
        message="Subscription already active" if reactivation.already_active else None,
    )


@router.post(
    "/v1/purchases/{account_id}/checkout",
    response_model=PurchaseCheckoutResponse,
    dependencies=[Depends(require_api_key)],
)
async def create_purchase_checkout(
    account_id: str,
    request: PurchaseCheckoutRequest,
    db: AsyncSession = Depends(get_db),
    services: ServiceContainer = Depends(get_services),
) -> PurchaseCheckoutResponse:
    """
    Start a hosted checkout for one pay-per-use appraisal credit.

    Credits are granted by the checkout.session.completed webhook, not here.
    """
    settings = services.settings
    service = SubscriptionManagementService(db, services.processor)
    try:
        link = await service.create_purchase_checkout(
            account_id,
            request.email,
            credits=settings.default_purchase_credits,
            amount_cents=settings.pay_per_use_price_cents,
            success_url=f"{settings.app_url}?purchase=success&session_id={{CHECKOUT_SESSION_ID}}",
            cancel_url=f"{settings.app_url}?purchase=canceled",
        )
    except SubscriptionNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except PaymentProviderError as exc:
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(exc)) from exc

    return PurchaseCheckoutResponse(session_id=link.session_id, url=link.url)


# ============================================================================
# Platform Store
# ============================================================================


@router.post(
    "/v1/store/apple/verify",
    response_model=AppleVerifyResponse,
    dependencies=[Depends(require_api_key)],
)
async def verify_apple_purchase(
    request: AppleVerifyRequest,
    db: AsyncSession = Depends(get_db),
    services: ServiceContainer = Depends(get_services),
) -> AppleVerifyResponse:
    """
    Bind an App Store subscription purchase to an account.

    The transaction is re-fetched from the App Store Server API; only its id
    is taken from the request.
    """
    if services.apple is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="App Store verification not configured",
        )

    try:
        transaction_id = request.transaction_id
        if transaction_id is None and request.signed_transaction is not None:
            transaction_id = transaction_id_from_signed(request.signed_transaction)
    except PaymentProviderError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc

    if not transaction_id:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="transaction_id or signed_transaction is required",
        )

    try:
        transaction = await services.apple.get_transaction_info(transaction_id)
    except PaymentProviderError as exc:
        logger.warning(
            "apple_verification_lookup_failed",
            account_id=request.account_id,
            transaction_id=transaction_id,
            error=str(exc),
        )
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(exc)) from exc

    try:
        verification = await StoreSubscriptionService(db).apply_verified_transaction(
            request.account_id, transaction
        )
    except EventValidationError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    except SubscriptionNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc

    return AppleVerifyResponse(
        success=True,
        tier=verification.tier,
        product_id=verification.product_id,
        expires_at=verification.expires_at,
    )


# ============================================================================
# Health
# ============================================================================


@router.get("/health", response_model=HealthResponse)
async def health_check(
    db: AsyncSession = Depends(get_db),
    services: ServiceContainer = Depends(get_services),
) -> HealthResponse:
    """Liveness plus database reachability."""
    try:
        await db.execute(text("SELECT 1"))
        database = "connected"
    except SQLAlchemyError as exc:
        logger.error("health_check_database_failed", error=str(exc))
        database = "disconnected"

    return HealthResponse(
        status="healthy" if database == "connected" else "degraded",
        database=database,
        version=services.settings.api_version,
    )
