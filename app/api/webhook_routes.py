"""
Webhook Routes - payment processor and App Store notifications.

Authenticated by signature, not API key. Status codes drive the sender's
redelivery: 2xx acknowledges, 4xx rejects, 5xx asks for a retry.
"""

from fastapi import APIRouter, Depends, HTTPException, Request, status
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from app.api.dependencies import ServiceContainer, get_db, get_services
from app.exceptions import (
    EventValidationError,
    PaymentProviderError,
    PeriodDerivationError,
    ProcessorUnavailableError,
    SubscriptionNotFoundError,
    WebhookVerificationError,
)
from app.models.api import AppleNotificationAck, WebhookAck
from app.observability import log_context, metrics, trace_operation
from app.services.apple_storekit_provider import decode_notification
from app.services.store_subscriptions import StoreSubscriptionService
from app.services.webhook_dispatcher import WebhookDispatcher

logger = get_logger(__name__)

router = APIRouter(prefix="/v1/webhooks")


@router.post("/stripe", response_model=WebhookAck)
async def stripe_webhook(
    request: Request,
    db: AsyncSession = Depends(get_db),
    services: ServiceContainer = Depends(get_services),
) -> WebhookAck:
    """
    Handle Stripe webhook events.

    The signature is verified over the raw body before anything is parsed.
    """
    payload = await request.body()
    signature = request.headers.get("stripe-signature")

    try:
        event = services.processor.verify_event(payload, signature)
    except WebhookVerificationError as exc:
        metrics.record_webhook("unverified", "rejected")
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Invalid webhook signature",
        ) from exc

    dispatcher = WebhookDispatcher(
        db,
        services.processor,
        default_period_days=services.settings.default_period_days,
        default_purchase_credits=services.settings.default_purchase_credits,
        default_purchase_amount_cents=services.settings.pay_per_use_price_cents,
    )

    with log_context(event_id=event.event_id, event_type=event.raw_type):
        try:
            with trace_operation("stripe_webhook", event_id=event.event_id, event_type=event.raw_type):
                outcome = await dispatcher.dispatch(event)
        except (EventValidationError, PeriodDerivationError) as exc:
            logger.warning("stripe_webhook_rejected", error=str(exc))
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
        except (SubscriptionNotFoundError, ProcessorUnavailableError) as exc:
            logger.error("stripe_webhook_retry_requested", error=str(exc))
            raise HTTPException(
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                detail=str(exc),
            ) from exc
        except SQLAlchemyError as exc:
            logger.exception("stripe_webhook_database_error")
            metrics.record_error(type(exc).__name__, "stripe_webhook")
            raise HTTPException(
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                detail="Webhook processing failed",
            ) from exc

    return WebhookAck(event_id=event.event_id, outcome=outcome)


@router.post("/apple", response_model=AppleNotificationAck)
async def apple_webhook(
    request: Request,
    db: AsyncSession = Depends(get_db),
    services: ServiceContainer = Depends(get_services),
) -> AppleNotificationAck:
    """
    Handle App Store Server Notifications v2.

    The notification's own transaction is not trusted: it is re-fetched from
    the App Store Server API by id and state is written from that copy.
    Acknowledged with 2xx unless the body cannot be decoded (400), the App
    Store API is not configured (503) or the re-fetch fails (502).
    """
    payload = await request.body()

    try:
        event = decode_notification(payload)
    except WebhookVerificationError as exc:
        metrics.record_webhook("apple", "rejected")
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc

    with log_context(
        notification_uuid=event.notification_uuid,
        notification_type=event.notification_type,
    ):
        transaction = None
        if event.transaction_info is not None:
            if services.apple is None:
                logger.error("apple_webhook_not_configured")
                raise HTTPException(
                    status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                    detail="App Store verification not configured",
                )
            try:
                transaction = await services.apple.get_transaction_info(
                    event.transaction_info.transaction_id
                )
            except PaymentProviderError as exc:
                logger.warning(
                    "apple_webhook_lookup_failed",
                    transaction_id=event.transaction_info.transaction_id,
                    error=str(exc),
                )
                raise HTTPException(
                    status_code=status.HTTP_502_BAD_GATEWAY, detail=str(exc)
                ) from exc

        try:
            result = await StoreSubscriptionService(db).apply_notification(event, transaction)
        except SQLAlchemyError as exc:
            logger.exception("apple_webhook_database_error")
            metrics.record_error(type(exc).__name__, "apple_webhook")
            raise HTTPException(
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                detail="Notification processing failed",
            ) from exc

    metrics.record_webhook(
        f"apple.{event.notification_type}", "applied" if result.processed else "no_match"
    )
    return AppleNotificationAck(processed=result.processed, reason=result.reason)
