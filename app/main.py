"""
Main Application - FastAPI application setup.
"""

import time
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, PlainTextResponse
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from starlette.concurrency import run_in_threadpool
from structlog import get_logger

from app.api.dependencies import ServiceContainer
from app.api.routes import router
from app.api.webhook_routes import router as webhook_router
from app.config import Settings, settings
from app.db.migration_runner import run_migrations
from app.db.session import create_engine_from_settings, create_session_factory
from app.models.apple_storekit import AppleStoreKitConfig
from app.observability import metrics, setup_logging, setup_tracing
from app.observability.tracing import instrument_fastapi, instrument_sqlalchemy
from app.services.apple_storekit_provider import AppleStoreKitProvider
from app.services.stripe_provider import StripeProvider

# Setup logging before anything else
setup_logging()
logger = get_logger(__name__)


def build_apple_provider(config: Settings) -> AppleStoreKitProvider | None:
    """App Store provider, or None when credentials are not configured."""
    if not (config.apple_key_id and config.apple_issuer_id and config.apple_private_key):
        logger.info("apple_storekit_disabled")
        return None
    return AppleStoreKitProvider(
        AppleStoreKitConfig(
            key_id=config.apple_key_id,
            issuer_id=config.apple_issuer_id,
            private_key=config.apple_private_key,
            bundle_id=config.apple_bundle_id,
            environment=config.apple_environment,
        )
    )


def build_services(config: Settings) -> ServiceContainer:
    """Construct the process-wide service handles."""
    engine = create_engine_from_settings(config)
    instrument_sqlalchemy(engine)

    if not config.stripe_webhook_secret:
        logger.warning("stripe_webhook_secret_missing_all_webhooks_rejected")

    return ServiceContainer(
        settings=config,
        engine=engine,
        session_factory=create_session_factory(engine),
        processor=StripeProvider(
            api_key=config.stripe_api_key,
            webhook_secret=config.stripe_webhook_secret,
            tolerance_seconds=config.stripe_webhook_tolerance_seconds,
        ),
        apple=build_apple_provider(config),
    )


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """
    Application lifespan manager.

    Builds the service container on startup and disposes the engine on shutdown.
    """
    logger.info(
        "application_starting",
        service=settings.api_title,
        version=settings.api_version,
        tracing_enabled=settings.tracing_enabled,
        metrics_enabled=settings.metrics_enabled,
    )

    if settings.run_migrations_on_startup:
        await run_in_threadpool(run_migrations, settings.database_url)

    services = build_services(settings)
    app.state.services = services

    yield

    logger.info("application_shutting_down")
    if services.engine is not None:
        await services.engine.dispose()
    logger.info("database_engines_closed")


app = FastAPI(
    title=settings.api_title,
    version=settings.api_version,
    description=settings.api_description,
    lifespan=lifespan,
)


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    """Log validation errors with JSON-safe detail."""
    sanitized_errors = []
    for error in exc.errors():
        sanitized = {
            "type": error.get("type"),
            "loc": error.get("loc"),
            "msg": error.get("msg"),
        }
        if "ctx" in error:
            sanitized["ctx"] = {k: str(v) for k, v in error["ctx"].items()}
        sanitized_errors.append(sanitized)

    logger.warning(
        "validation_error",
        path=request.url.path,
        method=request.method,
        errors=sanitized_errors,
    )
    return JSONResponse(status_code=422, content={"detail": sanitized_errors})


setup_tracing()
instrument_fastapi(app)


@app.middleware("http")
async def logging_middleware(
    request: Request, call_next: Callable[[Request], Awaitable[Response]]
) -> Response:
    """Log all HTTP requests with timing."""
    start_time = time.time()
    request_id = request.headers.get("X-Request-ID", "unknown")
    endpoint = request.url.path
    method = request.method

    metrics.http_requests_in_progress.labels(endpoint=endpoint, method=method).inc()
    try:
        response = await call_next(request)
        duration = time.time() - start_time
        metrics.record_http_request(endpoint, method, response.status_code, duration)

        logger.info(
            "request_completed",
            method=method,
            path=endpoint,
            status_code=response.status_code,
            duration_seconds=duration,
            request_id=request_id,
        )
        return response
    except Exception as e:
        duration = time.time() - start_time
        metrics.record_http_request(endpoint, method, 500, duration)
        metrics.record_error(type(e).__name__, "http_request")

        logger.error(
            "request_failed",
            method=method,
            path=endpoint,
            error=str(e),
            duration_seconds=duration,
            request_id=request_id,
            exc_info=True,
        )
        raise
    finally:
        metrics.http_requests_in_progress.labels(endpoint=endpoint, method=method).dec()


app.include_router(router)
app.include_router(webhook_router)


@app.get("/")
async def root() -> dict[str, str]:
    """Root endpoint."""
    return {
        "service": settings.api_title,
        "version": settings.api_version,
        "status": "running",
    }


@app.get("/metrics")
async def metrics_endpoint() -> Response:
    """
    Prometheus metrics endpoint.

    Returns metrics in Prometheus text format.
    """
    if not settings.metrics_enabled:
        return PlainTextResponse("metrics disabled", status_code=404)
    return PlainTextResponse(generate_latest(), media_type=CONTENT_TYPE_LATEST)


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "app.main:app",
        host=settings.api_host,
        port=settings.api_port,
        log_level=settings.log_level.lower(),
    )
