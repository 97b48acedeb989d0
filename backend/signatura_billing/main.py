"""
Signatura Billing - FastAPI Application

Subscription status, usage metering, checkout and plan changes, Grow payment
webhooks and the daily expiration sweep.

Run locally:
    cd backend
    uvicorn signatura_billing.main:app --reload
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from signatura_billing.config.settings import settings
from signatura_billing.infrastructure.db.database import close_db, init_db
from signatura_billing.infrastructure.exceptions import (
    ConfigurationError,
    GatewayError,
    InvalidTransitionError,
    NotFoundError,
    SignaturaBillingError,
    ValidationError,
    WebhookVerificationError,
)

logging.basicConfig(
    level=getattr(logging, settings.log_level.upper()),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)

SERVICE_NAME = "signatura-billing"
VERSION = "1.0.0"


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Report enforcement and gateway configuration, manage the store pool."""
    logger.info(f"{SERVICE_NAME} {VERSION} starting ({settings.environment})")
    logger.info(
        "Subscription enforcement is "
        + ("ON" if settings.subscription_enabled else "OFF: usage is tracked, limits are not enforced")
    )

    missing = settings.missing_grow_keys()
    if missing:
        logger.warning(f"Grow configuration incomplete, missing: {', '.join(missing)}")

    if settings.database_url:
        try:
            await init_db()
            logger.info("Subscription store reachable")
        except Exception as e:
            logger.warning(f"Subscription store check failed at startup: {e}")
    else:
        logger.warning("DATABASE_URL is not set, subscription routes will fail until it is")

    yield

    if settings.database_url:
        try:
            await close_db()
        except Exception as e:
            logger.warning(f"Error closing subscription store: {e}")

    logger.info(f"{SERVICE_NAME} stopped")


app = FastAPI(
    title="Signatura Billing",
    description="Subscription lifecycle and usage metering service",
    version=VERSION,
    lifespan=lifespan,
    debug=settings.debug,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.allowed_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ============================================================================
# Exception Handlers
# Resolved by the exception's MRO, so subclasses listed here win over
# SignaturaBillingError.
# ============================================================================

ERROR_STATUS_CODES = {
    ValidationError: 400,
    InvalidTransitionError: 400,
    WebhookVerificationError: 401,
    NotFoundError: 404,
    GatewayError: 502,
    ConfigurationError: 503,
    SignaturaBillingError: 500,
}


async def billing_error_handler(request: Request, exc: SignaturaBillingError):
    """Map a billing error to its HTTP status with a ``to_dict()`` body."""
    status_code = next(
        code for error_type, code in ERROR_STATUS_CODES.items() if isinstance(exc, error_type)
    )
    if status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc.message}")
    return JSONResponse(status_code=status_code, content=exc.to_dict())


for _error_type in ERROR_STATUS_CODES:
    app.add_exception_handler(_error_type, billing_error_handler)


# ============================================================================
# Liveness
# ============================================================================

@app.get("/health")
async def health_check():
    return {"status": "healthy", "service": SERVICE_NAME}


@app.get("/")
async def root():
    return {
        "message": "Signatura Billing API",
        "version": VERSION,
        "docs": "/docs",
    }


# ============================================================================
# Routers
# ============================================================================

from signatura_billing.api.routes import cron, subscriptions, webhooks  # noqa: E402

app.include_router(subscriptions.router, prefix="/api", tags=["Subscriptions"])
app.include_router(webhooks.router, prefix="/api", tags=["Webhooks"])
app.include_router(cron.router, prefix="/api", tags=["Cron"])
