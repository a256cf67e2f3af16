"""
Membership Billing - FastAPI Application

Main entry point for the backend API.
Provides checkout, Stripe webhook reconciliation, entitlement checks and
admin operations for the membership catalog.
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from app.config.settings import settings
from app.infrastructure.db.database import close_db, init_db
from app.infrastructure.exceptions import (
    ConfigurationError,
    DuplicateError,
    GiftCodeRejected,
    MembershipError,
    NotFoundError,
    PaymentGatewayError,
    ProductUnavailable,
    ValidationError,
    WebhookVerificationError,
)

# Configure logging
logging.basicConfig(
    level=getattr(logging, settings.log_level.upper()),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Verify the database on startup and dispose of the pool on shutdown."""
    logger.info(f"Membership Billing backend starting in {settings.environment} mode...")

    database_configured = bool(settings.database_url or settings.supabase_url)
    if database_configured:
        # Raises if the database is unreachable
        await init_db()
        logger.info("Database connection verified")
    else:
        logger.warning("No DATABASE_URL or SUPABASE_URL configured; database routes will fail")

    yield

    if database_configured:
        await close_db()
    logger.info("Membership Billing backend shutting down...")


app = FastAPI(
    title="Membership Billing",
    description="Membership checkout, Stripe reconciliation and entitlements",
    version="1.0.0",
    lifespan=lifespan,
    debug=settings.debug,
)

# CORS configuration from Settings
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.allowed_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ============================================================================
# Exception Handlers
# ============================================================================

@app.exception_handler(GiftCodeRejected)
async def gift_code_rejected_handler(request: Request, exc: GiftCodeRejected):
    """Gift code rejections carry a stable reason for the caller."""
    logger.info(f"Gift code rejected: {exc.reason} ({exc.code})")
    return JSONResponse(
        status_code=400,
        content=exc.to_dict(),
    )


@app.exception_handler(ValidationError)
async def validation_error_handler(request: Request, exc: ValidationError):
    """Handle validation errors."""
    return JSONResponse(
        status_code=400,
        content=exc.to_dict(),
    )


@app.exception_handler(WebhookVerificationError)
async def webhook_verification_error_handler(request: Request, exc: WebhookVerificationError):
    return JSONResponse(
        status_code=400,
        content=exc.to_dict(),
    )


@app.exception_handler(ProductUnavailable)
async def product_unavailable_handler(request: Request, exc: ProductUnavailable):
    return JSONResponse(
        status_code=404,
        content=exc.to_dict(),
    )


@app.exception_handler(NotFoundError)
async def not_found_error_handler(request: Request, exc: NotFoundError):
    """Handle not found errors."""
    return JSONResponse(
        status_code=404,
        content=exc.to_dict(),
    )


@app.exception_handler(DuplicateError)
async def duplicate_error_handler(request: Request, exc: DuplicateError):
    return JSONResponse(
        status_code=409,
        content=exc.to_dict(),
    )


@app.exception_handler(ConfigurationError)
async def configuration_error_handler(request: Request, exc: ConfigurationError):
    """Configuration problems need an operator, not a retry by the user."""
    logger.error(f"Configuration error: {exc.message} {exc.details}")
    return JSONResponse(
        status_code=503,
        content=exc.to_dict(),
    )


@app.exception_handler(PaymentGatewayError)
async def payment_gateway_error_handler(request: Request, exc: PaymentGatewayError):
    return JSONResponse(
        status_code=502,
        content=exc.to_dict(),
    )


@app.exception_handler(MembershipError)
async def general_error_handler(request: Request, exc: MembershipError):
    """Handle all other application errors."""
    logger.error(f"Unhandled application error: {exc.message}")
    return JSONResponse(
        status_code=500,
        content=exc.to_dict(),
    )


# ============================================================================
# Health Check
# ============================================================================

@app.get("/health")
async def health_check():
    """Health check endpoint."""
    return {"status": "healthy", "service": "membership-billing"}


@app.get("/")
async def root():
    """Root endpoint."""
    return {
        "message": "Membership Billing API",
        "version": "1.0.0",
        "docs": "/docs",
    }


# ============================================================================
# Import and register routers
# ============================================================================

from app.api.routes import admin, checkout, entitlements, webhooks

app.include_router(checkout.router, prefix="/api", tags=["Checkout"])
app.include_router(webhooks.router, prefix="/api", tags=["Webhooks"])
app.include_router(entitlements.router, prefix="/api", tags=["Entitlements"])
app.include_router(admin.router, prefix="/api")
