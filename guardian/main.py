"""
Stripe Guardian - FastAPI Application Entry Point

Keeps Supabase user_profiles.premium in sync with Stripe through:
- Stripe webhooks
- Synchronous checkout, payment sheet and subscription endpoints
- A periodic in-process sync that repairs anything the others missed
"""

import logging
from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from guardian import __version__
from guardian.config import Settings, get_settings
from guardian.dependencies import Services, build_services
from guardian.errors import InitializationError, register_exception_handlers
from guardian.routers import (
    health_router,
    promotions_router,
    stripe_router,
    sync_router,
    webhooks_router,
)

logger = logging.getLogger(__name__)

ALLOWED_METHODS = ["GET", "POST", "OPTIONS"]
ALLOWED_HEADERS = ["Content-Type", "Authorization", "Stripe-Signature"]

PUBLIC_ENDPOINTS = (
    "/api/health",
    "/api/ready",
    "/api/sync-status",
    "/api/stripe/webhook",
    "/api/stripe/create-customer",
    "/api/stripe/create-checkout",
    "/api/stripe/create-paymentsheet",
    "/api/stripe/confirm-paymentsheet",
    "/api/stripe/verify-session",
    "/api/stripe/cancel-subscription",
    "/api/stripe/reactivate-subscription",
    "/api/stripe/get-billing-history",
    "/api/stripe/sync-plan",
    "/api/stripe/create-coupon",
    "/api/stripe/create-promotion-code",
    "/api/stripe/create-discounted-price",
    "/api/stripe/validate-coupon",
)


def configure_logging(settings: Settings) -> None:
    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """
    Application lifespan manager.

    Handles startup and shutdown tasks:
    - Startup: Build services (unless injected), start the periodic sync
    - Shutdown: Stop the sync, close HTTP clients
    """
    settings: Settings = app.state.settings

    logger.info(f"Starting Stripe Guardian ({settings.node_env})")
    if settings.is_production:
        logger.info(f"CORS origins: {settings.cors_origins}")

    if app.state.services is None:
        try:
            app.state.services = build_services(settings)
        except InitializationError as e:
            app.state.init_error = str(e)
            logger.error(f"Service initialization failed; dependent endpoints will answer 503: {e}")

    services: Optional[Services] = app.state.services
    if services is not None and settings.sync_enabled:
        services.sync.start()

    yield

    logger.info("Shutting down Stripe Guardian")
    if services is not None:
        await services.close()


def create_app(settings: Optional[Settings] = None, services: Optional[Services] = None) -> FastAPI:
    """
    Build the FastAPI application.

    Args:
        settings: Settings to use (defaults to the environment).
        services: Prebuilt service container; built at startup when omitted.

    Returns:
        Configured FastAPI app.
    """
    settings = settings or get_settings()

    app = FastAPI(
        title="Stripe Guardian",
        description="Keeps Supabase premium state in sync with Stripe",
        version=__version__,
        lifespan=lifespan,
        docs_url="/docs" if not settings.is_production else None,
        redoc_url="/redoc" if not settings.is_production else None,
    )
    app.state.settings = settings
    app.state.services = services
    app.state.init_error = None

    register_exception_handlers(app)

    # Registered before CORS so that CORS wraps it and 500s carry CORS headers
    @app.middleware("http")
    async def catch_unhandled_errors(request: Request, call_next):
        try:
            return await call_next(request)
        except Exception as e:
            logger.exception(f"Unhandled error on {request.method} {request.url.path}: {e}")
            return JSONResponse(
                status_code=500,
                content={"error": "Internal server error", "details": str(e)},
            )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins if settings.is_production else ["*"],
        allow_credentials=settings.is_production,
        allow_methods=ALLOWED_METHODS,
        allow_headers=ALLOWED_HEADERS,
    )

    app.include_router(health_router)
    app.include_router(sync_router)
    app.include_router(webhooks_router)
    app.include_router(stripe_router)
    app.include_router(promotions_router)

    @app.get("/")
    async def root():
        """Root endpoint with API info."""
        return {
            "name": "Stripe Guardian",
            "version": __version__,
            "status": "operational",
            "service": "Subscription sync between Stripe and Supabase",
            "endpoints": list(PUBLIC_ENDPOINTS),
        }

    return app


configure_logging(get_settings())
app = create_app()


if __name__ == "__main__":
    import uvicorn

    settings = get_settings()
    uvicorn.run(
        "guardian.main:app",
        host="0.0.0.0",
        port=settings.port,
        reload=not settings.is_production,
    )
