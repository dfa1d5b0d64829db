"""
Payflow Backend - FastAPI Application

Payment orchestration service for the storefront back-office: payment
creation and dispatch, refunds, provider webhooks, auth and rate limits.
"""
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from contextlib import asynccontextmanager
from typing import Optional
import logging

import httpx

from .config import DEMO_PAYOUT_IBAN, Settings
from .exceptions import PaymentError, ValidationError
from .db.init_db import create_engine, create_session_factory, initialize_database
from .gateways.registry import build_gateways
from .models.transactions import RecipientDetails
from .services.auth_service import AuthGuard
from .services.notification_service import NotificationService
from .services.orchestrator import PaymentOrchestrator
from .services.rate_limiter import build_rate_limiter
from .services.transaction_store import TransactionStore
from .services.webhook_reconciler import WebhookReconciler
from .api.auth import router as auth_router
from .api.payments import router as payments_router
from .api.refunds import router as refunds_router
from .api.webhooks import router as webhooks_router

logger = logging.getLogger(__name__)

VERSION = "0.1.0"


def _payout_recipient(settings: Settings) -> Optional[RecipientDetails]:
    iban = settings.payout_iban or (DEMO_PAYOUT_IBAN if settings.demo_mode else None)
    if iban is None:
        logger.info("No payout account configured; bank transfers must name a recipient")
        return None
    return RecipientDetails(
        account_holder_name=settings.payout_account_holder_name,
        iban=iban,
        currency=settings.payout_currency,
    )


def create_app(
    settings: Optional[Settings] = None,
    gateway_transport: Optional[httpx.AsyncBaseTransport] = None
) -> FastAPI:
    """
    Build the FastAPI application.

    Args:
        settings: Settings to run with; read from the environment when None
        gateway_transport: httpx transport for every payment gateway. In
            demo mode the in-process provider sandbox is used when None.

    Returns:
        Configured FastAPI app. Components are created in the lifespan and
        exposed on ``app.state``.
    """
    settings = settings or Settings()

    # Configure logging
    logging.basicConfig(
        level=getattr(logging, settings.log_level),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """
        Application lifespan manager.

        Handles startup and shutdown events:
        - Startup: Create tables, build gateways and services
        - Shutdown: Close HTTP clients, counters and the engine
        """
        logger.info("Starting Payflow backend server...")
        logger.info(f"Demo mode: {settings.demo_mode}")

        engine = create_engine(settings.database_url)
        try:
            await initialize_database(engine)
            logger.info("Database initialized successfully")
        except Exception as e:
            logger.error(f"Failed to initialize database: {e}")
            await engine.dispose()
            raise

        session_factory = create_session_factory(engine)
        store = TransactionStore(session_factory)
        gateways = build_gateways(settings, gateway_transport)
        notifications = NotificationService(
            enabled=settings.email_enabled and not settings.demo_mode,
            api_url=settings.postmark_api_url,
            api_token=settings.postmark_api_token,
            sender=settings.email_from,
        )
        rate_limiter = build_rate_limiter(settings.rate_limit_backend, settings.redis_url)

        app.state.gateways = gateways
        app.state.rate_limiter = rate_limiter
        app.state.auth_guard = AuthGuard(
            session_factory,
            settings.jwt_secret,
            settings.jwt_algorithm,
        )
        app.state.orchestrator = PaymentOrchestrator(
            store,
            gateways,
            notifications,
            max_attempts=settings.gateway_max_attempts,
            backoff_seconds=settings.gateway_backoff_seconds,
            backoff_max_seconds=settings.gateway_backoff_max_seconds,
            default_recipient=_payout_recipient(settings),
        )
        app.state.reconciler = WebhookReconciler(store, gateways, notifications)

        logger.info("Server startup complete")

        yield

        logger.info("Shutting down Payflow backend server...")
        await gateways.aclose()
        await notifications.aclose()
        await rate_limiter.close()
        await engine.dispose()

    app = FastAPI(
        title="Payflow API",
        description="Payment orchestration for the storefront back-office",
        version=VERSION,
        lifespan=lifespan,
    )
    app.state.settings = settings

    # Configure CORS middleware for the storefront
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["*"],
    )

    @app.exception_handler(PaymentError)
    async def payment_error_handler(request: Request, exc: PaymentError):
        """
        Map orchestration errors to their HTTP status.

        Gateway and persistence errors answer with a generic message; the
        provider text stays in the logs.
        """
        if exc.status_code >= 500:
            logger.error(f"{exc.error_code} on {request.url.path}: {exc.message}")
        else:
            logger.warning(f"{exc.error_code} on {request.url.path}: {exc.message}")

        return JSONResponse(
            status_code=exc.status_code,
            content=exc.to_dict(),
            headers=exc.headers or None,
        )

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError):
        """Report every invalid field of the request at once."""
        fields = []
        for error in exc.errors():
            location = [str(part) for part in error.get("loc", ()) if part not in ("body", "query", "header")]
            fields.append({"field": ".".join(location) or "body", "message": error.get("msg", "Invalid value")})

        logger.warning(f"Validation error on {request.url.path}: {[f['field'] for f in fields]}")
        return JSONResponse(
            status_code=400,
            content=ValidationError("Invalid request", fields).to_dict(),
        )

    @app.exception_handler(Exception)
    async def general_error_handler(request: Request, exc: Exception):
        """
        Catch-all handler for unexpected errors.

        Logs full exception for debugging but returns generic message to client.
        """
        logger.error(f"Unexpected error: {str(exc)}", exc_info=True)

        return JSONResponse(
            status_code=500,
            content={
                "success": False,
                "error_code": "internal_error",
                "message": "An unexpected error occurred",
                "details": {}
            },
        )

    # Health check endpoint
    @app.get("/api/health")
    async def health_check():
        """
        Health check endpoint for monitoring and load balancers.

        Returns:
            Server status and version information
        """
        gateways = getattr(app.state, "gateways", None)
        return {
            "status": "healthy",
            "version": VERSION,
            "demo_mode": settings.demo_mode,
            "providers": gateways.providers if gateways else [],
        }

    # Include API routers
    app.include_router(payments_router, tags=["Payments"])
    app.include_router(refunds_router, tags=["Refunds"])
    app.include_router(webhooks_router, tags=["Webhooks"])
    app.include_router(auth_router, tags=["Auth"])

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "payflow.main:app",
        host=app.state.settings.host,
        port=app.state.settings.port,
        reload=app.state.settings.demo_mode,
        log_level=app.state.settings.log_level.lower()
    )
