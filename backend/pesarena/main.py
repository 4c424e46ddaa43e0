"""
PES Arena Payments - FastAPI Application

Tournament entry fees over M-Pesa STK push, callback reconciliation,
registration approval and prize payouts over M-Pesa B2C.
"""
from contextlib import asynccontextmanager
from typing import Optional
import logging

import httpx
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .config import settings
from .db.init_db import AsyncSessionLocal, engine, initialize_database
from .dependencies import Services, build_services
from .exceptions import PaymentError
from .services.scheduler import ReconciliationScheduler
from .api.payments import router as payments_router
from .api.callbacks import router as callbacks_router
from .api.registrations import router as registrations_router
from .api.payouts import router as payouts_router


# Configure logging
logging.basicConfig(
    level=getattr(logging, settings.log_level),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
# httpx logs every request URL at INFO
logging.getLogger("httpx").setLevel(logging.WARNING)
logger = logging.getLogger(__name__)


def create_app(services: Optional[Services] = None) -> FastAPI:
    """
    Build the application.

    Args:
        services: Pre-built components (tests). When omitted, the lifespan
            initializes the database and builds them from settings.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """
        Application lifespan manager.

        - Startup: initialize database, open the gateway HTTP client,
          start the reconciliation scheduler
        - Shutdown: stop the scheduler, close the HTTP client
        """
        logger.info("Starting PES Arena payments backend...")

        http_client = None
        if services is None:
            logger.info(f"M-Pesa environment: {settings.mpesa_environment}")
            try:
                await initialize_database(engine, settings.database_path)
            except Exception as e:
                logger.error(f"Failed to initialize database: {e}")
                raise

            http_client = httpx.AsyncClient(timeout=settings.mpesa_http_timeout_seconds)
            app.state.services = build_services(settings, AsyncSessionLocal, http_client)
        else:
            app.state.services = services

        active = app.state.services
        scheduler = None
        if active.settings.reconciliation_enabled:
            scheduler = ReconciliationScheduler(
                active.reconciliation,
                interval_minutes=active.settings.reconciliation_interval_minutes,
            )
            scheduler.start()

        logger.info("Server startup complete")

        yield

        logger.info("Shutting down PES Arena payments backend...")
        if scheduler is not None:
            try:
                await scheduler.shutdown(wait=True)
            except Exception as e:
                logger.error(f"Error during scheduler shutdown: {e}")
        if http_client is not None:
            await http_client.aclose()

    app = FastAPI(
        title="PES Arena Payments API",
        description="M-Pesa tournament entry fees and prize payouts",
        version="0.1.0",
        lifespan=lifespan,
    )
    if services is not None:
        # Injected components are usable without running the lifespan
        app.state.services = services

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(PaymentError)
    async def payment_error_handler(request: Request, exc: PaymentError):
        """Render payment errors as {"error", "error_code", "details"} with the error's status."""
        logger.warning(f"Payment error: {exc.error_code} - {exc.message}")
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

    @app.exception_handler(ValueError)
    async def value_error_handler(request: Request, exc: ValueError):
        """Input validation failures not caught by Pydantic."""
        logger.warning(f"Validation error: {str(exc)}")
        return JSONResponse(
            status_code=400,
            content={
                "error": str(exc),
                "error_code": "payment:validation",
                "details": {}
            }
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
                "error": "An unexpected error occurred",
                "error_code": "internal_error",
                "details": {"error_type": type(exc).__name__}
            }
        )

    @app.get("/api/health")
    async def health_check():
        """Health check endpoint for monitoring and load balancers."""
        active = app.state.services
        return {
            "status": "healthy",
            "version": "0.1.0",
            "environment": active.settings.mpesa_environment,
            "active_payment_watchers": active.payments.feed.get_active_subscription_count(),
        }

    app.include_router(payments_router, prefix="/api/payments", tags=["Payments"])
    app.include_router(callbacks_router, prefix="/api/mpesa", tags=["M-Pesa Callbacks"])
    app.include_router(registrations_router, prefix="/api", tags=["Registrations"])
    app.include_router(payouts_router, prefix="/api", tags=["Payouts"])

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "pesarena.main:app",
        host=settings.host,
        port=settings.port,
        log_level=settings.log_level.lower()
    )
