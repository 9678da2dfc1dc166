"""FastAPI application factory"""

from fastapi import FastAPI
from prometheus_client import generate_latest, CONTENT_TYPE_LATEST
from starlette.responses import Response

from carestint_payments.api.errors import register_exception_handlers
from carestint_payments.api.middleware import RequestIDMiddleware, MetricsMiddleware
from carestint_payments.api.v1 import fees, payments, payouts, stints, webhooks
from carestint_payments.infrastructure.observability.logging import setup_logging
from carestint_payments.services.locks import StintLockRegistry
from carestint_payments.config import settings

# Setup structured logging
setup_logging(settings.log_level)


def create_app() -> FastAPI:
    """Create and configure FastAPI application"""
    app = FastAPI(
        title="CareStint Payments",
        description="Payment intent and payout settlement engine",
        version="0.1.0",
        docs_url="/docs",
        redoc_url="/redoc",
    )

    # Shared by every request so per-stint locking holds across the app
    app.state.locks = StintLockRegistry()

    # Add middleware (order matters: last added = first executed)
    app.add_middleware(MetricsMiddleware)
    app.add_middleware(RequestIDMiddleware)

    register_exception_handlers(app)

    # Health check endpoint
    @app.get("/health")
    def health_check():
        return {"status": "ok", "service": settings.service_name}

    # Prometheus metrics endpoint
    @app.get("/metrics")
    def metrics():
        return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)

    # Register API routers
    app.include_router(fees.router, prefix="/v1", tags=["fees"])
    app.include_router(payments.router, prefix="/v1", tags=["payment-intents"])
    app.include_router(webhooks.router, prefix="/v1", tags=["webhooks"])
    app.include_router(stints.router, prefix="/v1", tags=["stints"])
    app.include_router(payouts.router, prefix="/v1", tags=["payouts"])

    return app


app = create_app()
