"""FastAPI application factory"""

from fastapi import FastAPI
from prometheus_client import generate_latest, CONTENT_TYPE_LATEST
from starlette.responses import Response

from charge_engine.api.middleware import RequestIDMiddleware, MetricsMiddleware
from charge_engine.api.v1 import charges, payment_plans
from charge_engine.infrastructure.observability.logging import setup_logging
from charge_engine.config import settings

# Setup structured logging
setup_logging(settings.log_level, settings.service_name)


def create_app() -> FastAPI:
    """Create and configure FastAPI application"""
    app = FastAPI(
        title="Charge & Reconciliation Engine",
        description="Registration charges, staging ledger and payment plan processing",
        version="0.1.0",
        docs_url="/docs",
        redoc_url="/redoc",
    )

    # Add middleware (order matters: last added = first executed)
    app.add_middleware(MetricsMiddleware)
    app.add_middleware(RequestIDMiddleware)

    @app.get("/health")
    def health_check():
        return {"status": "ok", "service": settings.service_name}

    # Prometheus metrics endpoint
    @app.get("/metrics")
    def metrics():
        return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)

    app.include_router(charges.router, prefix="/v1", tags=["charges"])
    app.include_router(payment_plans.router, prefix="/v1", tags=["payment-plans"])

    return app


app = create_app()
