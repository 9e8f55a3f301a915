"""FastAPI application entry point."""

import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from sqlalchemy import text
from starlette.responses import PlainTextResponse

from slotkeeper.api.routes import api_router
from slotkeeper.core.config import settings
from slotkeeper.core.errors import BusinessRuleError, NotFoundError
from slotkeeper.core.metrics import MetricsMiddleware, metrics
from slotkeeper.core.observability import (
    CorrelationIdMiddleware,
    RequestLoggingMiddleware,
    configure_logging,
)
from slotkeeper.db.session import SessionLocal, init_db
from slotkeeper.services.background_jobs import WaitlistJobHandlers
from slotkeeper.services.background_workers import worker_manager
from slotkeeper.services.notification_service import get_notification_service
from slotkeeper.services.scheduler_service import register_recurring_jobs, scheduler

configure_logging()
logger = logging.getLogger(__name__)

VERSION = "1.0.0"


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler."""
    logger.info("Starting slotkeeper waitlist API")

    init_db()

    WaitlistJobHandlers(get_notification_service()).register()

    scheduler_task = None
    if settings.run_background_workers:
        worker_manager.max_workers = settings.worker_count
        await worker_manager.start(SessionLocal)
        register_recurring_jobs(scheduler)
        scheduler_task = asyncio.create_task(scheduler.start())
        logger.info("Background workers and recurring scheduler started")

    yield

    if scheduler_task is not None:
        scheduler.stop()
        scheduler_task.cancel()
        try:
            await scheduler_task
        except asyncio.CancelledError:
            pass
        await worker_manager.stop()

    await get_notification_service().close()
    logger.info("Shutting down slotkeeper waitlist API")


app = FastAPI(
    title="slotkeeper",
    description="Multi-tenant appointment waitlist: slot holds, cascades and background jobs",
    version=VERSION,
    lifespan=lifespan,
    docs_url="/docs" if settings.debug else None,
    redoc_url="/redoc" if settings.debug else None,
)


@app.exception_handler(NotFoundError)
async def not_found_handler(request: Request, exc: NotFoundError):
    return JSONResponse(status_code=404, content={"detail": str(exc)})


@app.exception_handler(BusinessRuleError)
async def business_rule_handler(request: Request, exc: BusinessRuleError):
    return JSONResponse(status_code=422, content={"detail": str(exc)})


# Metrics middleware (Prometheus-compatible)
app.add_middleware(MetricsMiddleware)

# Request logging middleware
app.add_middleware(RequestLoggingMiddleware)

# Correlation IDs - added last so every other middleware logs with the ID set
app.add_middleware(CorrelationIdMiddleware)

# Include API routes
app.include_router(api_router, prefix=settings.api_v1_prefix)


@app.get("/health")
def health_check():
    """Basic liveness check endpoint."""
    return {"status": "healthy", "version": VERSION}


@app.get("/health/ready")
def readiness_check():
    """Readiness probe with database and job queue checks."""
    checks = {
        "database": "unknown",
        "job_queue": "unknown",
    }

    db = None
    try:
        db = SessionLocal()
        db.execute(text("SELECT 1"))
        checks["database"] = "healthy"
    except Exception as e:
        logger.error(f"Database health check failed: {e}")
        checks["database"] = "unhealthy"
    finally:
        if db:
            db.close()

    if settings.run_background_workers:
        active = worker_manager.get_stats()["active_workers"]
        checks["job_queue"] = f"healthy ({active} workers)" if active else "unhealthy: no workers running"
    else:
        checks["job_queue"] = "not configured"

    all_healthy = all(
        c.startswith("healthy") or c == "not configured"
        for c in checks.values()
    )

    return {
        "status": "ready" if all_healthy else "degraded",
        "version": VERSION,
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "checks": checks,
    }


@app.get("/metrics")
def prometheus_metrics():
    """Prometheus-compatible metrics endpoint."""
    return PlainTextResponse(metrics.get_prometheus_metrics(), media_type="text/plain")
