"""
Case Escalation Service - Main Application
==========================================

SLA follow-up and escalation for support cases.

Modules:
- SLA Escalation: classify idle cases, SMS follow-ups, admin escalation alerts

Clean Architecture Layers:
- Interfaces: FastAPI controllers
- Application: Notifiers, SLA processor, DTOs
- Domain: Case entity, SLA policy, rule evaluator
- Infrastructure: Database, Twilio, Resend, scheduler
"""

from contextlib import asynccontextmanager
from typing import AsyncGenerator

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware

# Configuration and Core
from escalation_service.config import settings
from escalation_service.core import EvaluationException

# Infrastructure
from escalation_service.infrastructure.database import (
    init_database, close_database, create_tables, get_session_factory
)

# SLA Module
from escalation_service.sla.infrastructure.external import (
    SLAPolicyManager, TwilioSMSClient, ResendEmailClient, SLAScheduler
)
from escalation_service.sla.services import build_sla_processor
from escalation_service.sla.interfaces import sla_router

# Middleware and logging
from escalation_service.shared.api.middleware import (
    CorrelationIDMiddleware,
    MetricsMiddleware,
    LoggingMiddleware,
    global_exception_handler
)
from escalation_service.shared.infrastructure.logging import setup_logging, get_logger

logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator:
    """
    Application lifespan manager.

    STARTUP:
    1. Setup structured logging
    2. Initialize database (and tables in development)
    3. Load SLA policy and watch it for changes
    4. Create SMS and email clients
    5. Start the SLA scheduler (unless disabled)

    SHUTDOWN:
    1. Stop SLA scheduler
    2. Stop policy watcher
    3. Close delivery clients
    4. Close database connections
    """
    # === STARTUP ===
    setup_logging(settings.log_level, settings.environment)
    logger.info("Starting escalation service", extra={
        "version": settings.app_version,
        "environment": settings.environment
    })

    init_database()

    if settings.environment == "development":
        try:
            await create_tables()
        except Exception as e:
            logger.warning(f"Database not available - running in degraded mode: {e}")

    policy_manager = SLAPolicyManager()
    policy_manager.load(settings.sla_policy_path)
    policy_manager.start_watching()

    sms_client = TwilioSMSClient()
    email_client = ResendEmailClient()
    if not sms_client.is_configured:
        logger.warning("Twilio not configured - follow-ups will fail until it is")
    if not email_client.is_configured:
        logger.warning("Resend not configured - escalations will fail until it is")

    app.state.policy_manager = policy_manager
    app.state.sms_client = sms_client
    app.state.email_client = email_client

    sla_scheduler = None
    if settings.sla_evaluation_interval > 0:
        async def sla_job():
            """Background SLA run."""
            processor = build_sla_processor(
                get_session_factory(), policy_manager, sms_client, email_client
            )
            try:
                await processor.run()
            except EvaluationException as e:
                logger.error("Scheduled SLA run aborted", extra={"error": e.message, **e.details})

        sla_scheduler = SLAScheduler(interval_seconds=settings.sla_evaluation_interval)
        await sla_scheduler.start(sla_job)
    else:
        logger.info("SLA scheduler disabled; runs only via POST /sla/process")

    app.state.sla_scheduler = sla_scheduler

    logger.info("Escalation service started")

    yield  # Application runs here

    # === SHUTDOWN ===
    logger.info("Shutting down escalation service")

    if sla_scheduler:
        await sla_scheduler.stop()

    policy_manager.stop_watching()

    await sms_client.close()
    await email_client.close()

    await close_database()

    logger.info("Escalation service shutdown complete")


app = FastAPI(
    title="Case Escalation API",
    description="""
    ## SLA follow-up and escalation for support cases

    **Endpoints:**
    - `POST /sla/process` - Run follow-up and escalation once
    - `POST /sla/cases` - Create a case
    - `GET /sla/cases/{id}` - Case with live SLA classification and notification history
    - `POST /sla/cases/{id}/activity` - Record staff activity (restarts the SLA clock)
    - `PATCH /sla/cases/{id}/status` - Change status (close / reopen)
    - `GET /sla/overview` - Open cases by SLA classification

    **Default thresholds:** follow-up after 24h idle, escalation after 48h idle,
    overridable per tenant in the SLA policy file.
    """,
    version=settings.app_version,
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan
)

# === CORS Middleware ===
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.add_middleware(CorrelationIDMiddleware)
app.add_middleware(MetricsMiddleware)
app.add_middleware(LoggingMiddleware)
app.add_exception_handler(Exception, global_exception_handler)

# === Include Module Routers ===
app.include_router(sla_router)


# === Health Check Endpoint ===

@app.get("/health", tags=["Health"], responses={
    200: {
        "description": "Service is healthy",
        "content": {
            "application/json": {
                "example": {
                    "status": "healthy",
                    "version": "1.0.0",
                    "environment": "development",
                    "checks": {
                        "sla_policy": "loaded",
                        "sla_scheduler": "running",
                        "sms": "configured",
                        "email": "configured"
                    }
                }
            }
        }
    }
})
async def health_check(request: Request):
    """
    Health check endpoint for load balancers and orchestrators.
    """
    state = request.app.state
    scheduler = getattr(state, "sla_scheduler", None)
    sms_client = getattr(state, "sms_client", None)
    email_client = getattr(state, "email_client", None)

    checks = {
        "sla_policy": "loaded" if getattr(state, "policy_manager", None) else "default",
        "sla_scheduler": "running" if scheduler and scheduler.is_running else "stopped",
        "sms": "configured" if sms_client and sms_client.is_configured else "not_configured",
        "email": "configured" if email_client and email_client.is_configured else "not_configured",
    }

    return {
        "status": "healthy",
        "version": settings.app_version,
        "environment": settings.environment,
        "checks": checks
    }


@app.get("/", tags=["Root"])
async def root():
    """Root endpoint with API information."""
    return {
        "service": "Case Escalation Service",
        "version": settings.app_version,
        "docs": "/docs",
        "health": "/health",
        "modules": {
            "sla": {
                "prefix": "/sla",
                "endpoints": [
                    "POST /sla/process - Run follow-up and escalation",
                    "POST /sla/cases - Create case",
                    "GET /sla/cases/{id} - Case SLA status",
                    "POST /sla/cases/{id}/activity - Record activity",
                    "PATCH /sla/cases/{id}/status - Change status",
                    "GET /sla/overview - SLA overview"
                ]
            }
        }
    }


# === Development Entry Point ===

if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "escalation_service.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.environment == "development",
        log_level="info"
    )
