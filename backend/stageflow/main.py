"""
FastAPI Main Application Entry Point for Stageflow.

This is the workflow tracking backend service that handles:
- Stage transitions and their chronology
- Business-time accounting for stage SLAs
- Scheduled notifications (stage and date rules)
- Background job scheduling
"""
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from stageflow.core.config import settings
from stageflow.core.exceptions import StageflowException
from stageflow.api.routes import (
    notification_router,
    chronology_router,
)


# Configure logging
logging.basicConfig(
    level=logging.DEBUG if settings.debug else logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan handler.

    Startup:
    - Log configuration
    - Start background scheduler

    Shutdown:
    - Stop scheduler gracefully
    """
    # Startup
    logger.info(f"🚀 Starting {settings.app_name} v{settings.app_version}")
    logger.info(f"Debug mode: {settings.debug}")
    logger.info(f"Email enabled: {settings.email_enabled}")
    logger.info(f"SMS enabled: {settings.sms_enabled}")
    logger.info(f"Push enabled: {settings.push_enabled}")
    logger.info(f"Scheduler enabled: {settings.enable_scheduler}")
    logger.info(f"Run scheduler (this instance): {settings.run_scheduler}")

    app.state.scheduler = None

    # Only ONE instance may run the scheduler: set RUN_SCHEDULER=true on a single worker
    should_run_scheduler = settings.enable_scheduler and settings.run_scheduler

    if should_run_scheduler:
        from stageflow.services.scheduler import get_scheduler
        try:
            app.state.scheduler = get_scheduler()
            app.state.scheduler.start()
            logger.info("✅ Background scheduler started")
        except Exception as e:
            logger.error(f"❌ Failed to start scheduler: {e}")

    yield

    # Shutdown
    if app.state.scheduler and app.state.scheduler.is_running:
        app.state.scheduler.stop()
        logger.info("✅ Scheduler stopped")

    logger.info("👋 Shutting down...")


# Create FastAPI application
app = FastAPI(
    title=settings.app_name,
    version=settings.app_version,
    description="""
    # Stageflow

    Tracks projects through their workflow stages.

    ## Features

    ### Chronology
    - Every stage change is an immutable ledger entry
    - Time in stage in wall-clock and business hours

    ### Scheduled Notifications
    - **Stage rules** fire on entry to or exit from a stage
    - **Date rules** fire N days before/on/after a project's start or due date
    - Generation is idempotent and safe to repeat
    - Lifecycle: scheduled → sent / failed / cancelled
    """,
    lifespan=lifespan,
    docs_url="/docs" if settings.debug else None,
    redoc_url="/redoc" if settings.debug else None,
)


# Configure CORS for frontend communication
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origin_list,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# Global exception handler for StageflowExceptions
@app.exception_handler(StageflowException)
async def stageflow_exception_handler(request, exc: StageflowException):
    """Handle all StageflowException subclasses."""
    return JSONResponse(
        status_code=exc.status_code,
        content=exc.to_dict(),
    )


# Include API routers
app.include_router(notification_router)
app.include_router(chronology_router)


# Health check endpoint
@app.get("/health", tags=["System"])
async def health_check():
    """
    Health check endpoint for monitoring.

    Returns service status and scheduler health.
    """
    scheduler = getattr(app.state, 'scheduler', None)

    if scheduler:
        scheduler_status = scheduler.get_health_status()
    else:
        scheduler_status = {"status": "disabled", "is_running": False, "jobs": [], "failures": {}}

    overall_status = "degraded" if scheduler_status["status"] == "degraded" else "healthy"

    return {
        "status": overall_status,
        "service": settings.app_name,
        "version": settings.app_version,
        "debug": settings.debug,
        "scheduler": scheduler_status,
        "timestamp": datetime.now(timezone.utc).isoformat()
    }


# Root endpoint
@app.get("/", tags=["System"])
async def root():
    """Root endpoint with API information."""
    return {
        "message": f"Welcome to {settings.app_name}",
        "version": settings.app_version,
        "docs": "/docs" if settings.debug else "Docs disabled in production",
        "health": "/health",
    }


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "stageflow.main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.debug,
    )
