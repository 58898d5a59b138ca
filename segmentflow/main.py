"""
SegmentFlow API - Main Application

Serves health, queue depth, metrics and the progress WebSocket. The
progress broadcaster and the scheduler run inside this process; queue
workers run separately (``segmentflow.worker_main``).
"""

from contextlib import asynccontextmanager
from fastapi import FastAPI
import logging

from segmentflow.api.health import router as health_router
from segmentflow.api.websocket import router as websocket_router
from segmentflow.config import settings
from segmentflow.core.redis import close_redis
from segmentflow.core.sentry import init_sentry
from segmentflow.database import init_db
from segmentflow.exceptions import SegmentFlowError, segmentflow_exception_handler
from segmentflow.services.progress_broadcaster import get_progress_broadcaster
from segmentflow.tasks.scheduler import start_scheduler, stop_scheduler

# Import all models to register them with SQLAlchemy metadata before init_db()
from segmentflow import models  # noqa: F401

logging.basicConfig(
    level=logging.DEBUG if settings.DEBUG else logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan events."""
    # Startup
    logger.info("Starting SegmentFlow API...")
    logger.info(f"Environment: {settings.ENVIRONMENT}")
    init_sentry("api")
    try:
        await init_db()
        logger.info("Database initialized successfully")
    except Exception as e:
        # Don't log full exception details which may contain credentials
        logger.error(f"Database initialization failed: {type(e).__name__}")
        logger.warning("App starting without database - some features may not work")

    broadcaster = get_progress_broadcaster()
    try:
        await broadcaster.start()
    except Exception as e:
        logger.error(f"Progress broadcaster could not subscribe: {e}", exc_info=True)
    start_scheduler()

    yield

    # Shutdown
    logger.info("Shutting down SegmentFlow API...")
    stop_scheduler()
    await broadcaster.stop()
    await close_redis()


app = FastAPI(
    title="SegmentFlow API",
    description="Commerce data sync, RFM scoring, churn prediction and dynamic segments",
    version=settings.VERSION,
    docs_url=None if settings.is_production else "/docs",
    redoc_url=None,
    lifespan=lifespan,
)

app.add_exception_handler(SegmentFlowError, segmentflow_exception_handler)

app.include_router(health_router, tags=["health"])
app.include_router(websocket_router, tags=["websocket"])


@app.get("/")
async def root():
    """Root endpoint - API info."""
    return {
        "name": "SegmentFlow API",
        "version": settings.VERSION,
        "health": "/health",
    }


# For running with uvicorn directly (development only)
if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "segmentflow.main:app",
        host="0.0.0.0",
        port=5001,
        reload=settings.DEBUG,
    )
