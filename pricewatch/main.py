"""Main application entry point.

Runs the background sweeps and exposes /health and /metrics for operations.
"""

import logging
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI, Response
from prometheus_fastapi_instrumentator import Instrumentator
from sqlalchemy import text

from pricewatch.config import settings
from pricewatch.db.models import Base
from pricewatch.db.session import AsyncSessionLocal, engine
from pricewatch.logging_config import setup_logging
from pricewatch.worker.scheduler import setup_scheduler
from pricewatch.worker.tasks import task_runner

setup_logging()
logger = logging.getLogger(__name__)

# Global scheduler
scheduler = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager."""
    global scheduler

    # Startup
    logger.info("Starting price watch worker...")

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    await task_runner.initialize()

    scheduler = setup_scheduler(task_runner)
    scheduler.start()
    logger.info("Scheduler started")

    yield

    # Shutdown
    logger.info("Shutting down...")

    if scheduler:
        scheduler.shutdown(wait=False)

    await task_runner.close()
    await engine.dispose()

    logger.info("Shutdown complete")


app = FastAPI(
    title="Price Watch",
    description="Price watch monitoring core",
    version="0.1.0",
    lifespan=lifespan,
)

instrumentator = Instrumentator(
    should_group_status_codes=True,
    should_ignore_untemplated=True,
    should_respect_env_var=True,
    excluded_handlers=["/metrics", "/health"],
)
instrumentator.instrument(app).expose(app, include_in_schema=True, tags=["monitoring"])


@app.get("/health")
async def health(response: Response):
    """Health check endpoint."""
    database_ok = True
    try:
        async with AsyncSessionLocal() as db:
            await db.execute(text("SELECT 1"))
    except Exception as e:
        logger.error(f"Health check database query failed: {e}")
        database_ok = False

    if not database_ok:
        response.status_code = 503

    return {
        "status": "healthy" if database_ok else "degraded",
        "database": database_ok,
        "scheduler_running": bool(scheduler and scheduler.running),
        "evaluations_in_flight": len(task_runner.in_flight),
    }


if __name__ == "__main__":
    uvicorn.run(
        "pricewatch.main:app",
        host=settings.app_host,
        port=settings.app_port,
        reload=settings.debug,
        log_level=settings.log_level.lower(),
    )
