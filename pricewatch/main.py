"""Main application entry point."""

import logging
from contextlib import asynccontextmanager

import uvicorn
from fastapi import Depends, FastAPI, Response
from prometheus_fastapi_instrumentator import Instrumentator
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from pricewatch import __version__
from pricewatch.api.deps import get_database, get_task_runner
from pricewatch.api.routes import checks, digest, jobs, products
from pricewatch.api.routes import settings as settings_routes
from pricewatch.config import settings
from pricewatch.db.models import Base
from pricewatch.db.session import engine
from pricewatch.logging_config import setup_logging
from pricewatch.worker.scheduler import setup_scheduler
from pricewatch.worker.tasks import TaskRunner, task_runner

setup_logging()
logger = logging.getLogger(__name__)

# Global scheduler
scheduler = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager."""
    global scheduler

    # Startup
    logger.info("Starting pricewatch API...")

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    await task_runner.initialize()

    if settings.enable_scheduler:
        scheduler = setup_scheduler()
        scheduler.start()
        logger.info("Scheduler started")
    else:
        logger.info("Scheduler disabled (ENABLE_SCHEDULER=false)")

    yield

    # Shutdown
    logger.info("Shutting down...")

    if scheduler:
        scheduler.shutdown()

    await task_runner.close()
    await engine.dispose()

    logger.info("Shutdown complete")


# Create FastAPI app
app = FastAPI(
    title="pricewatch",
    description="Track product prices and send scheduled digest reports",
    version=__version__,
    lifespan=lifespan,
)

# Add Prometheus instrumentation
instrumentator = Instrumentator(
    should_group_status_codes=True,
    should_ignore_untemplated=True,
    should_instrument_requests_inprogress=True,
    excluded_handlers=["/metrics", "/health"],
    inprogress_name="http_requests_inprogress",
    inprogress_labels=True,
)
instrumentator.instrument(app).expose(app, include_in_schema=True, tags=["monitoring"])

# Include API routes
app.include_router(products.router)
app.include_router(checks.router)
app.include_router(digest.router)
app.include_router(jobs.router)
app.include_router(settings_routes.router)


@app.get("/health")
async def health(
    response: Response,
    db: AsyncSession = Depends(get_database),
    runner: TaskRunner = Depends(get_task_runner),
):
    """Liveness plus reachability of the database and the job queue."""
    components = {}
    try:
        await db.execute(text("SELECT 1"))
        components["database"] = "ok"
    except SQLAlchemyError as e:
        logger.warning(f"Health check: database unreachable: {e}")
        components["database"] = "unavailable"

    try:
        await runner.queue.ping()
        components["queue"] = "ok"
    except Exception as e:
        logger.warning(f"Health check: queue unreachable: {e}")
        components["queue"] = "unavailable"

    healthy = all(state == "ok" for state in components.values())
    if not healthy:
        response.status_code = 503
    return {"status": "healthy" if healthy else "degraded", "components": components}


if __name__ == "__main__":
    uvicorn.run(
        "pricewatch.main:app",
        host=settings.app_host,
        port=settings.app_port,
        reload=settings.debug,
        log_level=settings.log_level.lower(),
    )
