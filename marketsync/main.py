"""Main application entry point."""

import logging
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI
from prometheus_fastapi_instrumentator import Instrumentator

from marketsync.api.routes import jobs, market, scheduler as scheduler_routes
from marketsync.config import settings
from marketsync.db.models import Base
from marketsync.db.session import engine
from marketsync.logging_config import setup_logging
from marketsync.worker.scheduler import setup_scheduler
from marketsync.worker.tasks import task_runner

logger = logging.getLogger(__name__)

# Global scheduler
scheduler = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager."""
    global scheduler

    setup_logging()
    logger.info("Starting market data service...")

    # Development convenience; production schema comes from alembic
    if settings.debug:
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    if settings.scheduler_enabled:
        scheduler = setup_scheduler(task_runner)
        scheduler.start()
        logger.info("Scheduler started")

    yield

    logger.info("Shutting down...")
    if scheduler:
        scheduler.shutdown(wait=False)
        scheduler = None

    await task_runner.close()
    await engine.dispose()
    logger.info("Shutdown complete")


app = FastAPI(
    title="Market Sync",
    description="Rate-limited resale market data ingestion",
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

app.include_router(jobs.router)
app.include_router(market.router)
app.include_router(scheduler_routes.router)


@app.get("/health")
async def health():
    """Liveness probe."""
    return {"status": "ok", "scheduler_running": bool(scheduler and scheduler.running)}


def main():
    """Run the API server."""
    uvicorn.run(
        "marketsync.main:app",
        host=settings.app_host,
        port=settings.app_port,
        reload=settings.debug,
        log_config=None,
    )


if __name__ == "__main__":
    main()
