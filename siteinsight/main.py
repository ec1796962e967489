"""SiteInsight: FastAPI Application Entry Point.

Hosts the scheduled ingestion and export jobs. The only HTTP surface is a
health check; dashboards read the stored records directly.
"""

import os
from contextlib import asynccontextmanager

from fastapi import FastAPI

from siteinsight.config import settings
from siteinsight.container import Container
from siteinsight.core.logging import get_logger
from siteinsight.database import init_db, test_connection
from siteinsight.scheduler.jobs import start_scheduler, stop_scheduler

logger = get_logger("main")

IS_SERVERLESS = bool(
    os.environ.get("VERCEL") or os.environ.get("AWS_LAMBDA_FUNCTION_NAME")
)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown lifecycle."""
    logger.info("SiteInsight starting up...")
    container = Container(settings)
    app.state.container = container

    if test_connection(container.engine):
        init_db(container.engine)
    else:
        logger.error("Database NOT connected; scheduled jobs will fail")

    if not IS_SERVERLESS:
        start_scheduler(container.jobs)
    yield
    if not IS_SERVERLESS:
        stop_scheduler()
    await container.close()
    logger.info("SiteInsight shut down")


app = FastAPI(
    title="SiteInsight",
    description="Multi-tenant GA4 and Search Console ingestion with monthly spreadsheet export.",
    version="1.0.0",
    lifespan=lifespan,
)


@app.get("/health", tags=["System"])
async def health_check():
    """Health check endpoint."""
    container: Container = app.state.container
    return {
        "status": "healthy",
        "service": "siteinsight",
        "version": "1.0.0",
        "database": test_connection(container.engine),
        "scheduler_enabled": settings.scheduler_enabled and not IS_SERVERLESS,
    }
