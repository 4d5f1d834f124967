# /flowbot/utils/lifecycle.py

import logging
from contextlib import asynccontextmanager
from fastapi import FastAPI

from flowbot.config.settings import settings
from flowbot.runtime import build_runtime
from flowbot.scheduler import build_scheduler
from flowbot.utils.logging import setup_logging

# This file manages the application's lifespan: building the runtime and
# starting the background sweeps on startup, releasing them on shutdown.

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager for startup and shutdown events."""
    setup_logging()

    logger.info("Application starting up...")

    runtime = build_runtime(settings)
    if runtime.database is not None:
        await runtime.database.create_indexes()

    scheduler = None
    if settings.run_scheduler_in_process:
        scheduler = build_scheduler(runtime)
        scheduler.start()
    app.state.runtime = runtime

    logger.info("Application startup complete. Ready to accept requests.")

    yield  # Application is now running

    logger.info("Application shutting down...")

    if scheduler is not None:
        scheduler.shutdown(wait=False)
    await runtime.close()
