# /backend/scheduler.py

import asyncio
import logging

from flowbot.config.settings import settings
from flowbot.runtime import build_runtime
from flowbot.scheduler import build_scheduler
from flowbot.utils.logging import setup_logging

# Standalone sweep service for deployments that run the API with
# RUN_SCHEDULER_IN_PROCESS=false (several API workers sharing MongoDB/Redis).

logger = logging.getLogger("SchedulerService")


async def main():
    setup_logging()
    if settings.storage_backend != "mongo":
        logger.error("The standalone scheduler needs STORAGE_BACKEND=mongo to see the API's executions.")
        return

    runtime = build_runtime(settings)
    scheduler = build_scheduler(runtime)
    scheduler.start()
    logger.info("Scheduler started successfully. Press Ctrl+C to exit.")

    # This loop keeps the script running forever
    try:
        while True:
            await asyncio.sleep(3600)
    except (KeyboardInterrupt, SystemExit, asyncio.CancelledError):
        scheduler.shutdown()
    finally:
        await runtime.close()

if __name__ == "__main__":
    asyncio.run(main())
