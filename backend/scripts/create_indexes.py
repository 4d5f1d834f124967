#!/usr/bin/env python3
"""
One-time database setup script for the workflow runtime collections.

Creates the indexes used by flow publishing, session lookup, execution
listing, the retention and timeout sweeps, and the loyalty queries.

Usage:
    python backend/scripts/create_indexes.py
"""

import asyncio
import logging
import sys

from flowbot.config.settings import settings
from flowbot.services.db_service import MongoDatabase

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


async def create_indexes() -> bool:
    database = MongoDatabase(
        settings.mongo_uri,
        max_pool_size=settings.max_pool_size,
        min_pool_size=settings.min_pool_size,
        tls=settings.mongo_ssl,
    )
    try:
        if not await database.health_check():
            logger.error("MongoDB is not reachable; no indexes created")
            return False
        logger.info(f"Connected to database: {database.db.name}")
        await database.create_indexes()
        return True
    finally:
        database.close()
        logger.info("MongoDB connection closed")


if __name__ == "__main__":
    sys.exit(0 if asyncio.run(create_indexes()) else 1)
