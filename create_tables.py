#!/usr/bin/env python3
"""Create database tables for a fresh deployment"""

import asyncio
import logging
import sys

from sqlalchemy import text
from sqlalchemy.ext.asyncio import create_async_engine

from instantphoto.config import settings

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


async def create_tables() -> bool:
    """Create database tables"""
    try:
        logger.info("Starting table creation...")
        logger.info(f"Database URL (masked): {str(settings.database_url)[:50]}...")

        engine = create_async_engine(str(settings.database_url))

        async with engine.begin() as conn:
            await conn.execute(text("SELECT 1"))
            logger.info("Database connection successful")

        # Import models to register them with Base
        from instantphoto.db import models  # noqa: F401
        from instantphoto.db.database import Base

        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
            logger.info(f"Created {len(Base.metadata.tables)} tables")

        await engine.dispose()
        logger.info("Table creation completed successfully!")
        return True

    except Exception as e:
        logger.error(f"Failed to create tables: {e}")
        return False


if __name__ == "__main__":
    success = asyncio.run(create_tables())
    sys.exit(0 if success else 1)
