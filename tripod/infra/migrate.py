#!/usr/bin/env python3
# tripod/infra/migrate.py
"""
Standalone migration runner:

    python -m tripod.infra.migrate

Run it before starting the app (CI/CD step, init container or by hand).
The app only validates the schema version at startup.
"""
import asyncio
import sys

from tripod.config import settings
from tripod.infra.db_async import close_pool, init_pool
from tripod.infra.logging_config import get_logger, setup_logging
from tripod.infra.migrations_async import apply_migrations

logger = get_logger(__name__)


async def main() -> int:
    logger.info("=" * 60)
    logger.info("Database Migration Runner")
    logger.info("=" * 60)
    logger.info(f"Environment: {settings.app_env}")
    logger.info(f"Database: {settings.pghost}:{settings.pgport}/{settings.pgdatabase}")
    logger.info("=" * 60)

    try:
        await init_pool()
        logger.info("Database connected")

        result = await apply_migrations()

        logger.info("=" * 60)
        logger.info(f"Status: {'SUCCESS' if result['ok'] else 'FAILED'}")
        logger.info(f"Migrations applied: {result['count']}")
        for migration in result["applied"]:
            logger.info(f"  + {migration}")
        if not result["applied"]:
            logger.info("No new migrations to apply")
        logger.info("=" * 60)

        return 0 if result["ok"] else 1

    except Exception as exc:
        logger.critical("MIGRATION FAILED")
        logger.critical(f"Error: {exc}", exc_info=True)
        return 1

    finally:
        await close_pool()


if __name__ == "__main__":
    setup_logging(level="INFO", use_json=False)
    sys.exit(asyncio.run(main()))
