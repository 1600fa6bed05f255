# tripod/infra/schema_validator.py
"""
Schema version check run at startup.

The app never migrates itself; it refuses to start when the latest applied
migration differs from ``settings.expected_schema_version``.
"""
from __future__ import annotations
from tripod.config import settings
from tripod.infra.db_async import db_conn
from tripod.infra.logging_config import get_logger

logger = get_logger(__name__)

_MIGRATE_HINT = "Run migrations first: python -m tripod.infra.migrate"

_TABLE_EXISTS_SQL = """
    SELECT EXISTS (
        SELECT FROM information_schema.tables
        WHERE table_schema = 'public'
        AND table_name = 'schema_migrations'
    )
"""


async def validate_schema_version() -> dict:
    """
    Raises:
        RuntimeError: if migrations were never run or the version differs.
    """
    async with db_conn() as conn:
        if not await conn.fetchval(_TABLE_EXISTS_SQL):
            error = f"Schema migrations table not found. {_MIGRATE_HINT}"
            logger.critical(error)
            raise RuntimeError(error)

        latest = await conn.fetchrow(
            "SELECT version, applied_at FROM schema_migrations ORDER BY version DESC LIMIT 1"
        )

    if not latest:
        error = f"No migrations have been applied. {_MIGRATE_HINT}"
        logger.critical(error)
        raise RuntimeError(error)

    current_version = latest["version"]
    if current_version != settings.expected_schema_version:
        error = (
            f"Schema version mismatch! Expected: {settings.expected_schema_version}, "
            f"Found: {current_version}. {_MIGRATE_HINT}"
        )
        logger.critical(error)
        raise RuntimeError(error)

    logger.info(f"Schema version validated: {current_version}")
    return {
        "ok": True,
        "current_version": current_version,
        "expected_version": settings.expected_schema_version,
        "error": None,
    }


async def get_schema_info() -> dict:
    async with db_conn() as conn:
        if not await conn.fetchval(_TABLE_EXISTS_SQL):
            return {"initialized": False, "migrations_applied": 0, "latest_version": None}

        rows = await conn.fetch("SELECT version, applied_at FROM schema_migrations ORDER BY version")

    migrations = [{"version": r["version"], "applied_at": r["applied_at"].isoformat()} for r in rows]
    latest = migrations[-1]["version"] if migrations else None
    return {
        "initialized": True,
        "migrations_applied": len(migrations),
        "latest_version": latest,
        "expected_version": settings.expected_schema_version,
        "is_compatible": latest == settings.expected_schema_version,
        "all_migrations": migrations,
    }
