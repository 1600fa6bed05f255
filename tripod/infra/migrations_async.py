# tripod/infra/migrations_async.py
"""
SQL migrations runner (asyncpg).

Files in ``tripod/infra/sql`` are applied in name order inside one
transaction; applied versions are recorded in ``schema_migrations``.
"""
from __future__ import annotations
from pathlib import Path

from tripod.infra.db_async import db_conn
from tripod.infra.logging_config import get_logger

logger = get_logger(__name__)


def _sql_dir() -> Path:
    return Path(__file__).resolve().parent / "sql"


def migration_files() -> list[Path]:
    return sorted(p for p in _sql_dir().glob("*.sql") if p.is_file())


async def apply_migrations() -> dict:
    """
    Apply pending migrations.

    Returns:
        dict with keys ``ok``, ``applied`` (file names applied in this run)
        and ``count``.
    """
    files = migration_files()

    async with db_conn(autocommit=False) as conn:
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS schema_migrations(
              version text PRIMARY KEY,
              applied_at timestamptz NOT NULL DEFAULT now()
            )
            """
        )

        rows = await conn.fetch("SELECT version FROM schema_migrations")
        applied = {row["version"] for row in rows}

        applied_now = []
        for path in files:
            version = path.name
            if version in applied:
                logger.debug(f"Migration {version} already applied, skipping")
                continue

            logger.info(f"Applying migration: {version}")
            await conn.execute(path.read_text(encoding="utf-8"))
            await conn.execute("INSERT INTO schema_migrations(version) VALUES ($1)", version)

            applied_now.append(version)
            logger.info(f"Migration {version} applied successfully")

    logger.info(f"Migrations complete: {len(applied_now)} applied")
    return {"ok": True, "applied": applied_now, "count": len(applied_now)}
