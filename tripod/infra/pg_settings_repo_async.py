# tripod/infra/pg_settings_repo_async.py
"""
Key/value system settings stored as jsonb (e.g. ``priority_distribution``).
"""
from __future__ import annotations

import json
from typing import Any

from tripod.infra.db_resilience_async import safe_db_conn
from tripod.infra.pg_rows import parse_jsonb

PRIORITY_DISTRIBUTION_KEY = "priority_distribution"


class AsyncPostgresSettingsRepository:

    async def get_setting(self, key: str) -> Any | None:
        async with safe_db_conn() as conn:
            row = await conn.fetchrow("SELECT value FROM system_settings WHERE key = $1", key)
        return parse_jsonb(row["value"]) if row else None

    async def set_setting(self, key: str, value: Any) -> None:
        async with safe_db_conn() as conn:
            await conn.execute(
                """
                INSERT INTO system_settings (key, value)
                VALUES ($1, $2::jsonb)
                ON CONFLICT (key)
                DO UPDATE SET value = EXCLUDED.value, updated_at = now()
                """,
                key,
                json.dumps(value),
            )


_repo: AsyncPostgresSettingsRepository | None = None


def get_settings_repo() -> AsyncPostgresSettingsRepository:
    global _repo
    if _repo is None:
        _repo = AsyncPostgresSettingsRepository()
    return _repo
