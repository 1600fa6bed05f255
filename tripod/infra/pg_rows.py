# tripod/infra/pg_rows.py
"""
Small helpers shared by the asyncpg repositories.
"""
from __future__ import annotations

import json
from typing import Any, Iterable, Mapping

import asyncpg


class RecordNotFoundError(Exception):
    """The row addressed by id does not exist."""


class DuplicateRecordError(Exception):
    """An insert or update hit a unique constraint."""


def parse_jsonb(raw: Any, default: Any = None) -> Any:
    """jsonb columns arrive as str unless a codec is registered on the pool."""
    if raw is None:
        return {} if default is None else default
    if isinstance(raw, str):
        return json.loads(raw)
    return raw


def command_count(result: str | None) -> int:
    """Rows affected, from an asyncpg status string such as ``UPDATE 3``."""
    return int(result.split()[-1]) if result else 0


def is_unique_violation(exc: Exception) -> bool:
    if isinstance(exc, asyncpg.UniqueViolationError):
        return True
    message = str(exc).lower()
    return "duplicate key" in message or "unique" in message


def build_update(
    table: str,
    fields: Mapping[str, Any],
    *,
    allowed: Iterable[str],
    jsonb: Iterable[str] = (),
    touch_updated_at: bool = True,
) -> tuple[str, list[Any]] | None:
    """
    ``UPDATE <table> SET ... WHERE id = $1 RETURNING *`` for the allow-listed
    keys of ``fields``. Returns None when there is nothing to set.

    Parameters start at $2; the caller passes the id first.
    """
    allowed = set(allowed)
    jsonb = set(jsonb)
    updates: list[str] = []
    params: list[Any] = []
    idx = 2

    for column, value in fields.items():
        if column not in allowed:
            continue
        if column in jsonb:
            updates.append(f"{column} = ${idx}::jsonb")
            params.append(json.dumps(value, default=str))
        else:
            updates.append(f"{column} = ${idx}")
            params.append(value)
        idx += 1

    if not updates:
        return None

    if touch_updated_at:
        updates.append("updated_at = now()")
    return f"UPDATE {table} SET {', '.join(updates)} WHERE id = $1 RETURNING *", params


def build_insert(table: str, fields: Mapping[str, Any], *, jsonb: Iterable[str] = ()) -> tuple[str, list[Any]]:
    """``INSERT INTO <table> (...) VALUES ($1, ...) RETURNING *`` for ``fields``."""
    jsonb = set(jsonb)
    columns = list(fields)
    placeholders = [
        f"${i}::jsonb" if column in jsonb else f"${i}"
        for i, column in enumerate(columns, start=1)
    ]
    params = [
        json.dumps(fields[column], default=str) if column in jsonb else fields[column]
        for column in columns
    ]
    return f"INSERT INTO {table} ({', '.join(columns)}) VALUES ({', '.join(placeholders)}) RETURNING *", params
