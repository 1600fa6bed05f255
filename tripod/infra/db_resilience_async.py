# tripod/infra/db_resilience_async.py
"""
Retry helpers for transient asyncpg failures.
"""
from __future__ import annotations
import asyncio
from typing import Callable
from contextlib import asynccontextmanager
from functools import wraps

import asyncpg
from tripod.infra.db_async import get_pool
from tripod.infra.logging_config import get_logger
from tripod.infra.metrics import AppMetrics

logger = get_logger(__name__)

_TRANSIENT_PATTERNS = (
    "connection",
    "timeout",
    "closed",
    "network",
    "deadlock",
    "too many connections",
    "server closed",
    "connection reset",
)


def is_transient_error(exc: Exception) -> bool:
    """
    True for errors worth retrying: dropped or refused connections, pool
    exhaustion, deadlocks and serialization failures.
    """
    if isinstance(exc, (
        asyncpg.PostgresConnectionError,
        asyncpg.TooManyConnectionsError,
        asyncpg.DeadlockDetectedError,
        asyncpg.SerializationError,
    )):
        return True

    if isinstance(exc, (ConnectionError, asyncio.TimeoutError)):
        return True

    # Constraint violations and bad SQL are never transient
    if isinstance(exc, asyncpg.PostgresError):
        return False

    error_message = str(exc).lower()
    return any(pattern in error_message for pattern in _TRANSIENT_PATTERNS)


def retry_on_transient_error(
    max_retries: int = 3,
    initial_delay: float = 0.1,
    backoff_factor: float = 2.0,
    max_delay: float = 5.0
):
    """
    Retry an async callable on transient database errors with exponential
    backoff.

    Example:
        @retry_on_transient_error(max_retries=3)
        async def load(service_id: str):
            async with db_conn() as conn:
                return await conn.fetchrow("SELECT * FROM services WHERE id = $1", service_id)
    """
    def decorator(func: Callable) -> Callable:
        @wraps(func)
        async def wrapper(*args, **kwargs):
            delay = initial_delay

            for attempt in range(max_retries + 1):
                try:
                    return await func(*args, **kwargs)
                except Exception as exc:
                    if not is_transient_error(exc):
                        raise

                    if attempt >= max_retries:
                        AppMetrics.database_error(func.__name__)
                        logger.error(
                            f"Max retries ({max_retries}) exceeded in {func.__name__}",
                            exc_info=True
                        )
                        raise

                    logger.warning(
                        f"Transient error in {func.__name__} (attempt {attempt + 1}/{max_retries}): {exc}. "
                        f"Retrying in {delay:.2f}s..."
                    )
                    await asyncio.sleep(delay)
                    delay = min(delay * backoff_factor, max_delay)

        return wrapper
    return decorator


@retry_on_transient_error(max_retries=3)
async def _acquire(pool: asyncpg.Pool) -> asyncpg.Connection:
    return await pool.acquire()


@asynccontextmanager
async def safe_db_conn(autocommit: bool = True):
    """
    Like ``db_conn()`` but acquiring the connection is retried on transient
    errors. The body itself is never re-run.

    Usage:
        async with safe_db_conn() as conn:
            rows = await conn.fetch("SELECT * FROM automation_rules")
    """
    pool = await get_pool()
    conn = await _acquire(pool)

    try:
        if autocommit:
            yield conn
        else:
            async with conn.transaction():
                yield conn
    finally:
        await pool.release(conn)
