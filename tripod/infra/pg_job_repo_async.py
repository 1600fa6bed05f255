# tripod/infra/pg_job_repo_async.py
"""
Background job queue stored in the ``jobs`` table.

Jobs are claimed with FOR UPDATE SKIP LOCKED so several worker processes
can share one queue without double execution.
"""
from __future__ import annotations

import json
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from tripod.infra.db_resilience_async import safe_db_conn
from tripod.infra.logging_config import get_logger
from tripod.infra.metrics import inc_counter

logger = get_logger(__name__)

JOB_AUTO_ASSIGN = "auto_assign_request"
JOB_NOTIFY_WEBHOOK = "notify_webhook"


@dataclass
class Job:
    id: str
    job_type: str
    payload: dict[str, Any]
    status: str
    priority: int
    attempts: int
    max_attempts: int
    error_message: str | None
    scheduled_at: datetime
    created_at: datetime
    started_at: datetime | None = None
    completed_at: datetime | None = None


def _row_to_job(row) -> Job:
    payload = row["payload"]
    if isinstance(payload, str):
        payload = json.loads(payload)
    return Job(
        id=str(row["id"]),
        job_type=row["job_type"],
        payload=payload or {},
        status=row["status"],
        priority=row["priority"],
        attempts=row["attempts"],
        max_attempts=row["max_attempts"],
        error_message=row["error_message"],
        scheduled_at=row["scheduled_at"],
        created_at=row["created_at"],
        started_at=row.get("started_at"),
        completed_at=row.get("completed_at"),
    )


class AsyncPostgresJobRepository:
    """DB-backed job queue with claim/complete/fail semantics."""

    async def enqueue(
        self,
        job_type: str,
        payload: dict[str, Any],
        *,
        priority: int = 0,
        max_attempts: int = 5,
        delay_seconds: float = 0,
    ) -> str:
        """
        Insert a new pending job and return its id.

        Args:
            job_type: Handler key, e.g. ``auto_assign_request``
            payload: JSON-serializable job data
            priority: Lower runs first (default 0, -1 for urgent work)
            max_attempts: Attempts before the job is marked failed
            delay_seconds: Delay before the first attempt
        """
        async with safe_db_conn() as conn:
            row = await conn.fetchrow(
                """
                INSERT INTO jobs (job_type, payload, priority, max_attempts, scheduled_at)
                VALUES ($1, $2::jsonb, $3, $4, now() + make_interval(secs => $5))
                RETURNING id
                """,
                job_type,
                json.dumps(payload),
                priority,
                max_attempts,
                float(delay_seconds),
            )
            job_id = str(row["id"])
            logger.debug(
                f"Job enqueued: id={job_id[:8]}, type={job_type}, priority={priority}",
                extra={"job_id": job_id},
            )
            inc_counter("jobs_enqueued", job_type=job_type)
            return job_id

    async def claim_batch(self, batch_size: int = 5) -> list[Job]:
        """Atomically move up to ``batch_size`` due jobs to 'running' and return them."""
        async with safe_db_conn() as conn:
            rows = await conn.fetch(
                """
                WITH claimed AS (
                    SELECT id FROM jobs
                    WHERE status = 'pending'
                      AND scheduled_at <= now()
                    ORDER BY priority, created_at
                    LIMIT $1
                    FOR UPDATE SKIP LOCKED
                )
                UPDATE jobs
                SET status = 'running', started_at = now()
                WHERE id IN (SELECT id FROM claimed)
                RETURNING *
                """,
                batch_size,
            )
            return [_row_to_job(row) for row in rows]

    async def complete(self, job_id: str) -> None:
        async with safe_db_conn() as conn:
            await conn.execute(
                """
                UPDATE jobs
                SET status = 'completed', completed_at = now()
                WHERE id = $1
                """,
                job_id,
            )

    async def fail(
        self,
        job_id: str,
        error_message: str,
        *,
        base_delay: float = 5.0,
    ) -> None:
        """
        Record a failed attempt.

        The job goes back to 'pending' with a delay of
        ``base_delay * 2^attempts`` until ``max_attempts`` is reached, then
        it is marked 'failed' for good.
        """
        async with safe_db_conn() as conn:
            await conn.execute(
                """
                UPDATE jobs
                SET
                  attempts = attempts + 1,
                  error_message = $2,
                  status = CASE
                    WHEN attempts + 1 < max_attempts THEN 'pending'
                    ELSE 'failed'
                  END,
                  scheduled_at = CASE
                    WHEN attempts + 1 < max_attempts
                      THEN now() + make_interval(secs => $3 * power(2, attempts))
                    ELSE scheduled_at
                  END,
                  completed_at = CASE
                    WHEN attempts + 1 >= max_attempts THEN now()
                    ELSE NULL
                  END
                WHERE id = $1
                """,
                job_id,
                error_message[:2000],
                base_delay,
            )

    async def count_by_status(self, job_type: str | None = None) -> dict[str, int]:
        async with safe_db_conn() as conn:
            if job_type:
                rows = await conn.fetch(
                    "SELECT status, count(*)::int AS cnt FROM jobs WHERE job_type = $1 GROUP BY status",
                    job_type,
                )
            else:
                rows = await conn.fetch(
                    "SELECT status, count(*)::int AS cnt FROM jobs GROUP BY status",
                )
            return {row["status"]: row["cnt"] for row in rows}

    async def get_recent(
        self,
        limit: int = 50,
        status: str | None = None,
        job_type: str | None = None,
    ) -> list[Job]:
        conditions = []
        params: list[Any] = []
        idx = 1

        if status:
            conditions.append(f"status = ${idx}")
            params.append(status)
            idx += 1

        if job_type:
            conditions.append(f"job_type = ${idx}")
            params.append(job_type)
            idx += 1

        where = f"WHERE {' AND '.join(conditions)}" if conditions else ""
        params.append(limit)

        async with safe_db_conn() as conn:
            rows = await conn.fetch(
                f"SELECT * FROM jobs {where} ORDER BY created_at DESC LIMIT ${idx}",
                *params,
            )
            return [_row_to_job(row) for row in rows]

    async def _delete_finished(self, status: str, ttl_days: int) -> int:
        async with safe_db_conn() as conn:
            result = await conn.execute(
                """
                DELETE FROM jobs
                WHERE status = $1
                  AND completed_at < now() - make_interval(days => $2)
                """,
                status,
                ttl_days,
            )
            count = int(result.split()[-1]) if result else 0
            if count > 0:
                logger.info(f"Cleaned up {count} {status} jobs older than {ttl_days} days")
            return count

    async def cleanup_completed(self, ttl_days: int = 7) -> int:
        return await self._delete_finished("completed", ttl_days)

    async def cleanup_failed(self, ttl_days: int = 30) -> int:
        return await self._delete_finished("failed", ttl_days)

    async def reset_stale_running(self, timeout_seconds: int = 300) -> int:
        """Put jobs stuck in 'running' (worker crashed mid-job) back in the queue."""
        async with safe_db_conn() as conn:
            result = await conn.execute(
                """
                UPDATE jobs
                SET status = 'pending', scheduled_at = now()
                WHERE status = 'running'
                  AND started_at < now() - make_interval(secs => $1)
                """,
                timeout_seconds,
            )
            count = int(result.split()[-1]) if result else 0
            if count > 0:
                logger.warning(f"Reset {count} stale running jobs (stuck > {timeout_seconds}s)")
                inc_counter("jobs_stale_reset")
            return count


_job_repo: AsyncPostgresJobRepository | None = None


def get_job_repo() -> AsyncPostgresJobRepository:
    global _job_repo
    if _job_repo is None:
        _job_repo = AsyncPostgresJobRepository()
    return _job_repo
