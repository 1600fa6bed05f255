# tripod/infra/job_worker.py
"""
In-process async job worker.

Polls the jobs table, claims due jobs and routes each one to the handler
registered for its ``job_type``. A failing handler leaves the job to the
repository's retry/backoff policy.
"""
from __future__ import annotations

import asyncio
from typing import Awaitable, Callable

from tripod.infra.logging_config import LogContext, get_logger
from tripod.infra.metrics import inc_counter
from tripod.infra.pg_job_repo_async import AsyncPostgresJobRepository, Job

logger = get_logger(__name__)

JobHandler = Callable[[Job], Awaitable[None]]

# Stale 'running' jobs are reset every this many poll loops
_STALE_CHECK_EVERY = 60


class JobWorker:
    """
    Usage:
        worker = JobWorker(repo=get_job_repo())
        worker.register("auto_assign_request", handle_auto_assign_request)
        await worker.start()
        ...
        await worker.stop()
    """

    def __init__(
        self,
        repo: AsyncPostgresJobRepository,
        *,
        poll_interval: float = 1.0,
        batch_size: int = 5,
        base_retry_delay: float = 5.0,
        stale_timeout: int = 300,
    ):
        self._repo = repo
        self._poll_interval = poll_interval
        self._batch_size = batch_size
        self._base_retry_delay = base_retry_delay
        self._stale_timeout = stale_timeout
        self._handlers: dict[str, JobHandler] = {}
        self._task: asyncio.Task | None = None
        self._running = False
        self._loop_count = 0

    @property
    def is_running(self) -> bool:
        return self._running and self._task is not None and not self._task.done()

    def register(self, job_type: str, handler: JobHandler) -> None:
        self._handlers[job_type] = handler

    async def start(self) -> None:
        self._running = True
        self._task = asyncio.create_task(self._loop(), name="job_worker")
        self._task.add_done_callback(self._on_task_done)
        logger.info(
            f"Job worker started: poll={self._poll_interval}s, "
            f"batch={self._batch_size}, handlers={sorted(self._handlers)}",
        )

    async def stop(self) -> None:
        """Stop polling; the batch in flight is cancelled and retried later."""
        self._running = False
        if self._task and not self._task.done():
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        logger.info("Job worker stopped")

    async def _loop(self) -> None:
        while self._running:
            try:
                self._loop_count += 1

                if self._loop_count % _STALE_CHECK_EVERY == 0:
                    try:
                        await self._repo.reset_stale_running(self._stale_timeout)
                    except Exception as exc:
                        logger.warning(f"Stale job reset failed: {exc}")

                jobs = await self._repo.claim_batch(self._batch_size)

                if jobs:
                    await asyncio.gather(*(self._execute(job) for job in jobs), return_exceptions=True)
                    await asyncio.sleep(0.1)
                else:
                    await asyncio.sleep(self._poll_interval)

            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.error(f"Job worker loop error: {exc}", exc_info=True)
                inc_counter("job_worker_loop_errors")
                await asyncio.sleep(self._poll_interval * 2)

    async def _execute(self, job: Job) -> None:
        log = LogContext(logger, job_id=job.id)
        handler = self._handlers.get(job.job_type)
        if handler is None:
            error = f"No handler registered for job_type={job.job_type}"
            log.error(error)
            await self._repo.fail(job.id, error, base_delay=self._base_retry_delay)
            inc_counter("jobs_unknown_type")
            return

        try:
            await handler(job)
            await self._repo.complete(job.id)
            inc_counter("jobs_completed", job_type=job.job_type)
            log.info(f"Job completed: type={job.job_type}, attempt={job.attempts + 1}")
        except Exception as exc:
            error_msg = f"{exc.__class__.__name__}: {exc}"[:500]
            await self._repo.fail(job.id, error_msg, base_delay=self._base_retry_delay)
            inc_counter("jobs_failed_attempt", job_type=job.job_type)
            log.warning(
                f"Job failed: type={job.job_type}, attempt={job.attempts + 1}, error={error_msg[:100]}",
            )

    @staticmethod
    def _on_task_done(task: asyncio.Task) -> None:
        if task.cancelled():
            return
        exc = task.exception()
        if exc:
            logger.error(
                f"Job worker task died unexpectedly: {exc}",
                exc_info=(type(exc), exc, exc.__traceback__),
            )
