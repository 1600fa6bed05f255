# tripod/infra/health_checks_async.py
from __future__ import annotations
import time
from typing import Dict, Any
from enum import Enum

from tripod.infra.db_async import get_pool
from tripod.infra.logging_config import get_logger
from tripod.infra.schema_validator import get_schema_info

logger = get_logger(__name__)

REQUIRED_TABLES = ("service_requests", "bundle_requests", "automation_rules", "jobs")


class HealthStatus(str, Enum):
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNHEALTHY = "unhealthy"


class AsyncHealthCheck:
    """Base class for async health checks"""

    def __init__(self, name: str, critical: bool = True):
        self.name = name
        self.critical = critical

    async def check(self) -> Dict[str, Any]:
        """
        Perform health check.
        Returns dict with 'status', 'details', and optionally 'error'
        """
        raise NotImplementedError


class AsyncDatabaseHealthCheck(AsyncHealthCheck):
    """Connectivity, required tables and response time"""

    def __init__(self):
        super().__init__("database", critical=True)

    async def check(self) -> Dict[str, Any]:
        start = time.time()

        try:
            pool = await get_pool()
            async with pool.acquire() as conn:
                result = await conn.fetchval("SELECT 1")
                if result != 1:
                    return {
                        "status": HealthStatus.UNHEALTHY,
                        "details": "Unexpected query result",
                        "error": f"Expected 1, got {result}",
                    }

                missing = []
                for table in REQUIRED_TABLES:
                    if await conn.fetchval("SELECT to_regclass($1)", table) is None:
                        missing.append(table)

                if missing:
                    return {
                        "status": HealthStatus.UNHEALTHY,
                        "details": "Missing required tables",
                        "error": f"Missing: {', '.join(missing)}",
                    }

            duration = time.time() - start
            if duration > 1.0:
                return {
                    "status": HealthStatus.DEGRADED,
                    "details": f"Slow database response: {duration:.3f}s",
                    "response_time": duration,
                }

            return {
                "status": HealthStatus.HEALTHY,
                "details": "Database operational",
                "response_time": duration,
            }

        except Exception as exc:
            logger.error("Database health check failed", exc_info=True)
            return {
                "status": HealthStatus.UNHEALTHY,
                "details": "Database connection failed",
                "error": str(exc)[:200],
            }


class AsyncAssignmentBacklogHealthCheck(AsyncHealthCheck):
    """Jobs waiting for a vendor and automation failures in the last day"""

    def __init__(self):
        super().__init__("assignment_backlog", critical=False)

    async def check(self) -> Dict[str, Any]:
        try:
            pool = await get_pool()
            async with pool.acquire() as conn:
                unassigned = await conn.fetchval(
                    """
                    SELECT count(*) FROM service_requests
                    WHERE status = 'pending'
                      AND assignee_id IS NULL AND vendor_assignee_id IS NULL
                    """
                )
                failed_24h = await conn.fetchval(
                    """
                    SELECT count(*) FROM service_requests
                    WHERE auto_assignment_status = 'failed_no_vendor'
                      AND last_automation_run_at > now() - interval '24 hours'
                    """
                )

            return {
                "status": HealthStatus.HEALTHY,
                "details": "Assignment backlog readable",
                "pending_unassigned": unassigned,
                "failed_no_vendor_24h": failed_24h,
            }

        except Exception as exc:
            logger.error("Assignment backlog health check failed", exc_info=True)
            return {
                "status": HealthStatus.DEGRADED,
                "details": "Assignment backlog check failed",
                "error": str(exc)[:200],
            }


class AsyncJobQueueHealthCheck(AsyncHealthCheck):
    """Background job queue depth"""

    def __init__(self):
        super().__init__("job_queue", critical=False)

    async def check(self) -> Dict[str, Any]:
        try:
            pool = await get_pool()
            async with pool.acquire() as conn:
                rows = await conn.fetch("SELECT status, count(*)::int AS cnt FROM jobs GROUP BY status")

            counts = {row["status"]: row["cnt"] for row in rows}
            status = HealthStatus.HEALTHY
            if counts.get("failed", 0) > 0:
                status = HealthStatus.DEGRADED
            return {
                "status": status,
                "details": "Job queue readable",
                "counts": counts,
            }

        except Exception as exc:
            logger.error("Job queue health check failed", exc_info=True)
            return {
                "status": HealthStatus.DEGRADED,
                "details": "Job queue check failed",
                "error": str(exc)[:200],
            }


class AsyncHealthChecker:
    """Aggregate async health checks"""

    def __init__(self, checks: list[AsyncHealthCheck] | None = None):
        self.checks: list[AsyncHealthCheck] = checks if checks is not None else [
            AsyncDatabaseHealthCheck(),
            AsyncAssignmentBacklogHealthCheck(),
            AsyncJobQueueHealthCheck(),
        ]

    async def run_checks(self, include_non_critical: bool = True) -> Dict[str, Any]:
        """
        Run all health checks.

        Returns:
            {
                "status": "healthy" | "degraded" | "unhealthy",
                "checks": {...},
                "schema": {...},
                "timestamp": float
            }
        """
        results = {}
        overall_status = HealthStatus.HEALTHY

        for check in self.checks:
            if not include_non_critical and not check.critical:
                continue

            result = await check.check()
            results[check.name] = result

            if result["status"] == HealthStatus.UNHEALTHY and check.critical:
                overall_status = HealthStatus.UNHEALTHY
            elif result["status"] != HealthStatus.HEALTHY and overall_status == HealthStatus.HEALTHY:
                overall_status = HealthStatus.DEGRADED

        try:
            schema_info = await get_schema_info()
        except Exception as exc:
            logger.warning(f"Schema info unavailable: {exc}")
            schema_info = {"error": str(exc)[:200]}

        return {
            "status": overall_status.value,
            "checks": results,
            "schema": schema_info,
            "timestamp": time.time(),
        }


_async_health_checker = AsyncHealthChecker()


def get_async_health_checker() -> AsyncHealthChecker:
    return _async_health_checker
