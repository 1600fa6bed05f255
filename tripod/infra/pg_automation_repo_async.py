# tripod/infra/pg_automation_repo_async.py
"""
Async Postgres store for automatic assignment.

Implements ``tripod.core.ports.AutomationStore`` for the engine and the
admin CRUD for automation rules, vendor service capacities and designer
capacities.
"""
from __future__ import annotations

import json
from datetime import datetime
from typing import Any

from tripod.core.domain import (
    AutomationAssignmentLog,
    AutomationRule,
    DesignerCapacity,
    JobStatus,
    Service,
    ServiceRequest,
    User,
    UserRole,
    VendorProfile,
    VendorServiceCapacity,
)
from tripod.infra.db_resilience_async import safe_db_conn
from tripod.infra.logging_config import get_logger
from tripod.infra.pg_directory_repo_async import row_to_service, row_to_user, row_to_vendor_profile
from tripod.infra.pg_request_repo_async import row_to_service_request
from tripod.infra.pg_rows import (
    DuplicateRecordError,
    RecordNotFoundError,
    build_insert,
    build_update,
    command_count,
    is_unique_violation,
    parse_jsonb,
)

logger = get_logger(__name__)

RULE_FIELDS = (
    "name", "scope", "client_id", "is_active", "priority", "service_ids",
    "match_criteria", "routing_target", "routing_strategy",
    "allowed_vendor_ids", "excluded_vendor_ids", "fallback_action",
)
VENDOR_CAPACITY_FIELDS = (
    "vendor_profile_id", "service_id", "daily_capacity", "priority", "auto_assign_enabled",
)
DESIGNER_CAPACITY_FIELDS = (
    "user_id", "service_id", "daily_capacity", "priority", "is_primary", "auto_assign_enabled",
)


def _row_to_rule(row) -> AutomationRule:
    return AutomationRule(
        id=row["id"],
        name=row["name"],
        priority=row["priority"],
        scope=row["scope"],
        client_id=row["client_id"],
        is_active=row["is_active"],
        service_ids=list(row["service_ids"]) if row["service_ids"] is not None else None,
        match_criteria=parse_jsonb(row["match_criteria"]),
        routing_target=row["routing_target"],
        routing_strategy=row["routing_strategy"],
        allowed_vendor_ids=list(row["allowed_vendor_ids"]) if row["allowed_vendor_ids"] is not None else None,
        excluded_vendor_ids=list(row["excluded_vendor_ids"]) if row["excluded_vendor_ids"] is not None else None,
        fallback_action=row["fallback_action"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def _row_to_vendor_capacity(row) -> VendorServiceCapacity:
    return VendorServiceCapacity(
        id=row["id"],
        vendor_profile_id=row["vendor_profile_id"],
        service_id=row["service_id"],
        daily_capacity=row["daily_capacity"],
        priority=row["priority"],
        auto_assign_enabled=row["auto_assign_enabled"],
    )


def _row_to_designer_capacity(row) -> DesignerCapacity:
    return DesignerCapacity(
        id=row["id"],
        user_id=row["user_id"],
        service_id=row["service_id"],
        daily_capacity=row["daily_capacity"],
        priority=row["priority"],
        is_primary=row["is_primary"],
        auto_assign_enabled=row["auto_assign_enabled"],
    )


def _row_to_log(row) -> AutomationAssignmentLog:
    return AutomationAssignmentLog(
        request_id=row["request_id"],
        step=row["step"],
        result=row["result"],
        request_type=row["request_type"],
        rule_id=row["rule_id"],
        reason=row["reason"],
        chosen_id=row["chosen_id"],
        candidates_considered=list(row["candidates_considered"] or []),
        capacity_snapshot=parse_jsonb(row["capacity_snapshot"], default=[]),
        created_at=row["created_at"],
    )


class AsyncPostgresAutomationRepository:
    """asyncpg implementation of the assignment engine's store."""

    # ------------------------------------------------------------------
    # AutomationStore: reads
    # ------------------------------------------------------------------

    async def get_service_request(self, request_id: str) -> ServiceRequest | None:
        async with safe_db_conn() as conn:
            row = await conn.fetchrow("SELECT * FROM service_requests WHERE id = $1", request_id)
        return row_to_service_request(row) if row else None

    async def get_service(self, service_id: str) -> Service | None:
        async with safe_db_conn() as conn:
            row = await conn.fetchrow("SELECT * FROM services WHERE id = $1", service_id)
        return row_to_service(row) if row else None

    async def list_active_rules(self) -> list[AutomationRule]:
        async with safe_db_conn() as conn:
            rows = await conn.fetch(
                "SELECT * FROM automation_rules WHERE is_active ORDER BY priority DESC, created_at"
            )
        return [_row_to_rule(r) for r in rows]

    async def list_vendor_capacities(self, service_id: str) -> list[VendorServiceCapacity]:
        async with safe_db_conn() as conn:
            rows = await conn.fetch(
                "SELECT * FROM vendor_service_capacities WHERE service_id = $1 "
                "ORDER BY priority DESC, vendor_profile_id",
                service_id,
            )
        return [_row_to_vendor_capacity(r) for r in rows]

    async def get_vendor_profiles(self, profile_ids: list[str]) -> dict[str, VendorProfile]:
        if not profile_ids:
            return {}
        async with safe_db_conn() as conn:
            rows = await conn.fetch(
                "SELECT * FROM vendor_profiles WHERE id = ANY($1::text[])",
                list(set(profile_ids)),
            )
        return {r["id"]: row_to_vendor_profile(r) for r in rows}

    async def count_vendor_assignments(
        self, vendor_user_id: str, service_id: str, start: datetime, end: datetime,
    ) -> int:
        async with safe_db_conn() as conn:
            return await conn.fetchval(
                """
                SELECT count(*)::int FROM service_requests
                WHERE vendor_assignee_id = $1
                  AND service_id = $2
                  AND vendor_assigned_at >= $3
                  AND vendor_assigned_at < $4
                """,
                vendor_user_id, service_id, start, end,
            )

    async def list_vendor_designers(self, vendor_user_id: str) -> list[User]:
        async with safe_db_conn() as conn:
            rows = await conn.fetch(
                "SELECT * FROM users WHERE vendor_id = $1 AND role = $2 AND is_active ORDER BY username",
                vendor_user_id,
                UserRole.VENDOR_DESIGNER.value,
            )
        return [row_to_user(r) for r in rows]

    async def list_designer_capacities(self, service_id: str, user_ids: list[str]) -> list[DesignerCapacity]:
        if not user_ids:
            return []
        async with safe_db_conn() as conn:
            rows = await conn.fetch(
                "SELECT * FROM vendor_designer_capacities WHERE service_id = $1 AND user_id = ANY($2::text[])",
                service_id,
                list(user_ids),
            )
        return [_row_to_designer_capacity(r) for r in rows]

    async def count_designer_assignments(
        self, designer_id: str, service_id: str, start: datetime, end: datetime,
    ) -> int:
        async with safe_db_conn() as conn:
            return await conn.fetchval(
                """
                SELECT count(*)::int FROM service_requests
                WHERE assignee_id = $1
                  AND service_id = $2
                  AND assigned_at >= $3
                  AND assigned_at < $4
                """,
                designer_id, service_id, start, end,
            )

    async def list_active_admins(self) -> list[User]:
        async with safe_db_conn() as conn:
            rows = await conn.fetch(
                "SELECT * FROM users WHERE role = $1 AND is_active ORDER BY username",
                UserRole.ADMIN.value,
            )
        return [row_to_user(r) for r in rows]

    # ------------------------------------------------------------------
    # AutomationStore: writes
    # ------------------------------------------------------------------

    async def save_assignment_logs(self, logs: list[AutomationAssignmentLog]) -> None:
        if not logs:
            return
        async with safe_db_conn() as conn:
            await conn.executemany(
                """
                INSERT INTO automation_assignment_logs
                    (request_id, request_type, rule_id, step, result, reason,
                     chosen_id, candidates_considered, capacity_snapshot)
                VALUES ($1, $2, $3, $4, $5, $6, $7, $8::text[], $9::jsonb)
                """,
                [
                    (
                        log.request_id,
                        log.request_type,
                        log.rule_id,
                        log.step,
                        log.result,
                        log.reason,
                        log.chosen_id,
                        [c for c in log.candidates_considered if c],
                        json.dumps(log.capacity_snapshot),
                    )
                    for log in logs
                ],
            )

    async def apply_assignment(
        self,
        request_id: str,
        *,
        status: str,
        note: str,
        run_at: datetime,
        vendor_assignee_id: str | None = None,
        designer_assignee_id: str | None = None,
    ) -> bool:
        """
        Store the automation outcome. Assigning writes only land on a
        request that is still unassigned and unlocked.
        """
        assigning = bool(vendor_assignee_id or designer_assignee_id)
        async with safe_db_conn() as conn:
            result = await conn.execute(
                """
                UPDATE service_requests
                SET auto_assignment_status = $2,
                    last_automation_note = $3,
                    last_automation_run_at = $4,
                    vendor_assignee_id = COALESCE($5::text, vendor_assignee_id),
                    vendor_assigned_at = CASE WHEN $5::text IS NOT NULL THEN $4 ELSE vendor_assigned_at END,
                    assignee_id = COALESCE($6::text, assignee_id),
                    assigned_at = CASE WHEN $6::text IS NOT NULL THEN $4 ELSE assigned_at END,
                    status = CASE WHEN $6::text IS NOT NULL THEN $8 ELSE status END,
                    updated_at = now()
                WHERE id = $1
                  AND (NOT $7::boolean
                       OR (vendor_assignee_id IS NULL AND assignee_id IS NULL AND NOT locked_assignment))
                """,
                request_id,
                status,
                note,
                run_at,
                vendor_assignee_id,
                designer_assignee_id,
                assigning,
                JobStatus.IN_PROGRESS.value,
            )
        return command_count(result) > 0

    # ------------------------------------------------------------------
    # Assignment log
    # ------------------------------------------------------------------

    async def list_assignment_logs(self, request_id: str) -> list[AutomationAssignmentLog]:
        async with safe_db_conn() as conn:
            rows = await conn.fetch(
                "SELECT * FROM automation_assignment_logs WHERE request_id = $1 ORDER BY created_at, id",
                request_id,
            )
        return [_row_to_log(r) for r in rows]

    # ------------------------------------------------------------------
    # Rules CRUD
    # ------------------------------------------------------------------

    async def list_rules(self) -> list[AutomationRule]:
        async with safe_db_conn() as conn:
            rows = await conn.fetch("SELECT * FROM automation_rules ORDER BY priority DESC, created_at")
        return [_row_to_rule(r) for r in rows]

    async def get_rule(self, rule_id: str) -> AutomationRule | None:
        async with safe_db_conn() as conn:
            row = await conn.fetchrow("SELECT * FROM automation_rules WHERE id = $1", rule_id)
        return _row_to_rule(row) if row else None

    async def create_rule(self, fields: dict[str, Any]) -> AutomationRule:
        data = {k: v for k, v in fields.items() if k in RULE_FIELDS}
        sql, params = build_insert("automation_rules", data, jsonb=("match_criteria",))
        async with safe_db_conn() as conn:
            row = await conn.fetchrow(sql, *params)
        return _row_to_rule(row)

    async def update_rule(self, rule_id: str, fields: dict[str, Any]) -> AutomationRule:
        update = build_update("automation_rules", fields, allowed=RULE_FIELDS, jsonb=("match_criteria",))
        if update is None:
            rule = await self.get_rule(rule_id)
            if rule is None:
                raise RecordNotFoundError(f"Automation rule '{rule_id}' not found")
            return rule

        sql, params = update
        async with safe_db_conn() as conn:
            row = await conn.fetchrow(sql, rule_id, *params)
        if not row:
            raise RecordNotFoundError(f"Automation rule '{rule_id}' not found")
        return _row_to_rule(row)

    async def delete_rule(self, rule_id: str) -> None:
        async with safe_db_conn() as conn:
            result = await conn.execute("DELETE FROM automation_rules WHERE id = $1", rule_id)
        if command_count(result) == 0:
            raise RecordNotFoundError(f"Automation rule '{rule_id}' not found")

    # ------------------------------------------------------------------
    # Capacity CRUD
    # ------------------------------------------------------------------

    async def _list_capacities(self, table: str, filters: dict[str, str | None]) -> list:
        conditions = []
        params: list[Any] = []
        idx = 1
        for column, value in filters.items():
            if value:
                conditions.append(f"{column} = ${idx}")
                params.append(value)
                idx += 1
        where = f"WHERE {' AND '.join(conditions)}" if conditions else ""
        async with safe_db_conn() as conn:
            return await conn.fetch(f"SELECT * FROM {table} {where} ORDER BY priority DESC, created_at", *params)

    async def _insert_capacity(self, table: str, data: dict[str, Any]):
        sql, params = build_insert(table, data)
        async with safe_db_conn() as conn:
            try:
                return await conn.fetchrow(sql, *params)
            except Exception as exc:
                if is_unique_violation(exc):
                    raise DuplicateRecordError("A capacity already exists for this service") from exc
                raise

    async def _update_capacity(self, table: str, capacity_id: str, fields: dict[str, Any], allowed: tuple):
        update = build_update(table, fields, allowed=allowed)
        async with safe_db_conn() as conn:
            if update is None:
                row = await conn.fetchrow(f"SELECT * FROM {table} WHERE id = $1", capacity_id)
            else:
                sql, params = update
                try:
                    row = await conn.fetchrow(sql, capacity_id, *params)
                except Exception as exc:
                    if is_unique_violation(exc):
                        raise DuplicateRecordError("A capacity already exists for this service") from exc
                    raise
        if not row:
            raise RecordNotFoundError(f"Capacity '{capacity_id}' not found")
        return row

    async def _delete_capacity(self, table: str, capacity_id: str) -> None:
        async with safe_db_conn() as conn:
            result = await conn.execute(f"DELETE FROM {table} WHERE id = $1", capacity_id)
        if command_count(result) == 0:
            raise RecordNotFoundError(f"Capacity '{capacity_id}' not found")

    async def list_all_vendor_capacities(
        self, *, vendor_profile_id: str | None = None, service_id: str | None = None,
    ) -> list[VendorServiceCapacity]:
        rows = await self._list_capacities(
            "vendor_service_capacities",
            {"vendor_profile_id": vendor_profile_id, "service_id": service_id},
        )
        return [_row_to_vendor_capacity(r) for r in rows]

    async def create_vendor_capacity(self, fields: dict[str, Any]) -> VendorServiceCapacity:
        data = {k: v for k, v in fields.items() if k in VENDOR_CAPACITY_FIELDS}
        return _row_to_vendor_capacity(await self._insert_capacity("vendor_service_capacities", data))

    async def update_vendor_capacity(self, capacity_id: str, fields: dict[str, Any]) -> VendorServiceCapacity:
        row = await self._update_capacity("vendor_service_capacities", capacity_id, fields, VENDOR_CAPACITY_FIELDS)
        return _row_to_vendor_capacity(row)

    async def delete_vendor_capacity(self, capacity_id: str) -> None:
        await self._delete_capacity("vendor_service_capacities", capacity_id)

    async def list_all_designer_capacities(
        self, *, user_id: str | None = None, service_id: str | None = None,
    ) -> list[DesignerCapacity]:
        rows = await self._list_capacities(
            "vendor_designer_capacities",
            {"user_id": user_id, "service_id": service_id},
        )
        return [_row_to_designer_capacity(r) for r in rows]

    async def create_designer_capacity(self, fields: dict[str, Any]) -> DesignerCapacity:
        data = {k: v for k, v in fields.items() if k in DESIGNER_CAPACITY_FIELDS}
        return _row_to_designer_capacity(await self._insert_capacity("vendor_designer_capacities", data))

    async def update_designer_capacity(self, capacity_id: str, fields: dict[str, Any]) -> DesignerCapacity:
        row = await self._update_capacity(
            "vendor_designer_capacities", capacity_id, fields, DESIGNER_CAPACITY_FIELDS,
        )
        return _row_to_designer_capacity(row)

    async def delete_designer_capacity(self, capacity_id: str) -> None:
        await self._delete_capacity("vendor_designer_capacities", capacity_id)


_repo: AsyncPostgresAutomationRepository | None = None


def get_automation_repo() -> AsyncPostgresAutomationRepository:
    global _repo
    if _repo is None:
        _repo = AsyncPostgresAutomationRepository()
    return _repo
