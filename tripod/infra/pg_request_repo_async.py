# tripod/infra/pg_request_repo_async.py
"""
Async Postgres repository for client jobs: ad-hoc service requests and
bundle requests.
"""
from __future__ import annotations

from datetime import datetime
from typing import Any

from tripod.core.domain import ACTIVE_JOB_STATUSES, BundleRequest, ServiceRequest
from tripod.infra.db_resilience_async import safe_db_conn
from tripod.infra.logging_config import get_logger
from tripod.infra.pg_billing_repo_async import redeem_coupon
from tripod.infra.pg_rows import RecordNotFoundError, build_insert, build_update, parse_jsonb

logger = get_logger(__name__)

_COMMON_INSERT_FIELDS = (
    "user_id", "status", "priority", "form_data", "final_price",
    "discount_coupon_id", "discount_amount", "payment_intent_id", "due_date",
    "client_payment_status",
)
SERVICE_REQUEST_INSERT_FIELDS = _COMMON_INSERT_FIELDS + (
    "service_id", "customer_name", "notes", "is_pack_covered", "is_pack_overage",
)
BUNDLE_REQUEST_INSERT_FIELDS = _COMMON_INSERT_FIELDS + ("bundle_id",)

_COMMON_UPDATE_FIELDS = (
    "status", "priority", "assignee_id", "vendor_assignee_id", "form_data",
    "final_price", "payment_intent_id", "due_date", "delivered_at", "client_payment_status",
)
SERVICE_REQUEST_UPDATE_FIELDS = _COMMON_UPDATE_FIELDS + (
    "assigned_at", "vendor_assigned_at", "locked_assignment", "customer_name", "notes",
)
BUNDLE_REQUEST_UPDATE_FIELDS = _COMMON_UPDATE_FIELDS


def row_to_service_request(row) -> ServiceRequest:
    return ServiceRequest(
        id=row["id"],
        user_id=row["user_id"],
        service_id=row["service_id"],
        status=row["status"],
        priority=row["priority"],
        assignee_id=row["assignee_id"],
        assigned_at=row["assigned_at"],
        vendor_assignee_id=row["vendor_assignee_id"],
        vendor_assigned_at=row["vendor_assigned_at"],
        locked_assignment=row["locked_assignment"],
        auto_assignment_status=row["auto_assignment_status"],
        last_automation_run_at=row["last_automation_run_at"],
        last_automation_note=row["last_automation_note"],
        customer_name=row["customer_name"],
        notes=row["notes"],
        form_data=parse_jsonb(row["form_data"]),
        final_price=row["final_price"],
        discount_coupon_id=row["discount_coupon_id"],
        discount_amount=row["discount_amount"],
        payment_intent_id=row["payment_intent_id"],
        client_payment_status=row["client_payment_status"],
        is_pack_covered=row["is_pack_covered"],
        is_pack_overage=row["is_pack_overage"],
        due_date=row["due_date"],
        delivered_at=row["delivered_at"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def _row_to_bundle_request(row) -> BundleRequest:
    return BundleRequest(
        id=row["id"],
        user_id=row["user_id"],
        bundle_id=row["bundle_id"],
        status=row["status"],
        priority=row["priority"],
        assignee_id=row["assignee_id"],
        vendor_assignee_id=row["vendor_assignee_id"],
        form_data=parse_jsonb(row["form_data"]),
        final_price=row["final_price"],
        discount_coupon_id=row["discount_coupon_id"],
        discount_amount=row["discount_amount"],
        payment_intent_id=row["payment_intent_id"],
        client_payment_status=row["client_payment_status"],
        due_date=row["due_date"],
        delivered_at=row["delivered_at"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def _list_query(
    table: str,
    *,
    user_ids: list[str] | None,
    status: str | None,
    created_from: datetime | None,
    created_to: datetime | None,
    limit: int | None,
) -> tuple[str, list[Any]]:
    conditions = []
    params: list[Any] = []
    idx = 1

    if user_ids:
        conditions.append(f"user_id = ANY(${idx}::text[])")
        params.append(user_ids)
        idx += 1

    if status:
        conditions.append(f"status = ${idx}")
        params.append(status)
        idx += 1

    if created_from:
        conditions.append(f"created_at >= ${idx}")
        params.append(created_from)
        idx += 1

    if created_to:
        conditions.append(f"created_at <= ${idx}")
        params.append(created_to)
        idx += 1

    where = f"WHERE {' AND '.join(conditions)}" if conditions else ""
    sql = f"SELECT * FROM {table} {where} ORDER BY created_at DESC"
    if limit:
        sql += f" LIMIT ${idx}"
        params.append(limit)
    return sql, params


class AsyncPostgresRequestRepository:
    """Service request and bundle request persistence."""

    # ------------------------------------------------------------------
    # Service requests
    # ------------------------------------------------------------------

    async def get_service_request(self, request_id: str) -> ServiceRequest | None:
        async with safe_db_conn() as conn:
            row = await conn.fetchrow("SELECT * FROM service_requests WHERE id = $1", request_id)
        return row_to_service_request(row) if row else None

    async def list_service_requests(
        self,
        *,
        user_ids: list[str] | None = None,
        status: str | None = None,
        created_from: datetime | None = None,
        created_to: datetime | None = None,
        limit: int | None = None,
    ) -> list[ServiceRequest]:
        sql, params = _list_query(
            "service_requests",
            user_ids=user_ids, status=status,
            created_from=created_from, created_to=created_to, limit=limit,
        )
        async with safe_db_conn() as conn:
            rows = await conn.fetch(sql, *params)
        return [row_to_service_request(r) for r in rows]

    async def create_service_request(
        self,
        fields: dict[str, Any],
        *,
        coupon_id: str | None = None,
    ) -> ServiceRequest:
        """
        Insert a service request. When ``coupon_id`` is given the coupon use
        is redeemed in the same transaction; ``CouponExhaustedError`` aborts both.
        """
        data = {k: v for k, v in fields.items() if k in SERVICE_REQUEST_INSERT_FIELDS}
        sql, params = build_insert("service_requests", data, jsonb=("form_data",))
        async with safe_db_conn(autocommit=False) as conn:
            if coupon_id:
                await redeem_coupon(conn, coupon_id)
            row = await conn.fetchrow(sql, *params)
        return row_to_service_request(row)

    async def update_service_request(self, request_id: str, fields: dict[str, Any]) -> ServiceRequest:
        update = build_update(
            "service_requests", fields,
            allowed=SERVICE_REQUEST_UPDATE_FIELDS, jsonb=("form_data",),
        )
        if update is None:
            existing = await self.get_service_request(request_id)
            if existing is None:
                raise RecordNotFoundError(f"Service request '{request_id}' not found")
            return existing

        sql, params = update
        async with safe_db_conn() as conn:
            row = await conn.fetchrow(sql, request_id, *params)
        if not row:
            raise RecordNotFoundError(f"Service request '{request_id}' not found")
        return row_to_service_request(row)

    # ------------------------------------------------------------------
    # Bundle requests
    # ------------------------------------------------------------------

    async def get_bundle_request(self, request_id: str) -> BundleRequest | None:
        async with safe_db_conn() as conn:
            row = await conn.fetchrow("SELECT * FROM bundle_requests WHERE id = $1", request_id)
        return _row_to_bundle_request(row) if row else None

    async def list_bundle_requests(
        self,
        *,
        user_ids: list[str] | None = None,
        status: str | None = None,
        created_from: datetime | None = None,
        created_to: datetime | None = None,
        limit: int | None = None,
    ) -> list[BundleRequest]:
        sql, params = _list_query(
            "bundle_requests",
            user_ids=user_ids, status=status,
            created_from=created_from, created_to=created_to, limit=limit,
        )
        async with safe_db_conn() as conn:
            rows = await conn.fetch(sql, *params)
        return [_row_to_bundle_request(r) for r in rows]

    async def create_bundle_request(
        self,
        fields: dict[str, Any],
        *,
        coupon_id: str | None = None,
    ) -> BundleRequest:
        data = {k: v for k, v in fields.items() if k in BUNDLE_REQUEST_INSERT_FIELDS}
        sql, params = build_insert("bundle_requests", data, jsonb=("form_data",))
        async with safe_db_conn(autocommit=False) as conn:
            if coupon_id:
                await redeem_coupon(conn, coupon_id)
            row = await conn.fetchrow(sql, *params)
        return _row_to_bundle_request(row)

    async def update_bundle_request(self, request_id: str, fields: dict[str, Any]) -> BundleRequest:
        update = build_update(
            "bundle_requests", fields,
            allowed=BUNDLE_REQUEST_UPDATE_FIELDS, jsonb=("form_data",),
        )
        if update is None:
            existing = await self.get_bundle_request(request_id)
            if existing is None:
                raise RecordNotFoundError(f"Bundle request '{request_id}' not found")
            return existing

        sql, params = update
        async with safe_db_conn() as conn:
            row = await conn.fetchrow(sql, request_id, *params)
        if not row:
            raise RecordNotFoundError(f"Bundle request '{request_id}' not found")
        return _row_to_bundle_request(row)

    # ------------------------------------------------------------------
    # Quotas
    # ------------------------------------------------------------------

    async def list_active_priorities(self, user_id: str) -> list[str]:
        """Priorities of the client's open jobs across both request tables."""
        async with safe_db_conn() as conn:
            rows = await conn.fetch(
                """
                SELECT priority FROM service_requests
                WHERE user_id = $1 AND status = ANY($2::text[])
                UNION ALL
                SELECT priority FROM bundle_requests
                WHERE user_id = $1 AND status = ANY($2::text[])
                """,
                user_id,
                sorted(ACTIVE_JOB_STATUSES),
            )
        return [r["priority"] for r in rows]


_repo: AsyncPostgresRequestRepository | None = None


def get_request_repo() -> AsyncPostgresRequestRepository:
    global _repo
    if _repo is None:
        _repo = AsyncPostgresRequestRepository()
    return _repo
