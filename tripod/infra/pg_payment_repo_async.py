# tripod/infra/pg_payment_repo_async.py
"""
Async Postgres repository for client payments and service pack
subscriptions.
"""
from __future__ import annotations

from datetime import datetime
from typing import Any

from tripod.core.domain import ClientPaymentStatus, PackSubscription, Payment, PaymentType
from tripod.infra.db_resilience_async import safe_db_conn
from tripod.infra.logging_config import get_logger
from tripod.infra.pg_rows import (
    DuplicateRecordError,
    RecordNotFoundError,
    build_insert,
    build_update,
    command_count,
    is_unique_violation,
)

logger = get_logger(__name__)

PAYMENT_INSERT_FIELDS = (
    "client_company_id", "service_request_id", "bundle_request_id", "amount",
    "payment_type", "status", "provider_payment_id", "failure_reason",
    "billing_period", "scheduled_for", "included_job_ids", "marked_paid_by", "paid_at",
)
PAYMENT_UPDATE_FIELDS = (
    "amount", "status", "provider_payment_id", "failure_reason",
    "included_job_ids", "marked_paid_by", "paid_at",
)
SUBSCRIPTION_FIELDS = ("user_id", "pack_id", "start_date", "end_date", "is_active")


def _row_to_payment(row) -> Payment:
    return Payment(
        id=row["id"],
        client_company_id=row["client_company_id"],
        payment_type=row["payment_type"],
        amount=row["amount"],
        status=row["status"],
        service_request_id=row["service_request_id"],
        bundle_request_id=row["bundle_request_id"],
        provider_payment_id=row["provider_payment_id"],
        failure_reason=row["failure_reason"],
        billing_period=row["billing_period"],
        included_job_ids=list(row["included_job_ids"] or []),
        scheduled_for=row["scheduled_for"],
        marked_paid_by=row["marked_paid_by"],
        paid_at=row["paid_at"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def _row_to_subscription(row) -> PackSubscription:
    return PackSubscription(
        id=row["id"],
        user_id=row["user_id"],
        pack_id=row["pack_id"],
        start_date=row["start_date"],
        end_date=row["end_date"],
        is_active=row["is_active"],
        created_at=row["created_at"],
    )


class AsyncPostgresPaymentRepository:
    """Payments, pack subscriptions and pack usage counts."""

    # ------------------------------------------------------------------
    # Payments
    # ------------------------------------------------------------------

    async def get_payment(self, payment_id: str) -> Payment | None:
        async with safe_db_conn() as conn:
            row = await conn.fetchrow("SELECT * FROM payments WHERE id = $1", payment_id)
        return _row_to_payment(row) if row else None

    async def list_payments(
        self,
        *,
        client_company_id: str | None = None,
        request_id: str | None = None,
        status: str | None = None,
    ) -> list[Payment]:
        conditions = []
        params: list[Any] = []
        idx = 1

        if client_company_id:
            conditions.append(f"client_company_id = ${idx}")
            params.append(client_company_id)
            idx += 1

        if request_id:
            conditions.append(f"(service_request_id = ${idx} OR bundle_request_id = ${idx})")
            params.append(request_id)
            idx += 1

        if status:
            conditions.append(f"status = ${idx}")
            params.append(status)
            idx += 1

        where = f"WHERE {' AND '.join(conditions)}" if conditions else ""
        async with safe_db_conn() as conn:
            rows = await conn.fetch(f"SELECT * FROM payments {where} ORDER BY created_at DESC", *params)
        return [_row_to_payment(r) for r in rows]

    async def get_overage_payment(self, client_company_id: str, period: str) -> Payment | None:
        async with safe_db_conn() as conn:
            row = await conn.fetchrow(
                """
                SELECT * FROM payments
                WHERE client_company_id = $1 AND billing_period = $2 AND payment_type = $3
                """,
                client_company_id,
                period,
                PaymentType.PACK_OVERAGE.value,
            )
        return _row_to_payment(row) if row else None

    async def create_payment(self, fields: dict[str, Any]) -> Payment:
        data = {k: v for k, v in fields.items() if k in PAYMENT_INSERT_FIELDS}
        sql, params = build_insert("payments", data)
        async with safe_db_conn() as conn:
            try:
                row = await conn.fetchrow(sql, *params)
            except Exception as exc:
                if is_unique_violation(exc):
                    raise DuplicateRecordError(
                        f"Pack overage payment for {data.get('billing_period')} already exists"
                    ) from exc
                raise
        return _row_to_payment(row)

    async def update_payment(self, payment_id: str, fields: dict[str, Any]) -> Payment:
        update = build_update("payments", fields, allowed=PAYMENT_UPDATE_FIELDS)
        if update is None:
            payment = await self.get_payment(payment_id)
            if payment is None:
                raise RecordNotFoundError(f"Payment '{payment_id}' not found")
            return payment

        sql, params = update
        async with safe_db_conn() as conn:
            row = await conn.fetchrow(sql, payment_id, *params)
        if not row:
            raise RecordNotFoundError(f"Payment '{payment_id}' not found")
        return _row_to_payment(row)

    async def mark_jobs_paid(self, job_ids: list[str]) -> int:
        if not job_ids:
            return 0
        async with safe_db_conn() as conn:
            result = await conn.execute(
                """
                UPDATE service_requests SET client_payment_status = $2, updated_at = now()
                WHERE id = ANY($1::text[])
                """,
                job_ids,
                ClientPaymentStatus.PAID.value,
            )
        return command_count(result)

    # ------------------------------------------------------------------
    # Pack subscriptions
    # ------------------------------------------------------------------

    async def create_pack_subscription(self, fields: dict[str, Any]) -> PackSubscription:
        data = {k: v for k, v in fields.items() if k in SUBSCRIPTION_FIELDS and v is not None}
        sql, params = build_insert("client_pack_subscriptions", data)
        async with safe_db_conn() as conn:
            row = await conn.fetchrow(sql, *params)
        return _row_to_subscription(row)

    async def list_pack_subscriptions(self, *, user_id: str | None = None) -> list[PackSubscription]:
        async with safe_db_conn() as conn:
            if user_id:
                rows = await conn.fetch(
                    "SELECT * FROM client_pack_subscriptions WHERE user_id = $1 ORDER BY start_date DESC",
                    user_id,
                )
            else:
                rows = await conn.fetch("SELECT * FROM client_pack_subscriptions ORDER BY start_date DESC")
        return [_row_to_subscription(r) for r in rows]

    async def get_active_subscription(self, user_id: str, at: datetime) -> PackSubscription | None:
        """The most recently started subscription covering ``at``."""
        async with safe_db_conn() as conn:
            row = await conn.fetchrow(
                """
                SELECT * FROM client_pack_subscriptions
                WHERE user_id = $1 AND is_active
                  AND start_date <= $2 AND (end_date IS NULL OR end_date > $2)
                ORDER BY start_date DESC
                LIMIT 1
                """,
                user_id,
                at,
            )
        return _row_to_subscription(row) if row else None

    async def count_pack_covered(self, user_id: str, start: datetime, end: datetime) -> dict[str, int]:
        """Pack-covered jobs per service created in [start, end]."""
        async with safe_db_conn() as conn:
            rows = await conn.fetch(
                """
                SELECT service_id, COUNT(*) AS used FROM service_requests
                WHERE user_id = $1 AND is_pack_covered
                  AND status <> 'canceled'
                  AND created_at >= $2 AND created_at <= $3
                GROUP BY service_id
                """,
                user_id,
                start,
                end,
            )
        return {r["service_id"]: r["used"] for r in rows}


_repo: AsyncPostgresPaymentRepository | None = None


def get_payment_repo() -> AsyncPostgresPaymentRepository:
    global _repo
    if _repo is None:
        _repo = AsyncPostgresPaymentRepository()
    return _repo
