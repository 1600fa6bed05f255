# tripod/infra/pg_billing_repo_async.py
"""
Async Postgres repository for discount coupons and refunds.
"""
from __future__ import annotations

from typing import Any

import asyncpg

from tripod.core.domain import DiscountCoupon, Refund, RefundStatus, RefundType, RequestType
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

COUPON_FIELDS = (
    "code", "is_active", "discount_type", "discount_value",
    "applies_to_services", "applies_to_bundles", "service_id", "bundle_id",
    "max_uses", "client_id", "valid_from", "valid_to",
)
REFUND_INSERT_FIELDS = (
    "request_type", "service_request_id", "bundle_request_id", "client_id",
    "refund_type", "original_amount", "refund_amount", "reason", "notes",
    "status", "payment_intent_id", "requested_by", "processed_by", "processed_at",
)


class CouponExhaustedError(Exception):
    """The coupon was used up (or deactivated) between validation and redemption."""


def _row_to_coupon(row) -> DiscountCoupon:
    return DiscountCoupon(
        id=row["id"],
        code=row["code"],
        discount_type=row["discount_type"],
        discount_value=row["discount_value"],
        is_active=row["is_active"],
        applies_to_services=row["applies_to_services"],
        applies_to_bundles=row["applies_to_bundles"],
        service_id=row["service_id"],
        bundle_id=row["bundle_id"],
        max_uses=row["max_uses"],
        current_uses=row["current_uses"],
        client_id=row["client_id"],
        valid_from=row["valid_from"],
        valid_to=row["valid_to"],
        created_at=row["created_at"],
    )


def _row_to_refund(row) -> Refund:
    return Refund(
        id=row["id"],
        request_type=row["request_type"],
        client_id=row["client_id"],
        refund_type=row["refund_type"],
        original_amount=row["original_amount"],
        refund_amount=row["refund_amount"],
        reason=row["reason"],
        status=row["status"],
        service_request_id=row["service_request_id"],
        bundle_request_id=row["bundle_request_id"],
        notes=row["notes"],
        error_message=row["error_message"],
        payment_intent_id=row["payment_intent_id"],
        provider_refund_id=row["provider_refund_id"],
        requested_by=row["requested_by"],
        processed_by=row["processed_by"],
        processed_at=row["processed_at"],
        created_at=row["created_at"],
    )


async def redeem_coupon(conn: asyncpg.Connection, coupon_id: str) -> None:
    """
    Count one use of a coupon on an open connection/transaction.

    The increment only happens while ``current_uses < max_uses``, so two
    concurrent submissions can never push a coupon past its limit.
    """
    result = await conn.execute(
        """
        UPDATE discount_coupons
        SET current_uses = current_uses + 1, updated_at = now()
        WHERE id = $1 AND is_active AND current_uses < max_uses
        """,
        coupon_id,
    )
    if command_count(result) == 0:
        raise CouponExhaustedError(f"Coupon '{coupon_id}' has no uses left")


class AsyncPostgresBillingRepository:
    """Coupons and refunds."""

    # ------------------------------------------------------------------
    # Coupons
    # ------------------------------------------------------------------

    async def list_coupons(self) -> list[DiscountCoupon]:
        async with safe_db_conn() as conn:
            rows = await conn.fetch("SELECT * FROM discount_coupons ORDER BY created_at DESC")
        return [_row_to_coupon(r) for r in rows]

    async def get_coupon(self, coupon_id: str) -> DiscountCoupon | None:
        async with safe_db_conn() as conn:
            row = await conn.fetchrow("SELECT * FROM discount_coupons WHERE id = $1", coupon_id)
        return _row_to_coupon(row) if row else None

    async def get_coupon_by_code(self, code: str) -> DiscountCoupon | None:
        async with safe_db_conn() as conn:
            row = await conn.fetchrow("SELECT * FROM discount_coupons WHERE code = $1", code)
        return _row_to_coupon(row) if row else None

    async def create_coupon(self, fields: dict[str, Any]) -> DiscountCoupon:
        data = {k: v for k, v in fields.items() if k in COUPON_FIELDS}
        sql, params = build_insert("discount_coupons", data)
        async with safe_db_conn() as conn:
            try:
                row = await conn.fetchrow(sql, *params)
            except Exception as exc:
                if is_unique_violation(exc):
                    raise DuplicateRecordError(f"Coupon code '{data.get('code')}' already exists") from exc
                raise
        return _row_to_coupon(row)

    async def update_coupon(self, coupon_id: str, fields: dict[str, Any]) -> DiscountCoupon:
        update = build_update("discount_coupons", fields, allowed=COUPON_FIELDS)
        if update is None:
            coupon = await self.get_coupon(coupon_id)
            if coupon is None:
                raise RecordNotFoundError(f"Coupon '{coupon_id}' not found")
            return coupon

        sql, params = update
        async with safe_db_conn() as conn:
            try:
                row = await conn.fetchrow(sql, coupon_id, *params)
            except Exception as exc:
                if is_unique_violation(exc):
                    raise DuplicateRecordError(f"Coupon code '{fields.get('code')}' already exists") from exc
                raise
        if not row:
            raise RecordNotFoundError(f"Coupon '{coupon_id}' not found")
        return _row_to_coupon(row)

    async def delete_coupon(self, coupon_id: str) -> None:
        async with safe_db_conn() as conn:
            result = await conn.execute("DELETE FROM discount_coupons WHERE id = $1", coupon_id)
        if command_count(result) == 0:
            raise RecordNotFoundError(f"Coupon '{coupon_id}' not found")

    # ------------------------------------------------------------------
    # Refunds
    # ------------------------------------------------------------------

    async def list_refunds(self, *, client_id: str | None = None, status: str | None = None) -> list[Refund]:
        conditions = []
        params: list[Any] = []
        idx = 1

        if client_id:
            conditions.append(f"client_id = ${idx}")
            params.append(client_id)
            idx += 1

        if status:
            conditions.append(f"status = ${idx}")
            params.append(status)
            idx += 1

        where = f"WHERE {' AND '.join(conditions)}" if conditions else ""
        async with safe_db_conn() as conn:
            rows = await conn.fetch(f"SELECT * FROM refunds {where} ORDER BY created_at DESC", *params)
        return [_row_to_refund(r) for r in rows]

    async def get_refund(self, refund_id: str) -> Refund | None:
        async with safe_db_conn() as conn:
            row = await conn.fetchrow("SELECT * FROM refunds WHERE id = $1", refund_id)
        return _row_to_refund(row) if row else None

    async def list_refunds_for_request(self, request_type: str, request_id: str) -> list[Refund]:
        column = (
            "service_request_id" if request_type == RequestType.SERVICE_REQUEST.value else "bundle_request_id"
        )
        async with safe_db_conn() as conn:
            rows = await conn.fetch(
                f"SELECT * FROM refunds WHERE {column} = $1 ORDER BY created_at",
                request_id,
            )
        return [_row_to_refund(r) for r in rows]

    async def create_refund(self, fields: dict[str, Any]) -> Refund:
        data = {k: v for k, v in fields.items() if k in REFUND_INSERT_FIELDS}
        sql, params = build_insert("refunds", data)
        async with safe_db_conn() as conn:
            row = await conn.fetchrow(sql, *params)
        return _row_to_refund(row)

    async def mark_refund_processing(self, refund_id: str) -> Refund | None:
        """Claim a pending provider refund; None if it is not (or no longer) pending."""
        async with safe_db_conn() as conn:
            row = await conn.fetchrow(
                """
                UPDATE refunds SET status = $2
                WHERE id = $1 AND status = $3 AND refund_type <> $4
                RETURNING *
                """,
                refund_id,
                RefundStatus.PROCESSING.value,
                RefundStatus.PENDING.value,
                RefundType.MANUAL.value,
            )
        return _row_to_refund(row) if row else None

    async def finish_refund(
        self,
        refund_id: str,
        *,
        status: str,
        provider_refund_id: str | None = None,
        error_message: str | None = None,
        processed_by: str | None = None,
    ) -> Refund:
        async with safe_db_conn() as conn:
            row = await conn.fetchrow(
                """
                UPDATE refunds
                SET status = $2,
                    provider_refund_id = COALESCE($3, provider_refund_id),
                    error_message = $4,
                    processed_by = COALESCE($5, processed_by),
                    processed_at = now()
                WHERE id = $1
                RETURNING *
                """,
                refund_id,
                status,
                provider_refund_id,
                error_message,
                processed_by,
            )
        if not row:
            raise RecordNotFoundError(f"Refund '{refund_id}' not found")
        return _row_to_refund(row)


_repo: AsyncPostgresBillingRepository | None = None


def get_billing_repo() -> AsyncPostgresBillingRepository:
    global _repo
    if _repo is None:
        _repo = AsyncPostgresBillingRepository()
    return _repo
