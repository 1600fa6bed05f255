# tripod/infra/pg_directory_repo_async.py
"""
Async Postgres repository for the directory and catalog: users, vendor
profiles, client companies, services, bundles and service packs.
"""
from __future__ import annotations

from typing import Any

from tripod.core.domain import (
    Bundle,
    BundleItem,
    ClientCompany,
    Service,
    ServicePack,
    ServicePackItem,
    User,
    UserRole,
    VendorProfile,
)
from tripod.infra.db_resilience_async import safe_db_conn
from tripod.infra.logging_config import get_logger
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

VENDOR_PROFILE_FIELDS = (
    "company_name", "email", "phone", "website", "pricing_agreements", "sla_config",
)
CLIENT_COMPANY_FIELDS = (
    "name", "industry", "website", "email", "phone", "address",
    "payment_configuration", "primary_contact_id",
    "invoice_day", "stripe_customer_id", "default_payment_method_id",
)
SERVICE_FIELDS = (
    "title", "description", "base_price", "category", "pricing_structure",
    "is_active", "parent_service_id", "display_order",
)


# ---------------------------------------------------------------------------
# Row mappers
# ---------------------------------------------------------------------------

def row_to_user(row) -> User:
    return User(
        id=row["id"],
        username=row["username"],
        role=row["role"],
        email=row["email"],
        is_active=row["is_active"],
        vendor_id=row["vendor_id"],
        client_company_id=row["client_company_id"],
        created_at=row["created_at"],
    )


def row_to_vendor_profile(row) -> VendorProfile:
    return VendorProfile(
        id=row["id"],
        user_id=row["user_id"],
        company_name=row["company_name"],
        email=row["email"],
        phone=row["phone"],
        website=row["website"],
        pricing_agreements=parse_jsonb(row["pricing_agreements"]),
        sla_config=parse_jsonb(row["sla_config"]),
        deleted_at=row["deleted_at"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def _row_to_client_company(row) -> ClientCompany:
    return ClientCompany(
        id=row["id"],
        name=row["name"],
        industry=row["industry"],
        website=row["website"],
        email=row["email"],
        phone=row["phone"],
        address=row["address"],
        payment_configuration=row["payment_configuration"],
        primary_contact_id=row["primary_contact_id"],
        invoice_day=row["invoice_day"],
        stripe_customer_id=row["stripe_customer_id"],
        default_payment_method_id=row["default_payment_method_id"],
        deleted_at=row["deleted_at"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def row_to_service(row) -> Service:
    return Service(
        id=row["id"],
        title=row["title"],
        base_price=row["base_price"],
        description=row["description"],
        category=row["category"],
        pricing_structure=row["pricing_structure"],
        is_active=row["is_active"],
        parent_service_id=row["parent_service_id"],
        display_order=row["display_order"],
    )


class AsyncPostgresDirectoryRepository:
    """Read/write access to users, vendors, clients and the service catalog."""

    # ------------------------------------------------------------------
    # Users
    # ------------------------------------------------------------------

    async def get_user(self, user_id: str) -> User | None:
        async with safe_db_conn() as conn:
            row = await conn.fetchrow("SELECT * FROM users WHERE id = $1", user_id)
        return row_to_user(row) if row else None

    async def list_users(self, role: str | None = None) -> list[User]:
        async with safe_db_conn() as conn:
            if role:
                rows = await conn.fetch("SELECT * FROM users WHERE role = $1 ORDER BY username", role)
            else:
                rows = await conn.fetch("SELECT * FROM users ORDER BY username")
        return [row_to_user(r) for r in rows]

    async def get_users_by_ids(self, user_ids: list[str]) -> dict[str, User]:
        if not user_ids:
            return {}
        async with safe_db_conn() as conn:
            rows = await conn.fetch("SELECT * FROM users WHERE id = ANY($1::text[])", list(set(user_ids)))
        return {r["id"]: row_to_user(r) for r in rows}

    async def list_active_admins(self) -> list[User]:
        async with safe_db_conn() as conn:
            rows = await conn.fetch(
                "SELECT * FROM users WHERE role = $1 AND is_active ORDER BY username",
                UserRole.ADMIN.value,
            )
        return [row_to_user(r) for r in rows]

    # ------------------------------------------------------------------
    # Vendor profiles
    # ------------------------------------------------------------------

    async def list_vendor_profiles(self, *, include_deleted: bool = False) -> list[VendorProfile]:
        where = "" if include_deleted else "WHERE deleted_at IS NULL"
        async with safe_db_conn() as conn:
            rows = await conn.fetch(f"SELECT * FROM vendor_profiles {where} ORDER BY company_name")
        return [row_to_vendor_profile(r) for r in rows]

    async def get_vendor_profile(self, profile_id: str) -> VendorProfile | None:
        async with safe_db_conn() as conn:
            row = await conn.fetchrow("SELECT * FROM vendor_profiles WHERE id = $1", profile_id)
        return row_to_vendor_profile(row) if row else None

    async def create_vendor_profile(self, user_id: str, fields: dict[str, Any]) -> VendorProfile:
        data = {"user_id": user_id, **{k: v for k, v in fields.items() if k in VENDOR_PROFILE_FIELDS}}
        sql, params = build_insert("vendor_profiles", data, jsonb=("pricing_agreements", "sla_config"))
        async with safe_db_conn() as conn:
            try:
                row = await conn.fetchrow(sql, *params)
            except Exception as exc:
                if is_unique_violation(exc):
                    raise DuplicateRecordError(f"User '{user_id}' already has a vendor profile") from exc
                raise
        return row_to_vendor_profile(row)

    async def update_vendor_profile(self, profile_id: str, fields: dict[str, Any]) -> VendorProfile:
        update = build_update(
            "vendor_profiles", fields,
            allowed=VENDOR_PROFILE_FIELDS, jsonb=("pricing_agreements", "sla_config"),
        )
        if update is None:
            profile = await self.get_vendor_profile(profile_id)
            if profile is None:
                raise RecordNotFoundError(f"Vendor profile '{profile_id}' not found")
            return profile

        sql, params = update
        async with safe_db_conn() as conn:
            row = await conn.fetchrow(sql, profile_id, *params)
        if not row:
            raise RecordNotFoundError(f"Vendor profile '{profile_id}' not found")
        return row_to_vendor_profile(row)

    async def soft_delete_vendor_profile(self, profile_id: str) -> None:
        async with safe_db_conn() as conn:
            result = await conn.execute(
                "UPDATE vendor_profiles SET deleted_at = now(), updated_at = now() "
                "WHERE id = $1 AND deleted_at IS NULL",
                profile_id,
            )
        if command_count(result) == 0:
            raise RecordNotFoundError(f"Vendor profile '{profile_id}' not found")

    # ------------------------------------------------------------------
    # Client companies
    # ------------------------------------------------------------------

    async def list_client_companies(self, *, include_deleted: bool = False) -> list[ClientCompany]:
        where = "" if include_deleted else "WHERE deleted_at IS NULL"
        async with safe_db_conn() as conn:
            rows = await conn.fetch(f"SELECT * FROM client_companies {where} ORDER BY name")
        return [_row_to_client_company(r) for r in rows]

    async def get_client_company(self, company_id: str) -> ClientCompany | None:
        async with safe_db_conn() as conn:
            row = await conn.fetchrow("SELECT * FROM client_companies WHERE id = $1", company_id)
        return _row_to_client_company(row) if row else None

    async def create_client_company(self, fields: dict[str, Any]) -> ClientCompany:
        data = {k: v for k, v in fields.items() if k in CLIENT_COMPANY_FIELDS}
        sql, params = build_insert("client_companies", data)
        async with safe_db_conn() as conn:
            row = await conn.fetchrow(sql, *params)
        return _row_to_client_company(row)

    async def update_client_company(self, company_id: str, fields: dict[str, Any]) -> ClientCompany:
        update = build_update("client_companies", fields, allowed=CLIENT_COMPANY_FIELDS)
        if update is None:
            company = await self.get_client_company(company_id)
            if company is None:
                raise RecordNotFoundError(f"Client company '{company_id}' not found")
            return company

        sql, params = update
        async with safe_db_conn() as conn:
            row = await conn.fetchrow(sql, company_id, *params)
        if not row:
            raise RecordNotFoundError(f"Client company '{company_id}' not found")
        return _row_to_client_company(row)

    async def soft_delete_client_company(self, company_id: str) -> None:
        async with safe_db_conn() as conn:
            result = await conn.execute(
                "UPDATE client_companies SET deleted_at = now(), updated_at = now() "
                "WHERE id = $1 AND deleted_at IS NULL",
                company_id,
            )
        if command_count(result) == 0:
            raise RecordNotFoundError(f"Client company '{company_id}' not found")

    async def list_company_member_ids(self, company_id: str) -> list[str]:
        async with safe_db_conn() as conn:
            rows = await conn.fetch("SELECT id FROM users WHERE client_company_id = $1", company_id)
        return [r["id"] for r in rows]

    # ------------------------------------------------------------------
    # Services
    # ------------------------------------------------------------------

    async def list_services(self, *, active_only: bool = True) -> list[Service]:
        where = "WHERE is_active" if active_only else ""
        async with safe_db_conn() as conn:
            rows = await conn.fetch(f"SELECT * FROM services {where} ORDER BY display_order, title")
        return [row_to_service(r) for r in rows]

    async def get_service(self, service_id: str) -> Service | None:
        async with safe_db_conn() as conn:
            row = await conn.fetchrow("SELECT * FROM services WHERE id = $1", service_id)
        return row_to_service(row) if row else None

    async def create_service(self, fields: dict[str, Any]) -> Service:
        data = {k: v for k, v in fields.items() if k in SERVICE_FIELDS}
        sql, params = build_insert("services", data)
        async with safe_db_conn() as conn:
            row = await conn.fetchrow(sql, *params)
        return row_to_service(row)

    # ------------------------------------------------------------------
    # Bundles / packs
    # ------------------------------------------------------------------

    async def get_bundle(self, bundle_id: str) -> Bundle | None:
        """Bundle with items; an item's unit price falls back to its service's base price."""
        async with safe_db_conn() as conn:
            row = await conn.fetchrow("SELECT * FROM bundles WHERE id = $1", bundle_id)
            if not row:
                return None
            item_rows = await conn.fetch(
                """
                SELECT bi.service_id, bi.quantity, COALESCE(bi.unit_price, s.base_price) AS unit_price
                FROM bundle_items bi
                LEFT JOIN services s ON s.id = bi.service_id
                WHERE bi.bundle_id = $1
                ORDER BY bi.id
                """,
                bundle_id,
            )
        return Bundle(
            id=row["id"],
            name=row["name"],
            discount_percent=row["discount_percent"],
            final_price=row["final_price"],
            is_active=row["is_active"],
            items=[
                BundleItem(service_id=r["service_id"], quantity=r["quantity"], unit_price=r["unit_price"])
                for r in item_rows
            ],
        )

    async def get_service_pack(self, pack_id: str) -> ServicePack | None:
        async with safe_db_conn() as conn:
            row = await conn.fetchrow("SELECT * FROM service_packs WHERE id = $1", pack_id)
            if not row:
                return None
            item_rows = await conn.fetch(
                """
                SELECT spi.service_id, spi.quantity, s.base_price AS unit_price
                FROM service_pack_items spi
                JOIN services s ON s.id = spi.service_id
                WHERE spi.pack_id = $1
                ORDER BY spi.id
                """,
                pack_id,
            )
        return ServicePack(
            id=row["id"],
            name=row["name"],
            price=row["price"],
            is_active=row["is_active"],
            items=[
                ServicePackItem(service_id=r["service_id"], quantity=r["quantity"], unit_price=r["unit_price"])
                for r in item_rows
            ],
        )


_repo: AsyncPostgresDirectoryRepository | None = None


def get_directory_repo() -> AsyncPostgresDirectoryRepository:
    global _repo
    if _repo is None:
        _repo = AsyncPostgresDirectoryRepository()
    return _repo
