# tripod/core/ports.py
from __future__ import annotations

from datetime import datetime
from typing import Optional, Protocol

from tripod.core.domain import (
    AutomationAssignmentLog,
    AutomationRule,
    DesignerCapacity,
    Service,
    ServiceRequest,
    User,
    VendorProfile,
    VendorServiceCapacity,
)


# ============================================================================
# ASYNC PROTOCOLS (asyncpg based implementations live in tripod.infra)
# ============================================================================

class AutomationStore(Protocol):
    """Everything the assignment engine reads and writes."""

    async def get_service_request(self, request_id: str) -> Optional[ServiceRequest]: ...
    async def get_service(self, service_id: str) -> Optional[Service]: ...
    async def list_active_rules(self) -> list[AutomationRule]: ...

    async def list_vendor_capacities(self, service_id: str) -> list[VendorServiceCapacity]: ...
    async def get_vendor_profiles(self, profile_ids: list[str]) -> dict[str, VendorProfile]: ...
    async def count_vendor_assignments(
        self, vendor_user_id: str, service_id: str, start: datetime, end: datetime,
    ) -> int: ...

    async def list_vendor_designers(self, vendor_user_id: str) -> list[User]: ...
    async def list_designer_capacities(self, service_id: str, user_ids: list[str]) -> list[DesignerCapacity]: ...
    async def count_designer_assignments(
        self, designer_id: str, service_id: str, start: datetime, end: datetime,
    ) -> int: ...

    async def list_active_admins(self) -> list[User]: ...

    async def save_assignment_logs(self, logs: list[AutomationAssignmentLog]) -> None: ...

    async def apply_assignment(
        self,
        request_id: str,
        *,
        status: str,
        note: str,
        run_at: datetime,
        vendor_assignee_id: Optional[str] = None,
        designer_assignee_id: Optional[str] = None,
    ) -> bool:
        """
        Persist an automation outcome.

        When an assignee is given the write is conditional on the request
        still being unassigned and unlocked; returns False if it was not.
        """
        ...


class Notifier(Protocol):
    async def notify(
        self,
        user_id: str,
        kind: str,
        title: str,
        message: str,
        *,
        link: Optional[str] = None,
    ) -> None: ...
