# tests/conftest.py
"""Pytest configuration and fixtures"""
from __future__ import annotations

import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

import pytest

# Add project root to Python path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from tripod.core.domain import (  # noqa: E402
    AutomationAssignmentLog,
    AutomationRule,
    DesignerCapacity,
    Service,
    ServiceRequest,
    User,
    UserRole,
    VendorProfile,
    VendorServiceCapacity,
)


FIXED_NOW = datetime(2024, 6, 12, 15, 0, tzinfo=timezone.utc)


class InMemoryAutomationStore:
    """AutomationStore backed by plain dicts and lists."""

    def __init__(self):
        self.requests: dict[str, ServiceRequest] = {}
        self.services: dict[str, Service] = {}
        self.rules: list[AutomationRule] = []
        self.vendor_capacities: list[VendorServiceCapacity] = []
        self.profiles: dict[str, VendorProfile] = {}
        self.users: dict[str, User] = {}
        self.designer_capacities: list[DesignerCapacity] = []
        self.vendor_loads: dict[str, int] = {}
        self.designer_loads: dict[str, int] = {}
        self.logs: list[AutomationAssignmentLog] = []
        self.applied: list[dict] = []
        self.refuse_apply = False

    # --- seeding helpers ---

    def add_user(self, user_id: str, role: str, *, vendor_id: Optional[str] = None, username: str = "") -> User:
        user = User(id=user_id, username=username or user_id, role=role, vendor_id=vendor_id)
        self.users[user_id] = user
        return user

    def add_vendor(
        self,
        profile_id: str,
        user_id: str,
        *,
        service_title: str = "Mockups",
        daily_capacity: int = 5,
        priority: int = 0,
        service_id: str = "svc-1",
        base_price: str = "10",
    ) -> VendorProfile:
        self.add_user(user_id, UserRole.VENDOR.value)
        profile = VendorProfile(
            id=profile_id,
            user_id=user_id,
            company_name=f"{profile_id} Co",
            pricing_agreements={service_title: {"basePrice": base_price}},
        )
        self.profiles[profile_id] = profile
        self.vendor_capacities.append(VendorServiceCapacity(
            id=f"cap-{profile_id}",
            vendor_profile_id=profile_id,
            service_id=service_id,
            daily_capacity=daily_capacity,
            priority=priority,
        ))
        return profile

    def add_designer(
        self,
        user_id: str,
        vendor_user_id: str,
        *,
        daily_capacity: int = 3,
        priority: int = 0,
        is_primary: bool = False,
        service_id: str = "svc-1",
    ) -> User:
        user = self.add_user(user_id, UserRole.VENDOR_DESIGNER.value, vendor_id=vendor_user_id)
        self.designer_capacities.append(DesignerCapacity(
            id=f"dcap-{user_id}",
            user_id=user_id,
            service_id=service_id,
            daily_capacity=daily_capacity,
            priority=priority,
            is_primary=is_primary,
        ))
        return user

    # --- AutomationStore ---

    async def get_service_request(self, request_id):
        return self.requests.get(request_id)

    async def get_service(self, service_id):
        return self.services.get(service_id)

    async def list_active_rules(self):
        return [r for r in self.rules if r.is_active]

    async def list_vendor_capacities(self, service_id):
        return [c for c in self.vendor_capacities if c.service_id == service_id]

    async def get_vendor_profiles(self, profile_ids):
        return {pid: self.profiles[pid] for pid in profile_ids if pid in self.profiles}

    async def count_vendor_assignments(self, vendor_user_id, service_id, start, end):
        return self.vendor_loads.get(vendor_user_id, 0)

    async def list_vendor_designers(self, vendor_user_id):
        return [u for u in self.users.values() if u.vendor_id == vendor_user_id]

    async def list_designer_capacities(self, service_id, user_ids):
        return [c for c in self.designer_capacities if c.service_id == service_id and c.user_id in user_ids]

    async def count_designer_assignments(self, designer_id, service_id, start, end):
        return self.designer_loads.get(designer_id, 0)

    async def list_active_admins(self):
        return [u for u in self.users.values() if u.role == UserRole.ADMIN.value and u.is_active]

    async def save_assignment_logs(self, logs):
        self.logs.extend(logs)

    async def apply_assignment(
        self, request_id, *, status, note, run_at, vendor_assignee_id=None, designer_assignee_id=None,
    ):
        if self.refuse_apply and (vendor_assignee_id or designer_assignee_id):
            return False
        self.applied.append({
            "request_id": request_id,
            "status": status,
            "note": note,
            "vendor_assignee_id": vendor_assignee_id,
            "designer_assignee_id": designer_assignee_id,
        })
        request = self.requests.get(request_id)
        if request is not None:
            request.auto_assignment_status = status
            request.last_automation_note = note
            if vendor_assignee_id:
                request.vendor_assignee_id = vendor_assignee_id
            if designer_assignee_id:
                request.assignee_id = designer_assignee_id
        return True


class RecordingNotifier:
    def __init__(self, fail: bool = False):
        self.sent: list[dict] = []
        self.fail = fail

    async def notify(self, user_id, kind, title, message, *, link=None):
        if self.fail:
            raise RuntimeError("notification backend down")
        self.sent.append({"user_id": user_id, "kind": kind, "title": title, "message": message, "link": link})


@pytest.fixture
def store():
    s = InMemoryAutomationStore()
    s.services["svc-1"] = Service(id="svc-1", title="Mockups")
    return s


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def fixed_now():
    return FIXED_NOW
