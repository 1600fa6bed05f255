# tripod/core/domain.py
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Optional


# ============================================================================
# ENUMS
# ============================================================================

class UserRole(str, Enum):
    ADMIN = "admin"
    INTERNAL_DESIGNER = "internal_designer"
    VENDOR = "vendor"
    VENDOR_DESIGNER = "vendor_designer"
    CLIENT = "client"


INTERNAL_ROLES = frozenset({UserRole.ADMIN.value, UserRole.INTERNAL_DESIGNER.value})


class JobStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in-progress"
    CHANGE_REQUEST = "change-request"
    DELIVERED = "delivered"
    CANCELED = "canceled"


ACTIVE_JOB_STATUSES = frozenset({
    JobStatus.PENDING.value,
    JobStatus.IN_PROGRESS.value,
    JobStatus.CHANGE_REQUEST.value,
})


class Priority(str, Enum):
    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"
    URGENT = "urgent"


class AutoAssignmentStatus(str, Enum):
    NOT_ATTEMPTED = "not_attempted"
    ASSIGNED = "assigned"
    PARTIAL_ASSIGNED = "partial_assigned"
    FAILED_NO_VENDOR = "failed_no_vendor"


class RuleScope(str, Enum):
    GLOBAL = "global"
    CLIENT = "client"


class RoutingTarget(str, Enum):
    VENDOR_ONLY = "vendor_only"
    VENDOR_THEN_DESIGNER = "vendor_then_designer"


class RoutingStrategy(str, Enum):
    LEAST_LOADED = "least_loaded"
    ROUND_ROBIN = "round_robin"
    PRIORITY_FIRST = "priority_first"


class FallbackAction(str, Enum):
    LEAVE_PENDING = "leave_pending"
    NOTIFY_ONLY = "notify_only"


class DiscountType(str, Enum):
    AMOUNT = "amount"
    PERCENTAGE = "percentage"


class RequestType(str, Enum):
    SERVICE_REQUEST = "service_request"
    BUNDLE_REQUEST = "bundle_request"


class RefundType(str, Enum):
    FULL = "full"
    PARTIAL = "partial"
    MANUAL = "manual"


class RefundStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class PricingStructure(str, Enum):
    SINGLE = "single"
    COMPLEXITY = "complexity"
    QUANTITY = "quantity"


class PaymentConfiguration(str, Enum):
    PAY_AS_YOU_GO = "pay_as_you_go"
    MONTHLY_PAYMENT = "monthly_payment"
    DEDUCT_FROM_ROYALTIES = "deduct_from_royalties"


class PaymentType(str, Enum):
    PAY_AS_YOU_GO = "pay_as_you_go"
    MONTHLY_INVOICE = "monthly_invoice"
    DEDUCT_FROM_ROYALTIES = "deduct_from_royalties"
    PACK_OVERAGE = "pack_overage"


class PaymentStatus(str, Enum):
    PENDING = "pending"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class ClientPaymentStatus(str, Enum):
    """Where a job stands with respect to the client paying for it."""
    UNPAID = "unpaid"
    PENDING = "pending"
    PAID = "paid"
    FAILED = "failed"
    NOT_REQUIRED = "not_required"


# ============================================================================
# DIRECTORY
# ============================================================================

@dataclass
class User:
    id: str
    username: str
    role: str
    email: Optional[str] = None
    is_active: bool = True
    vendor_id: Optional[str] = None  # vendor_designer -> parent vendor's user id
    client_company_id: Optional[str] = None
    created_at: Optional[datetime] = None


@dataclass
class VendorProfile:
    id: str
    user_id: str
    company_name: str
    email: Optional[str] = None
    phone: Optional[str] = None
    website: Optional[str] = None
    pricing_agreements: dict[str, Any] = field(default_factory=dict)
    sla_config: dict[str, Any] = field(default_factory=dict)
    deleted_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @property
    def is_deleted(self) -> bool:
        return self.deleted_at is not None


@dataclass
class ClientCompany:
    id: str
    name: str
    industry: Optional[str] = None
    website: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    address: Optional[str] = None
    payment_configuration: str = PaymentConfiguration.PAY_AS_YOU_GO.value
    primary_contact_id: Optional[str] = None
    invoice_day: int = 1
    stripe_customer_id: Optional[str] = None
    default_payment_method_id: Optional[str] = None
    deleted_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


@dataclass
class Service:
    id: str
    title: str
    base_price: Optional[Decimal] = None
    description: Optional[str] = None
    category: Optional[str] = None
    pricing_structure: str = PricingStructure.SINGLE.value
    is_active: bool = True
    parent_service_id: Optional[str] = None
    display_order: int = 0


@dataclass
class BundleItem:
    service_id: Optional[str]
    quantity: int = 1
    unit_price: Optional[Decimal] = None  # Resolved from the service or line item


@dataclass
class Bundle:
    id: str
    name: str
    discount_percent: Decimal = Decimal("0")
    final_price: Optional[Decimal] = None
    is_active: bool = True
    items: list[BundleItem] = field(default_factory=list)


@dataclass
class ServicePackItem:
    service_id: str
    quantity: int
    unit_price: Optional[Decimal] = None


@dataclass
class ServicePack:
    id: str
    name: str
    price: Optional[Decimal] = None
    is_active: bool = True
    items: list[ServicePackItem] = field(default_factory=list)


# ============================================================================
# JOBS
# ============================================================================

@dataclass
class ServiceRequest:
    """An ad-hoc job submitted by a client for a single service."""
    id: str
    user_id: str
    service_id: str
    status: str = JobStatus.PENDING.value
    priority: str = Priority.NORMAL.value
    assignee_id: Optional[str] = None
    assigned_at: Optional[datetime] = None
    vendor_assignee_id: Optional[str] = None
    vendor_assigned_at: Optional[datetime] = None
    locked_assignment: bool = False
    auto_assignment_status: Optional[str] = None
    last_automation_run_at: Optional[datetime] = None
    last_automation_note: Optional[str] = None
    customer_name: Optional[str] = None
    notes: Optional[str] = None
    form_data: dict[str, Any] = field(default_factory=dict)
    final_price: Optional[Decimal] = None
    discount_coupon_id: Optional[str] = None
    discount_amount: Optional[Decimal] = None
    payment_intent_id: Optional[str] = None
    client_payment_status: str = ClientPaymentStatus.UNPAID.value
    is_pack_covered: bool = False
    is_pack_overage: bool = False
    due_date: Optional[datetime] = None
    delivered_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


@dataclass
class BundleRequest:
    id: str
    user_id: str
    bundle_id: str
    status: str = JobStatus.PENDING.value
    priority: str = Priority.NORMAL.value
    assignee_id: Optional[str] = None
    vendor_assignee_id: Optional[str] = None
    form_data: dict[str, Any] = field(default_factory=dict)
    final_price: Optional[Decimal] = None
    discount_coupon_id: Optional[str] = None
    discount_amount: Optional[Decimal] = None
    payment_intent_id: Optional[str] = None
    client_payment_status: str = ClientPaymentStatus.UNPAID.value
    due_date: Optional[datetime] = None
    delivered_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


# ============================================================================
# AUTOMATION
# ============================================================================

@dataclass
class AutomationRule:
    id: str
    name: str
    priority: int = 0
    scope: str = RuleScope.GLOBAL.value
    client_id: Optional[str] = None
    is_active: bool = True
    service_ids: Optional[list[str]] = None  # None or empty => every service
    match_criteria: dict[str, Any] = field(default_factory=dict)
    routing_target: str = RoutingTarget.VENDOR_ONLY.value
    routing_strategy: str = RoutingStrategy.LEAST_LOADED.value
    allowed_vendor_ids: Optional[list[str]] = None
    excluded_vendor_ids: Optional[list[str]] = None
    fallback_action: str = FallbackAction.LEAVE_PENDING.value
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def applies_to_service(self, service_id: str) -> bool:
        return not self.service_ids or service_id in self.service_ids


@dataclass
class VendorServiceCapacity:
    id: str
    vendor_profile_id: str
    service_id: str
    daily_capacity: int = 0
    priority: int = 0
    auto_assign_enabled: bool = True


@dataclass
class DesignerCapacity:
    id: str
    user_id: str
    service_id: str
    daily_capacity: int = 0
    priority: int = 0
    is_primary: bool = False
    auto_assign_enabled: bool = True


@dataclass
class AutomationAssignmentLog:
    request_id: str
    step: str
    result: str
    request_type: str = RequestType.SERVICE_REQUEST.value
    rule_id: Optional[str] = None
    reason: Optional[str] = None
    chosen_id: Optional[str] = None
    candidates_considered: list[str] = field(default_factory=list)
    capacity_snapshot: list[dict[str, Any]] = field(default_factory=list)
    created_at: Optional[datetime] = None


# ============================================================================
# BILLING
# ============================================================================

@dataclass
class DiscountCoupon:
    id: str
    code: str
    discount_type: str
    discount_value: Decimal
    is_active: bool = True
    applies_to_services: bool = True
    applies_to_bundles: bool = True
    service_id: Optional[str] = None
    bundle_id: Optional[str] = None
    max_uses: int = 1
    current_uses: int = 0
    client_id: Optional[str] = None
    valid_from: Optional[datetime] = None
    valid_to: Optional[datetime] = None
    created_at: Optional[datetime] = None


@dataclass
class Refund:
    id: str
    request_type: str
    client_id: str
    refund_type: str
    original_amount: Decimal
    refund_amount: Decimal
    reason: str
    status: str = RefundStatus.PENDING.value
    service_request_id: Optional[str] = None
    bundle_request_id: Optional[str] = None
    notes: Optional[str] = None
    error_message: Optional[str] = None
    payment_intent_id: Optional[str] = None
    provider_refund_id: Optional[str] = None
    requested_by: Optional[str] = None
    processed_by: Optional[str] = None
    processed_at: Optional[datetime] = None
    created_at: Optional[datetime] = None

    @property
    def request_id(self) -> Optional[str]:
        return self.service_request_id or self.bundle_request_id


@dataclass
class Payment:
    """One money movement owed by a client company for one or more jobs."""
    id: str
    client_company_id: str
    payment_type: str
    amount: Decimal
    status: str = PaymentStatus.PENDING.value
    service_request_id: Optional[str] = None
    bundle_request_id: Optional[str] = None
    provider_payment_id: Optional[str] = None
    failure_reason: Optional[str] = None
    billing_period: Optional[str] = None  # "YYYY-MM", pack overage only
    included_job_ids: list[str] = field(default_factory=list)
    scheduled_for: Optional[date] = None  # monthly invoice date
    marked_paid_by: Optional[str] = None
    paid_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @property
    def request_id(self) -> Optional[str]:
        return self.service_request_id or self.bundle_request_id


@dataclass
class PackSubscription:
    """A client user's subscription to a monthly service pack."""
    id: str
    user_id: str
    pack_id: str
    start_date: datetime
    end_date: Optional[datetime] = None
    is_active: bool = True
    created_at: Optional[datetime] = None

    def covers(self, at: datetime) -> bool:
        if not self.is_active or at < self.start_date:
            return False
        return self.end_date is None or at <= self.end_date


# ============================================================================
# NOTIFICATIONS
# ============================================================================

class NotificationType(str, Enum):
    JOB_ASSIGNED_VENDOR = "job_assigned_vendor"
    JOB_ASSIGNED_DESIGNER = "job_assigned_designer"
    JOB_DELIVERED = "job_delivered"
    CHANGE_REQUESTED = "change_requested"
    AUTOMATION_FALLBACK = "automation_fallback"
    REFUND_PROCESSED = "refund_processed"
    REFUND_FAILED = "refund_failed"
    PAYMENT_FAILED = "payment_failed"


@dataclass
class Notification:
    user_id: str
    type: str
    title: str
    message: str
    link: Optional[str] = None
    id: Optional[str] = None
    is_read: bool = False
    created_at: Optional[datetime] = None
