# tripod/admin/models.py
"""
Pydantic request/response models for the API.

These live outside the transport layer so the services can validate
payloads without depending on FastAPI. Update models only carry the fields
the caller actually sent (``changes()``).
"""
from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Any, Literal, Optional

from pydantic import BaseModel, Field, field_validator, model_validator

from tripod.core.domain import (
    DiscountType,
    FallbackAction,
    PaymentConfiguration,
    Priority,
    PricingStructure,
    RefundType,
    RoutingStrategy,
    RoutingTarget,
    RuleScope,
)

ScopeLiteral = Literal["global", "client"]
RoutingTargetLiteral = Literal["vendor_only", "vendor_then_designer"]
RoutingStrategyLiteral = Literal["least_loaded", "round_robin", "priority_first"]
FallbackLiteral = Literal["leave_pending", "notify_only"]
PriorityLiteral = Literal["low", "normal", "high", "urgent"]
RequestTypeLiteral = Literal["service_request", "bundle_request"]
JobStatusLiteral = Literal["pending", "in-progress", "change-request", "delivered", "canceled"]


class _PartialModel(BaseModel):
    def changes(self) -> dict[str, Any]:
        return self.model_dump(exclude_unset=True)

    def has_updates(self) -> bool:
        return bool(self.changes())


# ---------------------------------------------------------------------------
# Automation rules & capacities
# ---------------------------------------------------------------------------

class RuleCreateRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=200)
    priority: int = 0
    scope: ScopeLiteral = RuleScope.GLOBAL.value
    client_id: Optional[str] = None
    is_active: bool = True
    service_ids: Optional[list[str]] = None
    match_criteria: dict[str, Any] = Field(default_factory=dict)
    routing_target: RoutingTargetLiteral = RoutingTarget.VENDOR_ONLY.value
    routing_strategy: RoutingStrategyLiteral = RoutingStrategy.LEAST_LOADED.value
    allowed_vendor_ids: Optional[list[str]] = None
    excluded_vendor_ids: Optional[list[str]] = None
    fallback_action: FallbackLiteral = FallbackAction.LEAVE_PENDING.value

    @model_validator(mode="after")
    def client_scope_needs_client(self) -> "RuleCreateRequest":
        if self.scope == RuleScope.CLIENT.value and not self.client_id:
            raise ValueError("client_id is required for client-scoped rules")
        return self


class RuleUpdateRequest(_PartialModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=200)
    priority: Optional[int] = None
    scope: Optional[ScopeLiteral] = None
    client_id: Optional[str] = None
    is_active: Optional[bool] = None
    service_ids: Optional[list[str]] = None
    match_criteria: Optional[dict[str, Any]] = None
    routing_target: Optional[RoutingTargetLiteral] = None
    routing_strategy: Optional[RoutingStrategyLiteral] = None
    allowed_vendor_ids: Optional[list[str]] = None
    excluded_vendor_ids: Optional[list[str]] = None
    fallback_action: Optional[FallbackLiteral] = None


class VendorCapacityCreateRequest(BaseModel):
    vendor_profile_id: str
    service_id: str
    daily_capacity: int = Field(default=0, ge=0)
    priority: int = 0
    auto_assign_enabled: bool = True


class VendorCapacityUpdateRequest(_PartialModel):
    daily_capacity: Optional[int] = Field(default=None, ge=0)
    priority: Optional[int] = None
    auto_assign_enabled: Optional[bool] = None


class DesignerCapacityCreateRequest(BaseModel):
    user_id: str
    service_id: str
    daily_capacity: int = Field(default=0, ge=0)
    priority: int = 0
    is_primary: bool = False
    auto_assign_enabled: bool = True


class DesignerCapacityUpdateRequest(_PartialModel):
    daily_capacity: Optional[int] = Field(default=None, ge=0)
    priority: Optional[int] = None
    is_primary: Optional[bool] = None
    auto_assign_enabled: Optional[bool] = None


# ---------------------------------------------------------------------------
# Coupons
# ---------------------------------------------------------------------------

def _check_discount(discount_type: Optional[str], value: Optional[Decimal]) -> None:
    if value is not None and discount_type == DiscountType.PERCENTAGE.value and value > 100:
        raise ValueError("Percentage discount cannot exceed 100")


class CouponCreateRequest(BaseModel):
    code: Optional[str] = Field(default=None, max_length=50)
    discount_type: Literal["amount", "percentage"]
    discount_value: Decimal = Field(..., gt=0)
    service_option: str = "all"   # "all" | "none" | <service id>
    bundle_option: str = "all"    # "all" | "none" | <bundle id>
    max_uses: int = Field(default=1, ge=1)
    client_id: Optional[str] = None
    valid_from: Optional[datetime] = None
    valid_to: Optional[datetime] = None
    is_active: bool = True

    @field_validator("code")
    @classmethod
    def code_not_blank(cls, v: Optional[str]) -> Optional[str]:
        if v is not None and not v.strip():
            raise ValueError("code must not be blank")
        return v

    @model_validator(mode="after")
    def check_values(self) -> "CouponCreateRequest":
        _check_discount(self.discount_type, self.discount_value)
        if self.valid_from and self.valid_to and self.valid_to < self.valid_from:
            raise ValueError("valid_to must be after valid_from")
        return self


class CouponUpdateRequest(_PartialModel):
    code: Optional[str] = Field(default=None, min_length=1, max_length=50)
    discount_type: Optional[Literal["amount", "percentage"]] = None
    discount_value: Optional[Decimal] = Field(default=None, gt=0)
    service_option: Optional[str] = None
    bundle_option: Optional[str] = None
    max_uses: Optional[int] = Field(default=None, ge=1)
    client_id: Optional[str] = None
    valid_from: Optional[datetime] = None
    valid_to: Optional[datetime] = None
    is_active: Optional[bool] = None

    @model_validator(mode="after")
    def check_values(self) -> "CouponUpdateRequest":
        _check_discount(self.discount_type, self.discount_value)
        return self


class CouponValidateRequest(BaseModel):
    code: str = Field(..., min_length=1, max_length=50)
    client_id: str
    service_id: Optional[str] = None
    bundle_id: Optional[str] = None
    amount: Optional[Decimal] = Field(default=None, ge=0)


class CouponValidationResponse(BaseModel):
    valid: bool
    reason: Optional[str] = None
    coupon_id: Optional[str] = None
    discount: Optional[float] = None
    final_amount: Optional[float] = None


# ---------------------------------------------------------------------------
# Refunds
# ---------------------------------------------------------------------------

class RefundCreateRequest(BaseModel):
    request_type: RequestTypeLiteral
    request_id: str
    refund_type: Literal["full", "partial", "manual"]
    refund_amount: Optional[Decimal] = None
    reason: str = Field(..., min_length=1)
    notes: Optional[str] = None
    requested_by: Optional[str] = None

    @model_validator(mode="after")
    def amount_for_partial(self) -> "RefundCreateRequest":
        if self.refund_type != RefundType.FULL.value and self.refund_amount is None:
            raise ValueError("refund_amount is required for partial and manual refunds")
        return self


class RefundProcessRequest(BaseModel):
    processed_by: Optional[str] = None


# ---------------------------------------------------------------------------
# Payments & pack subscriptions
# ---------------------------------------------------------------------------

class PaymentActionRequest(BaseModel):
    actor: Optional[str] = None


class PackSubscriptionCreateRequest(BaseModel):
    user_id: str
    pack_id: str
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None

    @model_validator(mode="after")
    def end_after_start(self) -> "PackSubscriptionCreateRequest":
        if self.start_date and self.end_date and self.end_date <= self.start_date:
            raise ValueError("end_date must be after start_date")
        return self


# ---------------------------------------------------------------------------
# Directory
# ---------------------------------------------------------------------------

class ClientCompanyCreateRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=200)
    industry: Optional[str] = None
    website: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    address: Optional[str] = None
    payment_configuration: Literal["pay_as_you_go", "monthly_payment", "deduct_from_royalties"] = (
        PaymentConfiguration.PAY_AS_YOU_GO.value
    )
    primary_contact_id: Optional[str] = None
    invoice_day: int = Field(default=1, ge=1, le=28)
    stripe_customer_id: Optional[str] = None
    default_payment_method_id: Optional[str] = None


class ClientCompanyUpdateRequest(_PartialModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=200)
    industry: Optional[str] = None
    website: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    address: Optional[str] = None
    payment_configuration: Optional[Literal["pay_as_you_go", "monthly_payment", "deduct_from_royalties"]] = None
    primary_contact_id: Optional[str] = None
    invoice_day: Optional[int] = Field(default=None, ge=1, le=28)
    stripe_customer_id: Optional[str] = None
    default_payment_method_id: Optional[str] = None


class VendorProfileCreateRequest(BaseModel):
    user_id: str
    company_name: str = Field(..., min_length=1, max_length=200)
    email: Optional[str] = None
    phone: Optional[str] = None
    website: Optional[str] = None
    pricing_agreements: dict[str, Any] = Field(default_factory=dict)
    sla_config: dict[str, Any] = Field(default_factory=dict)


class VendorProfileUpdateRequest(_PartialModel):
    company_name: Optional[str] = Field(default=None, min_length=1, max_length=200)
    email: Optional[str] = None
    phone: Optional[str] = None
    website: Optional[str] = None
    pricing_agreements: Optional[dict[str, Any]] = None
    sla_config: Optional[dict[str, Any]] = None


class ServiceCreateRequest(BaseModel):
    title: str = Field(..., min_length=1, max_length=200)
    description: Optional[str] = None
    base_price: Optional[Decimal] = Field(default=None, ge=0)
    category: Optional[str] = None
    pricing_structure: Literal["single", "complexity", "quantity"] = PricingStructure.SINGLE.value
    is_active: bool = True
    parent_service_id: Optional[str] = None
    display_order: int = 0


class PriorityDistributionModel(BaseModel):
    max_urgent_percent: int = Field(..., ge=0, le=100)
    max_high_percent: int = Field(..., ge=0, le=100)

    @model_validator(mode="after")
    def combined_limit(self) -> "PriorityDistributionModel":
        if self.max_urgent_percent + self.max_high_percent > 100:
            raise ValueError("Combined Urgent and High percentages cannot exceed 100%")
        return self


# ---------------------------------------------------------------------------
# Jobs
# ---------------------------------------------------------------------------

class ServiceRequestCreate(BaseModel):
    user_id: str
    service_id: str
    priority: PriorityLiteral = Priority.NORMAL.value
    customer_name: Optional[str] = None
    notes: Optional[str] = None
    form_data: dict[str, Any] = Field(default_factory=dict)
    coupon_code: Optional[str] = Field(default=None, max_length=50)
    payment_intent_id: Optional[str] = None
    due_date: Optional[datetime] = None


class BundleRequestCreate(BaseModel):
    user_id: str
    bundle_id: str
    priority: PriorityLiteral = Priority.NORMAL.value
    form_data: dict[str, Any] = Field(default_factory=dict)
    coupon_code: Optional[str] = Field(default=None, max_length=50)
    payment_intent_id: Optional[str] = None
    due_date: Optional[datetime] = None


class ServiceRequestUpdate(_PartialModel):
    priority: Optional[PriorityLiteral] = None
    customer_name: Optional[str] = None
    notes: Optional[str] = None
    form_data: Optional[dict[str, Any]] = None
    final_price: Optional[Decimal] = Field(default=None, ge=0)
    payment_intent_id: Optional[str] = None
    due_date: Optional[datetime] = None


class BundleRequestUpdate(_PartialModel):
    status: Optional[JobStatusLiteral] = None
    priority: Optional[PriorityLiteral] = None
    form_data: Optional[dict[str, Any]] = None
    final_price: Optional[Decimal] = Field(default=None, ge=0)
    payment_intent_id: Optional[str] = None
    due_date: Optional[datetime] = None


class AssignRequest(BaseModel):
    vendor_assignee_id: Optional[str] = None
    assignee_id: Optional[str] = None

    @model_validator(mode="after")
    def someone(self) -> "AssignRequest":
        if not self.vendor_assignee_id and not self.assignee_id:
            raise ValueError("vendor_assignee_id or assignee_id is required")
        return self


class ChangeRequestBody(BaseModel):
    note: Optional[str] = None


# ---------------------------------------------------------------------------
# Responses
# ---------------------------------------------------------------------------

class OkResponse(BaseModel):
    """Generic success response."""

    ok: bool = True
    id: Optional[str] = None


