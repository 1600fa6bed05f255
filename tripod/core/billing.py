# tripod/core/billing.py
"""
Client billing decisions.

How a job is paid for depends on the client company's payment
configuration:

    pay_as_you_go          charged upfront when the job is submitted
    monthly_payment        recorded at delivery for the next monthly invoice
    deduct_from_royalties  recorded at delivery as already settled

Jobs covered by the client's monthly service pack cost nothing extra.  Jobs
beyond the pack's monthly quantity are flagged as overage and, for
pay-as-you-go clients, collected once a month by the pack overage run.

Functions here are pure; the billing service does the I/O.
"""
from __future__ import annotations

import calendar
import re
from dataclasses import dataclass
from datetime import date, datetime, time, timezone, tzinfo
from decimal import Decimal
from typing import Iterable, Optional

from tripod.core.domain import (
    ClientPaymentStatus,
    JobStatus,
    PaymentConfiguration,
    PaymentStatus,
    PaymentType,
    ServicePack,
    ServiceRequest,
)
from tripod.core.reporting import DateRange

ZERO = Decimal("0")
INVOICE_DAY_MAX = 28

_PERIOD_RE = re.compile(r"^(\d{4})-(0[1-9]|1[0-2])$")


# ---------------------------------------------------------------------------
# Pack coverage
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class PackCoverage:
    pack_id: Optional[str] = None
    included: int = 0
    used: int = 0
    covered: bool = False
    overage: bool = False

    @classmethod
    def none(cls) -> "PackCoverage":
        return cls()


def resolve_pack_coverage(pack: Optional[ServicePack], service_id: str, used_this_month: int) -> PackCoverage:
    """
    ``used_this_month`` counts the client's pack-covered jobs for this service
    in the current billing month, excluding the one being submitted.
    """
    if pack is None:
        return PackCoverage.none()

    included = sum(item.quantity for item in pack.items if item.service_id == service_id)
    if included == 0:
        return PackCoverage.none()

    if used_this_month < included:
        return PackCoverage(pack.id, included, used_this_month, covered=True)
    return PackCoverage(pack.id, included, used_this_month, overage=True)


def pack_usage(pack: ServicePack, used_by_service: dict[str, int]) -> list[dict]:
    """Included vs used quantity per pack service for the current month."""
    rows = []
    for item in pack.items:
        used = used_by_service.get(item.service_id, 0)
        rows.append({
            "service_id": item.service_id,
            "included": item.quantity,
            "used": used,
            "remaining": max(0, item.quantity - used),
        })
    return rows


# ---------------------------------------------------------------------------
# Payment plans
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class PaymentPlan:
    payment_type: str
    status: str
    charge_now: bool = False
    message: str = ""


def nothing_owed(amount: Optional[Decimal], pack_covered: bool) -> bool:
    return pack_covered or amount is None or amount <= ZERO


def plan_submission_payment(
    configuration: str,
    amount: Optional[Decimal],
    *,
    pack_covered: bool = False,
    pack_overage: bool = False,
    prepaid: bool = False,
) -> Optional[PaymentPlan]:
    """
    The payment to record when a job is submitted, or None.

    Only pay-as-you-go clients pay upfront.  ``prepaid`` means the client
    already paid at checkout (the job carries a payment intent).
    """
    if configuration != PaymentConfiguration.PAY_AS_YOU_GO.value:
        return None
    if nothing_owed(amount, pack_covered) or pack_overage:
        return None
    if prepaid:
        return PaymentPlan(PaymentType.PAY_AS_YOU_GO.value, PaymentStatus.SUCCEEDED.value,
                           message="Paid at checkout")
    return PaymentPlan(PaymentType.PAY_AS_YOU_GO.value, PaymentStatus.PENDING.value, charge_now=True,
                       message="Charge saved payment method")


def plan_delivery_payment(
    configuration: str,
    amount: Optional[Decimal],
    *,
    pack_covered: bool = False,
) -> Optional[PaymentPlan]:
    """The payment to record when a job is delivered, or None."""
    if nothing_owed(amount, pack_covered):
        return None
    if configuration == PaymentConfiguration.MONTHLY_PAYMENT.value:
        return PaymentPlan(PaymentType.MONTHLY_INVOICE.value, PaymentStatus.PENDING.value,
                           message="Recorded for monthly invoice")
    if configuration == PaymentConfiguration.DEDUCT_FROM_ROYALTIES.value:
        return PaymentPlan(PaymentType.DEDUCT_FROM_ROYALTIES.value, PaymentStatus.SUCCEEDED.value,
                           message="Will be deducted from royalties")
    return None


def client_status_for(payment_status: str) -> str:
    return {
        PaymentStatus.SUCCEEDED.value: ClientPaymentStatus.PAID.value,
        PaymentStatus.FAILED.value: ClientPaymentStatus.FAILED.value,
    }.get(payment_status, ClientPaymentStatus.PENDING.value)


def next_invoice_date(invoice_day: int, today: date) -> date:
    """The next invoice date strictly after ``today``'s invoice day has passed."""
    day = min(max(invoice_day, 1), INVOICE_DAY_MAX)
    year, month = today.year, today.month
    if today.day >= day:
        year, month = (year + 1, 1) if month == 12 else (year, month + 1)
    return date(year, month, min(day, calendar.monthrange(year, month)[1]))


# ---------------------------------------------------------------------------
# Billing periods
# ---------------------------------------------------------------------------

def billing_period(at: datetime, tz: tzinfo = timezone.utc) -> str:
    local = at.astimezone(tz)
    return f"{local.year:04d}-{local.month:02d}"


def previous_billing_period(at: datetime, tz: tzinfo = timezone.utc) -> str:
    local = at.astimezone(tz)
    year, month = (local.year - 1, 12) if local.month == 1 else (local.year, local.month - 1)
    return f"{year:04d}-{month:02d}"


def period_range(period: str, tz: tzinfo = timezone.utc) -> DateRange:
    """[first instant, last instant] of a "YYYY-MM" month in ``tz``."""
    match = _PERIOD_RE.match(period or "")
    if not match:
        raise ValueError(f"Billing period must look like YYYY-MM, got {period!r}")
    year, month = int(match.group(1)), int(match.group(2))
    last_day = calendar.monthrange(year, month)[1]
    return DateRange(
        datetime.combine(date(year, month, 1), time.min, tzinfo=tz),
        datetime.combine(date(year, month, last_day), time.max, tzinfo=tz),
    )


@dataclass
class OverageBatch:
    job_ids: list[str]
    total: Decimal

    def __bool__(self) -> bool:
        return bool(self.job_ids) and self.total > ZERO


def collect_pack_overage(service_requests: Iterable[ServiceRequest], rng: DateRange) -> OverageBatch:
    """Delivered, unpaid overage jobs whose delivery falls inside ``rng``."""
    job_ids: list[str] = []
    total = ZERO
    for req in service_requests:
        if req.status != JobStatus.DELIVERED.value or not req.is_pack_overage:
            continue
        if req.client_payment_status == ClientPaymentStatus.PAID.value:
            continue
        if req.delivered_at is None or not (rng.start <= req.delivered_at <= rng.end):
            continue
        job_ids.append(req.id)
        total += req.final_price or ZERO
    return OverageBatch(job_ids=job_ids, total=total)
