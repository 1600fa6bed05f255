# tripod/core/refunds.py
from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal
from typing import Iterable, Optional

from tripod.core.domain import Refund, RefundStatus, RefundType

# Refunds in these states count against the job's refundable balance.
COUNTED_REFUND_STATUSES = frozenset({
    RefundStatus.PENDING.value,
    RefundStatus.PROCESSING.value,
    RefundStatus.COMPLETED.value,
})


class RefundValidationError(Exception):
    """Raised when a refund request is not allowed."""


@dataclass
class RefundableBalance:
    original_amount: Decimal
    total_refunded: Decimal
    remaining_refundable: Decimal
    existing_refunds: list[Refund] = field(default_factory=list)


def refundable_balance(final_price: Optional[Decimal], existing_refunds: Iterable[Refund]) -> RefundableBalance:
    refunds = list(existing_refunds)
    original = final_price or Decimal("0")
    total = sum(
        (r.refund_amount for r in refunds if r.status in COUNTED_REFUND_STATUSES),
        Decimal("0"),
    )
    return RefundableBalance(
        original_amount=original,
        total_refunded=total,
        remaining_refundable=max(Decimal("0"), original - total),
        existing_refunds=refunds,
    )


def validate_refund_amount(
    refund_type: str,
    requested: Optional[Decimal],
    remaining: Decimal,
) -> Decimal:
    """Return the amount to refund, or raise ``RefundValidationError``."""
    if refund_type not in {t.value for t in RefundType}:
        raise RefundValidationError(f"Unknown refund type: {refund_type}")

    if remaining <= 0:
        raise RefundValidationError("Nothing left to refund for this job")

    if refund_type == RefundType.FULL.value:
        return remaining

    if requested is None:
        raise RefundValidationError("Refund amount is required")
    if requested <= 0:
        raise RefundValidationError("Refund amount must be greater than zero")
    if requested > remaining:
        raise RefundValidationError(
            f"Refund amount {requested} exceeds the refundable balance {remaining}"
        )
    return requested


def initial_status(refund_type: str) -> str:
    """Manual refunds are settled outside the payment provider and are recorded as done."""
    if refund_type == RefundType.MANUAL.value:
        return RefundStatus.COMPLETED.value
    return RefundStatus.PENDING.value


def can_process(refund: Refund) -> bool:
    return refund.status == RefundStatus.PENDING.value and refund.refund_type != RefundType.MANUAL.value
