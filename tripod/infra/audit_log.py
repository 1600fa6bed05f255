# tripod/infra/audit_log.py
"""
Audit trail for administrative mutations (rules, capacities, coupons,
refunds, companies, vendors, manual assignment).

Events go to a logger named "audit" so they can be routed to their own
sink through logging configuration.
"""
from __future__ import annotations

import logging
from typing import Any

_audit_logger = logging.getLogger("audit")


def audit_event(
    action: str,
    *,
    entity: str | None = None,
    entity_id: str | None = None,
    actor: str | None = None,
    detail: str = "",
    extra: dict[str, Any] | None = None,
) -> None:
    """
    Record an audit event.

    Args:
        action: Dotted action name, e.g. "automation_rule.create", "refund.process"
        entity: Kind of record affected
        entity_id: Id of the record affected
        actor: Who did it, when known
        detail: Human-readable detail
        extra: Additional structured context
    """
    record = {
        "audit_action": action,
        "audit_entity": entity or "",
        "audit_entity_id": entity_id or "",
        "audit_actor": actor or "",
        "detail": detail,
    }
    if extra:
        record.update({f"audit_{k}": v for k, v in extra.items()})

    _audit_logger.info(
        f"AUDIT: {action} {entity or '-'}={entity_id or '-'} actor={actor or '-'} {detail}".rstrip(),
        extra=record,
    )
