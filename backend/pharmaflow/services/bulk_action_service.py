# Overview: Service-layer operations for bulk line-item decisions; encapsulates business logic and database work.

"""
Bulk Action Coordinator

Applies one outcome to many line items of a single record, all or nothing:
- decision must be approved or rejected (partial needs per-item quantities)
- approved uses each item's expected_qty, rejected uses 0
- any id not on the record fails the whole call before anything changes
- aggregates are recomputed once, after every item is updated
"""

from __future__ import annotations

from ..models.approvals import DECISION_APPROVED, DECISION_REJECTED
from . import approval_service, decision_service
from .concurrency import atomic, commit_or_conflict
from .errors import InvalidItemReferenceError, WorkflowValidationError


BULK_DECISIONS = (DECISION_APPROVED, DECISION_REJECTED)


@atomic
def apply_bulk(
    record_id: int,
    item_ids,
    decision: str,
    *,
    actor,
    remarks: str | None = None,
    expected_version: int | None = None,
) -> dict:
    if decision not in BULK_DECISIONS:
        raise WorkflowValidationError(
            f"Bulk decision must be one of: {', '.join(BULK_DECISIONS)}",
            decision=decision,
        )

    try:
        ids = list(dict.fromkeys(int(i) for i in (item_ids or [])))
    except (TypeError, ValueError):
        raise WorkflowValidationError("item_ids must be integers")
    if not ids:
        raise WorkflowValidationError("item_ids is required")

    record = approval_service.load_for_update(record_id, expected_version)
    approval_service.ensure_editable(record)
    approval_service.authorize(actor, record, record.decision_action)

    items_by_id = {item.id: item for item in record.items}
    invalid = [i for i in ids if i not in items_by_id]
    if invalid:
        raise InvalidItemReferenceError(
            f"{len(invalid)} item(s) do not belong to this record",
            record_id=record.id,
            invalid_item_ids=invalid,
        )

    for item_id in ids:
        item = items_by_id[item_id]
        decision_service.apply_decision(
            item,
            decision=decision,
            decided_qty=item.expected_qty if decision == DECISION_APPROVED else 0,
            remarks=remarks,
            actor_user_id=actor.user_id,
        )

    previous = approval_service.after_item_change(
        record,
        actor.user_id,
        event_type="ITEMS_BULK_DECIDED",
        payload={"item_ids": ids, "decision": decision},
    )
    commit_or_conflict(record.id)

    approval_service.notify_if_changed(record.id, previous, record.status, actor.user_id)
    return {"record": record, "updated_items": len(ids)}
