# Overview: Service-layer operations for multi-level manager sign-off; encapsulates business logic and database work.

"""
Escalation Chain

Levels are 1-indexed and counted within the record's current approval round.
The only acceptable level is (approvals already recorded this round) + 1.

- reject at any level: record rejected (terminal), rejection_reason = remarks
- approve below the final level: recorded, record stays submitted and the
  sink hears about it (status unchanged)
- approve at the final level, max(required_levels, 1): record approved

Final approval of a QC record generates its warehouse approval in the same
transaction when AUTO_CREATE_WAREHOUSE_APPROVAL is on and at least one item
passed QC.
"""

from __future__ import annotations

from flask import current_app

from ..extensions import db
from ..models import ManagerApproval
from ..models.approvals import (
    MANAGER_APPROVE,
    MANAGER_REJECT,
    STATUS_APPROVED,
    STATUS_REJECTED,
    STATUS_SUBMITTED,
)
from pharmaflow.time_utils import utcnow
from . import approval_service, audit_service, notification_service, upstream_service
from .concurrency import atomic, commit_or_conflict
from .errors import (
    InvalidTransitionError,
    OutOfSequenceApprovalError,
    WorkflowValidationError,
)


MANAGER_ACTIONS = (MANAGER_APPROVE, MANAGER_REJECT)


def next_level(record) -> int:
    return len(record.round_approvals()) + 1


def approval_chain(record_id: int) -> dict:
    """Where the record stands in its sign-off chain."""
    record = approval_service.get_approval_record(record_id)
    return {
        "record_id": record.id,
        "status": record.status,
        "approval_round": record.approval_round,
        "required_levels": record.required_levels,
        "final_level": record.final_level,
        "next_level": next_level(record) if record.status == STATUS_SUBMITTED else None,
        "approvals": [m.to_dict() for m in record.manager_approvals],
    }


@atomic
def record_manager_action(
    record_id: int,
    *,
    level: int,
    action: str,
    actor,
    remarks: str | None = None,
    expected_version: int | None = None,
) -> dict:
    """
    Append one manager sign-off and apply its effect on the record.

    Returns {"record": ApprovalRecord, "approval": ManagerApproval,
    "warehouse_approval": WarehouseApproval | None}.
    """
    if action not in MANAGER_ACTIONS:
        raise WorkflowValidationError(
            f"Invalid manager action '{action}'. Must be one of: {', '.join(MANAGER_ACTIONS)}",
            action=action,
        )
    try:
        level = int(level)
    except (TypeError, ValueError):
        raise WorkflowValidationError("level must be an integer", level=level)

    record = approval_service.load_for_update(record_id, expected_version)
    if record.status != STATUS_SUBMITTED:
        raise InvalidTransitionError(
            f"Manager actions need a submitted record (record is {record.status})",
            record_id=record.id,
            status=record.status,
        )
    approval_service.authorize(actor, record, action)

    expected_level = next_level(record)
    if level != expected_level:
        raise OutOfSequenceApprovalError(
            f"Expected approval level {expected_level}, got {level}",
            record_id=record.id,
            expected_level=expected_level,
            level=level,
            approval_round=record.approval_round,
        )

    is_final = action == MANAGER_REJECT or level >= record.final_level
    transition = None
    if is_final:
        transition = approval_service.apply_transition(
            record, action, actor_user_id=actor.user_id, data={"remarks": remarks}
        )

    now = utcnow()
    approval = ManagerApproval(
        record_id=record.id,
        approval_round=record.approval_round,
        level=level,
        approver_user_id=actor.user_id,
        action=action,
        remarks=remarks,
        acted_at=now,
    )
    db.session.add(approval)
    record.manager_approvals.append(approval)

    previous = None
    warehouse_approval = None
    if action == MANAGER_REJECT:
        previous = approval_service.set_status(record, STATUS_REJECTED)
        record.rejection_reason = remarks
    elif is_final:
        previous = approval_service.set_status(record, STATUS_APPROVED)
        record.final_approval_date = now
        if (
            record.record_type == upstream_service.UPSTREAM_QC
            and current_app.config.get("AUTO_CREATE_WAREHOUSE_APPROVAL", True)
            and upstream_service.passed_items(record)
        ):
            warehouse_approval = upstream_service.build_warehouse_approval(record, actor_user_id=actor.user_id)

    approval_service.touch(record, actor.user_id)
    audit_service.record_event(
        entity_type=record.record_type,
        entity_id=record.id,
        event_type=f"MANAGER_{action.upper()}",
        actor_user_id=actor.user_id,
        payload={
            "level": level,
            "approval_round": record.approval_round,
            "final": is_final,
            "remarks": remarks,
            "warehouse_approval_id": warehouse_approval.id if warehouse_approval else None,
        },
    )
    commit_or_conflict(record.id)

    if is_final:
        approval_service.notify_if_changed(record.id, previous, record.status, actor.user_id, transition)
    else:
        notification_service.notify_status_change(
            record.id,
            record.status,
            actor.user_id,
            event="level_approved",
            level=level,
            next_level=level + 1,
        )
    if warehouse_approval is not None:
        notification_service.notify_status_change(warehouse_approval.id, warehouse_approval.status, actor.user_id)
    return {"record": record, "approval": approval, "warehouse_approval": warehouse_approval}
