# Overview: Service-layer operations for approval records; encapsulates business logic and database work.

"""
Approval Record Service (QC and Warehouse Approval)

================================================================================
STATE MACHINE:
    pending -> in_progress -> submitted -> approved | rejected
    submitted -> in_progress                (returned for rework)

    pending:      generated from an upstream document, nothing decided yet
    in_progress:  at least one line item has left pending
    submitted:    every item decided, waiting on manager sign-off
    approved:     TERMINAL, final manager level approved
    rejected:     TERMINAL, any manager level rejected

RULES (NON-NEGOTIABLE):
1. Aggregate counts are derived from the full item list, in the same
   transaction as the item change that affects them.
2. Terminal records are immutable.
3. Every mutation touches the record row so the optimistic version bumps.
4. Each operation is one transaction: record row locked, one commit,
   notifications only after the commit.
================================================================================
"""

from __future__ import annotations

from flask import current_app
from sqlalchemy import func

from ..extensions import db
from ..models import ApprovalRecord, User
from ..models.approvals import (
    DECISION_APPROVED,
    DECISION_PARTIAL,
    DECISION_PENDING,
    DECISION_REJECTED,
    PRIORITIES,
    RECORD_CLASSES,
    RECORD_STATUSES,
    STATUS_APPROVED,
    STATUS_IN_PROGRESS,
    STATUS_PENDING,
    STATUS_REJECTED,
    STATUS_SUBMITTED,
    TERMINAL_STATUSES,
)
from ..models.receiving import (
    WORKFLOW_INVENTORY_READY,
    WORKFLOW_QC_COMPLETED,
    WORKFLOW_QC_IN_PROGRESS,
    WORKFLOW_REJECTED,
    WORKFLOW_WAREHOUSE_IN_PROGRESS,
    WORKFLOW_WAREHOUSE_PENDING,
)
from pharmaflow.time_utils import utcnow
from . import audit_service, notification_service, permission_service, workflow_service
from .concurrency import atomic, check_expected_version, commit_or_conflict, lock_for_update
from .errors import (
    IncompleteDecisionsError,
    InvalidTransitionError,
    RecordNotFoundError,
    WorkflowValidationError,
)


# Allowed status moves; anything else is an InvalidTransitionError
STATUS_TRANSITIONS = {
    STATUS_PENDING: {STATUS_IN_PROGRESS},
    STATUS_IN_PROGRESS: {STATUS_SUBMITTED},
    STATUS_SUBMITTED: {STATUS_APPROVED, STATUS_REJECTED, STATUS_IN_PROGRESS},
    STATUS_APPROVED: set(),
    STATUS_REJECTED: set(),
}

# invoice_receivings.workflow_status driven by (record_type, status)
INVOICE_STATUS_BY_RECORD = {
    ("quality_control", STATUS_PENDING): WORKFLOW_QC_IN_PROGRESS,
    ("quality_control", STATUS_IN_PROGRESS): WORKFLOW_QC_IN_PROGRESS,
    ("quality_control", STATUS_SUBMITTED): WORKFLOW_QC_COMPLETED,
    ("quality_control", STATUS_REJECTED): WORKFLOW_REJECTED,
    ("warehouse_approval", STATUS_PENDING): WORKFLOW_WAREHOUSE_PENDING,
    ("warehouse_approval", STATUS_IN_PROGRESS): WORKFLOW_WAREHOUSE_IN_PROGRESS,
    ("warehouse_approval", STATUS_SUBMITTED): WORKFLOW_WAREHOUSE_IN_PROGRESS,
    ("warehouse_approval", STATUS_APPROVED): WORKFLOW_INVENTORY_READY,
    ("warehouse_approval", STATUS_REJECTED): WORKFLOW_REJECTED,
}


# =============================================================================
# Loading
# =============================================================================

def get_approval_record(record_id: int) -> ApprovalRecord:
    record = db.session.get(ApprovalRecord, record_id)
    if record is None:
        raise RecordNotFoundError("Approval record not found", record_id=record_id)
    return record


def load_for_update(record_id: int, expected_version: int | None = None) -> ApprovalRecord:
    """Lock the record row for the rest of the transaction and check its version."""
    record = lock_for_update(
        db.session.query(ApprovalRecord).filter(ApprovalRecord.id == record_id)
    ).first()
    if record is None:
        raise RecordNotFoundError("Approval record not found", record_id=record_id)
    check_expected_version(record, expected_version)
    return record


def list_approval_records(
    *,
    record_type: str | None = None,
    status: str | None = None,
    assigned_to_user_id: int | None = None,
    stage_id: int | None = None,
    priority: str | None = None,
    limit: int = 100,
) -> list[ApprovalRecord]:
    query = db.session.query(ApprovalRecord)
    if record_type:
        if record_type not in RECORD_CLASSES:
            raise WorkflowValidationError(f"Unknown record type '{record_type}'", record_type=record_type)
        query = query.filter(ApprovalRecord.record_type == record_type)
    if status:
        if status not in RECORD_STATUSES:
            raise WorkflowValidationError(f"Unknown status '{status}'", status=status)
        query = query.filter(ApprovalRecord.status == status)
    if assigned_to_user_id is not None:
        query = query.filter(ApprovalRecord.assigned_to_user_id == assigned_to_user_id)
    if stage_id is not None:
        query = query.filter(ApprovalRecord.current_stage_id == stage_id)
    if priority:
        query = query.filter(ApprovalRecord.priority == priority)
    return query.order_by(ApprovalRecord.created_at.desc(), ApprovalRecord.id.desc()).limit(limit).all()


# =============================================================================
# Shared mutation helpers (no commits)
# =============================================================================

def record_context(record: ApprovalRecord, data: dict | None = None) -> dict:
    """Snapshot used to evaluate transition conditions and required fields."""
    context = {
        "record_type": record.record_type,
        "status": record.status,
        "priority": record.priority,
        "total_items": record.total_items,
        "approved_items": record.approved_items,
        "rejected_items": record.rejected_items,
        "pending_items": record.pending_items,
        "overall_result": record.overall_result,
        "required_levels": record.required_levels,
        "approval_round": record.approval_round,
        "assigned_to_user_id": record.assigned_to_user_id,
        "submission_remarks": record.submission_remarks,
    }
    if data:
        context.update(data)
    return context


def auto_transitions(record: ApprovalRecord) -> list[dict]:
    """
    Auto transitions the record currently qualifies for.

    Nothing is moved here; clients offer these as one-click next steps and
    still go through the normal action endpoints.
    """
    if record.status in TERMINAL_STATUSES or record.current_stage_id is None:
        return []
    candidates = workflow_service.auto_transition_candidates(record.current_stage_id, record_context(record))
    return [
        {**t.to_dict(), "to_stage_code": t.to_stage.code, "to_stage_name": t.to_stage.name}
        for t in candidates
    ]


def recompute_aggregates(record: ApprovalRecord) -> None:
    """Derive item counts from the full item list. Partial counts as approved."""
    items = list(record.items)
    record.total_items = len(items)
    record.approved_items = sum(1 for i in items if i.decision in (DECISION_APPROVED, DECISION_PARTIAL))
    record.rejected_items = sum(1 for i in items if i.decision == DECISION_REJECTED)
    record.pending_items = sum(1 for i in items if i.decision == DECISION_PENDING)


def touch(record: ApprovalRecord, actor_user_id: int | None) -> None:
    record.updated_at = utcnow()
    record.updated_by_user_id = actor_user_id


def ensure_editable(record: ApprovalRecord) -> None:
    """Line items may change only before submission."""
    if record.status not in (STATUS_PENDING, STATUS_IN_PROGRESS):
        raise InvalidTransitionError(
            f"Line items cannot change while record is {record.status}",
            record_id=record.id,
            status=record.status,
        )


def set_status(record: ApprovalRecord, to_status: str) -> str:
    """Apply a status move allowed by STATUS_TRANSITIONS; returns the previous status."""
    previous = record.status
    if to_status not in STATUS_TRANSITIONS.get(previous, set()):
        raise InvalidTransitionError(
            f"Cannot move record from {previous} to {to_status}",
            record_id=record.id,
            from_status=previous,
            to_status=to_status,
        )
    record.status = to_status
    sync_invoice_status(record)
    return previous


def sync_invoice_status(record: ApprovalRecord) -> None:
    invoice = record.invoice_receiving
    status = INVOICE_STATUS_BY_RECORD.get((record.record_type, record.status))
    if invoice is not None and status is not None:
        invoice.workflow_status = status


def after_item_change(record: ApprovalRecord, actor_user_id: int | None, *, event_type: str, payload: dict) -> str | None:
    """
    Recompute aggregates, start the record if this was its first decision,
    touch the row and append the audit entry. Returns the previous status
    when the status changed.
    """
    recompute_aggregates(record)
    changed_from = None
    if record.status == STATUS_PENDING and record.pending_items < record.total_items:
        changed_from = set_status(record, STATUS_IN_PROGRESS)
        record.started_at = utcnow()
    touch(record, actor_user_id)
    audit_service.record_event(
        entity_type=record.record_type,
        entity_id=record.id,
        event_type=event_type,
        actor_user_id=actor_user_id,
        payload=payload,
    )
    return changed_from


def apply_transition(record: ApprovalRecord, action: str, *, actor_user_id: int | None, data: dict | None = None):
    """
    Resolve the configured transition for action from the record's stage,
    enforce its required fields and move the record. No commit.
    """
    context = record_context(record, data)
    transition = workflow_service.find_transition(record.current_stage_id, action, context)
    missing = workflow_service.missing_required_fields(transition, context)
    if missing:
        raise WorkflowValidationError(
            f"Missing required field(s): {', '.join(missing)}",
            record_id=record.id,
            transition_id=transition.id,
            missing_fields=missing,
        )
    workflow_service.move_record_to_stage(
        record,
        transition.to_stage,
        action=action,
        actor_user_id=actor_user_id,
        transition_id=transition.id,
        remarks=(data or {}).get("remarks"),
    )
    return transition


def authorize(actor, record: ApprovalRecord, action: str) -> None:
    if record.current_stage is None:
        raise InvalidTransitionError("Record has no current stage", record_id=record.id)
    workflow_service.authorize_stage_action(
        actor, record.current_stage, action, resource=f"{record.record_type}:{record.id}"
    )


def notify_if_changed(
    record_id: int,
    previous_status: str | None,
    new_status: str,
    actor_user_id: int | None,
    transition=None,
) -> None:
    """Notify only real status changes, worded by the transition template when it has one."""
    if previous_status is not None and previous_status != new_status:
        notification_service.notify_status_change(
            record_id,
            new_status,
            actor_user_id,
            template=transition.notification_template if transition is not None else None,
        )


# =============================================================================
# Operations
# =============================================================================

@atomic
def submit_record(
    record_id: int,
    *,
    actor,
    remarks: str | None = None,
    expected_version: int | None = None,
) -> ApprovalRecord:
    """
    in_progress -> submitted.

    Requires SUBMIT_RECORD on the current stage, zero pending items and a
    "complete" transition from the current stage.
    """
    record = load_for_update(record_id, expected_version)
    if record.status not in (STATUS_PENDING, STATUS_IN_PROGRESS):
        raise InvalidTransitionError(
            f"Cannot submit a record that is {record.status}",
            record_id=record.id,
            status=record.status,
        )
    authorize(actor, record, "complete")

    if not record.items:
        raise WorkflowValidationError("Record has no line items", record_id=record.id)
    pending_ids = [i.id for i in record.items if i.decision == DECISION_PENDING]
    if pending_ids:
        raise IncompleteDecisionsError(
            f"{len(pending_ids)} line item(s) still pending",
            record_id=record.id,
            pending_item_ids=pending_ids,
        )

    recompute_aggregates(record)
    transition = apply_transition(
        record,
        "complete",
        actor_user_id=actor.user_id,
        data={"remarks": remarks, "submission_remarks": remarks},
    )
    previous = set_status(record, STATUS_SUBMITTED)

    now = utcnow()
    record.submitted_by_user_id = actor.user_id
    record.submitted_at = now
    record.submission_remarks = remarks
    touch(record, actor.user_id)
    audit_service.record_event(
        entity_type=record.record_type,
        entity_id=record.id,
        event_type="RECORD_SUBMITTED",
        actor_user_id=actor.user_id,
        payload={"remarks": remarks, "overall_result": record.overall_result},
    )
    commit_or_conflict(record.id)

    notify_if_changed(record.id, previous, record.status, actor.user_id, transition)
    return record


@atomic
def return_for_rework(
    record_id: int,
    *,
    actor,
    remarks: str | None = None,
    expected_version: int | None = None,
) -> ApprovalRecord:
    """
    submitted -> in_progress via the stage's "return" transition.

    Opens a new approval round: manager levels restart at 1 and earlier
    sign-offs stay on file under their round.
    """
    record = load_for_update(record_id, expected_version)
    if record.status != STATUS_SUBMITTED:
        raise InvalidTransitionError(
            f"Only submitted records can be returned (record is {record.status})",
            record_id=record.id,
            status=record.status,
        )
    authorize(actor, record, "return")

    transition = apply_transition(record, "return", actor_user_id=actor.user_id, data={"remarks": remarks})
    previous = set_status(record, STATUS_IN_PROGRESS)

    record.approval_round = (record.approval_round or 1) + 1
    record.submitted_by_user_id = None
    record.submitted_at = None
    touch(record, actor.user_id)
    audit_service.record_event(
        entity_type=record.record_type,
        entity_id=record.id,
        event_type="RECORD_RETURNED",
        actor_user_id=actor.user_id,
        payload={"remarks": remarks, "approval_round": record.approval_round},
    )
    commit_or_conflict(record.id)

    notify_if_changed(record.id, previous, record.status, actor.user_id, transition)
    return record


@atomic
def bulk_assign(
    record_ids,
    *,
    actor,
    assigned_to_user_id: int | None = None,
    priority: str | None = None,
) -> int:
    """
    Reassign and/or reprioritize records that are still pending or in progress.

    Returns the number of records actually modified. Unknown ids and records
    past in_progress are skipped.
    """
    permission_service.ensure_permissions(actor, None, ["ASSIGN_RECORDS"], resource="approval_records:assign")

    if assigned_to_user_id is None and priority is None:
        raise WorkflowValidationError("assigned_to_user_id or priority is required")
    if priority is not None and priority not in PRIORITIES:
        raise WorkflowValidationError(
            f"Invalid priority '{priority}'. Must be one of: {', '.join(PRIORITIES)}",
            priority=priority,
        )
    if assigned_to_user_id is not None:
        assignee = db.session.get(User, assigned_to_user_id)
        if assignee is None or not assignee.is_active:
            raise WorkflowValidationError("Assignee not found or inactive", user_id=assigned_to_user_id)

    ids = sorted({int(rid) for rid in (record_ids or [])})
    if not ids:
        raise WorkflowValidationError("record_ids is required")

    records = lock_for_update(
        db.session.query(ApprovalRecord)
        .filter(ApprovalRecord.id.in_(ids))
        .filter(ApprovalRecord.status.in_((STATUS_PENDING, STATUS_IN_PROGRESS)))
        .order_by(ApprovalRecord.id)
    ).all()

    modified = 0
    for record in records:
        changes = {}
        if assigned_to_user_id is not None and record.assigned_to_user_id != assigned_to_user_id:
            changes["assigned_to_user_id"] = [record.assigned_to_user_id, assigned_to_user_id]
            record.assigned_to_user_id = assigned_to_user_id
        if priority is not None and record.priority != priority:
            changes["priority"] = [record.priority, priority]
            record.priority = priority
        if not changes:
            continue
        touch(record, actor.user_id)
        audit_service.record_event(
            entity_type=record.record_type,
            entity_id=record.id,
            event_type="RECORD_ASSIGNED",
            actor_user_id=actor.user_id,
            payload=changes,
        )
        modified += 1

    if modified:
        commit_or_conflict()
    return modified


def record_statistics(record_type: str | None = None) -> dict:
    """Counts per status, per priority and open workload per assignee."""
    base = db.session.query(ApprovalRecord)
    if record_type:
        if record_type not in RECORD_CLASSES:
            raise WorkflowValidationError(f"Unknown record type '{record_type}'", record_type=record_type)
        base = base.filter(ApprovalRecord.record_type == record_type)

    by_status = {status: 0 for status in RECORD_STATUSES}
    for status, count in base.with_entities(ApprovalRecord.status, func.count(ApprovalRecord.id)).group_by(ApprovalRecord.status):
        by_status[status] = count

    open_records = base.filter(ApprovalRecord.status.notin_(TERMINAL_STATUSES))
    by_priority = {p: 0 for p in PRIORITIES}
    for priority, count in open_records.with_entities(ApprovalRecord.priority, func.count(ApprovalRecord.id)).group_by(ApprovalRecord.priority):
        by_priority[priority] = count

    by_assignee = {}
    for user_id, count in (
        open_records.filter(ApprovalRecord.assigned_to_user_id.isnot(None))
        .with_entities(ApprovalRecord.assigned_to_user_id, func.count(ApprovalRecord.id))
        .group_by(ApprovalRecord.assigned_to_user_id)
    ):
        by_assignee[user_id] = count

    return {
        "record_type": record_type,
        "total": sum(by_status.values()),
        "by_status": by_status,
        "open_by_priority": by_priority,
        "open_by_assignee": by_assignee,
    }


def manager_levels_for(record_cls) -> int:
    key = record_cls.levels_config_key
    return int(current_app.config.get(key, 1)) if key else 1
