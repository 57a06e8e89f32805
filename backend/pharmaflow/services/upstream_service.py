# Overview: Service-layer operations for the upstream document chain; encapsulates business logic and database work.

"""
Upstream Record Generation

CHAIN (one-to-one at each step):
    invoice_receiving -> quality_control -> warehouse_approval

- QC items: one per invoice line with received_qty > 0, expected = received_qty
- Warehouse items: one per QC item with decided_qty > 0, expected = QC decided_qty
- A record starts on its record type's configured initial stage; a missing or
  inactive initial stage is a configuration error, never a stage-less record
- The invoice's workflow_status follows the records generated from it
"""

from __future__ import annotations

from datetime import date

from flask import current_app

from ..extensions import db
from ..models import (
    ApprovalRecord,
    InvoiceReceiving,
    InvoiceReceivingLine,
    LineItemDecision,
    QualityControl,
    WarehouseApproval,
)
from ..models.approvals import (
    DECISION_APPROVED,
    DECISION_PARTIAL,
    PRIORITIES,
    STATUS_APPROVED,
)
from pharmaflow.time_utils import parse_iso_datetime, utcnow
from . import approval_service, audit_service, document_service, permission_service, workflow_service
from .concurrency import atomic
from .errors import (
    InvalidTransitionError,
    RecordNotFoundError,
    WorkflowConfigError,
    WorkflowValidationError,
)


UPSTREAM_INVOICE = "invoice_receiving"
UPSTREAM_QC = "quality_control"


# =============================================================================
# Invoice receiving
# =============================================================================

def _parse_date(value, field_name: str):
    if value in (None, ""):
        return None
    if isinstance(value, date):
        return value
    try:
        return date.fromisoformat(str(value))
    except ValueError:
        raise WorkflowValidationError(f"Invalid {field_name}", field=field_name, value=value)


def _parse_qty(value, field_name: str) -> int:
    if value in (None, ""):
        return 0
    try:
        qty = int(value)
    except (TypeError, ValueError):
        raise WorkflowValidationError(f"{field_name} must be a whole number", field=field_name, value=value)
    if qty < 0:
        raise WorkflowValidationError(f"{field_name} cannot be negative", field=field_name, value=value)
    return qty


@atomic
def create_invoice_receiving(
    *,
    invoice_number: str,
    lines,
    received_by_user_id: int,
    principal_id: int | None = None,
    warehouse_id: int | None = None,
    purchase_order_ref: str | None = None,
    invoice_date=None,
    remarks: str | None = None,
) -> InvoiceReceiving:
    """Register received goods for a supplier invoice."""
    invoice_number = (invoice_number or "").strip()
    if not invoice_number:
        raise WorkflowValidationError("invoice_number is required")
    if not lines:
        raise WorkflowValidationError("At least one line is required")

    duplicate = db.session.query(InvoiceReceiving).filter_by(
        principal_id=principal_id, invoice_number=invoice_number
    ).first()
    if duplicate:
        raise WorkflowValidationError(
            f"Invoice {invoice_number} was already received",
            invoice_receiving_id=duplicate.id,
        )

    if isinstance(invoice_date, str):
        try:
            invoice_date = parse_iso_datetime(invoice_date)
        except ValueError:
            raise WorkflowValidationError("Invalid invoice_date", value=invoice_date)

    invoice = InvoiceReceiving(
        invoice_number=invoice_number,
        principal_id=principal_id,
        warehouse_id=warehouse_id,
        purchase_order_ref=purchase_order_ref,
        invoice_date=invoice_date,
        received_at=utcnow(),
        received_by_user_id=received_by_user_id,
        remarks=remarks,
    )

    for index, line in enumerate(lines, start=1):
        name = (line.get("product_name") or "").strip()
        if not name:
            raise WorkflowValidationError("product_name is required", line=index)
        invoice.lines.append(InvoiceReceivingLine(
            product_id=line.get("product_id"),
            product_code=line.get("product_code"),
            product_name=name,
            batch_no=line.get("batch_no"),
            mfg_date=_parse_date(line.get("mfg_date"), "mfg_date"),
            exp_date=_parse_date(line.get("exp_date"), "exp_date"),
            ordered_qty=_parse_qty(line.get("ordered_qty"), "ordered_qty"),
            received_qty=_parse_qty(line.get("received_qty"), "received_qty"),
            foc_qty=_parse_qty(line.get("foc_qty"), "foc_qty"),
        ))

    db.session.add(invoice)
    db.session.commit()
    return invoice


def get_invoice_receiving(invoice_id: int) -> InvoiceReceiving:
    invoice = db.session.get(InvoiceReceiving, invoice_id)
    if invoice is None:
        raise RecordNotFoundError("Invoice receiving not found", invoice_receiving_id=invoice_id)
    return invoice


# =============================================================================
# Record generation (no commits)
# =============================================================================

def _initial_stage(record_cls):
    code = current_app.config.get(record_cls.initial_stage_config_key)
    stage = workflow_service.get_stage_by_code(code) if code else None
    if stage is None or not stage.is_active:
        raise WorkflowConfigError(
            f"Initial stage '{code}' for {record_cls.__mapper_args__['polymorphic_identity']} is missing or inactive",
            stage_code=code,
        )
    return stage


def find_downstream(upstream_type: str, upstream_id: int) -> ApprovalRecord | None:
    return db.session.query(ApprovalRecord).filter_by(
        upstream_type=upstream_type, upstream_id=upstream_id
    ).first()


def _build_record(
    record_cls,
    *,
    upstream_type: str,
    upstream_id: int,
    invoice_receiving_id: int,
    items: list[LineItemDecision],
    actor_user_id: int,
    priority: str = "medium",
    assigned_to_user_id: int | None = None,
) -> ApprovalRecord:
    if priority not in PRIORITIES:
        raise WorkflowValidationError(
            f"Invalid priority '{priority}'. Must be one of: {', '.join(PRIORITIES)}",
            priority=priority,
        )
    existing = find_downstream(upstream_type, upstream_id)
    if existing is not None:
        raise WorkflowValidationError(
            f"{upstream_type} {upstream_id} already has record {existing.record_number}",
            existing_record_id=existing.id,
        )
    if not items:
        raise WorkflowValidationError(
            f"{upstream_type} {upstream_id} has no lines to approve",
            upstream_type=upstream_type,
            upstream_id=upstream_id,
        )

    stage = _initial_stage(record_cls)
    record = record_cls(
        record_number=document_service.next_record_number(record_cls.number_prefix),
        upstream_type=upstream_type,
        upstream_id=upstream_id,
        invoice_receiving_id=invoice_receiving_id,
        priority=priority,
        assigned_to_user_id=assigned_to_user_id,
        required_levels=approval_service.manager_levels_for(record_cls),
        approval_round=1,
        created_by_user_id=actor_user_id,
    )
    record.items = items
    db.session.add(record)
    db.session.flush()

    approval_service.recompute_aggregates(record)
    workflow_service.move_record_to_stage(record, stage, action="create", actor_user_id=actor_user_id)
    approval_service.sync_invoice_status(record)
    audit_service.record_event(
        entity_type=record.record_type,
        entity_id=record.id,
        event_type="RECORD_CREATED",
        actor_user_id=actor_user_id,
        payload={
            "record_number": record.record_number,
            "upstream_type": upstream_type,
            "upstream_id": upstream_id,
            "total_items": record.total_items,
        },
    )
    return record


def build_quality_control(invoice: InvoiceReceiving, *, actor_user_id: int, **options) -> QualityControl:
    items = [
        LineItemDecision(
            source_line_id=line.id,
            product_id=line.product_id,
            product_code=line.product_code,
            product_name=line.product_name,
            batch_no=line.batch_no,
            mfg_date=line.mfg_date,
            exp_date=line.exp_date,
            expected_qty=line.received_qty,
            decided_qty=0,
        )
        for line in invoice.lines
        if line.received_qty > 0
    ]
    return _build_record(
        QualityControl,
        upstream_type=UPSTREAM_INVOICE,
        upstream_id=invoice.id,
        invoice_receiving_id=invoice.id,
        items=items,
        actor_user_id=actor_user_id,
        **options,
    )


def passed_items(qc: QualityControl) -> list[LineItemDecision]:
    return [
        i for i in qc.items
        if i.decision in (DECISION_APPROVED, DECISION_PARTIAL) and i.decided_qty > 0
    ]


def build_warehouse_approval(qc: QualityControl, *, actor_user_id: int, **options) -> WarehouseApproval:
    if qc.status != STATUS_APPROVED:
        raise InvalidTransitionError(
            f"QC {qc.record_number} is {qc.status}; only approved QC records feed warehouse approval",
            record_id=qc.id,
            status=qc.status,
        )
    items = [
        LineItemDecision(
            source_line_id=item.id,
            product_id=item.product_id,
            product_code=item.product_code,
            product_name=item.product_name,
            batch_no=item.batch_no,
            mfg_date=item.mfg_date,
            exp_date=item.exp_date,
            expected_qty=item.decided_qty,
            decided_qty=0,
        )
        for item in passed_items(qc)
    ]
    return _build_record(
        WarehouseApproval,
        upstream_type=UPSTREAM_QC,
        upstream_id=qc.id,
        invoice_receiving_id=qc.invoice_receiving_id,
        items=items,
        actor_user_id=actor_user_id,
        **options,
    )


# =============================================================================
# Public operations
# =============================================================================

@atomic
def create_from_upstream(
    upstream_type: str,
    upstream_id: int,
    *,
    actor,
    priority: str = "medium",
    assigned_to_user_id: int | None = None,
) -> ApprovalRecord:
    """Generate the next record in the chain from its upstream document."""
    permission_service.ensure_permissions(
        actor, None, ["CREATE_APPROVAL_RECORD"], resource=f"{upstream_type}:{upstream_id}"
    )
    options = {"priority": priority, "assigned_to_user_id": assigned_to_user_id}

    if upstream_type == UPSTREAM_INVOICE:
        invoice = get_invoice_receiving(upstream_id)
        record = build_quality_control(invoice, actor_user_id=actor.user_id, **options)
    elif upstream_type == UPSTREAM_QC:
        qc = db.session.get(QualityControl, upstream_id)
        if qc is None:
            raise RecordNotFoundError("Quality control record not found", record_id=upstream_id)
        record = build_warehouse_approval(qc, actor_user_id=actor.user_id, **options)
    else:
        raise WorkflowValidationError(f"Unknown upstream type '{upstream_type}'", upstream_type=upstream_type)

    db.session.commit()
    return record


def create_quality_control_from_invoice(invoice_id: int, *, actor, **options) -> QualityControl:
    return create_from_upstream(UPSTREAM_INVOICE, invoice_id, actor=actor, **options)


def create_warehouse_approval_from_qc(qc_id: int, *, actor, **options) -> WarehouseApproval:
    return create_from_upstream(UPSTREAM_QC, qc_id, actor=actor, **options)
