# Overview: Flask API routes for QC and warehouse approval records; parses input and returns JSON responses.

"""
Approval Record Routes

SECURITY: All routes require authentication.
- Read operations require VIEW_APPROVALS
- Generating records requires CREATE_APPROVAL_RECORD
- Item decisions, submission, manager actions and returns are checked by the
  services against the record's current stage (global role permission or an
  active stage grant)

CONCURRENCY: mutating routes accept "expected_version". Without it the write
is blind and is re-applied on an optimistic lock conflict.
"""

from flask import Blueprint, request, jsonify, g, current_app

from ..decorators import require_auth, require_permission
from ..extensions import db
from ..services import (
    approval_service,
    audit_service,
    bulk_action_service,
    decision_service,
    escalation_service,
    notification_service,
    upstream_service,
    workflow_service,
)
from ..services.concurrency import retry_on_conflict
from ..services.errors import WorkflowError


approvals_bp = Blueprint("approvals", __name__, url_prefix="/api/approvals")


def workflow_error_response(exc: WorkflowError):
    db.session.rollback()
    return jsonify(exc.to_dict()), exc.http_status


def _internal_error(message: str):
    db.session.rollback()
    current_app.logger.exception(message)
    return jsonify({"error": "Internal server error"}), 500


def _run_write(func, expected_version):
    """Blind writes retry on conflict; versioned writes surface it."""
    if expected_version is None:
        return retry_on_conflict(func)
    return func()


def _body() -> dict:
    return request.get_json(silent=True) or {}


# =============================================================================
# Invoice receiving
# =============================================================================

@approvals_bp.post("/invoices")
@require_auth
@require_permission("RECEIVE_INVOICES")
def create_invoice_route():
    """
    Register received goods.

    Request body:
    {
        "invoice_number": "INV-1001",
        "principal_id": 3,
        "lines": [{"product_name": "...", "batch_no": "...", "received_qty": 100}]
    }
    """
    data = _body()
    try:
        invoice = upstream_service.create_invoice_receiving(
            invoice_number=data.get("invoice_number"),
            lines=data.get("lines") or [],
            received_by_user_id=g.current_user.id,
            principal_id=data.get("principal_id"),
            warehouse_id=data.get("warehouse_id"),
            purchase_order_ref=data.get("purchase_order_ref"),
            invoice_date=data.get("invoice_date"),
            remarks=data.get("remarks"),
        )
        return jsonify({"invoice_receiving": invoice.to_dict()}), 201
    except WorkflowError as e:
        return workflow_error_response(e)
    except Exception:
        return _internal_error("Failed to create invoice receiving")


@approvals_bp.get("/invoices/<int:invoice_id>")
@require_auth
@require_permission("VIEW_APPROVALS")
def get_invoice_route(invoice_id: int):
    try:
        invoice = upstream_service.get_invoice_receiving(invoice_id)
        return jsonify({"invoice_receiving": invoice.to_dict()})
    except WorkflowError as e:
        return workflow_error_response(e)


# =============================================================================
# Record generation and reads
# =============================================================================

@approvals_bp.post("/quality-control")
@require_auth
@require_permission("CREATE_APPROVAL_RECORD")
def create_quality_control_route():
    """Generate a QC record from an invoice receiving."""
    data = _body()
    invoice_id = data.get("invoice_receiving_id")
    if not invoice_id:
        return jsonify({"error": "invoice_receiving_id is required"}), 400
    try:
        record = upstream_service.create_quality_control_from_invoice(
            int(invoice_id),
            actor=g.actor,
            priority=data.get("priority") or "medium",
            assigned_to_user_id=data.get("assigned_to_user_id"),
        )
        return jsonify({"record": record.to_dict()}), 201
    except WorkflowError as e:
        return workflow_error_response(e)
    except Exception:
        return _internal_error("Failed to create QC record")


@approvals_bp.post("/warehouse-approvals")
@require_auth
@require_permission("CREATE_APPROVAL_RECORD")
def create_warehouse_approval_route():
    """Generate a warehouse approval from an approved QC record."""
    data = _body()
    qc_id = data.get("quality_control_id")
    if not qc_id:
        return jsonify({"error": "quality_control_id is required"}), 400
    try:
        record = upstream_service.create_warehouse_approval_from_qc(
            int(qc_id),
            actor=g.actor,
            priority=data.get("priority") or "medium",
            assigned_to_user_id=data.get("assigned_to_user_id"),
        )
        return jsonify({"record": record.to_dict()}), 201
    except WorkflowError as e:
        return workflow_error_response(e)
    except Exception:
        return _internal_error("Failed to create warehouse approval")


@approvals_bp.get("")
@require_auth
@require_permission("VIEW_APPROVALS")
def list_records_route():
    """
    Query parameters: record_type, status, assigned_to, stage_id, priority,
    limit (default 100, max 500).
    """
    limit = max(1, min(request.args.get("limit", 100, type=int), 500))
    try:
        records = approval_service.list_approval_records(
            record_type=request.args.get("record_type"),
            status=request.args.get("status"),
            assigned_to_user_id=request.args.get("assigned_to", type=int),
            stage_id=request.args.get("stage_id", type=int),
            priority=request.args.get("priority"),
            limit=limit,
        )
        return jsonify({
            "items": [r.to_dict(include_items=False) for r in records],
            "count": len(records),
        })
    except WorkflowError as e:
        return workflow_error_response(e)


@approvals_bp.get("/statistics")
@require_auth
@require_permission("VIEW_APPROVALS")
def statistics_route():
    try:
        return jsonify(approval_service.record_statistics(request.args.get("record_type")))
    except WorkflowError as e:
        return workflow_error_response(e)


@approvals_bp.get("/<int:record_id>")
@require_auth
@require_permission("VIEW_APPROVALS")
def get_record_route(record_id: int):
    try:
        record = approval_service.get_approval_record(record_id)
        return jsonify({"record": record.to_dict(), "auto_transitions": approval_service.auto_transitions(record)})
    except WorkflowError as e:
        return workflow_error_response(e)


@approvals_bp.get("/<int:record_id>/history")
@require_auth
@require_permission("VIEW_APPROVALS")
def record_history_route(record_id: int):
    try:
        approval_service.get_approval_record(record_id)
        history = workflow_service.get_record_history(record_id)
        return jsonify({"history": [h.to_dict() for h in history]})
    except WorkflowError as e:
        return workflow_error_response(e)


@approvals_bp.get("/<int:record_id>/approval-chain")
@require_auth
@require_permission("VIEW_APPROVALS")
def approval_chain_route(record_id: int):
    try:
        return jsonify(escalation_service.approval_chain(record_id))
    except WorkflowError as e:
        return workflow_error_response(e)


@approvals_bp.get("/<int:record_id>/auto-transitions")
@require_auth
@require_permission("VIEW_APPROVALS")
def auto_transitions_route(record_id: int):
    try:
        record = approval_service.get_approval_record(record_id)
        return jsonify({"auto_transitions": approval_service.auto_transitions(record)})
    except WorkflowError as e:
        return workflow_error_response(e)


@approvals_bp.get("/<int:record_id>/audit")
@require_auth
@require_permission("VIEW_APPROVALS")
def record_audit_route(record_id: int):
    try:
        record = approval_service.get_approval_record(record_id)
        events = audit_service.list_events(entity_type=record.record_type, entity_id=record.id)
        return jsonify({"events": [e.to_dict() for e in events]})
    except WorkflowError as e:
        return workflow_error_response(e)


# =============================================================================
# Notifications (built-in sink)
# =============================================================================

@approvals_bp.get("/notifications")
@require_auth
def list_notifications_route():
    """Query parameters: unread_only (default false), limit (default 100, max 500)."""
    unread_only = request.args.get("unread_only", "false").lower() == "true"
    limit = max(1, min(request.args.get("limit", 100, type=int), 500))
    notifications = notification_service.list_notifications(
        g.current_user.id, unread_only=unread_only, limit=limit,
    )
    return jsonify({
        "notifications": [n.to_dict() for n in notifications],
        "count": len(notifications),
    })


@approvals_bp.post("/notifications/read")
@require_auth
def mark_notifications_read_route():
    """Request body: {"notification_ids": [...]}"""
    try:
        changed = notification_service.mark_read(g.current_user.id, _body().get("notification_ids"))
        return jsonify({"marked_read": changed})
    except WorkflowError as e:
        return workflow_error_response(e)


# =============================================================================
# Decisions and lifecycle
# =============================================================================

@approvals_bp.post("/<int:record_id>/items/<int:item_id>/decision")
@require_auth
def decide_item_route(record_id: int, item_id: int):
    """
    Request body:
    {
        "decision": "approved" | "rejected" | "partial",
        "decided_qty": 90,              // optional for approved, ignored for rejected
        "remarks": "...",
        "checks": {"physical_condition": "good"},
        "storage_location": {"zone": "A", "rack": "3", "shelf": "2", "bin": "7"},      // warehouse only
        "storage_conditions": {"temperature": {"min": 2, "max": 8, "unit": "C"}, "light_condition": "dark"},
        "expected_version": 3           // optional
    }
    """
    data = _body()
    expected_version = data.get("expected_version")
    try:
        item = _run_write(
            lambda: decision_service.decide_item(
                record_id,
                item_id,
                decision=data.get("decision"),
                decided_qty=data.get("decided_qty"),
                remarks=data.get("remarks"),
                checks=data.get("checks"),
                storage_location=data.get("storage_location"),
                storage_conditions=data.get("storage_conditions"),
                actor=g.actor,
                expected_version=expected_version,
            ),
            expected_version,
        )
        record = approval_service.get_approval_record(record_id)
        return jsonify({"item": item.to_dict(), "record": record.to_dict(include_items=False)})
    except WorkflowError as e:
        return workflow_error_response(e)
    except Exception:
        return _internal_error("Failed to decide line item")


@approvals_bp.post("/<int:record_id>/items/bulk")
@require_auth
def bulk_decide_route(record_id: int):
    """Request body: {"item_ids": [...], "decision": "approved" | "rejected", "remarks": "..."}"""
    data = _body()
    expected_version = data.get("expected_version")
    try:
        result = _run_write(
            lambda: bulk_action_service.apply_bulk(
                record_id,
                data.get("item_ids") or [],
                data.get("decision"),
                actor=g.actor,
                remarks=data.get("remarks"),
                expected_version=expected_version,
            ),
            expected_version,
        )
        return jsonify({
            "updated_items": result["updated_items"],
            "record": result["record"].to_dict(),
        })
    except WorkflowError as e:
        return workflow_error_response(e)
    except Exception:
        return _internal_error("Failed to apply bulk decision")


@approvals_bp.post("/<int:record_id>/submit")
@require_auth
def submit_record_route(record_id: int):
    data = _body()
    expected_version = data.get("expected_version")
    try:
        record = _run_write(
            lambda: approval_service.submit_record(
                record_id,
                actor=g.actor,
                remarks=data.get("remarks"),
                expected_version=expected_version,
            ),
            expected_version,
        )
        return jsonify({"record": record.to_dict()})
    except WorkflowError as e:
        return workflow_error_response(e)
    except Exception:
        return _internal_error("Failed to submit record")


@approvals_bp.post("/<int:record_id>/manager-actions")
@require_auth
def manager_action_route(record_id: int):
    """Request body: {"level": 1, "action": "approve" | "reject", "remarks": "..."}"""
    data = _body()
    if data.get("level") is None or not data.get("action"):
        return jsonify({"error": "level and action are required"}), 400
    expected_version = data.get("expected_version")
    try:
        result = _run_write(
            lambda: escalation_service.record_manager_action(
                record_id,
                level=data.get("level"),
                action=data.get("action"),
                remarks=data.get("remarks"),
                actor=g.actor,
                expected_version=expected_version,
            ),
            expected_version,
        )
        warehouse_approval = result["warehouse_approval"]
        return jsonify({
            "record": result["record"].to_dict(),
            "approval": result["approval"].to_dict(),
            "warehouse_approval_id": warehouse_approval.id if warehouse_approval else None,
        })
    except WorkflowError as e:
        return workflow_error_response(e)
    except Exception:
        return _internal_error("Failed to record manager action")


@approvals_bp.post("/<int:record_id>/return")
@require_auth
def return_record_route(record_id: int):
    data = _body()
    expected_version = data.get("expected_version")
    try:
        record = _run_write(
            lambda: approval_service.return_for_rework(
                record_id,
                actor=g.actor,
                remarks=data.get("remarks"),
                expected_version=expected_version,
            ),
            expected_version,
        )
        return jsonify({"record": record.to_dict()})
    except WorkflowError as e:
        return workflow_error_response(e)
    except Exception:
        return _internal_error("Failed to return record")


@approvals_bp.post("/assign")
@require_auth
@require_permission("ASSIGN_RECORDS")
def bulk_assign_route():
    """Request body: {"record_ids": [...], "assigned_to_user_id": 5, "priority": "high"}"""
    data = _body()
    try:
        modified = retry_on_conflict(
            lambda: approval_service.bulk_assign(
                data.get("record_ids") or [],
                actor=g.actor,
                assigned_to_user_id=data.get("assigned_to_user_id"),
                priority=data.get("priority"),
            )
        )
        return jsonify({"modified": modified})
    except WorkflowError as e:
        return workflow_error_response(e)
    except Exception:
        return _internal_error("Failed to assign records")
