# Overview: Flask API routes for workflow stages, transitions and stage permissions; parses input and returns JSON responses.

"""
Workflow Configuration Routes

SECURITY: All routes require authentication.
- Read operations require VIEW_WORKFLOW
- Stage and transition changes require MANAGE_WORKFLOW
- Stage grants require ASSIGN_STAGE_PERMISSIONS
"""

from flask import Blueprint, request, jsonify, g, current_app, Response

from ..decorators import require_auth, require_permission
from ..services import permission_service, workflow_service
from ..services.errors import WorkflowError, WorkflowValidationError
from pharmaflow.time_utils import parse_iso_datetime
from .approvals import workflow_error_response, _internal_error


workflow_bp = Blueprint("workflow", __name__, url_prefix="/api/workflow")


def _body() -> dict:
    return request.get_json(silent=True) or {}


def _changes() -> dict:
    """Request body as field changes; the acting user always comes from the session."""
    data = _body()
    if not isinstance(data, dict):
        raise WorkflowValidationError("Request body must be a JSON object")
    if "actor_user_id" in data:
        raise WorkflowValidationError("actor_user_id cannot be set in the request body")
    return data


def _parse_expiry(value):
    try:
        return parse_iso_datetime(value)
    except (TypeError, ValueError):
        raise WorkflowValidationError("Invalid expires_at format", expires_at=value)


# =============================================================================
# Stages
# =============================================================================

@workflow_bp.get("/stages")
@require_auth
@require_permission("VIEW_WORKFLOW")
def list_stages_route():
    include_inactive = request.args.get("include_inactive", "false").lower() == "true"
    stages = workflow_service.list_stages(include_inactive=include_inactive)
    return jsonify({"stages": [s.to_dict() for s in stages]})


@workflow_bp.get("/stages/<int:stage_id>")
@require_auth
@require_permission("VIEW_WORKFLOW")
def get_stage_route(stage_id: int):
    try:
        stage = workflow_service.get_stage(stage_id)
        transitions = workflow_service.list_transitions(from_stage_id=stage_id)
        return jsonify({"stage": stage.to_dict(), "transitions": [t.to_dict() for t in transitions]})
    except WorkflowError as e:
        return workflow_error_response(e)


@workflow_bp.post("/stages")
@require_auth
@require_permission("MANAGE_WORKFLOW")
def create_stage_route():
    """
    Request body:
    {
        "name": "QC Pending", "code": "QC_PENDING", "sequence": 10,
        "allowed_actions": ["edit", "qc_check"],
        "required_permissions": ["DECIDE_LINE_ITEMS"],
        "next_stages": [{"stage_id": 2, "is_rework": false}]
    }
    """
    data = _body()
    if data.get("sequence") is None:
        return jsonify({"error": "sequence is required"}), 400
    try:
        stage = workflow_service.create_stage(
            name=data.get("name"),
            code=data.get("code"),
            sequence=data.get("sequence"),
            allowed_actions=data.get("allowed_actions"),
            required_permissions=data.get("required_permissions"),
            next_stages=data.get("next_stages"),
            description=data.get("description"),
            is_active=data.get("is_active", True),
            actor_user_id=g.current_user.id,
        )
        return jsonify({"stage": stage.to_dict()}), 201
    except WorkflowError as e:
        return workflow_error_response(e)
    except Exception:
        return _internal_error("Failed to create workflow stage")


@workflow_bp.put("/stages/<int:stage_id>")
@require_auth
@require_permission("MANAGE_WORKFLOW")
def update_stage_route(stage_id: int):
    try:
        stage = workflow_service.update_stage(stage_id, actor_user_id=g.current_user.id, **_changes())
        return jsonify({"stage": stage.to_dict()})
    except WorkflowError as e:
        return workflow_error_response(e)
    except Exception:
        return _internal_error("Failed to update workflow stage")


@workflow_bp.put("/stages/<int:stage_id>/next-stages")
@require_auth
@require_permission("MANAGE_WORKFLOW")
def set_next_stages_route(stage_id: int):
    try:
        stage = workflow_service.set_next_stages(
            stage_id, _body().get("next_stages") or [], actor_user_id=g.current_user.id
        )
        return jsonify({"stage": stage.to_dict()})
    except WorkflowError as e:
        return workflow_error_response(e)


@workflow_bp.post("/stages/<int:stage_id>/deactivate")
@require_auth
@require_permission("MANAGE_WORKFLOW")
def deactivate_stage_route(stage_id: int):
    try:
        stage = workflow_service.deactivate_stage(stage_id, actor_user_id=g.current_user.id)
        return jsonify({"stage": stage.to_dict()})
    except WorkflowError as e:
        return workflow_error_response(e)


@workflow_bp.delete("/stages/<int:stage_id>")
@require_auth
@require_permission("MANAGE_WORKFLOW")
def delete_stage_route(stage_id: int):
    try:
        workflow_service.delete_stage(stage_id, actor_user_id=g.current_user.id)
        return jsonify({"message": "Stage deleted"})
    except WorkflowError as e:
        return workflow_error_response(e)
    except Exception:
        return _internal_error("Failed to delete workflow stage")


@workflow_bp.post("/stages/reorder")
@require_auth
@require_permission("MANAGE_WORKFLOW")
def reorder_stages_route():
    try:
        stages = workflow_service.reorder_stages(
            _body().get("stage_ids") or [], actor_user_id=g.current_user.id
        )
        return jsonify({"stages": [s.to_dict() for s in stages]})
    except WorkflowError as e:
        return workflow_error_response(e)


@workflow_bp.post("/stages/<int:stage_id>/clone")
@require_auth
@require_permission("MANAGE_WORKFLOW")
def clone_stage_route(stage_id: int):
    try:
        stage = workflow_service.clone_stage(stage_id, actor_user_id=g.current_user.id)
        return jsonify({"stage": stage.to_dict()}), 201
    except WorkflowError as e:
        return workflow_error_response(e)


# =============================================================================
# Transitions
# =============================================================================

@workflow_bp.get("/transitions")
@require_auth
@require_permission("VIEW_WORKFLOW")
def list_transitions_route():
    transitions = workflow_service.list_transitions(from_stage_id=request.args.get("from_stage_id", type=int))
    return jsonify({"transitions": [t.to_dict() for t in transitions]})


@workflow_bp.post("/transitions")
@require_auth
@require_permission("MANAGE_WORKFLOW")
def create_transition_route():
    data = _body()
    if not data.get("from_stage_id") or not data.get("to_stage_id") or not data.get("action"):
        return jsonify({"error": "from_stage_id, to_stage_id and action are required"}), 400
    try:
        transition = workflow_service.create_transition(
            from_stage_id=int(data["from_stage_id"]),
            to_stage_id=int(data["to_stage_id"]),
            action=data["action"],
            conditions=data.get("conditions"),
            auto_transition=data.get("auto_transition", False),
            required_fields=data.get("required_fields"),
            notification_template=data.get("notification_template"),
            actor_user_id=g.current_user.id,
        )
        return jsonify({"transition": transition.to_dict()}), 201
    except WorkflowError as e:
        return workflow_error_response(e)
    except Exception:
        return _internal_error("Failed to create workflow transition")


@workflow_bp.put("/transitions/<int:transition_id>")
@require_auth
@require_permission("MANAGE_WORKFLOW")
def update_transition_route(transition_id: int):
    try:
        transition = workflow_service.update_transition(
            transition_id, actor_user_id=g.current_user.id, **_changes()
        )
        return jsonify({"transition": transition.to_dict()})
    except WorkflowError as e:
        return workflow_error_response(e)


@workflow_bp.delete("/transitions/<int:transition_id>")
@require_auth
@require_permission("MANAGE_WORKFLOW")
def delete_transition_route(transition_id: int):
    try:
        workflow_service.delete_transition(transition_id, actor_user_id=g.current_user.id)
        return jsonify({"message": "Transition deleted"})
    except WorkflowError as e:
        return workflow_error_response(e)


# =============================================================================
# Stage permissions
# =============================================================================

@workflow_bp.get("/stages/<int:stage_id>/users")
@require_auth
@require_permission("VIEW_WORKFLOW")
def list_stage_users_route(stage_id: int):
    include_inactive = request.args.get("include_inactive", "false").lower() == "true"
    try:
        return jsonify({"users": permission_service.list_stage_users(stage_id, include_inactive=include_inactive)})
    except WorkflowError as e:
        return workflow_error_response(e)


@workflow_bp.put("/stages/<int:stage_id>/users")
@require_auth
@require_permission("ASSIGN_STAGE_PERMISSIONS")
def update_stage_users_route(stage_id: int):
    """
    Replace the set of users holding a grant on the stage.

    Request body: {"user_ids": [...], "permissions": [...], "expires_at": "...Z"}
    Returns {"assigned": [...], "revoked": [...]}.
    """
    data = _body()
    try:
        result = permission_service.update_stage_assignments(
            stage_id=stage_id,
            user_ids=data.get("user_ids") or [],
            permission_codes=data.get("permissions") or [],
            assigned_by_user_id=g.current_user.id,
            expires_at=_parse_expiry(data.get("expires_at")),
        )
        return jsonify(result)
    except WorkflowError as e:
        return workflow_error_response(e)
    except Exception:
        return _internal_error("Failed to update stage assignments")


@workflow_bp.post("/stages/<int:stage_id>/permissions")
@require_auth
@require_permission("ASSIGN_STAGE_PERMISSIONS")
def assign_stage_permission_route(stage_id: int):
    data = _body()
    if not data.get("user_id"):
        return jsonify({"error": "user_id is required"}), 400
    try:
        grant = permission_service.assign_stage_permission(
            user_id=int(data["user_id"]),
            stage_id=stage_id,
            permission_codes=data.get("permissions") or [],
            assigned_by_user_id=g.current_user.id,
            expires_at=_parse_expiry(data.get("expires_at")),
            remarks=data.get("remarks"),
        )
        return jsonify({"stage_permission": grant.to_dict()}), 201
    except WorkflowError as e:
        return workflow_error_response(e)
    except Exception:
        return _internal_error("Failed to assign stage permission")


@workflow_bp.delete("/stages/<int:stage_id>/permissions/<int:user_id>")
@require_auth
@require_permission("ASSIGN_STAGE_PERMISSIONS")
def revoke_stage_permission_route(stage_id: int, user_id: int):
    """Optional body {"permissions": [...]} revokes only those codes."""
    try:
        grant = permission_service.revoke_stage_permission(
            user_id=user_id,
            stage_id=stage_id,
            revoked_by_user_id=g.current_user.id,
            permission_codes=_body().get("permissions"),
        )
        return jsonify({
            "revoked": grant is not None,
            "stage_permission": grant.to_dict() if grant is not None else None,
        })
    except WorkflowError as e:
        return workflow_error_response(e)


@workflow_bp.get("/stages/<int:stage_id>/permissions/<int:user_id>")
@require_auth
@require_permission("VIEW_WORKFLOW")
def user_stage_permissions_route(stage_id: int, user_id: int):
    try:
        workflow_service.get_stage(stage_id)
        return jsonify(permission_service.get_user_stage_permissions(user_id, stage_id))
    except WorkflowError as e:
        return workflow_error_response(e)


# =============================================================================
# Graph and validation
# =============================================================================

@workflow_bp.get("/graph")
@require_auth
@require_permission("VIEW_WORKFLOW")
def workflow_graph_route():
    fmt = request.args.get("format", "json")
    include_inactive = request.args.get("include_inactive", "false").lower() == "true"
    try:
        graph = workflow_service.workflow_graph(fmt=fmt, include_inactive=include_inactive)
    except WorkflowError as e:
        return workflow_error_response(e)
    if fmt == "mermaid":
        return Response(graph, mimetype="text/plain")
    return jsonify(graph)


@workflow_bp.post("/validate")
@require_auth
def validate_action_route():
    """
    Dry-run an action for the current user.

    Request body: {"stage_id": 1, "action": "complete", "data": {...}}
    """
    data = _body()
    if not data.get("stage_id") or not data.get("action"):
        return jsonify({"error": "stage_id and action are required"}), 400
    try:
        result = workflow_service.validate_action(
            g.actor, int(data["stage_id"]), data["action"], data.get("data") or {}
        )
        return jsonify(result)
    except WorkflowError as e:
        return workflow_error_response(e)
    except Exception:
        current_app.logger.exception("Failed to validate workflow action")
        return jsonify({"error": "Internal server error"}), 500
