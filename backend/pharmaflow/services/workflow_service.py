# Overview: Service-layer operations for the workflow stage graph; encapsulates business logic and database work.

"""
Workflow Stage Graph Service

================================================================================
PURPOSE: Data-driven stages and transitions deciding which actions are legal
================================================================================

STAGES carry the actions allowed while a record sits on them, the permissions
required to act there, and their permitted next stages.

TRANSITIONS map (from_stage, action) -> to_stage, optionally guarded by
conditions evaluated against a snapshot of the acting record:

    {"rejected_items": 0}                    equality
    {"approved_items": {"gt": 0}}            comparison (eq, ne, gt, gte, lt, lte)
    {"priority": {"in": ["high", "urgent"]}} membership
    {"submission_remarks": {"exists": True}} presence

RULES:
1. A next stage must have a strictly greater sequence unless the link is a
   rework path.
2. For one (from_stage, action) at most one target stage may match any
   context: siblings with different targets must pin a shared field to
   different values, otherwise the second one is refused. Siblings sharing a
   target may overlap; the conditioned one is picked over the catch-all.
3. Stage changes are appended to workflow_history with code/name snapshots.
================================================================================
"""

from __future__ import annotations

from ..extensions import db
from ..models import (
    ApprovalRecord,
    Permission,
    StagePermission,
    WorkflowHistoryEntry,
    WorkflowStage,
    WorkflowStageLink,
    WorkflowTransition,
)
from ..models.approvals import TERMINAL_STATUSES
from ..models.workflow import STAGE_ACTIONS, TRANSITION_ACTIONS
from pharmaflow.time_utils import utcnow
from . import audit_service, notification_service, permission_service
from .errors import (
    InvalidTransitionError,
    RecordNotFoundError,
    WorkflowConfigError,
    WorkflowValidationError,
)


# Global/stage permission each action requires on the acting stage
ACTION_PERMISSIONS = {
    "edit": "DECIDE_LINE_ITEMS",
    "qc_check": "DECIDE_LINE_ITEMS",
    "receive": "DECIDE_LINE_ITEMS",
    "complete": "SUBMIT_RECORD",
    "approve": "APPROVE_RECORD",
    "reject": "APPROVE_RECORD",
    "return": "RETURN_RECORD",
    "cancel": "RETURN_RECORD",
}

CONDITION_OPERATORS = {"eq", "ne", "gt", "gte", "lt", "lte", "in", "exists"}

_MISSING = object()


# =============================================================================
# Lookups
# =============================================================================

def get_stage(stage_id: int) -> WorkflowStage:
    stage = db.session.get(WorkflowStage, stage_id)
    if stage is None:
        raise RecordNotFoundError("Workflow stage not found", stage_id=stage_id)
    return stage


def get_stage_by_code(code: str) -> WorkflowStage | None:
    return db.session.query(WorkflowStage).filter_by(code=_normalize_code(code)).first()


def list_stages(include_inactive: bool = False) -> list[WorkflowStage]:
    query = db.session.query(WorkflowStage)
    if not include_inactive:
        query = query.filter(WorkflowStage.is_active.is_(True))
    return query.order_by(WorkflowStage.sequence.asc(), WorkflowStage.id.asc()).all()


def get_transition(transition_id: int) -> WorkflowTransition:
    transition = db.session.get(WorkflowTransition, transition_id)
    if transition is None:
        raise RecordNotFoundError("Workflow transition not found", transition_id=transition_id)
    return transition


def list_transitions(from_stage_id: int | None = None) -> list[WorkflowTransition]:
    query = db.session.query(WorkflowTransition)
    if from_stage_id is not None:
        query = query.filter_by(from_stage_id=from_stage_id)
    return query.order_by(WorkflowTransition.from_stage_id, WorkflowTransition.action, WorkflowTransition.id).all()


# =============================================================================
# Validation helpers
# =============================================================================

def _normalize_code(code: str | None) -> str:
    value = (code or "").strip().upper().replace(" ", "_")
    if not value:
        raise WorkflowValidationError("Stage code is required")
    return value


def _validate_actions(actions, allowed) -> list[str]:
    cleaned = []
    for action in actions or []:
        value = str(action).strip().lower()
        if value not in allowed:
            raise WorkflowValidationError(
                f"Invalid action '{action}'. Must be one of: {', '.join(allowed)}",
                action=action,
            )
        if value not in cleaned:
            cleaned.append(value)
    return cleaned


def _resolve_permission_rows(codes) -> list[Permission]:
    return permission_service.resolve_permission_codes(codes)


def _normalize_next_stages(next_stages) -> list[tuple[int, bool]]:
    """Accept [id, ...] or [{"stage_id": id, "is_rework": bool}, ...]."""
    result: dict[int, bool] = {}
    for entry in next_stages or []:
        if isinstance(entry, dict):
            stage_id = entry.get("stage_id", entry.get("id"))
            is_rework = bool(entry.get("is_rework", False))
        else:
            stage_id, is_rework = entry, False
        if stage_id is None:
            raise WorkflowValidationError("next stage entry missing stage_id")
        result[int(stage_id)] = is_rework
    return list(result.items())


def _check_link(stage: WorkflowStage, next_stage: WorkflowStage, is_rework: bool) -> None:
    if next_stage.id == stage.id and not is_rework:
        raise WorkflowConfigError("A stage cannot be its own next stage", stage_id=stage.id)
    if not is_rework and next_stage.sequence <= stage.sequence:
        raise WorkflowConfigError(
            f"Next stage {next_stage.code} must have a greater sequence than {stage.code}",
            stage_id=stage.id,
            next_stage_id=next_stage.id,
            stage_sequence=stage.sequence,
            next_stage_sequence=next_stage.sequence,
        )


def _apply_next_stages(stage: WorkflowStage, next_stages) -> None:
    # Existing rows are reused so the (stage, next_stage) unique key never collides
    existing = {link.next_stage_id: link for link in stage.next_links}
    links = []
    for next_id, is_rework in _normalize_next_stages(next_stages):
        next_stage = get_stage(next_id)
        _check_link(stage, next_stage, is_rework)
        link = existing.get(next_id) or WorkflowStageLink(next_stage_id=next_id)
        link.is_rework = is_rework
        links.append(link)
    stage.next_links = links


def _check_all_links() -> None:
    """Re-verify the sequence invariant for every link (after reordering)."""
    for link in db.session.query(WorkflowStageLink).all():
        _check_link(link.stage, link.next_stage, link.is_rework)


# =============================================================================
# Stage administration
# =============================================================================

def create_stage(
    *,
    name: str,
    code: str,
    sequence: int,
    allowed_actions=None,
    required_permissions=None,
    next_stages=None,
    description: str | None = None,
    is_active: bool = True,
    actor_user_id: int | None = None,
) -> WorkflowStage:
    if not (name or "").strip():
        raise WorkflowValidationError("Stage name is required")
    code = _normalize_code(code)
    if get_stage_by_code(code) is not None:
        raise WorkflowValidationError(f"Stage code '{code}' already exists", code=code)

    stage = WorkflowStage(
        name=name.strip(),
        code=code,
        description=description,
        sequence=int(sequence),
        allowed_actions=_validate_actions(allowed_actions, STAGE_ACTIONS),
        is_active=bool(is_active),
        created_by_user_id=actor_user_id,
    )
    stage.required_permissions = _resolve_permission_rows(required_permissions)
    db.session.add(stage)
    db.session.flush()

    _apply_next_stages(stage, next_stages)
    audit_service.record_event(
        entity_type="workflow_stage",
        entity_id=stage.id,
        event_type="STAGE_CREATED",
        actor_user_id=actor_user_id,
        payload={"code": stage.code, "sequence": stage.sequence},
    )
    db.session.commit()
    return stage


def update_stage(stage_id: int, *, actor_user_id: int | None = None, **changes) -> WorkflowStage:
    """
    Update stage fields. Supported keys: name, code, description, sequence,
    allowed_actions, required_permissions, next_stages, is_active.
    """
    stage = get_stage(stage_id)
    unknown = set(changes) - {
        "name", "code", "description", "sequence", "allowed_actions",
        "required_permissions", "next_stages", "is_active",
    }
    if unknown:
        raise WorkflowValidationError(f"Unknown stage field(s): {', '.join(sorted(unknown))}")

    if "name" in changes:
        if not (changes["name"] or "").strip():
            raise WorkflowValidationError("Stage name is required")
        stage.name = changes["name"].strip()
    if "code" in changes:
        code = _normalize_code(changes["code"])
        other = get_stage_by_code(code)
        if other is not None and other.id != stage.id:
            raise WorkflowValidationError(f"Stage code '{code}' already exists", code=code)
        stage.code = code
    if "description" in changes:
        stage.description = changes["description"]
    if "allowed_actions" in changes:
        stage.allowed_actions = _validate_actions(changes["allowed_actions"], STAGE_ACTIONS)
    if "required_permissions" in changes:
        stage.required_permissions = _resolve_permission_rows(changes["required_permissions"])
    if "is_active" in changes:
        stage.is_active = bool(changes["is_active"])
    if "sequence" in changes:
        try:
            stage.sequence = int(changes["sequence"])
        except (TypeError, ValueError):
            raise WorkflowValidationError("sequence must be an integer", sequence=changes["sequence"])
        db.session.flush()
        _check_all_links()
    if "next_stages" in changes:
        _apply_next_stages(stage, changes["next_stages"])

    stage.updated_by_user_id = actor_user_id
    audit_service.record_event(
        entity_type="workflow_stage",
        entity_id=stage.id,
        event_type="STAGE_UPDATED",
        actor_user_id=actor_user_id,
        payload={"fields": sorted(changes)},
    )
    db.session.commit()
    return stage


def set_next_stages(stage_id: int, next_stages, *, actor_user_id: int | None = None) -> WorkflowStage:
    return update_stage(stage_id, next_stages=next_stages, actor_user_id=actor_user_id)


def deactivate_stage(stage_id: int, *, actor_user_id: int | None = None) -> WorkflowStage:
    return update_stage(stage_id, is_active=False, actor_user_id=actor_user_id)


def delete_stage(stage_id: int, *, actor_user_id: int | None = None) -> None:
    """
    Delete a stage and everything that only exists for it.

    Refused while any approval record points at the stage: in-flight records
    would be stranded and completed ones keep it for their history.
    Deactivate the stage instead.
    """
    stage = get_stage(stage_id)

    in_use = db.session.query(ApprovalRecord).filter_by(current_stage_id=stage.id)
    in_flight = in_use.filter(ApprovalRecord.status.notin_(TERMINAL_STATUSES)).count()
    if in_flight:
        raise WorkflowConfigError(
            f"Stage {stage.code} has {in_flight} in-flight record(s)",
            stage_id=stage.id,
            in_flight_records=in_flight,
        )
    if in_use.count():
        raise WorkflowConfigError(
            f"Stage {stage.code} is referenced by completed records; deactivate it instead",
            stage_id=stage.id,
        )

    db.session.query(WorkflowStageLink).filter_by(next_stage_id=stage.id).delete(synchronize_session="fetch")
    db.session.query(WorkflowTransition).filter(
        db.or_(WorkflowTransition.from_stage_id == stage.id, WorkflowTransition.to_stage_id == stage.id)
    ).delete(synchronize_session="fetch")
    db.session.query(StagePermission).filter_by(stage_id=stage.id).delete(synchronize_session="fetch")

    audit_service.record_event(
        entity_type="workflow_stage",
        entity_id=stage.id,
        event_type="STAGE_DELETED",
        actor_user_id=actor_user_id,
        payload={"code": stage.code},
    )
    stage.required_permissions = []
    db.session.delete(stage)
    db.session.commit()


def reorder_stages(stage_ids, *, actor_user_id: int | None = None) -> list[WorkflowStage]:
    """Assign sequence 10, 20, 30... in the given order; links must stay valid."""
    stages = [get_stage(int(sid)) for sid in stage_ids]
    if len({s.id for s in stages}) != len(stages):
        raise WorkflowValidationError("Duplicate stage id in ordering")

    for index, stage in enumerate(stages, start=1):
        stage.sequence = index * 10
        stage.updated_by_user_id = actor_user_id
    db.session.flush()
    try:
        _check_all_links()
    except WorkflowConfigError:
        db.session.rollback()
        raise

    db.session.commit()
    return stages


def clone_stage(stage_id: int, *, actor_user_id: int | None = None) -> WorkflowStage:
    """Inactive copy with sequence + 1; next stages and grants are not copied."""
    source = get_stage(stage_id)

    base = f"{source.code}_COPY"
    code = base
    suffix = 2
    while get_stage_by_code(code) is not None:
        code = f"{base}_{suffix}"
        suffix += 1

    clone = WorkflowStage(
        name=f"{source.name} (Copy)",
        code=code,
        description=source.description,
        sequence=source.sequence + 1,
        allowed_actions=list(source.allowed_actions or []),
        is_active=False,
        created_by_user_id=actor_user_id,
    )
    clone.required_permissions = list(source.required_permissions)
    db.session.add(clone)
    db.session.flush()
    audit_service.record_event(
        entity_type="workflow_stage",
        entity_id=clone.id,
        event_type="STAGE_CLONED",
        actor_user_id=actor_user_id,
        payload={"source_stage_id": source.id},
    )
    db.session.commit()
    return clone


# =============================================================================
# Conditions
# =============================================================================

def _validate_conditions(conditions) -> dict | None:
    if conditions in (None, {}):
        return None
    if not isinstance(conditions, dict):
        raise WorkflowValidationError("conditions must be an object")
    for field_name, expected in conditions.items():
        if isinstance(expected, dict):
            unknown = set(expected) - CONDITION_OPERATORS
            if unknown or not expected:
                raise WorkflowValidationError(
                    f"Invalid condition operator(s) for '{field_name}'",
                    field=field_name,
                    operators=sorted(unknown),
                )
            if "in" in expected and not isinstance(expected["in"], (list, tuple)):
                raise WorkflowValidationError(f"'in' condition for '{field_name}' needs a list")
    return dict(conditions)


def _validate_template(template) -> str | None:
    if template is None or not str(template).strip():
        return None
    template = str(template).strip()
    try:
        fields = notification_service.template_fields(template)
    except ValueError:
        raise WorkflowValidationError("notification_template is not a valid template")
    unknown = fields - notification_service.TEMPLATE_FIELDS
    if unknown:
        raise WorkflowValidationError(
            f"Unknown notification_template placeholder(s): {', '.join(sorted(unknown))}",
            allowed=sorted(notification_service.TEMPLATE_FIELDS),
        )
    return template


def _compare(op: str, actual, expected) -> bool:
    if op == "exists":
        present = actual is not _MISSING and actual is not None
        return present == bool(expected)
    if actual is _MISSING:
        return False
    if op == "eq":
        return actual == expected
    if op == "ne":
        return actual != expected
    if op == "in":
        return actual in expected
    if actual is None or expected is None:
        return False
    try:
        if op == "gt":
            return actual > expected
        if op == "gte":
            return actual >= expected
        if op == "lt":
            return actual < expected
        if op == "lte":
            return actual <= expected
    except TypeError:
        return False
    raise WorkflowConfigError(f"Unknown condition operator '{op}'")


def evaluate_conditions(conditions: dict | None, context: dict | None) -> bool:
    """True when every condition holds for the context (no conditions => True)."""
    if not conditions:
        return True
    context = context or {}
    for field_name, expected in conditions.items():
        actual = context.get(field_name, _MISSING)
        if isinstance(expected, dict):
            if not all(_compare(op, actual, value) for op, value in expected.items()):
                return False
        elif not _compare("eq", actual, expected):
            return False
    return True


def _pinned_values(expected):
    """Values a condition restricts a field to, or None when unbounded."""
    if not isinstance(expected, dict):
        return [expected]
    if set(expected) == {"eq"}:
        return [expected["eq"]]
    if set(expected) == {"in"}:
        return list(expected["in"])
    return None


def conditions_mutually_exclusive(first: dict | None, second: dict | None) -> bool:
    """
    Conservative check: True only when some shared field is pinned to
    disjoint value sets by both conditions.
    """
    if not first or not second:
        return False
    for field_name in set(first) & set(second):
        a = _pinned_values(first[field_name])
        b = _pinned_values(second[field_name])
        if a is None or b is None:
            continue
        if not any(value in b for value in a):
            return True
    return False


def missing_required_fields(transition: WorkflowTransition, data: dict | None) -> list[str]:
    data = data or {}
    missing = []
    for field_name in transition.required_fields or []:
        value = data.get(field_name)
        if value is None or (isinstance(value, str) and not value.strip()):
            missing.append(field_name)
    return missing


# =============================================================================
# Transitions
# =============================================================================

def _check_determinism(candidate: WorkflowTransition) -> None:
    siblings = (
        db.session.query(WorkflowTransition)
        .filter(
            WorkflowTransition.from_stage_id == candidate.from_stage_id,
            WorkflowTransition.action == candidate.action,
        )
        .all()
    )
    for other in siblings:
        if other is candidate or (candidate.id is not None and other.id == candidate.id):
            continue
        if other.to_stage_id == candidate.to_stage_id:
            if (other.conditions or None) == (candidate.conditions or None):
                raise WorkflowConfigError(
                    "Duplicate transition",
                    transition_id=other.id,
                    from_stage_id=candidate.from_stage_id,
                    action=candidate.action,
                )
            # Overlap is harmless when both lead to the same stage
            continue
        if not conditions_mutually_exclusive(other.conditions, candidate.conditions):
            raise WorkflowConfigError(
                f"Transition for action '{candidate.action}' would be ambiguous with transition {other.id}",
                conflicting_transition_id=other.id,
                from_stage_id=candidate.from_stage_id,
                action=candidate.action,
            )


def create_transition(
    *,
    from_stage_id: int,
    to_stage_id: int,
    action: str,
    conditions: dict | None = None,
    auto_transition: bool = False,
    required_fields=None,
    notification_template: str | None = None,
    actor_user_id: int | None = None,
) -> WorkflowTransition:
    get_stage(from_stage_id)
    get_stage(to_stage_id)
    action_value = _validate_actions([action], TRANSITION_ACTIONS)
    if not action_value:
        raise WorkflowValidationError("Transition action is required")

    transition = WorkflowTransition(
        from_stage_id=from_stage_id,
        to_stage_id=to_stage_id,
        action=action_value[0],
        conditions=_validate_conditions(conditions),
        auto_transition=bool(auto_transition),
        required_fields=[str(f) for f in (required_fields or [])],
        notification_template=_validate_template(notification_template),
        created_by_user_id=actor_user_id,
    )
    _check_determinism(transition)

    db.session.add(transition)
    db.session.flush()
    audit_service.record_event(
        entity_type="workflow_transition",
        entity_id=transition.id,
        event_type="TRANSITION_CREATED",
        actor_user_id=actor_user_id,
        payload={"from": from_stage_id, "to": to_stage_id, "action": transition.action},
    )
    db.session.commit()
    return transition


def update_transition(transition_id: int, *, actor_user_id: int | None = None, **changes) -> WorkflowTransition:
    transition = get_transition(transition_id)
    unknown = set(changes) - {
        "from_stage_id", "to_stage_id", "action", "conditions",
        "auto_transition", "required_fields", "notification_template",
    }
    if unknown:
        raise WorkflowValidationError(f"Unknown transition field(s): {', '.join(sorted(unknown))}")

    with db.session.no_autoflush:
        if "from_stage_id" in changes:
            transition.from_stage_id = get_stage(int(changes["from_stage_id"])).id
        if "to_stage_id" in changes:
            transition.to_stage_id = get_stage(int(changes["to_stage_id"])).id
        if "action" in changes:
            transition.action = _validate_actions([changes["action"]], TRANSITION_ACTIONS)[0]
        if "conditions" in changes:
            transition.conditions = _validate_conditions(changes["conditions"])
        if "auto_transition" in changes:
            transition.auto_transition = bool(changes["auto_transition"])
        if "required_fields" in changes:
            transition.required_fields = [str(f) for f in (changes["required_fields"] or [])]
        if "notification_template" in changes:
            transition.notification_template = _validate_template(changes["notification_template"])
        transition.updated_by_user_id = actor_user_id

        try:
            _check_determinism(transition)
        except WorkflowConfigError:
            db.session.rollback()
            raise

    audit_service.record_event(
        entity_type="workflow_transition",
        entity_id=transition.id,
        event_type="TRANSITION_UPDATED",
        actor_user_id=actor_user_id,
        payload={"fields": sorted(changes)},
    )
    db.session.commit()
    return transition


def delete_transition(transition_id: int, *, actor_user_id: int | None = None) -> None:
    transition = get_transition(transition_id)
    audit_service.record_event(
        entity_type="workflow_transition",
        entity_id=transition.id,
        event_type="TRANSITION_DELETED",
        actor_user_id=actor_user_id,
    )
    db.session.delete(transition)
    db.session.commit()


def find_transition(from_stage_id: int, action: str, context: dict | None = None) -> WorkflowTransition:
    """
    The transition for (from_stage, action) whose conditions hold.

    Several matches are allowed only when they share one target stage; the
    most specific (conditioned) one wins, then the oldest. Raises
    InvalidTransitionError when none applies.
    """
    candidates = (
        db.session.query(WorkflowTransition)
        .filter_by(from_stage_id=from_stage_id, action=action)
        .order_by(WorkflowTransition.id.asc())
        .all()
    )
    matches = [t for t in candidates if evaluate_conditions(t.conditions, context)]
    if not matches:
        raise InvalidTransitionError(
            f"No '{action}' transition from stage {from_stage_id}",
            from_stage_id=from_stage_id,
            action=action,
        )
    if len({t.to_stage_id for t in matches}) > 1:
        raise WorkflowConfigError(
            f"Ambiguous '{action}' transitions from stage {from_stage_id}",
            from_stage_id=from_stage_id,
            action=action,
            transition_ids=[t.id for t in matches],
        )
    transition = sorted(matches, key=lambda t: (not t.conditions, t.id))[0]
    if not transition.to_stage.is_active:
        raise InvalidTransitionError(
            f"Target stage {transition.to_stage.code} is inactive",
            from_stage_id=from_stage_id,
            to_stage_id=transition.to_stage_id,
            action=action,
        )
    return transition


def resolve_transition(from_stage_id: int, action: str, context: dict | None = None) -> WorkflowStage:
    return find_transition(from_stage_id, action, context).to_stage


def auto_transition_candidates(stage_id: int, context: dict | None = None) -> list[WorkflowTransition]:
    """Auto transitions from a stage whose conditions hold and required fields are present."""
    transitions = (
        db.session.query(WorkflowTransition)
        .filter_by(from_stage_id=stage_id, auto_transition=True)
        .order_by(WorkflowTransition.id.asc())
        .all()
    )
    return [
        t for t in transitions
        if t.to_stage.is_active
        and evaluate_conditions(t.conditions, context)
        and not missing_required_fields(t, context)
    ]


# =============================================================================
# Authorization against the graph
# =============================================================================

def authorize_stage_action(
    actor,
    stage: WorkflowStage,
    action: str,
    *,
    resource: str | None = None,
) -> None:
    """
    Stage must be active and allow the action (complete is a transition-only
    action); actor must hold the action permission and every permission the
    stage requires.
    """
    if action not in ACTION_PERMISSIONS:
        raise WorkflowValidationError(f"Unknown action '{action}'", action=action)
    if not stage.is_active:
        raise InvalidTransitionError(
            f"Stage {stage.code} is inactive", stage_id=stage.id, action=action
        )
    if action != "complete" and not stage.allows(action):
        raise InvalidTransitionError(
            f"Action '{action}' is not allowed in stage {stage.code}",
            stage_id=stage.id,
            action=action,
            allowed_actions=list(stage.allowed_actions or []),
        )

    codes = [ACTION_PERMISSIONS[action]] + stage.required_permission_codes
    permission_service.ensure_permissions(actor, stage.id, codes, resource=resource)


def validate_action(actor, stage_id: int, action: str, data: dict | None = None) -> dict:
    """
    Dry-run an action: returns the resolved transition and next stage, or
    raises the error the real action would raise. Actions without a
    configured transition (edit, qc_check, receive) stay on the stage.
    """
    stage = get_stage(stage_id)
    authorize_stage_action(actor, stage, action)

    has_transitions = (
        db.session.query(WorkflowTransition.id)
        .filter_by(from_stage_id=stage_id, action=action)
        .first()
        is not None
    )
    if not has_transitions and action in {"edit", "qc_check", "receive"}:
        return {"valid": True, "action": action, "transition": None, "next_stage": stage.to_dict()}

    transition = find_transition(stage_id, action, data)
    missing = missing_required_fields(transition, data)
    if missing:
        raise WorkflowValidationError(
            f"Missing required field(s): {', '.join(missing)}",
            transition_id=transition.id,
            missing_fields=missing,
        )
    return {
        "valid": True,
        "action": action,
        "transition": transition.to_dict(),
        "next_stage": transition.to_stage.to_dict(),
    }


# =============================================================================
# History
# =============================================================================

def move_record_to_stage(
    record,
    to_stage: WorkflowStage,
    *,
    action: str,
    actor_user_id: int | None,
    transition_id: int | None = None,
    remarks: str | None = None,
) -> WorkflowHistoryEntry:
    """Set the record's stage and append a history row (flush, no commit)."""
    from_stage = record.current_stage if record.current_stage_id else None
    entry = WorkflowHistoryEntry(
        record_id=record.id,
        from_stage_id=from_stage.id if from_stage else None,
        from_stage_code=from_stage.code if from_stage else None,
        from_stage_name=from_stage.name if from_stage else None,
        to_stage_id=to_stage.id,
        to_stage_code=to_stage.code,
        to_stage_name=to_stage.name,
        action=action,
        transition_id=transition_id,
        actor_user_id=actor_user_id,
        remarks=remarks,
        occurred_at=utcnow(),
    )
    record.current_stage = to_stage
    db.session.add(entry)
    db.session.flush()
    return entry


def get_record_history(record_id: int) -> list[WorkflowHistoryEntry]:
    return (
        db.session.query(WorkflowHistoryEntry)
        .filter_by(record_id=record_id)
        .order_by(WorkflowHistoryEntry.id.asc())
        .all()
    )


# =============================================================================
# Graph rendering
# =============================================================================

def workflow_graph(fmt: str = "json", include_inactive: bool = False):
    """Nodes/edges as a dict, or a Mermaid flowchart string when fmt == "mermaid"."""
    stages = list_stages(include_inactive=include_inactive)
    stage_ids = {s.id for s in stages}
    transitions = [
        t for t in list_transitions()
        if t.from_stage_id in stage_ids and t.to_stage_id in stage_ids
    ]

    nodes = [
        {
            "id": s.id,
            "code": s.code,
            "name": s.name,
            "sequence": s.sequence,
            "allowed_actions": list(s.allowed_actions or []),
            "is_active": s.is_active,
        }
        for s in stages
    ]
    edges = [
        {
            "from": link.stage_id,
            "to": link.next_stage_id,
            "kind": "rework" if link.is_rework else "next",
        }
        for s in stages
        for link in s.next_links
        if link.next_stage_id in stage_ids
    ]
    edges.extend(
        {
            "from": t.from_stage_id,
            "to": t.to_stage_id,
            "kind": "transition",
            "action": t.action,
            "transition_id": t.id,
            "conditional": bool(t.conditions),
        }
        for t in transitions
    )

    if fmt == "json":
        return {"nodes": nodes, "edges": edges}
    if fmt != "mermaid":
        raise WorkflowValidationError(f"Unknown graph format '{fmt}'", format=fmt)

    codes = {s.id: s.code for s in stages}
    lines = ["flowchart TD"]
    for node in nodes:
        lines.append(f'    {node["code"]}["{node["name"]}"]')
    for edge in edges:
        src, dst = codes[edge["from"]], codes[edge["to"]]
        if edge["kind"] == "transition":
            label = edge["action"] + ("*" if edge["conditional"] else "")
            lines.append(f"    {src} -->|{label}| {dst}")
        elif edge["kind"] == "rework":
            lines.append(f"    {src} -.->|rework| {dst}")
    return "\n".join(lines)


# =============================================================================
# Default configuration
# =============================================================================

DEFAULT_STAGES = [
    # code, name, sequence, allowed_actions
    ("QC_PENDING", "QC Pending", 10, ["edit", "qc_check", "cancel"]),
    ("QC_MANAGER_REVIEW", "QC Manager Review", 20, ["approve", "reject", "return"]),
    ("QC_COMPLETED", "QC Completed", 30, []),
    ("QC_REJECTED", "QC Rejected", 30, []),
    ("WAREHOUSE_REVIEW", "Warehouse Review", 40, ["edit", "receive", "cancel"]),
    ("WAREHOUSE_MANAGER_REVIEW", "Warehouse Manager Review", 50, ["approve", "reject", "return"]),
    ("INVENTORY_READY", "Inventory Ready", 60, []),
    ("WAREHOUSE_REJECTED", "Warehouse Rejected", 60, []),
]

DEFAULT_TRANSITIONS = [
    # from, action, to
    ("QC_PENDING", "complete", "QC_MANAGER_REVIEW"),
    ("QC_MANAGER_REVIEW", "approve", "QC_COMPLETED"),
    ("QC_MANAGER_REVIEW", "reject", "QC_REJECTED"),
    ("QC_MANAGER_REVIEW", "return", "QC_PENDING"),
    ("WAREHOUSE_REVIEW", "complete", "WAREHOUSE_MANAGER_REVIEW"),
    ("WAREHOUSE_MANAGER_REVIEW", "approve", "INVENTORY_READY"),
    ("WAREHOUSE_MANAGER_REVIEW", "reject", "WAREHOUSE_REJECTED"),
    ("WAREHOUSE_MANAGER_REVIEW", "return", "WAREHOUSE_REVIEW"),
]


def seed_default_workflow(actor_user_id: int | None = None) -> dict:
    """
    Create the standard QC -> warehouse stage graph if missing.

    Idempotent: existing stages (by code) and transitions are left alone.
    """
    created_stages = 0
    created_transitions = 0
    by_code: dict[str, WorkflowStage] = {}

    for code, name, sequence, actions in DEFAULT_STAGES:
        stage = get_stage_by_code(code)
        if stage is None:
            stage = WorkflowStage(
                name=name,
                code=code,
                sequence=sequence,
                allowed_actions=list(actions),
                is_active=True,
                created_by_user_id=actor_user_id,
            )
            db.session.add(stage)
            created_stages += 1
        by_code[code] = stage
    db.session.flush()

    for from_code, action, to_code in DEFAULT_TRANSITIONS:
        source, target = by_code[from_code], by_code[to_code]
        is_rework = target.sequence <= source.sequence
        if target.id not in source.next_stage_ids:
            source.next_links.append(WorkflowStageLink(next_stage_id=target.id, is_rework=is_rework))

        existing = (
            db.session.query(WorkflowTransition)
            .filter_by(from_stage_id=source.id, action=action)
            .first()
        )
        if existing is None:
            db.session.add(WorkflowTransition(
                from_stage_id=source.id,
                to_stage_id=target.id,
                action=action,
                required_fields=["remarks"] if action in {"reject", "return"} else [],
                created_by_user_id=actor_user_id,
            ))
            created_transitions += 1

    db.session.commit()
    return {"stages": created_stages, "transitions": created_transitions}
