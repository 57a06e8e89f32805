# Overview: Service-layer operations for line-item decisions; encapsulates business logic and database work.

"""
Line-Item Decision Service

RULES:
- rejected: decided_qty is forced to 0, whatever the caller sent
- approved: decided_qty defaults to expected_qty when omitted
- approved / partial: 0 <= decided_qty <= expected_qty
- partial: decided_qty is required
- Re-deciding an item overwrites the previous decision (who/when restamped)
- Items are editable only while the record is pending or in_progress
- Storage placement (location and conditions) is taken on warehouse approval
  items only; supplied keys are merged over what the item already holds
"""

from __future__ import annotations

from ..models import LineItemDecision
from ..models.approvals import (
    DECISION_APPROVED,
    DECISION_PARTIAL,
    DECISION_REJECTED,
)
from pharmaflow.time_utils import utcnow
from . import approval_service
from .concurrency import atomic, commit_or_conflict
from .errors import InvalidItemReferenceError, QuantityOutOfRangeError, WorkflowValidationError


DECIDABLE = (DECISION_APPROVED, DECISION_REJECTED, DECISION_PARTIAL)

LOCATION_FIELDS = ("zone", "rack", "shelf", "bin")
CONDITION_FIELDS = ("temperature", "humidity", "light_condition", "special_requirements")
RANGE_FIELDS = ("min", "max", "unit")
LIGHT_CONDITIONS = ("dark", "normal", "protected")


def _coerce_qty(value, item_id: int | None) -> int | None:
    if value is None:
        return None
    if isinstance(value, bool):
        raise WorkflowValidationError("decided_qty must be a whole number", item_id=item_id, decided_qty=value)
    try:
        qty = int(value)
    except (TypeError, ValueError):
        raise WorkflowValidationError("decided_qty must be a whole number", item_id=item_id, decided_qty=value)
    if qty != value and str(qty) != str(value).strip():
        raise WorkflowValidationError("decided_qty must be a whole number", item_id=item_id, decided_qty=value)
    return qty


def resolve_decided_qty(decision: str, expected_qty: int, decided_qty=None, *, item_id: int | None = None) -> int:
    """Quantity to store for a decision, or raise QuantityOutOfRangeError."""
    if decision not in DECIDABLE:
        raise WorkflowValidationError(
            f"Invalid decision '{decision}'. Must be one of: {', '.join(DECIDABLE)}",
            item_id=item_id,
            decision=decision,
        )

    if decision == DECISION_REJECTED:
        return 0

    qty = _coerce_qty(decided_qty, item_id)
    if qty is None:
        if decision == DECISION_APPROVED:
            return expected_qty
        raise QuantityOutOfRangeError(
            "Partial decisions need a decided quantity",
            item_id=item_id,
            expected_qty=expected_qty,
            decided_qty=None,
        )

    if qty < 0 or qty > expected_qty:
        raise QuantityOutOfRangeError(
            f"decided_qty must be between 0 and {expected_qty}",
            item_id=item_id,
            expected_qty=expected_qty,
            decided_qty=qty,
        )
    return qty


def apply_decision(
    item: LineItemDecision,
    *,
    decision: str,
    decided_qty=None,
    remarks: str | None = None,
    checks: dict | None = None,
    actor_user_id: int,
) -> LineItemDecision:
    """Validate and stamp one item. No aggregates, no commit."""
    qty = resolve_decided_qty(decision, item.expected_qty, decided_qty, item_id=item.id)
    if checks is not None and not isinstance(checks, dict):
        raise WorkflowValidationError("checks must be an object", item_id=item.id)

    item.decision = decision
    item.decided_qty = qty
    item.remarks = remarks
    if checks is not None:
        item.checks = dict(checks)
    item.decided_by_user_id = actor_user_id
    item.decided_at = utcnow()
    return item


def _unknown_keys(value: dict, allowed, field_name: str, item_id: int) -> None:
    unknown = sorted(set(value) - set(allowed))
    if unknown:
        raise WorkflowValidationError(
            f"Unknown {field_name} field(s): {', '.join(unknown)}",
            item_id=item_id,
            allowed=list(allowed),
        )


def validate_storage_location(location, item_id: int) -> dict:
    if not isinstance(location, dict):
        raise WorkflowValidationError("storage_location must be an object", item_id=item_id)
    _unknown_keys(location, LOCATION_FIELDS, "storage_location", item_id)
    cleaned = {}
    for key, value in location.items():
        if value is None:
            cleaned[key] = None
            continue
        if not isinstance(value, (str, int)) or isinstance(value, bool) or not str(value).strip():
            raise WorkflowValidationError(f"storage_location.{key} must be a non-empty string", item_id=item_id)
        cleaned[key] = str(value).strip()
    return cleaned


def _validate_range(name: str, value, item_id: int) -> dict:
    if not isinstance(value, dict):
        raise WorkflowValidationError(f"storage_conditions.{name} must be an object", item_id=item_id)
    _unknown_keys(value, RANGE_FIELDS, f"storage_conditions.{name}", item_id)
    for bound in ("min", "max"):
        number = value.get(bound)
        if number is not None and (isinstance(number, bool) or not isinstance(number, (int, float))):
            raise WorkflowValidationError(f"storage_conditions.{name}.{bound} must be a number", item_id=item_id)
    low, high = value.get("min"), value.get("max")
    if low is not None and high is not None and low > high:
        raise WorkflowValidationError(
            f"storage_conditions.{name}.min must not exceed max", item_id=item_id, min=low, max=high,
        )
    return dict(value)


def validate_storage_conditions(conditions, item_id: int) -> dict:
    """temperature/humidity are {min, max, unit}; light_condition is dark, normal or protected."""
    if not isinstance(conditions, dict):
        raise WorkflowValidationError("storage_conditions must be an object", item_id=item_id)
    _unknown_keys(conditions, CONDITION_FIELDS, "storage_conditions", item_id)
    cleaned = {}
    for key, value in conditions.items():
        if value is None:
            cleaned[key] = None
        elif key in ("temperature", "humidity"):
            cleaned[key] = _validate_range(key, value, item_id)
        elif key == "light_condition":
            if value not in LIGHT_CONDITIONS:
                raise WorkflowValidationError(
                    f"light_condition must be one of: {', '.join(LIGHT_CONDITIONS)}",
                    item_id=item_id,
                    light_condition=value,
                )
            cleaned[key] = value
        else:
            cleaned[key] = str(value)
    return cleaned


def apply_storage_placement(record, item: LineItemDecision, *, storage_location=None, storage_conditions=None) -> None:
    """Merge placement details into the item. No commit."""
    if storage_location is None and storage_conditions is None:
        return
    if not record.accepts_storage_placement:
        raise WorkflowValidationError(
            "Storage placement is only recorded on warehouse approvals",
            record_id=record.id,
            record_type=record.record_type,
        )
    if storage_location is not None:
        location = validate_storage_location(storage_location, item.id)
        item.storage_location = {**(item.storage_location or {}), **location}
    if storage_conditions is not None:
        conditions = validate_storage_conditions(storage_conditions, item.id)
        item.storage_conditions = {**(item.storage_conditions or {}), **conditions}


def find_item(record, item_id: int) -> LineItemDecision:
    for item in record.items:
        if item.id == item_id:
            return item
    raise InvalidItemReferenceError(
        "Line item does not belong to this record",
        record_id=record.id,
        invalid_item_ids=[item_id],
    )


@atomic
def decide_item(
    record_id: int,
    item_id: int,
    *,
    decision: str,
    actor,
    decided_qty=None,
    remarks: str | None = None,
    checks: dict | None = None,
    storage_location: dict | None = None,
    storage_conditions: dict | None = None,
    expected_version: int | None = None,
) -> LineItemDecision:
    """
    Record a decision on one line item and roll it up into the record.

    Requires the record's decision action (qc_check / receive) on its current
    stage. The first decision moves the record from pending to in_progress.
    Warehouse approvals may also carry storage placement for the item.
    """
    record = approval_service.load_for_update(record_id, expected_version)
    approval_service.ensure_editable(record)
    approval_service.authorize(actor, record, record.decision_action)

    item = find_item(record, int(item_id))
    apply_decision(
        item,
        decision=decision,
        decided_qty=decided_qty,
        remarks=remarks,
        checks=checks,
        actor_user_id=actor.user_id,
    )
    apply_storage_placement(
        record, item, storage_location=storage_location, storage_conditions=storage_conditions,
    )
    previous = approval_service.after_item_change(
        record,
        actor.user_id,
        event_type="ITEM_DECIDED",
        payload={"item_id": item.id, "decision": item.decision, "decided_qty": item.decided_qty},
    )
    commit_or_conflict(record.id)

    approval_service.notify_if_changed(record.id, previous, record.status, actor.user_id)
    return item
