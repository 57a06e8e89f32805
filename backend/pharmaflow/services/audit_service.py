# Overview: Append-only audit trail for approval records and workflow configuration.

from __future__ import annotations

from ..extensions import db
from ..models import AuditLog
from pharmaflow.time_utils import utcnow


def record_event(
    *,
    entity_type: str,
    entity_id: int,
    event_type: str,
    actor_user_id: int | None = None,
    payload: dict | None = None,
) -> AuditLog:
    """
    Append an audit row to the current transaction.

    - No domain logic here.
    - Flushes, never commits: the caller's commit (or rollback) decides.
    """
    entry = AuditLog(
        entity_type=entity_type,
        entity_id=entity_id,
        event_type=event_type,
        actor_user_id=actor_user_id,
        payload=payload,
        occurred_at=utcnow(),
    )
    db.session.add(entry)
    db.session.flush()
    return entry


def list_events(*, entity_type: str, entity_id: int) -> list[AuditLog]:
    return (
        db.session.query(AuditLog)
        .filter_by(entity_type=entity_type, entity_id=entity_id)
        .order_by(AuditLog.id.asc())
        .all()
    )
