# Overview: Fire-and-forget status change notifications, sent after the owning transaction commits.

from __future__ import annotations

from string import Formatter

from flask import current_app

from ..extensions import db
from ..models import ApprovalRecord, Notification
from .errors import WorkflowValidationError


STATUS_MESSAGES = {
    "pending": "{number} was created and awaits inspection",
    "in_progress": "{number} is in progress",
    "submitted": "{number} was submitted for manager approval",
    "approved": "{number} was approved",
    "rejected": "{number} was rejected",
}

# Non-status events worth telling people about
EVENT_MESSAGES = {
    "level_approved": "{number} passed approval level {level}, awaiting level {next_level}",
}

# Placeholders a transition's notification_template may use
TEMPLATE_FIELDS = frozenset({"number", "status", "stage", "level", "next_level"})


def template_fields(template: str) -> set[str]:
    """Placeholder names in a message template; raises ValueError on bad syntax."""
    return {name for _, name, _, _ in Formatter().parse(template) if name}


def _recipients(record: ApprovalRecord, actor_user_id: int | None) -> list[int]:
    candidates = [record.assigned_to_user_id, record.submitted_by_user_id, record.created_by_user_id]
    recipients = []
    for user_id in candidates:
        if user_id is None or user_id == actor_user_id or user_id in recipients:
            continue
        recipients.append(user_id)
    return recipients


def render_message(
    record: ApprovalRecord,
    status: str,
    *,
    template: str | None = None,
    event: str | None = None,
    **fields,
) -> str:
    """Transition template first, then the event or status default."""
    values = {
        "number": record.record_number,
        "status": status,
        "stage": record.current_stage.name if record.current_stage else "",
        "level": "",
        "next_level": "",
    }
    values.update(fields)
    default = EVENT_MESSAGES.get(event) or STATUS_MESSAGES.get(status, "{number} is now {status}")
    if template:
        try:
            return template.format(**values)
        except (KeyError, IndexError, ValueError):
            current_app.logger.warning(
                "Unusable notification template %r for record %s; using default", template, record.id
            )
    return default.format(**values)


def _store_notifications(record: ApprovalRecord, status: str, actor_user_id: int | None, **message_options) -> int:
    message = render_message(record, status, **message_options)
    recipients = _recipients(record, actor_user_id)
    for user_id in recipients:
        db.session.add(Notification(
            user_id=user_id,
            record_id=record.id,
            status=status,
            message=message,
        ))
    db.session.commit()
    return len(recipients)


def notify_status_change(
    record_id: int,
    status: str,
    actor_user_id: int | None = None,
    *,
    template: str | None = None,
    event: str | None = None,
    **fields,
) -> None:
    """
    Deliver a record change to the configured sink.

    Must be called after commit. Failures are logged and never propagate:
    the workflow change already happened. A configured sink receives
    (record_id, status, actor_user_id); the built-in sink stores one
    Notification per recipient, worded by the transition template when set.
    """
    try:
        sink = current_app.config.get("APPROVAL_NOTIFICATION_SINK")
        if sink is not None:
            sink(record_id=record_id, status=status, actor_user_id=actor_user_id)
            return

        record = db.session.get(ApprovalRecord, record_id)
        if record is None:
            return
        _store_notifications(record, status, actor_user_id, template=template, event=event, **fields)
    except Exception:
        db.session.rollback()
        current_app.logger.exception(
            "Notification failed for record %s (status=%s)", record_id, status
        )


def list_notifications(user_id: int, unread_only: bool = False, limit: int = 100) -> list[Notification]:
    query = db.session.query(Notification).filter_by(user_id=user_id)
    if unread_only:
        query = query.filter(Notification.is_read.is_(False))
    return query.order_by(Notification.id.desc()).limit(limit).all()


def mark_read(user_id: int, notification_ids) -> int:
    """Mark the user's own notifications read; returns how many changed."""
    try:
        ids = {int(n) for n in (notification_ids or [])}
    except (TypeError, ValueError):
        raise WorkflowValidationError("notification_ids must be integers")
    if not ids:
        return 0
    changed = (
        db.session.query(Notification)
        .filter(Notification.user_id == user_id, Notification.id.in_(ids), Notification.is_read.is_(False))
        .update({Notification.is_read: True}, synchronize_session=False)
    )
    db.session.commit()
    return changed
