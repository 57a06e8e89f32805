from __future__ import annotations

from ..extensions import db
from pharmaflow.time_utils import to_utc_z, utcnow


class AuditLog(db.Model):
    """
    Append-only record of every approval record mutation.

    Written in the same transaction as the change it describes (flush, never
    commit), so a rolled back operation leaves no audit row behind.
    """
    __tablename__ = "audit_logs"
    __table_args__ = (
        db.Index("ix_audit_logs_entity", "entity_type", "entity_id"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    entity_type = db.Column(db.String(32), nullable=False)
    entity_id = db.Column(db.Integer, nullable=False)
    event_type = db.Column(db.String(64), nullable=False, index=True)
    actor_user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)
    payload = db.Column(db.JSON, nullable=True)
    occurred_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "event_type": self.event_type,
            "actor_user_id": self.actor_user_id,
            "payload": self.payload,
            "occurred_at": to_utc_z(self.occurred_at),
        }


class Notification(db.Model):
    """Built-in notification sink: one row per status change, per recipient."""
    __tablename__ = "notifications"
    __table_args__ = (
        db.Index("ix_notifications_user_read", "user_id", "is_read"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)
    record_id = db.Column(db.Integer, db.ForeignKey("approval_records.id"), nullable=False, index=True)
    status = db.Column(db.String(32), nullable=False)
    message = db.Column(db.Text, nullable=False)
    is_read = db.Column(db.Boolean, nullable=False, default=False)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "record_id": self.record_id,
            "status": self.status,
            "message": self.message,
            "is_read": self.is_read,
            "created_at": to_utc_z(self.created_at),
        }


class DocumentSequence(db.Model):
    """
    Atomic per-prefix, per-month record number counters.

    WHY: Prevent two concurrent record generations from drawing the same
    QC-YYYYMM-NNNN / WA-YYYYMM-NNNN number.
    """
    __tablename__ = "document_sequences"
    __table_args__ = (
        db.UniqueConstraint("prefix", "period", name="uq_doc_sequences_prefix_period"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    prefix = db.Column(db.String(16), nullable=False)
    period = db.Column(db.String(6), nullable=False)  # YYYYMM
    next_number = db.Column(db.Integer, nullable=False, default=1)
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)
