from __future__ import annotations

from ..extensions import db
from pharmaflow.time_utils import is_expired, to_utc_z, utcnow


# Valid stage actions and transition actions
STAGE_ACTIONS = ("edit", "approve", "reject", "return", "cancel", "receive", "qc_check")
TRANSITION_ACTIONS = ("approve", "reject", "return", "cancel", "receive", "qc_check", "complete")


stage_required_permissions = db.Table(
    "workflow_stage_required_permissions",
    db.Column("stage_id", db.Integer, db.ForeignKey("workflow_stages.id"), primary_key=True),
    db.Column("permission_id", db.Integer, db.ForeignKey("permissions.id"), primary_key=True),
)

stage_permission_items = db.Table(
    "stage_permission_items",
    db.Column("stage_permission_id", db.Integer, db.ForeignKey("stage_permissions.id"), primary_key=True),
    db.Column("permission_id", db.Integer, db.ForeignKey("permissions.id"), primary_key=True),
)


class WorkflowStage(db.Model):
    """
    A named step in the configurable workflow graph (e.g. "QC Pending").

    WHY: Which actions are legal, and for whom, is data rather than code.
    Stages are process-wide configuration; in-flight approval records point at
    them but never mutate them.

    INVARIANT: next stages must carry a strictly greater sequence unless the
    link is flagged as a rework path (WorkflowStageLink.is_rework).
    """
    __tablename__ = "workflow_stages"
    __table_args__ = (
        db.Index("ix_workflow_stages_sequence", "sequence"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(128), nullable=False)
    code = db.Column(db.String(64), nullable=False, unique=True, index=True)
    description = db.Column(db.Text, nullable=True)
    sequence = db.Column(db.Integer, nullable=False, default=1)

    # Subset of STAGE_ACTIONS
    allowed_actions = db.Column(db.JSON, nullable=False, default=list)

    is_active = db.Column(db.Boolean, nullable=False, default=True)

    created_by_user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)
    updated_by_user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), nullable=True, onupdate=utcnow)

    required_permissions = db.relationship(
        "Permission",
        secondary=stage_required_permissions,
        lazy="selectin",
        order_by="Permission.code",
    )
    next_links = db.relationship(
        "WorkflowStageLink",
        foreign_keys="WorkflowStageLink.stage_id",
        back_populates="stage",
        cascade="all, delete-orphan",
        lazy="selectin",
    )

    @property
    def required_permission_codes(self) -> list[str]:
        return [p.code for p in self.required_permissions]

    @property
    def next_stage_ids(self) -> list[int]:
        return [link.next_stage_id for link in self.next_links]

    def allows(self, action: str) -> bool:
        return action in (self.allowed_actions or [])

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "code": self.code,
            "description": self.description,
            "sequence": self.sequence,
            "allowed_actions": list(self.allowed_actions or []),
            "required_permissions": self.required_permission_codes,
            "next_stages": [
                {"stage_id": link.next_stage_id, "is_rework": link.is_rework}
                for link in self.next_links
            ],
            "is_active": self.is_active,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }


class WorkflowStageLink(db.Model):
    """Directed edge stage -> next stage; rework links may point backwards."""
    __tablename__ = "workflow_stage_next_stages"
    __table_args__ = (
        db.UniqueConstraint("stage_id", "next_stage_id", name="uq_stage_next_stage"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    stage_id = db.Column(db.Integer, db.ForeignKey("workflow_stages.id"), nullable=False, index=True)
    next_stage_id = db.Column(db.Integer, db.ForeignKey("workflow_stages.id"), nullable=False, index=True)
    is_rework = db.Column(db.Boolean, nullable=False, default=False)

    stage = db.relationship("WorkflowStage", foreign_keys=[stage_id], back_populates="next_links")
    next_stage = db.relationship("WorkflowStage", foreign_keys=[next_stage_id])


class WorkflowTransition(db.Model):
    """
    A configured (from_stage, action) -> to_stage rule.

    conditions: optional JSON mapping evaluated against a snapshot of the
    acting record, e.g. {"rejected_items": 0} or {"approved_items": {"gt": 0}}.
    auto_transition: offered as a candidate without an explicit user action
    once the conditions hold and every required field is present.
    """
    __tablename__ = "workflow_transitions"
    __table_args__ = (
        db.Index("ix_workflow_transitions_from_action", "from_stage_id", "action"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    from_stage_id = db.Column(db.Integer, db.ForeignKey("workflow_stages.id"), nullable=False, index=True)
    to_stage_id = db.Column(db.Integer, db.ForeignKey("workflow_stages.id"), nullable=False, index=True)
    action = db.Column(db.String(32), nullable=False, index=True)

    conditions = db.Column(db.JSON, nullable=True)
    auto_transition = db.Column(db.Boolean, nullable=False, default=False)
    required_fields = db.Column(db.JSON, nullable=False, default=list)
    notification_template = db.Column(db.String(255), nullable=True)

    created_by_user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)
    updated_by_user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), nullable=True, onupdate=utcnow)

    from_stage = db.relationship("WorkflowStage", foreign_keys=[from_stage_id])
    to_stage = db.relationship("WorkflowStage", foreign_keys=[to_stage_id])

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "from_stage_id": self.from_stage_id,
            "to_stage_id": self.to_stage_id,
            "action": self.action,
            "conditions": self.conditions,
            "auto_transition": self.auto_transition,
            "required_fields": list(self.required_fields or []),
            "notification_template": self.notification_template,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }


class StagePermission(db.Model):
    """
    Per-user, per-stage capability grant.

    An inactive or expired grant is treated as absent. Expiry is compared to
    the wall clock at check time, never to when the grant was loaded.
    """
    __tablename__ = "stage_permissions"
    __table_args__ = (
        db.UniqueConstraint("user_id", "stage_id", name="uq_stage_permissions_user_stage"),
        db.Index("ix_stage_permissions_stage_active", "stage_id", "is_active"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)
    stage_id = db.Column(db.Integer, db.ForeignKey("workflow_stages.id"), nullable=False, index=True)

    expires_at = db.Column(db.DateTime(timezone=True), nullable=True, index=True)
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    remarks = db.Column(db.Text, nullable=True)

    assigned_by_user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False)
    assigned_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)
    revoked_by_user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)
    revoked_at = db.Column(db.DateTime(timezone=True), nullable=True)

    permissions = db.relationship(
        "Permission",
        secondary=stage_permission_items,
        lazy="selectin",
        order_by="Permission.code",
    )
    user = db.relationship("User", foreign_keys=[user_id])
    stage = db.relationship("WorkflowStage")

    @property
    def permission_codes(self) -> set[str]:
        return {p.code for p in self.permissions}

    def is_valid(self, now=None) -> bool:
        return bool(self.is_active) and not is_expired(self.expires_at, now)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "stage_id": self.stage_id,
            "permissions": sorted(self.permission_codes),
            "expires_at": to_utc_z(self.expires_at),
            "is_active": self.is_active,
            "is_valid": self.is_valid(),
            "remarks": self.remarks,
            "assigned_by_user_id": self.assigned_by_user_id,
            "assigned_at": to_utc_z(self.assigned_at),
            "revoked_by_user_id": self.revoked_by_user_id,
            "revoked_at": to_utc_z(self.revoked_at),
        }


class WorkflowHistoryEntry(db.Model):
    """
    Stage change history for an approval record.

    IMMUTABLE: stage code and name are snapshotted at transition time so that
    later edits to a stage never rewrite a record's history.
    """
    __tablename__ = "workflow_history"
    __table_args__ = (
        db.Index("ix_workflow_history_record", "record_id", "occurred_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    record_id = db.Column(db.Integer, db.ForeignKey("approval_records.id"), nullable=False)

    from_stage_id = db.Column(db.Integer, nullable=True)
    from_stage_code = db.Column(db.String(64), nullable=True)
    from_stage_name = db.Column(db.String(128), nullable=True)
    to_stage_id = db.Column(db.Integer, nullable=False)
    to_stage_code = db.Column(db.String(64), nullable=False)
    to_stage_name = db.Column(db.String(128), nullable=False)

    action = db.Column(db.String(32), nullable=False)
    transition_id = db.Column(db.Integer, nullable=True)
    actor_user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)
    remarks = db.Column(db.Text, nullable=True)
    occurred_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "record_id": self.record_id,
            "from_stage": {
                "id": self.from_stage_id,
                "code": self.from_stage_code,
                "name": self.from_stage_name,
            } if self.from_stage_id else None,
            "to_stage": {
                "id": self.to_stage_id,
                "code": self.to_stage_code,
                "name": self.to_stage_name,
            },
            "action": self.action,
            "transition_id": self.transition_id,
            "actor_user_id": self.actor_user_id,
            "remarks": self.remarks,
            "occurred_at": to_utc_z(self.occurred_at),
        }
