from __future__ import annotations

from sqlalchemy import event

from ..extensions import db
from pharmaflow.time_utils import to_utc_z, utcnow


# Record statuses
STATUS_PENDING = "pending"
STATUS_IN_PROGRESS = "in_progress"
STATUS_SUBMITTED = "submitted"      # pending manager approval
STATUS_APPROVED = "approved"        # completed
STATUS_REJECTED = "rejected"

RECORD_STATUSES = (STATUS_PENDING, STATUS_IN_PROGRESS, STATUS_SUBMITTED, STATUS_APPROVED, STATUS_REJECTED)
TERMINAL_STATUSES = frozenset({STATUS_APPROVED, STATUS_REJECTED})

# Line item decisions
DECISION_PENDING = "pending"
DECISION_APPROVED = "approved"
DECISION_REJECTED = "rejected"
DECISION_PARTIAL = "partial"

LINE_DECISIONS = (DECISION_PENDING, DECISION_APPROVED, DECISION_REJECTED, DECISION_PARTIAL)

PRIORITIES = ("low", "medium", "high", "urgent")

# Manager actions
MANAGER_APPROVE = "approve"
MANAGER_REJECT = "reject"


class ApprovalRecord(db.Model):
    """
    Document aggregating per product/batch decisions (QC or Warehouse Approval).

    LIFECYCLE:
        pending -> in_progress -> submitted -> approved | rejected
        submitted -> in_progress (returned for rework, opens a new approval round)

    DERIVED COUNTS: total_items / approved_items / rejected_items / pending_items
    are never edited directly. approval_service.recompute_aggregates() derives
    them from the full item list inside the same transaction as every item
    mutation. Partial decisions count toward approved_items.

    CONCURRENCY: version_id is SQLAlchemy's optimistic lock column; every
    mutation touches the row so concurrent item edits always collide.
    """
    __tablename__ = "approval_records"
    __table_args__ = (
        db.UniqueConstraint("record_type", "upstream_type", "upstream_id", name="uq_approval_records_upstream"),
        db.UniqueConstraint("record_number", name="uq_approval_records_number"),
        db.Index("ix_approval_records_type_status", "record_type", "status"),
        db.Index("ix_approval_records_assigned", "assigned_to_user_id", "status"),
        {"sqlite_autoincrement": True},
    )

    # Overridden by subclasses
    number_prefix = "AR"
    decision_action = "edit"
    initial_stage_config_key = None
    levels_config_key = None
    accepts_storage_placement = False

    id = db.Column(db.Integer, primary_key=True)
    record_type = db.Column(db.String(32), nullable=False, index=True)
    record_number = db.Column(db.String(64), nullable=False)

    # One-to-one chain: invoice_receiving -> quality_control -> warehouse_approval
    upstream_type = db.Column(db.String(32), nullable=False)
    upstream_id = db.Column(db.Integer, nullable=False)
    invoice_receiving_id = db.Column(
        db.Integer, db.ForeignKey("invoice_receivings.id"), nullable=False, index=True
    )

    priority = db.Column(db.String(16), nullable=False, default="medium")
    status = db.Column(db.String(32), nullable=False, default=STATUS_PENDING, index=True)
    current_stage_id = db.Column(db.Integer, db.ForeignKey("workflow_stages.id"), nullable=True, index=True)
    assigned_to_user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)

    total_items = db.Column(db.Integer, nullable=False, default=0)
    approved_items = db.Column(db.Integer, nullable=False, default=0)
    rejected_items = db.Column(db.Integer, nullable=False, default=0)
    pending_items = db.Column(db.Integer, nullable=False, default=0)

    # Manager sign-off
    required_levels = db.Column(db.Integer, nullable=False, default=1)
    approval_round = db.Column(db.Integer, nullable=False, default=1)
    rejection_reason = db.Column(db.Text, nullable=True)
    final_approval_date = db.Column(db.DateTime(timezone=True), nullable=True)

    # Submission metadata
    started_at = db.Column(db.DateTime(timezone=True), nullable=True)
    submitted_by_user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)
    submitted_at = db.Column(db.DateTime(timezone=True), nullable=True)
    submission_remarks = db.Column(db.Text, nullable=True)

    created_by_user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False)
    updated_by_user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), nullable=True)

    version_id = db.Column(db.Integer, nullable=False, default=1)

    items = db.relationship(
        "LineItemDecision",
        back_populates="record",
        order_by="LineItemDecision.id",
        cascade="all, delete-orphan",
        lazy="selectin",
    )
    manager_approvals = db.relationship(
        "ManagerApproval",
        back_populates="record",
        order_by="ManagerApproval.id",
        lazy="selectin",
    )
    history = db.relationship(
        "WorkflowHistoryEntry",
        order_by="WorkflowHistoryEntry.id",
        lazy="select",
    )
    current_stage = db.relationship("WorkflowStage")
    invoice_receiving = db.relationship("InvoiceReceiving")

    __mapper_args__ = {
        "polymorphic_on": record_type,
        "polymorphic_identity": "approval_record",
        "version_id_col": version_id,
    }

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def overall_result(self) -> str:
        """approved / rejected / partial_approved once every item is decided, else pending."""
        if not self.items or any(i.decision == DECISION_PENDING for i in self.items):
            return "pending"
        if all(i.decision == DECISION_APPROVED for i in self.items):
            return "approved"
        if all(i.decision == DECISION_REJECTED for i in self.items):
            return "rejected"
        return "partial_approved"

    @property
    def final_level(self) -> int:
        return max(self.required_levels or 0, 1)

    def round_approvals(self) -> list["ManagerApproval"]:
        return [m for m in self.manager_approvals if m.approval_round == self.approval_round]

    def to_dict(self, include_items: bool = True) -> dict:
        data = {
            "id": self.id,
            "record_type": self.record_type,
            "record_number": self.record_number,
            "upstream_type": self.upstream_type,
            "upstream_id": self.upstream_id,
            "invoice_receiving_id": self.invoice_receiving_id,
            "priority": self.priority,
            "status": self.status,
            "overall_result": self.overall_result,
            "current_stage_id": self.current_stage_id,
            "current_stage_code": self.current_stage.code if self.current_stage else None,
            "assigned_to_user_id": self.assigned_to_user_id,
            "total_items": self.total_items,
            "approved_items": self.approved_items,
            "rejected_items": self.rejected_items,
            "pending_items": self.pending_items,
            "required_levels": self.required_levels,
            "approval_round": self.approval_round,
            "rejection_reason": self.rejection_reason,
            "final_approval_date": to_utc_z(self.final_approval_date),
            "started_at": to_utc_z(self.started_at),
            "submitted_by_user_id": self.submitted_by_user_id,
            "submitted_at": to_utc_z(self.submitted_at),
            "submission_remarks": self.submission_remarks,
            "created_by_user_id": self.created_by_user_id,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
            "version_id": self.version_id,
            "manager_approvals": [m.to_dict() for m in self.manager_approvals],
        }
        if include_items:
            data["items"] = [item.to_dict() for item in self.items]
        return data


class QualityControl(ApprovalRecord):
    """QC inspection of an invoice receiving; one item per received product/batch line."""
    number_prefix = "QC"
    decision_action = "qc_check"
    initial_stage_config_key = "QC_INITIAL_STAGE_CODE"
    levels_config_key = "QC_MANAGER_APPROVAL_LEVELS"

    __mapper_args__ = {"polymorphic_identity": "quality_control"}


class WarehouseApproval(ApprovalRecord):
    """Warehouse acceptance of QC-passed stock; expected quantities come from QC decisions."""
    number_prefix = "WA"
    decision_action = "receive"
    initial_stage_config_key = "WAREHOUSE_INITIAL_STAGE_CODE"
    levels_config_key = "WAREHOUSE_MANAGER_APPROVAL_LEVELS"
    accepts_storage_placement = True

    __mapper_args__ = {"polymorphic_identity": "warehouse_approval"}


RECORD_CLASSES = {
    "quality_control": QualityControl,
    "warehouse_approval": WarehouseApproval,
}


class LineItemDecision(db.Model):
    """
    A single product/batch check inside one approval record.

    RULES:
    - rejected  => decided_qty == 0 (forced, whatever the caller supplied)
    - approved / partial => 0 <= decided_qty <= expected_qty
    - checks (physical_condition, documentation_match, ...) are recorded inputs;
      they never overrule the explicit decision
    - storage placement is accepted on warehouse approval items only
    """
    __tablename__ = "line_item_decisions"
    __table_args__ = (
        db.Index("ix_line_item_decisions_record_decision", "record_id", "decision"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    record_id = db.Column(db.Integer, db.ForeignKey("approval_records.id"), nullable=False, index=True)

    # Upstream line this item was generated from (invoice line or QC item)
    source_line_id = db.Column(db.Integer, nullable=True)

    product_id = db.Column(db.Integer, nullable=True)
    product_code = db.Column(db.String(64), nullable=True)
    product_name = db.Column(db.String(255), nullable=False)
    batch_no = db.Column(db.String(64), nullable=True)
    mfg_date = db.Column(db.Date, nullable=True)
    exp_date = db.Column(db.Date, nullable=True)

    expected_qty = db.Column(db.Integer, nullable=False)
    decided_qty = db.Column(db.Integer, nullable=False, default=0)
    decision = db.Column(db.String(16), nullable=False, default=DECISION_PENDING)
    remarks = db.Column(db.Text, nullable=True)
    checks = db.Column(db.JSON, nullable=True)

    # Warehouse approvals only: {zone, rack, shelf, bin} and the storage conditions
    # (temperature, humidity, light_condition, special_requirements) for the stock
    storage_location = db.Column(db.JSON, nullable=True)
    storage_conditions = db.Column(db.JSON, nullable=True)

    decided_by_user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)
    decided_at = db.Column(db.DateTime(timezone=True), nullable=True)

    record = db.relationship("ApprovalRecord", back_populates="items")

    @property
    def rejected_qty(self) -> int:
        if self.decision == DECISION_PENDING:
            return 0
        return self.expected_qty - self.decided_qty

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "record_id": self.record_id,
            "source_line_id": self.source_line_id,
            "product_id": self.product_id,
            "product_code": self.product_code,
            "product_name": self.product_name,
            "batch_no": self.batch_no,
            "mfg_date": self.mfg_date.isoformat() if self.mfg_date else None,
            "exp_date": self.exp_date.isoformat() if self.exp_date else None,
            "expected_qty": self.expected_qty,
            "decided_qty": self.decided_qty,
            "rejected_qty": self.rejected_qty,
            "decision": self.decision,
            "remarks": self.remarks,
            "checks": self.checks,
            "storage_location": self.storage_location,
            "storage_conditions": self.storage_conditions,
            "decided_by_user_id": self.decided_by_user_id,
            "decided_at": to_utc_z(self.decided_at),
        }


class ManagerApproval(db.Model):
    """
    One manager sign-off step. Append-only: rows are never updated or deleted.

    Levels are 1-indexed and counted within an approval round; returning a
    record for rework opens a new round.
    """
    __tablename__ = "manager_approvals"
    __table_args__ = (
        db.UniqueConstraint("record_id", "approval_round", "level", name="uq_manager_approvals_round_level"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    record_id = db.Column(db.Integer, db.ForeignKey("approval_records.id"), nullable=False, index=True)
    approval_round = db.Column(db.Integer, nullable=False, default=1)
    level = db.Column(db.Integer, nullable=False)
    approver_user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False)
    action = db.Column(db.String(16), nullable=False)
    remarks = db.Column(db.Text, nullable=True)
    acted_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)

    record = db.relationship("ApprovalRecord", back_populates="manager_approvals")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "record_id": self.record_id,
            "approval_round": self.approval_round,
            "level": self.level,
            "approver_user_id": self.approver_user_id,
            "action": self.action,
            "remarks": self.remarks,
            "acted_at": to_utc_z(self.acted_at),
        }


@event.listens_for(ManagerApproval, "before_update")
def _manager_approval_is_append_only(mapper, connection, target):
    raise ValueError(f"ManagerApproval {target.id} is immutable")


@event.listens_for(ManagerApproval, "before_delete")
def _manager_approval_cannot_be_deleted(mapper, connection, target):
    raise ValueError(f"ManagerApproval {target.id} is immutable")
