from __future__ import annotations

from ..extensions import db
from pharmaflow.time_utils import to_utc_z, utcnow


# workflow_status values as a shipment moves through the chain
WORKFLOW_RECEIVED = "received"
WORKFLOW_QC_IN_PROGRESS = "qc_in_progress"
WORKFLOW_QC_COMPLETED = "qc_completed"
WORKFLOW_WAREHOUSE_PENDING = "warehouse_pending"
WORKFLOW_WAREHOUSE_IN_PROGRESS = "warehouse_in_progress"
WORKFLOW_INVENTORY_READY = "inventory_ready"
WORKFLOW_REJECTED = "rejected"


class InvoiceReceiving(db.Model):
    """
    Goods-received document for a supplier invoice.

    WHY: Head of the approval chain. A QC record is generated from exactly one
    invoice receiving; its lines seed the QC line items.
    """
    __tablename__ = "invoice_receivings"
    __table_args__ = (
        db.UniqueConstraint("principal_id", "invoice_number", name="uq_invoice_receivings_principal_invoice"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)

    # External references (purchase orders, principals, warehouses live elsewhere)
    purchase_order_ref = db.Column(db.String(64), nullable=True, index=True)
    principal_id = db.Column(db.Integer, nullable=True, index=True)
    warehouse_id = db.Column(db.Integer, nullable=True, index=True)

    invoice_number = db.Column(db.String(64), nullable=False, index=True)
    invoice_date = db.Column(db.DateTime(timezone=True), nullable=True)
    received_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)
    received_by_user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False)

    workflow_status = db.Column(db.String(32), nullable=False, default=WORKFLOW_RECEIVED, index=True)
    remarks = db.Column(db.Text, nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)

    lines = db.relationship(
        "InvoiceReceivingLine",
        back_populates="invoice_receiving",
        order_by="InvoiceReceivingLine.id",
        cascade="all, delete-orphan",
        lazy="selectin",
    )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "purchase_order_ref": self.purchase_order_ref,
            "principal_id": self.principal_id,
            "warehouse_id": self.warehouse_id,
            "invoice_number": self.invoice_number,
            "invoice_date": to_utc_z(self.invoice_date),
            "received_at": to_utc_z(self.received_at),
            "received_by_user_id": self.received_by_user_id,
            "workflow_status": self.workflow_status,
            "remarks": self.remarks,
            "lines": [line.to_dict() for line in self.lines],
        }


class InvoiceReceivingLine(db.Model):
    """One received product/batch line. FOC quantity is tracked apart from billable quantity."""
    __tablename__ = "invoice_receiving_lines"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    invoice_receiving_id = db.Column(
        db.Integer, db.ForeignKey("invoice_receivings.id"), nullable=False, index=True
    )

    product_id = db.Column(db.Integer, nullable=True)
    product_code = db.Column(db.String(64), nullable=True)
    product_name = db.Column(db.String(255), nullable=False)
    batch_no = db.Column(db.String(64), nullable=True)
    mfg_date = db.Column(db.Date, nullable=True)
    exp_date = db.Column(db.Date, nullable=True)

    ordered_qty = db.Column(db.Integer, nullable=False, default=0)
    received_qty = db.Column(db.Integer, nullable=False, default=0)
    foc_qty = db.Column(db.Integer, nullable=False, default=0)

    invoice_receiving = db.relationship("InvoiceReceiving", back_populates="lines")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "product_id": self.product_id,
            "product_code": self.product_code,
            "product_name": self.product_name,
            "batch_no": self.batch_no,
            "mfg_date": self.mfg_date.isoformat() if self.mfg_date else None,
            "exp_date": self.exp_date.isoformat() if self.exp_date else None,
            "ordered_qty": self.ordered_qty,
            "received_qty": self.received_qty,
            "foc_qty": self.foc_qty,
        }
