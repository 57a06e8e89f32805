"""
Escalation chain tests.

Verifies:
- Manager levels must be recorded strictly in order
- Only the final level approves the record
- Final QC approval generates the warehouse approval from passed items
- Manager sign-offs are append-only
"""

import pytest

from pharmaflow.models import ManagerApproval, Notification, WarehouseApproval
from pharmaflow.services import (
    approval_service,
    bulk_action_service,
    decision_service,
    escalation_service,
)
from pharmaflow.services.errors import (
    OutOfSequenceApprovalError,
    PermissionDeniedError,
    WorkflowValidationError,
)


def submit_qc(qc_record, inspector_actor):
    first, second, third = qc_record.items
    decision_service.decide_item(qc_record.id, first.id, decision="approved", actor=inspector_actor)
    decision_service.decide_item(qc_record.id, second.id, decision="partial", decided_qty=45, actor=inspector_actor)
    decision_service.decide_item(qc_record.id, third.id, decision="rejected", actor=inspector_actor)
    return approval_service.submit_record(qc_record.id, actor=inspector_actor)


@pytest.fixture
def approved_qc(qc_record, inspector_actor, manager_actor):
    submit_qc(qc_record, inspector_actor)
    return escalation_service.record_manager_action(
        qc_record.id, level=1, action="approve", remarks="QC ok", actor=manager_actor,
    )


class TestEscalationOrdering:

    def test_level_two_before_level_one_fails(self, qc_record, inspector_actor, manager_actor):
        submit_qc(qc_record, inspector_actor)

        with pytest.raises(OutOfSequenceApprovalError) as exc:
            escalation_service.record_manager_action(qc_record.id, level=2, action="approve", actor=manager_actor)
        assert exc.value.details["expected_level"] == 1
        assert exc.value.details["level"] == 2

    def test_invalid_action(self, qc_record, inspector_actor, manager_actor):
        submit_qc(qc_record, inspector_actor)
        with pytest.raises(WorkflowValidationError):
            escalation_service.record_manager_action(qc_record.id, level=1, action="escalate", actor=manager_actor)

    def test_inspector_cannot_approve(self, qc_record, inspector_actor):
        submit_qc(qc_record, inspector_actor)
        with pytest.raises(PermissionDeniedError):
            escalation_service.record_manager_action(qc_record.id, level=1, action="approve", actor=inspector_actor)

    def test_reject_requires_remarks(self, qc_record, inspector_actor, manager_actor):
        submit_qc(qc_record, inspector_actor)
        with pytest.raises(WorkflowValidationError):
            escalation_service.record_manager_action(qc_record.id, level=1, action="reject", actor=manager_actor)

        record = approval_service.get_approval_record(qc_record.id)
        assert record.status == "submitted"
        assert record.manager_approvals == []


class TestFinalApproval:

    def test_single_level_qc_approval(self, approved_qc, stages):
        record = approved_qc["record"]
        assert record.status == "approved"
        assert record.final_approval_date is not None
        assert record.current_stage_id == stages["QC_COMPLETED"].id
        assert approved_qc["approval"].level == 1

    def test_qc_approval_generates_warehouse_approval(self, approved_qc, stages):
        wa = approved_qc["warehouse_approval"]
        qc = approved_qc["record"]

        assert isinstance(wa, WarehouseApproval)
        assert wa.upstream_type == "quality_control"
        assert wa.upstream_id == qc.id
        assert wa.current_stage_id == stages["WAREHOUSE_REVIEW"].id
        assert wa.required_levels == 2
        # Rejected QC item is dropped; partial item carries its decided quantity
        assert [i.expected_qty for i in wa.items] == [100, 45]
        assert wa.invoice_receiving.workflow_status == "warehouse_pending"

    def test_auto_create_can_be_disabled(self, app, qc_record, inspector_actor, manager_actor, monkeypatch):
        monkeypatch.setitem(app.config, "AUTO_CREATE_WAREHOUSE_APPROVAL", False)
        submit_qc(qc_record, inspector_actor)

        result = escalation_service.record_manager_action(qc_record.id, level=1, action="approve", actor=manager_actor)
        assert result["record"].status == "approved"
        assert result["warehouse_approval"] is None

    def test_fully_rejected_qc_creates_no_warehouse_approval(self, qc_record, inspector_actor, manager_actor):
        bulk_action_service.apply_bulk(
            qc_record.id, [i.id for i in qc_record.items], "rejected", actor=inspector_actor,
        )
        approval_service.submit_record(qc_record.id, actor=inspector_actor)

        result = escalation_service.record_manager_action(qc_record.id, level=1, action="approve", actor=manager_actor)
        assert result["record"].status == "approved"
        assert result["warehouse_approval"] is None


class TestMultiLevelWarehouse:

    def test_two_level_chain(
        self, approved_qc, storekeeper_actor, manager_actor, second_manager_actor, stages,
    ):
        wa = approved_qc["warehouse_approval"]
        bulk_action_service.apply_bulk(wa.id, [i.id for i in wa.items], "approved", actor=storekeeper_actor)
        approval_service.submit_record(wa.id, actor=storekeeper_actor)

        first = escalation_service.record_manager_action(wa.id, level=1, action="approve", actor=manager_actor)
        assert first["record"].status == "submitted"
        assert first["record"].current_stage_id == stages["WAREHOUSE_MANAGER_REVIEW"].id

        chain = escalation_service.approval_chain(wa.id)
        assert chain["next_level"] == 2
        assert chain["final_level"] == 2

        with pytest.raises(OutOfSequenceApprovalError):
            escalation_service.record_manager_action(wa.id, level=1, action="approve", actor=second_manager_actor)

        final = escalation_service.record_manager_action(wa.id, level=2, action="approve", actor=second_manager_actor)
        record = final["record"]
        assert record.status == "approved"
        assert record.current_stage_id == stages["INVENTORY_READY"].id
        assert record.invoice_receiving.workflow_status == "inventory_ready"
        assert [m.level for m in record.manager_approvals] == [1, 2]

    def test_rejection_at_level_two(self, approved_qc, storekeeper_actor, manager_actor):
        wa = approved_qc["warehouse_approval"]
        bulk_action_service.apply_bulk(wa.id, [i.id for i in wa.items], "approved", actor=storekeeper_actor)
        approval_service.submit_record(wa.id, actor=storekeeper_actor)
        escalation_service.record_manager_action(wa.id, level=1, action="approve", actor=manager_actor)

        result = escalation_service.record_manager_action(
            wa.id, level=2, action="reject", remarks="storage full", actor=manager_actor,
        )
        assert result["record"].status == "rejected"
        assert result["record"].rejection_reason == "storage full"
        assert result["record"].invoice_receiving.workflow_status == "rejected"

    def test_intermediate_approval_notifies_sink(
        self, app, approved_qc, storekeeper_actor, manager_actor, monkeypatch,
    ):
        wa = approved_qc["warehouse_approval"]
        bulk_action_service.apply_bulk(wa.id, [i.id for i in wa.items], "approved", actor=storekeeper_actor)
        approval_service.submit_record(wa.id, actor=storekeeper_actor)

        calls = []
        monkeypatch.setitem(app.config, "APPROVAL_NOTIFICATION_SINK", lambda **kw: calls.append(kw))
        escalation_service.record_manager_action(wa.id, level=1, action="approve", actor=manager_actor)

        assert calls == [{"record_id": wa.id, "status": "submitted", "actor_user_id": manager_actor.user_id}]

    def test_intermediate_approval_stores_notification(
        self, approved_qc, storekeeper, storekeeper_actor, manager_actor, db_session,
    ):
        wa = approved_qc["warehouse_approval"]
        bulk_action_service.apply_bulk(wa.id, [i.id for i in wa.items], "approved", actor=storekeeper_actor)
        approval_service.submit_record(wa.id, actor=storekeeper_actor)
        escalation_service.record_manager_action(wa.id, level=1, action="approve", actor=manager_actor)

        messages = [n.message for n in db_session.query(Notification).filter_by(user_id=storekeeper.id, record_id=wa.id)]
        assert f"{wa.record_number} passed approval level 1, awaiting level 2" in messages

    def test_zero_levels_means_first_approval_is_final(
        self, app, qc_record, inspector_actor, manager_actor, storekeeper_actor, monkeypatch,
    ):
        monkeypatch.setitem(app.config, "WAREHOUSE_MANAGER_APPROVAL_LEVELS", 0)
        submit_qc(qc_record, inspector_actor)
        wa = escalation_service.record_manager_action(
            qc_record.id, level=1, action="approve", actor=manager_actor,
        )["warehouse_approval"]
        assert wa.final_level == 1

        bulk_action_service.apply_bulk(wa.id, [i.id for i in wa.items], "approved", actor=storekeeper_actor)
        approval_service.submit_record(wa.id, actor=storekeeper_actor)
        result = escalation_service.record_manager_action(wa.id, level=1, action="approve", actor=manager_actor)
        assert result["record"].status == "approved"


class TestAppendOnly:

    def test_manager_approval_cannot_be_updated(self, approved_qc, db_session):
        approval = db_session.get(ManagerApproval, approved_qc["approval"].id)
        approval.remarks = "edited"
        with pytest.raises(ValueError):
            db_session.flush()
        db_session.rollback()

    def test_manager_approval_cannot_be_deleted(self, approved_qc, db_session):
        approval = db_session.get(ManagerApproval, approved_qc["approval"].id)
        db_session.delete(approval)
        with pytest.raises(ValueError):
            db_session.flush()
        db_session.rollback()
