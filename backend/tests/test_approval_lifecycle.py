"""
Approval record lifecycle tests.

Verifies:
- Records are generated on the configured initial stage with derived counts
- Submission is gated on every line item being decided
- Manager rejection is terminal and records the reason
- Return for rework opens a new approval round
"""

import pytest

from pharmaflow.models import AuditLog, Notification
from pharmaflow.services import (
    approval_service,
    bulk_action_service,
    decision_service,
    escalation_service,
    workflow_service,
)
from pharmaflow.services.errors import (
    IncompleteDecisionsError,
    InvalidTransitionError,
    PermissionDeniedError,
    WorkflowValidationError,
)


def assert_aggregates_consistent(record):
    assert record.total_items == record.approved_items + record.rejected_items + record.pending_items


def decide_all(record, actor, decision="approved"):
    for item in record.items:
        decision_service.decide_item(record.id, item.id, decision=decision, actor=actor)


# =============================================================================
# GENERATION
# =============================================================================


class TestRecordGeneration:

    def test_qc_record_starts_pending_on_initial_stage(self, qc_record, stages):
        assert qc_record.status == "pending"
        assert qc_record.current_stage_id == stages["QC_PENDING"].id
        assert qc_record.record_number.startswith("QC-")
        assert qc_record.total_items == 3
        assert qc_record.pending_items == 3
        assert qc_record.required_levels == 1
        assert [i.expected_qty for i in qc_record.items] == [100, 50, 20]
        assert_aggregates_consistent(qc_record)

    def test_generation_writes_history_and_audit(self, qc_record, db_session):
        history = workflow_service.get_record_history(qc_record.id)
        assert len(history) == 1
        assert history[0].action == "create"
        assert history[0].from_stage_id is None
        assert history[0].to_stage_code == "QC_PENDING"

        events = db_session.query(AuditLog).filter_by(entity_id=qc_record.id, event_type="RECORD_CREATED").all()
        assert len(events) == 1


# =============================================================================
# SUBMISSION GATING (three item scenario)
# =============================================================================


class TestSubmissionScenario:

    def test_submit_with_pending_items_fails(self, qc_record, inspector_actor):
        with pytest.raises(IncompleteDecisionsError) as exc:
            approval_service.submit_record(qc_record.id, actor=inspector_actor)

        assert sorted(exc.value.details["pending_item_ids"]) == sorted(i.id for i in qc_record.items)
        record = approval_service.get_approval_record(qc_record.id)
        assert record.status == "pending"

    def test_decide_submit_reject_flow(self, qc_record, inspector_actor, manager_actor, stages):
        for item in qc_record.items:
            decision_service.decide_item(
                qc_record.id, item.id,
                decision="approved", decided_qty=item.expected_qty,
                actor=inspector_actor,
            )

        record = approval_service.submit_record(qc_record.id, actor=inspector_actor, remarks="all good")
        assert record.status == "submitted"
        assert record.current_stage_id == stages["QC_MANAGER_REVIEW"].id
        assert record.submitted_by_user_id == inspector_actor.user_id
        assert record.approved_items == 3
        assert record.overall_result == "approved"

        result = escalation_service.record_manager_action(
            qc_record.id, level=1, action="reject", remarks="batch mismatch", actor=manager_actor,
        )
        record = result["record"]
        assert record.status == "rejected"
        assert record.rejection_reason == "batch mismatch"
        assert record.current_stage_id == stages["QC_REJECTED"].id
        assert result["warehouse_approval"] is None

        with pytest.raises(InvalidTransitionError):
            escalation_service.record_manager_action(
                qc_record.id, level=1, action="approve", actor=manager_actor,
            )

    def test_invoice_status_follows_qc(self, qc_record, inspector_actor):
        invoice = qc_record.invoice_receiving
        assert invoice.workflow_status == "qc_in_progress"

        decide_all(qc_record, inspector_actor)
        approval_service.submit_record(qc_record.id, actor=inspector_actor)
        assert invoice.workflow_status == "qc_completed"

    def test_transition_can_require_submission_remarks(self, qc_record, inspector_actor, stages):
        transition = workflow_service.find_transition(stages["QC_PENDING"].id, "complete", {})
        workflow_service.update_transition(transition.id, required_fields=["submission_remarks"])
        decide_all(qc_record, inspector_actor)

        with pytest.raises(WorkflowValidationError) as exc:
            approval_service.submit_record(qc_record.id, actor=inspector_actor)
        assert exc.value.details["missing_fields"] == ["submission_remarks"]

        record = approval_service.submit_record(qc_record.id, actor=inspector_actor, remarks="all checked")
        assert record.status == "submitted"
        assert record.submission_remarks == "all checked"


class TestBulkScenario:

    def test_bulk_two_of_three_then_submit(self, qc_record, inspector_actor):
        first, second, third = qc_record.items

        result = bulk_action_service.apply_bulk(
            qc_record.id, [first.id, second.id], "approved", actor=inspector_actor,
        )
        record = result["record"]
        assert result["updated_items"] == 2
        assert record.approved_items == 2
        assert record.pending_items == 1
        assert record.status == "in_progress"
        assert_aggregates_consistent(record)

        with pytest.raises(IncompleteDecisionsError):
            approval_service.submit_record(qc_record.id, actor=inspector_actor)

        decision_service.decide_item(qc_record.id, third.id, decision="rejected", actor=inspector_actor)
        record = approval_service.submit_record(qc_record.id, actor=inspector_actor)
        assert record.status == "submitted"
        assert record.overall_result == "partial_approved"


# =============================================================================
# PERMISSIONS AND TERMINAL STATES
# =============================================================================


class TestSubmissionPermissions:

    def test_submit_requires_stage_permission(self, qc_record, inspector_actor, outsider_actor):
        decide_all(qc_record, inspector_actor)

        with pytest.raises(PermissionDeniedError) as exc:
            approval_service.submit_record(qc_record.id, actor=outsider_actor)
        assert "SUBMIT_RECORD" in exc.value.details["missing_permissions"]

        record = approval_service.get_approval_record(qc_record.id)
        assert record.status == "in_progress"

    def test_terminal_record_rejects_every_mutation(self, qc_record, inspector_actor, manager_actor):
        decide_all(qc_record, inspector_actor)
        approval_service.submit_record(qc_record.id, actor=inspector_actor)
        escalation_service.record_manager_action(qc_record.id, level=1, action="approve", actor=manager_actor)

        item_id = qc_record.items[0].id
        with pytest.raises(InvalidTransitionError):
            decision_service.decide_item(qc_record.id, item_id, decision="rejected", actor=inspector_actor)
        with pytest.raises(InvalidTransitionError):
            bulk_action_service.apply_bulk(qc_record.id, [item_id], "rejected", actor=inspector_actor)
        with pytest.raises(InvalidTransitionError):
            escalation_service.record_manager_action(qc_record.id, level=2, action="approve", actor=manager_actor)
        with pytest.raises(InvalidTransitionError):
            approval_service.submit_record(qc_record.id, actor=inspector_actor)


# =============================================================================
# RETURN FOR REWORK
# =============================================================================


class TestReturnForRework:

    def test_return_opens_new_round(self, qc_record, inspector_actor, manager_actor, stages):
        decide_all(qc_record, inspector_actor)
        approval_service.submit_record(qc_record.id, actor=inspector_actor)

        record = approval_service.return_for_rework(qc_record.id, actor=manager_actor, remarks="recount batch B-02")
        assert record.status == "in_progress"
        assert record.current_stage_id == stages["QC_PENDING"].id
        assert record.approval_round == 2
        assert record.submitted_at is None

        # Items are editable again and the record can be resubmitted
        decision_service.decide_item(
            qc_record.id, record.items[1].id, decision="partial", decided_qty=40, actor=inspector_actor,
        )
        record = approval_service.submit_record(qc_record.id, actor=inspector_actor)
        assert record.status == "submitted"

        chain = escalation_service.approval_chain(qc_record.id)
        assert chain["approval_round"] == 2
        assert chain["next_level"] == 1

    def test_return_requires_remarks(self, qc_record, inspector_actor, manager_actor):
        decide_all(qc_record, inspector_actor)
        approval_service.submit_record(qc_record.id, actor=inspector_actor)

        with pytest.raises(WorkflowValidationError) as exc:
            approval_service.return_for_rework(qc_record.id, actor=manager_actor)
        assert exc.value.details["missing_fields"] == ["remarks"]

        record = approval_service.get_approval_record(qc_record.id)
        assert record.status == "submitted"

    def test_return_only_from_submitted(self, qc_record, manager_actor):
        with pytest.raises(InvalidTransitionError):
            approval_service.return_for_rework(qc_record.id, actor=manager_actor, remarks="x")


# =============================================================================
# ASSIGNMENT, STATISTICS AND NOTIFICATIONS
# =============================================================================


class TestAssignmentAndStatistics:

    def test_bulk_assign_counts_only_changes(self, qc_record, manager_actor, inspector):
        modified = approval_service.bulk_assign(
            [qc_record.id], actor=manager_actor, assigned_to_user_id=inspector.id, priority="high",
        )
        assert modified == 1
        assert qc_record.assigned_to_user_id == inspector.id
        assert qc_record.priority == "high"

        again = approval_service.bulk_assign(
            [qc_record.id], actor=manager_actor, assigned_to_user_id=inspector.id, priority="high",
        )
        assert again == 0

    def test_bulk_assign_requires_permission(self, qc_record, inspector_actor, inspector):
        with pytest.raises(PermissionDeniedError):
            approval_service.bulk_assign([qc_record.id], actor=inspector_actor, assigned_to_user_id=inspector.id)

    def test_bulk_assign_rejects_unknown_priority(self, qc_record, manager_actor):
        with pytest.raises(WorkflowValidationError):
            approval_service.bulk_assign([qc_record.id], actor=manager_actor, priority="critical")

    def test_statistics(self, qc_record, manager_actor, inspector):
        approval_service.bulk_assign([qc_record.id], actor=manager_actor, assigned_to_user_id=inspector.id)

        stats = approval_service.record_statistics("quality_control")
        assert stats["total"] == 1
        assert stats["by_status"]["pending"] == 1
        assert stats["open_by_priority"]["medium"] == 1
        assert stats["open_by_assignee"] == {inspector.id: 1}

    def test_status_change_notifies_creator(self, qc_record, inspector_actor, manager, db_session):
        decide_all(qc_record, inspector_actor)
        approval_service.submit_record(qc_record.id, actor=inspector_actor)

        statuses = [n.status for n in db_session.query(Notification).filter_by(user_id=manager.id)]
        assert "in_progress" in statuses
        assert "submitted" in statuses

    def test_custom_notification_sink(self, app, qc_record, inspector_actor, monkeypatch):
        calls = []
        monkeypatch.setitem(app.config, "APPROVAL_NOTIFICATION_SINK", lambda **kw: calls.append(kw))

        decision_service.decide_item(qc_record.id, qc_record.items[0].id, decision="approved", actor=inspector_actor)
        assert calls == [{"record_id": qc_record.id, "status": "in_progress", "actor_user_id": inspector_actor.user_id}]

    def test_failing_sink_does_not_undo_change(self, app, qc_record, inspector_actor, monkeypatch):
        def broken_sink(**kwargs):
            raise RuntimeError("mail server down")

        monkeypatch.setitem(app.config, "APPROVAL_NOTIFICATION_SINK", broken_sink)

        decision_service.decide_item(qc_record.id, qc_record.items[0].id, decision="approved", actor=inspector_actor)
        record = approval_service.get_approval_record(qc_record.id)
        assert record.status == "in_progress"
        assert record.approved_items == 1


class TestNotificationTemplates:

    def test_transition_template_words_the_message(self, qc_record, inspector_actor, manager, stages, db_session):
        transition = workflow_service.find_transition(stages["QC_PENDING"].id, "complete", {})
        workflow_service.update_transition(
            transition.id, notification_template="{number} is ready for review at {stage}",
        )
        decide_all(qc_record, inspector_actor)
        approval_service.submit_record(qc_record.id, actor=inspector_actor)

        submitted = db_session.query(Notification).filter_by(user_id=manager.id, status="submitted").one()
        assert submitted.message == f"{qc_record.record_number} is ready for review at QC Manager Review"

    def test_default_message_without_template(self, qc_record, inspector_actor, manager, db_session):
        decide_all(qc_record, inspector_actor)
        approval_service.submit_record(qc_record.id, actor=inspector_actor)

        submitted = db_session.query(Notification).filter_by(user_id=manager.id, status="submitted").one()
        assert submitted.message == f"{qc_record.record_number} was submitted for manager approval"

    @pytest.mark.parametrize("template", ["{number} for {customer}", "{number"])
    def test_bad_template_is_refused(self, stages, template):
        transition = workflow_service.find_transition(stages["QC_PENDING"].id, "complete", {})
        with pytest.raises(WorkflowValidationError):
            workflow_service.update_transition(transition.id, notification_template=template)


class TestAutoTransitions:

    def test_candidate_appears_once_every_item_is_decided(self, qc_record, inspector_actor, stages):
        transition = workflow_service.find_transition(stages["QC_PENDING"].id, "complete", {})
        workflow_service.update_transition(transition.id, auto_transition=True, conditions={"pending_items": 0})

        assert approval_service.auto_transitions(qc_record) == []

        first, second, third = qc_record.items
        decision_service.decide_item(qc_record.id, first.id, decision="approved", actor=inspector_actor)
        decision_service.decide_item(qc_record.id, second.id, decision="rejected", actor=inspector_actor)
        assert approval_service.auto_transitions(approval_service.get_approval_record(qc_record.id)) == []

        decision_service.decide_item(qc_record.id, third.id, decision="approved", actor=inspector_actor)
        candidates = approval_service.auto_transitions(approval_service.get_approval_record(qc_record.id))
        assert [c["id"] for c in candidates] == [transition.id]
        assert candidates[0]["to_stage_code"] == "QC_MANAGER_REVIEW"

    def test_plain_transitions_are_not_candidates(self, qc_record, inspector_actor):
        decide_all(qc_record, inspector_actor)
        assert approval_service.auto_transitions(approval_service.get_approval_record(qc_record.id)) == []
