"""
Line-item decision tests.

Verifies quantity rules, per-stage authorization and that aggregates are
always derived from the full item list.
"""

import pytest

from pharmaflow.services import approval_service, bulk_action_service, decision_service, escalation_service
from pharmaflow.services.errors import (
    InvalidItemReferenceError,
    PermissionDeniedError,
    QuantityOutOfRangeError,
    WorkflowValidationError,
)


class TestDecideItem:

    def test_rejected_forces_zero_quantity(self, qc_record, inspector_actor):
        item = qc_record.items[0]
        decided = decision_service.decide_item(
            qc_record.id, item.id, decision="rejected", decided_qty=80, actor=inspector_actor,
        )
        assert decided.decided_qty == 0
        assert decided.rejected_qty == item.expected_qty

    def test_approved_defaults_to_expected(self, qc_record, inspector_actor):
        item = qc_record.items[0]
        decided = decision_service.decide_item(qc_record.id, item.id, decision="approved", actor=inspector_actor)
        assert decided.decided_qty == 100
        assert decided.decided_by_user_id == inspector_actor.user_id
        assert decided.decided_at is not None

    def test_partial_counts_as_approved(self, qc_record, inspector_actor):
        item = qc_record.items[1]
        decision_service.decide_item(
            qc_record.id, item.id, decision="partial", decided_qty=30,
            checks={"physical_condition": "damaged cartons"}, actor=inspector_actor,
        )
        record = approval_service.get_approval_record(qc_record.id)
        assert record.approved_items == 1
        assert record.pending_items == 2
        assert record.items[1].checks == {"physical_condition": "damaged cartons"}
        assert record.items[1].rejected_qty == 20

    def test_quantity_above_expected_fails(self, qc_record, inspector_actor):
        item = qc_record.items[2]
        with pytest.raises(QuantityOutOfRangeError) as exc:
            decision_service.decide_item(
                qc_record.id, item.id, decision="partial", decided_qty=21, actor=inspector_actor,
            )
        assert exc.value.details["item_id"] == item.id
        assert exc.value.details["expected_qty"] == 20

        record = approval_service.get_approval_record(qc_record.id)
        assert record.status == "pending"
        assert record.items[2].decision == "pending"

    def test_partial_without_quantity_fails(self, qc_record, inspector_actor):
        with pytest.raises(QuantityOutOfRangeError):
            decision_service.decide_item(
                qc_record.id, qc_record.items[0].id, decision="partial", actor=inspector_actor,
            )

    def test_pending_is_not_a_decision(self, qc_record, inspector_actor):
        with pytest.raises(WorkflowValidationError):
            decision_service.decide_item(
                qc_record.id, qc_record.items[0].id, decision="pending", actor=inspector_actor,
            )

    def test_redeciding_overwrites(self, qc_record, inspector_actor):
        item_id = qc_record.items[0].id
        decision_service.decide_item(qc_record.id, item_id, decision="approved", actor=inspector_actor)
        decision_service.decide_item(qc_record.id, item_id, decision="rejected", actor=inspector_actor)

        record = approval_service.get_approval_record(qc_record.id)
        assert record.approved_items == 0
        assert record.rejected_items == 1
        assert record.total_items == record.approved_items + record.rejected_items + record.pending_items

    def test_foreign_item_is_rejected(self, qc_record, inspector_actor):
        with pytest.raises(InvalidItemReferenceError) as exc:
            decision_service.decide_item(qc_record.id, 999999, decision="approved", actor=inspector_actor)
        assert exc.value.details["invalid_item_ids"] == [999999]

    def test_outsider_cannot_decide(self, qc_record, outsider_actor):
        with pytest.raises(PermissionDeniedError):
            decision_service.decide_item(
                qc_record.id, qc_record.items[0].id, decision="approved", actor=outsider_actor,
            )

    def test_manager_cannot_decide_without_grant(self, qc_record, manager_actor):
        with pytest.raises(PermissionDeniedError) as exc:
            decision_service.decide_item(
                qc_record.id, qc_record.items[0].id, decision="approved", actor=manager_actor,
            )
        assert exc.value.details["missing_permissions"] == ["DECIDE_LINE_ITEMS"]


class TestBulkActions:

    def test_partial_is_not_allowed_in_bulk(self, qc_record, inspector_actor):
        with pytest.raises(WorkflowValidationError):
            bulk_action_service.apply_bulk(
                qc_record.id, [i.id for i in qc_record.items], "partial", actor=inspector_actor,
            )

    def test_empty_selection_fails(self, qc_record, inspector_actor):
        with pytest.raises(WorkflowValidationError):
            bulk_action_service.apply_bulk(qc_record.id, [], "approved", actor=inspector_actor)

    def test_one_foreign_id_applies_nothing(self, qc_record, inspector_actor):
        ids = [qc_record.items[0].id, 424242]
        with pytest.raises(InvalidItemReferenceError) as exc:
            bulk_action_service.apply_bulk(qc_record.id, ids, "approved", actor=inspector_actor)
        assert exc.value.details["invalid_item_ids"] == [424242]

        record = approval_service.get_approval_record(qc_record.id)
        assert record.pending_items == 3
        assert all(i.decision == "pending" for i in record.items)

    def test_bulk_reject_zeroes_quantities(self, qc_record, inspector_actor):
        result = bulk_action_service.apply_bulk(
            qc_record.id, [i.id for i in qc_record.items], "rejected",
            remarks="cold chain broken", actor=inspector_actor,
        )
        record = result["record"]
        assert record.rejected_items == 3
        assert all(i.decided_qty == 0 for i in record.items)
        assert all(i.remarks == "cold chain broken" for i in record.items)

    def test_duplicate_ids_counted_once(self, qc_record, inspector_actor):
        item_id = qc_record.items[0].id
        result = bulk_action_service.apply_bulk(
            qc_record.id, [item_id, item_id], "approved", actor=inspector_actor,
        )
        assert result["updated_items"] == 1
        assert result["record"].approved_items == 1


@pytest.fixture
def warehouse_approval(qc_record, inspector_actor, manager_actor):
    bulk_action_service.apply_bulk(qc_record.id, [i.id for i in qc_record.items], "approved", actor=inspector_actor)
    approval_service.submit_record(qc_record.id, actor=inspector_actor)
    result = escalation_service.record_manager_action(qc_record.id, level=1, action="approve", actor=manager_actor)
    return result["warehouse_approval"]


class TestStoragePlacement:

    def test_placement_is_recorded_and_merged(self, warehouse_approval, storekeeper_actor):
        item = warehouse_approval.items[0]
        decision_service.decide_item(
            warehouse_approval.id, item.id, decision="approved", actor=storekeeper_actor,
            storage_location={"zone": "Cold", "rack": "R3", "shelf": 2},
            storage_conditions={
                "temperature": {"min": 2, "max": 8, "unit": "C"},
                "light_condition": "dark",
            },
        )
        decided = decision_service.decide_item(
            warehouse_approval.id, item.id, decision="approved", actor=storekeeper_actor,
            storage_location={"bin": "B-07"},
            storage_conditions={"special_requirements": "keep upright"},
        )

        assert decided.storage_location == {"zone": "Cold", "rack": "R3", "shelf": "2", "bin": "B-07"}
        assert decided.storage_conditions == {
            "temperature": {"min": 2, "max": 8, "unit": "C"},
            "light_condition": "dark",
            "special_requirements": "keep upright",
        }
        assert decided.to_dict()["storage_location"]["bin"] == "B-07"

    def test_qc_items_refuse_placement(self, qc_record, inspector_actor):
        with pytest.raises(WorkflowValidationError):
            decision_service.decide_item(
                qc_record.id, qc_record.items[0].id, decision="approved", actor=inspector_actor,
                storage_location={"zone": "A"},
            )
        assert approval_service.get_approval_record(qc_record.id).items[0].decision == "pending"

    @pytest.mark.parametrize(
        "location,conditions",
        [
            ({"aisle": "4"}, None),
            ({"zone": ""}, None),
            (None, {"light_condition": "bright"}),
            (None, {"temperature": {"min": 8, "max": 2}}),
            (None, {"humidity": {"max": "sixty"}}),
            (None, {"pressure": "low"}),
        ],
    )
    def test_invalid_placement_is_refused(self, warehouse_approval, storekeeper_actor, location, conditions):
        with pytest.raises(WorkflowValidationError):
            decision_service.decide_item(
                warehouse_approval.id, warehouse_approval.items[0].id, decision="approved",
                actor=storekeeper_actor, storage_location=location, storage_conditions=conditions,
            )
