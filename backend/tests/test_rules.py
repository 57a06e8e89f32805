"""
Pure rule functions: decided quantity resolution and transition conditions.

No database needed.
"""

import pytest

from pharmaflow.models import WorkflowTransition
from pharmaflow.services.decision_service import resolve_decided_qty
from pharmaflow.services.errors import QuantityOutOfRangeError, WorkflowValidationError
from pharmaflow.services.workflow_service import (
    conditions_mutually_exclusive,
    evaluate_conditions,
    missing_required_fields,
)


# =============================================================================
# DECIDED QUANTITY
# =============================================================================


class TestResolveDecidedQty:

    @pytest.mark.parametrize("sent", [None, 0, 7, 10])
    def test_rejected_is_always_zero(self, sent):
        assert resolve_decided_qty("rejected", 10, sent) == 0

    def test_approved_defaults_to_expected(self):
        assert resolve_decided_qty("approved", 10) == 10

    def test_approved_may_be_reduced(self):
        assert resolve_decided_qty("approved", 10, 6) == 6

    @pytest.mark.parametrize("qty", [0, 1, 10])
    def test_partial_bounds_are_inclusive(self, qty):
        assert resolve_decided_qty("partial", 10, qty) == qty

    @pytest.mark.parametrize("qty", [-1, 11])
    def test_out_of_range(self, qty):
        with pytest.raises(QuantityOutOfRangeError) as exc:
            resolve_decided_qty("partial", 10, qty, item_id=3)
        assert exc.value.details == {"item_id": 3, "expected_qty": 10, "decided_qty": qty}

    def test_numeric_strings_are_accepted(self):
        assert resolve_decided_qty("partial", 10, "4") == 4
        assert resolve_decided_qty("partial", 10, 4.0) == 4

    @pytest.mark.parametrize("bad", [4.5, "four", True])
    def test_non_integer_quantities(self, bad):
        with pytest.raises(WorkflowValidationError):
            resolve_decided_qty("partial", 10, bad)

    def test_unknown_decision(self):
        with pytest.raises(WorkflowValidationError) as exc:
            resolve_decided_qty("maybe", 10, 5)
        assert exc.value.code == "VALIDATION_ERROR"


# =============================================================================
# TRANSITION CONDITIONS
# =============================================================================


class TestEvaluateConditions:

    def test_no_conditions_always_hold(self):
        assert evaluate_conditions(None, {})
        assert evaluate_conditions({}, {"anything": 1})

    def test_plain_value_means_equality(self):
        assert evaluate_conditions({"priority": "urgent"}, {"priority": "urgent"})
        assert not evaluate_conditions({"priority": "urgent"}, {"priority": "low"})

    def test_missing_field_fails_comparisons(self):
        assert not evaluate_conditions({"rejected_items": {"gt": 0}}, {})
        assert not evaluate_conditions({"priority": {"ne": "low"}}, {})

    def test_numeric_operators(self):
        context = {"rejected_items": 2, "total_items": 5}
        assert evaluate_conditions({"rejected_items": {"gt": 0, "lte": 2}}, context)
        assert not evaluate_conditions({"rejected_items": {"lt": 2}}, context)
        assert evaluate_conditions({"total_items": {"gte": 5}, "rejected_items": {"ne": 0}}, context)

    def test_incomparable_values_do_not_match(self):
        assert not evaluate_conditions({"total_items": {"gt": 3}}, {"total_items": "many"})

    def test_in_and_exists(self):
        assert evaluate_conditions({"priority": {"in": ["high", "urgent"]}}, {"priority": "high"})
        assert evaluate_conditions({"remarks": {"exists": True}}, {"remarks": "ok"})
        assert evaluate_conditions({"remarks": {"exists": False}}, {"remarks": None})
        assert not evaluate_conditions({"remarks": {"exists": True}}, {})


class TestMutualExclusion:

    def test_disjoint_pinned_values(self):
        assert conditions_mutually_exclusive({"priority": "urgent"}, {"priority": {"in": ["low", "high"]}})

    def test_overlapping_values(self):
        assert not conditions_mutually_exclusive({"priority": {"in": ["low", "high"]}}, {"priority": "high"})

    def test_unconditioned_sibling_is_never_exclusive(self):
        assert not conditions_mutually_exclusive(None, {"priority": "urgent"})

    def test_ranges_are_not_treated_as_exclusive(self):
        assert not conditions_mutually_exclusive({"rejected_items": {"gt": 0}}, {"rejected_items": {"eq": 0}})


class TestRequiredFields:

    def test_blank_strings_count_as_missing(self):
        transition = WorkflowTransition(action="reject", required_fields=["remarks", "reason_code"])
        assert missing_required_fields(transition, {"remarks": "   ", "reason_code": "QA-7"}) == ["remarks"]
        assert missing_required_fields(transition, None) == ["remarks", "reason_code"]
