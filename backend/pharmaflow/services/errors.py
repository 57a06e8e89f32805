# Overview: Exception hierarchy shared by the approval workflow services.

"""
Workflow error kinds.

Every error carries a stable `code` (for API clients) and a `details` dict
with the offending identifiers. Routes translate them to JSON responses via
`http_status`. Only ConcurrentModificationError is retryable.
"""

from __future__ import annotations


class WorkflowError(Exception):
    """Base class for approval workflow failures."""
    code = "WORKFLOW_ERROR"
    http_status = 400
    retryable = False

    def __init__(self, message: str, **details):
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self) -> dict:
        return {"error": self.message, "code": self.code, "details": self.details}


class PermissionDeniedError(WorkflowError):
    """Actor lacks a required global or stage permission."""
    code = "PERMISSION_DENIED"
    http_status = 403


class InvalidTransitionError(WorkflowError):
    """Action not legal from the record's current status or stage."""
    code = "INVALID_TRANSITION"
    http_status = 409


class IncompleteDecisionsError(WorkflowError):
    """Submission attempted while line items are still pending."""
    code = "INCOMPLETE_DECISIONS"
    http_status = 409


class QuantityOutOfRangeError(WorkflowError):
    """decided_qty outside 0..expected_qty for an approved/partial decision."""
    code = "QUANTITY_OUT_OF_RANGE"
    http_status = 422


class InvalidItemReferenceError(WorkflowError):
    """Item id does not belong to the record."""
    code = "INVALID_ITEM_REFERENCE"
    http_status = 422


class OutOfSequenceApprovalError(WorkflowError):
    """Manager action at a level other than the next expected one."""
    code = "OUT_OF_SEQUENCE_APPROVAL"
    http_status = 409


class RecordNotFoundError(WorkflowError):
    code = "NOT_FOUND"
    http_status = 404


class ConcurrentModificationError(WorkflowError):
    """Optimistic concurrency conflict; safe to reload and retry."""
    code = "CONCURRENT_MODIFICATION"
    http_status = 409
    retryable = True


class WorkflowValidationError(WorkflowError):
    """Malformed input (unknown decision, bad action name, missing fields...)."""
    code = "VALIDATION_ERROR"
    http_status = 400


class WorkflowConfigError(WorkflowError):
    """Stage/transition configuration is inconsistent or missing."""
    code = "WORKFLOW_CONFIG_ERROR"
    http_status = 422
