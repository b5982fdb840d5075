"""
Error taxonomy for the referral workflow.

Every error raised to callers carries a stable ``kind`` and a sanitized
``detail``; ``to_response()`` gives the shape returned by the API layer.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, Optional

if TYPE_CHECKING:
    from referral_workflow.services.validation_service import ValidationResult


class ReferralWorkflowError(Exception):
    """Base class for errors surfaced to callers."""

    kind = "WorkflowError"

    def __init__(self, detail: str):
        super().__init__(detail)
        self.detail = detail

    def to_response(self) -> dict[str, Any]:
        """Structured failure payload; never includes internals."""
        return {"success": False, "errorKind": self.kind, "detail": self.detail}


class ValidationError(ReferralWorkflowError):
    """Field, format or quota problem the caller can correct."""

    kind = "ValidationError"

    def __init__(self, result: "ValidationResult", detail: Optional[str] = None):
        super().__init__(detail or "; ".join(result.errors) or "Validation failed")
        self.result = result

    def to_response(self) -> dict[str, Any]:
        response = super().to_response()
        response["errors"] = list(self.result.errors)
        response["warnings"] = list(self.result.warnings)
        response["complianceIssues"] = list(self.result.compliance_issues)
        return response


class GuardFailure(ReferralWorkflowError):
    """The transition exists but its precondition is not met."""

    kind = "GuardFailure"

    def __init__(self, guard_name: str, detail: Optional[str] = None):
        super().__init__(detail or f"Conditions not met: {guard_name}")
        self.guard_name = guard_name

    def to_response(self) -> dict[str, Any]:
        response = super().to_response()
        response["guard"] = self.guard_name
        return response


class InvalidTransition(ReferralWorkflowError):
    """The target status is not reachable from the current status."""

    kind = "InvalidTransition"

    def __init__(self, current: str, target: str):
        super().__init__(f"Invalid status transition from {current} to {target}")
        self.current = current
        self.target = target


class NotFoundError(ReferralWorkflowError):
    """A referenced entity does not exist."""

    kind = "NotFoundError"

    def __init__(self, entity: str, entity_id: Any):
        super().__init__(f"{entity} {entity_id} not found")
        self.entity = entity
        self.entity_id = entity_id


class PersistenceError(ReferralWorkflowError):
    """Storage failure; the triggering transaction was rolled back."""

    kind = "PersistenceError"

    def __init__(self, operation: str):
        super().__init__(f"Storage failure while attempting to {operation}")
        self.operation = operation


class ActionFailure(ReferralWorkflowError):
    """An automated action failed. Contained by the pipeline, never surfaced."""

    kind = "ActionFailure"

    def __init__(self, action: str, detail: str):
        super().__init__(f"{action}: {detail}")
        self.action = action
