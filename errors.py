"""
Exception hierarchy for the orchestrator.

Step-level errors end the owning workflow only. The engine turns them into
``{"success": False, ...}`` envelopes, so none of them escape ``execute()``.
"""

from __future__ import annotations

from typing import Any


class OrchestratorError(Exception):
    """Base class for every orchestrator error."""

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def __str__(self) -> str:
        return self.message

    def to_dict(self) -> dict[str, Any]:
        return {"type": type(self).__name__, "message": self.message, **self.details}


class PlanNormalizationError(OrchestratorError):
    """Raised while coercing a raw plan. Always recovered with the fallback plan."""


class ProviderNotFoundError(OrchestratorError):
    """Raised when a step names a capability provider that is not registered."""

    def __init__(self, name: str):
        super().__init__(f"Capability provider '{name}' not found", {"provider": name})
        self.name = name


class StepExecutionError(OrchestratorError):
    """Raised when a provider operation fails for a step."""

    def __init__(self, step_id: str, reason: str):
        super().__init__(f"Step {step_id} failed: {reason}", {"step_id": step_id})
        self.step_id = step_id
        self.reason = reason


class StepTimeoutError(OrchestratorError):
    """Raised when a step outlives its timeout.

    The provider call is not stopped; only the wait on it is abandoned.
    """

    def __init__(self, step_id: str, timeout_ms: int):
        super().__init__(
            f"Step {step_id} timed out after {timeout_ms}ms",
            {"step_id": step_id, "timeout_ms": timeout_ms},
        )
        self.step_id = step_id
        self.timeout_ms = timeout_ms


class WorkflowNotFoundError(OrchestratorError):
    """Raised by status/cancel for ids that are unknown or no longer active."""

    def __init__(self, workflow_id: str):
        super().__init__(f"Workflow {workflow_id} not found", {"workflow_id": workflow_id})
        self.workflow_id = workflow_id


class InvalidTransitionError(OrchestratorError):
    def __init__(self, workflow_id: str, current: str, target: str):
        super().__init__(
            f"Workflow {workflow_id} cannot move from {current} to {target}",
            {"workflow_id": workflow_id, "from": current, "to": target},
        )


class UnknownTaskKindError(OrchestratorError):
    def __init__(self, kind: str):
        super().__init__(f"Unknown task kind: {kind}", {"kind": kind})
        self.kind = kind
