"""
Data models for plans, workflows and their results.

Records are dataclasses; request bodies at the HTTP edge are pydantic models
(see app.py). Timestamps are timezone-aware UTC datetimes and are serialized
with isoformat().
"""

from __future__ import annotations

import asyncio
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from errors import InvalidTransitionError


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


class StepKind(str, Enum):
    ANALYZE = "analyze"
    GENERATE_CODE = "generate_code"
    RUN_TESTS = "run_tests"
    COMMIT_CHANGES = "commit_changes"
    MONITOR = "monitor"
    DEPLOY = "deploy"


class Priority(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class PlanSource(str, Enum):
    AI = "ai"
    PROVIDED = "provided"
    FALLBACK = "fallback"


class WorkflowStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in _TERMINAL


_TERMINAL = {WorkflowStatus.COMPLETED, WorkflowStatus.FAILED, WorkflowStatus.CANCELLED}

_TRANSITIONS = {
    WorkflowStatus.PENDING: {WorkflowStatus.RUNNING, WorkflowStatus.FAILED, WorkflowStatus.CANCELLED},
    WorkflowStatus.RUNNING: {WorkflowStatus.COMPLETED, WorkflowStatus.FAILED, WorkflowStatus.CANCELLED},
}


class StepStatus(str, Enum):
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass(frozen=True)
class Step:
    """One capability invocation inside a plan."""
    id: str
    kind: StepKind
    capability: str
    description: str = ""
    parameters: dict = field(default_factory=dict)
    timeout_ms: int = 60_000
    retry_limit: int = 2

    def to_dict(self) -> dict:
        data = asdict(self)
        data["kind"] = self.kind.value
        return data


@dataclass(frozen=True)
class Plan:
    """An ordered, validated sequence of steps. Immutable once attached to a workflow."""
    steps: tuple[Step, ...]
    estimated_duration_seconds: int = 300
    priority: Priority = Priority.MEDIUM
    dependencies: tuple = ()
    rollback_strategy: str = "automatic"
    source: PlanSource = PlanSource.AI

    def to_dict(self) -> dict:
        return {
            "steps": [s.to_dict() for s in self.steps],
            "estimated_duration_seconds": self.estimated_duration_seconds,
            "priority": self.priority.value,
            "dependencies": list(self.dependencies),
            "rollback_strategy": self.rollback_strategy,
            "source": self.source.value,
        }


class CancellationToken:
    """Best-effort cancel signal threaded into provider calls.

    Setting it stops the executor from issuing further steps and wakes any
    wait on an in-flight call. Providers may poll ``cancelled``; nothing forces
    a running call to stop.
    """

    def __init__(self) -> None:
        self._event = asyncio.Event()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self) -> None:
        self._event.set()

    async def wait(self) -> None:
        await self._event.wait()


@dataclass
class StepRecord:
    """Outcome of one executed step, appended to the workflow's log."""
    step_id: str
    kind: StepKind
    capability: str
    description: str
    status: StepStatus
    started_at: datetime
    finished_at: datetime
    result: Any = None
    error: str | None = None
    error_type: str | None = None
    attempts: int = 1

    @property
    def duration_ms(self) -> float:
        return round((self.finished_at - self.started_at).total_seconds() * 1000, 2)

    def to_dict(self) -> dict:
        return {
            "step_id": self.step_id,
            "kind": self.kind.value,
            "capability": self.capability,
            "description": self.description,
            "status": self.status.value,
            "result": self.result,
            "error": self.error,
            "error_type": self.error_type,
            "attempts": self.attempts,
            "started_at": _iso(self.started_at),
            "finished_at": _iso(self.finished_at),
            "duration_ms": self.duration_ms,
        }


@dataclass
class ResultSummary:
    """Per-kind artifacts pulled out of a finished step log."""
    total_steps: int = 0
    successful_steps: int = 0
    artifacts: list[str] = field(default_factory=list)
    tests_passed: int | None = None
    tests_failed: int | None = None
    commit_id: str | None = None
    commit_url: str | None = None
    analysis: Any = None
    monitoring: dict | None = None
    deployment: dict | None = None


@dataclass
class Result:
    workflow_id: str
    status: WorkflowStatus
    steps: list[StepRecord] = field(default_factory=list)
    summary: ResultSummary = field(default_factory=ResultSummary)
    error: str | None = None
    failed_step_id: str | None = None

    @property
    def succeeded(self) -> bool:
        return self.status == WorkflowStatus.COMPLETED

    def to_dict(self) -> dict:
        return {
            "workflow_id": self.workflow_id,
            "status": self.status.value,
            "steps": [s.to_dict() for s in self.steps],
            "summary": asdict(self.summary),
            "error": self.error,
            "failed_step_id": self.failed_step_id,
        }


@dataclass
class Workflow:
    """One execution instance of a plan."""
    id: str
    instruction: str
    options: dict = field(default_factory=dict)
    status: WorkflowStatus = WorkflowStatus.PENDING
    plan: Plan | None = None
    executed_steps: list[StepRecord] = field(default_factory=list)
    created_at: datetime = field(default_factory=utcnow)
    started_at: datetime | None = None
    completed_at: datetime | None = None
    failed_at: datetime | None = None
    cancelled_at: datetime | None = None
    error: str | None = None
    result: Result | None = None
    token: CancellationToken = field(default_factory=CancellationToken, repr=False, compare=False)

    def transition(self, target: WorkflowStatus) -> None:
        """Move to ``target``, stamping the matching timestamp. Terminal states are final."""
        if target not in _TRANSITIONS.get(self.status, set()):
            raise InvalidTransitionError(self.id, self.status.value, target.value)
        now = utcnow()
        self.status = target
        if target == WorkflowStatus.RUNNING:
            self.started_at = now
        elif target == WorkflowStatus.COMPLETED:
            self.completed_at = now
        elif target == WorkflowStatus.FAILED:
            self.failed_at = now
        elif target == WorkflowStatus.CANCELLED:
            self.cancelled_at = now

    def attach_plan(self, plan: Plan) -> None:
        self.transition(WorkflowStatus.RUNNING)
        self.plan = plan

    @property
    def finished_at(self) -> datetime | None:
        return self.completed_at or self.failed_at or self.cancelled_at

    @property
    def duration_ms(self) -> float | None:
        if self.finished_at is None:
            return None
        return (self.finished_at - self.created_at).total_seconds() * 1000

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "instruction": self.instruction,
            "options": self.options,
            "status": self.status.value,
            "plan": self.plan.to_dict() if self.plan else None,
            "executed_steps": [s.to_dict() for s in self.executed_steps],
            "created_at": _iso(self.created_at),
            "started_at": _iso(self.started_at),
            "completed_at": _iso(self.completed_at),
            "failed_at": _iso(self.failed_at),
            "cancelled_at": _iso(self.cancelled_at),
            "error": self.error,
            "result": self.result.to_dict() if self.result else None,
        }
