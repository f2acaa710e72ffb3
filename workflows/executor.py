"""
Workflow executor — drives one workflow through its plan, step by step.

Steps run strictly in plan order and never overlap. Each provider call runs
as its own task and is waited on for ``timeout_ms``:

  * timeout      → the step fails with StepTimeoutError. The call is
                   abandoned, not cancelled; it may still finish in the
                   background and its outcome is discarded (logical timeout).
  * cancellation → the wait wakes up, the call is abandoned the same way and
                   no further step is issued.
  * provider error / missing provider → the workflow fails, later steps are
                   never invoked.

``retry_limit`` on a step is only acted on when the executor is built with
``honor_retry_limit=True``.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable

import config
from errors import (
    OrchestratorError,
    ProviderNotFoundError,
    StepExecutionError,
    StepTimeoutError,
)
from models.schemas import (
    Result,
    ResultSummary,
    Step,
    StepKind,
    StepRecord,
    StepStatus,
    Workflow,
    WorkflowStatus,
    utcnow,
)
from providers.base import ProviderRegistry
from utils.events import EventEmitter

log = logging.getLogger(__name__)


class _Cancelled(Exception):
    """Internal signal: the workflow was cancelled while a step was in flight."""


def _call_analyze(provider, step: Step, workflow: Workflow, prior: list[StepRecord]):
    return provider.analyze(workflow.instruction, step.parameters, token=workflow.token)


def _call_generate_code(provider, step: Step, workflow: Workflow, prior: list[StepRecord]):
    return provider.generate_code(workflow.instruction, step.parameters, token=workflow.token)


def _call_run_tests(provider, step: Step, workflow: Workflow, prior: list[StepRecord]):
    return provider.run_tests(step.parameters, token=workflow.token)


def _call_commit_changes(provider, step: Step, workflow: Workflow, prior: list[StepRecord]):
    params = step.parameters
    files = params.get("files")
    if not files:
        files = [f for record in prior if record.kind == StepKind.GENERATE_CODE
                 for f in _files_of(record.result)]
    change = {
        "message": params.get("message") or f"Automated commit for workflow {workflow.id}",
        "files": files,
        "branch": params.get("branch") or config.DEFAULT_BRANCH,
    }
    return provider.commit_changes(change, token=workflow.token)


def _call_monitor(provider, step: Step, workflow: Workflow, prior: list[StepRecord]):
    return provider.setup_monitoring(workflow.id, step.parameters, token=workflow.token)


def _call_deploy(provider, step: Step, workflow: Workflow, prior: list[StepRecord]):
    return provider.deploy(step.parameters, token=workflow.token)


# kind -> (provider operation, call builder)
STEP_DISPATCH: dict[StepKind, tuple[str, Callable[..., Awaitable[Any]]]] = {
    StepKind.ANALYZE: ("analyze", _call_analyze),
    StepKind.GENERATE_CODE: ("generate_code", _call_generate_code),
    StepKind.RUN_TESTS: ("run_tests", _call_run_tests),
    StepKind.COMMIT_CHANGES: ("commit_changes", _call_commit_changes),
    StepKind.MONITOR: ("setup_monitoring", _call_monitor),
    StepKind.DEPLOY: ("deploy", _call_deploy),
}

_missing = set(StepKind) - set(STEP_DISPATCH)
if _missing:
    raise RuntimeError(f"No executor dispatch for step kinds: {sorted(k.value for k in _missing)}")


def _files_of(result: Any) -> list[dict]:
    if isinstance(result, dict) and isinstance(result.get("files"), list):
        return list(result["files"])
    return []


def build_summary(records: list[StepRecord]) -> ResultSummary:
    """Pull per-kind artifacts out of a step log."""
    summary = ResultSummary(
        total_steps=len(records),
        successful_steps=sum(1 for r in records if r.status == StepStatus.COMPLETED),
    )
    for record in records:
        if record.status != StepStatus.COMPLETED:
            continue
        data = record.result if isinstance(record.result, dict) else {}
        if record.kind == StepKind.ANALYZE:
            summary.analysis = record.result
        elif record.kind == StepKind.GENERATE_CODE:
            for f in _files_of(data):
                path = f.get("path") if isinstance(f, dict) else f
                if path:
                    summary.artifacts.append(str(path))
        elif record.kind == StepKind.RUN_TESTS:
            summary.tests_passed = int(data.get("passed") or 0)
            summary.tests_failed = int(data.get("failed") or 0)
        elif record.kind == StepKind.COMMIT_CHANGES:
            summary.commit_id = data.get("commit_id") or data.get("sha")
            summary.commit_url = data.get("url") or data.get("html_url")
        elif record.kind == StepKind.MONITOR:
            summary.monitoring = data
        elif record.kind == StepKind.DEPLOY:
            summary.deployment = data
    return summary


class WorkflowExecutor:
    """Runs workflows against a provider registry.

    Imposes no ceiling on how many workflows run at once; callers that need one
    must bound ``run`` themselves.
    """

    def __init__(
        self,
        registry: ProviderRegistry,
        events: EventEmitter | None = None,
        honor_retry_limit: bool | None = None,
        retry_base_delay: float | None = None,
    ):
        self.registry = registry
        self.events = events or EventEmitter()
        self.honor_retry_limit = (
            config.HONOR_RETRY_LIMIT if honor_retry_limit is None else honor_retry_limit
        )
        self.retry_base_delay = (
            config.RETRY_BASE_DELAY if retry_base_delay is None else retry_base_delay
        )
        self.running: dict[str, Workflow] = {}
        self._abandoned: set[asyncio.Task] = set()

    @property
    def abandoned_count(self) -> int:
        return len(self._abandoned)

    async def run(self, workflow: Workflow) -> Result:
        """Execute every step of ``workflow.plan``; the workflow must be running."""
        if workflow.plan is None:
            raise ValueError(f"Workflow {workflow.id} has no plan")
        plan = workflow.plan
        self.running[workflow.id] = workflow
        self.events.emit("workflow.started", {
            "workflow_id": workflow.id, "plan": plan.to_dict(),
        })
        log.info("[WORKFLOW] Executing %s with %d steps (plan source: %s)",
                 workflow.id, len(plan.steps), plan.source.value)

        try:
            for step in plan.steps:
                if workflow.token.cancelled:
                    return self._cancelled_result(workflow)
                try:
                    record = await self._execute_step(step, workflow)
                except _Cancelled:
                    return self._cancelled_result(workflow)
                workflow.executed_steps.append(record)
                if record.status == StepStatus.FAILED:
                    if workflow.token.cancelled:
                        return self._cancelled_result(workflow)
                    return self._fail(workflow, record)

            if workflow.token.cancelled:
                return self._cancelled_result(workflow)
            workflow.transition(WorkflowStatus.COMPLETED)
            result = Result(
                workflow_id=workflow.id,
                status=WorkflowStatus.COMPLETED,
                steps=list(workflow.executed_steps),
                summary=build_summary(workflow.executed_steps),
            )
            workflow.result = result
            self.events.emit("workflow.completed", {
                "workflow_id": workflow.id, "result": result.to_dict(),
            })
            log.info("[WORKFLOW] %s completed (%d steps)", workflow.id, len(plan.steps))
            return result
        finally:
            self.running.pop(workflow.id, None)

    def cancel(self, workflow_id: str) -> bool:
        """Stop issuing steps for a running workflow. Does not interrupt the in-flight call."""
        workflow = self.running.get(workflow_id)
        if workflow is None:
            return False
        workflow.token.cancel()
        log.info("[WORKFLOW] Cancellation requested for %s", workflow_id)
        return True

    async def shutdown(self) -> None:
        """Cancel provider calls that were abandoned by a timeout or cancel and are still running."""
        pending = [t for t in self._abandoned if not t.done()]
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
            log.info("Cancelled %d abandoned provider calls", len(pending))
        self._abandoned.clear()

    # ── Steps ────────────────────────────────────────────────────────────

    async def _execute_step(self, step: Step, workflow: Workflow) -> StepRecord:
        started_at = utcnow()
        self.events.emit("step.started", {
            "workflow_id": workflow.id, "step_id": step.id, "kind": step.kind.value,
        })
        log.info("[STEP] %s/%s started: %s (%s via %s)",
                 workflow.id, step.id, step.description, step.kind.value, step.capability)

        max_attempts = 1 + (step.retry_limit if self.honor_retry_limit else 0)
        attempt = 0
        while True:
            attempt += 1
            try:
                result = await self._attempt(step, workflow)
            except ProviderNotFoundError as e:
                return self._failed_record(step, workflow, started_at, e, attempt)
            except (StepExecutionError, StepTimeoutError) as e:
                if attempt >= max_attempts or workflow.token.cancelled:
                    return self._failed_record(step, workflow, started_at, e, attempt)
                delay = self.retry_base_delay * (2 ** (attempt - 1))
                log.warning("[STEP] %s/%s attempt %d/%d failed, retrying in %.2fs: %s",
                            workflow.id, step.id, attempt, max_attempts, delay, e)
                await self._backoff(delay, workflow)
                continue

            record = StepRecord(
                step_id=step.id,
                kind=step.kind,
                capability=step.capability,
                description=step.description,
                status=StepStatus.COMPLETED,
                started_at=started_at,
                finished_at=utcnow(),
                result=result,
                attempts=attempt,
            )
            self.events.emit("step.completed", {
                "workflow_id": workflow.id, "step": record.to_dict(),
            })
            log.info("[STEP] %s/%s completed (%.0fms)", workflow.id, step.id, record.duration_ms)
            return record

    async def _backoff(self, delay: float, workflow: Workflow) -> None:
        """Sleep before a retry; a cancel during the sleep ends the step."""
        try:
            await asyncio.wait_for(workflow.token.wait(), timeout=delay)
        except asyncio.TimeoutError:
            return
        raise _Cancelled()

    async def _attempt(self, step: Step, workflow: Workflow) -> Any:
        if workflow.token.cancelled:
            raise _Cancelled()
        provider = self.registry.get(step.capability)
        operation, build_call = STEP_DISPATCH[step.kind]
        if not callable(getattr(provider, operation, None)):
            raise StepExecutionError(
                step.id, f"provider '{step.capability}' does not support '{operation}'",
            )

        try:
            call = asyncio.ensure_future(build_call(provider, step, workflow, workflow.executed_steps))
        except Exception as e:
            raise StepExecutionError(step.id, str(e)) from e

        cancel_wait = asyncio.ensure_future(workflow.token.wait())
        try:
            done, _ = await asyncio.wait(
                {call, cancel_wait},
                timeout=step.timeout_ms / 1000,
                return_when=asyncio.FIRST_COMPLETED,
            )
        finally:
            cancel_wait.cancel()

        if call not in done:
            self._abandon(call, workflow, step)
            if workflow.token.cancelled:
                raise _Cancelled()
            raise StepTimeoutError(step.id, step.timeout_ms)

        if workflow.token.cancelled:
            # Finished, but the workflow was cancelled meanwhile: discard
            self._consume(call)
            raise _Cancelled()

        try:
            return call.result()
        except OrchestratorError:
            raise
        except asyncio.CancelledError as e:
            raise StepExecutionError(step.id, "provider call was cancelled") from e
        except Exception as e:
            raise StepExecutionError(step.id, str(e) or type(e).__name__) from e

    def _abandon(self, call: asyncio.Future, workflow: Workflow, step: Step) -> None:
        self._abandoned.add(call)
        call.add_done_callback(self._abandoned_done)
        log.warning("[STEP] %s/%s abandoned; provider call keeps running in background",
                    workflow.id, step.id)

    def _abandoned_done(self, call: asyncio.Future) -> None:
        self._abandoned.discard(call)
        self._consume(call)

    @staticmethod
    def _consume(call: asyncio.Future) -> None:
        if call.cancelled():
            return
        error = call.exception()
        if error is not None:
            log.info("Discarded outcome of abandoned provider call: %s", error)

    # ── Outcomes ─────────────────────────────────────────────────────────

    def _failed_record(self, step: Step, workflow: Workflow, started_at, error: Exception,
                       attempts: int) -> StepRecord:
        record = StepRecord(
            step_id=step.id,
            kind=step.kind,
            capability=step.capability,
            description=step.description,
            status=StepStatus.FAILED,
            started_at=started_at,
            finished_at=utcnow(),
            error=str(error),
            error_type=type(error).__name__,
            attempts=attempts,
        )
        self.events.emit("step.failed", {
            "workflow_id": workflow.id, "step": record.to_dict(),
        })
        log.error("[STEP] %s/%s failed after %d attempt(s): %s",
                  workflow.id, step.id, attempts, error)
        return record

    def _fail(self, workflow: Workflow, record: StepRecord) -> Result:
        workflow.transition(WorkflowStatus.FAILED)
        workflow.error = record.error
        result = Result(
            workflow_id=workflow.id,
            status=WorkflowStatus.FAILED,
            steps=list(workflow.executed_steps),
            summary=build_summary(workflow.executed_steps),
            error=record.error,
            failed_step_id=record.step_id,
        )
        workflow.result = result
        self.events.emit("workflow.failed", {
            "workflow_id": workflow.id,
            "error": record.error,
            "error_type": record.error_type,
            "failed_step_id": record.step_id,
            "completed_steps": result.summary.successful_steps,
            "total_steps": len(workflow.plan.steps),
        })
        return result

    def _cancelled_result(self, workflow: Workflow) -> Result:
        # The engine may already have moved the workflow to cancelled
        if not workflow.status.is_terminal:
            workflow.transition(WorkflowStatus.CANCELLED)
        result = Result(
            workflow_id=workflow.id,
            status=WorkflowStatus.CANCELLED,
            steps=list(workflow.executed_steps),
            summary=build_summary(workflow.executed_steps),
            error="Workflow cancelled",
        )
        workflow.result = result
        self.events.emit("workflow.cancelled", {
            "workflow_id": workflow.id, "completed_steps": len(workflow.executed_steps),
        })
        log.info("[WORKFLOW] %s cancelled after %d steps", workflow.id, len(workflow.executed_steps))
        return result
