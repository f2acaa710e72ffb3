"""
Orchestration engine — the single entry point for callers.

Owns the registry of in-flight workflows and wires the plan normalizer,
workflow executor, task queue and metrics aggregator together:

  execute(instruction, options) → plan → executor.run → aggregator.record

A workflow leaves the active registry the moment it reaches a terminal
status, after its outcome has been folded into the metrics. ``execute``
never raises: failures come back as ``{"success": False, ...}``.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
import uuid
from dataclasses import replace
from pathlib import Path
from typing import Any

import config
from errors import PlanNormalizationError, WorkflowNotFoundError
from features.metrics import Metrics, MetricsAggregator
from features.task_queue import QueuedTask, QueueStatus, TaskQueue
from models.schemas import CancellationToken, Plan, PlanSource, Workflow, WorkflowStatus
from providers.base import ProviderRegistry
from utils.events import EventEmitter, Listener
from workflows.executor import WorkflowExecutor
from workflows.planner import build_plan_prompt, coerce_priority, fallback_plan, normalize

log = logging.getLogger(__name__)


class _PlanningCancelled(Exception):
    pass


class OrchestrationEngine:
    def __init__(
        self,
        registry: ProviderRegistry,
        executor: WorkflowExecutor | None = None,
        aggregator: MetricsAggregator | None = None,
        task_queue: TaskQueue | None = None,
        events: EventEmitter | None = None,
        planner_name: str | None = None,
        run_log_dir: str | Path | None = None,
    ):
        self.registry = registry
        self.events = events or EventEmitter()
        self.executor = executor or WorkflowExecutor(registry, events=self.events)
        self.aggregator = aggregator or MetricsAggregator()
        self.task_queue = task_queue or TaskQueue(events=self.events)
        self.planner_name = planner_name or config.PLANNER_PROVIDER
        self.run_log_dir = config.RUN_LOG_DIR if run_log_dir is None else run_log_dir
        self.active: dict[str, Workflow] = {}
        self.is_initialized = False
        self._started = time.monotonic()

        self.task_queue.register_handler("code_analysis", self._handle_code_analysis)
        self.task_queue.register_handler("test_execution", self._handle_test_execution)
        if self.registry.has("deployer"):
            self.task_queue.register_handler("deployment", self._handle_deployment)

    # ── Lifecycle ────────────────────────────────────────────────────────

    async def start(self) -> None:
        log.info("Initializing orchestration engine...")
        await self.registry.initialize_all()
        await self.task_queue.start()
        self.is_initialized = True
        log.info("Orchestration engine ready")

    async def shutdown(self) -> None:
        log.info("Shutting down orchestration engine (%d active workflows)", len(self.active))
        await self.task_queue.stop()
        await self.executor.shutdown()
        await self.registry.cleanup_all()
        self.is_initialized = False

    def on(self, event: str, listener: Listener) -> None:
        self.events.on(event, listener)

    # ── Workflows ────────────────────────────────────────────────────────

    async def execute(self, instruction: str, options: dict | None = None) -> dict:
        """Plan and run ``instruction``. Always returns an envelope, never raises."""
        workflow = Workflow(id=str(uuid.uuid4()), instruction=instruction, options=dict(options or {}))
        self.active[workflow.id] = workflow
        log.info("[WORKFLOW] Starting %s: %s", workflow.id, instruction)

        try:
            plan = await self._create_plan(workflow)
            workflow.attach_plan(plan)
            await self.executor.run(workflow)
        except _PlanningCancelled:
            log.info("[WORKFLOW] %s cancelled while planning", workflow.id)
        except Exception as e:
            log.error("[WORKFLOW] %s failed: %s", workflow.id, e, exc_info=True)
            if not workflow.status.is_terminal:
                workflow.error = str(e)
                workflow.transition(WorkflowStatus.FAILED)
        finally:
            self._finalize(workflow)

        return self._envelope(workflow)

    def status(self, workflow_id: str) -> Workflow:
        workflow = self.active.get(workflow_id)
        if workflow is None:
            raise WorkflowNotFoundError(workflow_id)
        return workflow

    def cancel(self, workflow_id: str) -> Workflow:
        """Cancel a pending or running workflow.

        Cooperative: no further step is issued, but a provider call already in
        flight keeps running and its result is discarded.
        """
        workflow = self.active.get(workflow_id)
        if workflow is None or workflow.status.is_terminal:
            raise WorkflowNotFoundError(workflow_id)
        workflow.token.cancel()
        self.executor.cancel(workflow_id)
        workflow.transition(WorkflowStatus.CANCELLED)
        workflow.error = "Workflow cancelled"
        self._finalize(workflow)
        log.info("[WORKFLOW] %s cancelled", workflow_id)
        return workflow

    def list_active(self) -> list[Workflow]:
        return list(self.active.values())

    def metrics(self) -> Metrics:
        return replace(
            self.aggregator.snapshot(),
            active_workflows=len(self.active),
            uptime_sec=round(time.monotonic() - self._started, 2),
        )

    # ── Queued side work ─────────────────────────────────────────────────

    def enqueue_task(self, kind: str, payload: dict | None = None) -> str:
        return self.task_queue.enqueue(kind, payload)

    def task_status(self, task_id: str) -> QueuedTask | None:
        return self.task_queue.get(task_id)

    def queue_status(self) -> QueueStatus:
        return self.task_queue.status()

    async def _handle_code_analysis(self, task: QueuedTask) -> Any:
        provider = self.registry.get("planner")
        payload = task.payload
        return await provider.analyze(
            payload.get("instruction", ""), payload.get("parameters", {}), token=CancellationToken(),
        )

    async def _handle_test_execution(self, task: QueuedTask) -> Any:
        provider = self.registry.get("tester")
        return await provider.run_tests(task.payload, token=CancellationToken())

    async def _handle_deployment(self, task: QueuedTask) -> Any:
        provider = self.registry.get("deployer")
        return await provider.deploy(task.payload, token=CancellationToken())

    # ── Internals ────────────────────────────────────────────────────────

    async def _create_plan(self, workflow: Workflow) -> Plan:
        options = workflow.options
        if options.get("steps") is not None:
            plan = normalize({"steps": options["steps"]}, source=PlanSource.PROVIDED)
        elif not self.registry.has(self.planner_name):
            log.warning("No planner provider '%s' registered, using fallback plan", self.planner_name)
            plan = fallback_plan()
        else:
            planner = self.registry.get(self.planner_name)
            prompt = build_plan_prompt(workflow.instruction, self.registry.names())
            raw = await self._await_unless_cancelled(
                planner.generate_plan(prompt, dict(options)), workflow.token,
            )
            plan = normalize(raw)

        if options.get("priority"):
            try:
                plan = replace(plan, priority=coerce_priority(options["priority"]))
            except PlanNormalizationError as e:
                log.warning("Ignoring priority override for %s: %s", workflow.id, e)

        if workflow.token.cancelled:
            raise _PlanningCancelled()
        return plan

    async def _await_unless_cancelled(self, coro, token: CancellationToken) -> Any:
        call = asyncio.ensure_future(coro)
        cancel_wait = asyncio.ensure_future(token.wait())
        try:
            await asyncio.wait({call, cancel_wait}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            cancel_wait.cancel()
        if token.cancelled:
            if not call.done():
                call.cancel()
            raise _PlanningCancelled()
        return call.result()

    def _finalize(self, workflow: Workflow) -> None:
        """Fold a finished workflow into the metrics and drop it from the registry (once)."""
        if self.active.pop(workflow.id, None) is None:
            return
        if not workflow.status.is_terminal:
            # Interrupted from outside (task cancelled): treat as a cancellation
            workflow.token.cancel()
            workflow.transition(WorkflowStatus.CANCELLED)
            workflow.error = workflow.error or "Workflow interrupted"
        self.aggregator.record(workflow)
        self._save_run_log(workflow)
        log.info("[WORKFLOW] %s finished: %s (%.0fms)",
                 workflow.id, workflow.status.value, workflow.duration_ms or 0)

    def _save_run_log(self, workflow: Workflow) -> None:
        if not self.run_log_dir:
            return
        runs_dir = Path(self.run_log_dir)
        try:
            runs_dir.mkdir(parents=True, exist_ok=True)
            file_path = runs_dir / f"{workflow.id}.json"
            with open(file_path, "w") as f:
                json.dump(workflow.to_dict(), f, indent=2, default=str)
            log.info("Run log saved: %s", file_path)
        except OSError as e:
            log.warning("Could not write run log for %s: %s", workflow.id, e)

    @staticmethod
    def _envelope(workflow: Workflow) -> dict:
        if workflow.status == WorkflowStatus.COMPLETED:
            return {
                "success": True,
                "workflow_id": workflow.id,
                "status": workflow.status.value,
                "result": workflow.result.to_dict() if workflow.result else None,
            }
        envelope = {
            "success": False,
            "workflow_id": workflow.id,
            "status": workflow.status.value,
            "error": workflow.error or f"Workflow {workflow.status.value}",
        }
        if workflow.result and workflow.result.failed_step_id:
            envelope["failed_step_id"] = workflow.result.failed_step_id
        return envelope
