"""
Tests for OrchestrationEngine: planning sources, envelopes, the active
registry, cancellation, metrics and queued side work.
"""

import asyncio
import json
from unittest.mock import AsyncMock

import pytest

from errors import WorkflowNotFoundError
from features.task_queue import TaskQueue, TaskStatus
from models.schemas import WorkflowStatus
from providers.base import ProviderRegistry
from workflows.engine import OrchestrationEngine

PROVIDED_STEPS = [
    {"id": "one", "kind": "analyze"},
    {"id": "two", "kind": "run_tests", "timeout_ms": 5000},
]


async def wait_until(predicate, timeout=1.0):
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.005)


class TestExecute:
    @pytest.mark.asyncio
    async def test_unparseable_plan_uses_fallback(self, engine, calls):
        envelope = await engine.execute("add a health endpoint")

        assert envelope["success"] is True
        assert envelope["workflow_id"]
        assert envelope["status"] == "completed"
        steps = envelope["result"]["steps"]
        assert [s["step_id"] for s in steps] == [
            "fallback-1-analyze",
            "fallback-2-generate_code",
            "fallback-3-run_tests",
            "fallback-4-commit_changes",
        ]
        assert [c[0] for c in calls] == [
            "generate_plan", "analyze", "generate_code", "run_tests", "commit_changes",
        ]
        assert engine.metrics().completed_workflows == 1
        assert engine.active == {}

    @pytest.mark.asyncio
    async def test_ai_plan_is_used(self, engine, planner, calls):
        planner.plan = json.dumps({"steps": [{"id": "only", "kind": "run_tests"}], "priority": "low"})

        envelope = await engine.execute("run the suite")

        assert envelope["success"] is True
        assert [s["step_id"] for s in envelope["result"]["steps"]] == ["only"]
        prompt = calls[0][1]
        assert '"run the suite"' in prompt
        assert "planner" in prompt

    @pytest.mark.asyncio
    async def test_provided_steps_skip_the_planner(self, engine, planner):
        planner.generate_plan = AsyncMock()

        envelope = await engine.execute("run the suite", {"steps": PROVIDED_STEPS})

        assert envelope["success"] is True
        assert [s["step_id"] for s in envelope["result"]["steps"]] == ["one", "two"]
        planner.generate_plan.assert_not_called()

    @pytest.mark.asyncio
    async def test_priority_override(self, engine):
        started = []
        engine.on("workflow.started", lambda event, payload: started.append(payload["plan"]))

        await engine.execute("run the suite", {"steps": PROVIDED_STEPS, "priority": "critical"})

        assert started[0]["priority"] == "critical"
        assert started[0]["source"] == "provided"

    @pytest.mark.asyncio
    async def test_invalid_priority_override_is_ignored(self, engine):
        started = []
        engine.on("workflow.started", lambda event, payload: started.append(payload["plan"]))

        envelope = await engine.execute("run the suite", {"steps": PROVIDED_STEPS, "priority": "asap"})

        assert envelope["success"] is True
        assert started[0]["priority"] == "medium"

    @pytest.mark.asyncio
    async def test_missing_planner_uses_fallback(self, registry, calls):
        engine = OrchestrationEngine(registry, planner_name="oracle", run_log_dir="")

        envelope = await engine.execute("add a health endpoint")

        assert envelope["success"] is True
        assert "generate_plan" not in [c[0] for c in calls]
        assert len(envelope["result"]["steps"]) == 4
        await engine.shutdown()

    @pytest.mark.asyncio
    async def test_planner_error_fails_the_workflow(self, engine, planner):
        planner.generate_plan = AsyncMock(side_effect=ConnectionError("planner unreachable"))

        envelope = await engine.execute("add a health endpoint")

        assert envelope["success"] is False
        assert envelope["status"] == "failed"
        assert envelope["error"] == "planner unreachable"
        metrics = engine.metrics()
        assert metrics.failed_workflows == 1
        assert metrics.total_workflows == 1
        assert engine.active == {}

    @pytest.mark.asyncio
    async def test_step_failure_envelope(self, engine, tester):
        tester.run_tests = AsyncMock(side_effect=RuntimeError("3 tests failed"))

        envelope = await engine.execute("run the suite", {"steps": PROVIDED_STEPS})

        assert envelope["success"] is False
        assert envelope["status"] == "failed"
        assert envelope["failed_step_id"] == "two"
        assert "3 tests failed" in envelope["error"]
        assert engine.metrics().success_rate == 0.0

    @pytest.mark.asyncio
    async def test_run_log_written(self, registry, tmp_path):
        engine = OrchestrationEngine(registry, run_log_dir=tmp_path)

        envelope = await engine.execute("run the suite", {"steps": PROVIDED_STEPS})

        saved = json.loads((tmp_path / f"{envelope['workflow_id']}.json").read_text())
        assert saved["status"] == "completed"
        assert saved["plan"]["source"] == "provided"
        assert len(saved["executed_steps"]) == 2
        await engine.shutdown()


class TestStatusAndCancel:
    @pytest.mark.asyncio
    async def test_unknown_workflow(self, engine):
        with pytest.raises(WorkflowNotFoundError):
            engine.status("nope")
        with pytest.raises(WorkflowNotFoundError):
            engine.cancel("nope")

    @pytest.mark.asyncio
    async def test_finished_workflow_is_not_found(self, engine):
        envelope = await engine.execute("run the suite", {"steps": PROVIDED_STEPS})

        with pytest.raises(WorkflowNotFoundError):
            engine.status(envelope["workflow_id"])
        with pytest.raises(WorkflowNotFoundError):
            engine.cancel(envelope["workflow_id"])

    @pytest.mark.asyncio
    async def test_cancel_running_workflow(self, engine, tester, git):
        entered = asyncio.Event()

        async def stuck(parameters=None, *, token=None):
            entered.set()
            await asyncio.sleep(5)

        tester.run_tests = stuck
        git.commit_changes = AsyncMock()
        steps = PROVIDED_STEPS + [{"id": "three", "kind": "commit_changes"}]
        running = asyncio.create_task(engine.execute("run the suite", {"steps": steps}))
        await asyncio.wait_for(entered.wait(), timeout=1)

        workflow = engine.list_active()[0]
        assert engine.status(workflow.id).status == WorkflowStatus.RUNNING
        cancelled = engine.cancel(workflow.id)
        envelope = await asyncio.wait_for(running, timeout=1)

        assert cancelled.status == WorkflowStatus.CANCELLED
        assert envelope["success"] is False
        assert envelope["status"] == "cancelled"
        assert engine.active == {}
        assert [r.step_id for r in workflow.executed_steps] == ["one"]
        git.commit_changes.assert_not_called()
        metrics = engine.metrics()
        assert metrics.cancelled_workflows == 1
        assert metrics.total_workflows == 1
        with pytest.raises(WorkflowNotFoundError):
            engine.cancel(workflow.id)

    @pytest.mark.asyncio
    async def test_cancel_pending_workflow(self, engine, planner, calls):
        entered = asyncio.Event()

        async def slow_plan(prompt, options=None):
            entered.set()
            await asyncio.sleep(5)

        planner.generate_plan = slow_plan
        running = asyncio.create_task(engine.execute("add a health endpoint"))
        await asyncio.wait_for(entered.wait(), timeout=1)

        workflow = engine.list_active()[0]
        assert workflow.status == WorkflowStatus.PENDING
        engine.cancel(workflow.id)
        envelope = await asyncio.wait_for(running, timeout=1)

        assert envelope["status"] == "cancelled"
        assert workflow.plan is None
        assert calls == []
        assert engine.metrics().cancelled_workflows == 1
        assert engine.active == {}


class TestMetrics:
    @pytest.mark.asyncio
    async def test_active_and_uptime(self, engine, tester):
        entered = asyncio.Event()
        release = asyncio.Event()

        async def gated(parameters=None, *, token=None):
            entered.set()
            await release.wait()
            return {"passed": 1, "failed": 0}

        tester.run_tests = gated
        running = asyncio.create_task(engine.execute("run the suite", {"steps": PROVIDED_STEPS}))
        await asyncio.wait_for(entered.wait(), timeout=1)

        assert engine.metrics().active_workflows == 1
        release.set()
        await running

        metrics = engine.metrics()
        assert metrics.active_workflows == 0
        assert metrics.completed_workflows == 1
        assert metrics.success_rate == 1.0
        assert metrics.uptime_sec >= 0


class TestQueuedWork:
    @pytest.mark.asyncio
    async def test_code_analysis_task(self, engine):
        await engine.start()
        task_id = engine.enqueue_task("code_analysis", {"instruction": "review auth"})
        await asyncio.wait_for(engine.task_queue.join(), timeout=1)

        task = engine.task_status(task_id)
        assert task.status == TaskStatus.COMPLETED
        assert task.result["complexity"] == "low"

    @pytest.mark.asyncio
    async def test_deployment_task(self, engine):
        await engine.start()
        task_id = engine.enqueue_task("deployment", {"environment": "production"})
        await asyncio.wait_for(engine.task_queue.join(), timeout=1)

        assert engine.task_status(task_id).result["environment"] == "production"

    @pytest.mark.asyncio
    async def test_deployment_not_routed_without_deployer(self, planner, tester, git):
        registry = ProviderRegistry()
        for provider in (planner, tester, git):
            registry.register(provider)
        engine = OrchestrationEngine(
            registry, task_queue=TaskQueue(max_concurrent=3, poll_interval=0.01), run_log_dir="",
        )
        await engine.start()
        try:
            task_id = engine.enqueue_task("deployment", {"environment": "production"})
            await asyncio.wait_for(engine.task_queue.join(), timeout=1)

            task = engine.task_status(task_id)
            assert task.status == TaskStatus.FAILED
            assert task.error == "Unknown task kind: deployment"
        finally:
            await engine.shutdown()

    @pytest.mark.asyncio
    async def test_queue_status(self, engine):
        engine.enqueue_task("test_execution", {})

        status = engine.queue_status()
        assert status.queued == 1
        assert status.max_concurrent == 3


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_start_and_shutdown_hit_every_provider(self, engine, planner, git):
        await engine.start()
        assert engine.is_initialized is True
        assert planner.initialized and git.initialized

        await engine.shutdown()
        assert engine.is_initialized is False
        assert planner.cleaned_up and git.cleaned_up
