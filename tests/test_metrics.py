"""
Tests for MetricsAggregator and the Metrics snapshot.
"""

import dataclasses
from datetime import timedelta

import pytest

from features.metrics import Metrics, MetricsAggregator
from models.schemas import Workflow, WorkflowStatus, utcnow


def finished(workflow_id, status, duration_ms):
    created = utcnow()
    end = created + timedelta(milliseconds=duration_ms)
    stamp = {
        WorkflowStatus.COMPLETED: "completed_at",
        WorkflowStatus.FAILED: "failed_at",
        WorkflowStatus.CANCELLED: "cancelled_at",
    }[status]
    return Workflow(id=workflow_id, instruction="x", status=status, created_at=created, **{stamp: end})


@pytest.fixture
def aggregator():
    return MetricsAggregator()


class TestRecord:
    def test_empty_snapshot(self, aggregator):
        metrics = aggregator.snapshot()

        assert metrics.total_workflows == 0
        assert metrics.success_rate == 0.0
        assert metrics.average_duration_ms == 0.0

    def test_counts_by_status(self, aggregator):
        aggregator.record(finished("a", WorkflowStatus.COMPLETED, 100))
        aggregator.record(finished("b", WorkflowStatus.FAILED, 100))
        aggregator.record(finished("c", WorkflowStatus.CANCELLED, 100))
        aggregator.record(finished("d", WorkflowStatus.COMPLETED, 100))

        metrics = aggregator.snapshot()
        assert metrics.total_workflows == 4
        assert metrics.completed_workflows == 2
        assert metrics.failed_workflows == 1
        assert metrics.cancelled_workflows == 1
        assert metrics.success_rate == 0.5

    def test_incremental_average(self, aggregator):
        aggregator.record(finished("a", WorkflowStatus.COMPLETED, 100))
        aggregator.record(finished("b", WorkflowStatus.FAILED, 300))
        assert aggregator.snapshot().average_duration_ms == pytest.approx(200)

        aggregator.record(finished("c", WorkflowStatus.CANCELLED, 800))
        assert aggregator.snapshot().average_duration_ms == pytest.approx(400)

    def test_non_terminal_is_ignored(self, aggregator):
        assert aggregator.record(Workflow(id="p", instruction="x")) is False
        assert aggregator.snapshot().total_workflows == 0

    def test_duplicate_is_ignored(self, aggregator):
        workflow = finished("a", WorkflowStatus.COMPLETED, 100)

        assert aggregator.record(workflow) is True
        assert aggregator.record(workflow) is False
        assert aggregator.snapshot().total_workflows == 1

    def test_reset(self, aggregator):
        aggregator.record(finished("a", WorkflowStatus.COMPLETED, 100))
        aggregator.reset()

        assert aggregator.snapshot() == Metrics()


class TestSnapshot:
    def test_snapshot_is_read_only(self, aggregator):
        aggregator.record(finished("a", WorkflowStatus.COMPLETED, 100))
        metrics = aggregator.snapshot()

        with pytest.raises(dataclasses.FrozenInstanceError):
            metrics.total_workflows = 99
        assert aggregator.snapshot().total_workflows == 1

    def test_snapshots_are_independent(self, aggregator):
        before = aggregator.snapshot()
        aggregator.record(finished("a", WorkflowStatus.COMPLETED, 100))

        assert before.total_workflows == 0
        assert aggregator.snapshot().total_workflows == 1

    def test_to_dict(self):
        data = Metrics(total_workflows=3, completed_workflows=2, average_duration_ms=12.3456).to_dict()

        assert data["success_rate"] == 0.6667
        assert data["average_duration_ms"] == 12.35
        assert data["total_workflows"] == 3
