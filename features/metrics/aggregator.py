"""
Metrics aggregator — folds terminal workflow outcomes into running counters.

Only derived statistics are kept; workflow objects are never stored. The
average duration is an incremental mean over every recorded workflow:

    avg_n = (avg_{n-1} * (n - 1) + duration) / n
"""

from __future__ import annotations

import logging
from collections import deque

from features.metrics.models import Metrics
from models.schemas import Workflow, WorkflowStatus

log = logging.getLogger(__name__)

# Remembered ids guarding against double counting
_RECENT_IDS = 10_000


class MetricsAggregator:
    def __init__(self) -> None:
        self.reset()

    def reset(self) -> None:
        self._total = 0
        self._completed = 0
        self._failed = 0
        self._cancelled = 0
        self._average_ms = 0.0
        self._recorded: set[str] = set()
        self._recorded_order: deque[str] = deque()

    def record(self, workflow: Workflow) -> bool:
        """Record a workflow that just reached a terminal status.

        Returns False (and changes nothing) for non-terminal workflows and for
        ids that were already recorded.
        """
        if not workflow.status.is_terminal:
            log.warning("Not recording workflow %s in non-terminal status %s",
                        workflow.id, workflow.status.value)
            return False
        if workflow.id in self._recorded:
            log.warning("Workflow %s already recorded, ignoring", workflow.id)
            return False
        self._remember(workflow.id)

        self._total += 1
        if workflow.status == WorkflowStatus.COMPLETED:
            self._completed += 1
        elif workflow.status == WorkflowStatus.FAILED:
            self._failed += 1
        else:
            self._cancelled += 1

        duration = workflow.duration_ms or 0.0
        n = self._total
        self._average_ms = (self._average_ms * (n - 1) + duration) / n
        log.info("[METRICS] Recorded %s (%s, %.0fms); total=%d",
                 workflow.id, workflow.status.value, duration, n)
        return True

    def snapshot(self) -> Metrics:
        return Metrics(
            total_workflows=self._total,
            completed_workflows=self._completed,
            failed_workflows=self._failed,
            cancelled_workflows=self._cancelled,
            average_duration_ms=self._average_ms,
        )

    def _remember(self, workflow_id: str) -> None:
        self._recorded.add(workflow_id)
        self._recorded_order.append(workflow_id)
        if len(self._recorded_order) > _RECENT_IDS:
            self._recorded.discard(self._recorded_order.popleft())
