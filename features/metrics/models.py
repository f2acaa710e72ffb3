"""
Data models for the metrics feature.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass


@dataclass(frozen=True)
class Metrics:
    """Read-only snapshot of aggregate workflow statistics.

    ``success_rate`` is completed / total and is 0.0 before any workflow has
    finished.
    """
    total_workflows: int = 0
    completed_workflows: int = 0
    failed_workflows: int = 0
    cancelled_workflows: int = 0
    average_duration_ms: float = 0.0
    active_workflows: int = 0
    uptime_sec: float = 0.0

    @property
    def success_rate(self) -> float:
        if self.total_workflows == 0:
            return 0.0
        return self.completed_workflows / self.total_workflows

    def to_dict(self) -> dict:
        data = asdict(self)
        data["success_rate"] = round(self.success_rate, 4)
        data["average_duration_ms"] = round(self.average_duration_ms, 2)
        return data
