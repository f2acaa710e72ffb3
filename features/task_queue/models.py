"""
Data models for the task queue feature.

A QueuedTask is independent of workflows: queued side work with an opaque
kind tag and payload.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from models.schemas import utcnow


class TaskStatus(str, Enum):
    QUEUED = "queued"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass
class QueuedTask:
    """A single unit of background work."""
    id: str
    kind: str
    payload: dict = field(default_factory=dict)
    status: TaskStatus = TaskStatus.QUEUED
    queued_at: datetime = field(default_factory=utcnow)
    started_at: datetime | None = None
    completed_at: datetime | None = None
    failed_at: datetime | None = None
    result: Any = None
    error: str | None = None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "kind": self.kind,
            "payload": self.payload,
            "status": self.status.value,
            "queued_at": self.queued_at.isoformat(),
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "failed_at": self.failed_at.isoformat() if self.failed_at else None,
            "result": self.result,
            "error": self.error,
        }


@dataclass(frozen=True)
class QueueStatus:
    queued: int
    active: int
    processing: bool
    max_concurrent: int
