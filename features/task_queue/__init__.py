"""
Task queue feature — bounded-concurrency background work, independent of workflows.

Public API:
    from features.task_queue import TaskQueue, QueuedTask, TaskStatus, QueueStatus
"""

from features.task_queue.models import QueuedTask, QueueStatus, TaskStatus
from features.task_queue.queue import TaskQueue

__all__ = ["QueuedTask", "QueueStatus", "TaskQueue", "TaskStatus"]
