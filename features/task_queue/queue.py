"""
Task Queue — bounded-concurrency execution of background tasks.

A single admission loop starts head-of-queue tasks while fewer than
``max_concurrent`` are active. Between admissions it sleeps until woken by an
enqueue or a task finishing, with ``poll_interval`` as the upper bound on the
wait. Task failures are isolated: they are logged and emitted as
``task.failed`` and never raised to whoever enqueued the task.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from collections import deque
from typing import Any, Awaitable, Callable

import config
from errors import UnknownTaskKindError
from features.task_queue.models import QueuedTask, QueueStatus, TaskStatus
from models.schemas import utcnow
from utils.events import EventEmitter

log = logging.getLogger(__name__)

TaskHandler = Callable[[QueuedTask], Awaitable[Any]]


class TaskQueue:
    def __init__(
        self,
        max_concurrent: int | None = None,
        poll_interval: float | None = None,
        history_size: int | None = None,
        events: EventEmitter | None = None,
    ):
        self.max_concurrent = config.QUEUE_MAX_CONCURRENT if max_concurrent is None else max_concurrent
        if self.max_concurrent < 1:
            raise ValueError("max_concurrent must be at least 1")
        self.poll_interval = config.QUEUE_POLL_INTERVAL if poll_interval is None else poll_interval
        self.events = events or EventEmitter()
        self.processing = False

        self._queue: deque[QueuedTask] = deque()
        self._active: dict[str, QueuedTask] = {}
        self._history: deque[QueuedTask] = deque(
            maxlen=config.QUEUE_HISTORY_SIZE if history_size is None else history_size,
        )
        self._handlers: dict[str, TaskHandler] = {}
        self._running: set[asyncio.Task] = set()
        self._wakeup = asyncio.Event()
        self._idle = asyncio.Event()
        self._idle.set()
        self._loop_task: asyncio.Task | None = None

    # ── Public API ───────────────────────────────────────────────────────

    def register_handler(self, kind: str, handler: TaskHandler) -> None:
        self._handlers[kind] = handler

    def enqueue(self, kind: str, payload: dict | None = None, task_id: str | None = None) -> str:
        """Append a task to the FIFO tail. Never blocks."""
        task = QueuedTask(id=task_id or uuid.uuid4().hex, kind=kind, payload=payload or {})
        self._queue.append(task)
        self._idle.clear()
        self._wakeup.set()
        log.info("[QUEUE] Queued %s (%s), %d waiting", task.id, kind, len(self._queue))
        self.events.emit("task.queued", task.to_dict())
        return task.id

    def status(self) -> QueueStatus:
        return QueueStatus(
            queued=len(self._queue),
            active=len(self._active),
            processing=self.processing,
            max_concurrent=self.max_concurrent,
        )

    def get(self, task_id: str) -> QueuedTask | None:
        """Look a task up among queued, active and recently finished tasks."""
        if task_id in self._active:
            return self._active[task_id]
        for task in self._queue:
            if task.id == task_id:
                return task
        for task in reversed(self._history):
            if task.id == task_id:
                return task
        return None

    async def start(self) -> None:
        if self.processing:
            return
        self.processing = True
        self._loop_task = asyncio.create_task(self._admission_loop())
        log.info("[QUEUE] Started (max_concurrent=%d)", self.max_concurrent)

    async def stop(self, cancel_active: bool = True) -> None:
        """Stop admitting tasks; by default also cancel the ones in flight."""
        self.processing = False
        self._wakeup.set()
        if self._loop_task is not None:
            await self._loop_task
            self._loop_task = None
        if cancel_active:
            for running in list(self._running):
                running.cancel()
        if self._running:
            await asyncio.gather(*self._running, return_exceptions=True)
        log.info("[QUEUE] Stopped, %d tasks left queued", len(self._queue))

    async def join(self) -> None:
        """Wait until nothing is queued or active."""
        await self._idle.wait()

    # ── Internals ────────────────────────────────────────────────────────

    async def _admission_loop(self) -> None:
        while self.processing:
            while self._queue and len(self._active) < self.max_concurrent:
                self._admit(self._queue.popleft())
            self._wakeup.clear()
            try:
                await asyncio.wait_for(self._wakeup.wait(), timeout=self.poll_interval)
            except asyncio.TimeoutError:
                pass

    def _admit(self, task: QueuedTask) -> None:
        self._active[task.id] = task
        task.status = TaskStatus.PROCESSING
        task.started_at = utcnow()
        self.events.emit("task.started", task.to_dict())
        running = asyncio.create_task(self._process(task))
        self._running.add(running)
        running.add_done_callback(self._running.discard)

    async def _process(self, task: QueuedTask) -> None:
        try:
            handler = self._handlers.get(task.kind)
            if handler is None:
                raise UnknownTaskKindError(task.kind)
            task.result = await handler(task)
            task.status = TaskStatus.COMPLETED
            task.completed_at = utcnow()
            log.info("[QUEUE] Completed %s (%s)", task.id, task.kind)
            self.events.emit("task.completed", task.to_dict())
        except asyncio.CancelledError:
            self._mark_failed(task, "Task cancelled")
            raise
        except Exception as e:
            self._mark_failed(task, str(e) or type(e).__name__)
        finally:
            self._active.pop(task.id, None)
            self._history.append(task)
            if not self._queue and not self._active:
                self._idle.set()
            self._wakeup.set()

    def _mark_failed(self, task: QueuedTask, error: str) -> None:
        task.status = TaskStatus.FAILED
        task.error = error
        task.failed_at = utcnow()
        log.error("[QUEUE] Failed %s (%s): %s", task.id, task.kind, error)
        self.events.emit("task.failed", task.to_dict())
