"""
Lifecycle event emitter shared by the executor, task queue and engine.

Listeners are plain callables, or coroutine functions which are scheduled on
the running loop. A failing listener is logged and never breaks the emitter.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from collections import defaultdict
from typing import Any, Callable

log = logging.getLogger(__name__)

Listener = Callable[[str, dict], Any]

ANY = "*"


class EventEmitter:
    def __init__(self) -> None:
        self._listeners: dict[str, list[Listener]] = defaultdict(list)
        self._pending: set[asyncio.Task] = set()

    def on(self, event: str, listener: Listener) -> None:
        """Subscribe to ``event``; ``"*"`` receives every event."""
        self._listeners[event].append(listener)

    def off(self, event: str, listener: Listener) -> None:
        try:
            self._listeners[event].remove(listener)
        except ValueError:
            pass

    def emit(self, event: str, payload: dict | None = None) -> None:
        payload = payload or {}
        for listener in [*self._listeners.get(event, []), *self._listeners.get(ANY, [])]:
            try:
                outcome = listener(event, payload)
                if inspect.isawaitable(outcome):
                    task = asyncio.ensure_future(outcome)
                    self._pending.add(task)
                    task.add_done_callback(self._listener_done)
            except Exception as e:
                log.warning("Listener for %s raised: %s", event, e, exc_info=True)

    def _listener_done(self, task: asyncio.Task) -> None:
        self._pending.discard(task)
        if not task.cancelled() and task.exception() is not None:
            log.warning("Async listener raised: %s", task.exception())
