"""
Tests for the bounded-concurrency TaskQueue.
"""

import asyncio

import pytest
import pytest_asyncio

from features.task_queue import TaskQueue, TaskStatus
from utils.events import EventEmitter


@pytest.fixture
def events():
    return EventEmitter()


@pytest_asyncio.fixture
async def queue(events):
    queue = TaskQueue(max_concurrent=3, poll_interval=0.01, events=events)
    yield queue
    await queue.stop()


async def wait_until(predicate, timeout=1.0):
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.005)


class TestConstruction:
    def test_rejects_zero_concurrency(self):
        with pytest.raises(ValueError):
            TaskQueue(max_concurrent=0)

    @pytest.mark.asyncio
    async def test_enqueue_before_start_only_queues(self, queue):
        queue.enqueue("noop")
        queue.enqueue("noop")

        status = queue.status()
        assert status.queued == 2
        assert status.active == 0
        assert status.processing is False
        assert status.max_concurrent == 3


class TestBoundedConcurrency:
    @pytest.mark.asyncio
    async def test_burst_never_exceeds_max_concurrent(self, queue, events):
        peak = 0
        started = []

        def observe(event, payload):
            nonlocal peak
            peak = max(peak, queue.status().active)

        events.on("*", observe)

        async def work(task):
            nonlocal peak
            started.append(task.id)
            peak = max(peak, queue.status().active)
            await asyncio.sleep(0.001)
            return task.payload["n"]

        queue.register_handler("work", work)
        ids = [queue.enqueue("work", {"n": n}) for n in range(100)]
        await queue.start()
        await asyncio.wait_for(queue.join(), timeout=10)

        assert peak == 3
        assert started == ids
        assert all(queue.get(i).status == TaskStatus.COMPLETED for i in ids)
        assert queue.get(ids[42]).result == 42
        assert queue.status().active == 0
        assert queue.status().queued == 0

    @pytest.mark.asyncio
    async def test_tasks_enqueued_while_running_are_picked_up(self, queue):
        done = []

        async def work(task):
            done.append(task.id)

        queue.register_handler("work", work)
        await queue.start()
        first = queue.enqueue("work")
        await asyncio.wait_for(queue.join(), timeout=1)
        second = queue.enqueue("work")
        await asyncio.wait_for(queue.join(), timeout=1)

        assert done == [first, second]


class TestFailureIsolation:
    @pytest.mark.asyncio
    async def test_failing_task_does_not_affect_others(self, queue, events):
        failed = []
        events.on("task.failed", lambda event, payload: failed.append(payload))

        async def ok(task):
            await asyncio.sleep(0.001)
            return "ok"

        async def bad(task):
            raise RuntimeError("disk full")

        queue.register_handler("ok", ok)
        queue.register_handler("bad", bad)
        ids = [queue.enqueue("ok"), queue.enqueue("bad"), queue.enqueue("ok")]
        await queue.start()
        await asyncio.wait_for(queue.join(), timeout=1)

        statuses = [queue.get(i).status for i in ids]
        assert statuses == [TaskStatus.COMPLETED, TaskStatus.FAILED, TaskStatus.COMPLETED]
        assert queue.get(ids[1]).error == "disk full"
        assert queue.get(ids[1]).failed_at is not None
        assert [p["id"] for p in failed] == [ids[1]]

    @pytest.mark.asyncio
    async def test_unknown_kind_fails_the_task(self, queue):
        task_id = queue.enqueue("mystery")
        await queue.start()
        await asyncio.wait_for(queue.join(), timeout=1)

        task = queue.get(task_id)
        assert task.status == TaskStatus.FAILED
        assert task.error == "Unknown task kind: mystery"


class TestStop:
    @pytest.mark.asyncio
    async def test_stop_cancels_active_tasks(self, queue):
        async def forever(task):
            await asyncio.sleep(10)

        queue.register_handler("forever", forever)
        task_id = queue.enqueue("forever")
        await queue.start()
        await wait_until(lambda: queue.status().active == 1)

        await queue.stop()

        task = queue.get(task_id)
        assert task.status == TaskStatus.FAILED
        assert task.error == "Task cancelled"
        assert queue.status().processing is False

    @pytest.mark.asyncio
    async def test_get_unknown_task(self, queue):
        assert queue.get("nope") is None
