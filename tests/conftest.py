"""
Shared pytest fixtures: a provider registry of in-memory stubs and an
orchestration engine wired to it.
"""

import pytest
import pytest_asyncio

from features.task_queue import TaskQueue
from providers.base import ProviderRegistry
from tests.stubs import StubDeployer, StubGit, StubMonitor, StubPlanner, StubTester
from workflows.engine import OrchestrationEngine


@pytest.fixture
def calls():
    return []


@pytest.fixture
def planner(calls):
    return StubPlanner(calls=calls)


@pytest.fixture
def tester(calls):
    return StubTester(calls=calls)


@pytest.fixture
def git(calls):
    return StubGit(calls=calls)


@pytest.fixture
def registry(planner, tester, git, calls):
    registry = ProviderRegistry()
    for provider in (planner, tester, git, StubMonitor(calls=calls), StubDeployer(calls=calls)):
        registry.register(provider)
    return registry


@pytest_asyncio.fixture
async def engine(registry):
    engine = OrchestrationEngine(
        registry,
        task_queue=TaskQueue(max_concurrent=3, poll_interval=0.01),
        run_log_dir="",
    )
    yield engine
    await engine.shutdown()
