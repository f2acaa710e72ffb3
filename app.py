"""
FastAPI application — REST API for Pilot Orchestrator.

Endpoints:
  POST   /workflows/execute — Plan and run an instruction
  GET    /workflows         — List in-flight workflows
  GET    /workflows/{id}    — Get an in-flight workflow
  DELETE /workflows/{id}    — Cancel an in-flight workflow
  GET    /metrics           — Aggregate workflow metrics
  POST   /tasks             — Queue background work
  GET    /tasks/{id}        — Get a queued task
  GET    /queue             — Task queue status
  GET    /health            — Health check
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from dataclasses import asdict
from typing import Any, Literal

from dotenv import load_dotenv
from fastapi import APIRouter, Depends, FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field

import config
from errors import WorkflowNotFoundError
from providers.base import ProviderRegistry
from providers.git_ops import GitProvider
from providers.monitor import MonitorProvider
from providers.planner import LLMPlanner
from providers.pytest_runner import PytestRunner
from workflows.engine import OrchestrationEngine

load_dotenv()

logging.basicConfig(
    level=config.LOG_LEVEL,
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    datefmt="%H:%M:%S",
)
log = logging.getLogger(__name__)

router = APIRouter()


def build_registry() -> ProviderRegistry:
    """The bundled capability providers, pointed at TARGET_REPO_PATH."""
    registry = ProviderRegistry()
    for provider in (LLMPlanner(), GitProvider(), PytestRunner(), MonitorProvider()):
        registry.register(provider)
    return registry


def get_engine(request: Request) -> OrchestrationEngine:
    return request.app.state.engine


class ExecuteOptions(BaseModel):
    model_config = ConfigDict(extra="allow")

    priority: Literal["low", "medium", "high", "critical"] | None = None
    steps: list[dict[str, Any]] | None = None


class ExecuteRequest(BaseModel):
    instruction: str = Field(min_length=10, max_length=5000)
    options: ExecuteOptions = Field(default_factory=ExecuteOptions)


class TaskRequest(BaseModel):
    kind: str = Field(min_length=1)
    payload: dict[str, Any] = Field(default_factory=dict)


# ── Health ────────────────────────────────────────────────────────────

@router.get("/health")
def health(engine: OrchestrationEngine = Depends(get_engine)):
    return {
        "status": "ok",
        "service": "pilot-orchestrator",
        "initialized": engine.is_initialized,
        "providers": engine.registry.names(),
        "active_workflows": len(engine.active),
    }


# ── Workflows ─────────────────────────────────────────────────────────

@router.post("/workflows/execute")
async def execute_workflow(req: ExecuteRequest, engine: OrchestrationEngine = Depends(get_engine)):
    """Plan and run an instruction; blocks until the workflow is terminal."""
    envelope = await engine.execute(req.instruction, req.options.model_dump(exclude_none=True))
    if not envelope["success"]:
        return JSONResponse(status_code=500, content=_serialize(envelope))
    return _serialize(envelope)


@router.get("/workflows")
def list_workflows(engine: OrchestrationEngine = Depends(get_engine)):
    workflows = [w.to_dict() for w in engine.list_active()]
    return {"workflows": workflows, "count": len(workflows)}


@router.get("/workflows/{workflow_id}")
def get_workflow(workflow_id: str, engine: OrchestrationEngine = Depends(get_engine)):
    try:
        return _serialize(engine.status(workflow_id).to_dict())
    except WorkflowNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))


@router.delete("/workflows/{workflow_id}")
def cancel_workflow(workflow_id: str, engine: OrchestrationEngine = Depends(get_engine)):
    try:
        workflow = engine.cancel(workflow_id)
    except WorkflowNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    return {"workflow_id": workflow.id, "status": workflow.status.value}


@router.get("/metrics")
def get_metrics(engine: OrchestrationEngine = Depends(get_engine)):
    return engine.metrics().to_dict()


# ── Task queue ────────────────────────────────────────────────────────

@router.post("/tasks", status_code=202)
def enqueue_task(req: TaskRequest, engine: OrchestrationEngine = Depends(get_engine)):
    task_id = engine.enqueue_task(req.kind, req.payload)
    return {"task_id": task_id, "status": "queued"}


@router.get("/tasks/{task_id}")
def get_task(task_id: str, engine: OrchestrationEngine = Depends(get_engine)):
    task = engine.task_status(task_id)
    if task is None:
        raise HTTPException(status_code=404, detail=f"Task {task_id} not found")
    return _serialize(task.to_dict())


@router.get("/queue")
def get_queue(engine: OrchestrationEngine = Depends(get_engine)):
    return asdict(engine.queue_status())


def _serialize(obj: Any) -> Any:
    """Make provider output JSON-serializable (datetimes, tuples, sets)."""
    if isinstance(obj, dict):
        return {k: _serialize(v) for k, v in obj.items()}
    if isinstance(obj, (list, tuple, set)):
        return [_serialize(v) for v in obj]
    if hasattr(obj, "isoformat"):
        return obj.isoformat()
    return obj


def create_app(engine: OrchestrationEngine | None = None) -> FastAPI:
    engine = engine or OrchestrationEngine(build_registry())

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await engine.start()
        yield
        await engine.shutdown()

    application = FastAPI(
        title="Pilot Orchestrator",
        description="Turns development instructions into planned, executed and tracked workflows",
        version="1.0.0",
        lifespan=lifespan,
    )
    application.state.engine = engine
    application.include_router(router)
    return application


app = create_app()
