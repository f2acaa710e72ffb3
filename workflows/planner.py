"""
Plan normalization — turns whatever the planner model produced into a
validated, fully-defaulted Plan.

Plan JSON comes from a non-deterministic generator, so ``normalize`` never
raises: any parse or coercion problem is logged and replaced by the fixed
fallback plan (analyze → generate_code → run_tests → commit_changes).
"""

from __future__ import annotations

import json
import logging
import uuid
from typing import Any, Iterable

import config
from errors import PlanNormalizationError
from models.schemas import Plan, PlanSource, Priority, Step, StepKind
from utils.llm import strip_code_fences

log = logging.getLogger(__name__)

DEFAULT_CAPABILITIES = {
    StepKind.ANALYZE: "planner",
    StepKind.GENERATE_CODE: "planner",
    StepKind.RUN_TESTS: "tester",
    StepKind.COMMIT_CHANGES: "git",
    StepKind.MONITOR: "monitor",
    StepKind.DEPLOY: "deployer",
}

# (kind, description, timeout_ms, retry_limit)
_FALLBACK_STEPS = [
    (StepKind.ANALYZE, "Analyze requirements", 30_000, 1),
    (StepKind.GENERATE_CODE, "Generate or modify code", 120_000, 2),
    (StepKind.RUN_TESTS, "Execute test suite", 180_000, 1),
    (StepKind.COMMIT_CHANGES, "Commit changes to repository", 30_000, 2),
]
FALLBACK_ESTIMATED_DURATION_SEC = 360

# Field spellings accepted from model output, first match wins
_ALIASES = {
    "kind": ("kind", "type"),
    "capability": ("capability", "integration", "provider"),
    "timeout_ms": ("timeout_ms", "timeoutMs", "timeout"),
    "retry_limit": ("retry_limit", "retryLimit", "retryCount", "retries"),
    "estimated_duration_seconds": (
        "estimated_duration_seconds", "estimatedDurationSeconds", "estimatedDuration",
    ),
    "rollback_strategy": ("rollback_strategy", "rollbackStrategy"),
}


def normalize(raw_plan_source: Any, source: PlanSource = PlanSource.AI) -> Plan:
    """Coerce ``raw_plan_source`` (JSON text or a mapping) into a Plan.

    Returns ``fallback_plan()`` instead of raising when the source cannot be
    parsed or validated.
    """
    try:
        return coerce_plan(_parse(raw_plan_source), source=source)
    except PlanNormalizationError as e:
        log.warning("Failed to normalize plan, using fallback: %s", e)
    except Exception as e:
        log.warning("Unexpected error normalizing plan, using fallback: %s", e, exc_info=True)
    return fallback_plan()


def fallback_plan() -> Plan:
    """The fixed 4-step plan used when normalization is impossible."""
    steps = tuple(
        Step(
            id=f"fallback-{n}-{kind.value}",
            kind=kind,
            capability=DEFAULT_CAPABILITIES[kind],
            description=description,
            timeout_ms=timeout_ms,
            retry_limit=retry_limit,
        )
        for n, (kind, description, timeout_ms, retry_limit) in enumerate(_FALLBACK_STEPS, start=1)
    )
    return Plan(
        steps=steps,
        estimated_duration_seconds=FALLBACK_ESTIMATED_DURATION_SEC,
        priority=Priority.MEDIUM,
        source=PlanSource.FALLBACK,
    )


def coerce_plan(data: dict, source: PlanSource = PlanSource.AI) -> Plan:
    """Validate a parsed plan mapping. Raises PlanNormalizationError."""
    if not isinstance(data, dict):
        raise PlanNormalizationError(f"Plan must be an object, got {type(data).__name__}")

    raw_steps = data.get("steps")
    if not isinstance(raw_steps, list) or not raw_steps:
        raise PlanNormalizationError("Plan has no steps")

    steps = tuple(coerce_step(raw, index) for index, raw in enumerate(raw_steps))
    seen: set[str] = set()
    for step in steps:
        if step.id in seen:
            raise PlanNormalizationError(f"Duplicate step id: {step.id}")
        seen.add(step.id)

    estimated = _pick(data, "estimated_duration_seconds")
    dependencies = data.get("dependencies") or []
    if not isinstance(dependencies, (list, tuple)):
        raise PlanNormalizationError("dependencies must be a list")

    return Plan(
        steps=steps,
        estimated_duration_seconds=(
            _positive_int(estimated, "estimated_duration_seconds")
            if estimated is not None else config.DEFAULT_ESTIMATED_DURATION_SEC
        ),
        priority=coerce_priority(data.get("priority")),
        dependencies=tuple(dependencies),
        rollback_strategy=str(_pick(data, "rollback_strategy") or "automatic"),
        source=source,
    )


def coerce_step(raw: Any, index: int = 0) -> Step:
    if not isinstance(raw, dict):
        raise PlanNormalizationError(f"Step {index} is not an object")

    kind_value = _pick(raw, "kind")
    try:
        kind = StepKind(kind_value)
    except ValueError:
        raise PlanNormalizationError(f"Step {index} has unknown kind: {kind_value!r}") from None

    parameters = raw.get("parameters")
    if parameters is None:
        parameters = {}
    elif not isinstance(parameters, dict):
        raise PlanNormalizationError(f"Step {index} parameters must be an object")

    timeout_ms = _pick(raw, "timeout_ms")
    retry_limit = _pick(raw, "retry_limit")

    return Step(
        id=str(raw.get("id") or uuid.uuid4()),
        kind=kind,
        capability=str(_pick(raw, "capability") or DEFAULT_CAPABILITIES[kind]),
        description=str(raw.get("description") or ""),
        parameters=dict(parameters),
        timeout_ms=(
            _positive_int(timeout_ms, "timeout_ms")
            if timeout_ms is not None else config.DEFAULT_STEP_TIMEOUT_MS
        ),
        retry_limit=(
            _non_negative_int(retry_limit, "retry_limit")
            if retry_limit is not None else config.DEFAULT_RETRY_LIMIT
        ),
    )


def coerce_priority(value: Any) -> Priority:
    if value is None or value == "":
        return Priority.MEDIUM
    try:
        return Priority(str(value).lower())
    except ValueError:
        raise PlanNormalizationError(f"Unknown priority: {value!r}") from None


def build_plan_prompt(instruction: str, capabilities: Iterable[str]) -> str:
    """Prompt handed to the planner provider's generate_plan."""
    kinds = ", ".join(k.value for k in StepKind)
    return (
        "Analyze this development instruction and create a workflow plan:\n"
        f'"{instruction}"\n\n'
        f"Available capability providers: {', '.join(capabilities) or 'none'}\n"
        f"Allowed step kinds: {kinds}\n\n"
        "Respond with JSON only, in this exact shape:\n"
        '{"steps": [{"id": "...", "kind": "...", "description": "...", '
        '"capability": "...", "parameters": {}, "timeout_ms": 60000, "retry_limit": 2}],\n'
        ' "estimated_duration_seconds": 300, "priority": "low|medium|high|critical",\n'
        ' "dependencies": [], "rollback_strategy": "automatic"}\n\n'
        "Order the steps so code is analyzed before it is generated, generated "
        "before it is tested, and tested before it is committed."
    )


def _parse(raw: Any) -> Any:
    if isinstance(raw, (bytes, bytearray)):
        raw = raw.decode("utf-8", errors="replace")
    if isinstance(raw, str):
        try:
            return json.loads(strip_code_fences(raw))
        except json.JSONDecodeError as e:
            raise PlanNormalizationError(f"Plan is not valid JSON: {e}") from e
    if isinstance(raw, dict):
        return raw
    raise PlanNormalizationError(f"Unsupported plan source: {type(raw).__name__}")


def _pick(data: dict, field_name: str) -> Any:
    for key in _ALIASES[field_name]:
        if data.get(key) is not None:
            return data[key]
    return None


def _positive_int(value: Any, field_name: str) -> int:
    number = _as_int(value, field_name)
    if number <= 0:
        raise PlanNormalizationError(f"{field_name} must be positive, got {value!r}")
    return number


def _non_negative_int(value: Any, field_name: str) -> int:
    number = _as_int(value, field_name)
    if number < 0:
        raise PlanNormalizationError(f"{field_name} must not be negative, got {value!r}")
    return number


def _as_int(value: Any, field_name: str) -> int:
    # bool is an int subclass; true/false is never a valid duration or count
    if isinstance(value, bool):
        raise PlanNormalizationError(f"{field_name} must be an integer, got {value!r}")
    if isinstance(value, float) and value.is_integer():
        return int(value)
    if isinstance(value, int):
        return value
    raise PlanNormalizationError(f"{field_name} must be an integer, got {value!r}")
