"""
Tests for plan normalization and the fallback plan.
"""

import json

import pytest

from errors import PlanNormalizationError
from models.schemas import PlanSource, Priority, StepKind
from workflows.planner import (
    build_plan_prompt,
    coerce_priority,
    fallback_plan,
    normalize,
)


def plan_json(**overrides):
    data = {
        "steps": [
            {"id": "a", "kind": "analyze", "description": "Read the code"},
            {"id": "b", "kind": "generate_code", "capability": "planner",
             "parameters": {"language": "python"}, "timeout_ms": 90000, "retry_limit": 1},
        ],
        "estimated_duration_seconds": 120,
        "priority": "high",
    }
    data.update(overrides)
    return json.dumps(data)


class TestNormalize:
    def test_valid_plan(self):
        plan = normalize(plan_json())

        assert [s.id for s in plan.steps] == ["a", "b"]
        assert plan.steps[1].kind == StepKind.GENERATE_CODE
        assert plan.steps[1].parameters == {"language": "python"}
        assert plan.steps[1].timeout_ms == 90000
        assert plan.steps[1].retry_limit == 1
        assert plan.estimated_duration_seconds == 120
        assert plan.priority == Priority.HIGH
        assert plan.source == PlanSource.AI

    def test_defaults_filled(self):
        plan = normalize({"steps": [{"kind": "run_tests"}]})
        step = plan.steps[0]

        assert step.id
        assert step.capability == "tester"
        assert step.parameters == {}
        assert step.timeout_ms == 60000
        assert step.retry_limit == 2
        assert plan.priority == Priority.MEDIUM
        assert plan.estimated_duration_seconds == 300
        assert plan.rollback_strategy == "automatic"

    def test_generated_ids_are_unique(self):
        plan = normalize({"steps": [{"kind": "analyze"}, {"kind": "analyze"}]})
        assert plan.steps[0].id != plan.steps[1].id

    def test_camel_case_fields(self):
        plan = normalize({
            "steps": [{"type": "commit_changes", "integration": "gitlab",
                       "timeoutMs": 5000, "retryLimit": 0}],
            "estimatedDuration": 60,
            "rollbackStrategy": "manual",
        })
        step = plan.steps[0]

        assert step.kind == StepKind.COMMIT_CHANGES
        assert step.capability == "gitlab"
        assert step.timeout_ms == 5000
        assert step.retry_limit == 0
        assert plan.estimated_duration_seconds == 60
        assert plan.rollback_strategy == "manual"

    def test_fenced_json(self):
        plan = normalize("```json\n" + plan_json() + "\n```")
        assert [s.id for s in plan.steps] == ["a", "b"]

    def test_integral_float_timeout(self):
        plan = normalize({"steps": [{"kind": "analyze", "timeout_ms": 1500.0}]})
        assert plan.steps[0].timeout_ms == 1500

    def test_source_is_recorded(self):
        plan = normalize({"steps": [{"kind": "analyze"}]}, source=PlanSource.PROVIDED)
        assert plan.source == PlanSource.PROVIDED


class TestFallback:
    @pytest.mark.parametrize("raw", [
        "not json at all",
        "",
        None,
        42,
        "[1, 2, 3]",
        json.dumps({"steps": []}),
        json.dumps({"plan": "do things"}),
        json.dumps({"steps": [{"kind": "teleport"}]}),
        json.dumps({"steps": [{"kind": "analyze", "timeout_ms": 0}]}),
        json.dumps({"steps": [{"kind": "analyze", "timeout_ms": -10}]}),
        json.dumps({"steps": [{"kind": "analyze", "timeout_ms": True}]}),
        json.dumps({"steps": [{"kind": "analyze", "timeout_ms": "fast"}]}),
        json.dumps({"steps": [{"kind": "analyze", "retry_limit": -1}]}),
        json.dumps({"steps": [{"kind": "analyze", "parameters": ["x"]}]}),
        json.dumps({"steps": ["analyze"]}),
        json.dumps({"steps": [{"id": "x", "kind": "analyze"}, {"id": "x", "kind": "run_tests"}]}),
        json.dumps({"steps": [{"kind": "analyze"}], "priority": "urgent"}),
        json.dumps({"steps": [{"kind": "analyze"}], "dependencies": "everything"}),
        b"\xff\xfe",
    ])
    def test_unusable_source_falls_back(self, raw):
        assert normalize(raw) == fallback_plan()

    def test_fallback_shape(self):
        plan = fallback_plan()

        assert [s.kind for s in plan.steps] == [
            StepKind.ANALYZE, StepKind.GENERATE_CODE, StepKind.RUN_TESTS, StepKind.COMMIT_CHANGES,
        ]
        assert [s.capability for s in plan.steps] == ["planner", "planner", "tester", "git"]
        assert [s.timeout_ms for s in plan.steps] == [30000, 120000, 180000, 30000]
        assert plan.estimated_duration_seconds == 360
        assert plan.priority == Priority.MEDIUM
        assert plan.source == PlanSource.FALLBACK

    def test_fallback_is_deterministic(self):
        first = normalize("garbage")
        second = normalize({"steps": "nope"})

        assert first == second
        assert [s.id for s in first.steps] == [
            "fallback-1-analyze",
            "fallback-2-generate_code",
            "fallback-3-run_tests",
            "fallback-4-commit_changes",
        ]


class TestPriority:
    def test_case_insensitive(self):
        assert coerce_priority("CRITICAL") == Priority.CRITICAL

    def test_empty_is_medium(self):
        assert coerce_priority(None) == Priority.MEDIUM
        assert coerce_priority("") == Priority.MEDIUM

    def test_unknown_raises(self):
        with pytest.raises(PlanNormalizationError):
            coerce_priority("whenever")


class TestPrompt:
    def test_mentions_instruction_and_capabilities(self):
        prompt = build_plan_prompt("add a health endpoint", ["git", "planner"])

        assert '"add a health endpoint"' in prompt
        assert "git, planner" in prompt
        assert "generate_code" in prompt
