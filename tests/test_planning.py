"""Unit tests for webpilot.engine.planning -- plans, fallbacks and transforms."""

from __future__ import annotations

import asyncio
import json

import pytest

from webpilot.engine.planning import (
    ExecutionPlan,
    PlanningEngine,
    PlanStep,
    plan_from_dict,
    renumber,
    search_query_from,
    site_url_for,
)
from webpilot.engine.protocols import PageSnapshot
from webpilot.engine.runtime import StepResult


def run_async(coro):
    """Run a coroutine to completion in a fresh event loop."""
    return asyncio.run(coro)


def _plan(*tools, difficulty="medium", goal="g", risks=()) -> ExecutionPlan:
    steps = [PlanStep(step=i + 1, tool=t, description=f"do {t}") for i, t in enumerate(tools)]
    return ExecutionPlan.create(goal=goal, strategy=f"s-{goal}", steps=steps, estimated_difficulty=difficulty, risk_factors=risks)


def _result(success: bool) -> StepResult:
    return StepResult(step=1, tool="t", args={}, success=success)


PLAN_REPLY = {
    "strategy": "Go straight there",
    "steps": [
        {"step": 7, "tool": "navigate", "args": {"url": "https://github.com"}, "description": "open"},
        {"step": 3, "tool": "click_text", "args": {"text": "Sign in"}, "expectedResult": "login page"},
    ],
    "estimatedDifficulty": "EASY",
    "contingencyPlans": [{"condition": "blocked", "alternativeSteps": [{"tool": "wait_ms", "args": {"ms": 500}}]}],
}


# ---------------------------------------------------------------------------
# 1. Helpers
# ---------------------------------------------------------------------------

class TestHelpers:

    def test_site_url_known(self):
        assert site_url_for("YouTube") == "https://youtube.com"

    def test_site_url_guessed(self):
        assert site_url_for("example") == "https://example.com"
        assert site_url_for("docs.python.org.") == "https://docs.python.org"

    def test_search_query(self):
        assert search_query_from("please search for red shoes") == "red shoes"
        assert search_query_from("Search kittens") == "kittens"

    def test_renumber(self):
        steps = renumber([PlanStep(step=9, tool="a"), PlanStep(step=2, tool="b")], start=4)
        assert [s.step for s in steps] == [4, 5]

    def test_plan_from_dict_renumbers_and_normalizes(self):
        plan = plan_from_dict(PLAN_REPLY, "open github")
        assert [s.step for s in plan.steps] == [1, 2]
        assert plan.total_steps == 2
        assert plan.estimated_difficulty == "easy"
        assert plan.steps[1].expected_result == "login page"
        assert plan.contingency_plans[0].alternative_steps[0].tool == "wait_ms"

    def test_plan_from_dict_rejects_empty(self):
        with pytest.raises(ValueError):
            plan_from_dict({"strategy": "x", "steps": []}, "g")
        with pytest.raises(ValueError):
            plan_from_dict([{"tool": "navigate"}], "g")

    def test_plan_step_bad_confidence_dropped(self):
        step = PlanStep.from_dict({"tool": "scroll", "confidence": "high"}, 1)
        assert step.confidence is None

    def test_plans_are_immutable(self):
        plan = _plan("a")
        with pytest.raises(AttributeError):
            plan.strategy = "other"


# ---------------------------------------------------------------------------
# 2. generate_plan() and the rule-based fallback
# ---------------------------------------------------------------------------

class TestGeneratePlan:

    def test_parsed_plan(self, fake_gateway):
        engine = PlanningEngine(fake_gateway(["Here you go:\n" + json.dumps(PLAN_REPLY)]))
        outcome = run_async(engine.generate_plan_outcome("open github", PageSnapshot(), ["navigate"]))
        assert outcome.is_fallback is False
        assert outcome.value.strategy == "Go straight there"

    def test_prompt_lists_tools(self, fake_gateway):
        gateway = fake_gateway([json.dumps(PLAN_REPLY)])
        run_async(PlanningEngine(gateway).generate_plan("g", PageSnapshot(url="https://a.com"), ["navigate", "scroll"]))
        assert "AVAILABLE TOOLS: navigate, scroll" in gateway.last_prompt
        assert "- URL: https://a.com" in gateway.last_prompt

    @pytest.mark.parametrize("reply", ["", "not json", '{"steps": []}', "[1, 2]"])
    def test_garbage_falls_back_non_empty(self, fake_gateway, reply):
        engine = PlanningEngine(fake_gateway([reply]))
        outcome = run_async(engine.generate_plan_outcome("do something", PageSnapshot(), []))
        assert outcome.is_fallback is True
        assert outcome.value.steps

    @pytest.mark.parametrize(
        "extra",
        [
            {"riskFactors": 3},
            {"contingencyPlans": [{"condition": "x", "alternativeSteps": 5}]},
            {"contingencyPlans": "none"},
        ],
    )
    def test_wrong_field_types_are_ignored(self, fake_gateway, extra):
        reply = {"steps": [{"tool": "navigate", "args": {"url": "https://a.com"}, "alternatives": 7}], **extra}
        outcome = run_async(PlanningEngine(fake_gateway([reply])).generate_plan_outcome("g", PageSnapshot(), []))
        assert outcome.is_fallback is False
        assert outcome.value.steps[0].tool == "navigate"
        assert outcome.value.steps[0].alternatives == ()

    def test_gateway_error_falls_back(self, fake_gateway):
        engine = PlanningEngine(fake_gateway([ConnectionError("offline")]))
        plan = run_async(engine.generate_plan("open github", PageSnapshot(), []))
        assert plan.steps[0].tool == "navigate"

    def test_fallback_navigation_known_site(self):
        plan = PlanningEngine(None).fallback_plan("Go to YouTube")
        assert plan.steps[0].args == {"url": "https://youtube.com"}
        assert plan.estimated_difficulty == "easy"

    def test_fallback_navigation_guessed_site(self):
        plan = PlanningEngine(None).fallback_plan("visit example")
        assert plan.steps[0].args == {"url": "https://example.com"}

    def test_fallback_navigation_needs_whole_word(self):
        plan = PlanningEngine(None).fallback_plan("reopening hours of the museum")
        assert plan.steps[0].tool == "extract_links"

    def test_fallback_search(self):
        plan = PlanningEngine(None).fallback_plan("search for blue whales")
        assert [s.tool for s in plan.steps] == ["type_text", "press_enter"]
        assert plan.steps[0].args == {"text": "blue whales", "target": "any"}
        assert [s.step for s in plan.steps] == [1, 2]

    def test_fallback_generic(self):
        plan = PlanningEngine(None).fallback_plan("summarize this page")
        assert [s.tool for s in plan.steps] == ["extract_links"]


# ---------------------------------------------------------------------------
# 3. adapt_plan()
# ---------------------------------------------------------------------------

class TestAdaptPlan:

    def test_adapted_steps_numbered_from_current_position(self, fake_gateway):
        engine = PlanningEngine(fake_gateway([json.dumps(PLAN_REPLY)]))
        adapted = run_async(engine.adapt_plan(_plan("a", "b", "c", "d"), 2, "button missing", PageSnapshot()))
        assert [s.step for s in adapted.steps] == [3, 4]

    def test_prompt_describes_obstacle_and_steps(self, fake_gateway):
        gateway = fake_gateway([json.dumps(PLAN_REPLY)])
        run_async(PlanningEngine(gateway).adapt_plan(_plan("a", "b", "c"), 1, "modal blocks page", PageSnapshot()))
        prompt = gateway.last_prompt
        assert "OBSTACLE ENCOUNTERED: modal blocks page" in prompt
        assert "1. do a" in prompt
        assert "CURRENT STEP: 2 of 3" in prompt

    def test_failure_returns_unexecuted_remainder(self, fake_gateway):
        original = _plan("a", "b", "c", "d")
        engine = PlanningEngine(fake_gateway(["garbage"]))
        adapted = run_async(engine.adapt_plan(original, 2, "oops", PageSnapshot()))
        assert adapted.steps == original.steps[2:]
        assert adapted.strategy == original.strategy
        assert adapted.total_steps == len(adapted.steps) == 2

    def test_gateway_exception_returns_remainder(self, fake_gateway):
        original = _plan("a", "b")
        engine = PlanningEngine(fake_gateway([TimeoutError()]))
        adapted = run_async(engine.adapt_plan(original, 1, "oops", PageSnapshot()))
        assert [s.tool for s in adapted.steps] == ["b"]


# ---------------------------------------------------------------------------
# 4. should_replan() and estimate_progress()
# ---------------------------------------------------------------------------

class TestPolicies:

    def test_should_replan_threshold(self):
        engine = PlanningEngine(None)
        plan = _plan("a")
        assert engine.should_replan(plan, 0, 1) is False
        assert engine.should_replan(plan, 0, 2) is True
        assert engine.should_replan(plan, 0, 2, threshold=3) is False

    def test_progress_formula(self):
        plan = _plan("a", "b", "c", "d")
        results = [_result(True), _result(False)]
        assert PlanningEngine.estimate_progress(plan, 2, results) == pytest.approx(0.7 * 0.5 + 0.3 * 0.5)

    def test_progress_clamped(self):
        plan = _plan("a")
        assert PlanningEngine.estimate_progress(plan, 5, [_result(True)]) == 1.0

    def test_progress_without_results(self):
        assert PlanningEngine.estimate_progress(_plan("a", "b"), 0, []) == 0.0


# ---------------------------------------------------------------------------
# 5. simplify_plan() and merge_plans()
# ---------------------------------------------------------------------------

class TestTransforms:

    def test_simplify_drops_consecutive_waits(self):
        plan = _plan("wait_ms", "wait_ms", "wait_ms", "click_text", "wait_ms")
        simplified = PlanningEngine.simplify_plan(plan)
        assert [s.tool for s in simplified.steps] == ["wait_ms", "click_text", "wait_ms"]
        assert [s.step for s in simplified.steps] == [1, 2, 3]
        assert simplified.total_steps == 3

    def test_simplify_leaves_original_untouched(self):
        plan = _plan("wait_ms", "wait_ms")
        PlanningEngine.simplify_plan(plan)
        assert len(plan.steps) == 2

    def test_merge_renumbers(self):
        merged = PlanningEngine.merge_plans(_plan("a", "b"), _plan("c"))
        assert [s.step for s in merged.steps] == [1, 2, 3]
        assert [s.tool for s in merged.steps] == ["a", "b", "c"]
        assert merged.total_steps == 3

    @pytest.mark.parametrize(
        "first,second,expected",
        [("easy", "hard", "hard"), ("medium", "easy", "medium"), ("hard", "medium", "hard")],
    )
    def test_merge_takes_max_severity(self, first, second, expected):
        merged = PlanningEngine.merge_plans(_plan("a", difficulty=first), _plan("b", difficulty=second))
        assert merged.estimated_difficulty == expected

    def test_merge_combines_risks_without_duplicates(self):
        merged = PlanningEngine.merge_plans(_plan("a", risks=("slow", "popup")), _plan("b", risks=("popup",)))
        assert merged.risk_factors == ("slow", "popup")
