"""Unit tests for webpilot.engine.runtime -- the agent loop state machine."""

from __future__ import annotations

import asyncio
import json

import pytest

from webpilot.engine.learning import LearningSystem
from webpilot.engine.protocols import ToolResult
from webpilot.engine.runtime import (
    RunState,
    RuntimeOptions,
    StepResult,
    SuperAgenticRuntime,
    run_super_agent,
)
from webpilot.engine.tool_catalog import ToolCatalog


def run_async(coro):
    """Run a coroutine to completion in a fresh event loop."""
    return asyncio.run(coro)


def _options(**overrides) -> RuntimeOptions:
    values = {
        "max_steps": 5,
        "step_delay_seconds": 0,
        "enable_planning": False,
        "enable_learning": True,
        "enable_reflection": True,
    }
    values.update(overrides)
    return RuntimeOptions(**values)


def _pick(tool: str, **args) -> str:
    return json.dumps([{"tool": tool, "args": args, "reasoning": f"use {tool}"}])


@pytest.fixture
def failing_catalog(tool_factory, recording_tool) -> ToolCatalog:
    """click_text always fails; everything else succeeds."""
    catalog = ToolCatalog(
        tool_factory(name)
        for name in ("extract_links", "wait_ms", "navigate", "detect_interactive", "type_text", "press_enter")
    )
    catalog.register(tool_factory("click_text", recording_tool(default=ToolResult.fail("element not found"))))
    return catalog


# ---------------------------------------------------------------------------
# 1. Completion signal
# ---------------------------------------------------------------------------

class TestCompletion:

    def test_final_signal_ends_run_without_executing(self, fake_gateway, fake_environment, tool_factory, recording_tool):
        executor = recording_tool()
        catalog = ToolCatalog([tool_factory("extract_links", executor)])
        gateway = fake_gateway(default=json.dumps({"tool": "final", "text": "done"}))
        result = run_async(
            SuperAgenticRuntime("finish up", gateway, fake_environment(), catalog, options=_options()).run()
        )
        assert result.state is RunState.DONE
        assert result.final_text == "done"
        assert result.steps == []
        assert executor.calls == []
        assert result.transitions == [RunState.SELECTING, RunState.DONE]

    def test_done_alias_uses_expected_outcome(self, fake_gateway, fake_environment, basic_catalog):
        gateway = fake_gateway(default=json.dumps([{"tool": "done", "expectedOutcome": "all finished"}]))
        result = run_async(run_super_agent("g", gateway, fake_environment(), basic_catalog, options=_options()))
        assert result.state is RunState.DONE
        assert result.final_text == "all finished"


# ---------------------------------------------------------------------------
# 2. Failures, recovery and replanning
# ---------------------------------------------------------------------------

class TestRecovery:

    def test_three_failures_trigger_one_recovery(self, fake_gateway, fake_environment, failing_catalog):
        gateway = fake_gateway(default=_pick("click_text", text="Go"))
        runtime = SuperAgenticRuntime(
            "press go", gateway, fake_environment(), failing_catalog, options=_options(max_steps=3),
        )
        result = run_async(runtime.run())

        assert result.transitions.count(RunState.RECOVERING) == 1
        assert result.recovery_count == 1
        assert runtime.consecutive_failures == 0
        assert [s.success for s in result.steps] == [False, False, False]
        assert result.state is RunState.STEP_LIMIT_REACHED

    def test_recovery_position_in_transitions(self, fake_gateway, fake_environment, failing_catalog):
        gateway = fake_gateway(default=_pick("click_text", text="Go"))
        result = run_async(
            run_super_agent("press go", gateway, fake_environment(), failing_catalog, options=_options(max_steps=3))
        )
        loop = [RunState.SELECTING, RunState.EXECUTING]
        assert result.transitions == loop * 3 + [RunState.RECOVERING, RunState.STEP_LIMIT_REACHED]

    def test_recovery_falls_back_to_wait(self, fake_gateway, fake_environment, tool_factory, recording_tool):
        waits = recording_tool()
        catalog = ToolCatalog([
            tool_factory("click_text", recording_tool(default=ToolResult.fail("nope"))),
            tool_factory("extract_links", recording_tool(default=ToolResult.fail("evaluation failed"))),
            tool_factory("wait_ms", waits),
        ])
        gateway = fake_gateway(default=_pick("click_text", text="Go"))
        run_async(run_super_agent("g", gateway, fake_environment(), catalog, options=_options(max_steps=3)))
        assert waits.calls == [{"ms": 2000}]

    def test_recovery_threshold_configurable(self, fake_gateway, fake_environment, failing_catalog):
        gateway = fake_gateway(default=_pick("click_text", text="Go"))
        result = run_async(
            run_super_agent(
                "g", gateway, fake_environment(), failing_catalog,
                options=_options(max_steps=4, recover_after_failures=2),
            )
        )
        assert result.recovery_count == 2

    def test_unknown_tool_is_a_failed_step(self, fake_gateway, fake_environment, basic_catalog):
        gateway = fake_gateway(default=_pick("teleport"))
        runtime = SuperAgenticRuntime(
            "g", gateway, fake_environment(), basic_catalog, options=_options(max_steps=1),
        )
        result = run_async(runtime.run())
        assert result.steps[0].success is False
        assert result.steps[0].error == "Tool not found: teleport"
        assert runtime.consecutive_failures == 1
        assert runtime.learning_system.memory == []

    def test_failures_feed_back_into_prompt(self, fake_gateway, fake_environment, failing_catalog):
        gateway = fake_gateway(default=_pick("click_text", text="Go"))
        run_async(run_super_agent("g", gateway, fake_environment(), failing_catalog, options=_options(max_steps=2)))
        assert "click_text (element not found)" in gateway.last_prompt

    def test_replanning_after_two_failures(self, fake_gateway, fake_environment, failing_catalog):
        gateway = fake_gateway(["not a plan"], default=_pick("click_text", text="Go"))
        result = run_async(
            run_super_agent(
                "press the button", gateway, fake_environment(), failing_catalog,
                options=_options(max_steps=3, enable_planning=True),
            )
        )
        assert result.transitions[0] is RunState.PLANNING
        assert RunState.REPLANNING in result.transitions
        assert result.plan is not None


# ---------------------------------------------------------------------------
# 3. Reflection and step limit
# ---------------------------------------------------------------------------

class TestReflection:

    def test_consistent_success_without_plan_achieves_goal(self, fake_gateway, fake_environment, basic_catalog):
        gateway = fake_gateway(default=_pick("extract_links"))
        result = run_async(run_super_agent("g", gateway, fake_environment(), basic_catalog, options=_options()))
        assert result.state is RunState.DONE
        assert result.final_text == "Goal achieved after 3 steps"
        assert result.steps[-1].reflection.startswith("GOAL_ACHIEVED")

    def test_first_reflections_are_normal(self, fake_gateway, fake_environment, basic_catalog):
        gateway = fake_gateway(default=_pick("extract_links"))
        result = run_async(run_super_agent("g", gateway, fake_environment(), basic_catalog, options=_options()))
        assert result.steps[0].reflection.startswith("PROGRESS_NORMAL")

    def test_step_limit_text(self, fake_gateway, fake_environment, basic_catalog):
        gateway = fake_gateway(default=_pick("extract_links"))
        result = run_async(
            run_super_agent(
                "g", gateway, fake_environment(), basic_catalog,
                options=_options(max_steps=2, enable_reflection=False),
            )
        )
        assert result.state is RunState.STEP_LIMIT_REACHED
        assert result.final_text == "Stopped after 2 steps. 2 successful actions."
        assert result.successful_steps == 2

    def test_no_reflection_state_when_disabled(self, fake_gateway, fake_environment, basic_catalog):
        gateway = fake_gateway(default=_pick("extract_links"))
        result = run_async(
            run_super_agent(
                "g", gateway, fake_environment(), basic_catalog,
                options=_options(max_steps=1, enable_reflection=False),
            )
        )
        assert RunState.REFLECTING not in result.transitions


# ---------------------------------------------------------------------------
# 4. Planning, cancellation and learning
# ---------------------------------------------------------------------------

class TestLifecycle:

    def test_planning_gateway_failure_is_not_fatal(self, fake_gateway, fake_environment, basic_catalog):
        gateway = fake_gateway([RuntimeError("overloaded")], default=_pick("extract_links"))
        result = run_async(
            run_super_agent(
                "something vague", gateway, fake_environment(), basic_catalog,
                options=_options(enable_planning=True),
            )
        )
        assert result.plan.steps[0].tool == "detect_interactive"
        assert result.state is RunState.DONE

    def test_basic_planner_used_when_enhanced_disabled(self, fake_gateway, fake_environment, basic_catalog):
        gateway = fake_gateway(["garbage"], default=_pick("extract_links"))
        result = run_async(
            run_super_agent(
                "summarize this page", gateway, fake_environment(), basic_catalog,
                options=_options(enable_planning=True, use_enhanced_planner=False, max_steps=1),
            )
        )
        assert result.plan.steps[0].tool == "extract_links"
        assert "AVAILABLE TOOLS: navigate" in gateway.calls[0]["messages"][-1]["content"]

    def test_snapshot_failure_is_not_fatal(self, fake_gateway, fake_environment, basic_catalog):
        gateway = fake_gateway(default=_pick("extract_links"))
        environment = fake_environment(fail_snapshot=True)
        result = run_async(
            run_super_agent("g", gateway, environment, basic_catalog, options=_options(max_steps=1))
        )
        assert result.steps[0].success is True

    def test_cancel_before_first_step(self, fake_gateway, fake_environment, basic_catalog):
        gateway = fake_gateway(default=_pick("extract_links"))
        result = run_async(
            run_super_agent(
                "g", gateway, fake_environment(), basic_catalog,
                options=_options(should_cancel=lambda: True),
            )
        )
        assert result.state is RunState.CANCELLED
        assert result.final_text == "Cancelled after 0 steps. 0 successful actions."
        assert gateway.calls == []

    def test_cancel_mid_run(self, fake_gateway, fake_environment, basic_catalog):
        polls = []

        def should_cancel():
            polls.append(1)
            return len(polls) > 2

        gateway = fake_gateway(default=_pick("extract_links"))
        result = run_async(
            run_super_agent(
                "g", gateway, fake_environment(), basic_catalog,
                options=_options(enable_reflection=False, should_cancel=should_cancel),
            )
        )
        assert result.state is RunState.CANCELLED
        assert result.final_text == "Cancelled after 2 steps. 2 successful actions."

    def test_learning_modifier_adjusts_step_confidence(self, fake_gateway, fake_environment, basic_catalog):
        learning = LearningSystem()
        for _ in range(3):
            learning.record_action("extract_links", {}, "unknown", "earlier", True)
        gateway = fake_gateway(default=_pick("extract_links"))
        result = run_async(
            run_super_agent(
                "g", gateway, fake_environment(), basic_catalog, learning=learning,
                options=_options(max_steps=1, enable_reflection=False),
            )
        )
        assert result.steps[0].confidence == pytest.approx(0.5 + 0.2)

    def test_learning_modifier_clamped(self, fake_gateway, fake_environment, basic_catalog):
        learning = LearningSystem()
        learning.record_action("click_text", {"text": "Nope"}, "unknown", "earlier", False)
        gateway = fake_gateway(default=_pick("click_text", text="Nope"))
        result = run_async(
            run_super_agent(
                "g", gateway, fake_environment(), basic_catalog, learning=learning,
                options=_options(max_steps=1, enable_reflection=False),
            )
        )
        assert 0.0 <= result.steps[0].confidence <= 0.05

    def test_learning_records_each_executed_action(self, fake_gateway, fake_environment, basic_catalog):
        gateway = fake_gateway(default=_pick("extract_links"))
        runtime = SuperAgenticRuntime(
            "g", gateway, fake_environment(), basic_catalog,
            options=_options(max_steps=2, enable_reflection=False),
        )
        run_async(runtime.run())
        assert len(runtime.learning_system.memory) == 2

    def test_learning_disabled_records_nothing(self, fake_gateway, fake_environment, basic_catalog):
        gateway = fake_gateway(default=_pick("extract_links"))
        runtime = SuperAgenticRuntime(
            "g", gateway, fake_environment(), basic_catalog,
            options=_options(max_steps=2, enable_learning=False, enable_reflection=False),
        )
        run_async(runtime.run())
        assert runtime.learning_system.memory == []

    def test_recommendations_use_previous_page_type(
        self, fake_gateway, fake_environment, basic_catalog, search_structure,
    ):
        lines: list[str] = []
        gateway = fake_gateway(default=_pick("extract_links"))
        run_async(
            run_super_agent(
                "g", gateway, fake_environment(structure=search_structure), basic_catalog,
                options=_options(max_steps=2, enable_reflection=False, verbose=True, on_log=lines.append),
            )
        )
        assert "Learning: Tool 'extract_links' has worked 1 times on search pages" in lines

    def test_on_log_receives_lines(self, fake_gateway, fake_environment, basic_catalog):
        lines: list[str] = []
        gateway = fake_gateway(default=_pick("extract_links"))
        run_async(
            run_super_agent(
                "open docs", gateway, fake_environment(), basic_catalog,
                options=_options(max_steps=1, on_log=lines.append),
            )
        )
        assert lines[0] == "Goal: open docs"
        assert "Step 1/1" in lines


# ---------------------------------------------------------------------------
# 5. Result serialization
# ---------------------------------------------------------------------------

class TestResults:

    def test_run_result_to_dict(self, fake_gateway, fake_environment, basic_catalog):
        gateway = fake_gateway(default=_pick("extract_links"))
        result = run_async(
            run_super_agent(
                "g", gateway, fake_environment(), basic_catalog,
                options=_options(max_steps=1, enable_reflection=False),
            )
        )
        data = result.to_dict()
        assert data["state"] == "step_limit_reached"
        assert data["steps"][0]["tool"] == "extract_links"
        assert data["transitions"][-1] == "step_limit_reached"
        assert data["plan"] is None

    def test_terminal_states(self):
        assert RunState.DONE.is_terminal
        assert RunState.CANCELLED.is_terminal
        assert not RunState.SELECTING.is_terminal

    def test_step_result_to_dict(self):
        result = StepResult(step=1, tool="scroll", args={"amount": 3}, success=True)
        assert result.to_dict()["args"] == {"amount": 3}
