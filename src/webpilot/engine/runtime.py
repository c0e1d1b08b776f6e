"""WebPilot Super-Agentic Runtime -- the plan, select, execute, reflect loop.

One run drives one goal against one environment:

    Planning (optional, once)
      -> Selecting -> Executing -> Reflecting -> Selecting ...
                                -> Recovering / Replanning -> Selecting ...
      -> Done | StepLimitReached | Cancelled

Nothing a single step does can end the run with an exception.  Gateway and
environment failures degrade to fallbacks inside the collaborators; tool
failures (including a missing tool) become failed :class:`StepResult`
entries.  The run ends on a completion signal, on reflection-detected goal
achievement, at the step limit, or when cancelled.
"""

from __future__ import annotations

import asyncio
import dataclasses
import enum
import logging
from collections.abc import Callable
from typing import Any

from webpilot.engine.action_selector import BestActionResult, BestActionSelector
from webpilot.engine.enhanced_planner import EnhancedPlanner
from webpilot.engine.learning import LearningSystem
from webpilot.engine.planning import ExecutionPlan, PlanningEngine
from webpilot.engine.protocols import Environment, LanguageModelGateway, PageSnapshot, ToolResult
from webpilot.engine.tool_catalog import ToolCatalog, ToolContext, ToolNotFound
from webpilot.models import DEFAULT_MAX_STEPS, DEFAULT_STEP_DELAY_SECONDS

logger = logging.getLogger("webpilot.engine.runtime")


# ---------------------------------------------------------------------------
# Default policy thresholds
# ---------------------------------------------------------------------------

_DEFAULT_REPLAN_AFTER_FAILURES = 2
_DEFAULT_RECOVER_AFTER_FAILURES = 3
_DEFAULT_REFLECTION_MIN_ACTIONS = 3
_DEFAULT_REFLECTION_SUCCESS_RATE = 0.8
_DEFAULT_REFLECTION_PROGRESS = 0.9
_DEFAULT_REFLECTION_POOR_RATE = 0.3

_RECOVERY_WAIT_MS = 2000
_LEARNING_MODIFIER_LOG_THRESHOLD = 0.05

GOAL_ACHIEVED = "GOAL_ACHIEVED"
PROGRESS_GOOD = "PROGRESS_GOOD"
PROGRESS_POOR = "PROGRESS_POOR"
PROGRESS_NORMAL = "PROGRESS_NORMAL"


class RunState(str, enum.Enum):
    PLANNING = "planning"
    SELECTING = "selecting"
    EXECUTING = "executing"
    REFLECTING = "reflecting"
    REPLANNING = "replanning"
    RECOVERING = "recovering"
    DONE = "done"
    STEP_LIMIT_REACHED = "step_limit_reached"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (RunState.DONE, RunState.STEP_LIMIT_REACHED, RunState.CANCELLED)


@dataclasses.dataclass
class RuntimeOptions:
    """Knobs for one run.  The thresholds are replaceable policy, not contracts."""

    max_steps: int = DEFAULT_MAX_STEPS
    step_delay_seconds: float = DEFAULT_STEP_DELAY_SECONDS
    enable_planning: bool = True
    enable_learning: bool = True
    enable_reflection: bool = True
    use_enhanced_planner: bool = True
    verbose: bool = False
    on_log: Callable[[str], None] | None = None
    should_cancel: Callable[[], bool] | None = None

    replan_after_failures: int = _DEFAULT_REPLAN_AFTER_FAILURES
    recover_after_failures: int = _DEFAULT_RECOVER_AFTER_FAILURES
    reflection_min_actions: int = _DEFAULT_REFLECTION_MIN_ACTIONS
    reflection_success_rate: float = _DEFAULT_REFLECTION_SUCCESS_RATE
    reflection_progress: float = _DEFAULT_REFLECTION_PROGRESS
    reflection_poor_rate: float = _DEFAULT_REFLECTION_POOR_RATE


@dataclasses.dataclass
class StepResult:
    """Outcome of one executed (or unresolvable) action."""

    step: int
    tool: str
    args: dict[str, Any]
    success: bool
    error: str | None = None
    confidence: float = 0.0
    reasoning: str = ""
    reflection: str | None = None
    action: str = ""  # the candidate's own reasoning

    def to_dict(self) -> dict[str, Any]:
        return dataclasses.asdict(self)


@dataclasses.dataclass
class RunResult:
    final_text: str
    steps: list[StepResult]
    state: RunState
    plan: ExecutionPlan | None = None
    transitions: list[RunState] = dataclasses.field(default_factory=list)
    recovery_count: int = 0

    @property
    def successful_steps(self) -> int:
        return sum(1 for s in self.steps if s.success)

    def to_dict(self) -> dict[str, Any]:
        return {
            "final_text": self.final_text,
            "state": self.state.value,
            "steps": [s.to_dict() for s in self.steps],
            "transitions": [t.value for t in self.transitions],
            "recovery_count": self.recovery_count,
            "plan": dataclasses.asdict(self.plan) if self.plan is not None else None,
        }


class SuperAgenticRuntime:
    """Sequences planning, selection, execution, reflection and recovery.

    Usage::

        runtime = SuperAgenticRuntime(goal, gateway, environment, catalog)
        result = await runtime.run()

    The :class:`LearningSystem` is injected (or created per runtime) and is
    never a process-wide singleton.
    """

    def __init__(
        self,
        goal: str,
        gateway: LanguageModelGateway,
        environment: Environment,
        catalog: ToolCatalog,
        learning: LearningSystem | None = None,
        options: RuntimeOptions | None = None,
    ) -> None:
        self._goal = goal
        self._gateway = gateway
        self._environment = environment
        self._catalog = catalog
        self._learning = learning if learning is not None else LearningSystem()
        self._options = options or RuntimeOptions()

        self._planning = PlanningEngine(gateway)
        self._enhanced_planner = EnhancedPlanner(gateway, catalog)
        self._selector = BestActionSelector(gateway, environment, catalog)

        self._plan: ExecutionPlan | None = None
        self._step_results: list[StepResult] = []
        self._transitions: list[RunState] = []
        self._consecutive_failures = 0
        self._recovery_count = 0

    # -- Accessors -----------------------------------------------------------

    @property
    def learning_system(self) -> LearningSystem:
        return self._learning

    @property
    def step_results(self) -> list[StepResult]:
        return list(self._step_results)

    @property
    def execution_plan(self) -> ExecutionPlan | None:
        return self._plan

    @property
    def consecutive_failures(self) -> int:
        return self._consecutive_failures

    # -- Logging -------------------------------------------------------------

    def _log(self, line: str) -> None:
        logger.debug("%s", line)
        if self._options.on_log is not None:
            self._options.on_log(line)

    def _enter(self, state: RunState) -> None:
        self._transitions.append(state)

    # -- Main loop -----------------------------------------------------------

    async def run(self) -> RunResult:
        opts = self._options
        goal = self._goal

        logger.info("Run started: goal=%r max_steps=%d", goal[:80], opts.max_steps)
        self._log(f"Goal: {goal}")
        self._log(
            f"Planning={opts.enable_planning}, Learning={opts.enable_learning}, "
            f"Reflection={opts.enable_reflection}"
        )

        snapshot = await self._snapshot()
        context = ToolContext(environment=self._environment, page=snapshot, log=self._log)

        if opts.enable_planning:
            await self._create_plan(snapshot)

        previous_actions: list[str] = []
        failed_attempts: list[str] = []
        last_page_type = "unknown"

        for step in range(opts.max_steps):
            if opts.should_cancel is not None and opts.should_cancel():
                self._log(f"Cancelled before step {step + 1}")
                return self._finish(
                    RunState.CANCELLED,
                    f"Cancelled after {step} steps. {self._success_count()} successful actions.",
                )

            self._log(f"Step {step + 1}/{opts.max_steps}")

            if self._plan is not None and self._planning.should_replan(
                self._plan, step, self._consecutive_failures, threshold=opts.replan_after_failures,
            ):
                await self._replan(step)

            if opts.enable_learning and step > 0:
                recommendations = self._learning.get_recommendations(last_page_type, goal)
                if recommendations and opts.verbose:
                    self._log(f"Learning: {recommendations[0]}")

            self._enter(RunState.SELECTING)
            try:
                selection = await self._selector.select_best_action(
                    goal, list(previous_actions), list(failed_attempts),
                )
            except Exception as exc:
                logger.warning("Selection failed on step %d: %s", step + 1, exc)
                self._log(f"Step error: {exc}")
                self._consecutive_failures += 1
                failed_attempts.append(f"error: {exc}")
                await self._pause()
                continue

            last_page_type = selection.page_analysis.page_type
            selected = selection.selected_action
            if opts.verbose:
                self._log(f"Page type: {selection.page_analysis.page_type}")
                self._log(f"Key elements: {len(selection.page_analysis.key_elements)}")
            self._log(f"Selected: {selected.tool} (confidence: {selected.confidence * 100:.0f}%)")
            self._log(f"Reasoning: {selected.reasoning}")

            if selected.is_completion:
                self._log("Agent signaled completion")
                return self._finish(RunState.DONE, selected.completion_text())

            self._enter(RunState.EXECUTING)
            step_result = await self._execute(step + 1, selection, context)
            self._step_results.append(step_result)

            if step_result.success:
                previous_actions.append(selected.signature())
                self._consecutive_failures = 0

                if opts.enable_reflection:
                    self._enter(RunState.REFLECTING)
                    reflection = self._reflect()
                    step_result.reflection = reflection
                    if reflection.startswith(GOAL_ACHIEVED):
                        self._log("Reflection: goal appears to be achieved")
                        return self._finish(RunState.DONE, f"Goal achieved after {step + 1} steps")
                    if reflection.startswith(PROGRESS_POOR):
                        self._log("Reflection: many failures, strategy should be reconsidered")
                    elif opts.verbose:
                        self._log(f"Reflection: {reflection[:100]}")
            else:
                failed_attempts.append(f"{selected.tool} ({step_result.error})")
                self._consecutive_failures += 1

                if opts.enable_learning and self._learning.should_retry(
                    selected.tool, selected.args, self._consecutive_failures,
                ):
                    self._log("Learning system suggests retry is worthwhile")

                if self._consecutive_failures >= opts.recover_after_failures:
                    recovery = await self._recover(context)
                    if recovery is not None:
                        previous_actions.append(recovery)

            if self._plan is not None and opts.verbose:
                progress = self._planning.estimate_progress(self._plan, step + 1, self._step_results)
                self._log(f"Plan progress: {progress * 100:.0f}%")

            await self._pause()

        self._log(f"Max steps ({opts.max_steps}) reached")
        if opts.enable_learning:
            self._log("Learning insights:")
            for insight in self._learning.get_insights():
                self._log(f"  - {insight}")

        return self._finish(
            RunState.STEP_LIMIT_REACHED,
            f"Stopped after {opts.max_steps} steps. {self._success_count()} successful actions.",
        )

    # -- States --------------------------------------------------------------

    async def _create_plan(self, snapshot: PageSnapshot) -> None:
        opts = self._options
        self._enter(RunState.PLANNING)
        try:
            if opts.use_enhanced_planner:
                self._log("Generating plan with the enhanced planner")
                self._plan = await self._enhanced_planner.generate_perfect_plan(self._goal, snapshot)
            else:
                self._log("Generating plan")
                self._plan = await self._planning.generate_plan(
                    self._goal, snapshot, self._catalog.names(),
                )
        except Exception as exc:
            logger.warning("Planning failed, continuing without a plan: %s", exc)
            self._log("Planning failed, continuing with adaptive approach")
            self._plan = None
            return

        plan = self._plan
        self._log(f"Plan: {plan.strategy}")
        self._log(f"Steps: {plan.total_steps}, Difficulty: {plan.estimated_difficulty}")
        if plan.risk_factors:
            self._log(f"Risk factors: {', '.join(plan.risk_factors)}")
        if opts.verbose:
            for plan_step in plan.steps:
                confidence = (
                    f" ({plan_step.confidence * 100:.0f}% confidence)"
                    if plan_step.confidence is not None
                    else ""
                )
                self._log(f"  {plan_step.step}. {plan_step.description}{confidence}")
                if plan_step.rationale:
                    self._log(f"     -> {plan_step.rationale}")

    async def _replan(self, step: int) -> None:
        self._enter(RunState.REPLANNING)
        self._log("Replanning due to obstacles")
        last_error = ""
        if self._step_results:
            last_error = self._step_results[-1].error or ""
        snapshot = await self._snapshot()
        self._plan = await self._planning.adapt_plan(
            self._plan, step, last_error or "Unknown error", snapshot,
        )
        self._log(f"New plan: {self._plan.strategy}")

    async def _execute(self, number: int, selection: BestActionResult, context: ToolContext) -> StepResult:
        opts = self._options
        selected = selection.selected_action
        page_type = selection.page_analysis.page_type

        confidence = selected.confidence
        if opts.enable_learning:
            modifier = self._learning.get_confidence_modifier(selected.tool, page_type, selected.args)
            if abs(modifier) > _LEARNING_MODIFIER_LOG_THRESHOLD:
                self._log(f"Learning modifier: {modifier * 100:+.0f}%")
            confidence = max(0.0, min(1.0, confidence + modifier))

        resolved = self._catalog.resolve(selected.tool)
        if isinstance(resolved, ToolNotFound):
            self._log(resolved.error)
            result = ToolResult.fail(resolved.error)
        else:
            self._log(f"Executing: {resolved.name}")
            result = await resolved.run(context, selected.args)
            if opts.enable_learning:
                self._learning.record_action(
                    selected.tool,
                    selected.args,
                    page_type,
                    self._goal,
                    result.success,
                    result.error,
                )

        if result.success:
            self._log(f"Success: {_short(result.output)}")
        else:
            self._log(f"Failed: {result.error}")

        return StepResult(
            step=number,
            tool=selected.tool,
            args=dict(selected.args),
            success=result.success,
            error=result.error,
            confidence=confidence,
            reasoning=selection.reasoning,
            action=selected.reasoning,
        )

    def _reflect(self) -> str:
        """Heuristic progress check over every step executed so far."""
        opts = self._options
        total = len(self._step_results)
        if total < opts.reflection_min_actions:
            return f"{PROGRESS_NORMAL}: Continue execution"

        success_rate = self._success_count() / total
        if success_rate > opts.reflection_success_rate:
            if self._plan is None:
                return f"{GOAL_ACHIEVED}: Consistent successes with no plan to follow"
            progress = self._planning.estimate_progress(self._plan, total, self._step_results)
            if progress > opts.reflection_progress:
                return f"{GOAL_ACHIEVED}: Plan nearly complete with high success rate"
            return f"{PROGRESS_GOOD}: Actions are succeeding, continue current approach"

        if success_rate < opts.reflection_poor_rate:
            return f"{PROGRESS_POOR}: Many failures, consider changing strategy"
        return f"{PROGRESS_NORMAL}: Continue execution"

    async def _recover(self, context: ToolContext) -> str | None:
        """Structural extraction, else a timed wait.  Always resets the failure count."""
        self._enter(RunState.RECOVERING)
        self._recovery_count += 1
        self._log("Multiple failures, attempting recovery")

        label = None
        for name, args in (("extract_links", {}), ("wait_ms", {"ms": _RECOVERY_WAIT_MS})):
            tool = self._catalog.get(name)
            if tool is None:
                continue
            result = await tool.run(context, args)
            if result.success:
                label = f"{name} (recovery)"
                self._log(f"Recovery action: {label}")
                break
            logger.debug("Recovery action %s failed: %s", name, result.error)

        if label is None:
            self._log("Recovery found nothing to do")
        self._consecutive_failures = 0
        return label

    # -- Helpers -------------------------------------------------------------

    async def _snapshot(self) -> PageSnapshot:
        try:
            return await self._environment.snapshot()
        except Exception as exc:
            logger.warning("Snapshot failed: %s", exc)
            return PageSnapshot()

    async def _pause(self) -> None:
        if self._options.step_delay_seconds > 0:
            await asyncio.sleep(self._options.step_delay_seconds)

    def _success_count(self) -> int:
        return sum(1 for s in self._step_results if s.success)

    def _finish(self, state: RunState, final_text: str) -> RunResult:
        self._enter(state)
        logger.info(
            "Run finished: state=%s steps=%d recoveries=%d",
            state.value, len(self._step_results), self._recovery_count,
        )
        return RunResult(
            final_text=final_text,
            steps=list(self._step_results),
            state=state,
            plan=self._plan,
            transitions=list(self._transitions),
            recovery_count=self._recovery_count,
        )


def _short(output: Any, limit: int = 200) -> str:
    text = str(output) if output is not None else "{}"
    return text if len(text) <= limit else text[:limit] + "..."


async def run_super_agent(
    goal: str,
    gateway: LanguageModelGateway,
    environment: Environment,
    catalog: ToolCatalog,
    learning: LearningSystem | None = None,
    options: RuntimeOptions | None = None,
) -> RunResult:
    """One-shot convenience wrapper around :class:`SuperAgenticRuntime`."""
    runtime = SuperAgenticRuntime(goal, gateway, environment, catalog, learning=learning, options=options)
    return await runtime.run()
