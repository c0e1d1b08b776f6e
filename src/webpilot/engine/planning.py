"""Planning Engine -- multi-step plans with adaptation and progress estimates.

Plans are immutable values.  Every transform (adapt, simplify, merge)
returns a new :class:`ExecutionPlan`; the run loop replaces its plan
wholesale and never edits steps in place.  Renumbering transforms leave
``steps[i].step == i + 1`` (adaptation numbers from the current position).
"""

from __future__ import annotations

import dataclasses
import logging
import re
from typing import Any

from webpilot.engine.parsing import Fallback, Outcome, Parsed, extract_json
from webpilot.engine.protocols import LanguageModelGateway, PageSnapshot

logger = logging.getLogger("webpilot.engine.planning")

DIFFICULTY_LEVELS = ("easy", "medium", "hard")

NO_OP_WAIT_TOOLS = frozenset({"wait_ms"})

KNOWN_SITES = {
    "youtube": "https://youtube.com",
    "google": "https://google.com",
    "facebook": "https://facebook.com",
    "twitter": "https://twitter.com",
    "amazon": "https://amazon.com",
    "reddit": "https://reddit.com",
    "wikipedia": "https://wikipedia.org",
    "github": "https://github.com",
    "linkedin": "https://linkedin.com",
    "instagram": "https://instagram.com",
}

NAVIGATION_PATTERN = re.compile(r"\b(open|go to|navigate|visit|load)\b", re.I)

PLANNER_SYSTEM_PROMPT = (
    "You are an expert web automation planner. Create detailed, step-by-step plans in JSON format."
)
ADAPT_SYSTEM_PROMPT = "You are a web automation expert. Respond with JSON only."

PLAN_SCHEMA = """{
  "strategy": "direct approach in 1 sentence",
  "steps": [
    {
      "step": 1,
      "tool": "tool_name",
      "args": {"param": "value"},
      "description": "what to do",
      "rationale": "why",
      "expectedResult": "outcome",
      "successCriteria": "how to verify"
    }
  ],
  "estimatedDifficulty": "easy|medium|hard",
  "contingencyPlans": []
}"""


@dataclasses.dataclass(frozen=True)
class PlanStep:
    step: int
    tool: str
    args: dict[str, Any] = dataclasses.field(default_factory=dict)
    description: str = ""
    rationale: str = ""
    expected_result: str = ""
    success_criteria: str | None = None
    confidence: float | None = None
    alternatives: tuple[dict[str, Any], ...] = ()

    @classmethod
    def from_dict(cls, data: dict[str, Any], number: int) -> PlanStep:
        args = data.get("args")
        confidence = data.get("confidence")
        try:
            confidence = float(confidence) if confidence is not None else None
        except (TypeError, ValueError):
            confidence = None
        alternatives = _as_list(data.get("alternatives"))
        return cls(
            step=number,
            tool=str(data.get("tool") or "").strip(),
            args=dict(args) if isinstance(args, dict) else {},
            description=str(data.get("description") or ""),
            rationale=str(data.get("rationale") or ""),
            expected_result=str(data.get("expectedResult") or data.get("expected_result") or ""),
            success_criteria=data.get("successCriteria") or data.get("success_criteria"),
            confidence=confidence,
            alternatives=tuple(a for a in alternatives if isinstance(a, dict)),
        )


@dataclasses.dataclass(frozen=True)
class ContingencyPlan:
    condition: str
    alternative_steps: tuple[PlanStep, ...] = ()

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ContingencyPlan:
        raw_steps = _as_list(data.get("alternativeSteps") or data.get("alternative_steps"))
        steps = tuple(
            PlanStep.from_dict(s, i + 1) for i, s in enumerate(raw_steps) if isinstance(s, dict)
        )
        return cls(condition=str(data.get("condition") or ""), alternative_steps=steps)


@dataclasses.dataclass(frozen=True)
class ExecutionPlan:
    goal: str
    strategy: str
    steps: tuple[PlanStep, ...]
    total_steps: int
    estimated_difficulty: str = "medium"
    contingency_plans: tuple[ContingencyPlan, ...] = ()
    risk_factors: tuple[str, ...] = ()

    @classmethod
    def create(
        cls,
        goal: str,
        strategy: str,
        steps: list[PlanStep] | tuple[PlanStep, ...],
        estimated_difficulty: str = "medium",
        contingency_plans: tuple[ContingencyPlan, ...] = (),
        risk_factors: tuple[str, ...] = (),
    ) -> ExecutionPlan:
        steps = tuple(steps)
        return cls(
            goal=goal,
            strategy=strategy,
            steps=steps,
            total_steps=len(steps),
            estimated_difficulty=_normalize_difficulty(estimated_difficulty),
            contingency_plans=tuple(contingency_plans),
            risk_factors=tuple(risk_factors),
        )


def _as_list(value: Any) -> list[Any]:
    """Model output fields that should be arrays; anything else counts as empty."""
    return value if isinstance(value, list) else []


def _normalize_difficulty(value: Any) -> str:
    value = str(value or "").lower()
    return value if value in DIFFICULTY_LEVELS else "medium"


def renumber(steps: list[PlanStep] | tuple[PlanStep, ...], start: int = 1) -> tuple[PlanStep, ...]:
    return tuple(dataclasses.replace(s, step=start + i) for i, s in enumerate(steps))


def plan_from_dict(data: Any, goal: str) -> ExecutionPlan:
    """Build a plan from parsed gateway JSON.  Raises ValueError when it has no usable steps."""
    if not isinstance(data, dict):
        raise ValueError(f"Expected a JSON object, got {type(data).__name__}")
    raw_steps = data.get("steps")
    if not isinstance(raw_steps, list):
        raise ValueError("Plan has no steps list")

    steps = [PlanStep.from_dict(s, 0) for s in raw_steps if isinstance(s, dict)]
    steps = [s for s in steps if s.tool]
    if not steps:
        raise ValueError("Plan contains no steps with a tool name")

    contingencies = tuple(
        ContingencyPlan.from_dict(c) for c in _as_list(data.get("contingencyPlans")) if isinstance(c, dict)
    )
    risks = tuple(str(r) for r in _as_list(data.get("riskFactors")))
    return ExecutionPlan.create(
        goal=goal,
        strategy=str(data.get("strategy") or "Execute steps sequentially"),
        steps=renumber(steps),
        estimated_difficulty=data.get("estimatedDifficulty"),
        contingency_plans=contingencies,
        risk_factors=risks,
    )


def site_url_for(name: str) -> str:
    """Known-site lookup, else a guessed ``https://{name}.com``."""
    name = name.strip().strip(".,!?\"'").lower()
    if name in KNOWN_SITES:
        return KNOWN_SITES[name]
    if name.startswith(("http://", "https://")):
        return name
    if "." in name:
        return f"https://{name}"
    return f"https://{name}.com"


def search_query_from(goal: str) -> str:
    return re.sub(r"^.*?\bsearch\s+(?:for\s+)?", "", goal, count=1, flags=re.I).strip() or goal.strip()


class PlanningEngine:
    """Produces, adapts and evaluates execution plans."""

    def __init__(self, gateway: LanguageModelGateway) -> None:
        self._gateway = gateway

    # -- Generation ----------------------------------------------------------

    def build_planning_prompt(self, goal: str, snapshot: PageSnapshot, tool_names: list[str]) -> str:
        return f"""You are creating a detailed execution plan for web automation.

GOAL: {goal}

CURRENT CONTEXT:
- URL: {snapshot.url or 'Unknown'}
- Page Title: {snapshot.title or 'Unknown'}

AVAILABLE TOOLS: {', '.join(tool_names)}

IMPORTANT PATTERNS:
1. If goal is "open X" or "navigate to X" or "go to X" -> use navigate tool with URL
2. If goal is "search for X" -> use type_text + press_enter
3. If goal is "click X" -> use click_text
4. If goal is "fill X" -> use type_text
5. Keep plans SHORT and DIRECT - avoid unnecessary analysis steps

EXAMPLES:
Goal: "open youtube"
Steps: [{{"step":1,"tool":"navigate","args":{{"url":"https://youtube.com"}}}}]

Goal: "search for cats"
Steps: [{{"step":1,"tool":"type_text","args":{{"text":"cats"}}}}, {{"step":2,"tool":"press_enter","args":{{}}}}]

Create a DIRECT, CONCISE plan (1-4 steps). Avoid over-planning.

Respond with ONLY valid JSON:
{PLAN_SCHEMA}"""

    async def generate_plan(
        self,
        goal: str,
        snapshot: PageSnapshot,
        tool_names: list[str],
    ) -> ExecutionPlan:
        outcome = await self.generate_plan_outcome(goal, snapshot, tool_names)
        return outcome.value

    async def generate_plan_outcome(
        self,
        goal: str,
        snapshot: PageSnapshot,
        tool_names: list[str],
    ) -> Outcome[ExecutionPlan]:
        prompt = self.build_planning_prompt(goal, snapshot, tool_names)
        try:
            response = await self._gateway.chat(
                PLANNER_SYSTEM_PROMPT,
                [{"role": "user", "content": prompt}],
                snapshot,
            )
        except Exception as exc:
            logger.warning("Planning call failed: %s", exc)
            return Fallback(self.fallback_plan(goal), reason=f"gateway error: {exc}")

        try:
            return Parsed(plan_from_dict(extract_json(response, expect="object"), goal))
        except (ValueError, TypeError) as exc:
            logger.warning("Unparseable plan response: %s", exc)
            return Fallback(self.fallback_plan(goal), reason=str(exc))

    def fallback_plan(self, goal: str) -> ExecutionPlan:
        """Rule-based plan: navigation, then search, then analyze-first."""
        goal_lower = goal.lower()

        if NAVIGATION_PATTERN.search(goal):
            words = goal.split()
            site = words[-1].strip(".,!?\"'") if words else ""
            url = site_url_for(site)
            return ExecutionPlan.create(
                goal=goal,
                strategy=f"Navigate directly to {site}",
                steps=[
                    PlanStep(
                        step=1,
                        tool="navigate",
                        args={"url": url},
                        description=f"Open {site}",
                        rationale="Direct navigation to target site",
                        expected_result=f"{site} homepage loads",
                        success_criteria="Page title contains site name",
                    )
                ],
                estimated_difficulty="easy",
            )

        if "search" in goal_lower:
            query = search_query_from(goal)
            return ExecutionPlan.create(
                goal=goal,
                strategy="Type search query and submit",
                steps=[
                    PlanStep(
                        step=1,
                        tool="type_text",
                        args={"text": query, "target": "any"},
                        description="Enter search query",
                        rationale="Fill search input",
                        expected_result="Query entered",
                        success_criteria="Input has text",
                    ),
                    PlanStep(
                        step=2,
                        tool="press_enter",
                        args={},
                        description="Submit search",
                        rationale="Execute search",
                        expected_result="Results load",
                        success_criteria="Results page shown",
                    ),
                ],
                estimated_difficulty="easy",
            )

        return ExecutionPlan.create(
            goal=goal,
            strategy="Analyze page and locate target",
            steps=[
                PlanStep(
                    step=1,
                    tool="extract_links",
                    args={},
                    description="Get page overview",
                    rationale="Understand available actions",
                    expected_result="Links and headings extracted",
                    success_criteria="Data retrieved",
                )
            ],
            estimated_difficulty="medium",
        )

    # -- Adaptation ----------------------------------------------------------

    async def adapt_plan(
        self,
        plan: ExecutionPlan,
        current_step_index: int,
        obstacle: str,
        snapshot: PageSnapshot,
    ) -> ExecutionPlan:
        """Ask for a plan that works around ``obstacle``.

        Adapted steps are numbered from ``current_step_index + 1``.  When the
        gateway fails, the unexecuted remainder of ``plan`` is returned.
        """
        completed = "\n".join(f"{s.step}. {s.description}" for s in plan.steps[:current_step_index])
        remaining = "\n".join(f"{s.step}. {s.description}" for s in plan.steps[current_step_index:])
        prompt = f"""You are adapting an execution plan due to an obstacle.

ORIGINAL GOAL: {plan.goal}
ORIGINAL STRATEGY: {plan.strategy}
CURRENT STEP: {current_step_index + 1} of {plan.total_steps}
OBSTACLE ENCOUNTERED: {obstacle}

COMPLETED STEPS:
{completed or 'None'}

REMAINING STEPS:
{remaining or 'None'}

CURRENT PAGE:
- Title: {snapshot.title}
- URL: {snapshot.url}

Generate an adapted plan that works around the obstacle. Respond with JSON:
{PLAN_SCHEMA}"""

        rest = tuple(plan.steps[current_step_index:])
        remainder = dataclasses.replace(plan, steps=rest, total_steps=len(rest))
        try:
            response = await self._gateway.chat(
                ADAPT_SYSTEM_PROMPT,
                [{"role": "user", "content": prompt}],
                snapshot,
            )
            adapted = plan_from_dict(extract_json(response, expect="object"), plan.goal)
        except Exception as exc:
            logger.warning("Plan adaptation failed, keeping remaining steps: %s", exc)
            return remainder

        return dataclasses.replace(adapted, steps=renumber(adapted.steps, start=current_step_index + 1))

    def should_replan(
        self,
        plan: ExecutionPlan | None,
        current_step: int,
        consecutive_failures: int,
        threshold: int = 2,
    ) -> bool:
        """Replan after repeated consecutive failures.

        A minimal single-trigger policy; step stagnation and contingency
        conditions are not considered.
        """
        return consecutive_failures >= threshold

    # -- Evaluation and transforms ------------------------------------------

    @staticmethod
    def estimate_progress(plan: ExecutionPlan, completed_steps: int, step_results: list[Any]) -> float:
        """``0.7 * completed/total + 0.3 * successFraction``, clamped to [0, 1]."""
        if plan.total_steps <= 0:
            return 0.0
        step_progress = completed_steps / plan.total_steps
        successes = sum(1 for r in step_results if getattr(r, "success", False))
        success_rate = successes / max(len(step_results), 1)
        return max(0.0, min(1.0, step_progress * 0.7 + success_rate * 0.3))

    @staticmethod
    def simplify_plan(plan: ExecutionPlan) -> ExecutionPlan:
        """Drop a wait step whose immediate predecessor is also a wait."""
        kept = [
            step
            for i, step in enumerate(plan.steps)
            if not (
                step.tool in NO_OP_WAIT_TOOLS
                and i > 0
                and plan.steps[i - 1].tool in NO_OP_WAIT_TOOLS
            )
        ]
        steps = renumber(kept)
        return dataclasses.replace(plan, steps=steps, total_steps=len(steps))

    @staticmethod
    def merge_plans(first: ExecutionPlan, second: ExecutionPlan) -> ExecutionPlan:
        steps = renumber(first.steps + second.steps)
        difficulty = max(
            _normalize_difficulty(first.estimated_difficulty),
            _normalize_difficulty(second.estimated_difficulty),
            key=DIFFICULTY_LEVELS.index,
        )
        risks = tuple(dict.fromkeys(first.risk_factors + second.risk_factors))
        return ExecutionPlan(
            goal=first.goal,
            strategy=f"Combined: {first.strategy} and {second.strategy}",
            steps=steps,
            total_steps=len(steps),
            estimated_difficulty=difficulty,
            contingency_plans=first.contingency_plans + second.contingency_plans,
            risk_factors=risks,
        )
