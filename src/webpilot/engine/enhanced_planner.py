"""Enhanced Planner -- tool-aware planning with per-step confidence.

Builds a richer prompt than :class:`PlanningEngine` (full tool parameter
descriptions and a goal-pattern table) and returns the same immutable
:class:`ExecutionPlan` type, with step confidences, alternatives and plan
risk factors filled in.  Its rule-based fallback prefers a dedicated search
tool when the catalog has one.
"""

from __future__ import annotations

import logging

from webpilot.engine.parsing import Fallback, Outcome, Parsed, extract_json
from webpilot.engine.planning import KNOWN_SITES, NAVIGATION_PATTERN, ExecutionPlan, PlanStep, plan_from_dict, search_query_from
from webpilot.engine.protocols import LanguageModelGateway, PageSnapshot
from webpilot.engine.tool_catalog import ToolCatalog

logger = logging.getLogger("webpilot.engine.enhanced_planner")

SYSTEM_PROMPT = "You are an expert web automation strategist. Respond ONLY with valid JSON."

GOAL_PATTERNS = """\
"search for X" -> smart_search (or type_text + press_enter on a page with a search box)
"open X" or "go to X" -> navigate with a full URL
"click X" -> click_text
"find X" -> find_text
"fill X" -> type_text
"extract X" -> extract_links"""

RESPONSE_SCHEMA = """{
  "strategy": "brief strategy description",
  "steps": [
    {
      "step": 1,
      "tool": "tool_name",
      "args": {"arg1": "value1"},
      "description": "what this step does",
      "rationale": "why this tool is optimal",
      "expectedResult": "what will happen",
      "confidence": 0.85,
      "alternatives": [{"tool": "other_tool", "args": {}}]
    }
  ],
  "estimatedDifficulty": "easy|medium|hard",
  "riskFactors": ["risk 1", "risk 2"]
}"""


class EnhancedPlanner:
    """Planner that chooses tools from their full descriptions."""

    def __init__(self, gateway: LanguageModelGateway, catalog: ToolCatalog) -> None:
        self._gateway = gateway
        self._catalog = catalog

    def build_prompt(self, goal: str, snapshot: PageSnapshot) -> str:
        return f"""You are an expert web automation strategist. Create an execution plan by choosing the OPTIMAL tool for each step.

GOAL: {goal}

CURRENT PAGE:
- URL: {snapshot.url or 'blank page'}
- Title: {snapshot.title or 'Unknown'}

AVAILABLE TOOLS ({len(self._catalog)} tools):
{self._catalog.describe_detailed()}

PLANNING PRINCIPLES:
1. Choose the right tool for each step.
2. Use the minimum number of steps; skip analysis steps that are not needed.
3. Be specific with arguments: full URLs, exact text to find or click, clear input values.
4. Consider what is already loaded on the current page.

GOAL PATTERNS:
{GOAL_PATTERNS}

Respond with ONLY valid JSON (no markdown, no explanation):
{RESPONSE_SCHEMA}"""

    async def generate_perfect_plan(self, goal: str, snapshot: PageSnapshot) -> ExecutionPlan:
        outcome = await self.generate_plan_outcome(goal, snapshot)
        return outcome.value

    async def generate_plan_outcome(self, goal: str, snapshot: PageSnapshot) -> Outcome[ExecutionPlan]:
        try:
            response = await self._gateway.chat(
                SYSTEM_PROMPT,
                [{"role": "user", "content": self.build_prompt(goal, snapshot)}],
                snapshot,
            )
        except Exception as exc:
            logger.warning("Enhanced planning call failed: %s", exc)
            return Fallback(self.smart_fallback(goal), reason=f"gateway error: {exc}")

        try:
            return Parsed(plan_from_dict(extract_json(response, expect="object"), goal))
        except (ValueError, TypeError) as exc:
            logger.warning("Unparseable enhanced plan: %s", exc)
            return Fallback(self.smart_fallback(goal), reason=str(exc))

    def smart_fallback(self, goal: str) -> ExecutionPlan:
        """Pattern-based plan: search, then known-site navigation, then scan."""
        goal_lower = goal.lower()

        if "search for" in goal_lower or goal_lower.startswith("search "):
            query = search_query_from(goal)
            if "smart_search" in self._catalog:
                steps = [
                    PlanStep(
                        step=1,
                        tool="smart_search",
                        args={"query": query, "searchEngine": "duckduckgo"},
                        description=f'Search for "{query}"',
                        rationale="smart_search handles navigation and searching",
                        expected_result="Search results displayed",
                        confidence=0.9,
                    )
                ]
            else:
                steps = [
                    PlanStep(
                        step=1,
                        tool="type_text",
                        args={"text": query, "target": "any"},
                        description=f'Type "{query}" into the search box',
                        rationale="Fill the search input",
                        expected_result="Query entered",
                        confidence=0.8,
                    ),
                    PlanStep(
                        step=2,
                        tool="press_enter",
                        args={},
                        description="Submit search",
                        rationale="press_enter triggers the search",
                        expected_result="Search results displayed",
                        confidence=0.8,
                    ),
                ]
            return ExecutionPlan.create(
                goal=goal,
                strategy="Use search to find information",
                steps=steps,
                estimated_difficulty="easy",
            )

        if NAVIGATION_PATTERN.search(goal):
            for site, url in KNOWN_SITES.items():
                if site in goal_lower:
                    return ExecutionPlan.create(
                        goal=goal,
                        strategy=f"Navigate directly to {site}",
                        steps=[
                            PlanStep(
                                step=1,
                                tool="navigate",
                                args={"url": url},
                                description=f"Open {site}",
                                rationale="Direct navigation to known URL",
                                expected_result=f"{site} homepage loaded",
                                confidence=0.95,
                            )
                        ],
                        estimated_difficulty="easy",
                    )

        return ExecutionPlan.create(
            goal=goal,
            strategy="Analyze page then proceed",
            steps=[
                PlanStep(
                    step=1,
                    tool="detect_interactive",
                    args={},
                    description="Scan page for interactive elements",
                    rationale="Understand what actions are available",
                    expected_result="List of interactive elements",
                    confidence=0.7,
                )
            ],
            estimated_difficulty="medium",
            risk_factors=("Unclear goal", "May need additional steps"),
        )
