"""Best Action Selector -- analyze, propose, score, choose.

Each selection cycle:

1. The Page Analyzer produces a fresh :class:`PageAnalysis`.
2. The :class:`CandidateGenerator` asks the gateway for 3-5 diverse next
   actions, falling back to deterministic heuristics when the response is
   missing or unparseable.
3. :func:`score_action_candidates` assigns each candidate a confidence in
   [0, 1].  Scoring is pure and deterministic.
4. :func:`select_top_action` picks the highest-confidence candidate (ties go
   to the first-generated), or an emergency structural scan when there is
   nothing to choose from.
"""

from __future__ import annotations

import dataclasses
import json
import logging
from typing import Any

from webpilot.engine.page_analyzer import PageAnalysis, PageAnalyzer
from webpilot.engine.parsing import Fallback, Outcome, Parsed, extract_json
from webpilot.engine.protocols import Environment, LanguageModelGateway, PageSnapshot
from webpilot.engine.tool_catalog import ToolCatalog

logger = logging.getLogger("webpilot.engine.action_selector")

MAX_CANDIDATES = 5

BASE_CONFIDENCE = 0.5
GOAL_RELEVANCE_WEIGHT = 0.2
ELEMENT_PRESENT_BONUS = 0.2
ELEMENT_MISSING_PENALTY = 0.3
RISK_PENALTY = 0.05
PAGE_ALIGNMENT_BONUS = 0.15
ALTERNATIVE_BONUS = 0.03

EMERGENCY_CONFIDENCE = 0.3
_IMPORTANT_BUTTON_THRESHOLD = 0.3

# Tools whose ``text`` argument must match something on the page
_TEXT_TARGETED_TOOLS = frozenset({"click_text", "find_text"})

# Canonical action per page type
_PAGE_ALIGNED_TOOLS: dict[str, frozenset[str]] = {
    "search": frozenset({"type_text"}),
    "form": frozenset({"type_text", "press_enter"}),
}

COMPLETION_TOOLS = frozenset({"final", "done"})

SYSTEM_PROMPT = "You are a web automation expert. Always respond with valid JSON only."

CANDIDATE_SCHEMA = """[
  {
    "tool": "tool_name",
    "args": {},
    "reasoning": "why this is good",
    "expectedOutcome": "what happens next",
    "risks": ["risk1"],
    "alternatives": ["alt1"]
  }
]"""


def _coerce_str(val: Any) -> str:
    if isinstance(val, list):
        return ", ".join(str(v) for v in val)
    if val is None:
        return ""
    return str(val)


def _coerce_str_list(val: Any) -> list[str]:
    if val is None:
        return []
    if isinstance(val, (list, tuple)):
        return [str(v) for v in val if v is not None]
    return [str(val)]


@dataclasses.dataclass
class ActionCandidate:
    """A proposed, not-yet-chosen action."""

    tool: str
    args: dict[str, Any] = dataclasses.field(default_factory=dict)
    reasoning: str = ""
    confidence: float = 0.0
    expected_outcome: str = ""
    risks: list[str] = dataclasses.field(default_factory=list)
    alternatives: list[str] = dataclasses.field(default_factory=list)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ActionCandidate:
        args = data.get("args")
        args = dict(args) if isinstance(args, dict) else {}
        # Completion signals may put their result text at the top level
        if "text" in data and "text" not in args:
            args["text"] = _coerce_str(data["text"])
        return cls(
            tool=_coerce_str(data.get("tool")).strip(),
            args=args,
            reasoning=_coerce_str(data.get("reasoning", "")),
            confidence=0.0,
            expected_outcome=_coerce_str(data.get("expectedOutcome", data.get("expected_outcome", ""))),
            risks=_coerce_str_list(data.get("risks")),
            alternatives=_coerce_str_list(data.get("alternatives")),
        )

    @property
    def is_completion(self) -> bool:
        return self.tool in COMPLETION_TOOLS

    def completion_text(self) -> str:
        """Result text carried by a ``final``/``done`` signal."""
        return str(self.args.get("text") or self.expected_outcome or "Task completed")

    def signature(self) -> str:
        """``tool({...args})`` string used in action history."""
        return f"{self.tool}({json.dumps(self.args, sort_keys=True, default=str)})"


@dataclasses.dataclass
class BestActionResult:
    selected_action: ActionCandidate
    all_candidates: list[ActionCandidate]
    page_analysis: PageAnalysis
    reasoning: str
    used_fallback: bool = False


# ---------------------------------------------------------------------------
# Candidate generation
# ---------------------------------------------------------------------------


def fallback_candidates(analysis: PageAnalysis) -> list[ActionCandidate]:
    """Deterministic candidates used when the gateway gives nothing usable."""
    candidates = [
        ActionCandidate(
            tool="extract_links",
            args={},
            reasoning="Extract links to understand page structure",
            confidence=0.6,
            expected_outcome="Get overview of available links",
            risks=[],
            alternatives=["scroll", "find_text"],
        )
    ]

    button = next(
        (
            el
            for el in analysis.key_elements
            if el.type == "button" and el.is_visible and el.text
            and el.importance >= _IMPORTANT_BUTTON_THRESHOLD
        ),
        None,
    )
    if button is not None:
        candidates.append(
            ActionCandidate(
                tool="click_text",
                args={"text": button.text},
                reasoning=f'Click prominent button: "{button.text}"',
                confidence=0.5,
                expected_outcome="Navigate or trigger action",
                risks=["May not be the right button"],
                alternatives=["find_text", "scroll"],
            )
        )
    return candidates


def emergency_action() -> ActionCandidate:
    return ActionCandidate(
        tool="extract_links",
        args={},
        reasoning="Emergency fallback: extract page structure",
        confidence=EMERGENCY_CONFIDENCE,
        expected_outcome="Get basic page information",
        risks=["May not progress toward goal"],
        alternatives=[],
    )


class CandidateGenerator:
    """Proposes several plausible next actions via the gateway."""

    def __init__(self, gateway: LanguageModelGateway, catalog: ToolCatalog) -> None:
        self._gateway = gateway
        self._catalog = catalog

    def build_prompt(
        self,
        goal: str,
        snapshot: PageSnapshot,
        analysis: PageAnalysis,
        previous_actions: list[str],
        failed_attempts: list[str],
    ) -> str:
        summary = analysis.summary()
        return "\n".join(
            [
                "You are an expert web automation strategist. Analyze this situation and "
                "propose 3-5 different action candidates to progress toward the goal.",
                "",
                f"GOAL: {goal}",
                "",
                "PAGE CONTEXT:",
                f"- Type: {analysis.page_type}",
                f"- URL: {snapshot.url}",
                f"- Title: {snapshot.title}",
                f"- Key Elements: {json.dumps(summary['keyElements'], indent=2)}",
                f"- Obstacles: {', '.join(analysis.obstacles) or 'None'}",
                "",
                "HISTORY:",
                f"- Previous actions: {' -> '.join(previous_actions) or 'None yet'}",
                f"- Failed attempts: {', '.join(failed_attempts) or 'None'}",
                "",
                "AVAILABLE TOOLS:",
                self._catalog.descriptions(),
                "",
                'When the goal is already complete, propose {"tool": "final", "args": {"text": "<result>"}}.',
                "",
                "Generate 3-5 diverse action candidates. Respond with ONLY a JSON array:",
                CANDIDATE_SCHEMA,
            ]
        )

    def parse_candidates(self, response: str) -> list[ActionCandidate]:
        """Parse a gateway response.  Raises ValueError when nothing usable is found."""
        data = extract_json(response, expect="array")
        if isinstance(data, dict):
            data = data.get("candidates", [data])
        if not isinstance(data, list):
            raise ValueError(f"Expected a JSON array, got {type(data).__name__}")

        candidates = []
        for item in data:
            if not isinstance(item, dict):
                continue
            candidate = ActionCandidate.from_dict(item)
            if candidate.tool:
                candidates.append(candidate)
        if not candidates:
            raise ValueError("Response contained no candidates with a tool name")
        return candidates[:MAX_CANDIDATES]

    async def generate(
        self,
        goal: str,
        snapshot: PageSnapshot,
        analysis: PageAnalysis,
        previous_actions: list[str],
        failed_attempts: list[str],
    ) -> Outcome[list[ActionCandidate]]:
        prompt = self.build_prompt(goal, snapshot, analysis, previous_actions, failed_attempts)
        try:
            response = await self._gateway.chat(
                SYSTEM_PROMPT,
                [{"role": "user", "content": prompt}],
                snapshot,
            )
        except Exception as exc:
            logger.warning("Candidate generation call failed: %s", exc)
            return Fallback(fallback_candidates(analysis), reason=f"gateway error: {exc}")

        try:
            return Parsed(self.parse_candidates(response))
        except (ValueError, TypeError) as exc:
            logger.warning("Unparseable candidate response: %s", exc)
            return Fallback(fallback_candidates(analysis), reason=str(exc))


# ---------------------------------------------------------------------------
# Scoring and selection
# ---------------------------------------------------------------------------


def word_overlap(goal: str, reasoning: str) -> float:
    """Fraction of goal words that appear (as substrings) in the reasoning."""
    goal_words = goal.lower().split()
    if not goal_words:
        return 0.0
    reasoning_lower = reasoning.lower()
    return sum(1 for w in goal_words if w in reasoning_lower) / len(goal_words)


def score_candidate(candidate: ActionCandidate, goal: str, analysis: PageAnalysis) -> float:
    confidence = BASE_CONFIDENCE

    confidence += word_overlap(goal, candidate.reasoning) * GOAL_RELEVANCE_WEIGHT

    if candidate.tool in _TEXT_TARGETED_TOOLS:
        target = str(candidate.args.get("text") or "").lower()
        present = any(target in el.text.lower() for el in analysis.key_elements)
        confidence += ELEMENT_PRESENT_BONUS if present else -ELEMENT_MISSING_PENALTY

    confidence -= len(candidate.risks) * RISK_PENALTY

    if candidate.tool in _PAGE_ALIGNED_TOOLS.get(analysis.page_type, ()):
        confidence += PAGE_ALIGNMENT_BONUS

    confidence += len(candidate.alternatives) * ALTERNATIVE_BONUS

    return max(0.0, min(1.0, confidence))


def score_action_candidates(
    candidates: list[ActionCandidate],
    goal: str,
    analysis: PageAnalysis,
) -> list[ActionCandidate]:
    """Return scored copies of ``candidates``; inputs are left untouched."""
    return [
        dataclasses.replace(c, confidence=score_candidate(c, goal, analysis))
        for c in candidates
    ]


def select_top_action(candidates: list[ActionCandidate]) -> ActionCandidate:
    if not candidates:
        return emergency_action()
    # sorted() is stable, so the first-generated candidate wins ties
    return sorted(candidates, key=lambda c: -c.confidence)[0]


def selection_reasoning(selected: ActionCandidate, candidates: list[ActionCandidate]) -> str:
    """Diagnostic text naming the choice and up to two runners-up."""
    ranked = sorted(candidates, key=lambda c: -c.confidence)
    others = [c for c in ranked if c is not selected][:2]

    lines = [
        f"Selected: {selected.tool} with confidence {selected.confidence * 100:.0f}%",
        f"Reason: {selected.reasoning}",
    ]
    if others:
        lines.append("")
        lines.append("Alternatives considered:")
        for alt in others:
            lines.append(f"- {alt.tool} ({alt.confidence * 100:.0f}%): {alt.reasoning[:60]}...")
    return "\n".join(lines)


class BestActionSelector:
    """Composes analysis, generation and scoring into one decision."""

    def __init__(
        self,
        gateway: LanguageModelGateway,
        environment: Environment,
        catalog: ToolCatalog,
        analyzer: PageAnalyzer | None = None,
    ) -> None:
        self._environment = environment
        self._analyzer = analyzer or PageAnalyzer(environment)
        self._generator = CandidateGenerator(gateway, catalog)

    async def _snapshot(self) -> PageSnapshot:
        try:
            return await self._environment.snapshot()
        except Exception as exc:
            logger.warning("Snapshot failed: %s", exc)
            return PageSnapshot()

    async def select_best_action(
        self,
        goal: str,
        previous_actions: list[str],
        failed_attempts: list[str],
    ) -> BestActionResult:
        snapshot = await self._snapshot()
        analysis = await self._analyzer.analyze()

        outcome = await self._generator.generate(
            goal, snapshot, analysis, previous_actions, failed_attempts,
        )
        scored = score_action_candidates(outcome.value, goal, analysis)
        selected = select_top_action(scored)

        logger.debug(
            "Selected %s (%.2f) from %d candidates%s",
            selected.tool, selected.confidence, len(scored),
            " [fallback]" if outcome.is_fallback else "",
        )
        return BestActionResult(
            selected_action=selected,
            all_candidates=scored,
            page_analysis=analysis,
            reasoning=selection_reasoning(selected, scored),
            used_fallback=outcome.is_fallback,
        )
