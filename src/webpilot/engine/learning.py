"""Learning System -- learns from action outcomes to bias future decisions.

Keeps a bounded FIFO of the most recent action outcomes and, per
``pageType:tool`` pair, a running success rate plus the most recent
distinct error reasons.  The rest of the engine reads it through a
confidence modifier, a retry-worthiness predicate and insight summaries;
it never changes a candidate's confidence itself.

One instance is owned by one run (or one owner of several runs).  If an
instance is shared between threads, ``record_action`` is serialized by an
internal lock so the append and the pattern update stay atomic.
"""

from __future__ import annotations

import dataclasses
import logging
import threading
import time
from collections import Counter
from typing import Any

logger = logging.getLogger("webpilot.engine.learning")

MAX_MEMORY_SIZE = 200
MAX_COMMON_MISTAKES = 5
MAX_CONTEXT_LENGTH = 200
NEUTRAL_SUCCESS_RATE = 0.5
MODIFIER_SCALE = 0.4  # (rate - 0.5) * 0.4 -> [-0.2, +0.2]
MAX_RETRY_ATTEMPTS = 2
RETRY_SUCCESS_THRESHOLD = 0.3
ANALYSIS_WINDOW = 20
MIN_TOOL_OBSERVATIONS = 2
TREND_HYSTERESIS = 0.1
BEST_PRACTICE_THRESHOLD = 0.7


@dataclasses.dataclass
class ActionMemory:
    tool: str
    args: dict[str, Any]
    page_type: str
    context: str
    success: bool
    error_reason: str | None = None
    timestamp: float = dataclasses.field(default_factory=time.time)


@dataclasses.dataclass
class PatternLearning:
    pattern: str  # "pageType:tool"
    success_rate: float = 0.0
    total_attempts: int = 0
    best_practice: str = ""
    common_mistakes: list[str] = dataclasses.field(default_factory=list)


@dataclasses.dataclass
class PerformanceAnalysis:
    total_actions: int
    success_rate: float
    most_successful_tool: str
    most_problematic_tool: str
    recent_trend: str  # improving | declining | stable


class LearningSystem:
    """Bounded action memory plus per-(pageType, tool) success patterns."""

    def __init__(self, max_memory_size: int = MAX_MEMORY_SIZE) -> None:
        self._max_memory_size = max_memory_size
        self._memory: list[ActionMemory] = []
        self._patterns: dict[str, PatternLearning] = {}
        self._lock = threading.Lock()

    # -- Recording -----------------------------------------------------------

    def record_action(
        self,
        tool: str,
        args: dict[str, Any],
        page_type: str,
        context: str,
        success: bool,
        error_reason: str | None = None,
    ) -> ActionMemory:
        memory = ActionMemory(
            tool=tool,
            args=dict(args or {}),
            page_type=page_type,
            context=(context or "")[:MAX_CONTEXT_LENGTH],
            success=success,
            error_reason=error_reason,
        )
        with self._lock:
            self._memory.append(memory)
            overflow = len(self._memory) - self._max_memory_size
            if overflow > 0:
                del self._memory[:overflow]
            self._update_pattern(memory)
        return memory

    def _update_pattern(self, memory: ActionMemory) -> None:
        key = f"{memory.page_type}:{memory.tool}"
        pattern = self._patterns.get(key)
        if pattern is None:
            pattern = PatternLearning(pattern=key)
            self._patterns[key] = pattern

        pattern.total_attempts += 1
        n = pattern.total_attempts
        pattern.success_rate = (pattern.success_rate * (n - 1) + (1 if memory.success else 0)) / n

        if memory.success and pattern.success_rate > BEST_PRACTICE_THRESHOLD:
            pattern.best_practice = f"On {memory.page_type} pages, {memory.tool} works well"

        if not memory.success and memory.error_reason:
            if memory.error_reason not in pattern.common_mistakes:
                pattern.common_mistakes.append(memory.error_reason)
                if len(pattern.common_mistakes) > MAX_COMMON_MISTAKES:
                    pattern.common_mistakes.pop(0)

    # -- Queries -------------------------------------------------------------

    @property
    def memory(self) -> list[ActionMemory]:
        return list(self._memory)

    @property
    def patterns(self) -> dict[str, PatternLearning]:
        return dict(self._patterns)

    def get_pattern(self, page_type: str, tool: str) -> PatternLearning | None:
        return self._patterns.get(f"{page_type}:{tool}")

    def get_success_rate(self, tool: str, page_type: str) -> float:
        """Empirical success fraction for ``tool`` on ``page_type``; 0.5 with no data."""
        relevant = [m for m in self._memory if m.tool == tool and m.page_type == page_type]
        if not relevant:
            return NEUTRAL_SUCCESS_RATE
        return sum(1 for m in relevant if m.success) / len(relevant)

    def get_confidence_modifier(
        self,
        tool: str,
        page_type: str,
        args: dict[str, Any] | None = None,
    ) -> float:
        """Signed adjustment in [-0.2, +0.2] for the caller to apply."""
        return (self.get_success_rate(tool, page_type) - NEUTRAL_SUCCESS_RATE) * MODIFIER_SCALE

    def should_retry(self, tool: str, args: dict[str, Any], attempt_count: int) -> bool:
        """Whether another attempt of ``tool`` with similar ``args`` is worthwhile."""
        if attempt_count >= MAX_RETRY_ATTEMPTS:
            return False

        args = args or {}
        similar = [
            m
            for m in self._memory
            if m.tool == tool and any(m.args.get(key) == value for key, value in args.items())
        ]
        if not similar:
            return True

        rate = sum(1 for m in similar if m.success) / len(similar)
        return rate > RETRY_SUCCESS_THRESHOLD

    def get_recommendations(self, page_type: str, goal: str = "") -> list[str]:
        """Tools that have worked on this page type, plus learned best practices."""
        successes = [m for m in self._memory if m.page_type == page_type and m.success][-20:]
        counts = Counter(m.tool for m in successes)

        recommendations = [
            f"Tool '{tool}' has worked {count} times on {page_type} pages"
            for tool, count in counts.most_common(3)
        ]
        for pattern in self._patterns.values():
            if (
                pattern.success_rate > BEST_PRACTICE_THRESHOLD
                and pattern.total_attempts >= 3
                and pattern.best_practice
            ):
                recommendations.append(pattern.best_practice)
        return recommendations

    def get_common_mistakes(self, tool: str) -> list[str]:
        failures = [m for m in self._memory if m.tool == tool and not m.success and m.error_reason][-10:]
        counts = Counter(m.error_reason for m in failures)
        return [f"{error} (occurred {count} times)" for error, count in counts.most_common(3)]

    def get_performance_analysis(self) -> PerformanceAnalysis:
        recent = self._memory[-ANALYSIS_WINDOW:]
        if not recent:
            return PerformanceAnalysis(
                total_actions=0,
                success_rate=0.0,
                most_successful_tool="none",
                most_problematic_tool="none",
                recent_trend="stable",
            )

        success_rate = sum(1 for m in recent if m.success) / len(recent)

        stats: dict[str, list[int]] = {}
        for m in recent:
            entry = stats.setdefault(m.tool, [0, 0])
            entry[1] += 1
            if m.success:
                entry[0] += 1

        best_tool, best_rate = "none", 0.0
        worst_tool, worst_rate = "none", 1.0
        for tool, (successes, total) in stats.items():
            if total < MIN_TOOL_OBSERVATIONS:
                continue
            rate = successes / total
            if rate > best_rate:
                best_tool, best_rate = tool, rate
            if rate < worst_rate:
                worst_tool, worst_rate = tool, rate

        half = len(recent) // 2
        first, second = recent[:half], recent[half:]
        trend = "stable"
        if first and second:
            first_rate = sum(1 for m in first if m.success) / len(first)
            second_rate = sum(1 for m in second if m.success) / len(second)
            if second_rate > first_rate + TREND_HYSTERESIS:
                trend = "improving"
            elif second_rate < first_rate - TREND_HYSTERESIS:
                trend = "declining"

        return PerformanceAnalysis(
            total_actions=len(self._memory),
            success_rate=success_rate,
            most_successful_tool=best_tool,
            most_problematic_tool=worst_tool,
            recent_trend=trend,
        )

    def get_insights(self) -> list[str]:
        analysis = self.get_performance_analysis()
        insights = [
            f"Total actions recorded: {analysis.total_actions}",
            f"Overall success rate: {analysis.success_rate * 100:.1f}%",
        ]
        if analysis.most_successful_tool != "none":
            insights.append(f"Most reliable tool: {analysis.most_successful_tool}")
        if analysis.recent_trend == "improving":
            insights.append("Performance is improving over time")
        elif analysis.recent_trend == "declining":
            insights.append("Recent performance has declined - may need strategy adjustment")

        reliable = sum(
            1 for p in self._patterns.values() if p.success_rate > 0.8 and p.total_attempts >= 5
        )
        if reliable:
            insights.append(f"Discovered {reliable} highly reliable patterns")
        return insights

    # -- Export / import -----------------------------------------------------

    def export_data(self) -> dict[str, Any]:
        return {
            "memory": [dataclasses.asdict(m) for m in self._memory],
            "patterns": [[key, dataclasses.asdict(p)] for key, p in self._patterns.items()],
        }

    def import_data(self, data: dict[str, Any]) -> None:
        memory = [ActionMemory(**m) for m in data.get("memory") or []]
        patterns = {key: PatternLearning(**p) for key, p in data.get("patterns") or []}
        with self._lock:
            self._memory = memory[-self._max_memory_size:]
            self._patterns = patterns

    def clear(self) -> None:
        with self._lock:
            self._memory = []
            self._patterns = {}
