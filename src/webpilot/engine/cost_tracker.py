"""WebPilot Cost Tracker -- per-run token accounting and a hard spend cap.

Every gateway call reports its token usage here.  Once the run's spend
passes the cap, :class:`BudgetExceededError` is raised out of the gateway
and the engine treats the call as failed, falling back to its rule-based
behaviour for the rest of the run.
"""

from __future__ import annotations

import dataclasses
import datetime as dt
import logging

from webpilot.models import DEFAULT_BUDGET_USD, MODELS, PRICING

logger = logging.getLogger("webpilot.engine.cost_tracker")

# Unknown model ids are priced like the heavy tier
_FALLBACK_MODEL = MODELS["heavy"]


class BudgetExceededError(Exception):
    """Raised when a run exceeds its cost budget."""

    pass


@dataclasses.dataclass
class APICall:
    """Record of a single gateway call."""

    timestamp: str
    model: str
    input_tokens: int
    output_tokens: int
    cost_usd: float


@dataclasses.dataclass
class CostSummary:
    total_cost_usd: float
    total_input_tokens: int
    total_output_tokens: int
    calls_by_model: dict[str, int]
    budget_limit_usd: float
    budget_remaining_usd: float
    budget_exceeded: bool
    warning_issued: bool
    call_count: int


class CostTracker:
    """Tracks token costs for a single run and enforces its budget."""

    def __init__(self, budget_usd: float = DEFAULT_BUDGET_USD, warn_at_pct: int = 80) -> None:
        self._budget_usd = budget_usd
        self._warn_at_pct = warn_at_pct
        self._calls: list[APICall] = []
        self._total_cost = 0.0
        self._total_input_tokens = 0
        self._total_output_tokens = 0
        self._warning_issued = False
        self._budget_exceeded = False

    def check_budget(self) -> None:
        """Raise if the budget is already spent.  Called before each request."""
        if self._budget_exceeded:
            raise BudgetExceededError(
                f"Run budget exhausted: ${self._total_cost:.4f} of ${self._budget_usd:.2f}"
            )

    def record_call(self, model: str, input_tokens: int, output_tokens: int) -> APICall:
        """Record a call.  Raises BudgetExceededError once spend passes the cap."""
        cost = self.calculate_cost(model, input_tokens, output_tokens)
        call = APICall(
            timestamp=dt.datetime.now(dt.timezone.utc).isoformat(timespec="seconds"),
            model=model,
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            cost_usd=round(cost, 6),
        )
        self._calls.append(call)
        self._total_cost += cost
        self._total_input_tokens += input_tokens
        self._total_output_tokens += output_tokens

        if not self._warning_issued and self._budget_usd > 0:
            if self._total_cost / self._budget_usd * 100 >= self._warn_at_pct:
                self._warning_issued = True
                logger.warning(
                    "Run has used %.0f%% of its $%.2f budget",
                    self._total_cost / self._budget_usd * 100, self._budget_usd,
                )

        if self._budget_usd > 0 and self._total_cost > self._budget_usd:
            self._budget_exceeded = True
            raise BudgetExceededError(
                f"Run budget exceeded: ${self._total_cost:.4f} > ${self._budget_usd:.2f} limit"
            )
        return call

    @property
    def warning_issued(self) -> bool:
        return self._warning_issued

    @property
    def budget_exceeded(self) -> bool:
        return self._budget_exceeded

    @property
    def total_cost(self) -> float:
        return round(self._total_cost, 6)

    @property
    def calls(self) -> list[APICall]:
        return list(self._calls)

    def get_summary(self) -> CostSummary:
        calls_by_model: dict[str, int] = {}
        for call in self._calls:
            calls_by_model[call.model] = calls_by_model.get(call.model, 0) + 1
        return CostSummary(
            total_cost_usd=round(self._total_cost, 6),
            total_input_tokens=self._total_input_tokens,
            total_output_tokens=self._total_output_tokens,
            calls_by_model=calls_by_model,
            budget_limit_usd=self._budget_usd,
            budget_remaining_usd=round(max(0.0, self._budget_usd - self._total_cost), 6),
            budget_exceeded=self._budget_exceeded,
            warning_issued=self._warning_issued,
            call_count=len(self._calls),
        )

    @staticmethod
    def calculate_cost(model: str, input_tokens: int, output_tokens: int) -> float:
        """USD cost of one call, from per-million-token pricing."""
        pricing = PRICING.get(model) or PRICING[_FALLBACK_MODEL]
        return (input_tokens / 1_000_000) * pricing["input"] + (output_tokens / 1_000_000) * pricing["output"]
