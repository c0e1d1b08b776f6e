"""WebPilot engine -- the decision-and-execution loop and its collaborators.

- SuperAgenticRuntime: plan, select, execute, reflect, recover, replan
- BestActionSelector: page analysis, candidate generation and scoring
- PlanningEngine / EnhancedPlanner: multi-step plans with rule-based fallbacks
- LearningSystem: bounded outcome memory and per-page-type success patterns
- ToolCatalog: name -> schema-described tool registry
- AnthropicGateway / CostTracker: language model access with a spend cap
- PlaywrightEnvironment: the browser page being acted upon
"""

from webpilot.engine.action_selector import ActionCandidate, BestActionResult, BestActionSelector
from webpilot.engine.cost_tracker import BudgetExceededError, CostTracker
from webpilot.engine.enhanced_planner import EnhancedPlanner
from webpilot.engine.learning import LearningSystem
from webpilot.engine.page_analyzer import PageAnalysis, PageAnalyzer
from webpilot.engine.parsing import Fallback, Parsed
from webpilot.engine.planning import ExecutionPlan, PlanningEngine, PlanStep
from webpilot.engine.protocols import Environment, LanguageModelGateway, PageSnapshot, PageStructure, ToolResult
from webpilot.engine.runtime import (
    RunResult,
    RunState,
    RuntimeOptions,
    StepResult,
    SuperAgenticRuntime,
    run_super_agent,
)
from webpilot.engine.tool_catalog import Tool, ToolCatalog, ToolContext, ToolNotFound

# AnthropicGateway and PlaywrightEnvironment are NOT eagerly imported here so
# the loop can be used with other collaborators.  Import them directly:
#   from webpilot.engine.gateway import AnthropicGateway
#   from webpilot.engine.browser_environment import PlaywrightEnvironment

__all__ = [
    "ActionCandidate",
    "BestActionResult",
    "BestActionSelector",
    "BudgetExceededError",
    "CostTracker",
    "EnhancedPlanner",
    "Environment",
    "ExecutionPlan",
    "Fallback",
    "LanguageModelGateway",
    "LearningSystem",
    "PageAnalysis",
    "PageAnalyzer",
    "PageSnapshot",
    "PageStructure",
    "Parsed",
    "PlanStep",
    "PlanningEngine",
    "RunResult",
    "RunState",
    "RuntimeOptions",
    "StepResult",
    "SuperAgenticRuntime",
    "Tool",
    "ToolCatalog",
    "ToolContext",
    "ToolNotFound",
    "ToolResult",
    "run_super_agent",
]
