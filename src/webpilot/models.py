"""Centralized model configuration, pricing and run defaults."""

# Model IDs for different tiers
MODELS = {
    "planner": "claude-haiku-4-5-20251001",
    "selector": "claude-haiku-4-5-20251001",
    "heavy": "claude-sonnet-4-20250514",
}

# Pricing per million tokens (USD)
PRICING = {
    "claude-haiku-4-5-20251001": {"input": 0.80, "output": 4.00},
    "claude-sonnet-4-20250514": {"input": 3.00, "output": 15.00},
}

# Default budget per run
DEFAULT_BUDGET_USD = 1.00

# Default viewport
DEFAULT_VIEWPORT = (1280, 720)

# Run loop
DEFAULT_MAX_STEPS = 10
DEFAULT_STEP_DELAY_SECONDS = 0.5
DEFAULT_GATEWAY_MAX_TOKENS = 2048
DEFAULT_GATEWAY_TIMEOUT = 60.0
