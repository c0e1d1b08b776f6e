"""WebPilot -- goal-driven browser automation with planning, scoring and learning."""

__version__ = "0.1.0"
