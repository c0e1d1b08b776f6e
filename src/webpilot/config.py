"""WebPilot configuration management."""

from __future__ import annotations

import logging
import os
from collections.abc import Iterator
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from webpilot.models import (
    DEFAULT_BUDGET_USD,
    DEFAULT_MAX_STEPS,
    DEFAULT_STEP_DELAY_SECONDS,
    DEFAULT_VIEWPORT,
    MODELS,
)

logger = logging.getLogger("webpilot.config")

API_KEY_ENV_VAR = "ANTHROPIC_API_KEY"
GLOBAL_CONFIG = Path(".webpilot") / "config.yaml"


class WebPilotConfigError(Exception):
    """Raised when configuration is invalid or missing."""

    pass


@dataclass
class WebPilotConfig:
    """Configuration for a WebPilot run."""

    # Paths
    project_dir: Path = field(default_factory=lambda: Path(".webpilot"))

    # API
    # Never shown in repr
    anthropic_api_key: str = field(default="", repr=False)
    model: str = MODELS["selector"]

    # Browser
    start_url: str = ""
    viewport: tuple[int, int] = DEFAULT_VIEWPORT
    headless: bool = True

    # Run loop
    budget: float = DEFAULT_BUDGET_USD
    max_steps: int = DEFAULT_MAX_STEPS
    step_delay_seconds: float = DEFAULT_STEP_DELAY_SECONDS
    enable_planning: bool = True
    enable_learning: bool = True
    enable_reflection: bool = True
    use_enhanced_planner: bool = True

    # Policy thresholds
    replan_after_failures: int = 2
    recover_after_failures: int = 3
    reflection_min_actions: int = 3
    reflection_success_rate: float = 0.8
    reflection_progress: float = 0.9
    reflection_poor_rate: float = 0.3

    @classmethod
    def from_file(cls, config_path: Path) -> WebPilotConfig:
        """Load config from a YAML file."""
        if not config_path.exists():
            raise WebPilotConfigError(
                f"Config file not found: {config_path}\n\n"
                "To fix: create .webpilot/config.yaml or pass options on the command line"
            )
        with open(config_path) as f:
            data = yaml.safe_load(f) or {}
        if not isinstance(data, dict):
            raise WebPilotConfigError(f"Config file must contain a mapping: {config_path}")
        return cls._from_dict(data, config_path.parent)

    @classmethod
    def _from_dict(cls, data: dict[str, Any], project_dir: Path) -> WebPilotConfig:
        """Create config from a dictionary."""
        config = cls()
        config.project_dir = project_dir

        try:
            if "anthropic_api_key" in data or "api_key" in data:
                config.anthropic_api_key = str(data.get("anthropic_api_key") or data.get("api_key") or "")
            if "model" in data:
                config.model = str(data["model"])
            if "start_url" in data:
                config.start_url = str(data["start_url"] or "")
            if "headless" in data:
                config.headless = bool(data["headless"])
            if "viewport" in data:
                vp = data["viewport"]
                if isinstance(vp, dict):
                    config.viewport = (int(vp.get("width", 1280)), int(vp.get("height", 720)))
            if "budget" in data:
                config.budget = float(data["budget"])
            if "max_steps" in data:
                config.max_steps = int(data["max_steps"])
            if "step_delay_seconds" in data:
                config.step_delay_seconds = float(data["step_delay_seconds"])

            for flag in (
                "enable_planning",
                "enable_learning",
                "enable_reflection",
                "use_enhanced_planner",
            ):
                if flag in data:
                    setattr(config, flag, bool(data[flag]))

            for name in ("replan_after_failures", "recover_after_failures", "reflection_min_actions"):
                if name in data:
                    setattr(config, name, int(data[name]))
            for name in ("reflection_success_rate", "reflection_progress", "reflection_poor_rate"):
                if name in data:
                    setattr(config, name, float(data[name]))
        except (TypeError, ValueError) as exc:
            raise WebPilotConfigError(f"Invalid config value: {exc}") from exc

        if config.max_steps < 1:
            raise WebPilotConfigError(f"max_steps must be at least 1, got {config.max_steps}")

        return config

    def resolve_api_key(self) -> str:
        """Return the Anthropic API key for this run.

        Sources, highest priority first:
        1. ANTHROPIC_API_KEY environment variable
        2. .env file in the current directory
        3. ``anthropic_api_key`` (or ``api_key``) loaded into this config
        4. Global config (~/.webpilot/config.yaml)
        """
        for source, key in self._api_key_sources():
            if key:
                logger.debug("Using API key from %s", source)
                return key

        raise WebPilotConfigError(
            f"{API_KEY_ENV_VAR} not set\n\n"
            "WebPilot needs an Anthropic API key to plan and select actions.\n\n"
            "To fix:\n"
            f"  export {API_KEY_ENV_VAR}=sk-ant-your-key-here\n"
            f"  or set anthropic_api_key in {self.project_dir / 'config.yaml'}"
        )

    def _api_key_sources(self) -> Iterator[tuple[str, str]]:
        # Lazy so later sources are only read when earlier ones are empty.
        yield "environment", os.environ.get(API_KEY_ENV_VAR, "")
        yield ".env", _read_dotenv(Path(".env")).get(API_KEY_ENV_VAR, "")
        yield "project config", self.anthropic_api_key
        yield "global config", _global_api_key()

    def runtime_options(self, **overrides: Any):
        """Build :class:`RuntimeOptions` from this config, applying overrides."""
        from webpilot.engine.runtime import RuntimeOptions

        options = RuntimeOptions(
            max_steps=self.max_steps,
            step_delay_seconds=self.step_delay_seconds,
            enable_planning=self.enable_planning,
            enable_learning=self.enable_learning,
            enable_reflection=self.enable_reflection,
            use_enhanced_planner=self.use_enhanced_planner,
            replan_after_failures=self.replan_after_failures,
            recover_after_failures=self.recover_after_failures,
            reflection_min_actions=self.reflection_min_actions,
            reflection_success_rate=self.reflection_success_rate,
            reflection_progress=self.reflection_progress,
            reflection_poor_rate=self.reflection_poor_rate,
        )
        for key, value in overrides.items():
            setattr(options, key, value)
        return options


def mask_key(key: str) -> str:
    """Mask an API key for display. Shows first 7 and last 3 chars."""
    if len(key) <= 10:
        return "***"
    return f"{key[:7]}...{key[-3:]}"


def _read_dotenv(path: Path) -> dict[str, str]:
    """Read ``NAME=value`` pairs from a dotenv file. Missing file gives ``{}``."""
    if not path.is_file():
        return {}
    try:
        text = path.read_text(encoding="utf-8")
    except OSError as exc:
        logger.warning("Could not read %s: %s", path, exc)
        return {}

    values: dict[str, str] = {}
    for raw in text.splitlines():
        line = raw.strip()
        if line.startswith("export "):
            line = line[len("export "):].lstrip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        name, _, value = line.partition("=")
        values[name.strip()] = value.strip().strip("'\"")
    return values


def _global_api_key() -> str:
    path = Path.home() / GLOBAL_CONFIG
    if not path.is_file():
        return ""
    try:
        return WebPilotConfig.from_file(path).anthropic_api_key
    except (WebPilotConfigError, yaml.YAMLError, OSError) as exc:
        logger.warning("Ignoring global config %s: %s", path, exc)
        return ""
