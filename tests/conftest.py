"""Shared fixtures for WebPilot unit tests."""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any

import pytest
import yaml

from webpilot.engine.protocols import PageSnapshot, PageStructure, RawElement, ToolResult
from webpilot.engine.tool_catalog import Tool, ToolCatalog


# ---------------------------------------------------------------------------
# Fakes: gateway, environment, tools
# ---------------------------------------------------------------------------

class FakeGateway:
    """Scripted gateway.  Replies are consumed in order; Exceptions are raised."""

    def __init__(self, replies: list[Any] | None = None, default: str = "") -> None:
        self._replies = list(replies or [])
        self._default = default
        self.calls: list[dict[str, Any]] = []

    async def chat(self, system_prompt, messages, page_context=None) -> str:
        self.calls.append(
            {"system_prompt": system_prompt, "messages": messages, "page_context": page_context}
        )
        reply = self._replies.pop(0) if self._replies else self._default
        if isinstance(reply, Exception):
            raise reply
        if not isinstance(reply, str):
            reply = json.dumps(reply)
        return reply

    @property
    def last_prompt(self) -> str:
        return self.calls[-1]["messages"][-1]["content"]


class FakeEnvironment:
    """Environment returning a fixed snapshot and structure."""

    def __init__(
        self,
        structure: PageStructure | None = None,
        snapshot: PageSnapshot | None = None,
        fail_structure: bool = False,
        fail_snapshot: bool = False,
    ) -> None:
        self.structure = structure or PageStructure()
        self.page_snapshot = snapshot or PageSnapshot(url="https://example.com", title="Example", content="")
        self.fail_structure = fail_structure
        self.fail_snapshot = fail_snapshot
        self.structure_queries = 0

    async def snapshot(self) -> PageSnapshot:
        if self.fail_snapshot:
            raise RuntimeError("page crashed")
        return self.page_snapshot

    async def query_structure(self) -> PageStructure:
        self.structure_queries += 1
        if self.fail_structure:
            raise RuntimeError("evaluation failed")
        return self.structure


class RecordingTool:
    """Async executor that records its calls and replays scripted results."""

    def __init__(self, results: list[ToolResult] | None = None, default: ToolResult | None = None) -> None:
        self._results = list(results or [])
        self._default = default or ToolResult.ok({"done": True})
        self.calls: list[dict[str, Any]] = []

    async def __call__(self, context, args) -> ToolResult:
        self.calls.append(dict(args))
        if self._results:
            return self._results.pop(0)
        return self._default


def make_tool(name: str, executor=None, parameters: dict[str, Any] | None = None) -> Tool:
    return Tool(
        name=name,
        description=f"{name} tool",
        parameters=parameters if parameters is not None else {"type": "object", "properties": {}},
        execute=executor or RecordingTool(),
    )


def element(text: str, area: float = 10_000.0, visible: bool = True, in_viewport: bool = True, **attributes) -> RawElement:
    return RawElement(text=text, attributes=dict(attributes), visible=visible, area=area, in_viewport=in_viewport)


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def fake_gateway():
    """Factory: ``fake_gateway(replies, default="")``."""
    return FakeGateway


@pytest.fixture
def fake_environment():
    """Factory: ``fake_environment(structure=..., snapshot=..., fail_structure=...)``."""
    return FakeEnvironment


@pytest.fixture
def recording_tool():
    """Factory for :class:`RecordingTool` executors."""
    return RecordingTool


@pytest.fixture
def tool_factory():
    """Factory: ``tool_factory(name, executor=None, parameters=None)``."""
    return make_tool


@pytest.fixture
def element_factory():
    """Factory for :class:`RawElement` with attributes as keyword arguments."""
    return element


@pytest.fixture
def basic_catalog() -> ToolCatalog:
    """Catalog with the tool names the engine's fallbacks rely on, all succeeding."""
    return ToolCatalog(
        make_tool(name)
        for name in (
            "navigate",
            "click_text",
            "find_text",
            "type_text",
            "press_enter",
            "extract_links",
            "wait_ms",
            "detect_interactive",
        )
    )


@pytest.fixture
def search_structure() -> PageStructure:
    """A search page with a prominent button and a heading."""
    return PageStructure(
        buttons=[element("Search", area=8000.0), element("Sign in", area=2000.0)],
        links=[element("About"), element("Privacy", in_viewport=False)],
        inputs=[element("", type="search", placeholder="Search the web")],
        headings=[element("Welcome")],
    )


# ---------------------------------------------------------------------------
# Fixture: temporary project directory with .webpilot/ structure
# ---------------------------------------------------------------------------

@pytest.fixture
def tmp_project_dir(tmp_path: Path) -> Path:
    """Create a temporary .webpilot/ project directory with a config file."""
    project_dir = tmp_path / ".webpilot"
    project_dir.mkdir(parents=True)

    config_data = {
        "budget": 2.50,
        "headless": True,
        "viewport": {"width": 1280, "height": 720},
        "max_steps": 6,
    }
    (project_dir / "config.yaml").write_text(
        yaml.dump(config_data, default_flow_style=False), encoding="utf-8"
    )
    return project_dir


@pytest.fixture
def sample_config_yaml() -> str:
    """Return a valid WebPilot config.yaml as a string."""
    return """\
model: claude-sonnet-4-20250514
start_url: https://duckduckgo.com
budget: 3.00
headless: false
viewport:
  width: 1920
  height: 1080
max_steps: 15
step_delay_seconds: 0
enable_learning: false
replan_after_failures: 4
reflection_success_rate: 0.9
unknown_key: ignored
"""
