"""Collaborator contracts for the WebPilot engine.

These protocols define the boundary between the decision-and-execution loop
and the things it drives: the rendered page (Environment) and the text
completion service (LanguageModelGateway).  The loop never depends on a
concrete browser or model; it only awaits these coroutines and reacts to
their success or failure.
"""

from __future__ import annotations

import dataclasses
from typing import Any, Protocol, runtime_checkable


@dataclasses.dataclass
class PageSnapshot:
    """Read-only facts about the current page."""

    url: str = ""
    title: str = ""
    content: str = ""  # Text excerpt, not full HTML


@dataclasses.dataclass
class RawElement:
    """One element as reported by the environment's structural query."""

    text: str
    attributes: dict[str, str] = dataclasses.field(default_factory=dict)
    visible: bool = True
    area: float = 0.0  # Rendered width * height in CSS pixels
    in_viewport: bool = True


@dataclasses.dataclass
class PageStructure:
    """Raw structural facts the Page Analyzer turns into a PageAnalysis."""

    buttons: list[RawElement] = dataclasses.field(default_factory=list)
    links: list[RawElement] = dataclasses.field(default_factory=list)
    inputs: list[RawElement] = dataclasses.field(default_factory=list)
    headings: list[RawElement] = dataclasses.field(default_factory=list)
    has_form: bool = False
    has_article: bool = False
    has_modal: bool = False
    has_loading_indicator: bool = False
    link_count: int | None = None  # Total links; defaults to len(links)

    @property
    def total_links(self) -> int:
        return self.link_count if self.link_count is not None else len(self.links)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> PageStructure:
        """Build from the plain dict returned by a page evaluation."""

        def _elements(key: str) -> list[RawElement]:
            items = data.get(key) or []
            result = []
            for item in items:
                if not isinstance(item, dict):
                    continue
                attrs = item.get("attributes") or {}
                result.append(
                    RawElement(
                        text=str(item.get("text") or ""),
                        attributes={str(k): str(v) for k, v in attrs.items() if v is not None},
                        visible=bool(item.get("visible", True)),
                        area=float(item.get("area") or 0.0),
                        in_viewport=bool(item.get("in_viewport", True)),
                    )
                )
            return result

        link_count = data.get("link_count")
        return cls(
            buttons=_elements("buttons"),
            links=_elements("links"),
            inputs=_elements("inputs"),
            headings=_elements("headings"),
            has_form=bool(data.get("has_form")),
            has_article=bool(data.get("has_article")),
            has_modal=bool(data.get("has_modal")),
            has_loading_indicator=bool(data.get("has_loading_indicator")),
            link_count=int(link_count) if link_count is not None else None,
        )


@dataclasses.dataclass
class ToolResult:
    """Outcome of executing one tool.  Only ``success`` and ``error`` drive control flow."""

    success: bool
    output: Any = None
    error: str | None = None

    @classmethod
    def ok(cls, output: Any = None) -> ToolResult:
        return cls(success=True, output=output)

    @classmethod
    def fail(cls, error: str) -> ToolResult:
        return cls(success=False, error=error)


@runtime_checkable
class Environment(Protocol):
    """The rendered document being acted upon.

    Both calls are best-effort.  ``snapshot`` should return empty fields
    rather than raise; ``query_structure`` may raise, and the Page Analyzer
    converts that into a neutral analysis.
    """

    async def snapshot(self) -> PageSnapshot: ...

    async def query_structure(self) -> PageStructure: ...


@runtime_checkable
class LanguageModelGateway(Protocol):
    """Text completion service.  The returned string is untrusted.

    It may contain markdown fences, extra prose, or no JSON at all.  Every
    caller must have a deterministic fallback.
    """

    async def chat(
        self,
        system_prompt: str,
        messages: list[dict[str, str]],
        page_context: PageSnapshot | None = None,
    ) -> str: ...
