"""Page Analyzer -- turns raw page structure into a ranked PageAnalysis.

Scores every collected element by visual prominence, classifies the page
into one of a small set of types, flags obstacles such as modals or
loading indicators, and infers coarse user intents.  The analyzer never
raises: if the environment query fails the result is a neutral analysis
of type ``unknown`` with an obstacle flag.
"""

from __future__ import annotations

import dataclasses
import logging
from typing import Any

from webpilot.engine.protocols import Environment, PageStructure, RawElement

logger = logging.getLogger("webpilot.engine.page_analyzer")

PAGE_TYPES = ("search", "form", "form-login", "article", "navigation", "unknown")

# Per-kind collection caps
_MAX_BUTTONS = 20
_MAX_LINKS = 20
_MAX_INPUTS = 15
_MAX_HEADINGS = 10
_MAX_KEY_ELEMENTS = 30

_MAX_TEXT_LENGTH = 100
_SIZE_SATURATION_AREA = 10_000.0  # px^2 at which the size score reaches 1
_OFF_VIEWPORT_POSITION_SCORE = 0.3
_HEADING_IMPORTANCE_FACTOR = 0.7
_NAVIGATION_LINK_THRESHOLD = 20


@dataclasses.dataclass
class ElementInfo:
    """A ranked element on the page."""

    type: str  # button, link, input, heading
    text: str
    attributes: dict[str, str]
    is_visible: bool
    importance: float  # 0-1

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type,
            "text": self.text,
            "attributes": self.attributes,
            "isVisible": self.is_visible,
            "importance": round(self.importance, 3),
        }


@dataclasses.dataclass
class PageAnalysis:
    """Derived view of the page for one selection cycle.  Never persisted."""

    page_type: str = "unknown"
    key_elements: list[ElementInfo] = dataclasses.field(default_factory=list)
    obstacles: list[str] = dataclasses.field(default_factory=list)
    detected_intents: list[str] = dataclasses.field(default_factory=list)
    current_goal_progress: float = 0.0

    def summary(self, max_elements: int = 15) -> dict[str, Any]:
        """Compact dict for prompts."""
        return {
            "pageType": self.page_type,
            "keyElements": [el.to_dict() for el in self.key_elements[:max_elements]],
            "obstacles": list(self.obstacles),
            "detectedIntents": list(self.detected_intents),
        }


def calculate_importance(element: RawElement) -> float:
    """``0.4 * sizeScore + 0.6 * positionScore``; invisible elements score 0."""
    if not element.visible:
        return 0.0
    size_score = min(max(element.area, 0.0) / _SIZE_SATURATION_AREA, 1.0)
    position_score = 1.0 if element.in_viewport else _OFF_VIEWPORT_POSITION_SCORE
    return size_score * 0.4 + position_score * 0.6


def classify_page(structure: PageStructure) -> str:
    """Classify by priority: search, form-login, form, article, navigation, unknown."""
    has_search_input = any(
        el.attributes.get("type", "").lower() == "search"
        or "search" in el.attributes.get("placeholder", "").lower()
        for el in structure.inputs
    )
    if has_search_input:
        return "search"
    if any(el.attributes.get("type", "").lower() == "password" for el in structure.inputs):
        return "form-login"
    if structure.has_form:
        return "form"
    if structure.has_article:
        return "article"
    if structure.total_links > _NAVIGATION_LINK_THRESHOLD:
        return "navigation"
    return "unknown"


def detect_obstacles(structure: PageStructure) -> list[str]:
    obstacles = []
    if structure.has_modal:
        obstacles.append("Modal or popup detected")
    if structure.has_loading_indicator:
        obstacles.append("Loading indicator present")
    return obstacles


def detect_intents(page_type: str, elements: list[ElementInfo]) -> list[str]:
    """Coarse intents inferred from page type and prominent controls."""
    intents = []
    if page_type == "search":
        intents.append("user_wants_to_search")
    if page_type == "form-login":
        intents.append("authentication_required")
    if any(el.type == "button" and "sign" in el.text.lower() for el in elements):
        intents.append("registration_or_login_available")
    return intents


def _collect(kind: str, items: list[RawElement], limit: int, require_text: bool) -> list[ElementInfo]:
    collected = []
    for raw in items[:limit]:
        text = (raw.text or "").strip()
        if kind == "input" and not text:
            attrs = raw.attributes
            text = attrs.get("placeholder") or attrs.get("name") or attrs.get("id") or ""
        if require_text and not text:
            continue
        importance = calculate_importance(raw)
        if kind == "heading":
            importance *= _HEADING_IMPORTANCE_FACTOR
        collected.append(
            ElementInfo(
                type=kind,
                text=text[:_MAX_TEXT_LENGTH],
                attributes=dict(raw.attributes),
                is_visible=raw.visible,
                importance=importance,
            )
        )
    return collected


def analyze_structure(structure: PageStructure) -> PageAnalysis:
    """Pure transformation from raw structure to a ranked analysis."""
    elements: list[ElementInfo] = []
    elements += _collect("button", structure.buttons, _MAX_BUTTONS, require_text=True)
    elements += _collect("link", structure.links, _MAX_LINKS, require_text=True)
    elements += _collect("input", structure.inputs, _MAX_INPUTS, require_text=False)
    elements += _collect("heading", structure.headings, _MAX_HEADINGS, require_text=True)

    # Stable: equal importance keeps collection order
    ranked = sorted(elements, key=lambda el: -el.importance)[:_MAX_KEY_ELEMENTS]
    page_type = classify_page(structure)

    return PageAnalysis(
        page_type=page_type,
        key_elements=ranked,
        obstacles=detect_obstacles(structure),
        detected_intents=detect_intents(page_type, ranked),
    )


class PageAnalyzer:
    """Queries an environment and analyzes what it reports."""

    def __init__(self, environment: Environment) -> None:
        self._environment = environment

    async def analyze(self) -> PageAnalysis:
        try:
            structure = await self._environment.query_structure()
            return analyze_structure(structure)
        except Exception as exc:
            logger.warning("Page analysis failed: %s", exc)
            return PageAnalysis(
                page_type="unknown",
                key_elements=[],
                obstacles=["Failed to analyze page"],
                detected_intents=[],
            )
