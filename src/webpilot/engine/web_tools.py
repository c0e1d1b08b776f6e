"""Built-in browser tools.

Every tool takes a :class:`ToolContext` and a schema-validated argument
dict and returns a :class:`ToolResult`.  Element lookups go through
Playwright locators (role first, then visible text) rather than raw
coordinates.
"""

from __future__ import annotations

import asyncio
import logging
import re
from typing import Any
from urllib.parse import quote_plus

from webpilot.engine.browser_environment import PlaywrightEnvironment
from webpilot.engine.protocols import ToolResult
from webpilot.engine.tool_catalog import Tool, ToolCatalog, ToolContext

logger = logging.getLogger("webpilot.engine.web_tools")

SEARCH_ENGINE_URLS = {
    "google": "https://www.google.com/search?q={query}",
    "duckduckgo": "https://duckduckgo.com/?q={query}",
    "bing": "https://www.bing.com/search?q={query}",
}

_URL_PATTERN = re.compile(r"^https?://", re.I)
_SCROLL_SETTLE_SECONDS = 0.5
_MAX_WAIT_MS = 30_000
_LOCATOR_TIMEOUT_MS = 5_000

_EXTRACT_LINKS_SCRIPT = """() => {
    const links = Array.from(document.querySelectorAll('a'))
        .filter(a => a.href && a.textContent.trim())
        .slice(0, 10)
        .map(a => ({ title: a.textContent.trim().slice(0, 100), url: a.href }));
    const headings = Array.from(document.querySelectorAll('h1, h2, h3'))
        .slice(0, 5)
        .map(h => h.textContent.trim().slice(0, 100));
    return { links, headings };
}"""

# Field hint -> locator selectors, most specific first
_FIELD_SELECTORS = {
    "password": ['input[type="password"]'],
    "email": ['input[type="email"]', 'input[name*="email" i]', 'input[id*="email" i]'],
    "username": ['input[name*="user" i]', 'input[id*="user" i]'],
    "search": ['input[type="search"]', 'input[name="q"]', 'input[placeholder*="search" i]'],
}
_ANY_INPUT_SELECTOR = (
    'input:not([type="hidden"]):not([type="submit"]):not([type="button"]):visible, textarea:visible'
)


def _schema(properties: dict[str, Any] | None = None, required: list[str] | None = None) -> dict[str, Any]:
    schema: dict[str, Any] = {
        "type": "object",
        "properties": properties or {},
        "additionalProperties": False,
    }
    if required:
        schema["required"] = required
    return schema


class WebTools:
    """Tool implementations bound to one :class:`PlaywrightEnvironment`."""

    def __init__(self, environment: PlaywrightEnvironment) -> None:
        self._environment = environment

    @property
    def _page(self) -> Any:
        return self._environment.page

    # -- Navigation ----------------------------------------------------------

    async def navigate(self, context: ToolContext, args: dict[str, Any]) -> ToolResult:
        url = str(args.get("url") or "").strip()
        if not _URL_PATTERN.match(url):
            return ToolResult.fail("Invalid url")
        context.log(f"Opening URL: {url}")
        await self._environment.goto(url)
        return ToolResult.ok({"url": self._page.url})

    async def smart_search(self, context: ToolContext, args: dict[str, Any]) -> ToolResult:
        query = str(args.get("query") or "").strip()
        if not query:
            return ToolResult.fail("Missing query")
        engine = str(args.get("searchEngine") or "duckduckgo")
        template = SEARCH_ENGINE_URLS.get(engine)
        if template is None:
            return ToolResult.fail(f"Unknown search engine: {engine}")
        context.log(f"Searching {engine} for: {query}")
        await self._environment.goto(template.format(query=quote_plus(query)))
        return ToolResult.ok({"query": query, "searchEngine": engine, "url": self._page.url})

    # -- Page interaction ----------------------------------------------------

    async def find_text(self, context: ToolContext, args: dict[str, Any]) -> ToolResult:
        text = str(args.get("text") or "").strip()
        if not text:
            return ToolResult.fail("Missing text")
        context.log(f'Finding text: "{text}"')
        locator = self._page.get_by_text(text, exact=False)
        if await locator.count() == 0:
            return ToolResult.fail(f'Text not found: "{text}"')
        await locator.first.scroll_into_view_if_needed(timeout=_LOCATOR_TIMEOUT_MS)
        return ToolResult.ok({"text": text})

    async def click_text(self, context: ToolContext, args: dict[str, Any]) -> ToolResult:
        text = str(args.get("text") or "").strip()
        if not text:
            return ToolResult.fail("Missing text")
        context.log(f'Clicking text: "{text}"')

        page = self._page
        for locator in (
            page.get_by_role("button", name=text),
            page.get_by_role("link", name=text),
            page.get_by_text(text, exact=False),
        ):
            if await locator.count() > 0:
                await locator.first.click(timeout=_LOCATOR_TIMEOUT_MS)
                return ToolResult.ok({"clicked": True, "text": text})
        return ToolResult.fail("No clickable match")

    async def type_text(self, context: ToolContext, args: dict[str, Any]) -> ToolResult:
        text = str(args.get("text") or "")
        target = str(args.get("target") or "any")
        if not text:
            return ToolResult.fail("Missing text")
        context.log(f"Typing into {target} field")

        page = self._page
        selectors = list(_FIELD_SELECTORS.get(target, []))
        if target == "any":
            selectors = _FIELD_SELECTORS["search"] + selectors
        selectors.append(_ANY_INPUT_SELECTOR)

        for selector in selectors:
            locator = page.locator(selector)
            if await locator.count() > 0:
                field = locator.first
                await field.fill(text, timeout=_LOCATOR_TIMEOUT_MS)
                await field.focus()
                name = (
                    await field.get_attribute("name")
                    or await field.get_attribute("id")
                    or "input"
                )
                return ToolResult.ok({"field": name})
        return ToolResult.fail("No input found")

    async def press_enter(self, context: ToolContext, args: dict[str, Any]) -> ToolResult:
        await self._page.keyboard.press("Enter")
        return ToolResult.ok()

    async def scroll(self, context: ToolContext, args: dict[str, Any]) -> ToolResult:
        amount = float(args.get("amount") or 0)
        await self._page.mouse.wheel(0, amount)
        await asyncio.sleep(_SCROLL_SETTLE_SECONDS)
        return ToolResult.ok({"amount": amount})

    async def wait_ms(self, context: ToolContext, args: dict[str, Any]) -> ToolResult:
        ms = max(0, min(int(args.get("ms") or 0), _MAX_WAIT_MS))
        await asyncio.sleep(ms / 1000)
        return ToolResult.ok({"waited": ms})

    # -- Page reading --------------------------------------------------------

    async def extract_links(self, context: ToolContext, args: dict[str, Any]) -> ToolResult:
        data = await self._page.evaluate(_EXTRACT_LINKS_SCRIPT)
        return ToolResult.ok(data)

    async def detect_interactive(self, context: ToolContext, args: dict[str, Any]) -> ToolResult:
        structure = await self._environment.query_structure()
        visible = {
            "buttons": [el.text for el in structure.buttons if el.visible and el.text][:15],
            "links": [el.text for el in structure.links if el.visible and el.text][:15],
            "inputs": [
                el.attributes.get("placeholder") or el.attributes.get("name") or el.attributes.get("type", "text")
                for el in structure.inputs
                if el.visible
            ][:10],
        }
        visible["hasForm"] = structure.has_form
        visible["hasModal"] = structure.has_modal
        return ToolResult.ok(visible)


def build_default_catalog(environment: PlaywrightEnvironment) -> ToolCatalog:
    """The ten built-in tools, bound to ``environment``."""
    tools = WebTools(environment)
    return ToolCatalog(
        [
            Tool(
                name="navigate",
                description="Navigate the browser to a given URL. Use full absolute URLs (https://...).",
                parameters=_schema(
                    {"url": {"type": "string", "description": "Absolute URL to open"}},
                    required=["url"],
                ),
                execute=tools.navigate,
                best_for="Opening a specific website or page",
            ),
            Tool(
                name="find_text",
                description="Find visible text on the page and scroll to the first match.",
                parameters=_schema(
                    {"text": {"type": "string", "description": "Text to find"}},
                    required=["text"],
                ),
                execute=tools.find_text,
                best_for="Checking whether content is present",
            ),
            Tool(
                name="click_text",
                description="Click the first button or link that contains the given text.",
                parameters=_schema(
                    {"text": {"type": "string", "description": "Text to click"}},
                    required=["text"],
                ),
                execute=tools.click_text,
                best_for="Clicking buttons and links by their label",
            ),
            Tool(
                name="type_text",
                description="Type text into the most likely input field (optionally by target hint).",
                parameters=_schema(
                    {
                        "text": {"type": "string", "description": "Text to type"},
                        "target": {
                            "type": "string",
                            "enum": ["username", "email", "password", "search", "any"],
                            "description": "Target field hint",
                        },
                    },
                    required=["text"],
                ),
                execute=tools.type_text,
                best_for="Filling search boxes and form fields",
            ),
            Tool(
                name="press_enter",
                description="Press Enter on the focused element (often submits forms or searches).",
                parameters=_schema(),
                execute=tools.press_enter,
                best_for="Submitting a search or form after typing",
            ),
            Tool(
                name="scroll",
                description="Scroll the page by a number of pixels (positive is down, negative is up).",
                parameters=_schema(
                    {"amount": {"type": "number", "description": "Pixels to scroll (e.g. 600)"}},
                    required=["amount"],
                ),
                execute=tools.scroll,
                best_for="Revealing content below the fold",
            ),
            Tool(
                name="wait_ms",
                description="Wait for a number of milliseconds (useful for page loads).",
                parameters=_schema(
                    {"ms": {"type": "number", "minimum": 0, "description": "Milliseconds to wait"}},
                    required=["ms"],
                ),
                execute=tools.wait_ms,
                best_for="Letting slow pages finish loading",
            ),
            Tool(
                name="extract_links",
                description="Extract top links and headings from the page (for quick summaries).",
                parameters=_schema(),
                execute=tools.extract_links,
                best_for="Getting an overview of an unfamiliar page",
            ),
            Tool(
                name="detect_interactive",
                description="List the visible buttons, links and inputs on the page.",
                parameters=_schema(),
                execute=tools.detect_interactive,
                best_for="Discovering what actions a page offers",
            ),
            Tool(
                name="smart_search",
                description="Search for information: opens a search engine results page for the query.",
                parameters=_schema(
                    {
                        "query": {"type": "string", "description": "Search query"},
                        "searchEngine": {
                            "type": "string",
                            "enum": sorted(SEARCH_ENGINE_URLS),
                            "description": "Which search engine to use (default: duckduckgo)",
                        },
                    },
                    required=["query"],
                ),
                execute=tools.smart_search,
                best_for="Any 'search for X' goal, from any page",
            ),
        ]
    )
