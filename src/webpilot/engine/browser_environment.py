"""Playwright-backed Environment.

Wraps an async Playwright ``Page``.  ``snapshot()`` never raises; it
degrades to an empty :class:`PageSnapshot`.  ``query_structure()`` may
raise, and the Page Analyzer turns that into a neutral analysis.
"""

from __future__ import annotations

import contextlib
import logging
from collections.abc import AsyncIterator
from typing import Any

from webpilot.engine.protocols import PageSnapshot, PageStructure
from webpilot.models import DEFAULT_VIEWPORT

logger = logging.getLogger("webpilot.engine.browser_environment")

SNAPSHOT_CONTENT_LIMIT = 4000
NAVIGATION_TIMEOUT_MS = 30_000

# One evaluation returns every raw element plus the page-level markers
_STRUCTURE_SCRIPT = """() => {
    const vw = window.innerWidth, vh = window.innerHeight;
    const describe = (el, attrNames) => {
        const rect = el.getBoundingClientRect();
        const style = window.getComputedStyle(el);
        const visible = rect.width > 0 && rect.height > 0
            && style.visibility !== 'hidden' && style.display !== 'none';
        const attributes = {};
        for (const name of attrNames) {
            const value = el.getAttribute(name);
            if (value !== null) attributes[name] = value;
        }
        return {
            text: (el.innerText || el.value || el.getAttribute('aria-label') || '').trim().slice(0, 200),
            attributes,
            visible,
            area: rect.width * rect.height,
            in_viewport: rect.top < vh && rect.bottom > 0 && rect.left < vw && rect.right > 0,
        };
    };
    const collect = (selector, attrs, limit) =>
        Array.from(document.querySelectorAll(selector)).slice(0, limit).map(el => describe(el, attrs));
    return {
        buttons: collect('button, [role="button"], input[type="submit"], input[type="button"]',
                         ['id', 'class', 'type', 'aria-label'], 50),
        links: collect('a[href]', ['href', 'title', 'aria-label'], 50),
        inputs: collect('input:not([type="hidden"]):not([type="submit"]):not([type="button"]), textarea, select',
                        ['type', 'name', 'id', 'placeholder', 'aria-label'], 30),
        headings: collect('h1, h2, h3', ['id'], 20),
        link_count: document.querySelectorAll('a[href]').length,
        has_form: document.querySelector('form') !== null,
        has_article: document.querySelector('article, [role="article"], main article') !== null,
        has_modal: Array.from(document.querySelectorAll('[role="dialog"], [aria-modal="true"], .modal'))
            .some(el => el.offsetParent !== null),
        has_loading_indicator: document.querySelector(
            '[aria-busy="true"], .loading, .spinner, [class*="loading"], [class*="spinner"]') !== null,
    };
}"""


class PlaywrightEnvironment:
    """:class:`~webpilot.engine.protocols.Environment` over a Playwright page."""

    def __init__(self, page: Any) -> None:
        self._page = page

    @property
    def page(self) -> Any:
        return self._page

    async def snapshot(self) -> PageSnapshot:
        try:
            title = await self._page.title()
            content = await self._page.evaluate("() => document.body ? document.body.innerText : ''")
        except Exception as exc:
            logger.warning("Page snapshot failed: %s", exc)
            return PageSnapshot()
        return PageSnapshot(
            url=self._page.url or "",
            title=title or "",
            content=(content or "")[:SNAPSHOT_CONTENT_LIMIT],
        )

    async def query_structure(self) -> PageStructure:
        data = await self._page.evaluate(_STRUCTURE_SCRIPT)
        return PageStructure.from_dict(data or {})

    async def goto(self, url: str) -> None:
        await self._page.goto(url, wait_until="domcontentloaded", timeout=NAVIGATION_TIMEOUT_MS)


@contextlib.asynccontextmanager
async def launch_environment(
    headless: bool = True,
    viewport: tuple[int, int] = DEFAULT_VIEWPORT,
    start_url: str = "",
) -> AsyncIterator[PlaywrightEnvironment]:
    """Launch Chromium, yield an environment on a fresh page, then close everything."""
    from playwright.async_api import async_playwright

    async with async_playwright() as playwright:
        browser = await playwright.chromium.launch(headless=headless)
        try:
            context = await browser.new_context(
                viewport={"width": viewport[0], "height": viewport[1]},
            )
            page = await context.new_page()
            environment = PlaywrightEnvironment(page)
            if start_url:
                logger.info("Opening start URL %s", start_url)
                await environment.goto(start_url)
            yield environment
        finally:
            await browser.close()
