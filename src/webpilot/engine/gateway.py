"""Anthropic-backed language model gateway.

Implements :class:`~webpilot.engine.protocols.LanguageModelGateway`.  The
reply is returned as raw text; callers parse it and fall back when it is
not the JSON they asked for.
"""

from __future__ import annotations

import logging
from typing import Any

from webpilot.engine.cost_tracker import CostTracker
from webpilot.engine.protocols import PageSnapshot
from webpilot.models import DEFAULT_GATEWAY_MAX_TOKENS, DEFAULT_GATEWAY_TIMEOUT, MODELS

logger = logging.getLogger("webpilot.engine.gateway")


def build_request(
    system_prompt: str,
    messages: list[dict[str, Any]],
    page_context: PageSnapshot | None = None,
) -> tuple[str, list[dict[str, Any]]]:
    """Split ``messages`` into the Messages API's ``system`` and turn list.

    System-role entries are folded into the system prompt, and the current
    page title and URL are appended as context.
    """
    system_parts = [system_prompt] if system_prompt else []
    turns: list[dict[str, Any]] = []
    for message in messages:
        role = message.get("role", "user")
        content = message.get("content", "")
        if role == "system":
            system_parts.append(str(content))
        else:
            turns.append({"role": role, "content": content})

    if page_context is not None and (page_context.url or page_context.title):
        system_parts.append(
            f"Current page: {page_context.title or 'Untitled'} ({page_context.url or 'no URL'})"
        )
    if not turns:
        turns.append({"role": "user", "content": "Continue."})
    return "\n\n".join(system_parts), turns


class AnthropicGateway:
    """Async Anthropic client with per-call cost tracking."""

    def __init__(
        self,
        api_key: str | None = None,
        model: str = MODELS["selector"],
        cost_tracker: CostTracker | None = None,
        max_tokens: int = DEFAULT_GATEWAY_MAX_TOKENS,
        timeout: float = DEFAULT_GATEWAY_TIMEOUT,
    ) -> None:
        self._api_key = api_key
        self._model = model
        self._cost_tracker = cost_tracker or CostTracker()
        self._max_tokens = max_tokens
        self._timeout = timeout
        self._client: Any | None = None  # Lazy-initialised Anthropic client

    @property
    def model(self) -> str:
        return self._model

    @property
    def cost_tracker(self) -> CostTracker:
        return self._cost_tracker

    def _get_client(self) -> Any:
        """Return the cached async client, creating it on first use."""
        if self._client is None:
            import anthropic

            # Without an explicit key the SDK reads ANTHROPIC_API_KEY
            kwargs: dict[str, Any] = {"max_retries": 3, "timeout": self._timeout}
            if self._api_key:
                kwargs["api_key"] = self._api_key
            self._client = anthropic.AsyncAnthropic(**kwargs)
        return self._client

    async def chat(
        self,
        system_prompt: str,
        messages: list[dict[str, Any]],
        page_context: PageSnapshot | None = None,
    ) -> str:
        self._cost_tracker.check_budget()
        system, turns = build_request(system_prompt, messages, page_context)

        client = self._get_client()
        response = await client.messages.create(
            model=self._model,
            max_tokens=self._max_tokens,
            system=system,
            messages=turns,
        )

        usage = response.usage
        self._cost_tracker.record_call(
            model=self._model,
            input_tokens=usage.input_tokens,
            output_tokens=usage.output_tokens,
        )

        raw_text = ""
        for block in response.content:
            if hasattr(block, "text"):
                raw_text += block.text
        logger.debug("Gateway reply (%d chars) from %s", len(raw_text), self._model)
        return raw_text
