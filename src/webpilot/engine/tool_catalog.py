"""Tool catalog -- registry of named, schema-described capabilities.

A tool is a capability record: a name, a description, a JSON Schema for its
arguments, and an async ``execute(context, args)`` callable.  The catalog
maps names to records.  Unknown names resolve to a :class:`ToolNotFound`
value instead of raising, so the run loop can count them as failed steps.
"""

from __future__ import annotations

import dataclasses
import logging
from collections.abc import Awaitable, Callable, Iterable
from typing import Any

import jsonschema

from webpilot.engine.protocols import Environment, PageSnapshot, ToolResult

logger = logging.getLogger("webpilot.engine.tool_catalog")


@dataclasses.dataclass
class ToolContext:
    """Everything a tool may touch while executing."""

    environment: Environment
    page: PageSnapshot = dataclasses.field(default_factory=PageSnapshot)
    log: Callable[[str], None] = lambda line: None


ToolExecutor = Callable[[ToolContext, dict[str, Any]], Awaitable[ToolResult]]


@dataclasses.dataclass
class Tool:
    """A named capability with a uniform async ``execute`` signature."""

    name: str
    description: str
    parameters: dict[str, Any]
    execute: ToolExecutor
    best_for: str = "General purpose tool"

    def validate_args(self, args: dict[str, Any]) -> str | None:
        """Return a validation error message, or None if ``args`` fit the schema."""
        if not self.parameters:
            return None
        try:
            jsonschema.validate(instance=args, schema=self.parameters)
        except jsonschema.ValidationError as exc:
            return exc.message
        except jsonschema.SchemaError as exc:
            logger.warning("Tool %s has an invalid parameter schema: %s", self.name, exc.message)
        return None

    async def run(self, context: ToolContext, args: dict[str, Any] | None) -> ToolResult:
        """Validate ``args`` and execute.  Never raises."""
        args = dict(args or {})
        error = self.validate_args(args)
        if error is not None:
            return ToolResult.fail(f"Invalid arguments: {error}")
        try:
            result = await self.execute(context, args)
        except Exception as exc:
            logger.warning("Tool %s raised: %s", self.name, exc)
            return ToolResult.fail(str(exc) or exc.__class__.__name__)
        if not isinstance(result, ToolResult):
            return ToolResult.fail(f"Tool {self.name} returned {type(result).__name__}, not ToolResult")
        return result


@dataclasses.dataclass(frozen=True)
class ToolNotFound:
    """Resolution outcome for a name that is not registered."""

    name: str

    @property
    def error(self) -> str:
        return f"Tool not found: {self.name}"


class ToolCatalog:
    """Name -> :class:`Tool` registry."""

    def __init__(self, tools: Iterable[Tool] = ()) -> None:
        self._tools: dict[str, Tool] = {}
        for tool in tools:
            self.register(tool)

    def register(self, tool: Tool) -> None:
        if tool.name in self._tools:
            logger.debug("Replacing registered tool %s", tool.name)
        self._tools[tool.name] = tool

    def get(self, name: str) -> Tool | None:
        return self._tools.get(name)

    def resolve(self, name: str) -> Tool | ToolNotFound:
        tool = self._tools.get(name)
        if tool is None:
            return ToolNotFound(name)
        return tool

    def __contains__(self, name: object) -> bool:
        return name in self._tools

    def __len__(self) -> int:
        return len(self._tools)

    def __iter__(self):
        return iter(self._tools.values())

    def names(self) -> list[str]:
        return list(self._tools)

    def descriptions(self) -> str:
        """One ``name: description`` line per tool."""
        return "\n".join(f"{t.name}: {t.description}" for t in self._tools.values())

    def schemas(self) -> list[dict[str, Any]]:
        """Function-calling style schema list."""
        return [
            {
                "type": "function",
                "function": {
                    "name": t.name,
                    "description": t.description,
                    "parameters": t.parameters,
                },
            }
            for t in self._tools.values()
        ]

    def describe_detailed(self) -> str:
        """Multi-line description with parameters and best use, for planning prompts."""
        blocks = []
        for tool in self._tools.values():
            props = (tool.parameters or {}).get("properties", {})
            params = ", ".join(
                f"{key}: {spec.get('description') or spec.get('type', 'any')}"
                for key, spec in props.items()
            )
            blocks.append(
                f"- {tool.name}\n"
                f"    Description: {tool.description}\n"
                f"    Parameters: {params or 'none'}\n"
                f"    Best for: {tool.best_for}"
            )
        return "\n".join(blocks)
