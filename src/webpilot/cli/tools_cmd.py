"""webpilot tools -- List the built-in browser tools."""

from __future__ import annotations

import json

import typer
from rich.console import Console
from rich.table import Table

from webpilot.engine.browser_environment import PlaywrightEnvironment
from webpilot.engine.web_tools import build_default_catalog

console = Console()


def tools(
    as_json: bool = typer.Option(
        False,
        "--json",
        help="Print the function-calling schemas as JSON.",
    ),
) -> None:
    """List every built-in tool with its parameters."""
    # Listing never touches the page, so no browser is launched
    catalog = build_default_catalog(PlaywrightEnvironment(page=None))

    if as_json:
        typer.echo(json.dumps(catalog.schemas(), indent=2))
        return

    table = Table(title="Built-in tools", show_lines=False)
    table.add_column("Tool", style="bold cyan", no_wrap=True)
    table.add_column("Parameters")
    table.add_column("Description")
    for tool in catalog:
        props = tool.parameters.get("properties", {})
        required = set(tool.parameters.get("required", []))
        params = ", ".join(f"{name}{'' if name in required else '?'}" for name in props) or "-"
        table.add_row(tool.name, params, tool.description)
    console.print(table)
