"""WebPilot CLI -- Main Typer entry point.

Registers all subcommands and provides --version / --verbose global options.
"""

from __future__ import annotations

import typer
from rich.console import Console

from webpilot import __version__

# ── ASCII Banner ──────────────────────────────────────────────────────────

BANNER = r"""
██╗    ██╗███████╗██████╗ ██████╗ ██╗██╗      ██████╗ ████████╗
██║    ██║██╔════╝██╔══██╗██╔══██╗██║██║     ██╔═══██╗╚══██╔══╝
██║ █╗ ██║█████╗  ██████╔╝██████╔╝██║██║     ██║   ██║   ██║
██║███╗██║██╔══╝  ██╔══██╗██╔═══╝ ██║██║     ██║   ██║   ██║
╚███╔███╔╝███████╗██████╔╝██║     ██║███████╗╚██████╔╝   ██║
 ╚══╝╚══╝ ╚══════╝╚═════╝ ╚═╝     ╚═╝╚══════╝ ╚═════╝    ╚═╝
"""

TAGLINE = "Tell the browser what you want. It plans, picks and learns."

console = Console()

# ── Version callback ──────────────────────────────────────────────────────


def _version_callback(value: bool) -> None:
    if value:
        console.print(BANNER, style="bold cyan")
        console.print(f"  {TAGLINE}", style="dim")
        console.print(f"  v{__version__}\n", style="bold")
        raise typer.Exit()


# ── Main app ──────────────────────────────────────────────────────────────

app = typer.Typer(
    name="webpilot",
    help=f"{BANNER}\n{TAGLINE}",
    rich_markup_mode="rich",
    no_args_is_help=True,
    add_completion=False,
)


@app.callback()
def main(
    version: bool | None = typer.Option(
        None,
        "--version",
        "-V",
        help="Show WebPilot version and exit.",
        callback=_version_callback,
        is_eager=True,
    ),
    verbose: bool = typer.Option(
        False,
        "--verbose",
        "-v",
        help="Enable verbose output.",
    ),
) -> None:
    """WebPilot -- goal-driven browser automation.

    Plans, scores candidate actions against the live page, and learns from outcomes.
    """
    if verbose:
        import logging

        logging.basicConfig(level=logging.DEBUG, format="%(name)s  %(message)s")


# ── Register subcommands ──────────────────────────────────────────────────

from webpilot.cli.run import run  # noqa: E402
from webpilot.cli.tools_cmd import tools  # noqa: E402

app.command(name="run", help="Run the agent against a natural-language goal.")(run)
app.command(name="tools", help="List the built-in browser tools.")(tools)
