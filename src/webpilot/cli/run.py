"""webpilot run -- Drive the browser toward a natural-language goal.

Resolves config and the API key, launches Playwright, runs the
super-agentic runtime, and prints live progress lines followed by a step
table and the final text (or a JSON document with ``--json``).

Exit codes: 0 when the run ends in DONE, 1 for any other terminal state,
2 for configuration errors.
"""

from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path

import typer
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from webpilot.config import WebPilotConfig, WebPilotConfigError, mask_key
from webpilot.engine.browser_environment import launch_environment
from webpilot.engine.cost_tracker import CostTracker
from webpilot.engine.gateway import AnthropicGateway
from webpilot.engine.runtime import RunResult, RunState, RuntimeOptions, SuperAgenticRuntime
from webpilot.engine.web_tools import build_default_catalog

console = Console(stderr=True)
output_console = Console()  # stdout for machine-readable output

logger = logging.getLogger("webpilot.cli.run")


# ── Config helpers ────────────────────────────────────────────────────────


def _resolve_project_dir() -> Path:
    """Find the .webpilot/ project directory, searching upward from cwd."""
    current = Path.cwd()
    for directory in (current, *current.parents):
        candidate = directory / ".webpilot"
        if candidate.is_dir():
            return candidate
    return current / ".webpilot"


def _load_config(project_dir: Path) -> WebPilotConfig:
    config_path = project_dir / "config.yaml"
    if config_path.is_file():
        return WebPilotConfig.from_file(config_path)
    config = WebPilotConfig()
    config.project_dir = project_dir
    return config


def _print_error(message: str, title: str = "Error") -> None:
    console.print(Panel(f"[red]{message}[/red]", title=f"[red]{title}[/red]", border_style="red"))


# ── Rich output helpers ───────────────────────────────────────────────────


def _print_header(goal: str, config: WebPilotConfig, api_key_display: str) -> None:
    info_lines = [
        f"[bold]Goal:[/bold]      {goal}",
        f"[bold]Start URL:[/bold] {config.start_url or '(blank page)'}",
        f"[bold]Model:[/bold]     {config.model}",
        f"[bold]Max steps:[/bold] {config.max_steps}",
        f"[bold]Budget:[/bold]    ${config.budget:.2f}",
        f"[bold]Headless:[/bold]  {config.headless}",
        f"[bold]API Key:[/bold]   {api_key_display}",
    ]
    console.print()
    console.print(Panel("\n".join(info_lines), title="[bold cyan]WebPilot Run[/bold cyan]", border_style="cyan"))
    console.print()


def _print_result(result: RunResult, cost: float) -> None:
    table = Table(title="Steps", show_lines=False)
    table.add_column("#", justify="right", style="dim")
    table.add_column("Tool", style="bold")
    table.add_column("Args")
    table.add_column("Result")
    table.add_column("Confidence", justify="right")
    for step in result.steps:
        status = "[green]ok[/green]" if step.success else f"[red]{step.error or 'failed'}[/red]"
        args = json.dumps(step.args, default=str)
        if len(args) > 60:
            args = args[:57] + "..."
        table.add_row(str(step.step), step.tool, args, status, f"{step.confidence * 100:.0f}%")
    console.print()
    console.print(table)

    border = "green" if result.state is RunState.DONE else "yellow"
    summary_lines = [
        f"[bold]{result.final_text}[/bold]",
        "",
        f"  State:       {result.state.value}",
        f"  Steps:       {result.successful_steps}/{len(result.steps)} succeeded",
        f"  Recoveries:  {result.recovery_count}",
        f"  Cost:        ${cost:.4f}",
    ]
    console.print()
    console.print(Panel("\n".join(summary_lines), border_style=border))
    console.print()


# ── Execution ─────────────────────────────────────────────────────────────


async def _run_goal(
    goal: str,
    config: WebPilotConfig,
    options: RuntimeOptions,
    gateway: AnthropicGateway,
) -> RunResult:
    async with launch_environment(
        headless=config.headless,
        viewport=config.viewport,
        start_url=config.start_url,
    ) as environment:
        catalog = build_default_catalog(environment)
        runtime = SuperAgenticRuntime(goal, gateway, environment, catalog, options=options)
        return await runtime.run()


# ── Main command ──────────────────────────────────────────────────────────


def run(
    goal: str = typer.Argument(..., help="What the agent should accomplish, in plain language."),
    url: str | None = typer.Option(
        None,
        "--url",
        "-u",
        help="Page to open before the first step.",
    ),
    max_steps: int | None = typer.Option(
        None,
        "--max-steps",
        "-n",
        min=1,
        help="Step budget for the run.  [default: 10]",
    ),
    headed: bool = typer.Option(
        False,
        "--headed",
        help="Show the browser window instead of running headless.",
    ),
    no_planning: bool = typer.Option(False, "--no-planning", help="Skip the initial plan."),
    no_learning: bool = typer.Option(False, "--no-learning", help="Do not record or use learned outcomes."),
    no_reflection: bool = typer.Option(False, "--no-reflection", help="Skip the progress check after successes."),
    as_json: bool = typer.Option(
        False,
        "--json",
        help="Print the run result as JSON on stdout.",
    ),
    verbose: bool = typer.Option(
        False,
        "--verbose",
        "-v",
        help="Enable verbose logging.",
    ),
) -> None:
    """Run the agent against GOAL.

    \b
    Examples:
      webpilot run "search for playwright python" --url https://duckduckgo.com
      webpilot run "open github" --max-steps 3
      webpilot run "find the pricing page" -u https://example.com --json | jq .state
    """
    if verbose:
        logging.basicConfig(level=logging.DEBUG, format="%(name)s  %(message)s")

    project_dir = _resolve_project_dir()

    try:
        config = _load_config(project_dir)
    except WebPilotConfigError as exc:
        _print_error(str(exc), "Config Error")
        raise typer.Exit(code=2)

    try:
        api_key = config.resolve_api_key()
    except WebPilotConfigError as exc:
        _print_error(str(exc), "API Key Error")
        raise typer.Exit(code=2)

    # CLI options override config file values
    if url:
        config.start_url = url
    if max_steps is not None:
        config.max_steps = max_steps
    if headed:
        config.headless = False

    def _on_log(line: str) -> None:
        if not as_json:
            console.print(f"[dim]{line}[/dim]")

    options = config.runtime_options(
        enable_planning=config.enable_planning and not no_planning,
        enable_learning=config.enable_learning and not no_learning,
        enable_reflection=config.enable_reflection and not no_reflection,
        verbose=verbose,
        on_log=_on_log,
    )
    gateway = AnthropicGateway(
        api_key=api_key,
        model=config.model,
        cost_tracker=CostTracker(budget_usd=config.budget),
    )

    if not as_json:
        _print_header(goal, config, mask_key(api_key))

    try:
        result = asyncio.run(_run_goal(goal, config, options, gateway))
    except KeyboardInterrupt:
        console.print("[yellow]Interrupted[/yellow]")
        raise typer.Exit(code=130)

    cost = gateway.cost_tracker.total_cost
    if as_json:
        payload = result.to_dict()
        payload["cost_usd"] = cost
        output_console.print_json(json.dumps(payload, default=str))
    else:
        _print_result(result, cost)

    raise typer.Exit(code=0 if result.state is RunState.DONE else 1)
