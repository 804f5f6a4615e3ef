"""CLI entrypoint for cli-engineer.

Every command runs the same agentic loop with a different task prompt.
All commands except `code` first load the working directory's source and
config files into the conversation.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from . import __version__
from .agentic_loop import AgenticLoop, LoopResult
from .artifacts import ArtifactError, ArtifactManager
from .config import Config, ConfigError
from .context import ContextManager
from .events import EventBus, Metrics
from .loop_logger import LoopLogger
from .providers import create_llm_manager
from .scanner import CodebaseScanner
from .tokens import format_token_count

# Initialize Typer app
app = typer.Typer(
    name="cli-engineer",
    help="Autonomous coding agent that plans, executes and reviews until the work is ready.",
    add_completion=False,
)

console = Console()

REFACTOR_DEFAULT = "Analyze the current directory and perform recommended refactoring."
REVIEW_DEFAULT = (
    "ANALYSIS ONLY: Review the codebase files and create a comprehensive code review report. "
    "DO NOT generate, modify, or create any source code files. ONLY analyze existing code and "
    "document your findings, suggestions, and recommendations in code_review.md. Focus on code "
    "quality, best practices, potential issues, and improvement opportunities."
)
REVIEW_FOCUSED = (
    "ANALYSIS ONLY: Review the codebase with focus on: {prompt}. DO NOT generate, modify, or "
    "create any source code files. ONLY analyze existing code and document your findings in "
    "code_review.md"
)
DOCS_DEFAULT = (
    "Generate comprehensive documentation for the codebase. "
    "Create documentation files in a docs/ directory."
)
DOCS_FOCUSED = (
    "Generate documentation for the codebase with these instructions: {prompt}. "
    "Create documentation files in a docs/ directory."
)
SECURITY_DEFAULT = (
    "SECURITY ANALYSIS ONLY: Perform a comprehensive security analysis of the codebase. "
    "DO NOT generate, modify, or create any source code files. ONLY analyze existing code for "
    "vulnerabilities, security issues, and best practice violations. Document your findings, "
    "risk assessments, and security recommendations in security_report.md."
)
SECURITY_FOCUSED = (
    "SECURITY ANALYSIS ONLY: Perform a security analysis of the codebase focusing on: {prompt}. "
    "DO NOT generate, modify, or create any source code files. ONLY analyze existing code and "
    "document your security findings in security_report.md"
)


def setup_logging(verbose: bool = False) -> None:
    """Configure logging with Rich handler.

    Args:
        verbose: If True, set DEBUG level; otherwise INFO.
    """
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=console, rich_tracebacks=True)],
    )


def version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        console.print(f"cli-engineer version {__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: bool = typer.Option(
        None,
        "--version",
        "-v",
        callback=version_callback,
        is_eager=True,
        help="Show version and exit.",
    ),
) -> None:
    """Autonomous coding agent."""
    pass


def load_config(
    config_path: Optional[Path],
    mock: bool,
    max_iterations: Optional[int],
) -> Config:
    """Load configuration and apply command-line overrides.

    Raises:
        typer.Exit: If the configuration cannot be loaded or is invalid.
    """
    try:
        config = Config.load(config_path)
    except ConfigError as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1)

    if mock:
        config.mock_mode = True
    if max_iterations:
        config.execution.max_iterations = max_iterations

    errors = config.validate()
    if errors:
        console.print("[red]Configuration errors:[/red]")
        for error in errors:
            console.print(f"  - {error}")
        raise typer.Exit(1)

    return config


def run_task(
    prompt: str,
    config: Config,
    scan_codebase: bool,
    command: str,
) -> tuple[LoopResult, Metrics]:
    """Wire up the collaborators and run the agentic loop once.

    Returns:
        The loop result and the metrics accumulated on the event bus.
    """
    logger = logging.getLogger(__name__)
    event_bus = EventBus()
    llm_manager = create_llm_manager(config, event_bus)
    artifact_manager = ArtifactManager(config.artifact_path, event_bus)
    context_manager = ContextManager(config.context, llm_manager, event_bus)
    context_id = context_manager.create_context({"command": command})

    if scan_codebase:
        scan = CodebaseScanner(Path.cwd(), event_bus=event_bus).scan(context_manager, context_id)
        prompt = f"{prompt}{scan.summary()}"

    loop_logger = LoopLogger(task_name=command)
    loop_logger.attach(event_bus)

    loop = AgenticLoop(
        llm_manager,
        max_iterations=config.execution.max_iterations,
        artifact_manager=artifact_manager,
        context_manager=context_manager,
        event_bus=event_bus,
        loop_logger=loop_logger,
    )
    result = loop.run(prompt, context_id)

    if config.context.cache_enabled:
        try:
            context_manager.save_to_cache(context_id)
        except OSError as e:
            logger.warning(f"Failed to cache context: {e}")

    if config.execution.cleanup_on_exit:
        removed = artifact_manager.cleanup()
        logger.info(f"Removed {removed} orphaned artifact file(s)")

    return result, event_bus.metrics


def _display_results(result: LoopResult, metrics: Metrics, artifact_dir: Path, show_metrics: bool = True) -> None:
    """Display the outcome of a loop run, with summary tables unless disabled."""
    if result.success:
        console.print("\n[green]Task completed successfully![/green]\n")
    elif result.outcome.value == "Exhausted":
        console.print("\n[yellow]Max iterations reached without completing the task.[/yellow]\n")
    else:
        console.print(f"\n[red]Task failed:[/red] {result.error}\n")

    if not show_metrics:
        return

    table = Table(title="Run Summary", show_header=True, header_style="bold")
    table.add_column("Metric")
    table.add_column("Value")

    table.add_row("Outcome", result.outcome.value)
    table.add_row("Iterations", f"{result.iterations}/{result.max_iterations}")
    if result.last_review is not None:
        table.add_row("Quality", result.last_review.overall_quality.value)
        table.add_row("Issues", str(len(result.last_review.issues)))
    table.add_row("Artifacts", str(metrics.artifacts_created))
    table.add_row("API calls", str(metrics.total_api_calls))
    table.add_row("Tokens", format_token_count(metrics.total_tokens))
    if metrics.total_cost > 0:
        table.add_row("Cost", f"${metrics.total_cost:.4f}")
    table.add_row("Artifact directory", str(artifact_dir))
    console.print(table)

    if result.iteration_details:
        details = Table(show_header=True, header_style="bold", box=None)
        details.add_column("#", style="dim", width=3)
        details.add_column("Steps", width=8)
        details.add_column("Quality", width=10)
        details.add_column("Issues", width=7)
        details.add_column("Ready", width=6)
        for detail in result.iteration_details:
            ready = "[green]yes[/green]" if detail.get("ready_to_deploy") else "[red]no[/red]"
            details.add_row(
                str(detail.get("iteration", "?")),
                f"{detail.get('steps_succeeded', 0)}/{detail.get('steps', 0)}",
                str(detail.get("quality", "?")),
                str(detail.get("issues", 0)),
                ready,
            )
        console.print(details)

    if result.last_review is not None and result.last_review.summary:
        console.print(f"\n[bold]Review:[/bold] {result.last_review.summary}")


def _execute(
    command: str,
    prompt: str,
    scan_codebase: bool,
    config_path: Optional[Path],
    mock: bool,
    max_iterations: Optional[int],
    verbose: bool,
) -> None:
    setup_logging(verbose)
    config = load_config(config_path, mock, max_iterations)

    console.no_color = not config.ui.colorful
    if config.mock_mode:
        console.print("[yellow]Running in mock mode (no API calls)[/yellow]")

    try:
        result, metrics = run_task(prompt, config, scan_codebase, command)
    except ArtifactError as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1)

    _display_results(result, metrics, config.artifact_path, config.ui.metrics)
    if not result.success:
        raise typer.Exit(1)


def _join(words: Optional[list[str]]) -> str:
    return " ".join(words or []).strip()


CONFIG_OPTION = typer.Option(None, "--config", "-c", help="Path to a YAML configuration file.")
MOCK_OPTION = typer.Option(False, "--mock", "-m", help="Run in mock mode (no API calls).")
MAX_ITERATIONS_OPTION = typer.Option(None, "--max-iterations", "-n", help="Override the maximum number of iterations.")
VERBOSE_OPTION = typer.Option(False, "--verbose", help="Enable verbose output.")


@app.command()
def code(
    prompt: list[str] = typer.Argument(..., help="What to build."),
    config: Optional[Path] = CONFIG_OPTION,
    mock: bool = MOCK_OPTION,
    max_iterations: Optional[int] = MAX_ITERATIONS_OPTION,
    verbose: bool = VERBOSE_OPTION,
) -> None:
    """Generate code for a task from scratch.

    Example:
        cli-engineer code "create a CLI that counts words in a file"
    """
    text = _join(prompt)
    if not text:
        console.print("[red]Error:[/red] A prompt is required for the code command")
        raise typer.Exit(1)
    _execute("code", text, False, config, mock, max_iterations, verbose)


@app.command()
def refactor(
    prompt: Optional[list[str]] = typer.Argument(None, help="Optional refactoring instructions."),
    config: Optional[Path] = CONFIG_OPTION,
    mock: bool = MOCK_OPTION,
    max_iterations: Optional[int] = MAX_ITERATIONS_OPTION,
    verbose: bool = VERBOSE_OPTION,
) -> None:
    """Refactor the codebase in the current directory."""
    text = _join(prompt) or REFACTOR_DEFAULT
    _execute("refactor", f"Refactor codebase. {text}", True, config, mock, max_iterations, verbose)


@app.command()
def review(
    prompt: Optional[list[str]] = typer.Argument(None, help="Optional review focus."),
    config: Optional[Path] = CONFIG_OPTION,
    mock: bool = MOCK_OPTION,
    max_iterations: Optional[int] = MAX_ITERATIONS_OPTION,
    verbose: bool = VERBOSE_OPTION,
) -> None:
    """Review the codebase and write code_review.md."""
    text = _join(prompt)
    task = REVIEW_FOCUSED.format(prompt=text) if text else REVIEW_DEFAULT
    _execute("review", task, True, config, mock, max_iterations, verbose)


@app.command()
def docs(
    prompt: Optional[list[str]] = typer.Argument(None, help="Optional documentation instructions."),
    config: Optional[Path] = CONFIG_OPTION,
    mock: bool = MOCK_OPTION,
    max_iterations: Optional[int] = MAX_ITERATIONS_OPTION,
    verbose: bool = VERBOSE_OPTION,
) -> None:
    """Generate documentation for the codebase under docs/."""
    text = _join(prompt)
    task = DOCS_FOCUSED.format(prompt=text) if text else DOCS_DEFAULT
    _execute("docs", task, True, config, mock, max_iterations, verbose)


@app.command()
def security(
    prompt: Optional[list[str]] = typer.Argument(None, help="Optional security focus."),
    config: Optional[Path] = CONFIG_OPTION,
    mock: bool = MOCK_OPTION,
    max_iterations: Optional[int] = MAX_ITERATIONS_OPTION,
    verbose: bool = VERBOSE_OPTION,
) -> None:
    """Run a security analysis and write security_report.md."""
    text = _join(prompt)
    task = SECURITY_FOCUSED.format(prompt=text) if text else SECURITY_DEFAULT
    _execute("security", task, True, config, mock, max_iterations, verbose)


if __name__ == "__main__":
    app()
