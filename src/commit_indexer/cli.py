"""Click CLI entry point for commit-indexer."""

import contextlib
import logging
import signal
import sys
import threading
from collections.abc import Callable, Generator
from pathlib import Path

import click
from rich.console import Console
from rich.progress import BarColumn, MofNCompleteColumn, Progress, TextColumn
from rich.table import Table
from rich.text import Text

from commit_indexer.config import Config, load_config, parse_timestamp

console = Console()

logger = logging.getLogger(__name__)


def _setup_logging(verbose: bool) -> None:
    """Configure logging level."""
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%H:%M:%S",
    )


def _load(ctx: click.Context) -> Config:
    """Load the config file selected on the command line."""
    return load_config(ctx.obj.get("config_path"))


def _format_ts(value) -> str:
    return value.strftime("%Y-%m-%d %H:%M:%S") if value else "never"


@click.group()
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging.")
@click.option(
    "--config",
    "config_path",
    type=click.Path(dir_okay=False, path_type=Path),
    default=None,
    help="Config file. Defaults to ~/.commit-indexer/config.json.",
)
@click.pass_context
def main(ctx: click.Context, verbose: bool, config_path: Path | None) -> None:
    """commit-indexer: Incremental index of repository commit history."""
    _setup_logging(verbose)
    ctx.ensure_object(dict)
    ctx.obj["verbose"] = verbose
    ctx.obj["config_path"] = config_path


# ── Index command ───────────────────────────────────────────────────────


@contextlib.contextmanager
def _cancel_on_sigint() -> Generator[threading.Event, None, None]:
    """Turn Ctrl+C into a cancel event so stored windows are kept."""
    cancel_event = threading.Event()

    def _handle_sigint(_sig: int, _frame: object) -> None:
        click.echo("\nInterrupted. Finishing current window...", err=True)
        cancel_event.set()

    try:
        previous = signal.signal(signal.SIGINT, _handle_sigint)
    except ValueError:
        # Not on the main thread; run without a signal handler
        yield cancel_event
        return
    try:
        yield cancel_event
    finally:
        signal.signal(signal.SIGINT, previous)


@contextlib.contextmanager
def _window_progress(label: str) -> Generator[Callable[[int, int, str], None], None, None]:
    """Context manager that yields a progress callback for window indexing."""
    progress = Progress(
        TextColumn("[bold]{task.description}"),
        BarColumn(),
        MofNCompleteColumn(),
        TextColumn("[dim]{task.fields[repo]}"),
        console=console,
        transient=True,
    )
    with progress:
        task_id = progress.add_task(label, total=None, repo="")

        def callback(current: int, total: int, repo_name: str) -> None:
            progress.update(task_id, total=total, completed=current, repo=repo_name)

        yield callback


def _print_index_result(result) -> None:
    """Print a summary table and any repository failures."""
    table = Table(title="Indexing Summary", show_header=False, box=None, padding=(0, 2))
    table.add_column("Key", style="bold")
    table.add_column("Value")
    table.add_row("Repositories", str(result.total_found))
    table.add_row("Indexed", Text(str(result.indexed), style="green"))
    table.add_row("Skipped", Text(str(result.skipped), style="dim"))
    table.add_row(
        "Failed", Text(str(result.errors), style="red" if result.errors else "dim")
    )
    table.add_row("Windows", str(result.windows))
    table.add_row("Commits", str(result.commits))
    console.print(table)

    if result.failures:
        console.print()
        failures = Table(title="Failures")
        failures.add_column("Repository", style="bold")
        failures.add_column("Error", style="red")
        for failure in result.failures:
            failures.add_row(failure.repo_name, failure.message)
        console.print(failures)

    if result.retry_exhausted:
        console.print(
            "[yellow]Not retried after repeated failures:[/yellow] "
            + ", ".join(result.retry_exhausted)
            + " (use 'commit-indexer repos reset NAME')"
        )

    if result.cancelled:
        console.print("[yellow]Pass cancelled; progress so far was kept.[/yellow]")


@main.command("index")
@click.option("--repo", "-r", "repos", multiple=True, help="Only index these repositories.")
@click.option("--window-days", type=click.IntRange(min=0), default=None,
              help="Window size in days (0 = one unbounded window). Overrides config.")
@click.pass_context
def index_cmd(ctx: click.Context, repos: tuple[str, ...], window_days: int | None) -> None:
    """Bring the commit index of every configured repository up to date."""
    from commit_indexer.errors import RepositoryIterationError
    from commit_indexer.services.indexing_service import IndexingService

    config = _load(ctx)
    if not config.repositories:
        click.echo("Error: No repositories configured. Use 'commit-indexer repos add'.", err=True)
        sys.exit(1)

    unknown = [r for r in repos if r not in config.repositories]
    if unknown:
        click.echo(f"Error: Unknown repositories: {', '.join(unknown)}", err=True)
        sys.exit(1)

    service = IndexingService()
    try:
        with _cancel_on_sigint() as cancel_event, _window_progress("Indexing") as progress_cb:
            result = service.run_pass(
                config,
                only=repos or None,
                window_days=window_days,
                progress_callback=progress_cb,
                cancel_event=cancel_event,
            )
    except RepositoryIterationError as e:
        if e.result is not None:
            _print_index_result(e.result)
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)

    _print_index_result(result)
    if not result.ok:
        sys.exit(1)


# ── Status command ──────────────────────────────────────────────────────


@main.command()
@click.pass_context
def status(ctx: click.Context) -> None:
    """Show per-repository index state."""
    from commit_indexer.services.status_service import StatusService

    config = _load(ctx)
    service = StatusService()

    if not config.db_path.exists():
        click.echo("Database not found. Run 'commit-indexer index' to get started.")
        return

    overview = service.get_overview(config)
    summary = Table(title="commit-indexer status", show_header=False, box=None, padding=(0, 2))
    summary.add_column("Key", style="bold")
    summary.add_column("Value")
    summary.add_row("Database", str(config.db_path))
    summary.add_row("Size", f"{overview['db_size_mb']:.1f} MB")
    summary.add_row("Repositories", str(overview["repository_count"]))
    summary.add_row("Commits", str(overview["commit_count"]))
    summary.add_row("Failing", str(overview["failing_count"]))
    summary.add_row("Window", f"{config.window_duration_days} day(s)" if config.window_duration_days else "unbounded")
    console.print(summary)

    repos = service.get_repositories(config)
    if not repos:
        return

    table = Table(title="Repositories")
    table.add_column("Name", style="bold")
    table.add_column("Enabled")
    table.add_column("Indexed through", style="dim")
    table.add_column("Commits", justify="right")
    table.add_column("Failures", justify="right")

    for repo in repos:
        if repo["enabled"] is None:
            enabled = Text("-", style="dim")
        elif repo["enabled"]:
            enabled = Text("yes", style="green")
        else:
            enabled = Text("no", style="yellow")
        failure_style = "red" if repo["failure_count"] else "dim"
        table.add_row(
            repo["name"],
            enabled,
            _format_ts(repo["indexed_through"]),
            str(repo["commit_count"]),
            Text(str(repo["failure_count"]), style=failure_style),
        )

    console.print(table)


# ── Commits command ─────────────────────────────────────────────────────


@main.command()
@click.argument("repo")
@click.option("--as-of", "as_of", required=True,
              help="Point in time (ISO date or datetime, UTC if no offset).")
@click.option("--limit", default=20, show_default=True, help="Show at most this many of the newest commits.")
@click.pass_context
def commits(ctx: click.Context, repo: str, as_of: str, limit: int) -> None:
    """List the commits of REPO that existed as of a point in time."""
    from commit_indexer.services.status_service import RepositoryNotFoundError, StatusService

    try:
        as_of_ts = parse_timestamp(as_of)
    except ValueError:
        as_of_ts = None
    if as_of_ts is None:
        click.echo(f"Error: Invalid timestamp: {as_of}", err=True)
        sys.exit(1)

    config = _load(ctx)
    try:
        found, indexed_through = StatusService().get_commits_as_of(config, repo, as_of_ts)
    except RepositoryNotFoundError:
        click.echo(f"Error: Repository '{repo}' has not been indexed.", err=True)
        sys.exit(1)

    if indexed_through is None or as_of_ts > indexed_through:
        console.print(
            f"[yellow]Warning:[/yellow] {repo} is only indexed through "
            f"{_format_ts(indexed_through)}; the list may be incomplete."
        )

    if not found:
        click.echo("No commits found.")
        return

    table = Table(title=f"{repo} as of {_format_ts(as_of_ts)}")
    table.add_column("Commit", style="bold")
    table.add_column("Committed", style="dim")
    for commit in found[-limit:]:
        table.add_row(commit.sha[:12], _format_ts(commit.committed_at))
    console.print(table)
    console.print(f"[bold]{len(found)}[/bold] commit(s) existed as of {_format_ts(as_of_ts)}.")


# ── Repos commands ──────────────────────────────────────────────────────


@main.group()
def repos() -> None:
    """Manage tracked repositories."""


@repos.command("add")
@click.argument("name")
@click.argument("path", type=click.Path(exists=True, file_okay=False, path_type=Path))
@click.pass_context
def repos_add(ctx: click.Context, name: str, path: Path) -> None:
    """Track the git repository at PATH under NAME."""
    from commit_indexer.services.config_service import ConfigService

    config = _load(ctx)
    ConfigService().add_repository(config, name, path, ctx.obj.get("config_path"))
    click.echo(f"Repository '{name}' added.")


def _set_enabled(ctx: click.Context, name: str, enabled: bool) -> None:
    from commit_indexer.services.indexing_service import IndexingService

    config = _load(ctx)
    try:
        IndexingService().set_repository_enabled(config, name, enabled)
    except KeyError:
        click.echo(f"Error: Repository '{name}' is not configured.", err=True)
        sys.exit(1)
    click.echo(f"Commit indexing {'enabled' if enabled else 'disabled'} for '{name}'.")


@repos.command("enable")
@click.argument("name")
@click.pass_context
def repos_enable(ctx: click.Context, name: str) -> None:
    """Enable commit indexing for a repository."""
    _set_enabled(ctx, name, True)


@repos.command("disable")
@click.argument("name")
@click.pass_context
def repos_disable(ctx: click.Context, name: str) -> None:
    """Disable commit indexing for a repository."""
    _set_enabled(ctx, name, False)


@repos.command("reset")
@click.argument("name")
@click.pass_context
def repos_reset(ctx: click.Context, name: str) -> None:
    """Clear a repository's failure count so it is retried."""
    from commit_indexer.services.indexing_service import IndexingService

    config = _load(ctx)
    if not IndexingService().reset_repository_failures(config, name):
        click.echo(f"Error: Repository '{name}' has not been indexed.", err=True)
        sys.exit(1)
    click.echo(f"Failure count cleared for '{name}'.")
