"""CLI interface for weft."""

import functools
import logging
import sys
from typing import Optional

import click
from rich import print as rprint
from rich.console import Console
from rich.logging import RichHandler
from rich.markup import escape
from rich.table import Table

from .. import __version__
from ..errors import WeftError
from ..lifecycle import describe
from ..models import StatusKind
from ..orchestrator import Orchestrator
from ..reconcile import LiveStatus, WorkerView

console = Console()
err_console = Console(stderr=True)

LIVE_STYLES = {
    LiveStatus.RUNNING: "green",
    LiveStatus.EXITED: "yellow",
    LiveStatus.NO_SESSION: "red",
    LiveStatus.NO_WINDOW: "red",
    LiveStatus.UNKNOWN: "dim",
}

STATUS_STYLES = {
    StatusKind.SPAWNED: "yellow",
    StatusKind.RUNNING: "blue",
    StatusKind.WAITING_REVIEW: "magenta",
    StatusKind.APPROVED: "green",
    StatusKind.MERGED: "bold green",
    StatusKind.FAILED: "red",
    StatusKind.ARCHIVED: "dim",
}


def setup_logging(verbose: bool) -> None:
    """Route library logs to stderr through rich."""
    handler = RichHandler(console=err_console, show_path=False, show_time=verbose)
    root = logging.getLogger("weft")
    root.handlers[:] = [handler]
    root.setLevel(logging.DEBUG if verbose else logging.WARNING)
    root.propagate = False


def handle_errors(func):
    """Print weft errors in red and exit 1."""

    @functools.wraps(func)
    def wrapper(*args, **kwargs):
        try:
            return func(*args, **kwargs)
        except WeftError as e:
            rprint(f"[red]Error: {escape(str(e))}[/red]")
            sys.exit(1)

    return wrapper


def get_orchestrator() -> Orchestrator:
    return Orchestrator.from_path()


def format_status(view: WorkerView) -> str:
    if view.status is None:
        return "[dim]-[/dim]"
    style = STATUS_STYLES[StatusKind(view.status.kind)]
    return f"[{style}]{describe(view.status)}[/{style}]"


def format_live(live: LiveStatus) -> str:
    style = LIVE_STYLES[live]
    return f"[{style}]{live.value}[/{style}]"


@click.group()
@click.version_option(__version__, prog_name="weft")
@click.option("--verbose", "-v", is_flag=True, help="Show debug logs")
def cli(verbose: bool):
    """weft: run coding agents side by side in git worktrees and tmux."""
    setup_logging(verbose)


@cli.command()
@click.option("--force", "-f", is_flag=True, help="Reinitialize, keeping recorded workers")
@handle_errors
def init(force: bool):
    """Initialize weft state for the current repository."""
    orch = get_orchestrator()
    state = orch.init(force=force)
    rprint(f"[green]✓ Initialized weft in {orch.repo_root}[/green]")
    rprint(f"[dim]State: {orch.store.path}[/dim]")
    rprint(f"[dim]Tmux session: {state.session_name}[/dim]")


@cli.command()
@click.argument("name")
@click.option("--branch", "-b", help="Branch name (defaults to the worktree name)")
@click.option("--base", help="Base branch to start from")
@click.option("--no-hooks", is_flag=True, help="Skip the on-create hook")
@handle_errors
def create(name: str, branch: Optional[str], base: Optional[str], no_hooks: bool):
    """Create a worktree without starting an agent."""
    result = get_orchestrator().create(name, branch=branch, base=base, run_hook=not no_hooks)
    rprint(
        f"[green]✓ Created worktree '{name}'[/green] on branch [cyan]{result.branch}[/cyan] "
        f"from [cyan]{result.start_point}[/cyan]"
    )
    if result.hook_ok is False:
        rprint("[yellow]⚠️  On-create hook failed[/yellow]")
    rprint(f"[dim]{result.path}[/dim]")


@cli.command()
@click.argument("name")
@click.option("--context", "-c", "task", help="Task description passed to the agent")
@click.option("--branch", "-b", help="Branch name (defaults to the worker name)")
@click.option("--base", help="Base branch to start from")
@click.option("--auto/--no-auto", default=None, help="Launch the agent unattended")
@click.option("--parent", help="Worker that spawned this one")
@click.option("--no-hooks", is_flag=True, help="Skip the on-create hook")
@handle_errors
def spawn(
    name: str,
    task: Optional[str],
    branch: Optional[str],
    base: Optional[str],
    auto: Optional[bool],
    parent: Optional[str],
    no_hooks: bool,
):
    """Create a worktree and launch an agent in a tmux window."""
    orch = get_orchestrator()
    result = orch.spawn(
        name,
        task=task,
        branch=branch,
        base=base,
        auto=auto,
        parent=parent,
        run_hook=not no_hooks,
    )
    worker = result.worker

    if result.created:
        rprint(
            f"[green]✓ Created worktree '{name}'[/green] on branch [cyan]{worker.branch}[/cyan] "
            f"from [cyan]{result.start_point}[/cyan]"
        )
    else:
        rprint(f"[dim]Using existing worktree '{name}' on branch {worker.branch}[/dim]")
    if result.hook_ok is False:
        rprint("[yellow]⚠️  On-create hook failed[/yellow]")

    rprint(f"[green]✓ Launched agent in tmux window '{worker.window_name}'[/green]")
    if result.auto:
        rprint("[dim]  → Auto mode enabled[/dim]")
    rprint("")
    rprint(f"  Use '[cyan]weft attach {name}[/cyan]' to attach")
    rprint("  Use '[cyan]weft ps[/cyan]' to check status")


@cli.command()
@handle_errors
def ps():
    """Show live status of spawned workers."""
    views = get_orchestrator().ps()
    if not views:
        rprint("[dim]No active workers[/dim]")
        return

    table = Table(title="Workers")
    table.add_column("Name", style="cyan", no_wrap=True)
    table.add_column("Live")
    table.add_column("Branch", style="green")
    table.add_column("Ahead", justify="right")
    table.add_column("Dirty")

    for view in views:
        table.add_row(
            view.name,
            format_live(view.live),
            view.branch or "-",
            str(view.commits_ahead),
            "[yellow]yes[/yellow]" if view.dirty else "",
        )
    console.print(table)


@cli.command()
@click.argument("name", required=False)
@click.option("--all", "-a", "show_all", is_flag=True, help="Include merged, failed and archived workers")
@handle_errors
def status(name: Optional[str], show_all: bool):
    """Show workflow status of workers."""
    views = get_orchestrator().status(name, include_terminal=show_all)
    if not views:
        rprint("[dim]No workers recorded[/dim]")
        return

    if name is not None:
        view = views[0]
        worker = view.worker
        rprint(f"[bold]Worker: {worker.name}[/bold]")
        rprint(f"  [dim]ID:[/dim] {worker.id}")
        rprint(f"  [dim]Branch:[/dim] {view.branch} [dim](base {worker.base_branch})[/dim]")
        rprint(f"  [dim]Path:[/dim] {worker.worktree_path}")
        rprint(f"  [dim]Status:[/dim] {format_status(view)}")
        rprint(f"  [dim]Live:[/dim] {format_live(view.live)}")
        rprint(f"  [dim]Window:[/dim] {worker.session_name}:{worker.window_name}")
        if worker.parent:
            rprint(f"  [dim]Parent:[/dim] {worker.parent}")
        if worker.task:
            rprint("")
            rprint("  [bold]Task:[/bold]")
            rprint(f"    {worker.task.description}")
            if worker.task.issue_ref:
                rprint(f"    [dim]Issue:[/dim] {worker.task.issue_ref}")
            if worker.task.files_hint:
                rprint(f"    [dim]Files:[/dim] {', '.join(worker.task.files_hint)}")
        rprint("")
        rprint(f"  [dim]Created:[/dim] {worker.created_at:%Y-%m-%d %H:%M:%S}")
        rprint(f"  [dim]Updated:[/dim] {worker.updated_at:%Y-%m-%d %H:%M:%S}")
        return

    table = Table(title="Workers")
    table.add_column("Name", style="cyan", no_wrap=True)
    table.add_column("Status")
    table.add_column("Live")
    table.add_column("Ahead", justify="right")
    table.add_column("Task", style="dim")

    for view in views:
        task = view.task or ""
        table.add_row(
            view.name,
            format_status(view),
            format_live(view.live),
            str(view.commits_ahead),
            task[:50] + ("..." if len(task) > 50 else ""),
        )
    console.print(table)


@cli.command()
@click.argument("name")
@handle_errors
def kill(name: str):
    """Kill a worker's tmux window and archive it."""
    worker = get_orchestrator().kill(name)
    rprint(f"[green]✓ Killed window '{name}'[/green]")
    if worker is None:
        rprint("[dim]No worker record to update[/dim]")


@cli.command()
@click.argument("name", required=False)
@handle_errors
def attach(name: Optional[str]):
    """Attach to the repository's tmux session."""
    get_orchestrator().attach(name)


@cli.command()
@click.argument("name")
@click.option("--full", is_flag=True, help="Show the full patch instead of a summary")
@click.option("--mark", is_flag=True, help="Move the worker to waiting review")
@handle_errors
def review(name: str, full: bool, mark: bool):
    """Show a worker's changes against its base branch."""
    orch = get_orchestrator()
    result = orch.review(name, full=full)
    rprint(f"[dim]Reviewing '{name}' against '{result.base_branch}'[/dim]")

    if result.diff.strip():
        click.echo(result.diff.rstrip("\n"))
    else:
        rprint(f"[dim]No changes between '{result.branch}' and '{result.base_branch}'[/dim]")

    count = len(result.commits)
    if count:
        rprint("")
        rprint(f"{count} commit{'' if count == 1 else 's'} ahead of {result.base_branch}")

    if mark:
        orch.mark_review(name)
        rprint(f"[magenta]→ '{name}' is waiting review[/magenta]")


@cli.command()
@click.argument("name")
@handle_errors
def approve(name: str):
    """Approve a worker's changes."""
    get_orchestrator().approve(name)
    rprint(f"[green]✓ Approved '{name}'[/green]")


@cli.command()
@click.argument("name")
@click.option("--reason", "-r", default="", help="Why the worker failed")
@handle_errors
def fail(name: str, reason: str):
    """Mark a worker as failed."""
    get_orchestrator().fail(name, reason)
    rprint(f"[red]✗ Marked '{name}' as failed[/red]")


@cli.command()
@click.argument("name")
@click.option("--delete", "-d", is_flag=True, help="Remove the worktree and branch afterwards")
@click.option("--force", "-f", is_flag=True, help="Merge even with uncommitted changes")
@handle_errors
def merge(name: str, delete: bool, force: bool):
    """Merge a worker's branch into the current branch."""
    result = get_orchestrator().merge(name, delete=delete, force=force)
    rprint(
        f"[green]✓ Merged branch '[cyan]{result.branch}[/cyan]' into '[cyan]{result.into}[/cyan]'[/green]"
    )
    if result.removed:
        rprint(f"[dim]Removed worktree '{name}' and branch '{result.branch}'[/dim]")
    else:
        rprint("")
        rprint(f"  [dim]→ Remove worktree with:[/dim] [cyan]weft remove {name}[/cyan]")


@cli.command()
@click.argument("pattern")
@click.option("--force", "-f", is_flag=True, help="Remove even with uncommitted changes")
@click.option("--recursive", "-r", is_flag=True, help="Also remove workers spawned by the matches")
@click.option("--yes", "-y", is_flag=True, help="Do not ask for confirmation")
@handle_errors
def remove(pattern: str, force: bool, recursive: bool, yes: bool):
    """Remove worktrees by name or glob pattern."""
    orch = get_orchestrator()
    names = orch.plan_removal(pattern, recursive=recursive)

    if len(names) > 1 and not (yes or force):
        rprint("Worktrees to remove:")
        for name in names:
            rprint(f"  - [cyan]{name}[/cyan]")
        if not click.confirm(f"Remove {len(names)} worktrees?"):
            rprint("[dim]Aborted[/dim]")
            return

    for name in orch.remove(names, force=force):
        rprint(f"[green]✓ Removed worktree '[cyan]{name}[/cyan]'[/green]")


cli.add_command(remove, name="rm")


@cli.command(name="list")
@handle_errors
def list_worktrees():
    """List worktrees."""
    names = get_orchestrator().list_worktrees()
    if not names:
        rprint("[dim]No worktrees[/dim]")
        return
    for name in names:
        click.echo(name)


@cli.command()
@handle_errors
def sync():
    """Advance worker status from live tmux and git state."""
    changes = get_orchestrator().sync()
    if not changes:
        rprint("[dim]Nothing to update[/dim]")
        return
    for change in changes:
        rprint(
            f"[cyan]{change.name}[/cyan]: {change.previous.value} → {change.current.value}"
        )


if __name__ == "__main__":
    cli()
