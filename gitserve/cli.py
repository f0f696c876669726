"""CLI entry point for gitserve.

Commands:
- gitserve run: Run a command from a repository ref in an isolated workspace
- gitserve list: Reconcile, prune and list instances
- gitserve stop: Stop a running instance
- gitserve stop-all: Stop all running instances, optionally by project
- gitserve logs: Show the captured output of an instance
"""

from __future__ import annotations

import logging
import sys
from collections import deque
from pathlib import Path
from typing import NoReturn

import click
from rich.console import Console
from rich.markup import escape

from gitserve import __version__
from gitserve.cli_ui.instance_table import (
    InstanceTableRenderer,
    format_status,
    render_stop_summary,
)
from gitserve.config import ConfigError, Settings, load_settings
from gitserve.core.errors import GitServeError, NotFoundError, ProcessExitedError
from gitserve.core.gitops import GitRepository
from gitserve.core.process import ProcessSupervisor, log_paths
from gitserve.core.reconcile import InstanceLister, LivenessReconciler, PruningPolicy
from gitserve.core.runner import RunRequest, Runner
from gitserve.core.stop import StopController
from gitserve.core.store import InstanceStore
from gitserve.core.workspace import WorkspaceManager

console = Console()


def _fail(error: Exception) -> NoReturn:
    console.print(f"[red]Error:[/red] {escape(str(error))}")
    sys.exit(1)


def _configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )


def _open_store(settings: Settings) -> InstanceStore:
    try:
        return InstanceStore(settings.store_dir)
    except GitServeError as e:
        _fail(GitServeError(f"failed to initialize instance store: {e}"))


@click.group()
@click.version_option(version=__version__)
@click.option(
    "--home",
    type=click.Path(file_okay=False, path_type=Path),
    default=None,
    help="gitserve data directory (default: $GITSERVE_HOME or ~/.gitserve)",
)
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging")
@click.pass_context
def main(ctx: click.Context, home: Path | None, verbose: bool) -> None:
    """gitserve - run commands (and dev servers) from isolated Git checkouts.

    Clones the requested ref into a private workspace and runs your command
    there, optionally detached. Detached instances are tracked across
    invocations; `gitserve list` reconciles their status and prunes old ones.
    """
    _configure_logging(verbose)
    try:
        ctx.obj = load_settings(home)
    except ConfigError as e:
        _fail(e)


@main.command()
@click.argument("ref", required=False)
@click.option(
    "--repo",
    "-r",
    type=click.Path(exists=True, file_okay=False, path_type=Path),
    default=Path("."),
    show_default=True,
    help="Repository to clone from",
)
@click.option("--command", "-c", "command", default="", help="Command to run (default from config)")
@click.option("--port", "-p", type=click.IntRange(min=0), default=0, help="Port the command uses")
@click.option("--detached", "-d", is_flag=True, help="Run the command in the background")
@click.pass_obj
def run(
    settings: Settings,
    ref: str | None,
    repo: Path,
    command: str,
    port: int,
    detached: bool,
) -> None:
    """Run a command from REF (branch, tag or commit) of a repository.

    Example:
        gitserve run feature/xyz -c "npm i && npm run dev" -p 3000 -d
    """
    store = _open_store(settings)
    supervisor = ProcessSupervisor(store, shell=settings.shell)
    runner = Runner(
        store=store,
        supervisor=supervisor,
        workspaces=WorkspaceManager(settings.workspaces_dir),
        git=GitRepository(timeout=settings.git_timeout),
        default_command=settings.default_command,
    )
    request = RunRequest(repo_path=repo, ref=ref, command=command, port=port, detached=detached)

    try:
        instance = runner.run(request)
    except ProcessExitedError as e:
        console.print(f"[yellow]{escape(str(e))}[/yellow]")
        console.print("[dim]Workspace cleaned up.[/dim]")
        sys.exit(e.returncode if 0 < e.returncode < 256 else 1)
    except GitServeError as e:
        _fail(e)

    if detached:
        console.print(
            f"[green]Instance [bold]{escape(instance.id)}[/bold] "
            f"({escape(instance.name)}, PID {instance.pid}) is running detached.[/green]"
        )
        console.print(f"Workspace: {escape(instance.path)}")
        console.print(
            f"[dim]Use 'gitserve list' and 'gitserve logs {escape(instance.id)}'.[/dim]"
        )
    else:
        console.print(
            f"Foreground process for instance [bold]{escape(instance.id)}[/bold] "
            f"completed with status: {format_status(instance.status)}."
        )
        console.print("[dim]Workspace cleaned up.[/dim]")


@main.command(name="list")
@click.pass_obj
def list_cmd(settings: Settings) -> None:
    """List instances, update status, and prune old stopped instances.

    Instances whose process group is gone are marked as exited. Terminal
    instances stopped longer than the retention window are removed together
    with their workspaces.
    """
    store = _open_store(settings)
    lister = InstanceLister(
        store,
        reconciler=LivenessReconciler(),
        pruning=PruningPolicy(retention=settings.retention),
        workspace_remover=WorkspaceManager(settings.workspaces_dir).remove_path,
    )
    result = lister.list_instances()

    for t in result.transitions:
        console.print(
            f"[dim](Auto-updated ID {escape(t.instance_id)}: status "
            f"'{t.old_status.value}' -> '{t.new_status.value}', PID {t.pid} not found)[/dim]"
        )
    for p in result.pruned:
        console.print(
            f"[dim](Pruned instance ID {escape(p.instance_id)}: status '{p.status.value}', "
            f"stopped at {p.stop_time.isoformat() if p.stop_time else 'N/A'})[/dim]"
        )
        for err in p.errors:
            console.print(f"  [red]{escape(err)}[/red]")
    for err in result.errors:
        console.print(f"[red]{escape(err)}[/red]")

    if not result.instances:
        console.print("No active or recently stopped instances found.")
        return

    console.print(InstanceTableRenderer().render(result.instances))


@main.command()
@click.argument("instance_id")
@click.pass_obj
def stop(settings: Settings, instance_id: str) -> None:
    """Stop a running instance by its ID.

    Sends SIGTERM to the instance's whole process group.
    """
    store = _open_store(settings)
    try:
        outcome = StopController(store).stop(instance_id)
    except GitServeError as e:
        _fail(e)

    console.print(
        f"[green]Instance [bold]{escape(outcome.instance_id)}[/bold] status updated to "
        f"[/green]{format_status(outcome.final_status or '')}."
    )
    console.print("[dim]Use 'gitserve list' to check its final status after a short while.[/dim]")


@main.command(name="stop-all")
@click.option(
    "--project",
    "-p",
    default=None,
    help="Only stop instances whose repository directory name matches (case-insensitive)",
)
@click.pass_obj
def stop_all(settings: Settings, project: str | None) -> None:
    """Stop all running instances, optionally filtered by project name."""
    store = _open_store(settings)
    if len(store) == 0:
        console.print("[yellow]No instances found to stop.[/yellow]")
        return

    console.print(f"Attempting to stop instances (filter: '{escape(project or 'none')}')...")
    summary = StopController(store).stop_all(project=project)
    for line in render_stop_summary(summary):
        console.print(line)
    console.print("[dim]Use 'gitserve list' to verify final statuses and for pruning.[/dim]")

    if summary.failed:
        sys.exit(1)


@main.command()
@click.argument("instance_id")
@click.option("--stderr", "show_stderr", is_flag=True, help="Show the stderr log instead")
@click.option("--lines", "-n", type=click.IntRange(min=1), default=50, show_default=True)
@click.pass_obj
def logs(settings: Settings, instance_id: str, show_stderr: bool, lines: int) -> None:
    """Show the last lines of an instance's captured output."""
    store = _open_store(settings)
    instance = store.get(instance_id)
    if instance is None:
        _fail(NotFoundError(instance_id, transition="logs"))

    stdout_path, stderr_path = log_paths(instance)
    log_file = stderr_path if show_stderr else stdout_path
    if not log_file.exists():
        _fail(GitServeError(f"no log file for instance '{instance_id}' at {log_file}"))

    with open(log_file, errors="replace") as f:
        tail = deque(f, maxlen=lines)
    click.echo("".join(tail), nl=False)


if __name__ == "__main__":
    main()
