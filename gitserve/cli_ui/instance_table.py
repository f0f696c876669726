"""Rich rendering of instance listings and stop summaries."""

from datetime import datetime

from rich.markup import escape
from rich.table import Table

from gitserve.core.models import Instance, InstanceStatus
from gitserve.core.stop import OutcomeKind, StopAllSummary

# Status colors - use STRING KEYS so raw persisted values render too
STATUS_COLORS = {
    InstanceStatus.CREATED.value: "cyan",
    InstanceStatus.RUNNING.value: "green",
    InstanceStatus.STOPPING.value: "yellow",
    InstanceStatus.STOPPED.value: "bright_black",
    InstanceStatus.EXITED_OR_NOT_FOUND.value: "bright_black",
    InstanceStatus.FAILED.value: "red",
    InstanceStatus.ERROR_PID_ZERO.value: "red",
    InstanceStatus.EXITED_UNEXPECTEDLY.value: "red",
}

MAX_PATH_LEN = 35


def format_status(status: InstanceStatus | str) -> str:
    value = status.value if isinstance(status, InstanceStatus) else str(status)
    color = STATUS_COLORS.get(value, "cyan")
    return f"[{color}]{escape(value)}[/]"


def format_time(value: datetime | None) -> str:
    if value is None:
        return "N/A"
    return value.astimezone().strftime("%m-%d %H:%M:%S")


def truncate_path(path: str, max_len: int = MAX_PATH_LEN) -> str:
    if len(path) <= max_len:
        return path
    return "..." + path[len(path) - max_len + 3 :]


class InstanceTableRenderer:
    """Renders instances as a Rich table.

    SECURITY: Names and paths come from user input and are escaped to
    prevent Rich markup injection.
    """

    def render(self, instances: list[Instance]) -> Table:
        table = Table(header_style="bold")
        table.add_column("ID", style="cyan", no_wrap=True)
        table.add_column("NAME")
        table.add_column("PID", justify="right")
        table.add_column("PORT", justify="right")
        table.add_column("STATUS")
        table.add_column("PATH")
        table.add_column("START TIME")
        table.add_column("STOP TIME")

        for inst in instances:
            table.add_row(
                escape(inst.id),
                escape(inst.name),
                str(inst.pid),
                str(inst.port) if inst.port else "-",
                format_status(inst.status),
                escape(truncate_path(inst.path)),
                format_time(inst.start_time),
                format_time(inst.stop_time),
            )
        return table


def render_stop_summary(summary: StopAllSummary) -> list[str]:
    """Per-instance lines followed by the aggregate counts."""
    lines = []
    for outcome in summary.outcomes:
        ident = f"[bold]{escape(outcome.instance_id)}[/bold] ({escape(outcome.name)})"
        if outcome.kind == OutcomeKind.SKIPPED:
            lines.append(f"  [dim]Skipped {ident}: {escape(outcome.reason or '')}[/dim]")
        elif outcome.kind == OutcomeKind.SIGNALED:
            lines.append(
                f"  [green]Instance {ident} processed.[/green] "
                f"Final status: {format_status(outcome.final_status or '')}"
            )
        else:
            lines.append(f"  [red]Error processing {ident}: {escape(outcome.reason or '')}[/red]")

    lines.append("")
    lines.append("[bold]--- Stop All Summary ---[/bold]")
    lines.append(f"  [green]Successfully signaled/processed: [bold]{summary.signaled}[/bold][/green]")
    lines.append(f"  [red]Failed to stop/update:          [bold]{summary.failed}[/bold][/red]")
    lines.append(f"  [dim]Skipped:                        [bold]{summary.skipped}[/bold][/dim]")
    return lines
