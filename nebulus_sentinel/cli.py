"""Sentinel command line: alerts, pane status, edit conflicts and the watch loop."""

from __future__ import annotations

import json
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Optional

import typer
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from nebulus_sentinel.alerts.generator import AlertGenerator
from nebulus_sentinel.alerts.output import build_output, generate_and_track
from nebulus_sentinel.alerts.tracker import AlertTracker
from nebulus_sentinel.alerts.types import Alert, Severity
from nebulus_sentinel.changes.conflicts import Conflict, RecordedFileChange
from nebulus_sentinel.changes.store import FileChangeStore, conflicts_since
from nebulus_sentinel.config import (
    DEFAULT_CONFIG_PATH,
    SentinelConfig,
    load_config,
    validate_config,
)
from nebulus_sentinel.errors import ConfigError, SentinelError
from nebulus_sentinel.integrations.beads_client import BeadsClient
from nebulus_sentinel.integrations.tmux_client import TmuxClient
from nebulus_sentinel.logging import configure_logging
from nebulus_sentinel.monitor import Monitor
from nebulus_sentinel.status.detector import StatusDetector, state_summary
from nebulus_sentinel.status.types import AgentState, AgentStatus
from nebulus_sentinel.timeutil import utc_now

app = typer.Typer(help="Supervise AI coding-agent panes.", no_args_is_help=True)
console = Console()

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)

SEVERITY_COLORS: dict[Severity, str] = {
    Severity.INFO: "dim",
    Severity.WARNING: "yellow",
    Severity.ERROR: "red",
    Severity.CRITICAL: "bold red",
}

STATE_COLORS: dict[AgentState, str] = {
    AgentState.IDLE: "green",
    AgentState.WORKING: "cyan",
    AgentState.ERROR: "red",
    AgentState.UNKNOWN: "dim",
}


@app.callback()
def main(
    ctx: typer.Context,
    config_path: Optional[Path] = typer.Option(
        None, "--config", "-c", help=f"Config file (default: {DEFAULT_CONFIG_PATH})"
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Debug logging"),
    json_logs: bool = typer.Option(False, "--json-logs", help="Log as JSON to stderr"),
) -> None:
    """Nebulus Sentinel: agent pane health, alerts and compaction recovery."""
    if verbose or json_logs:
        configure_logging(level="DEBUG" if verbose else "INFO", json_output=json_logs)
    ctx.obj = {"config_path": config_path}


def _load_config_or_exit(ctx: typer.Context) -> SentinelConfig:
    """Load config, printing the error and exiting 1 if it is invalid."""
    path = (ctx.obj or {}).get("config_path")
    try:
        return load_config(path)
    except ConfigError as e:
        console.print(f"[red]Config error: {e}[/red]")
        raise typer.Exit(1)


@app.command()
def alerts(
    ctx: typer.Context,
    resolved: bool = typer.Option(False, "--resolved", help="Include resolved alerts"),
    as_json: bool = typer.Option(False, "--json", help="Print the JSON envelope"),
    project: str = typer.Option("", "--project", "-p", help="Project directory for bd/bv"),
) -> None:
    """Run one detection cycle and show the alerts it produced."""
    config = _load_config_or_exit(ctx)
    beads = BeadsClient(default_path=project)
    generator = AlertGenerator(
        config=config.alerts,
        panes=TmuxClient(),
        insights=beads,
        tasks=beads,
        project_path=project,
    )
    tracker = AlertTracker(prune_after=timedelta(minutes=config.alerts.resolved_prune_minutes))
    generate_and_track(generator, tracker)
    output = build_output(tracker, config.to_dict(), include_resolved=resolved)

    if as_json:
        typer.echo(output.to_json())
        return

    if not output.active:
        console.print("[green]No active alerts.[/green]")
    else:
        _render_alerts_table("Active Alerts", output.active)
    if resolved and output.resolved:
        _render_alerts_table("Resolved Alerts", output.resolved)


def _render_alerts_table(title: str, rows: list[Alert]) -> None:
    table = Table(title=title)
    table.add_column("ID", style="bold", no_wrap=True)
    table.add_column("Severity")
    table.add_column("Type")
    table.add_column("Where")
    table.add_column("Message", max_width=60)
    table.add_column("Count", justify="right")

    for alert in rows:
        color = SEVERITY_COLORS.get(alert.severity, "white")
        where = alert.bead_id or ":".join(p for p in (alert.session, alert.pane) if p)
        table.add_row(
            alert.id,
            f"[{color}]{alert.severity.value}[/{color}]",
            alert.type.value,
            where or "[dim]-[/dim]",
            alert.message,
            str(alert.count),
        )

    console.print(table)


@app.command()
def status(
    ctx: typer.Context,
    session: Optional[str] = typer.Argument(None, help="Session to inspect (default: all)"),
) -> None:
    """Show the classified state of every agent pane."""
    config = _load_config_or_exit(ctx)
    client = TmuxClient()
    detector = StatusDetector(client, config.detector)

    try:
        names = [session] if session else [s.name for s in client.list_sessions()]
        statuses: list[AgentStatus] = []
        for name in names:
            statuses.extend(detector.detect_all(name))
    except SentinelError as e:
        console.print(f"[red]{e}[/red]")
        raise typer.Exit(1)

    if not statuses:
        console.print("[dim]No panes found.[/dim]")
        return

    table = Table(title="Agent Status")
    table.add_column("Pane", style="bold", no_wrap=True)
    table.add_column("Agent")
    table.add_column("State")
    table.add_column("Error")
    table.add_column("Last output", max_width=60)

    for s in statuses:
        color = STATE_COLORS.get(s.state, "white")
        last_line = s.last_output.strip().split("\n")[-1] if s.last_output else ""
        table.add_row(
            f"{s.session}:{s.pane_index}",
            s.agent_type,
            f"[{color}]{s.state.icon} {s.state.value}[/{color}]",
            s.error_category.value or "[dim]-[/dim]",
            last_line,
        )

    console.print(table)
    counts = state_summary(statuses)
    console.print(
        "[dim]" + ", ".join(f"{n} {state.value}" for state, n in counts.items()) + "[/dim]"
    )


@app.command()
def conflicts(
    ctx: typer.Context,
    changes_file: Path = typer.Argument(..., help="JSON file of recorded file changes"),
    session: Optional[str] = typer.Option(None, "--session", "-s", help="Only this session"),
    recent: bool = typer.Option(
        False, "--recent", help="Only changes inside conflicts.window_minutes"
    ),
    as_json: bool = typer.Option(False, "--json", help="Print conflicts as JSON"),
) -> None:
    """Find files modified by more than one agent."""
    config = _load_config_or_exit(ctx)
    try:
        changes = _read_changes(changes_file)
    except (OSError, ValueError) as e:
        console.print(f"[red]Cannot read {changes_file}: {e}[/red]")
        raise typer.Exit(1)

    store = FileChangeStore(limit=config.conflicts.store_limit)
    for change in changes:
        store.add(change)

    now = utc_now()
    since = now - timedelta(minutes=config.conflicts.window_minutes) if recent else _EPOCH
    found = conflicts_since(
        store,
        since,
        session=session,
        critical_window=timedelta(minutes=config.conflicts.critical_window_minutes),
        critical_agents=config.conflicts.critical_agent_count,
    )

    if as_json:
        typer.echo(json.dumps([c.to_dict() for c in found], indent=2))
        return

    if not found:
        console.print("[green]No conflicts.[/green]")
        return
    _render_conflicts_table(found)


def _read_changes(path: Path) -> list[RecordedFileChange]:
    """Accept either a bare list of records or ``{"changes": [...]}``."""
    data = json.loads(path.read_text())
    if isinstance(data, dict):
        data = data.get("changes", [])
    if not isinstance(data, list):
        raise ValueError("expected a list of file change records")
    return [RecordedFileChange.from_dict(item) for item in data]


def _render_conflicts_table(found: list[Conflict]) -> None:
    table = Table(title="File Conflicts")
    table.add_column("Path", style="bold")
    table.add_column("Severity")
    table.add_column("Agents")
    table.add_column("Edits", justify="right")
    table.add_column("Last edit")

    for c in found:
        color = SEVERITY_COLORS.get(c.severity, "white")
        table.add_row(
            c.path,
            f"[{color}]{c.severity.value}[/{color}]",
            ", ".join(c.agents),
            str(len(c.changes)),
            c.last_at.strftime("%Y-%m-%d %H:%M:%S") if c.last_at else "[dim]-[/dim]",
        )

    console.print(table)


@app.command()
def watch(
    ctx: typer.Context,
    interval: Optional[float] = typer.Option(
        None, "--interval", "-i", help="Seconds between cycles (default from config)"
    ),
    cycles: Optional[int] = typer.Option(None, "--cycles", "-n", help="Stop after N cycles"),
    project: str = typer.Option("", "--project", "-p", help="Project directory for bd/bv"),
) -> None:
    """Monitor continuously: track alerts and recover compacted agents."""
    config = _load_config_or_exit(ctx)
    monitor = Monitor.from_config(
        config,
        TmuxClient(),
        beads=BeadsClient(default_path=project),
        project_path=project,
    )

    console.print(
        f"[bold cyan]Sentinel watching[/bold cyan] "
        f"(every {interval if interval is not None else config.monitor_interval_seconds}s)"
    )
    try:
        completed = monitor.run(interval=interval, cycles=cycles)
    except KeyboardInterrupt:
        monitor.stop()
        console.print("[dim]Stopped.[/dim]")
        return

    summary = monitor.tracker.summary()
    console.print(
        f"[dim]{completed} cycle(s), {summary.total_active} active alert(s)[/dim]"
    )


@app.command("config-check")
def config_check(ctx: typer.Context) -> None:
    """Validate the sentinel configuration."""
    config = _load_config_or_exit(ctx)
    errors = validate_config(config)

    if errors:
        console.print(
            Panel(
                "\n".join(f"  - {e}" for e in errors),
                title="Validation Errors",
                border_style="red",
            )
        )
        raise typer.Exit(1)
    console.print("[green]Config is valid.[/green]")


if __name__ == "__main__":
    app()
