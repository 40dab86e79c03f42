import json
from pathlib import Path
from typing import Any, Dict, Optional

import typer
from pydantic import ValidationError
from pydantic.alias_generators import to_snake
from rich import print
from rich.console import Console
from rich.table import Table

from . import config, runtime
from .errors import ScheduleError
from .log import configure_logging
from .models import ScheduleConfiguration, ScheduleState, ScheduleUpdate
from .storage import (
    config_get, config_set, counts_by_status, get_schedule, list_orchestrations,
    get_signal, list_registry, list_schedules, list_signals, list_workers, register_orchestration,
    requeue_dead_signal,
)
from .utils import parse_duration, parse_timestamp
from .worker import start_workers

app = typer.Typer(help="schedulectl - durable recurring schedules that launch orchestrations.")

worker_app = typer.Typer(help="Start and stop worker processes.")
orchestration_app = typer.Typer(help="Register orchestrations and inspect their runs.")
config_app = typer.Typer(help="Read and write runtime settings.")
dlq_app = typer.Typer(help="Signals that failed too many times.")

app.add_typer(worker_app, name="worker")
app.add_typer(orchestration_app, name="orchestration")
app.add_typer(config_app, name="config")
app.add_typer(dlq_app, name="dlq")


@app.callback()
def main(verbose: bool = typer.Option(False, "--verbose", "-v", help="Log at DEBUG level")):
    configure_logging("DEBUG" if verbose else config.log_level())


# -----------------------------
# Helpers
# -----------------------------
def _read_payload(payload: Optional[str], json_file: Optional[str]) -> Dict[str, Any]:
    if json_file:
        payload = Path(json_file).read_text(encoding="utf-8").strip()
    if not payload:
        return {}
    try:
        data = json.loads(payload)
    except json.JSONDecodeError as e:
        raise typer.BadParameter(f"Invalid JSON: {e.msg}")
    if not isinstance(data, dict):
        raise typer.BadParameter("Schedule payload must be a JSON object")
    # option names are snake_case; payload keys may be either form
    return {to_snake(k): v for k, v in data.items()}


def _collect_options(**options) -> Dict[str, Any]:
    """Command-line options override payload fields; unset options are left out."""
    data: Dict[str, Any] = {}
    try:
        for key, value in options.items():
            if value is None:
                continue
            if key in ("start_at", "end_at"):
                value = parse_timestamp(value)
            elif key == "interval":
                value = parse_duration(value)
            data[key] = value
    except ValueError as e:
        raise typer.BadParameter(str(e))
    return data


def _run(schedule_id: str, operation: str, payload: Optional[str] = None) -> ScheduleState:
    try:
        return runtime.execute(schedule_id, operation, payload)
    except ValidationError as e:
        raise typer.BadParameter(str(e))
    except ScheduleError as e:
        print(f"[red]{operation} failed:[/red] {e}")
        raise typer.Exit(1)


def _fmt(value) -> str:
    if value is None:
        return "-"
    if hasattr(value, "isoformat"):
        return value.isoformat(timespec="seconds")
    return str(value)


def _state_table(schedule_id: str, state: ScheduleState) -> Table:
    t = Table(title=f"Schedule {schedule_id}", show_header=False)
    t.add_column("field")
    t.add_column("value")
    t.add_row("status", state.status.value)
    t.add_row("execution_token", state.execution_token)
    t.add_row("last_run_at", _fmt(state.last_run_at))
    t.add_row("next_run_at", _fmt(state.next_run_at))
    cfg = state.configuration
    if cfg is not None:
        for name, value in cfg.model_dump().items():
            t.add_row(name, _fmt(value))
    return t


# -----------------------------
# Schedule operations
# -----------------------------
@app.command()
def create(
    payload: Optional[str] = typer.Argument(None, help="Schedule JSON, e.g. '{\"orchestrationName\":\"report\",\"interval\":\"PT1M\"}'"),
    json_file: Optional[str] = typer.Option(None, "--json-file", help="Read JSON payload from a file"),
    orchestration: Optional[str] = typer.Option(None, "--orchestration", "-o", help="Orchestration to launch"),
    id: Optional[str] = typer.Option(None, "--id", help="Schedule id (generated if omitted)"),
    input: Optional[str] = typer.Option(None, "--input", help="Input passed to the orchestration"),
    instance_id: Optional[str] = typer.Option(None, "--instance-id", help="Orchestration instance id"),
    start_at: Optional[str] = typer.Option(None, "--start-at", help="ISO timestamp of the first run"),
    end_at: Optional[str] = typer.Option(None, "--end-at", help="ISO timestamp (stored only)"),
    interval: Optional[str] = typer.Option(None, "--interval", "-i", help="e.g. 90, 45s, 1h30m, PT5M"),
    cron: Optional[str] = typer.Option(None, "--cron", help="Cron expression (stored only)"),
    max_occurrence: Optional[int] = typer.Option(None, "--max-occurrence", help="Stored only"),
    start_immediately_if_late: Optional[bool] = typer.Option(
        None, "--start-immediately-if-late/--no-start-immediately-if-late", help="Stored only"
    ),
):
    """Create a schedule and arm its first run."""
    data = _read_payload(payload, json_file)
    data.update(_collect_options(
        orchestration_name=orchestration, schedule_id=id, orchestration_input=input,
        orchestration_instance_id=instance_id, start_at=start_at, end_at=end_at, interval=interval,
        cron_expression=cron, max_occurrence=max_occurrence, start_immediately_if_late=start_immediately_if_late,
    ))
    try:
        cfg = ScheduleConfiguration.model_validate(data)
    except ValidationError as e:
        raise typer.BadParameter(str(e))
    _run(cfg.schedule_id, "create", cfg.model_dump_json(by_alias=True))
    print(f"[green]Created[/green] schedule [bold]{cfg.schedule_id}[/bold]")


@app.command()
def update(
    schedule_id: str = typer.Argument(..., help="Schedule to update"),
    payload: Optional[str] = typer.Argument(None, help="Partial schedule JSON"),
    json_file: Optional[str] = typer.Option(None, "--json-file", help="Read JSON payload from a file"),
    orchestration: Optional[str] = typer.Option(None, "--orchestration", "-o"),
    input: Optional[str] = typer.Option(None, "--input"),
    instance_id: Optional[str] = typer.Option(None, "--instance-id"),
    start_at: Optional[str] = typer.Option(None, "--start-at"),
    end_at: Optional[str] = typer.Option(None, "--end-at"),
    interval: Optional[str] = typer.Option(None, "--interval", "-i"),
    cron: Optional[str] = typer.Option(None, "--cron"),
    max_occurrence: Optional[int] = typer.Option(None, "--max-occurrence"),
    start_immediately_if_late: Optional[bool] = typer.Option(
        None, "--start-immediately-if-late/--no-start-immediately-if-late"
    ),
):
    """Merge the given fields into a schedule's configuration."""
    data = _read_payload(payload, json_file)
    data.update(_collect_options(
        orchestration_name=orchestration, orchestration_input=input, orchestration_instance_id=instance_id,
        start_at=start_at, end_at=end_at, interval=interval, cron_expression=cron,
        max_occurrence=max_occurrence, start_immediately_if_late=start_immediately_if_late,
    ))
    try:
        upd = ScheduleUpdate.model_validate(data)
    except ValidationError as e:
        raise typer.BadParameter(str(e))
    state = _run(schedule_id, "update", upd.model_dump_json(by_alias=True, exclude_none=True))
    print(f"[green]Updated[/green] schedule [bold]{schedule_id}[/bold] (version {state.configuration.version})")


@app.command()
def pause(schedule_id: str):
    """Pause an active schedule; pending runs are cancelled."""
    _run(schedule_id, "pause")
    print(f"[yellow]Paused[/yellow] schedule [bold]{schedule_id}[/bold]")


@app.command()
def resume(schedule_id: str):
    """Resume a paused schedule."""
    _run(schedule_id, "resume")
    print(f"[green]Resumed[/green] schedule [bold]{schedule_id}[/bold]")


@app.command()
def delete(schedule_id: str):
    """Delete a schedule. Its record is kept as a tombstone."""
    _run(schedule_id, "delete")
    print(f"[red]Deleted[/red] schedule [bold]{schedule_id}[/bold]")


# -----------------------------
# Status & listing
# -----------------------------
@app.command()
def show(schedule_id: str):
    """Show one schedule's state and configuration."""
    state = get_schedule(schedule_id)
    if state is None:
        print(f"[red]Not found:[/red] {schedule_id}")
        raise typer.Exit(1)
    console = Console()
    console.print(_state_table(schedule_id, state))

    pending = list_signals("pending", schedule_id)
    if pending:
        st = Table(title="Pending signals")
        for c in ["id", "operation", "not_before", "current"]:
            st.add_column(c)
        for s in pending:
            current = s["operation"] != "run" or s["payload"] == state.execution_token
            st.add_row(str(s["id"]), s["operation"], s["not_before"], "yes" if current else "stale")
        console.print(st)


@app.command("list")
def list_cmd(status: Optional[str] = typer.Option(None, "--status", help="Filter by status, e.g. Active")):
    """List schedules, optionally by status."""
    t = Table(title=f"Schedules{'' if not status else f' ({status})'}")
    for c in ["id", "status", "orchestration", "interval", "last_run_at", "next_run_at", "version"]:
        t.add_column(c)
    for schedule_id, state in list_schedules(status):
        cfg = state.configuration
        t.add_row(
            schedule_id,
            state.status.value,
            cfg.orchestration_name if cfg else "-",
            _fmt(cfg.interval if cfg else None),
            _fmt(state.last_run_at),
            _fmt(state.next_run_at),
            str(cfg.version) if cfg else "-",
        )
    Console().print(t)


@app.command()
def status():
    """Show schedule counts by status and active workers."""
    console = Console()
    tbl = Table(title="Schedules")
    tbl.add_column("Status")
    tbl.add_column("Count")
    for row in counts_by_status():
        tbl.add_row(str(row[0]), str(row[1]))
    console.print(tbl)

    wt = Table(title="Active Workers")
    wt.add_column("worker_id")
    wt.add_column("pid")
    wt.add_column("started_at")
    for w in list_workers():
        wt.add_row(w["id"], str(w["pid"]), w["started_at"])
    console.print(wt)


# -----------------------------
# Workers
# -----------------------------
@worker_app.command("start")
def worker_start(
    count: int = typer.Option(1, "--count", "-c", help="Number of worker processes"),
    reset_shutdown: bool = typer.Option(True, help="Set shutdown=false before start"),
):
    """Start worker processes."""
    if reset_shutdown:
        config.request_shutdown(False)
    print(f"Starting {count} worker(s). Ctrl+C to stop.")
    start_workers(count)


@worker_app.command("stop")
def worker_stop():
    """Signal workers to stop gracefully (finish current orchestration)."""
    config.request_shutdown()
    print("[yellow]Set shutdown=true. Workers will exit after finishing the current orchestration.[/yellow]")


# -----------------------------
# Orchestrations
# -----------------------------
@orchestration_app.command("register")
def orchestration_register(
    name: str = typer.Argument(..., help="Orchestration name used by schedules"),
    command: str = typer.Argument(..., help="Shell command; receives the input on stdin"),
):
    """Register (or replace) the command behind an orchestration name."""
    register_orchestration(name, command)
    print(f"[green]Registered[/green] orchestration [bold]{name}[/bold]")


@orchestration_app.command("list")
def orchestration_list():
    """List registered orchestrations."""
    t = Table(title="Orchestrations")
    t.add_column("name")
    t.add_column("command")
    for r in list_registry():
        t.add_row(r["name"], r["command"])
    Console().print(t)


@orchestration_app.command("runs")
def orchestration_runs(state: Optional[str] = typer.Option(None, "--state", help="pending, processing, completed or failed")):
    """List orchestration instances launched by schedules."""
    t = Table(title="Orchestration runs")
    for c in ["instance_id", "name", "schedule_id", "state", "attempts", "updated_at", "last_error"]:
        t.add_column(c)
    for r in list_orchestrations(state):
        t.add_row(
            r["instance_id"], r["name"], r["schedule_id"] or "-", r["state"],
            str(r["attempts"]), r["updated_at"], (r["last_error"] or "")[:80],
        )
    Console().print(t)


# -----------------------------
# DLQ
# -----------------------------
@dlq_app.command("list")
def dlq_list():
    """List dead signals."""
    t = Table(title="DLQ (dead signals)")
    for c in ["id", "schedule_id", "operation", "attempts", "last_error"]:
        t.add_column(c)
    for r in list_signals("dead"):
        t.add_row(str(r["id"]), r["schedule_id"], r["operation"], str(r["attempts"]), (r["last_error"] or "")[:80])
    Console().print(t)


@dlq_app.command("retry")
def dlq_retry(signal_id: int):
    """Re-queue a dead signal for immediate delivery."""
    signal = get_signal(signal_id)
    if signal is None:
        print(f"[red]Not found in DLQ:[/red] {signal_id}")
        raise typer.Exit(1)
    if signal["state"] != "dead" or not requeue_dead_signal(signal_id):
        print(f"[red]Signal {signal_id} is {signal['state']}, not dead[/red]")
        raise typer.Exit(1)
    print(f"[green]DLQ signal re-queued:[/green] {signal_id}")


# -----------------------------
# Config
# -----------------------------
@config_app.command("set")
def config_set_cmd(key: str = typer.Argument(..., help="Config key"), value: str = typer.Argument(..., help="Value")):
    config_set(key, value)
    print(f"set {key}={value}")


@config_app.command("get")
def config_get_cmd(key: str = typer.Argument(..., help="Config key")):
    print(config_get(key, ""))
