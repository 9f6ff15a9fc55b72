"""Robotloop CLI: run remote robot plans to completion.

Usage:
    robotloop run --site S --activity A --instance I   # Drive an existing instance's plan
    robotloop run ... --run-id run-1a2b3c4d            # Resume an interrupted run
    robotloop start --site S --activity A              # Create instance + initial plan
    robotloop start --site S --activity A --execute    # ...and run the plan
    robotloop runs                                     # List stored runs
    robotloop show <run-id>                            # Cycle log + summary of a run
    robotloop timeline <run-id>                        # Events of a run
    robotloop config                                   # Show configuration
    robotloop config loop.max_cycles=50                # Set configuration
"""

import asyncio
import datetime
import json
import logging
import sys
from pathlib import Path

import click
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from robotloop.client import RobotApiClient
from robotloop.config import ROBOTLOOP_CONFIG, ROBOTLOOP_DB, RobotloopConfig, ensure_robotloop_home
from robotloop.controller import PlanCycleController
from robotloop.events import EventCollector
from robotloop.models import FinalReport, PlanParams
from robotloop.starter import launch_robot, start_robot
from robotloop.store import RunStore

console = Console()

LOG_FORMAT = "%(asctime)s [%(name)s] %(levelname)s: %(message)s"

_STATUS_COLORS = {"completed": "green", "failed": "red", "running": "blue"}


def _run_async(coro):
    """Run async function from sync context."""
    return asyncio.run(coro)


def _make_client(cfg: RobotloopConfig) -> RobotApiClient:
    try:
        return RobotApiClient(cfg.api)
    except ValueError as e:
        raise click.UsageError(str(e))


def _make_controller(
    client: RobotApiClient, cfg: RobotloopConfig, store: RunStore
) -> PlanCycleController:
    events = EventCollector(store=store)
    events.add_listener(_print_event)
    return PlanCycleController(
        act=client.act,
        replan=client.replan,
        save_session=client.save_session,
        escalate=client.record_intervention,
        config=cfg,
        store=store,
        events=events,
    )


def _print_event(event: dict) -> None:
    event_type = event["event_type"]
    if event_type == "cycle_recorded":
        console.print(f"[dim]{event['summary']}[/]")
    elif event_type in ("plan_replaced", "session_detected", "session_saved"):
        console.print(f"[cyan]{event['summary']}[/]")
    elif event_type.startswith("escalation"):
        console.print(f"[bold yellow]Escalation:[/] {event['summary']}")
    elif event_type in ("run_started", "run_resumed"):
        console.print(f"[dim]Run {event['run_id']}: {event['summary']}[/]")


def _print_report(report: FinalReport, run_id: str | None = None) -> None:
    color = "green" if report.success else "red"
    progress = report.final_progress
    lines = [
        f"Status: [bold {color}]{'completed' if report.success else 'failed'}[/] ({report.exit_kind.value})",
        f"Instance: {report.instance_id}",
        f"Plan: {report.instance_plan_id or '-'}",
        f"Cycles: {report.total_cycles}",
        f"Execution time: {report.total_execution_time_ms:.0f}ms",
        f"Tokens: {report.total_token_usage.input_tokens} in / "
        f"{report.total_token_usage.output_tokens} out",
    ]
    if progress:
        lines.append(
            f"Progress: {progress.completed_steps}/{progress.total_steps} ({progress.percentage:g}%)"
        )
    if report.error:
        lines.append(f"\n[red]{report.error}[/]")
    title = f"Run {run_id}" if run_id else "Run"
    console.print(Panel("\n".join(lines), title=title, border_style=color))


@click.group()
@click.option("--verbose", "-v", is_flag=True, help="Debug logging")
@click.option("--db", "db_path", type=click.Path(path_type=Path), default=None, help="Run store path")
@click.option("--config", "config_path", type=click.Path(path_type=Path), default=None, help="Config file path")
@click.pass_context
def cli(ctx, verbose, db_path, config_path):
    """Robotloop: drive remote robot plans to a terminal state."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format=LOG_FORMAT,
    )
    ctx.ensure_object(dict)
    ctx.obj["db_path"] = db_path or ROBOTLOOP_DB
    ctx.obj["config_path"] = config_path or ROBOTLOOP_CONFIG


def _load(ctx) -> tuple[RobotloopConfig, RunStore]:
    if ctx.obj["db_path"] == ROBOTLOOP_DB:
        ensure_robotloop_home()
    return RobotloopConfig.load(ctx.obj["config_path"]), RunStore(ctx.obj["db_path"])


# --- Plan execution ---


@cli.command()
@click.option("--site", "site_id", required=True, help="Site ID")
@click.option("--activity", required=True, help="Robot activity")
@click.option("--instance", "instance_id", required=True, help="Robot instance ID")
@click.option("--plan", "instance_plan_id", default=None, help="Instance plan ID")
@click.option("--user", "user_id", default=None, help="User ID")
@click.option("--run-id", default=None, help="Run ID (resumes the run when it exists)")
@click.pass_context
def run(ctx, site_id, activity, instance_id, instance_plan_id, user_id, run_id):
    """Run the plan of an existing robot instance."""
    cfg, store = _load(ctx)
    client = _make_client(cfg)
    params = PlanParams(
        site_id=site_id,
        activity=activity,
        instance_id=instance_id,
        instance_plan_id=instance_plan_id,
        user_id=user_id,
    )
    console.print(f"\n[bold blue]Robotloop[/]: [italic]{activity}[/] on instance {instance_id}\n")

    async def _execute():
        async with client:
            controller = _make_controller(client, cfg, store)
            report = await controller.run(params, run_id=run_id)
            await controller.drain_escalations(timeout=cfg.api.timeout_seconds)
            return report, controller.events.run_id

    report, used_run_id = _run_async(_execute())
    _print_report(report, used_run_id)
    if not report.success:
        sys.exit(1)


@cli.command()
@click.option("--site", "site_id", required=True, help="Site ID")
@click.option("--activity", required=True, help="Robot activity")
@click.option("--user", "user_id", default=None, help="User ID")
@click.option("--execute", is_flag=True, help="Run the plan after starting")
@click.pass_context
def start(ctx, site_id, activity, user_id, execute):
    """Create a robot instance and request its initial plan."""
    cfg, store = _load(ctx)
    client = _make_client(cfg)

    async def _execute():
        async with client:
            if not execute:
                return await start_robot(client, site_id, activity, user_id), None, None
            controller = _make_controller(client, cfg, store)
            started, report = await launch_robot(client, controller, site_id, activity, user_id)
            await controller.drain_escalations(timeout=cfg.api.timeout_seconds)
            return started, report, controller.events.run_id

    started, report, run_id = _run_async(_execute())

    if not started.success:
        console.print(f"[bold red]Start failed:[/] {started.error}")
        sys.exit(1)

    console.print(
        f"[green]Robot started[/] | Instance: {started.instance_id} | "
        f"Plan: {started.instance_plan_id or '-'}"
    )
    if report is not None:
        _print_report(report, run_id)
        if not report.success:
            sys.exit(1)


# --- Run history ---


@cli.command()
@click.option("--status", type=click.Choice(["running", "completed", "failed"]), default=None)
@click.option("--limit", "-n", default=20, help="Number of runs to show")
@click.pass_context
def runs(ctx, status, limit):
    """List stored runs."""
    _, store = _load(ctx)
    records = store.list_runs(status=status, limit=limit)
    if not records:
        console.print("[dim]No runs yet[/]")
        return

    table = Table(title="Runs")
    table.add_column("ID", style="dim")
    table.add_column("Activity")
    table.add_column("Instance")
    table.add_column("Status")
    table.add_column("Started")

    for r in records:
        color = _STATUS_COLORS.get(r.status, "white")
        started = datetime.datetime.fromtimestamp(r.created_at).strftime("%Y-%m-%d %H:%M")
        table.add_row(r.run_id, r.activity[:40], r.instance_id, f"[{color}]{r.status}[/]", started)

    console.print(table)


@cli.command()
@click.argument("run_id")
@click.pass_context
def show(ctx, run_id):
    """Show the cycle log and summary of a run."""
    _, store = _load(ctx)
    record = store.get_run(run_id)
    if record is None:
        console.print(f"[red]Run {run_id} not found[/]")
        sys.exit(1)

    cycles = store.get_cycles(run_id)
    if cycles:
        table = Table(title=f"Cycles: {run_id}")
        table.add_column("#", justify="right")
        table.add_column("Response")
        table.add_column("Step")
        table.add_column("Progress")
        table.add_column("Time", justify="right")
        for c in cycles:
            progress = (
                f"{c.plan_progress.completed_steps}/{c.plan_progress.total_steps}"
                if c.plan_progress else "-"
            )
            table.add_row(
                str(c.cycle),
                c.response_type,
                (c.step.title[:40] if c.step else "-"),
                progress,
                f"{c.execution_time_ms:.0f}ms",
            )
        console.print(table)

    if record.report:
        _print_report(FinalReport.from_dict(record.report), run_id)
    else:
        console.print(Panel(
            f"Status: {record.status}\n"
            f"Cycles recorded: {len(cycles)}\n"
            f"Plan: {record.instance_plan_id or '-'}\n"
            f"Attention retries: {record.attention_retries}",
            title=f"Run {run_id}",
        ))


@cli.command()
@click.argument("run_id", required=False)
@click.option("--limit", "-n", default=20, help="Number of events to show")
@click.option("--type", "-T", "event_type", default=None, help="Filter by event type")
@click.pass_context
def timeline(ctx, run_id, limit, event_type):
    """Show recent run events."""
    _, store = _load(ctx)
    events = store.get_timeline(run_id=run_id, limit=limit, event_type=event_type)
    if not events:
        console.print("[dim]No timeline events yet.[/]")
        return

    table = Table(title="Timeline")
    table.add_column("Time", style="dim")
    table.add_column("Run", style="dim")
    table.add_column("Type")
    table.add_column("Summary")
    for e in reversed(events):
        ts = datetime.datetime.fromtimestamp(e["timestamp"]).strftime("%H:%M:%S")
        table.add_row(ts, e["run_id"] or "-", e["event_type"], e["summary"][:80])
    console.print(table)


# --- Configuration ---


@cli.command()
@click.argument("key_value", nargs=-1)
@click.pass_context
def config(ctx, key_value):
    """View or set robotloop configuration.

    Examples:
        robotloop config                          # show all
        robotloop config loop.max_cycles=50       # lower the cycle cap
        robotloop config api.base_url=https://... # set the API endpoint
    """
    path = ctx.obj["config_path"]
    cfg = RobotloopConfig.load(path)
    if not key_value:
        console.print_json(json.dumps({
            "api": {
                "base_url": cfg.api.base_url,
                "api_key": "***" if cfg.api.api_key else "",
                "timeout_seconds": cfg.api.timeout_seconds,
                "max_attempts": cfg.api.max_attempts,
            },
            "loop": {
                "max_cycles": cfg.loop.max_cycles,
                "cycle_interval_seconds": cfg.loop.cycle_interval_seconds,
                "attention_wait_seconds": cfg.loop.attention_wait_seconds,
                "max_attention_retries": cfg.loop.max_attention_retries,
            },
            "escalation": {
                "agent_id": cfg.escalation.agent_id,
                "origin": cfg.escalation.origin,
            },
        }))
        return

    kv = " ".join(key_value)
    if "=" not in kv:
        console.print("[yellow]Usage: robotloop config key=value[/]")
        return

    key, value = (part.strip() for part in kv.split("=", 1))
    cfg = RobotloopConfig.load(path, env=False)
    try:
        cfg.set_value(key, value)
    except ValueError as e:
        raise click.BadParameter(str(e), param_hint="key_value")
    cfg.save(path)
    console.print(f"[green]Set {key} = {value}[/]")


def main():
    cli(obj={})


if __name__ == "__main__":
    main()
