"""Command line interface for running and inspecting paceflow workflows."""

from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path
from typing import Optional

import typer
import yaml

from .compiler import compile_rule
from .config import PaceflowConfig, load_config
from .errors import CompileError, ExecutionNotFoundError, IllegalTransitionError
from .executors import default_registry
from .inbox import TriggerEvent
from .persistence import ExecutionStatus, WorkflowExecution
from .rules import load_rule_file
from .runtime import build_engine, build_poller

app = typer.Typer(help="CLI for paceflow lifecycle workflows")

# Command groups
execution_app = typer.Typer(help="Commands for inspecting and controlling executions")
rule_app = typer.Typer(help="Commands for working with rule trees")
trigger_app = typer.Typer(help="Commands for submitting trigger events")

app.add_typer(execution_app, name="execution")
app.add_typer(rule_app, name="rule")
app.add_typer(trigger_app, name="trigger")

_state: dict = {"config_path": None}


@app.callback()
def main(
    config: Optional[Path] = typer.Option(None, help="Path to a YAML config file"),
    log_level: str = typer.Option("WARNING", help="Logging level"),
) -> None:
    """paceflow CLI entry point."""
    logging.basicConfig(
        level=getattr(logging, log_level.upper(), logging.WARNING),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    _state["config_path"] = str(config) if config else None


def _config(rules_dir: Optional[Path] = None) -> PaceflowConfig:
    config = load_config(_state["config_path"])
    if rules_dir is not None:
        config.rules_path = str(rules_dir)
    return config


def _parse_json(raw: Optional[str], source: Optional[Path]) -> dict:
    try:
        if source is not None:
            return json.loads(source.read_text())
        return json.loads(raw) if raw else {}
    except (OSError, json.JSONDecodeError) as exc:
        typer.secho(f"Could not read event data: {exc}", fg=typer.colors.RED)
        raise typer.Exit(code=1)


def _echo_execution(execution: WorkflowExecution) -> None:
    typer.echo(
        f"{execution.execution_id}  {execution.workflow_id}  {execution.status.value}"
        f"  step={execution.current_step_id or '-'}  user={execution.user_id}"
    )


@execution_app.command("list")
def execution_list(
    status: Optional[ExecutionStatus] = typer.Option(None, help="Filter by status"),
    workflow: Optional[str] = typer.Option(None, help="Filter by workflow id"),
    limit: Optional[int] = typer.Option(None, help="Maximum rows to show"),
) -> None:
    """
    List executions, newest first.

    Example:
        paceflow execution list --status delayed
    """
    engine = build_engine(_config())
    executions = asyncio.run(
        engine.list_executions(status=status, workflow_id=workflow, limit=limit)
    )
    if not executions:
        typer.echo("No executions found.")
        return
    for execution in executions:
        _echo_execution(execution)


@execution_app.command("show")
def execution_show(execution_id: str) -> None:
    """
    Show one execution with its history and delays.

    Example:
        paceflow execution show 6f1c...
        # Output: Execution 6f1c...: delayed
        #         - step_1 succeeded (2024-01-01 10:00:00+00:00)
        #         - step_2 suspended (2024-01-01 10:00:00+00:00)
        #         Delay 9a2e... delay pending until 2024-01-08 10:00:00+00:00
    """
    engine = build_engine(_config())

    async def load():
        execution = await engine.get_execution_status(execution_id)
        return execution, await engine.store.delays(execution_id)

    try:
        execution, delays = asyncio.run(load())
    except ExecutionNotFoundError as exc:
        typer.secho(str(exc), fg=typer.colors.RED)
        raise typer.Exit(code=1)

    typer.echo(f"Execution {execution.execution_id}: {execution.status.value}")
    typer.echo(f"Workflow: {execution.workflow_id} (version {execution.workflow_definition.version})")
    typer.echo(f"Trigger: {execution.trigger_type}:{execution.trigger_id} user={execution.user_id}")
    typer.echo(f"Current step: {execution.current_step_id or '-'}  retries: {execution.retry_count}")
    if execution.error:
        typer.secho(f"Error: {execution.error}", fg=typer.colors.RED)
    for entry in execution.state.history:
        line = f"- {entry.step_id} {entry.outcome} ({entry.timestamp})"
        if entry.error:
            line += f": {entry.error}"
        typer.echo(line)
    for delay in delays:
        typer.echo(
            f"Delay {delay.delay_id} {delay.kind} {delay.status.value} until {delay.resume_at}"
        )


def _control(action: str, execution_id: str) -> None:
    engine = build_engine(_config())
    operation = {
        "pause": engine.pause_execution,
        "resume": engine.resume_execution,
        "cancel": engine.cancel_execution,
    }[action]
    try:
        execution = asyncio.run(operation(execution_id))
    except (ExecutionNotFoundError, IllegalTransitionError) as exc:
        typer.secho(str(exc), fg=typer.colors.RED)
        raise typer.Exit(code=1)
    typer.echo(f"Execution {execution.execution_id}: {execution.status.value}")


@execution_app.command("pause")
def execution_pause(execution_id: str) -> None:
    """Pause a running or delayed execution."""
    _control("pause", execution_id)


@execution_app.command("resume")
def execution_resume(execution_id: str) -> None:
    """Resume a paused execution."""
    _control("resume", execution_id)


@execution_app.command("cancel")
def execution_cancel(execution_id: str) -> None:
    """Cancel an execution and its outstanding delays."""
    _control("cancel", execution_id)


@rule_app.command("compile")
def rule_compile(
    rule_file: Path,
    workflow_id: Optional[str] = typer.Option(None, help="Workflow id (default: file name)"),
    as_json: bool = typer.Option(False, "--json", help="Print the plan as JSON"),
) -> None:
    """
    Compile a YAML or JSON rule file and print the resulting plan.

    Example:
        paceflow rule compile ./rules/user_buys_subscription.yaml
        # Output: Plan user_buys_subscription v1 (3 steps) trigger=user_buys_subscription
        #         step_1  action      send_email
        #         step_2  delay       604800s
        #         step_3  action      send_email
    """
    try:
        definition = load_rule_file(rule_file, workflow_id)
    except (OSError, yaml.YAMLError) as exc:
        typer.secho(f"Could not read {rule_file}: {exc}", fg=typer.colors.RED)
        raise typer.Exit(code=1)
    try:
        plan = compile_rule(definition.rule, definition.workflow_id, definition.version)
    except CompileError as exc:
        typer.secho(f"Compile error: {exc}", fg=typer.colors.RED)
        raise typer.Exit(code=1)

    report = default_registry().validate_plan(plan)
    if as_json:
        typer.echo(plan.model_dump_json(indent=2))
    else:
        typer.echo(
            f"Plan {plan.workflow_id} v{plan.version} ({len(plan.steps)} steps)"
            f" trigger={plan.trigger_event or '-'} re_entry={plan.re_entry_rule}"
        )
        for step in plan.steps:
            typer.echo(f"{step.id:<10}{step.kind.value:<12}{_describe(step.payload)}")
    for warning in report.warnings:
        typer.secho(f"warning: {warning}", fg=typer.colors.YELLOW)
    if not report.is_valid:
        for error in report.errors:
            typer.secho(f"error: {error}", fg=typer.colors.RED)
        raise typer.Exit(code=1)


def _describe(payload) -> str:
    if payload.kind == "action":
        return payload.action
    if payload.kind == "delay":
        if payload.seconds is not None:
            return f"{payload.seconds}s"
        return f"{payload.min_seconds}-{payload.max_seconds}s"
    if payload.kind == "condition":
        targets = ", ".join(f"{b.label}->{b.target or '-'}" for b in payload.branches)
        return f"{'runtime ' if payload.runtime else ''}[{targets}]"
    if payload.kind == "end":
        return payload.reason
    return payload.flow


@trigger_app.command("admit")
def trigger_admit(
    trigger_type: str,
    data: Optional[str] = typer.Option(None, help="Event payload as JSON"),
    data_file: Optional[Path] = typer.Option(None, help="File holding the JSON payload"),
    rules_dir: Optional[Path] = typer.Option(None, help="Directory of rule files"),
) -> None:
    """
    Admit a trigger event directly and run the resulting execution.

    Example:
        paceflow trigger admit user_buys_subscription \\
            --data '{"subscription_id": "s1", "user_id": "u1", "product_package": "A"}'
    """
    payload = _parse_json(data, data_file)
    engine = build_engine(_config(rules_dir))
    result = asyncio.run(engine.admit_trigger(trigger_type, payload))
    if not result.success:
        typer.secho(f"Rejected: {result.error}", fg=typer.colors.RED)
        for error in result.errors:
            typer.echo(f"  {error}")
        raise typer.Exit(code=1)
    if result.duplicate_prevented:
        typer.secho("Duplicate prevented", fg=typer.colors.YELLOW)
    elif result.skipped:
        typer.echo("Skipped: trigger conditions not met")
    else:
        typer.echo(f"Execution {result.execution_id} admitted for {result.workflow_id}")


@trigger_app.command("enqueue")
def trigger_enqueue(
    trigger_type: str,
    data: Optional[str] = typer.Option(None, help="Event payload as JSON"),
    data_file: Optional[Path] = typer.Option(None, help="File holding the JSON payload"),
) -> None:
    """Write a trigger event to the inbox for the poller to admit."""
    payload = _parse_json(data, data_file)
    config = _config()
    poller = build_poller(build_engine(config), config)
    event = asyncio.run(poller.inbox.add(TriggerEvent(trigger_type=trigger_type, payload=payload)))
    typer.echo(f"Queued event {event.event_id}")


@app.command("poll")
def poll(
    once: bool = typer.Option(False, help="Run a single cycle and exit"),
    max_cycles: Optional[int] = typer.Option(None, help="Stop after this many cycles"),
    rules_dir: Optional[Path] = typer.Option(None, help="Directory of rule files"),
) -> None:
    """
    Run the poller: admit inbox events and resume due delays.

    Example:
        paceflow poll --once
        # Output: triggers=2 admitted=1 duplicates=1 rejected=0 resumed=0/0 errors=0
    """
    config = _config(rules_dir)
    poller = build_poller(build_engine(config), config)
    if once:
        report = asyncio.run(poller.run_cycle())
        typer.echo(
            f"triggers={report.triggers_seen} admitted={report.admitted} "
            f"duplicates={report.duplicates} rejected={report.rejected} "
            f"resumed={report.resumed}/{report.delays_seen} errors={report.errors}"
        )
        return
    typer.echo(f"Polling every {config.poller.interval_seconds}s (Ctrl+C to stop)")
    try:
        asyncio.run(poller.run_forever(max_cycles=max_cycles))
    except KeyboardInterrupt:
        typer.echo("Poller stopped")


if __name__ == "__main__":  # pragma: no cover - CLI entry point
    app()
