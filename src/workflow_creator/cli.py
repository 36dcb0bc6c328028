from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import click

from workflow_creator.config import WorkflowConfig, load_config, save_config
from workflow_creator.graph import TaskGraphError
from workflow_creator.models import AbortRun
from workflow_creator.store import RunStore, RunStoreError
from workflow_creator.workflow import (
    WorkflowCreator,
    WorkflowDefinition,
    WorkflowFileError,
    load_workflow_file,
)

LOG_LEVELS = ["debug", "info", "warning", "error"]


@dataclass(slots=True)
class Runtime:
    repo_root: Path
    config_path: Path
    config: WorkflowConfig
    store: RunStore


def _resolve_config_path(repo_root: Path, config_value: str) -> Path:
    config_path = Path(config_value)
    if not config_path.is_absolute():
        config_path = repo_root / config_path
    return config_path.resolve()


def _load_runtime(config_value: str) -> Runtime:
    repo_root = Path.cwd().resolve()
    config_path = _resolve_config_path(repo_root, config_value)
    try:
        config = load_config(config_path)
    except ValueError as exc:
        raise click.ClickException(f"Invalid config {config_path}: {exc}") from exc
    return Runtime(
        repo_root=repo_root,
        config_path=config_path,
        config=config,
        store=RunStore(repo_root, config.state.runs_dir),
    )


def _load_definition(workflow_file: str) -> WorkflowDefinition:
    try:
        return load_workflow_file(Path(workflow_file))
    except WorkflowFileError as exc:
        raise click.ClickException(str(exc)) from exc


def _parse_inputs(pairs: tuple[str, ...]) -> dict[str, Any]:
    parsed: dict[str, Any] = {}
    for pair in pairs:
        key, sep, raw = pair.partition("=")
        if not sep or not key:
            raise click.BadParameter(f"Expected KEY=VALUE, got '{pair}'.", param_hint="--input")
        try:
            parsed[key] = json.loads(raw)
        except json.JSONDecodeError:
            parsed[key] = raw
    return parsed


@click.group()
@click.option(
    "--log-level",
    type=click.Choice(LOG_LEVELS, case_sensitive=False),
    default="warning",
    show_default=True,
)
def cli(log_level: str) -> None:
    """Workflow Creator CLI."""
    logging.basicConfig(
        level=getattr(logging, log_level.upper()),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@cli.command("init")
@click.option("--config", "config_value", default="workflow.toml", show_default=True)
def init_command(config_value: str) -> None:
    runtime = _load_runtime(config_value)
    save_config(runtime.config_path, runtime.config)
    runtime.store.runs_dir.mkdir(parents=True, exist_ok=True)
    click.echo(f"Initialized Workflow Creator in {runtime.repo_root}")
    click.echo(f"Config: {runtime.config_path}")
    click.echo(f"Runs: {runtime.store.runs_dir}")


@cli.command("plan")
@click.argument("workflow_file", type=click.Path(dir_okay=False))
@click.option("--json", "as_json", is_flag=True, default=False)
@click.option("--config", "config_value", default="workflow.toml", show_default=True)
def plan_command(workflow_file: str, as_json: bool, config_value: str) -> None:
    runtime = _load_runtime(config_value)
    definition = _load_definition(workflow_file)
    creator = WorkflowCreator(definition.index(), definition.backends, runtime.config)
    try:
        plan = creator.plan(definition.tasks)
    except (TaskGraphError, ValueError) as exc:
        raise click.ClickException(str(exc)) from exc

    if as_json:
        click.echo(json.dumps(plan.to_dict(), ensure_ascii=False, indent=2))
        return

    click.echo(f"Pattern: {plan.classification.pattern}")
    for warning in plan.classification.warnings:
        click.echo(f"Warning: {warning}")
    for segment in plan.classification.segments:
        click.echo(f"Phase {segment.index} [{segment.pattern}]: {', '.join(segment.task_ids)}")
    for task_id in plan.graph.order:
        assignment = plan.assignments[task_id]
        if assignment.is_assignable:
            fallbacks = ", ".join(assignment.fallbacks) or "-"
            click.echo(
                f"  {task_id}: {assignment.primary} "
                f"(confidence {assignment.confidence:.2f}; fallbacks {fallbacks})"
            )
        else:
            click.echo(f"  {task_id}: UNASSIGNABLE ({assignment.reason})")


@cli.command("run")
@click.argument("workflow_file", type=click.Path(dir_okay=False))
@click.option("--input", "input_pairs", multiple=True, help="Run input as KEY=VALUE.")
@click.option("--no-save", is_flag=True, default=False)
@click.option("--config", "config_value", default="workflow.toml", show_default=True)
def run_command(
    workflow_file: str, input_pairs: tuple[str, ...], no_save: bool, config_value: str
) -> None:
    runtime = _load_runtime(config_value)
    definition = _load_definition(workflow_file)
    inputs = {**definition.inputs, **_parse_inputs(input_pairs)}
    creator = WorkflowCreator(definition.index(), definition.backends, runtime.config)
    try:
        result = asyncio.run(creator.run(definition.tasks, inputs))
    except (TaskGraphError, ValueError) as exc:
        raise click.ClickException(str(exc)) from exc

    if not no_save:
        try:
            path = runtime.store.save(result)
        except RunStoreError as exc:
            raise click.ClickException(str(exc)) from exc
        click.echo(f"Saved: {path}")

    click.echo(f"Run ID: {result.run_id}")
    click.echo(f"Pattern: {result.pattern}")
    for task in result.tasks:
        task_result = result.results[task.id]
        detail = f" ({task_result.reason})" if task_result.reason else ""
        click.echo(f"  {task.id:<20} {task_result.status:<12} {task_result.worker or '-'}{detail}")
    click.echo(f"Status: {result.status}")
    try:
        result.raise_for_status()
    except AbortRun as exc:
        raise click.ClickException(str(exc)) from exc


@cli.command("runs")
@click.option("--config", "config_value", default="workflow.toml", show_default=True)
def runs_command(config_value: str) -> None:
    runtime = _load_runtime(config_value)
    runs = runtime.store.list_runs()
    if not runs:
        click.echo("No runs recorded.")
        return
    for run in runs:
        click.echo(
            f"{run['run_id']} {str(run['status']):<9} {str(run['pattern']):<11} "
            f"{run['tasks']} task(s) {run['started_at']}"
        )


@cli.command("show")
@click.argument("run_id")
@click.option("--config", "config_value", default="workflow.toml", show_default=True)
def show_command(run_id: str, config_value: str) -> None:
    runtime = _load_runtime(config_value)
    try:
        payload = runtime.store.load(run_id)
    except RunStoreError as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(json.dumps(payload, ensure_ascii=False, indent=2))


@cli.command("workers")
@click.argument("workflow_file", type=click.Path(dir_okay=False))
def workers_command(workflow_file: str) -> None:
    definition = _load_definition(workflow_file)
    snapshot = definition.index().snapshot()
    if not len(snapshot):
        click.echo("No workers declared.")
        return
    for worker in snapshot:
        state = "available" if worker.available else "unavailable"
        backend = "command" if worker.name in definition.backends else "none"
        click.echo(
            f"{worker.name:<16} {worker.tier:<9} {state:<11} backend={backend} "
            f"{', '.join(sorted(worker.capabilities))}"
        )
