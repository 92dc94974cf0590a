from __future__ import annotations

import asyncio
import functools
import json
import logging
import sys
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import click

from nonstop.advisories import advise
from nonstop.config import (
    CONFIG_FILENAME,
    NonstopConfig,
    load_config,
    resolve_cache_dir,
    save_config,
)
from nonstop.errors import InvalidTransform, NonstopError
from nonstop.gates import CheckRegistry, QualityGatePipeline
from nonstop.hooks import LifecycleHooks
from nonstop.metrics import EVENT_STATUSES, FILE_ACTIONS, MetricsCollector
from nonstop.orchestrator import Orchestrator
from nonstop.phases import PHASE_STATUSES, PHASES, set_phase_status
from nonstop.planning import JsonPlanner
from nonstop.progress import render_compact, render_dashboard, summarize
from nonstop.recovery import RecoveryDetector
from nonstop.state import CheckpointManager, JsonFileStore, StateStore
from nonstop.state.record import (
    UNIT_STATUSES,
    add_error,
    add_invoked_advisory,
    add_modified_files,
    add_unit,
    clear_units,
    save_preparation,
    set_current,
    set_unit_status,
)
from nonstop.state.transforms import compile_transform
from nonstop.workers import CommandWorker, WorkerRegistry
from nonstop.workers.registry import FINISHED_STATUSES

LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR")


@dataclass(slots=True)
class Runtime:
    project_root: Path
    config_path: Path
    config: NonstopConfig
    cache_dir: Path
    files: JsonFileStore
    store: StateStore
    checkpoints: CheckpointManager
    registry: WorkerRegistry
    gates: QualityGatePipeline
    hooks: LifecycleHooks
    metrics: MetricsCollector


def configure_logging(level: str) -> None:
    """Send log records to stderr so stdout carries only command output."""
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.WARNING),
        format="[%(asctime)s] [%(levelname)s] %(name)s: %(message)s",
        stream=sys.stderr,
    )


def _resolve_config_path(project_root: Path, config_value: str) -> Path:
    config_path = Path(config_value)
    if not config_path.is_absolute():
        config_path = project_root / config_path
    return config_path.resolve()


def _load_runtime(project_root: Path, config_path: Path, cache_dir: str | None) -> Runtime:
    try:
        config = load_config(config_path)
    except (OSError, ValueError, TypeError) as exc:
        raise click.ClickException(f"Cannot load config {config_path}: {exc}") from exc
    root = resolve_cache_dir(config, cache_dir)
    files = JsonFileStore(root)
    store = StateStore(root, files=files)
    checkpoints = CheckpointManager(store)
    return Runtime(
        project_root=project_root,
        config_path=config_path,
        config=config,
        cache_dir=root,
        files=files,
        store=store,
        checkpoints=checkpoints,
        registry=WorkerRegistry(files),
        gates=QualityGatePipeline(
            CheckRegistry(),
            config,
            files,
            state_store=store,
            project_root=project_root,
        ),
        hooks=LifecycleHooks(store, checkpoints, config),
        metrics=MetricsCollector(files),
    )


def _echo_json(payload: Any) -> None:
    click.echo(json.dumps(payload, ensure_ascii=False, indent=2))


def _parse_json(value: str, what: str) -> Any:
    try:
        return json.loads(value)
    except json.JSONDecodeError as exc:
        raise InvalidTransform(f"{what} is not valid JSON: {exc}") from exc


def _reports_errors(command: Callable[..., Any]) -> Callable[..., Any]:
    @functools.wraps(command)
    def _wrapper(*args: Any, **kwargs: Any) -> Any:
        try:
            return command(*args, **kwargs)
        except NonstopError as exc:
            raise click.ClickException(str(exc)) from exc

    return _wrapper


pass_runtime = click.make_pass_decorator(Runtime)


@click.group()
@click.option(
    "--root",
    "root_value",
    default=".",
    show_default=True,
    type=click.Path(file_okay=False),
    help="Project root the session works on.",
)
@click.option("--config", "config_value", default=CONFIG_FILENAME, show_default=True)
@click.option("--cache-dir", "cache_dir", default=None, help="Override the state cache root.")
@click.option(
    "--log-level",
    type=click.Choice(LOG_LEVELS, case_sensitive=False),
    default="WARNING",
    show_default=True,
)
@click.pass_context
def cli(
    ctx: click.Context,
    root_value: str,
    config_value: str,
    cache_dir: str | None,
    log_level: str,
) -> None:
    """Nonstop session orchestrator."""
    configure_logging(log_level)
    project_root = Path(root_value).expanduser().resolve()
    ctx.obj = _load_runtime(
        project_root, _resolve_config_path(project_root, config_value), cache_dir
    )


# -- config ------------------------------------------------------------------


@cli.group("config")
def config_group() -> None:
    """Project configuration file."""


@config_group.command("init")
@click.option("--force", is_flag=True, default=False, help="Overwrite an existing file.")
@click.option("--test-command", default=None)
@click.option("--lint-command", default=None)
@click.option("--type-check-command", default=None)
@click.option("--max-agents", default=None, type=click.IntRange(min=1))
@pass_runtime
def config_init(
    runtime: Runtime,
    force: bool,
    test_command: str | None,
    lint_command: str | None,
    type_check_command: str | None,
    max_agents: int | None,
) -> None:
    config = runtime.config
    if runtime.config_path.exists():
        if not force:
            raise click.ClickException(f"Config already exists: {runtime.config_path}")
    else:
        config.project.name = runtime.project_root.name or config.project.name
    if test_command is not None:
        config.project.test_command = test_command
    if lint_command is not None:
        config.project.lint_command = lint_command
    if type_check_command is not None:
        config.project.type_check_command = type_check_command
    if max_agents is not None:
        config.parallel_execution.max_agents = max_agents
    save_config(runtime.config_path, config)
    click.echo(f"Config: {runtime.config_path}")


@config_group.command("show")
@pass_runtime
def config_show(runtime: Runtime) -> None:
    _echo_json(runtime.config.to_dict())


# -- state -------------------------------------------------------------------


@cli.group("state")
def state_group() -> None:
    """Inspect and mutate the execution record."""


@state_group.command("init")
@click.argument("request")
@click.option("--force", is_flag=True, default=False, help="Archive an active session first.")
@pass_runtime
@_reports_errors
def state_init(runtime: Runtime, request: str, force: bool) -> None:
    record = runtime.store.init(request, force=force)
    _echo_json(record)


@state_group.command("get")
@pass_runtime
@_reports_errors
def state_get(runtime: Runtime) -> None:
    _echo_json(runtime.store.read())


@state_group.command("apply")
@click.argument("spec")
@pass_runtime
@_reports_errors
def state_apply(runtime: Runtime, spec: str) -> None:
    _echo_json(runtime.store.apply(compile_transform(spec)))


@state_group.command("active")
@pass_runtime
def state_active(runtime: Runtime) -> None:
    click.echo("true" if runtime.store.is_active() else "false")


@state_group.command("recovery")
@click.option("--source", default="startup", show_default=True)
@click.option("--text", "as_text", is_flag=True, default=False, help="Render as a banner.")
@pass_runtime
def state_recovery(runtime: Runtime, source: str, as_text: bool) -> None:
    detector = RecoveryDetector(
        runtime.store, freshness_hours=runtime.config.recovery.freshness_hours
    )
    report = detector.detect()
    if as_text:
        click.echo(report.render(source=source))
        return
    _echo_json(report.to_dict())


@state_group.command("progress")
@click.option("--compact", is_flag=True, default=False)
@click.option("--dashboard", is_flag=True, default=False)
@pass_runtime
@_reports_errors
def state_progress(runtime: Runtime, compact: bool, dashboard: bool) -> None:
    if compact:
        record = runtime.store.read() if runtime.store.exists() else None
        click.echo(render_compact(record))
        return
    record = runtime.store.read()
    if dashboard:
        click.echo(render_dashboard(record))
        return
    _echo_json(summarize(record).to_dict())


@state_group.command("unit")
@click.argument("unit_id")
@click.argument("status", type=click.Choice(UNIT_STATUSES))
@pass_runtime
@_reports_errors
def state_unit(runtime: Runtime, unit_id: str, status: str) -> None:
    runtime.store.apply(lambda record: set_unit_status(record, unit_id, status))
    click.echo(f"{unit_id} -> {status}")


@state_group.command("add-unit")
@click.argument("unit_json")
@click.option("--parent", "parent_id", default=None)
@pass_runtime
@_reports_errors
def state_add_unit(runtime: Runtime, unit_json: str, parent_id: str | None) -> None:
    unit = _parse_json(unit_json, "Unit")
    if not isinstance(unit, dict):
        raise InvalidTransform("Unit must be a JSON object.")
    runtime.store.apply(lambda record: add_unit(record, unit, parent_id=parent_id))
    click.echo(f"Added unit {unit.get('id')}")


@state_group.command("clear-units")
@pass_runtime
@_reports_errors
def state_clear_units(runtime: Runtime) -> None:
    runtime.store.apply(clear_units)
    click.echo("Cleared all units.")


@state_group.command("current")
@click.argument("unit_path")
@pass_runtime
@_reports_errors
def state_current(runtime: Runtime, unit_path: str) -> None:
    runtime.store.apply(lambda record: set_current(record, unit_path))
    click.echo(f"Current unit: {unit_path or 'none'}")


@state_group.command("file")
@click.argument("paths", nargs=-1, required=True)
@pass_runtime
@_reports_errors
def state_file(runtime: Runtime, paths: tuple[str, ...]) -> None:
    record = runtime.store.apply(lambda record: add_modified_files(record, list(paths)))
    _echo_json(record["execution"]["files_modified"])


@state_group.command("error")
@click.argument("message")
@click.option("--unit", "unit_id", default=None)
@pass_runtime
@_reports_errors
def state_error(runtime: Runtime, message: str, unit_id: str | None) -> None:
    runtime.store.apply(lambda record: add_error(record, message, unit_id=unit_id))
    click.echo("Error recorded.")


@state_group.command("phase")
@click.argument("phase", type=click.Choice(PHASES))
@click.argument("status", type=click.Choice(PHASE_STATUSES))
@click.option("--reason", default=None)
@pass_runtime
@_reports_errors
def state_phase(runtime: Runtime, phase: str, status: str, reason: str | None) -> None:
    runtime.store.apply(set_phase_status(phase, status, reason=reason))
    click.echo(f"{phase} -> {status}")


@state_group.command("save-preparation")
@click.option("--detect", is_flag=True, default=False, help="Detect signals from the project.")
@click.option("--signal", "signals", multiple=True)
@click.option("--advisory", "advisories", multiple=True)
@pass_runtime
@_reports_errors
def state_save_preparation(
    runtime: Runtime, detect: bool, signals: tuple[str, ...], advisories: tuple[str, ...]
) -> None:
    found_signals: set[str] = set(signals)
    found_advisories: set[str] = set(advisories)
    if detect:
        detected, recommended = advise(runtime.project_root)
        found_signals |= detected
        found_advisories |= recommended
    record = runtime.store.apply(
        lambda record: save_preparation(record, found_signals, found_advisories)
    )
    _echo_json(record["preparation"])


@state_group.command("add-advisory")
@click.argument("name")
@pass_runtime
@_reports_errors
def state_add_advisory(runtime: Runtime, name: str) -> None:
    record = runtime.store.apply(lambda record: add_invoked_advisory(record, name))
    _echo_json(record["preparation"]["invoked_advisories"])


@state_group.command("backup")
@click.option("--keep", default=10, show_default=True, type=int)
@pass_runtime
def state_backup(runtime: Runtime, keep: int) -> None:
    target = runtime.store.backup(keep=keep)
    if target is None:
        click.echo("No session to back up.")
        return
    click.echo(str(target))


# -- checkpoints -------------------------------------------------------------


@cli.group("checkpoint")
def checkpoint_group() -> None:
    """Snapshot and restore the execution record."""


@checkpoint_group.command("create")
@click.argument("name", default="auto")
@pass_runtime
@_reports_errors
def checkpoint_create(runtime: Runtime, name: str) -> None:
    click.echo(runtime.checkpoints.create(name))


@checkpoint_group.command("list")
@pass_runtime
def checkpoint_list(runtime: Runtime) -> None:
    _echo_json([info.to_dict() for info in runtime.checkpoints.list()])


@checkpoint_group.command("restore")
@click.argument("identifier")
@pass_runtime
@_reports_errors
def checkpoint_restore(runtime: Runtime, identifier: str) -> None:
    checkpoint_id = runtime.checkpoints.restore(identifier)
    click.echo(f"Restored checkpoint {checkpoint_id}")


@checkpoint_group.command("delete")
@click.argument("identifier")
@pass_runtime
@_reports_errors
def checkpoint_delete(runtime: Runtime, identifier: str) -> None:
    click.echo(f"Deleted checkpoint {runtime.checkpoints.delete(identifier)}")


@checkpoint_group.command("cleanup")
@click.argument("keep", required=False, type=int)
@pass_runtime
def checkpoint_cleanup(runtime: Runtime, keep: int | None) -> None:
    limit = runtime.config.checkpoints.keep_last if keep is None else keep
    removed = runtime.checkpoints.cleanup(keep=limit)
    _echo_json({"removed": removed, "kept": limit})


@checkpoint_group.command("latest")
@pass_runtime
def checkpoint_latest(runtime: Runtime) -> None:
    info = runtime.checkpoints.latest()
    if info is None:
        click.echo("No checkpoints found.")
        return
    _echo_json(info.to_dict())


@checkpoint_group.command("diff")
@click.argument("identifier")
@pass_runtime
@_reports_errors
def checkpoint_diff(runtime: Runtime, identifier: str) -> None:
    _echo_json(runtime.checkpoints.diff(identifier).to_dict())


@checkpoint_group.command("resolve")
@click.argument("fragment")
@pass_runtime
def checkpoint_resolve(runtime: Runtime, fragment: str) -> None:
    _echo_json(runtime.checkpoints.resolve(fragment))


# -- quality gates -----------------------------------------------------------


@cli.group("gate")
def gate_group() -> None:
    """Run quality checks."""


@gate_group.command("check")
@click.argument("name")
@click.argument("args", required=False)
@click.option("--phase", default="manual", show_default=True)
@pass_runtime
@_reports_errors
def gate_check(runtime: Runtime, name: str, args: str | None, phase: str) -> None:
    result = runtime.gates.run_check(name, args=args, phase=phase)
    _echo_json(result.to_dict())
    if result.failed:
        sys.exit(1)


@gate_group.command("run-phase")
@click.argument("phase")
@click.option("--fail-fast/--no-fail-fast", default=True, show_default=True)
@pass_runtime
@_reports_errors
def gate_run_phase(runtime: Runtime, phase: str, fail_fast: bool) -> None:
    report = runtime.gates.run_phase(phase, fail_fast=fail_fast)
    _echo_json(report.to_dict())
    if not report.passed:
        sys.exit(1)


@gate_group.command("status")
@pass_runtime
def gate_status(runtime: Runtime) -> None:
    _echo_json([result.to_dict() for result in runtime.gates.status()])


@gate_group.command("list")
@pass_runtime
def gate_list(runtime: Runtime) -> None:
    _echo_json(
        {
            "checks": runtime.gates.available_checks(),
            "phases": runtime.gates.configured_phases(),
        }
    )


@gate_group.command("reset")
@pass_runtime
def gate_reset(runtime: Runtime) -> None:
    runtime.gates.reset()
    click.echo("Gate results cleared.")


# -- agent pool --------------------------------------------------------------


@cli.group("agent")
def agent_group() -> None:
    """Track workers and their cached results."""


@agent_group.command("register")
@click.argument("agent_id")
@click.argument("unit_id")
@click.argument("kind", default="general-purpose")
@pass_runtime
@_reports_errors
def agent_register(runtime: Runtime, agent_id: str, unit_id: str, kind: str) -> None:
    _echo_json(runtime.registry.register(agent_id, unit_id, kind).to_dict())


@agent_group.command("cache-result")
@click.argument("agent_id")
@click.argument("result")
@click.argument("status", default="completed", type=click.Choice(FINISHED_STATUSES))
@pass_runtime
@_reports_errors
def agent_cache_result(runtime: Runtime, agent_id: str, result: str, status: str) -> None:
    try:
        payload: Any = json.loads(result)
    except json.JSONDecodeError:
        payload = result
    _echo_json(runtime.registry.record_result(agent_id, payload, status=status).to_dict())


@agent_group.command("get-result")
@click.argument("agent_id")
@pass_runtime
@_reports_errors
def agent_get_result(runtime: Runtime, agent_id: str) -> None:
    _echo_json(runtime.registry.get_result(agent_id))


@agent_group.command("list")
@pass_runtime
def agent_list(runtime: Runtime) -> None:
    _echo_json([handle.to_dict() for handle in runtime.registry.list()])


@agent_group.command("history")
@click.option("--limit", default=10, show_default=True, type=int)
@pass_runtime
def agent_history(runtime: Runtime, limit: int) -> None:
    _echo_json([handle.to_dict() for handle in runtime.registry.history(limit)])


@agent_group.command("stats")
@pass_runtime
def agent_stats(runtime: Runtime) -> None:
    _echo_json(runtime.registry.stats().to_dict())


@agent_group.command("suggest-batch")
@click.argument("units_json")
@click.option("--completed", "completed", multiple=True, help="Ids already completed.")
@pass_runtime
@_reports_errors
def agent_suggest_batch(runtime: Runtime, units_json: str, completed: tuple[str, ...]) -> None:
    units = _parse_json(units_json, "Units")
    if not isinstance(units, list) or not all(isinstance(unit, dict) for unit in units):
        raise InvalidTransform("Units must be a JSON list of objects.")
    _echo_json(runtime.registry.suggest_batches(units, completed=completed))


@agent_group.command("cleanup")
@click.argument("keep", default=10, type=int)
@pass_runtime
def agent_cleanup(runtime: Runtime, keep: int) -> None:
    _echo_json({"removed": runtime.registry.cleanup(keep=keep), "kept": keep})


@agent_group.command("reset")
@pass_runtime
def agent_reset(runtime: Runtime) -> None:
    runtime.registry.reset()
    click.echo("Agent pool reset.")


# -- lifecycle hooks ---------------------------------------------------------


@cli.group("hook")
def hook_group() -> None:
    """Entry points for host lifecycle events."""


@hook_group.command("session-start")
@click.option("--source", default="startup", show_default=True)
@pass_runtime
def hook_session_start(runtime: Runtime, source: str) -> None:
    click.echo(runtime.hooks.session_start(source=source))


@hook_group.command("pre-compact")
@pass_runtime
@_reports_errors
def hook_pre_compact(runtime: Runtime) -> None:
    backup = runtime.hooks.pre_compact()
    if backup is not None:
        click.echo(f"[nonstop] State backed up to {backup}")


@hook_group.command("subagent-stop")
@click.argument("agent_id")
@pass_runtime
@_reports_errors
def hook_subagent_stop(runtime: Runtime, agent_id: str) -> None:
    checkpoint_id = runtime.hooks.subagent_stop(agent_id)
    if checkpoint_id is not None:
        click.echo(f"[nonstop] Checkpoint {checkpoint_id}")


@hook_group.command("stop")
@pass_runtime
@_reports_errors
def hook_stop(runtime: Runtime) -> None:
    line = runtime.hooks.stop()
    if line is not None:
        click.echo(line)


# -- metrics -----------------------------------------------------------------


@cli.group("metrics")
def metrics_group() -> None:
    """Session timings and counted events."""


@metrics_group.command("start")
@click.argument("name")
@pass_runtime
def metrics_start(runtime: Runtime, name: str) -> None:
    runtime.metrics.start_timer(name)
    click.echo(f"Timer started: {name}")


@metrics_group.command("end")
@click.argument("name")
@pass_runtime
@_reports_errors
def metrics_end(runtime: Runtime, name: str) -> None:
    duration = runtime.metrics.end_timer(name)
    click.echo(f"Timer ended: {name} ({duration:.0f}s)")


@metrics_group.command("duration")
@click.argument("name")
@pass_runtime
@_reports_errors
def metrics_duration(runtime: Runtime, name: str) -> None:
    duration = runtime.metrics.duration(name)
    click.echo("running" if duration is None else f"{duration:.0f}")


@metrics_group.command("file-change")
@click.argument("action", type=click.Choice(FILE_ACTIONS))
@click.argument("path")
@pass_runtime
@_reports_errors
def metrics_file_change(runtime: Runtime, action: str, path: str) -> None:
    runtime.metrics.record_file_change(action, path)
    click.echo(f"Recorded: {action} {path}")


@metrics_group.command("record")
@click.argument("event_type")
@click.argument("status", type=click.Choice(EVENT_STATUSES))
@click.argument("details", default="")
@pass_runtime
@_reports_errors
def metrics_record(runtime: Runtime, event_type: str, status: str, details: str) -> None:
    runtime.metrics.record_event(event_type, status, details)
    click.echo(f"Event: {event_type} ({status})")


@metrics_group.command("events")
@pass_runtime
def metrics_events(runtime: Runtime) -> None:
    _echo_json(runtime.metrics.events())


@metrics_group.command("report")
@click.option("--json", "as_json", is_flag=True, default=False)
@pass_runtime
def metrics_report(runtime: Runtime, as_json: bool) -> None:
    record = runtime.store.read() if runtime.store.exists() else None
    report = runtime.metrics.report(record)
    if as_json:
        _echo_json(report.to_dict())
    else:
        click.echo(report.render())


@metrics_group.command("save")
@pass_runtime
def metrics_save(runtime: Runtime) -> None:
    record = runtime.store.read() if runtime.store.exists() else {}
    entry = runtime.metrics.save_to_history(record.get("session_id"))
    click.echo(f"Session saved to history: {entry['session_id']}")


@metrics_group.command("history")
@click.option("--limit", default=10, show_default=True, type=int)
@pass_runtime
def metrics_history(runtime: Runtime, limit: int) -> None:
    _echo_json(runtime.metrics.history(limit=limit))


@metrics_group.command("reset")
@pass_runtime
def metrics_reset(runtime: Runtime) -> None:
    runtime.metrics.reset()
    click.echo("Metrics reset")


# -- top level ---------------------------------------------------------------


@cli.command("advise")
@pass_runtime
def advise_command(runtime: Runtime) -> None:
    signals, advisories = advise(runtime.project_root)
    _echo_json({"signals": sorted(signals), "advisories": sorted(advisories)})


@cli.command("run")
@click.argument("request", default="")
@click.option(
    "--plan",
    "plan_path",
    required=True,
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
)
@click.option("--worker-command", required=True, help="Shell command run once per unit.")
@click.option("--resume", is_flag=True, default=False)
@pass_runtime
@_reports_errors
def run_command(
    runtime: Runtime, request: str, plan_path: Path, worker_command: str, resume: bool
) -> None:
    if not resume and not request.strip():
        raise click.UsageError("A request is required unless --resume is given.")
    orchestrator = Orchestrator(
        store=runtime.store,
        checkpoints=runtime.checkpoints,
        registry=runtime.registry,
        gates=runtime.gates,
        planner=JsonPlanner(plan_path),
        worker=CommandWorker(worker_command, cwd=runtime.project_root),
        config=runtime.config,
        project_root=runtime.project_root,
        metrics=runtime.metrics,
    )
    summary = asyncio.run(orchestrator.run(request, resume=resume))
    _echo_json(summary.to_dict())
    if summary.status != "completed":
        sys.exit(1)
