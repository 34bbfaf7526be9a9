from __future__ import annotations

import asyncio
import dataclasses
import json
import logging
import signal
import sys
from pathlib import Path

import click
import structlog

from taskpilot.backends import ClaudeCodeBackend, CodexBackend
from taskpilot.config import DEFAULT_CONFIG_FILE, RunConfig, load_config, save_config
from taskpilot.controller import Controller
from taskpilot.errors import TaskpilotError
from taskpilot.memory import NotesMemoryStore
from taskpilot.models import RunResult
from taskpilot.reporter import ConsoleReporter, format_dry_run_plan
from taskpilot.session import (
    AgentSession,
    BackendSession,
    CancellationToken,
    SessionFactory,
    SessionPurpose,
)
from taskpilot.state.lock import RunLock
from taskpilot.state.tasks import find_runnable_pending, parse_task_file
from taskpilot.verifier import detect_commands

SAMPLE_TASK_FILE = """# Tasks

## Setup
- [ ] Describe the first task here
"""


def configure_logging(verbose: bool = False) -> None:
    level = logging.DEBUG if verbose else logging.INFO
    structlog.configure(
        processors=[
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="%H:%M:%S"),
            structlog.dev.ConsoleRenderer(colors=sys.stderr.isatty()),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
        cache_logger_on_first_use=False,
    )


def _resolve_config_path(config_value: str) -> Path:
    config_path = Path(config_value).expanduser()
    if not config_path.is_absolute():
        config_path = Path.cwd() / config_path
    return config_path.resolve()


def _load_run_config(config_value: str, task_file: str | None) -> RunConfig:
    try:
        config = load_config(_resolve_config_path(config_value))
    except TaskpilotError as exc:
        raise click.ClickException(str(exc)) from exc
    if task_file:
        run_section = dataclasses.replace(config.run, task_file=str(Path(task_file).resolve()))
        config = dataclasses.replace(config, run=run_section)
    return config


def _lock_for(config: RunConfig) -> RunLock:
    lock_path = Path(config.run.lock_path).expanduser() if config.run.lock_path else None
    return RunLock(lock_path, label=str(config.task_path))


def _build_session_factory(backend_name: str, config: RunConfig) -> SessionFactory:
    project_dir = config.project_path

    async def factory(purpose: SessionPurpose) -> AgentSession:
        model = None
        if purpose == "verify" and config.verification.verify_model:
            model = config.verification.verify_model
        max_turns = config.limits.task_max_iterations if purpose == "attempt" else None
        backend_type = CodexBackend if backend_name == "codex" else ClaudeCodeBackend
        backend = backend_type(working_directory=project_dir, model=model, max_turns=max_turns)
        return BackendSession(backend)

    return factory


async def _run_until_interrupted(
    config: RunConfig,
    session_factory: SessionFactory,
    reporter: ConsoleReporter,
) -> RunResult:
    abort = CancellationToken()
    memory = None
    if config.memory.notes_dir:
        notes_dir = Path(config.memory.notes_dir).expanduser()
        if not notes_dir.is_absolute():
            notes_dir = config.project_path / notes_dir
        memory = NotesMemoryStore(notes_dir)
    controller = Controller(
        config,
        session_factory,
        progress=reporter,
        abort=abort,
        memory=memory,
        lock=_lock_for(config),
    )

    loop = asyncio.get_running_loop()
    try:
        loop.add_signal_handler(signal.SIGINT, abort.cancel, "interrupted")
        handles_signal = True
    except (NotImplementedError, RuntimeError):
        # Signal handlers need the main thread of a Unix event loop.
        handles_signal = False
    try:
        return await controller.run()
    finally:
        if handles_signal:
            loop.remove_signal_handler(signal.SIGINT)


def _show_plan(config: RunConfig) -> None:
    task_file = parse_task_file(config.task_path)
    commands = detect_commands(config.project_path, config.verification)
    click.echo(format_dry_run_plan(task_file, find_runnable_pending(task_file, set()), commands))


@click.group()
def cli() -> None:
    """Taskpilot: drive a coding agent through a markdown checklist."""
    configure_logging(False)


@cli.command("init")
@click.option("--config", "config_value", default=DEFAULT_CONFIG_FILE, show_default=True)
@click.option("--force", is_flag=True, default=False, help="Overwrite an existing config.")
def init_command(config_value: str, force: bool) -> None:
    config_path = _resolve_config_path(config_value)
    if config_path.exists() and not force:
        raise click.ClickException(f"{config_path} already exists (use --force to overwrite).")
    config = RunConfig.default()
    save_config(config_path, config)
    click.echo(f"Config: {config_path}")

    task_path = config_path.parent / config.run.task_file
    if not task_path.exists():
        task_path.write_text(SAMPLE_TASK_FILE, encoding="utf-8")
        click.echo(f"Task file: {task_path}")


@cli.command("run")
@click.argument("task_file", required=False)
@click.option("--config", "config_value", default=DEFAULT_CONFIG_FILE, show_default=True)
@click.option("--dry-run", is_flag=True, default=False, help="List runnable tasks and exit.")
@click.option(
    "--backend",
    type=click.Choice(["claude", "codex"]),
    default="claude",
    show_default=True,
)
@click.option("--skip-on-fail", is_flag=True, default=False)
@click.option("--max-retries", type=click.IntRange(min=1), default=None)
@click.option("--verbose", is_flag=True, default=False)
def run_tasks_command(
    task_file: str | None,
    config_value: str,
    dry_run: bool,
    backend: str,
    skip_on_fail: bool,
    max_retries: int | None,
    verbose: bool,
) -> None:
    configure_logging(verbose)
    config = _load_run_config(config_value, task_file)
    if dry_run:
        config = dataclasses.replace(config, run=dataclasses.replace(config.run, dry_run=True))
    if skip_on_fail:
        config = dataclasses.replace(
            config, policy=dataclasses.replace(config.policy, skip_on_fail=True)
        )
    if max_retries is not None:
        config = dataclasses.replace(
            config,
            limits=dataclasses.replace(config.limits, max_retries_per_task=max_retries),
        )

    try:
        if config.run.dry_run:
            _show_plan(config)
        result = asyncio.run(
            _run_until_interrupted(
                config,
                _build_session_factory(backend, config),
                ConsoleReporter(verbose=verbose),
            )
        )
    except TaskpilotError as exc:
        raise click.ClickException(str(exc)) from exc

    if not config.run.dry_run and not result.completed_all:
        sys.exit(1)


@cli.command("plan")
@click.argument("task_file", required=False)
@click.option("--config", "config_value", default=DEFAULT_CONFIG_FILE, show_default=True)
def plan_command(task_file: str | None, config_value: str) -> None:
    config = _load_run_config(config_value, task_file)
    try:
        _show_plan(config)
    except TaskpilotError as exc:
        raise click.ClickException(str(exc)) from exc


@cli.command("status")
@click.argument("task_file", required=False)
@click.option("--config", "config_value", default=DEFAULT_CONFIG_FILE, show_default=True)
def status_command(task_file: str | None, config_value: str) -> None:
    config = _load_run_config(config_value, task_file)
    lock = _lock_for(config)
    info = lock.read()
    payload: dict[str, object] = {
        "lock_path": str(lock.path),
        "lock": dataclasses.asdict(info) if info is not None else None,
        "lock_stale": info.is_stale(lock.stale_after) if info is not None else None,
        "task_file": str(config.task_path),
        "tasks": None,
    }
    if config.task_path.exists():
        try:
            parsed = parse_task_file(config.task_path)
        except TaskpilotError as exc:
            raise click.ClickException(str(exc)) from exc
        payload["tasks"] = {
            "total": parsed.total_count,
            "completed": len(parsed.completed),
            "pending": len(parsed.pending),
            "runnable": len(find_runnable_pending(parsed, set())),
        }
    click.echo(json.dumps(payload, ensure_ascii=False, indent=2))


@cli.command("unlock")
@click.option("--config", "config_value", default=DEFAULT_CONFIG_FILE, show_default=True)
@click.option("--force", is_flag=True, default=False, help="Remove the lock even if it is live.")
def unlock_command(config_value: str, force: bool) -> None:
    config = _load_run_config(config_value, None)
    lock = _lock_for(config)
    info = lock.read()
    if info is not None and not info.is_stale(lock.stale_after) and not force:
        raise click.ClickException(
            f"Lock is held by live pid {info.pid} since {info.started_at} (use --force)."
        )
    if lock.force_release():
        click.echo(f"Removed lock {lock.path}")
    else:
        click.echo("No lock to remove.")


def main() -> None:
    cli()


if __name__ == "__main__":
    main()
