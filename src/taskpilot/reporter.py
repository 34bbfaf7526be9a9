from __future__ import annotations

from typing import Any

import click

from taskpilot.models import (
    Attempt,
    DetectedCommands,
    Progress,
    RunResult,
    Task,
    TaskFile,
    VerificationResult,
)
from taskpilot.progress import ProgressSink

BAR_WIDTH = 20
STATUS_COLORS = {
    "passed": "green",
    "decomposed": "cyan",
    "skipped": "yellow",
    "blocked": "yellow",
    "failed": "red",
    "timeout": "red",
    "error": "red",
}


def format_duration(seconds: float) -> str:
    total = max(0, int(round(seconds)))
    if total < 60:
        return f"{total}s"
    minutes, secs = divmod(total, 60)
    if minutes < 60:
        return f"{minutes}m {secs}s"
    hours, minutes = divmod(minutes, 60)
    return f"{hours}h {minutes}m"


def format_tokens(tokens: int) -> str:
    if tokens < 1_000:
        return str(tokens)
    if tokens < 1_000_000:
        return f"{tokens / 1_000:.1f}k"
    return f"{tokens / 1_000_000:.1f}M"


def progress_bar(done: int, total: int, width: int = BAR_WIDTH) -> str:
    if total <= 0:
        return "[" + "-" * width + "]"
    filled = min(width, round(width * done / total))
    return "[" + "#" * filled + "-" * (width - filled) + "]"


def _short(text: str, limit: int = 80) -> str:
    return text if len(text) <= limit else f"{text[: limit - 3]}..."


def format_run_summary(result: RunResult) -> str:
    ran = sum(1 for attempt in result.attempts if attempt.status != "skipped")
    lines = [
        f"Run finished: {result.stop_reason}",
        f"  completed:      {result.completed}/{result.total_tasks - result.pre_completed}",
    ]
    if result.auto_completed:
        lines.append(f"  auto-completed: {result.auto_completed}")
    lines.extend(
        [
            f"  skipped:        {result.skipped}",
            f"  failed:         {result.failed}",
            f"  remaining:      {result.remaining}",
            f"  attempts:       {ran}",
            f"  commits:        {result.total_commits}",
            f"  tokens:         {format_tokens(result.total_tokens)}",
            f"  duration:       {format_duration(result.duration_sec)}",
        ]
    )
    return "\n".join(lines)


def format_dry_run_plan(
    task_file: TaskFile,
    runnable: list[Task],
    commands: DetectedCommands,
) -> str:
    lines = [
        f"Task file: {task_file.file_path}",
        f"Tasks: {task_file.total_count} total, {len(task_file.completed)} done, "
        f"{len(task_file.pending)} pending",
        "",
        "Verification commands:",
    ]
    for label, command in (
        ("build", commands.build),
        ("test", commands.test),
        ("lint", commands.lint),
    ):
        lines.append(f"  {label}: {command or '(not configured)'}")
    lines.append("")
    if not runnable:
        lines.append("Nothing to run.")
        return "\n".join(lines)
    lines.append("Runnable now:")
    for index, task in enumerate(runnable, start=1):
        indent = "  " * task.depth
        phase = f" [{' > '.join(task.phase_path)}]" if task.phase_path else ""
        lines.append(f"  {index}. {indent}{_short(task.text)} (line {task.line}){phase}")
    return "\n".join(lines)


class ConsoleReporter(ProgressSink):
    """Progress sink that prints one line per event."""

    def __init__(self, *, verbose: bool = False) -> None:
        self.verbose = verbose

    def on_task_start(self, task: Task, attempt: int, progress: Progress) -> None:
        done = progress.completed_so_far + progress.skipped_so_far
        bar = progress_bar(done, progress.total_pending)
        retry = f" (attempt {attempt})" if attempt > 1 else ""
        click.echo(f"{bar} {done}/{progress.total_pending} > {_short(task.text)}{retry}")

    def on_task_end(self, task: Task, attempt: Attempt, progress: Progress) -> None:
        status = click.style(attempt.status, fg=STATUS_COLORS.get(attempt.status))
        detail = ""
        if attempt.commit_hash:
            detail = f" commit {attempt.commit_hash}"
        elif attempt.error:
            detail = f" ({_short(attempt.error, 120)})"
        elif attempt.verification is not None and not attempt.verification.passed:
            detail = f" ({_short(attempt.verification.summary, 120)})"
        click.echo(
            f"  {status} in {format_duration(attempt.duration_sec)}, "
            f"{format_tokens(attempt.tokens_used)} tokens{detail}"
        )

    def on_task_skip(self, task: Task, reason: str, progress: Progress) -> None:
        click.echo(click.style(f"  skipped: {_short(task.text)} ({reason})", fg="yellow"))

    def on_run_complete(self, result: RunResult) -> None:
        click.echo("")
        click.echo(format_run_summary(result))

    def on_tool_loop(self, task_text: str, event: dict[str, Any]) -> None:
        click.echo(click.style(f"  tool loop: {event.get('message', '')}", fg="yellow"))

    def on_compaction(self, task_text: str, event: dict[str, Any]) -> None:
        if self.verbose:
            click.echo("  context compacted")

    def on_verification(self, task_text: str, verification: VerificationResult) -> None:
        if self.verbose:
            click.echo(f"  verification: {verification.summary}")

    def on_stage(self, message: str) -> None:
        if self.verbose:
            click.echo(f"  {message}")
