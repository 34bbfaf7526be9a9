"""Lint output helpers: error counting, baselines and bounded autofix commands."""

from __future__ import annotations

import re
import shlex
from dataclasses import dataclass, field
from pathlib import Path

import structlog

from taskpilot.commands import CommandRunner, run_command

ERROR_LINE_PATTERNS = (
    re.compile(r"\d+:\d+\s+error\s"),
    re.compile(r"\berror\s+TS\d+"),
    re.compile(r"\berror\[E\d+\]"),
    re.compile(r"^\S+?:\d+:\d+: [A-Z]{1,4}\d{2,4}\b"),
    re.compile(r"^\S+?:\d+: error:"),
)
FILE_HEADER_PATTERN = re.compile(r"^(?:/\S*\.\w+|[A-Z]:\\\S*)$")
SUMMARY_PATTERN = re.compile(r"^(?:✖\s+\d+\s+problem|\d+\s+errors?\b|Found \d+ errors?)")
MAX_AUTOFIX_FILES = 50

AUTOFIX_RULES: tuple[tuple[re.Pattern[str], str, tuple[str, ...]], ...] = (
    (
        re.compile(r"^\s*(?:uv run (?:--\S+ )*|python3? -m )?ruff check\b"),
        "ruff check --fix --exit-zero {files}",
        (".py", ".pyi"),
    ),
    (
        re.compile(r"\beslint\b|^\s*(?:npm|pnpm|yarn) (?:run )?lint\b"),
        "npx eslint --fix {files}",
        (".js", ".jsx", ".ts", ".tsx", ".mjs", ".cjs"),
    ),
)

logger = structlog.get_logger(__name__)


def is_error_line(line: str) -> bool:
    return any(pattern.search(line) for pattern in ERROR_LINE_PATTERNS)


def count_lint_errors(output: str) -> int:
    return sum(1 for line in output.splitlines() if is_error_line(line))


def filter_lint_error_lines(output: str) -> str:
    """Keep error lines, their file headers and summary lines; drop warnings."""
    result: list[str] = []
    last_header = ""
    for line in output.splitlines():
        stripped = line.strip()
        if FILE_HEADER_PATTERN.match(stripped):
            last_header = line
            continue
        if is_error_line(line):
            if last_header and (not result or result[-1] != last_header):
                result.append(last_header)
            result.append(line)
            continue
        if SUMMARY_PATTERN.match(stripped):
            result.append(line)
    return "\n".join(result)


@dataclass(frozen=True, slots=True)
class LintBaseline:
    error_count: int
    error_lines: frozenset[str] = field(default_factory=frozenset)

    def new_error_lines(self, output: str) -> list[str]:
        return [
            line
            for line in output.splitlines()
            if is_error_line(line) and line.strip() not in self.error_lines
        ]


def baseline_from_output(exit_code: int, output: str) -> LintBaseline:
    if exit_code == 0:
        return LintBaseline(0)
    lines = frozenset(line.strip() for line in output.splitlines() if is_error_line(line))
    return LintBaseline(count_lint_errors(output), lines)


async def capture_lint_baseline(
    lint_command: str | None,
    project_dir: Path,
    *,
    timeout: float = 180.0,
    runner: CommandRunner = run_command,
) -> LintBaseline | None:
    """Record lint debt that exists before the run edits anything."""
    if not lint_command:
        return None
    try:
        result = await runner(lint_command, timeout=timeout, cwd=project_dir)
    except OSError as exc:
        logger.warning("lint_baseline_failed", command=lint_command, error=str(exc))
        return None
    if result.timed_out:
        logger.warning("lint_baseline_timeout", command=lint_command)
        return None
    baseline = baseline_from_output(result.exit_code, f"{result.stdout}\n{result.stderr}")
    if baseline.error_count:
        logger.info("lint_baseline_captured", errors=baseline.error_count)
    return baseline


def build_autofix_command(
    lint_command: str,
    changed_files: list[str],
    *,
    override: str = "",
) -> str | None:
    """Return a fix command scoped to at most 50 changed files, or None."""
    if override:
        files = changed_files[:MAX_AUTOFIX_FILES]
        if not files:
            return None
        rendered = " ".join(shlex.quote(path) for path in files)
        if "{files}" in override:
            return override.replace("{files}", rendered)
        return f"{override} {rendered}"

    for pattern, template, suffixes in AUTOFIX_RULES:
        if not pattern.search(lint_command):
            continue
        files = [path for path in changed_files if path.endswith(suffixes)][:MAX_AUTOFIX_FILES]
        if not files:
            return None
        return template.replace("{files}", " ".join(shlex.quote(path) for path in files))
    return None
