"""Three-level verification cascade.

L0 trusts the agent's own status, L1 runs the project's build/test/lint
commands, and L2 optionally asks a fresh reviewer session to judge the diff.
Each level only runs when the previous one passed.
"""

from __future__ import annotations

import json
import re
import subprocess
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Literal

import structlog

from taskpilot.commands import CommandResult, CommandRunner, command_available, run_command
from taskpilot.config import ScopeGuardMode, VerificationConfig
from taskpilot.errors import AgentError
from taskpilot.lint import (
    LintBaseline,
    build_autofix_command,
    count_lint_errors,
    filter_lint_error_lines,
)
from taskpilot.models import AgentResult, DetectedCommands, Task, VerificationResult
from taskpilot.session import CancellationToken, SessionFactory, ask_with_deadline

NPM_PLACEHOLDER_TEST = 'echo "Error: no test specified" && exit 1'
SUMMARY_FAILURE_CHARS = 500
COMMAND_OUTPUT_CHARS = 4_000
REVIEW_SNIPPET_CHARS = 200
MAX_REVIEW_DIFF_CHARS = 40_000

FENCED_BLOCK_PATTERN = re.compile(r"```(?:json)?\s*\n?(.*?)\n?```", re.DOTALL | re.IGNORECASE)
PASS_PATTERNS = (
    re.compile(r"\bpass(?:es|ed)?\b"),
    re.compile(r"\bapproved?\b"),
    re.compile(r"\blooks?\s+good\b"),
    re.compile(r"\bcorrect(?:ly)?\b"),
    re.compile(r"\bwell[- ]implemented\b"),
    re.compile(r"\bno\s+(?:issues?|problems?|concerns?)\b"),
    re.compile(r"\bcode\s+(?:is\s+)?clean\b"),
    re.compile(r"\btask\s+(?:is\s+)?(?:complete|done)\b"),
)
FAIL_PATTERNS = (
    re.compile(r"\bfail(?:s|ed|ure)?\b"),
    re.compile(r"\breject(?:ed)?\b"),
    re.compile(r"\bnot\s+(?:correct|approved?)\b"),
    re.compile(r"\bissues?\s+found\b"),
    re.compile(r"\bproblems?\s+found\b"),
    re.compile(r"\bbugs?\b"),
    re.compile(r"\bmissing\b"),
    re.compile(r"\bincorrect\b"),
    re.compile(r"\bbroken\b"),
)
PATH_MENTION_PATTERN = re.compile(r"\b([A-Za-z0-9._-]+(?:/[A-Za-z0-9._-]+)+\.[A-Za-z0-9]{1,8})\b")
BARE_FILE_PATTERN = re.compile(
    r"(?<![\w/.-])([A-Za-z0-9_-]+(?:\.[A-Za-z0-9_-]+)*\.[A-Za-z]{1,8})\b"
)
SOURCE_EXTENSIONS = frozenset(
    {
        "py", "pyi", "js", "jsx", "ts", "tsx", "mjs", "cjs", "rs", "go", "java", "kt", "rb",
        "php", "c", "h", "cc", "cpp", "hpp", "cs", "swift", "css", "scss", "html", "vue",
        "md", "toml", "json", "yaml", "yml", "ini", "cfg", "sh", "sql", "txt",
    }
)
TEST_DIRECTORIES = {"tests", "test", "__tests__", "spec", "specs", "unit", "integration"}

ReviewTier = Literal["json", "embedded", "prose", "ambiguous"]

logger = structlog.get_logger(__name__)


def make_target_exists(cwd: Path, target: str) -> bool:
    try:
        probe = subprocess.run(
            ["make", "-n", target],
            cwd=cwd,
            text=True,
            capture_output=True,
            timeout=5,
        )
    except (OSError, subprocess.TimeoutExpired):
        return False
    return probe.returncode == 0


def _read_package_scripts(project_dir: Path) -> dict[str, Any]:
    package_json = project_dir / "package.json"
    if not package_json.exists():
        return {}
    try:
        payload = json.loads(package_json.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError):
        return {}
    scripts = payload.get("scripts") if isinstance(payload, dict) else None
    return scripts if isinstance(scripts, dict) else {}


def detect_commands(
    project_dir: Path,
    overrides: VerificationConfig,
    *,
    is_available: Callable[..., bool] = command_available,
    has_make_target: Callable[[Path, str], bool] = make_target_exists,
) -> DetectedCommands:
    """Resolve build/test/lint commands, each category independently.

    Probe order: explicit override, package.json scripts, Cargo.toml,
    Makefile, then Python project files.
    """
    found: dict[str, str | None] = {
        "build": overrides.build_command or None,
        "test": overrides.test_command or None,
        "lint": overrides.lint_command or None,
    }

    def offer(label: str, command: str) -> None:
        if found[label] is None:
            found[label] = command

    scripts = _read_package_scripts(project_dir)
    if scripts.get("build"):
        offer("build", "npm run build")
    test_script = scripts.get("test")
    if isinstance(test_script, str) and test_script.strip() != NPM_PLACEHOLDER_TEST:
        offer("test", "npm test")
    if scripts.get("lint"):
        offer("lint", "npm run lint")

    if (project_dir / "Cargo.toml").exists():
        offer("build", "cargo build")
        offer("test", "cargo test")
        if found["lint"] is None and is_available("cargo", "clippy"):
            offer("lint", "cargo clippy")

    if (project_dir / "Makefile").exists():
        offer("build", "make")
        if found["test"] is None and has_make_target(project_dir, "test"):
            offer("test", "make test")

    if (project_dir / "pyproject.toml").exists() or (project_dir / "setup.py").exists():
        if found["test"] is None and is_available("pytest"):
            offer("test", "pytest")
        if found["lint"] is None and is_available("ruff"):
            offer("lint", "ruff check .")

    return DetectedCommands(build=found["build"], test=found["test"], lint=found["lint"])


def truncate_output(text: str, max_chars: int) -> str:
    cleaned = text.strip()
    return f"{cleaned[:max_chars]}..." if len(cleaned) > max_chars else cleaned


def combine_output(label: str, stdout: str, stderr: str) -> str:
    parts = [f"=== {label} ==="]
    out = stdout.strip()
    err = stderr.strip()
    if out:
        parts.append(f"stdout:\n{out}")
    if err:
        parts.append(f"stderr:\n{err}")
    if not out and not err:
        parts.append("(no output)")
    return "\n".join(parts)


def extract_task_files(task_text: str) -> list[str]:
    files: list[str] = []
    for match in PATH_MENTION_PATTERN.finditer(task_text):
        candidate = match.group(1).removeprefix("./")
        if candidate not in files:
            files.append(candidate)
    for match in BARE_FILE_PATTERN.finditer(task_text):
        candidate = match.group(1)
        extension = candidate.rsplit(".", maxsplit=1)[-1].lower()
        if extension not in SOURCE_EXTENSIONS or candidate in files:
            continue
        files.append(candidate)
    return files


def _stem(path: str) -> str:
    name = path.rsplit("/", maxsplit=1)[-1]
    return name.split(".", maxsplit=1)[0].lower()


def _is_related_file(changed: str, expected: str) -> bool:
    changed_stem = _stem(changed)
    expected_stem = _stem(expected)
    if not changed_stem or not expected_stem:
        return False
    if changed_stem.startswith(expected_stem) or expected_stem.startswith(changed_stem):
        return True
    if changed_stem in {f"test_{expected_stem}", f"{expected_stem}_test"}:
        return True
    changed_dir = changed.rsplit("/", maxsplit=1)[0] if "/" in changed else ""
    expected_dir = expected.rsplit("/", maxsplit=1)[0] if "/" in expected else ""
    if changed_dir and changed_dir == expected_dir:
        return True
    parts = {part.lower() for part in changed_dir.split("/") if part}
    return bool(parts & TEST_DIRECTORIES) and expected_stem in changed_stem


def check_scope(task_text: str, changed_files: list[str], mode: ScopeGuardMode) -> str | None:
    """Return a failure description when changes stray from files the task names."""
    if mode == "off":
        return None
    expected = extract_task_files(task_text)
    if not expected or not changed_files:
        return None

    def in_scope(path: str) -> bool:
        for item in expected:
            if path == item or ("/" not in item and path.rsplit("/", maxsplit=1)[-1] == item):
                return True
            if mode == "lax" and _is_related_file(path, item):
                return True
        return False

    outside = [path for path in changed_files if not in_scope(path)]
    if not outside:
        return None
    return (
        f"task targets {', '.join(expected)} but modified out-of-scope files: "
        f"{', '.join(outside[:20])} (mode {mode})"
    )


@dataclass(frozen=True, slots=True)
class ReviewVerdict:
    passed: bool
    reason: str
    tier: ReviewTier


def _snippet(text: str) -> str:
    if len(text) > REVIEW_SNIPPET_CHARS:
        return f"{text[:REVIEW_SNIPPET_CHARS]}..."
    return text


def _verdict_from_payload(payload: Any, tier: ReviewTier) -> ReviewVerdict | None:
    if not isinstance(payload, dict) or not isinstance(payload.get("pass"), bool):
        return None
    reason = payload.get("reason")
    reason_text = str(reason) if reason else "No reason provided"
    return ReviewVerdict(payload["pass"], reason_text, tier)


def _embedded_payloads(text: str) -> list[Any]:
    payloads: list[Any] = []
    for body in FENCED_BLOCK_PATTERN.findall(text):
        try:
            payloads.append(json.loads(body.strip()))
        except json.JSONDecodeError:
            continue
    decoder = json.JSONDecoder()
    for match in re.finditer(r"\{", text):
        try:
            payload, _ = decoder.raw_decode(text, match.start())
        except json.JSONDecodeError:
            continue
        if isinstance(payload, dict) and "pass" in payload:
            payloads.append(payload)
    return payloads


def parse_review_response(raw: str, *, strict: bool = False) -> ReviewVerdict:
    """Interpret a reviewer reply. The last tier always returns a verdict."""
    text = (raw or "").strip()

    try:
        verdict = _verdict_from_payload(json.loads(text), "json")
    except json.JSONDecodeError:
        verdict = None
    if verdict is not None:
        return verdict

    for payload in _embedded_payloads(text):
        verdict = _verdict_from_payload(payload, "embedded")
        if verdict is not None:
            return verdict

    lowered = text.lower()
    pass_score = sum(1 for pattern in PASS_PATTERNS if pattern.search(lowered))
    fail_score = sum(1 for pattern in FAIL_PATTERNS if pattern.search(lowered))
    if pass_score > fail_score:
        return ReviewVerdict(True, f"(inferred from prose) {_snippet(text)}", "prose")
    if fail_score > pass_score:
        return ReviewVerdict(False, f"(inferred from prose) {_snippet(text)}", "prose")
    if strict:
        return ReviewVerdict(
            False, f"(ambiguous response, strict review) {_snippet(text)}", "ambiguous"
        )
    return ReviewVerdict(
        True, f"(ambiguous response, defaulting to pass) {_snippet(text)}", "ambiguous"
    )


def build_review_prompt(task_text: str, diff: str) -> str:
    if len(diff) > MAX_REVIEW_DIFF_CHARS:
        diff = f"{diff[:MAX_REVIEW_DIFF_CHARS]}\n... (diff truncated)"
    return (
        f'You are a code review verifier. Task: "{task_text}"\n\n'
        f"Diff:\n```diff\n{diff}\n```\n\n"
        "Does this diff correctly and completely implement the task?\n"
        "Reply with exactly one JSON object:\n"
        '{"pass": true, "reason": "..."}\n'
        "or\n"
        '{"pass": false, "reason": "..."}'
    )


@dataclass(slots=True)
class _CommandOutcome:
    passed: bool
    summary: str = ""
    output: str = ""


class Verifier:
    """Runs the cascade for one project; stateless between attempts."""

    def __init__(
        self,
        project_dir: Path,
        commands: DetectedCommands,
        config: VerificationConfig,
        *,
        lint_baseline: LintBaseline | None = None,
        runner: CommandRunner = run_command,
        logger: Any | None = None,
    ) -> None:
        self.project_dir = project_dir
        self.commands = commands
        self.config = config
        self.lint_baseline = lint_baseline
        self.runner = runner
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    async def _run(self, command: str) -> CommandResult:
        return await self.runner(
            command,
            timeout=self.config.command_timeout_sec,
            cwd=self.project_dir,
        )

    async def _check_command(self, label: str, command: str) -> _CommandOutcome:
        result = await self._run(command)
        if result.ok:
            return _CommandOutcome(True)
        combined = combine_output(label, result.stdout, result.stderr)
        return _CommandOutcome(
            False,
            summary=f"{label}: {truncate_output(combined, SUMMARY_FAILURE_CHARS)}",
            output=combined,
        )

    async def _check_lint(self, command: str, changed_files: list[str]) -> _CommandOutcome:
        result = await self._run(command)
        if result.ok:
            return _CommandOutcome(True)

        if self.config.lint_autofix:
            fix_command = build_autofix_command(
                command,
                changed_files,
                override=self.config.lint_fix_command,
            )
            if fix_command:
                self._logger.info("lint_autofix", command=fix_command)
                await self._run(fix_command)
                result = await self._run(command)
                if result.ok:
                    return _CommandOutcome(True)

        raw_output = f"{result.stdout}\n{result.stderr}"
        baseline = self.lint_baseline
        if baseline is not None and baseline.error_count > 0 and not result.timed_out:
            post_count = count_lint_errors(raw_output)
            if post_count <= baseline.error_count:
                self._logger.info(
                    "lint_within_baseline",
                    errors=post_count,
                    baseline=baseline.error_count,
                )
                return _CommandOutcome(True)
            new_lines = baseline.new_error_lines(raw_output)
            delta = "\n".join(new_lines) if new_lines else filter_lint_error_lines(raw_output)
            output = (
                f"=== lint ===\n{post_count} errors (baseline {baseline.error_count}); "
                f"new errors:\n{delta or '(no parseable error lines)'}"
            )
        else:
            filtered = filter_lint_error_lines(raw_output)
            if filtered:
                output = f"=== lint ===\n{filtered}"
            else:
                output = combine_output("lint", result.stdout, result.stderr)
        return _CommandOutcome(
            False,
            summary=f"lint: {truncate_output(output, SUMMARY_FAILURE_CHARS)}",
            output=output,
        )

    async def _review(
        self,
        task: Task,
        diff: str,
        session_factory: SessionFactory,
        token: CancellationToken,
        result: VerificationResult,
        deadline: float | None,
        timeout_sec: float,
    ) -> None:
        session = None
        try:
            session = await session_factory("verify")
            reply = await ask_with_deadline(
                session,
                build_review_prompt(task.text, diff),
                token,
                deadline=deadline,
                timeout_sec=timeout_sec,
            )
            result.tokens_used += reply.tokens_used
            verdict = parse_review_response(reply.text, strict=self.config.strict_review)
            result.l2_ai = verdict.passed
            result.l2_reason = verdict.reason
            self._logger.info("review_verdict", passed=verdict.passed, tier=verdict.tier)
        except (AgentError, OSError) as exc:
            result.l2_ai = False
            result.l2_reason = f"Verifier session error: {exc}"
        finally:
            if session is not None:
                try:
                    await session.close()
                except (AgentError, OSError) as exc:
                    self._logger.warning("review_session_close_failed", error=str(exc))

    async def verify(
        self,
        agent_result: AgentResult,
        task: Task,
        *,
        diff: str = "",
        changed_files: list[str] | None = None,
        session_factory: SessionFactory | None = None,
        token: CancellationToken | None = None,
        deadline: float | None = None,
        timeout_sec: float = 0.0,
    ) -> VerificationResult:
        result = VerificationResult()
        result.l0_agent_done = agent_result.status == "done"
        if not result.l0_agent_done:
            result.summary = f"Agent reported status: {agent_result.status}"
            return result

        files = list(changed_files or [])
        failures: list[str] = []
        outputs: list[str] = []
        for label, command in self.commands.items():
            if label == "lint":
                outcome = await self._check_lint(command, files)
            else:
                outcome = await self._check_command(label, command)
            setattr(result, f"l1_{label}", outcome.passed)
            if not outcome.passed:
                failures.append(outcome.summary)
                outputs.append(outcome.output)

        scope_failure = check_scope(task.text, files, self.config.scope_guard)
        if scope_failure:
            failures.append(f"scope: {scope_failure}")
            outputs.append(f"=== scope ===\n{scope_failure}")

        if failures:
            result.summary = f"Command failures: {'; '.join(failures)}"
            result.command_output = truncate_output("\n\n".join(outputs), COMMAND_OUTPUT_CHARS)
            self._logger.info("verification_failed", level="L1", task_key=task.key)
            return result

        if self.config.verify_ai and diff.strip() and session_factory is not None:
            await self._review(
                task,
                diff,
                session_factory,
                token or CancellationToken(),
                result,
                deadline,
                timeout_sec,
            )

        result.passed = result.l2_ai is not False
        if result.passed:
            result.summary = "All checks passed"
        else:
            result.summary = f"L2: {result.l2_reason}"
        self._logger.info(
            "verification_finished",
            task_key=task.key,
            passed=result.passed,
            l2=result.l2_ai,
        )
        return result
