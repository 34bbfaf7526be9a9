"""Run loop: pick a task, run a fresh agent attempt, verify, record, repeat."""

from __future__ import annotations

import asyncio
import re
import time
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

import structlog

from taskpilot.commands import CommandRunner, run_command
from taskpilot.config import RunConfig
from taskpilot.errors import (
    AgentError,
    AttemptTimeout,
    BudgetExceeded,
    GitError,
    PromptBudgetExceeded,
    RunAborted,
    TaskpilotError,
    VerificationFailure,
)
from taskpilot.lint import capture_lint_baseline
from taskpilot.memory import MemoryStore
from taskpilot.models import (
    AgentResult,
    Attempt,
    AttemptStatus,
    DetectedCommands,
    Progress,
    RunResult,
    StopReason,
    Task,
    TaskFile,
    VerificationResult,
)
from taskpilot.preflight import Preflight
from taskpilot.progress import ProgressSink, SafeProgress
from taskpilot.prompt import (
    build_prompt_within_budget,
    build_result_recovery_prompt,
    build_retry_context,
    parse_result,
)
from taskpilot.session import (
    AgentReply,
    AgentSession,
    CancellationToken,
    SessionFactory,
    ask_with_deadline,
)
from taskpilot.state.git import GitWorkspace
from taskpilot.state.lock import RunLock
from taskpilot.state.tasks import (
    auto_complete_ancestors,
    find_runnable_pending,
    insert_subtasks,
    mark_task_checked,
    parse_task_file,
)
from taskpilot.verifier import Verifier, detect_commands

MAX_COMMIT_SUBJECT = 72
FAILED_STATUSES: frozenset[str] = frozenset({"failed", "error", "timeout", "blocked"})
WHITESPACE_PATTERN = re.compile(r"\s+")
DIGITS_PATTERN = re.compile(r"\d+")


def commit_message(prefix: str, task_text: str) -> str:
    first_line = task_text.strip().splitlines()[0] if task_text.strip() else ""
    subject = f"{prefix}{first_line}".strip()
    if len(subject) > MAX_COMMIT_SUBJECT:
        subject = f"{subject[: MAX_COMMIT_SUBJECT - 3].rstrip()}..."
    return subject


def failure_signature(attempt: Attempt) -> str:
    """Normalized failure text; numbers are masked so timings and counts don't differ."""
    raw = ""
    if attempt.verification is not None and attempt.verification.summary:
        raw = attempt.verification.summary
    elif attempt.error:
        raw = attempt.error
    raw = DIGITS_PATTERN.sub("#", raw.lower())
    return f"{attempt.status}:{WHITESPACE_PATTERN.sub(' ', raw).strip()}"


@dataclass(slots=True)
class RunState:
    """Counters owned by one run of the loop."""

    started: float = field(default_factory=time.monotonic)
    iterations: int = 0
    tokens: int = 0
    commits: int = 0
    auto_completed: int = 0
    initial_pending: int = 0
    inserted: int = 0
    retries: dict[str, int] = field(default_factory=dict)
    identical_failures: dict[str, tuple[str, int]] = field(default_factory=dict)
    skipped: set[str] = field(default_factory=set)
    passed_keys: set[str] = field(default_factory=set)
    preflight_done: set[str] = field(default_factory=set)
    plan_files: dict[str, Path] = field(default_factory=dict)
    last_attempts: dict[str, Attempt] = field(default_factory=dict)
    attempts: list[Attempt] = field(default_factory=list)
    preflight_records: list[Any] = field(default_factory=list)
    content_hash: str = ""
    stop_reason: StopReason | None = None

    @property
    def elapsed(self) -> float:
        return time.monotonic() - self.started


@dataclass(slots=True)
class _AttemptOutcome:
    status: AttemptStatus
    tokens: int = 0
    verification: VerificationResult | None = None
    error: str | None = None
    commit_hash: str | None = None
    exhausts_retries: bool = False
    aborted: bool = False


class Controller:
    def __init__(
        self,
        config: RunConfig,
        session_factory: SessionFactory,
        *,
        progress: ProgressSink | None = None,
        abort: CancellationToken | None = None,
        memory: MemoryStore | None = None,
        runner: CommandRunner = run_command,
        git: GitWorkspace | None = None,
        lock: RunLock | None = None,
        commands: DetectedCommands | None = None,
        logger: Any | None = None,
    ) -> None:
        self.config = config
        self.session_factory = session_factory
        self.abort = abort if abort is not None else CancellationToken()
        self.memory = memory
        self.runner = runner
        self.project_dir = config.project_path
        self.task_path = config.task_path
        self.git = git if git is not None else GitWorkspace(
            self.project_dir, timeout=config.git.command_timeout_sec
        )
        lock_path = Path(config.run.lock_path).expanduser() if config.run.lock_path else None
        self.lock = lock if lock is not None else RunLock(lock_path, label=str(self.task_path))
        self.commands = commands
        self._logger = logger if logger is not None else structlog.get_logger(__name__)
        self.progress = SafeProgress(progress, logger=self._logger)
        self.verifier: Verifier | None = None

    # -- helpers -------------------------------------------------------------------------

    def _relative(self, path: Path) -> str | None:
        repo_root = self.git.repo_root
        resolved = path.resolve()
        if not resolved.is_relative_to(repo_root):
            return None
        return resolved.relative_to(repo_root).as_posix()

    def _ensure_clean_worktree(self) -> None:
        if self.config.git.allow_dirty or not self.git.git_enabled:
            return
        ignore = [
            item
            for item in (self._relative(self.task_path), self._relative(self.config.plan_path))
            if item
        ]
        dirty = self.git.dirty_paths(ignore)
        if dirty:
            preview = ", ".join(dirty[:10])
            raise GitError(
                f"Working tree has uncommitted changes ({preview}). "
                "Commit or stash them, or set git.allow_dirty."
            )

    def _snapshot(
        self,
        state: RunState,
        task: Task | None = None,
        attempt: int | None = None,
    ) -> Progress:
        completed = len(state.passed_keys) + state.auto_completed
        finished = completed + len(state.skipped)
        total = state.initial_pending + state.inserted
        estimate: float | None = None
        if finished:
            estimate = state.elapsed / finished * max(0, total - finished)
        return Progress(
            current_index=finished + 1,
            total_pending=total,
            completed_so_far=completed,
            skipped_so_far=len(state.skipped),
            iterations_used=state.iterations,
            elapsed_sec=round(state.elapsed, 3),
            estimated_remaining_sec=estimate,
            current_task=task.text if task is not None else None,
            current_attempt=attempt,
        )

    def _check_budgets(self, state: RunState, task_file: TaskFile) -> None:
        """Raise ``BudgetExceeded`` for the first run-level ceiling that has been hit."""
        limits = self.config.limits
        if state.iterations >= limits.max_iterations:
            raise BudgetExceeded(
                "max_iterations", f"{state.iterations} iterations (limit {limits.max_iterations})"
            )
        if state.elapsed >= limits.total_timeout_sec:
            raise BudgetExceeded(
                "total_timeout",
                f"{state.elapsed:.1f}s elapsed (limit {limits.total_timeout_sec:g}s)",
            )
        if state.tokens >= self.config.token_budget:
            raise BudgetExceeded(
                "token_budget", f"{state.tokens} tokens (limit {limits.max_total_tokens})"
            )
        if task_file.total_count > self.config.decompose.max_total_tasks:
            raise BudgetExceeded(
                "max_tasks_exceeded",
                f"{task_file.total_count} tasks (limit {self.config.decompose.max_total_tasks})",
            )

    def _agent_event(self, task: Task, event: dict[str, Any]) -> None:
        kind = event.get("event")
        if kind == "tool_loop":
            self.progress.emit("on_tool_loop", task.text, event)
        elif kind == "compaction":
            self.progress.emit("on_compaction", task.text, event)

    async def _heartbeat(self) -> None:
        interval = max(0.05, self.config.limits.heartbeat_sec)
        while True:
            await asyncio.sleep(interval)
            self.lock.touch()
            self.progress.emit("on_heartbeat")

    async def _ask(
        self,
        session: AgentSession,
        prompt: str,
        token: CancellationToken,
        deadline: float,
    ) -> AgentReply:
        return await ask_with_deadline(
            session,
            prompt,
            token,
            deadline=deadline,
            timeout_sec=self.config.limits.task_timeout_sec,
        )

    async def _close_session(self, session: AgentSession | None) -> None:
        if session is None:
            return
        try:
            await session.close()
        except (AgentError, OSError) as exc:
            self._logger.warning("session_close_failed", error=str(exc))

    def _rollback(self, untracked_before: set[str]) -> None:
        if not self.git.git_enabled:
            return
        # The task file carries earlier checkbox flips that may not be committed.
        saved = self.task_path.read_text(encoding="utf-8") if self.task_path.exists() else None
        try:
            if self.git.is_dirty():
                self.git.restore_tracked()
            if self.config.policy.aggressive_clean_on_fail:
                self.git.clean_untracked()
                removed: list[str] = ["(git clean -fd)"]
            else:
                created = sorted(set(self.git.untracked_files()) - untracked_before)
                task_rel = self._relative(self.task_path)
                removed = self.git.remove_paths(item for item in created if item != task_rel)
        except GitError as exc:
            self._logger.warning("rollback_failed", error=str(exc))
            return
        finally:
            if saved is not None and (
                not self.task_path.exists()
                or self.task_path.read_text(encoding="utf-8") != saved
            ):
                self.task_path.write_text(saved, encoding="utf-8")
        self._logger.info("rollback", removed=removed)

    def _commit(self, task: Task) -> str | None:
        if not self.config.git.auto_commit or not self.git.git_enabled:
            return None
        try:
            return self.git.commit_all(commit_message(self.config.git.commit_prefix, task.text))
        except GitError as exc:
            self._logger.warning("commit_failed", task_key=task.key, error=str(exc))
            return None

    # -- per task ------------------------------------------------------------------------

    async def _run_preflight(self, task: Task, state: RunState) -> bool:
        """Returns True when discovery found the task already satisfied."""
        state.preflight_done.add(task.key)
        self.progress.emit("on_stage", f"Preflight: {task.text}")
        preflight = Preflight(self.config, self.session_factory, logger=self._logger)
        token = self.abort.child()
        try:
            outcome = await preflight.run(task, self.task_path, token)
        finally:
            self.abort.release(token)
        state.tokens += outcome.tokens_used
        state.preflight_records.extend(outcome.records)
        if outcome.plan_file is not None:
            state.plan_files[task.key] = outcome.plan_file
        if not outcome.already_complete:
            return False

        mark_task_checked(self.task_path, task.key)
        ancestors = auto_complete_ancestors(self.task_path, task.key)
        state.auto_completed += 1 + len(ancestors)
        self._logger.info("preflight_already_complete", task_key=task.key)
        return True

    async def _attempt(
        self, task: Task, task_file: TaskFile, state: RunState
    ) -> _AttemptOutcome:
        policy = self.config.policy
        outcome = _AttemptOutcome(status="error")
        untracked_before: set[str] = set()
        if self.git.git_enabled:
            untracked_before = set(self.git.untracked_files())
        deadline = time.monotonic() + self.config.limits.task_timeout_sec
        previous = state.last_attempts.get(task.key)
        retry_context = build_retry_context(previous) if previous is not None else None
        token = self.abort.child()
        session: AgentSession | None = None
        try:
            prompt = await build_prompt_within_budget(
                task,
                task_file,
                self.config,
                retry_context=retry_context,
                memory=self.memory,
                plan_file=state.plan_files.get(task.key),
            )
            session = await self.session_factory("attempt")
            session.set_event_hook(lambda event: self._agent_event(task, event))
            reply = await self._ask(session, prompt, token, deadline)
            outcome.tokens += reply.tokens_used
            agent_result = parse_result(reply.text)
            if not agent_result.parsed:
                self._logger.info("result_recovery", task_key=task.key, reason=agent_result.reason)
                recovery_prompt = build_result_recovery_prompt(self.config.decompose.enabled)
                reply = await self._ask(session, recovery_prompt, token, deadline)
                outcome.tokens += reply.tokens_used
                recovered = parse_result(reply.text)
                if recovered.parsed:
                    agent_result = recovered
            token_limit = self.config.limits.max_prompt_tokens_per_attempt
            if token_limit and outcome.tokens > token_limit:
                outcome.status = "failed"
                outcome.error = (
                    f"attempt-token-budget-exceeded: used={outcome.tokens} max={token_limit}"
                )
                outcome.exhausts_retries = True
            else:
                await self._apply_result(task, agent_result, state, outcome, token, deadline)
        except PromptBudgetExceeded as exc:
            outcome.status = "failed"
            outcome.error = str(exc)
            outcome.exhausts_retries = True
        except VerificationFailure as exc:
            outcome.status = "failed"
            outcome.verification = exc.result
        except AttemptTimeout as exc:
            outcome.status = "timeout"
            outcome.error = str(exc)
        except RunAborted as exc:
            outcome.status = "error"
            outcome.error = f"aborted: {exc}"
            outcome.aborted = True
        except AgentError as exc:
            outcome.status = "error"
            outcome.error = str(exc)
            outcome.exhausts_retries = not exc.retriable
        except Exception as exc:  # noqa: BLE001
            self._logger.error("attempt_crashed", task_key=task.key, exc_info=True)
            outcome.status = "error"
            outcome.error = f"{type(exc).__name__}: {exc}"
        finally:
            self.abort.release(token)
            await self._close_session(session)

        if self.abort.cancelled and outcome.status in {"error", "timeout"}:
            outcome.aborted = True
        if (
            outcome.status in FAILED_STATUSES
            and policy.rollback_on_fail
            and not outcome.aborted
        ):
            self._rollback(untracked_before)
        return outcome

    async def _apply_result(
        self,
        task: Task,
        agent_result: AgentResult,
        state: RunState,
        outcome: _AttemptOutcome,
        token: CancellationToken,
        deadline: float,
    ) -> None:
        decompose = self.config.decompose
        if not agent_result.parsed:
            outcome.status = "failed"
            outcome.error = f"structured-result-parse-failure: {agent_result.reason}"
            return

        if agent_result.status == "decompose":
            if decompose.enabled and task.depth < decompose.max_depth and agent_result.subtasks:
                inserted = insert_subtasks(self.task_path, task.key, agent_result.subtasks)
                state.inserted += len(inserted)
                outcome.status = "decomposed"
                return
            outcome.status = "failed"
            if not decompose.enabled:
                outcome.error = "Decomposition requested but disabled"
            elif task.depth >= decompose.max_depth:
                outcome.error = f"Decomposition depth limit reached ({decompose.max_depth})"
            else:
                outcome.error = "Decomposition requested without subtasks"
            return

        if agent_result.status in {"blocked", "failed"}:
            outcome.status = agent_result.status
            outcome.error = agent_result.reason or f"Agent reported {agent_result.status}"
            return

        changed: list[str] = []
        diff = ""
        if self.git.git_enabled:
            changed = self.git.changed_files()
            diff = self.git.diff()
        if self.verifier is None:
            raise TaskpilotError("Verifier used before the run was prepared.")
        verification = await self.verifier.verify(
            agent_result,
            task,
            diff=diff,
            changed_files=changed,
            session_factory=self.session_factory,
            token=token,
            deadline=deadline,
            timeout_sec=self.config.limits.task_timeout_sec,
        )
        outcome.tokens += verification.tokens_used
        outcome.verification = verification
        self.progress.emit("on_verification", task.text, verification)
        if not verification.passed:
            raise VerificationFailure(verification)

        mark_task_checked(self.task_path, task.key)
        state.passed_keys.add(task.key)
        ancestors = auto_complete_ancestors(self.task_path, task.key)
        state.auto_completed += len(ancestors)
        outcome.commit_hash = self._commit(task)
        if outcome.commit_hash:
            state.commits += 1
        outcome.status = "passed"

    def _skip(self, task: Task, reason: str, state: RunState) -> None:
        state.skipped.add(task.key)
        state.attempts.append(
            Attempt(
                task_key=task.key,
                task_text=task.text,
                attempt=state.retries.get(task.key, 0) + 1,
                duration_sec=0.0,
                tokens_used=0,
                status="skipped",
                error=reason,
            )
        )
        self._logger.info("task_skipped", task_key=task.key, reason=reason)
        self.progress.emit("on_task_skip", task, reason, self._snapshot(state, task))

    def _give_up(self, task: Task, attempt: Attempt, state: RunState) -> bool:
        """Apply retry policy after a failed attempt. Returns True when the run must stop."""
        policy = self.config.policy
        limits = self.config.limits
        if attempt.status == "blocked":
            if policy.skip_on_blocked:
                self._skip(task, f"blocked: {attempt.error}", state)
                return False
            return True

        signature = failure_signature(attempt)
        previous_signature, count = state.identical_failures.get(task.key, ("", 0))
        count = count + 1 if signature == previous_signature else 1
        state.identical_failures[task.key] = (signature, count)

        retries = state.retries.get(task.key, 0)
        if count >= limits.max_identical_failures:
            reason = f"{count} identical failures"
        elif retries >= limits.max_retries_per_task:
            reason = f"retries exhausted ({retries})"
        else:
            return False
        if policy.skip_on_fail:
            self._skip(task, reason, state)
            return False
        self._logger.warning("task_fatal", task_key=task.key, reason=reason)
        return True

    # -- run -----------------------------------------------------------------------------

    def _finalize(self, state: RunState, initial: TaskFile) -> RunResult:
        final = parse_task_file(self.task_path)
        failed = 0
        for key, attempt in state.last_attempts.items():
            if attempt.status not in FAILED_STATUSES or key in state.skipped:
                continue
            task = final.get(key)
            if task is not None and task.checked:
                continue
            failed += 1
        stop_reason = state.stop_reason
        if stop_reason is None:
            stop_reason = "all_done"
            if failed and not self.config.policy.skip_on_fail:
                stop_reason = "fatal_error"
        return RunResult(
            total_tasks=final.total_count,
            pre_completed=len(initial.completed),
            completed=len(final.completed) - len(initial.completed),
            auto_completed=state.auto_completed,
            skipped=len(state.skipped),
            failed=failed,
            remaining=len(final.pending),
            attempts=list(state.attempts),
            preflight_records=list(state.preflight_records),
            duration_sec=round(state.elapsed, 3),
            total_tokens=state.tokens,
            total_commits=state.commits,
            completed_all=not final.pending,
            stop_reason=stop_reason,
        )

    async def _prepare(self) -> None:
        self._ensure_clean_worktree()
        if self.config.git.branch and self.git.git_enabled:
            base = self.git.current_branch()
            branch = f"taskpilot/{datetime.now(UTC).strftime('%Y%m%d-%H%M%S')}"
            self.git.create_branch(branch)
            self.progress.emit("on_stage", f"Created branch {branch} from {base}")
        if self.commands is None:
            self.commands = detect_commands(self.project_dir, self.config.verification)
        self._logger.info(
            "commands_detected",
            build=self.commands.build,
            test=self.commands.test,
            lint=self.commands.lint,
        )
        verification = self.config.verification
        baseline = await capture_lint_baseline(
            self.commands.lint,
            self.project_dir,
            timeout=verification.command_timeout_sec,
            runner=self.runner,
        )
        self.verifier = Verifier(
            self.project_dir,
            self.commands,
            verification,
            lint_baseline=baseline,
            runner=self.runner,
            logger=self._logger,
        )

    async def _loop(self, state: RunState) -> None:
        limits = self.config.limits
        while True:
            task_file = parse_task_file(self.task_path)
            if state.content_hash and task_file.content_hash != state.content_hash:
                self._logger.info("task_file_changed", path=str(self.task_path))
            state.content_hash = task_file.content_hash

            runnable = find_runnable_pending(task_file, state.skipped)
            if not runnable:
                return
            task = runnable[0]

            if self.abort.cancelled:
                state.stop_reason = "abort"
                return
            try:
                self._check_budgets(state, task_file)
            except BudgetExceeded as exc:
                self._logger.info("budget_exceeded", stop_reason=exc.stop_reason, detail=str(exc))
                state.stop_reason = exc.stop_reason
                return

            number = state.retries.get(task.key, 0) + 1
            if (
                self.config.preflight.enabled
                and number == 1
                and task.key not in state.preflight_done
            ):
                try:
                    already_done = await self._run_preflight(task, state)
                except RunAborted:
                    state.stop_reason = "abort"
                    return
                if already_done:
                    state.content_hash = parse_task_file(self.task_path).content_hash
                    continue

            state.iterations += 1
            self._logger.info("attempt_started", task_key=task.key, attempt=number)
            self.progress.emit("on_task_start", task, number, self._snapshot(state, task, number))
            started = time.monotonic()
            outcome = await self._attempt(task, task_file, state)
            state.tokens += outcome.tokens

            attempt = Attempt(
                task_key=task.key,
                task_text=task.text,
                attempt=number,
                duration_sec=round(time.monotonic() - started, 3),
                tokens_used=outcome.tokens,
                status=outcome.status,
                verification=outcome.verification,
                error=outcome.error,
                commit_hash=outcome.commit_hash,
            )
            state.attempts.append(attempt)
            state.last_attempts[task.key] = attempt
            if outcome.status == "blocked" or outcome.exhausts_retries:
                state.retries[task.key] = limits.max_retries_per_task
            else:
                state.retries[task.key] = number
            self._logger.info(
                "attempt_finished",
                task_key=task.key,
                attempt=number,
                status=attempt.status,
                tokens=attempt.tokens_used,
                error=attempt.error,
            )
            self.progress.emit("on_task_end", task, attempt, self._snapshot(state, task, number))
            state.content_hash = parse_task_file(self.task_path).content_hash

            if outcome.aborted:
                state.stop_reason = "abort"
                return
            if attempt.status in {"passed", "decomposed"}:
                state.identical_failures.pop(task.key, None)
                continue
            if self._give_up(task, attempt, state):
                state.stop_reason = "fatal_error"
                return

    async def run(self) -> RunResult:
        initial = parse_task_file(self.task_path)
        state = RunState(initial_pending=len(initial.pending))

        if self.config.run.dry_run:
            self.progress.emit("on_stage", "Dry run: no agent sessions started")
            result = self._finalize(state, initial)
            self.progress.emit("on_run_complete", result)
            return result

        self.lock.acquire()
        heartbeat: asyncio.Task[None] | None = None
        try:
            self._logger.info(
                "run_started",
                task_file=str(self.task_path),
                pending=len(initial.pending),
                total=initial.total_count,
            )
            await self._prepare()
            heartbeat = asyncio.create_task(self._heartbeat())
            await self._loop(state)
            result = self._finalize(state, initial)
        finally:
            if heartbeat is not None:
                heartbeat.cancel()
                await asyncio.gather(heartbeat, return_exceptions=True)
            self.lock.release()

        self._logger.info(
            "run_stopped",
            stop_reason=result.stop_reason,
            completed=result.completed,
            skipped=result.skipped,
            failed=result.failed,
            tokens=result.total_tokens,
        )
        self.progress.emit("on_run_complete", result)
        return result


async def run_tasks(
    config: RunConfig,
    session_factory: SessionFactory,
    **options: Any,
) -> RunResult:
    """Run every pending task in ``config.task_path`` until a stop condition fires."""
    return await Controller(config, session_factory, **options).run()

