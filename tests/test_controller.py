import asyncio
import dataclasses
import json
import subprocess
import time
from collections.abc import Callable
from pathlib import Path

import pytest

from taskpilot.commands import CommandResult
from taskpilot.config import RunConfig
from taskpilot.controller import Controller, commit_message, failure_signature, run_tasks
from taskpilot.errors import AgentError, GitError, LockHeld
from taskpilot.models import Attempt, DetectedCommands, Progress, RunResult, Task
from taskpilot.progress import ProgressSink
from taskpilot.session import AgentReply, AgentSession, CancellationToken, SessionPurpose
from taskpilot.state.lock import RunLock
from taskpilot.state.tasks import parse_task_file

DONE = "Work finished.\n<taskpilot-result>\nstatus: done\n</taskpilot-result>"
FAILED = "<taskpilot-result>\nstatus: failed\nreason: tests are red\n</taskpilot-result>"


def _result(status: str, extra: str = "") -> str:
    return f"<taskpilot-result>\nstatus: {status}\n{extra}</taskpilot-result>"


class FakeSession(AgentSession):
    def __init__(
        self,
        reply: Callable[[str], str],
        *,
        delay: float = 0.0,
        error: Exception | None = None,
        usage: tuple[int, int] = (10, 5),
    ) -> None:
        self.reply = reply
        self.delay = delay
        self.error = error
        self.usage = usage
        self.prompts: list[str] = []
        self.cancelled = False
        self.closed = False

    async def ask(self, prompt: str, token: CancellationToken) -> AgentReply:
        _ = token
        self.prompts.append(prompt)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        prompt_tokens, completion_tokens = self.usage
        return AgentReply(
            self.reply(prompt), prompt_tokens=prompt_tokens, completion_tokens=completion_tokens
        )

    async def cancel(self) -> None:
        self.cancelled = True

    async def close(self) -> None:
        self.closed = True


class FakeFactory:
    def __init__(
        self,
        reply: Callable[[str], str] = lambda prompt: DONE,
        *,
        delay: float = 0.0,
        error: Exception | None = None,
        usage: tuple[int, int] = (10, 5),
        delays: dict[SessionPurpose, float] | None = None,
    ) -> None:
        self.reply = reply
        self.delay = delay
        self.error = error
        self.usage = usage
        self.delays = delays or {}
        self.sessions: list[FakeSession] = []
        self.purposes: list[SessionPurpose] = []

    async def __call__(self, purpose: SessionPurpose) -> AgentSession:
        session = FakeSession(
            self.reply,
            delay=self.delays.get(purpose, self.delay),
            error=self.error,
            usage=self.usage,
        )
        self.sessions.append(session)
        self.purposes.append(purpose)
        return session


class RecordingSink(ProgressSink):
    def __init__(self) -> None:
        self.events: list[str] = []
        self.result: RunResult | None = None

    def on_task_start(self, task: Task, attempt: int, progress: Progress) -> None:
        _ = progress
        self.events.append(f"start:{task.text}:{attempt}")

    def on_task_end(self, task: Task, attempt: Attempt, progress: Progress) -> None:
        _ = progress
        self.events.append(f"end:{task.text}:{attempt.status}")

    def on_task_skip(self, task: Task, reason: str, progress: Progress) -> None:
        _ = reason, progress
        self.events.append(f"skip:{task.text}")

    def on_run_complete(self, result: RunResult) -> None:
        self.result = result

    def on_heartbeat(self) -> None:
        self.events.append("heartbeat")


def _init_git_repo(repo_path: Path) -> None:
    subprocess.run(["git", "init"], cwd=repo_path, check=True, text=True, capture_output=True)
    subprocess.run(
        ["git", "config", "user.email", "test@example.com"],
        cwd=repo_path,
        check=True,
        text=True,
        capture_output=True,
    )
    subprocess.run(
        ["git", "config", "user.name", "Test User"],
        cwd=repo_path,
        check=True,
        text=True,
        capture_output=True,
    )
    subprocess.run(["git", "add", "-A"], cwd=repo_path, check=True, text=True, capture_output=True)
    subprocess.run(
        ["git", "commit", "-m", "seed"],
        cwd=repo_path,
        check=True,
        text=True,
        capture_output=True,
    )


def _project(tmp_path: Path, content: str) -> Path:
    project = tmp_path / "project"
    project.mkdir()
    (project / "TASKS.md").write_text(content, encoding="utf-8")
    return project


def _config(project: Path, tmp_path: Path, **overrides: dict) -> RunConfig:
    base = RunConfig.default()
    sections = {
        "run": dataclasses.replace(
            base.run,
            task_file=str(project / "TASKS.md"),
            project_dir=str(project),
            lock_path=str(tmp_path / "state" / "taskpilot.lock"),
        ),
        "verification": dataclasses.replace(base.verification, verify_ai=False),
    }
    for name, values in overrides.items():
        sections[name] = dataclasses.replace(sections.get(name, getattr(base, name)), **values)
    return dataclasses.replace(base, **sections)


def _run(config: RunConfig, factory: FakeFactory, **options: object) -> RunResult:
    options.setdefault("commands", DetectedCommands())
    return asyncio.run(run_tasks(config, factory, **options))


THREE_TASKS = "# Work\n- [ ] Task A\n- [ ] Task B\n- [ ] Task C\n"


def test_all_tasks_done_uses_one_fresh_session_each(tmp_path: Path) -> None:
    project = _project(tmp_path, THREE_TASKS)
    factory = FakeFactory()

    result = _run(_config(project, tmp_path), factory)

    assert result.completed == 3
    assert result.completed_all is True
    assert result.stop_reason == "all_done"
    assert result.remaining == 0
    assert len(factory.sessions) == 3
    assert factory.purposes == ["attempt", "attempt", "attempt"]
    assert all(session.closed for session in factory.sessions)
    assert result.total_tokens == 45
    assert "- [x] Task C" in (project / "TASKS.md").read_text(encoding="utf-8")


def test_task_failing_once_then_passing_records_two_attempts(tmp_path: Path) -> None:
    project = _project(tmp_path, "- [ ] Flaky task\n")
    calls = {"count": 0}

    def reply(prompt: str) -> str:
        _ = prompt
        calls["count"] += 1
        return FAILED if calls["count"] == 1 else DONE

    factory = FakeFactory(reply)
    result = _run(_config(project, tmp_path), factory)

    key = result.attempts[0].task_key
    assert [item.status for item in result.attempts_for(key)] == ["failed", "passed"]
    assert result.failed == 0
    assert result.completed == 1
    # The second prompt carries the first attempt's outcome.
    assert "Previous attempt #1 result: failed" in factory.sessions[1].prompts[0]


def test_retries_exhausted_with_skip_on_fail_skips_task(tmp_path: Path) -> None:
    project = _project(tmp_path, "- [ ] Never works\n")
    factory = FakeFactory(lambda prompt: FAILED)
    config = _config(
        project,
        tmp_path,
        limits={"max_retries_per_task": 2},
        policy={"skip_on_fail": True},
    )

    result = _run(config, factory)

    assert result.skipped == 1
    assert result.completed == 0
    assert result.failed == 0
    assert [item.status for item in result.attempts] == ["failed", "failed", "skipped"]
    skipped = result.attempts[-1]
    assert (skipped.attempt, skipped.tokens_used, skipped.duration_sec) == (3, 0, 0.0)
    assert skipped.error == "retries exhausted (2)"
    assert result.completed_all is False
    assert result.stop_reason == "all_done"


def test_identical_failures_trigger_dedup_guard(tmp_path: Path) -> None:
    project = _project(tmp_path, "- [ ] Same error\n")
    factory = FakeFactory(lambda prompt: FAILED)
    config = _config(
        project,
        tmp_path,
        limits={"max_retries_per_task": 10, "max_identical_failures": 2},
        policy={"skip_on_fail": True},
    )

    result = _run(config, factory)

    assert [item.status for item in result.attempts] == ["failed", "failed", "skipped"]
    assert result.attempts[-1].error == "2 identical failures"
    assert result.skipped == 1


def test_abort_after_first_attempt_stops_run(tmp_path: Path) -> None:
    project = _project(tmp_path, THREE_TASKS)
    abort = CancellationToken()

    class AbortingSink(ProgressSink):
        def on_task_end(self, task: Task, attempt: Attempt, progress: Progress) -> None:
            _ = task, attempt, progress
            abort.cancel("user")

    factory = FakeFactory()
    result = _run(_config(project, tmp_path), factory, abort=abort, progress=AbortingSink())

    assert result.stop_reason == "abort"
    assert result.completed == 1
    assert len(factory.sessions) == 1


def test_abort_during_attempt_cancels_in_flight_call(tmp_path: Path) -> None:
    project = _project(tmp_path, THREE_TASKS)
    factory = FakeFactory(delay=30.0)
    config = _config(project, tmp_path)

    async def scenario() -> tuple[RunResult, float]:
        abort = CancellationToken()
        controller = Controller(config, factory, abort=abort, commands=DetectedCommands())
        asyncio.get_running_loop().call_later(0.1, abort.cancel, "user")
        started = time.monotonic()
        result = await controller.run()
        return result, time.monotonic() - started

    result, elapsed = asyncio.run(scenario())

    assert result.stop_reason == "abort"
    assert elapsed < 5.0
    assert factory.sessions[0].cancelled is True
    assert factory.sessions[0].closed is True
    assert result.attempts[0].status == "error"
    assert "aborted" in (result.attempts[0].error or "")


def test_max_iterations_caps_attempts(tmp_path: Path) -> None:
    project = _project(tmp_path, THREE_TASKS)
    config = _config(project, tmp_path, limits={"max_iterations": 2})

    result = _run(config, FakeFactory())

    assert result.stop_reason == "max_iterations"
    assert result.completed == 2
    assert result.remaining == 1


def test_zero_total_timeout_stops_before_any_attempt(tmp_path: Path) -> None:
    project = _project(tmp_path, THREE_TASKS)
    factory = FakeFactory()
    config = _config(project, tmp_path, limits={"total_timeout_sec": 0.0})

    result = _run(config, factory)

    assert result.stop_reason == "total_timeout"
    assert factory.sessions == []
    assert result.completed == 0


def test_token_budget_stops_run(tmp_path: Path) -> None:
    project = _project(tmp_path, THREE_TASKS)
    config = _config(project, tmp_path, limits={"max_total_tokens": 5})

    result = _run(config, FakeFactory())

    assert result.stop_reason == "token_budget"
    assert result.completed == 1
    assert result.total_tokens == 15


def test_always_throwing_session_is_fatal_without_skip(tmp_path: Path) -> None:
    project = _project(tmp_path, THREE_TASKS)
    factory = FakeFactory(error=AgentError("backend exploded"))

    result = _run(_config(project, tmp_path), factory)

    assert result.stop_reason == "fatal_error"
    assert any(item.status == "error" for item in result.attempts)
    assert result.failed == 1
    assert {item.task_text for item in result.attempts} == {"Task A"}
    assert all(session.closed for session in factory.sessions)


def test_non_retriable_agent_error_gives_up_immediately(tmp_path: Path) -> None:
    project = _project(tmp_path, "- [ ] Task A\n")
    factory = FakeFactory(error=AgentError("auth failed", retriable=False))

    result = _run(_config(project, tmp_path), factory)

    assert len(result.attempts) == 1
    assert result.stop_reason == "fatal_error"


def test_parent_auto_completes_after_children(tmp_path: Path) -> None:
    project = _project(
        tmp_path,
        "## Build\n- [ ] Parent task\n  - [ ] Child one\n  - [ ] Child two\n",
    )
    factory = FakeFactory()

    result = _run(_config(project, tmp_path), factory)

    assert result.completed_all is True
    assert result.completed == 3
    assert result.auto_completed == 1
    assert len(factory.sessions) == 2
    assert {item.task_text for item in result.attempts} == {"Child one", "Child two"}
    assert parse_task_file(project / "TASKS.md").pending == []


def test_decomposition_inserts_children_and_runs_them_first(tmp_path: Path) -> None:
    project = _project(tmp_path, "- [ ] Big task\n- [ ] Later task\n")

    def reply(prompt: str) -> str:
        if "Big task" in prompt:
            return _result("decompose", "subtasks:\n- Part one\n- Part two\n")
        return DONE

    factory = FakeFactory(reply)
    result = _run(_config(project, tmp_path), factory)

    assert [item.status for item in result.attempts] == [
        "decomposed",
        "passed",
        "passed",
        "passed",
    ]
    assert [item.task_text for item in result.attempts[1:]] == [
        "Part one",
        "Part two",
        "Later task",
    ]
    content = (project / "TASKS.md").read_text(encoding="utf-8")
    assert content == "- [x] Big task\n  - [x] Part one\n  - [x] Part two\n- [x] Later task\n"
    assert result.completed_all is True


def test_decomposition_beyond_max_depth_fails(tmp_path: Path) -> None:
    project = _project(tmp_path, "- [ ] Big task\n")
    factory = FakeFactory(lambda prompt: _result("decompose", "subtasks:\n- Smaller\n"))
    config = _config(
        project,
        tmp_path,
        decompose={"max_depth": 0},
        limits={"max_retries_per_task": 1},
        policy={"skip_on_fail": True},
    )

    result = _run(config, factory)

    assert result.attempts[0].status == "failed"
    assert "depth limit" in (result.attempts[0].error or "")
    assert parse_task_file(project / "TASKS.md").total_count == 1


def test_decomposition_past_task_ceiling_stops_run(tmp_path: Path) -> None:
    project = _project(tmp_path, "- [ ] Big task\n")
    factory = FakeFactory(
        lambda prompt: _result("decompose", "subtasks:\n- One\n- Two\n- Three\n")
    )
    config = _config(project, tmp_path, decompose={"max_total_tasks": 3})

    result = _run(config, factory)

    assert result.stop_reason == "max_tasks_exceeded"
    assert result.total_tasks == 4


def test_blocked_task_is_skipped_by_default(tmp_path: Path) -> None:
    project = _project(tmp_path, "- [ ] Needs credentials\n- [ ] Task B\n")

    def reply(prompt: str) -> str:
        if "Needs credentials" in prompt:
            return _result("blocked", "reason: missing API key\n")
        return DONE

    sink = RecordingSink()
    result = _run(_config(project, tmp_path), FakeFactory(reply), progress=sink)

    assert result.skipped == 1
    assert result.completed == 1
    assert result.attempts[0].status == "blocked"
    assert result.attempts[0].error == "missing API key"
    assert "skip:Needs credentials" in sink.events


def test_blocked_task_stops_run_when_not_skippable(tmp_path: Path) -> None:
    project = _project(tmp_path, "- [ ] Needs credentials\n- [ ] Task B\n")
    factory = FakeFactory(lambda prompt: _result("blocked", "reason: no key\n"))
    config = _config(project, tmp_path, policy={"skip_on_blocked": False})

    result = _run(config, factory)

    assert result.stop_reason == "fatal_error"
    assert len(result.attempts) == 1


def test_missing_result_block_gets_one_recovery_ask(tmp_path: Path) -> None:
    project = _project(tmp_path, "- [ ] Task A\n")

    def reply(prompt: str) -> str:
        if "did not end with a valid structured result" in prompt:
            return DONE
        return "I did the work but forgot the block."

    factory = FakeFactory(reply)
    result = _run(_config(project, tmp_path), factory)

    assert result.completed == 1
    assert len(factory.sessions) == 1
    assert len(factory.sessions[0].prompts) == 2
    assert result.attempts[0].tokens_used == 30


def test_unrecoverable_result_is_parse_failure(tmp_path: Path) -> None:
    project = _project(tmp_path, "- [ ] Task A\n")
    factory = FakeFactory(lambda prompt: "no block here")
    config = _config(
        project,
        tmp_path,
        limits={"max_retries_per_task": 1},
        policy={"skip_on_fail": True},
    )

    result = _run(config, factory)

    assert result.attempts[0].status == "failed"
    assert (result.attempts[0].error or "").startswith("structured-result-parse-failure:")


def test_attempt_timeout_cancels_session(tmp_path: Path) -> None:
    project = _project(tmp_path, "- [ ] Slow task\n")
    factory = FakeFactory(delay=10.0)
    config = _config(
        project,
        tmp_path,
        limits={"task_timeout_sec": 0.1, "max_retries_per_task": 1},
        policy={"skip_on_fail": True},
    )

    started = time.monotonic()
    result = _run(config, factory)

    assert time.monotonic() - started < 5.0
    assert result.attempts[0].status == "timeout"
    assert factory.sessions[0].cancelled is True
    assert result.skipped == 1


def test_failed_verification_feeds_retry_context(tmp_path: Path) -> None:
    project = _project(tmp_path, "- [ ] Fix the tests\n")
    outcomes = iter([1, 0])

    async def runner(command: str, *, timeout: float, cwd: Path) -> CommandResult:
        _ = timeout, cwd
        exit_code = next(outcomes)
        stderr = "FAILED test_thing.py::test_one" if exit_code else ""
        return CommandResult(command=command, exit_code=exit_code, stdout="", stderr=stderr)

    factory = FakeFactory()
    result = _run(
        _config(project, tmp_path),
        factory,
        runner=runner,
        commands=DetectedCommands(test="pytest"),
    )

    first, second = result.attempts
    assert first.status == "failed"
    assert first.verification is not None
    assert first.verification.l1_test is False
    assert second.status == "passed"
    assert "Test command failed" in factory.sessions[1].prompts[0]
    assert "FAILED test_thing.py::test_one" in factory.sessions[1].prompts[0]


def test_heartbeat_fires_during_long_attempt(tmp_path: Path) -> None:
    project = _project(tmp_path, "- [ ] Task A\n")
    sink = RecordingSink()
    config = _config(project, tmp_path, limits={"heartbeat_sec": 0.05})

    _run(config, FakeFactory(delay=0.3), progress=sink)

    assert "heartbeat" in sink.events
    assert sink.result is not None


def test_progress_callbacks_fire_in_order(tmp_path: Path) -> None:
    project = _project(tmp_path, "- [ ] Task A\n- [ ] Task B\n")
    sink = RecordingSink()

    result = _run(_config(project, tmp_path), FakeFactory(), progress=sink)

    assert sink.events == [
        "start:Task A:1",
        "end:Task A:passed",
        "start:Task B:1",
        "end:Task B:passed",
    ]
    assert sink.result is result


def test_broken_progress_sink_does_not_stop_run(tmp_path: Path) -> None:
    project = _project(tmp_path, "- [ ] Task A\n")

    class BrokenSink(ProgressSink):
        def on_task_start(self, task: Task, attempt: int, progress: Progress) -> None:
            raise ValueError("display crashed")

    result = _run(_config(project, tmp_path), FakeFactory(), progress=BrokenSink())

    assert result.completed == 1


def test_dry_run_starts_no_sessions(tmp_path: Path) -> None:
    project = _project(tmp_path, THREE_TASKS)
    factory = FakeFactory()
    config = _config(project, tmp_path, run={"dry_run": True})

    result = _run(config, factory)

    assert factory.sessions == []
    assert result.stop_reason == "all_done"
    assert result.remaining == 3
    assert not (tmp_path / "state" / "taskpilot.lock").exists()


def test_lock_released_after_run_error(tmp_path: Path) -> None:
    project = _project(tmp_path, "- [ ] Task A\n")
    config = _config(project, tmp_path)

    async def broken_runner(command: str, *, timeout: float, cwd: Path) -> CommandResult:
        _ = command, timeout, cwd
        raise RuntimeError("runner unavailable")

    with pytest.raises(RuntimeError, match="runner unavailable"):
        _run(config, FakeFactory(), runner=broken_runner, commands=DetectedCommands(lint="lint"))

    lock = RunLock(tmp_path / "state" / "taskpilot.lock")
    assert lock.is_held() is False
    lock.acquire()
    lock.release()


def test_live_lock_prevents_second_run(tmp_path: Path) -> None:
    project = _project(tmp_path, "- [ ] Task A\n")
    lock_path = tmp_path / "state" / "taskpilot.lock"
    lock_path.parent.mkdir(parents=True)
    holder = subprocess.Popen(["sleep", "30"])
    factory = FakeFactory()
    try:
        lock_path.write_text(
            json.dumps({"pid": holder.pid, "started_at": "2099-01-01T00:00:00+00:00"}),
            encoding="utf-8",
        )
        with pytest.raises(LockHeld):
            _run(_config(project, tmp_path), factory)
    finally:
        holder.kill()
        holder.wait()

    assert factory.sessions == []
    assert lock_path.exists()


def test_run_commits_passed_task(tmp_path: Path) -> None:
    project = _project(tmp_path, "- [ ] Add hello file\n")
    _init_git_repo(project)

    def reply(prompt: str) -> str:
        _ = prompt
        (project / "hello.txt").write_text("hello\n", encoding="utf-8")
        return DONE

    result = _run(_config(project, tmp_path), FakeFactory(reply))

    assert result.total_commits == 1
    assert result.attempts[0].commit_hash
    subject = subprocess.run(
        ["git", "log", "-1", "--format=%s"],
        cwd=project,
        check=True,
        text=True,
        capture_output=True,
    ).stdout.strip()
    assert subject == "taskpilot: Add hello file"
    status = subprocess.run(
        ["git", "status", "--porcelain"],
        cwd=project,
        check=True,
        text=True,
        capture_output=True,
    ).stdout
    assert status.strip() == ""


def test_rollback_discards_failed_attempt_changes(tmp_path: Path) -> None:
    project = _project(tmp_path, "- [ ] Risky change\n")
    (project / "app.py").write_text("VALUE = 1\n", encoding="utf-8")
    _init_git_repo(project)

    def reply(prompt: str) -> str:
        _ = prompt
        (project / "app.py").write_text("VALUE = 2\n", encoding="utf-8")
        (project / "scratch.py").write_text("junk\n", encoding="utf-8")
        return FAILED

    config = _config(
        project,
        tmp_path,
        limits={"max_retries_per_task": 1},
        policy={"skip_on_fail": True, "rollback_on_fail": True},
    )
    result = _run(config, FakeFactory(reply))

    assert result.skipped == 1
    assert (project / "app.py").read_text(encoding="utf-8") == "VALUE = 1\n"
    assert not (project / "scratch.py").exists()
    assert (project / "TASKS.md").exists()


def test_dirty_worktree_refuses_to_start(tmp_path: Path) -> None:
    project = _project(tmp_path, "- [ ] Task A\n")
    _init_git_repo(project)
    (project / "uncommitted.txt").write_text("wip\n", encoding="utf-8")
    factory = FakeFactory()

    with pytest.raises(GitError, match="uncommitted changes"):
        _run(_config(project, tmp_path), factory)

    assert factory.sessions == []
    assert RunLock(tmp_path / "state" / "taskpilot.lock").is_held() is False


def test_dirty_task_file_is_allowed(tmp_path: Path) -> None:
    project = _project(tmp_path, "- [ ] Task A\n")
    _init_git_repo(project)
    (project / "TASKS.md").write_text("- [ ] Task A\n- [ ] Task B\n", encoding="utf-8")

    result = _run(_config(project, tmp_path, git={"auto_commit": False}), FakeFactory())

    assert result.completed == 2


def test_preflight_marks_already_satisfied_task(tmp_path: Path) -> None:
    project = _project(tmp_path, "- [ ] Already done\n- [ ] Task B\n")

    def reply(prompt: str) -> str:
        if "PRE-FLIGHT DISCOVERY" not in prompt:
            return DONE
        if "Already done" in prompt:
            return json.dumps({"status": "complete", "filename": ""})
        return json.dumps({"status": "incomplete", "filename": ".agents/tasks/plan.md"})

    factory = FakeFactory(reply)
    config = _config(
        project,
        tmp_path,
        preflight={"enabled": True, "requirements_review": False},
    )

    result = _run(config, factory)

    assert result.auto_completed == 1
    assert [item.task_text for item in result.attempts] == ["Task B"]
    assert factory.purposes.count("discovery") == 2
    assert [record.status for record in result.preflight_records] == ["complete", "incomplete"]
    assert (project / ".agents" / "tasks" / "plan.md").is_file()
    assert result.completed_all is True


def test_preflight_abort_stops_run_promptly(tmp_path: Path) -> None:
    project = _project(tmp_path, THREE_TASKS)
    factory = FakeFactory(delays={"discovery": 30.0})
    config = _config(
        project,
        tmp_path,
        preflight={"enabled": True, "discovery_timeout_sec": 60.0},
    )

    async def scenario() -> tuple[RunResult, float]:
        abort = CancellationToken()
        controller = Controller(config, factory, abort=abort, commands=DetectedCommands())
        asyncio.get_running_loop().call_later(0.1, abort.cancel, "user")
        started = time.monotonic()
        result = await controller.run()
        return result, time.monotonic() - started

    result, elapsed = asyncio.run(scenario())

    assert result.stop_reason == "abort"
    assert elapsed < 5.0
    assert factory.purposes == ["discovery"]
    assert factory.sessions[0].cancelled is True
    assert factory.sessions[0].closed is True
    assert result.attempts == []


def test_failed_discovery_tokens_count_toward_run(tmp_path: Path) -> None:
    project = _project(tmp_path, "- [ ] Task A\n")

    def reply(prompt: str) -> str:
        if "PRE-FLIGHT DISCOVERY" in prompt or prompt.startswith("STOP."):
            return "I looked around but will not answer in JSON."
        return DONE

    config = _config(
        project,
        tmp_path,
        preflight={"enabled": True, "requirements_review": False, "max_retries": 0},
    )

    result = _run(config, FakeFactory(reply))

    assert [record.status for record in result.preflight_records] == ["error"]
    assert [record.tokens_used for record in result.preflight_records] == [30]
    assert result.total_tokens == 45
    assert result.completed == 1


def test_silent_reviewer_times_out_attempt(tmp_path: Path) -> None:
    project = _project(tmp_path, "- [ ] Add hello file\n")
    _init_git_repo(project)

    def reply(prompt: str) -> str:
        _ = prompt
        (project / "hello.txt").write_text("hello\n", encoding="utf-8")
        return DONE

    factory = FakeFactory(reply, delays={"verify": 30.0})
    config = _config(
        project,
        tmp_path,
        limits={"task_timeout_sec": 0.5, "max_retries_per_task": 1},
        policy={"skip_on_fail": True},
        verification={"verify_ai": True},
    )

    started = time.monotonic()
    result = _run(config, factory)

    assert time.monotonic() - started < 5.0
    assert factory.purposes == ["attempt", "verify"]
    assert result.attempts[0].status == "timeout"
    assert factory.sessions[1].cancelled is True
    assert factory.sessions[1].closed is True
    assert "- [ ] Add hello file" in (project / "TASKS.md").read_text(encoding="utf-8")


def test_attempt_token_usage_over_limit_exhausts_retries(tmp_path: Path) -> None:
    project = _project(tmp_path, "- [ ] Expensive task\n")
    factory = FakeFactory(usage=(200_000, 0))
    config = _config(
        project,
        tmp_path,
        limits={"max_retries_per_task": 3},
        policy={"skip_on_fail": True},
    )

    result = _run(config, factory)

    assert [item.status for item in result.attempts] == ["failed", "skipped"]
    assert result.attempts[0].error == (
        "attempt-token-budget-exceeded: used=200000 max=128000"
    )
    assert len(factory.sessions) == 1
    assert result.completed == 0
    assert "- [ ] Expensive task" in (project / "TASKS.md").read_text(encoding="utf-8")


def test_branch_option_creates_run_branch(tmp_path: Path) -> None:
    project = _project(tmp_path, "- [ ] Task A\n")
    _init_git_repo(project)

    result = _run(_config(project, tmp_path, git={"branch": True}), FakeFactory())

    branch = subprocess.run(
        ["git", "rev-parse", "--abbrev-ref", "HEAD"],
        cwd=project,
        check=True,
        text=True,
        capture_output=True,
    ).stdout.strip()
    assert result.completed == 1
    assert branch.startswith("taskpilot/")


def test_project_in_repository_subdirectory(tmp_path: Path) -> None:
    repo = tmp_path / "repo"
    project = repo / "app"
    project.mkdir(parents=True)
    (project / "TASKS.md").write_text("- [ ] Risky change\n", encoding="utf-8")
    _init_git_repo(repo)
    (project / "TASKS.md").write_text("- [ ] Risky change\n- [ ] Later\n", encoding="utf-8")

    def reply(prompt: str) -> str:
        _ = prompt
        (project / "scratch.py").write_text("junk\n", encoding="utf-8")
        return FAILED

    config = _config(
        project,
        tmp_path,
        limits={"max_retries_per_task": 1},
        policy={"skip_on_fail": True, "rollback_on_fail": True},
    )
    result = _run(config, FakeFactory(reply))

    assert result.skipped == 2
    assert not (project / "scratch.py").exists()
    assert "- [ ] Later" in (project / "TASKS.md").read_text(encoding="utf-8")


def test_commit_message_is_prefixed_and_capped() -> None:
    assert commit_message("taskpilot: ", "Add login\nmore detail") == "taskpilot: Add login"
    long_message = commit_message("taskpilot: ", "x" * 200)
    assert len(long_message) == 72
    assert long_message.endswith("...")


def test_failure_signature_masks_numbers() -> None:
    first = Attempt("k", "t", 1, 1.0, 0, "failed", error="3 tests failed in 1.2s")
    second = Attempt("k", "t", 2, 1.0, 0, "failed", error="5 tests failed in 0.8s")
    other = Attempt("k", "t", 3, 1.0, 0, "timeout", error="5 tests failed in 0.8s")

    assert failure_signature(first) == failure_signature(second)
    assert failure_signature(first) != failure_signature(other)
