from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Literal

AttemptStatus = Literal["passed", "failed", "decomposed", "blocked", "skipped", "timeout", "error"]
StopReason = Literal[
    "all_done",
    "max_iterations",
    "total_timeout",
    "token_budget",
    "abort",
    "fatal_error",
    "max_tasks_exceeded",
]
AgentStatus = Literal["done", "blocked", "decompose", "failed"]
PreflightStage = Literal["discovery", "requirements-review"]
PreflightStatus = Literal["complete", "incomplete", "ready", "error", "timeout"]

AGENT_STATUSES: frozenset[str] = frozenset({"done", "blocked", "decompose", "failed"})


def utcnow_iso() -> str:
    return datetime.now(UTC).replace(microsecond=0).isoformat()


@dataclass(frozen=True, slots=True)
class Task:
    key: str
    text: str
    phase_path: tuple[str, ...]
    depth: int
    line: int
    checked: bool
    parent_key: str | None = None
    children: tuple[str, ...] = ()


@dataclass(frozen=True, slots=True)
class TaskFile:
    """Parsed checklist. Tasks are stored by key in document order."""

    file_path: Path
    tasks: dict[str, Task]
    content_hash: str

    @property
    def all_tasks(self) -> list[Task]:
        return list(self.tasks.values())

    @property
    def roots(self) -> list[Task]:
        return [task for task in self.tasks.values() if task.parent_key is None]

    @property
    def pending(self) -> list[Task]:
        return [task for task in self.tasks.values() if not task.checked]

    @property
    def completed(self) -> list[Task]:
        return [task for task in self.tasks.values() if task.checked]

    @property
    def total_count(self) -> int:
        return len(self.tasks)

    def get(self, key: str) -> Task | None:
        return self.tasks.get(key)

    def children_of(self, task: Task) -> list[Task]:
        return [self.tasks[key] for key in task.children if key in self.tasks]

    def parent_of(self, task: Task) -> Task | None:
        if task.parent_key is None:
            return None
        return self.tasks.get(task.parent_key)


@dataclass(frozen=True, slots=True)
class DetectedCommands:
    build: str | None = None
    test: str | None = None
    lint: str | None = None

    def items(self) -> list[tuple[str, str]]:
        pairs = [("build", self.build), ("test", self.test), ("lint", self.lint)]
        return [(label, command) for label, command in pairs if command]


@dataclass(frozen=True, slots=True)
class AgentResult:
    status: AgentStatus
    reason: str | None = None
    subtasks: tuple[str, ...] = ()
    parsed: bool = True


@dataclass(slots=True)
class VerificationResult:
    # None on the tri-state levels means "not configured" or "skipped".
    l0_agent_done: bool = False
    l1_build: bool | None = None
    l1_test: bool | None = None
    l1_lint: bool | None = None
    l2_ai: bool | None = None
    l2_reason: str | None = None
    passed: bool = False
    summary: str = ""
    command_output: str | None = None
    tokens_used: int = 0

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True, slots=True)
class Attempt:
    task_key: str
    task_text: str
    attempt: int
    duration_sec: float
    tokens_used: int
    status: AttemptStatus
    verification: VerificationResult | None = None
    error: str | None = None
    commit_hash: str | None = None
    finished_at: str = field(default_factory=utcnow_iso)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True, slots=True)
class PreflightRecord:
    task_key: str
    stage: PreflightStage
    duration_sec: float
    tokens_used: int
    status: PreflightStatus
    filename: str | None = None
    error: str | None = None


@dataclass(frozen=True, slots=True)
class Progress:
    current_index: int
    total_pending: int
    completed_so_far: int
    skipped_so_far: int
    iterations_used: int
    elapsed_sec: float
    estimated_remaining_sec: float | None = None
    current_task: str | None = None
    current_attempt: int | None = None


@dataclass(slots=True)
class RunResult:
    total_tasks: int = 0
    pre_completed: int = 0
    completed: int = 0
    auto_completed: int = 0
    skipped: int = 0
    failed: int = 0
    remaining: int = 0
    attempts: list[Attempt] = field(default_factory=list)
    preflight_records: list[PreflightRecord] = field(default_factory=list)
    duration_sec: float = 0.0
    total_tokens: int = 0
    total_commits: int = 0
    completed_all: bool = False
    stop_reason: StopReason = "all_done"

    def attempts_for(self, task_key: str) -> list[Attempt]:
        return [item for item in self.attempts if item.task_key == task_key]

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)
