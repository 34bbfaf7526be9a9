from __future__ import annotations

from pathlib import Path
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from taskpilot.models import StopReason, VerificationResult


class TaskpilotError(RuntimeError):
    """Base class for runner errors."""


class ConfigError(TaskpilotError):
    """Raised when a configuration file cannot be interpreted."""


class ParseError(TaskpilotError):
    """Raised when a task file is unreadable or structurally ambiguous."""

    def __init__(self, message: str, *, path: Path | None = None, line: int | None = None) -> None:
        location = ""
        if path is not None:
            location = f"{path}:{line}: " if line is not None else f"{path}: "
        super().__init__(f"{location}{message}")
        self.path = path
        self.line = line


class LockHeld(TaskpilotError):
    """Raised when another live run owns the lock file."""

    def __init__(
        self,
        pid: int,
        started_at: str,
        *,
        path: Path | None = None,
        label: str = "",
    ) -> None:
        detail = f" ({label})" if label else ""
        super().__init__(f"Another run is active: pid {pid} since {started_at}{detail}.")
        self.pid = pid
        self.started_at = started_at
        self.path = path
        self.label = label


class AgentError(TaskpilotError):
    """Raised when an agent session fails."""

    def __init__(self, message: str, *, retriable: bool = True) -> None:
        super().__init__(message)
        self.retriable = retriable


class AttemptTimeout(TaskpilotError):
    """Raised when an attempt exceeds its time budget."""

    def __init__(self, timeout_sec: float) -> None:
        super().__init__(f"Attempt timed out after {timeout_sec:g}s")
        self.timeout_sec = timeout_sec


class RunAborted(TaskpilotError):
    """Raised inside an attempt when the run's abort token fires."""


class VerificationFailure(TaskpilotError):
    """Raised when the verification cascade rejects an attempt."""

    def __init__(self, result: VerificationResult) -> None:
        super().__init__(result.summary)
        self.result = result


class BudgetExceeded(TaskpilotError):
    """Raised when a run-level budget stops the loop."""

    def __init__(self, stop_reason: StopReason, detail: str = "") -> None:
        super().__init__(detail or stop_reason)
        self.stop_reason = stop_reason


class GitError(TaskpilotError):
    """Raised when a git invocation fails."""


class TaskNotFound(TaskpilotError, LookupError):
    """Raised when a task key is absent from the current task file."""

    def __init__(self, key: str, *, path: Path | None = None) -> None:
        super().__init__(f"Task {key} not found in {path or 'task file'}")
        self.key = key
        self.path = path


class PromptBudgetExceeded(TaskpilotError):
    """Raised when a prompt cannot be trimmed under the per-attempt token limit."""

    def __init__(self, tokens: int, limit: int) -> None:
        super().__init__(f"prompt-budget-exceeded: ~{tokens} tokens > limit {limit}")
        self.tokens = tokens
        self.limit = limit


class PreflightError(TaskpilotError):
    """Raised when a preflight reply cannot be used."""
