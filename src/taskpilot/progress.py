from __future__ import annotations

from typing import Any

import structlog

from taskpilot.models import Attempt, Progress, RunResult, Task, VerificationResult


class ProgressSink:
    """Receives advisory run events. Every hook is optional and returns nothing."""

    def on_task_start(self, task: Task, attempt: int, progress: Progress) -> None:
        return None

    def on_task_end(self, task: Task, attempt: Attempt, progress: Progress) -> None:
        return None

    def on_task_skip(self, task: Task, reason: str, progress: Progress) -> None:
        return None

    def on_run_complete(self, result: RunResult) -> None:
        return None

    def on_heartbeat(self) -> None:
        return None

    def on_tool_loop(self, task_text: str, event: dict[str, Any]) -> None:
        return None

    def on_compaction(self, task_text: str, event: dict[str, Any]) -> None:
        return None

    def on_verification(self, task_text: str, verification: VerificationResult) -> None:
        return None

    def on_stage(self, message: str) -> None:
        return None


class SafeProgress:
    """Calls into a sink and logs, rather than propagates, its failures."""

    def __init__(self, sink: ProgressSink | None, *, logger: Any | None = None) -> None:
        self.sink = sink or ProgressSink()
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    def emit(self, hook: str, *args: Any) -> None:
        callback = getattr(self.sink, hook, None)
        if callback is None:
            return
        try:
            callback(*args)
        except Exception as exc:  # noqa: BLE001
            self._logger.warning("progress_callback_failed", hook=hook, error=repr(exc))
