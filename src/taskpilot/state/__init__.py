from taskpilot.state.git import GitWorkspace
from taskpilot.state.lock import LockInfo, RunLock
from taskpilot.state.tasks import (
    auto_complete_ancestors,
    find_runnable_pending,
    insert_subtasks,
    mark_task_checked,
    parse_task_file,
    parse_task_string,
)

__all__ = [
    "GitWorkspace",
    "LockInfo",
    "RunLock",
    "auto_complete_ancestors",
    "find_runnable_pending",
    "insert_subtasks",
    "mark_task_checked",
    "parse_task_file",
    "parse_task_string",
]
