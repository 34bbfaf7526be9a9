from taskpilot.backends.base import (
    AgentBackend,
    BackendExecutionError,
    BackendProcessError,
    BackendUsage,
)
from taskpilot.backends.claude import ClaudeCodeBackend
from taskpilot.backends.codex import CodexBackend

__all__ = [
    "AgentBackend",
    "BackendExecutionError",
    "BackendProcessError",
    "BackendUsage",
    "ClaudeCodeBackend",
    "CodexBackend",
]
