from __future__ import annotations

import asyncio
import json
import os
import signal
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator, Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Any

TOOL_LOOP_THRESHOLD = 3


class BackendExecutionError(RuntimeError):
    """Raised when a backend process execution fails."""

    def __init__(
        self,
        message: str,
        *,
        backend: str | None = None,
        exit_code: int | None = None,
        retriable: bool = True,
    ) -> None:
        super().__init__(message)
        self.backend = backend
        self.exit_code = exit_code
        self.retriable = retriable


class BackendProcessError(BackendExecutionError):
    """Raised when backend process lifecycle fails."""


@dataclass(slots=True)
class BackendUsage:
    input_tokens: int = 0
    output_tokens: int = 0

    def add(self, payload: dict[str, Any]) -> None:
        for source, target in (
            ("input_tokens", "input_tokens"),
            ("prompt_tokens", "input_tokens"),
            ("output_tokens", "output_tokens"),
            ("completion_tokens", "output_tokens"),
        ):
            value = payload.get(source)
            if isinstance(value, int):
                setattr(self, target, getattr(self, target) + value)


class AgentBackend(ABC):
    """One agent CLI invocation streamed as JSON lines.

    Subclasses describe the command line and how to pull text and usage out of
    each event; the subprocess lifecycle lives here so it can be terminated
    from outside while a prompt is in flight.
    """

    name = "agent"

    def __init__(
        self,
        binary: str,
        working_directory: Path | None = None,
        *,
        model: str | None = None,
        max_turns: int | None = None,
        event_hook: Callable[[dict[str, Any]], None] | None = None,
    ) -> None:
        self.binary = binary
        self.working_directory = working_directory
        self.model = model
        self.max_turns = max_turns
        self.event_hook = event_hook
        self.usage = BackendUsage()
        self._last_tool_call: str | None = None
        self._repeat_count = 0
        self._process: asyncio.subprocess.Process | None = None

    @abstractmethod
    def build_command(self, prompt: str) -> list[str]:
        """Return the argv for one non-interactive run of the agent."""

    @abstractmethod
    def extract_content(self, event: dict[str, Any]) -> str:
        """Return the assistant text carried by one stream event."""

    def extract_tool_call(self, event: dict[str, Any]) -> str | None:
        """Return a signature for a tool invocation event, if this is one."""
        return None

    def is_compaction(self, event: dict[str, Any]) -> bool:
        return False

    def _emit(self, payload: dict[str, Any]) -> None:
        if self.event_hook is not None:
            self.event_hook(payload)

    def _inspect(self, event: dict[str, Any]) -> None:
        if self.is_compaction(event):
            self._emit({"event": "compaction", "backend": self.name})
        signature = self.extract_tool_call(event)
        if signature is None:
            return
        if signature == self._last_tool_call:
            self._repeat_count += 1
        else:
            self._last_tool_call = signature
            self._repeat_count = 1
        if self._repeat_count == TOOL_LOOP_THRESHOLD:
            self._emit(
                {
                    "event": "tool_loop",
                    "backend": self.name,
                    "tool": signature.split(":", maxsplit=1)[0],
                    "count": self._repeat_count,
                    "message": f"Identical tool call repeated {self._repeat_count} times",
                }
            )

    @staticmethod
    def extract_usage(event: dict[str, Any]) -> dict[str, Any] | None:
        usage = event.get("usage")
        return usage if isinstance(usage, dict) else None

    @staticmethod
    def _appears_partial_json(raw: str) -> bool:
        return raw.count("{") > raw.count("}") or raw.count("[") > raw.count("]")

    @staticmethod
    async def _read_stderr(process: asyncio.subprocess.Process) -> str:
        if process.stderr is None:
            return ""
        return (await process.stderr.read()).decode("utf-8", errors="replace").strip()

    async def stream(self, prompt: str) -> AsyncIterator[str]:
        command = self.build_command(prompt)
        try:
            process = await asyncio.create_subprocess_exec(
                *command,
                cwd=str(self.working_directory) if self.working_directory else None,
                env=os.environ.copy(),
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                start_new_session=True,
            )
        except FileNotFoundError as exc:
            raise BackendProcessError(
                f"{self.name} binary not found: {self.binary}",
                backend=self.name,
                retriable=False,
            ) from exc
        self._process = process

        if process.stdout is None:
            raise BackendProcessError(
                f"{self.name} backend did not expose stdout.", backend=self.name, retriable=False
            )
        # A chatty agent can fill the stderr pipe and stall before closing stdout.
        stderr_task = asyncio.ensure_future(self._read_stderr(process))

        try:
            parse_buffer = ""
            async for raw_line in process.stdout:
                line = raw_line.decode("utf-8", errors="replace").strip()
                if not line:
                    continue
                candidate = f"{parse_buffer}{line}" if parse_buffer else line
                try:
                    event = json.loads(candidate)
                    parse_buffer = ""
                except json.JSONDecodeError:
                    if self._appears_partial_json(candidate):
                        parse_buffer = candidate
                        continue
                    parse_buffer = ""
                    yield line
                    continue
                if not isinstance(event, dict):
                    continue

                self._inspect(event)
                usage = self.extract_usage(event)
                if usage:
                    self.usage.add(usage)
                content = self.extract_content(event)
                if content:
                    yield content

            if parse_buffer:
                yield parse_buffer

            return_code = await process.wait()
            stderr_output = await stderr_task
        except asyncio.CancelledError:
            await self.terminate()
            raise
        finally:
            self._process = None
            if not stderr_task.done():
                stderr_task.cancel()

        if return_code != 0:
            raise BackendExecutionError(
                f"{self.name} backend failed with exit code {return_code}: {stderr_output}",
                backend=self.name,
                exit_code=return_code,
                retriable=return_code > 0,
            )

    async def terminate(self) -> None:
        process = self._process
        if process is None or process.returncode is not None:
            return
        try:
            os.killpg(process.pid, signal.SIGTERM)
        except ProcessLookupError:
            return
        except PermissionError:
            process.terminate()
        try:
            await asyncio.wait_for(process.wait(), timeout=5.0)
        except TimeoutError:
            process.kill()
            await process.wait()
