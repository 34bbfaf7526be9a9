from __future__ import annotations

import asyncio
import os
import re
import shlex
import shutil
import signal
import subprocess
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from pathlib import Path

SHELL_REQUIRED_PATTERN = re.compile(r"(?:\|\||&&|[|;<>`*?~]|[$]\()")
TIMEOUT_EXIT_CODE = 124
NOT_FOUND_EXIT_CODE = 127


@dataclass(frozen=True, slots=True)
class CommandResult:
    command: str
    exit_code: int
    stdout: str
    stderr: str
    timed_out: bool = False
    used_shell: bool = False

    @property
    def ok(self) -> bool:
        return self.exit_code == 0 and not self.timed_out


CommandRunner = Callable[..., Awaitable[CommandResult]]


def _kill_process_group(process: asyncio.subprocess.Process) -> None:
    if process.returncode is not None:
        return
    try:
        os.killpg(process.pid, signal.SIGKILL)
    except ProcessLookupError:
        return
    except PermissionError:
        process.kill()


def _decode(payload: bytes | None) -> str:
    if not payload:
        return ""
    return payload.decode("utf-8", errors="replace")


async def run_command(command: str, *, timeout: float, cwd: Path) -> CommandResult:
    command_text = command.strip()
    if not command_text:
        return CommandResult(command=command, exit_code=1, stdout="", stderr="Command is empty.")

    used_shell = bool(SHELL_REQUIRED_PATTERN.search(command_text))
    argv: list[str] = []
    if not used_shell:
        try:
            argv = shlex.split(command_text)
        except ValueError:
            used_shell = True

    try:
        if used_shell:
            process = await asyncio.create_subprocess_shell(
                command_text,
                cwd=str(cwd),
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                start_new_session=True,
            )
        else:
            process = await asyncio.create_subprocess_exec(
                *argv,
                cwd=str(cwd),
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                start_new_session=True,
            )
    except FileNotFoundError as exc:
        return CommandResult(
            command=command,
            exit_code=NOT_FOUND_EXIT_CODE,
            stdout="",
            stderr=f"Command not found: {exc.filename or argv[:1]}",
            used_shell=used_shell,
        )

    try:
        stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=timeout)
    except TimeoutError:
        _kill_process_group(process)
        stdout, stderr = await process.communicate()
        return CommandResult(
            command=command,
            exit_code=TIMEOUT_EXIT_CODE,
            stdout=_decode(stdout),
            stderr=f"{_decode(stderr)}\nCommand timed out after {timeout:g}s".strip(),
            timed_out=True,
            used_shell=used_shell,
        )
    except asyncio.CancelledError:
        _kill_process_group(process)
        await process.wait()
        raise

    return CommandResult(
        command=command,
        exit_code=process.returncode if process.returncode is not None else 1,
        stdout=_decode(stdout),
        stderr=_decode(stderr),
        used_shell=used_shell,
    )


def command_available(executable: str, *subcommand: str, cwd: Path | None = None) -> bool:
    """True when ``executable`` is on PATH and, if given, ``executable subcommand --help`` works."""
    if not executable.strip() or shutil.which(executable) is None:
        return False
    if not subcommand:
        return True
    try:
        probe = subprocess.run(
            [executable, *subcommand, "--help"],
            cwd=cwd,
            text=True,
            capture_output=True,
            timeout=5,
        )
    except (OSError, subprocess.TimeoutExpired):
        return False
    return probe.returncode == 0
