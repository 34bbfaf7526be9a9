from __future__ import annotations

import shutil
import subprocess
from collections.abc import Iterable
from pathlib import Path

import structlog

from taskpilot.errors import GitError

MAX_DIFF_CHARS = 60_000

logger = structlog.get_logger(__name__)


class GitWorkspace:
    """Thin wrapper over the git CLI for the handful of operations a run needs."""

    def __init__(self, project_dir: Path, *, timeout: float = 60.0) -> None:
        self.project_dir = project_dir.resolve()
        self.timeout = timeout
        toplevel = self._find_toplevel()
        self._git_enabled = toplevel is not None
        # Porcelain paths are relative to the toplevel, not the project directory.
        self.repo_root = toplevel if toplevel is not None else self.project_dir

    @property
    def git_enabled(self) -> bool:
        return self._git_enabled

    def _find_toplevel(self) -> Path | None:
        try:
            proc = subprocess.run(
                ["git", "--no-pager", "rev-parse", "--show-toplevel"],
                cwd=self.project_dir,
                text=True,
                capture_output=True,
                timeout=self.timeout,
            )
        except (OSError, subprocess.TimeoutExpired):
            return None
        toplevel = proc.stdout.strip()
        if proc.returncode != 0 or not toplevel:
            return None
        return Path(toplevel).resolve()

    def _run_git(self, args: list[str], check: bool = True) -> subprocess.CompletedProcess[str]:
        if not self.git_enabled:
            raise GitError("No git repository found. Version-control operations are disabled.")
        try:
            proc = subprocess.run(
                ["git", "--no-pager", *args],
                cwd=self.repo_root,
                text=True,
                capture_output=True,
                timeout=self.timeout,
            )
        except subprocess.TimeoutExpired as exc:
            raise GitError(f"git {' '.join(args[:2])} timed out after {self.timeout:g}s") from exc
        if check and proc.returncode != 0:
            raise GitError(proc.stderr.strip() or proc.stdout.strip())
        return proc

    @staticmethod
    def _status_line_path(status_line: str) -> str:
        candidate = status_line[3:].strip()
        if " -> " in candidate:
            candidate = candidate.split(" -> ", maxsplit=1)[1].strip()
        return candidate.strip('"')

    def _status_paths(self, *, untracked_only: bool = False) -> list[str]:
        if not self.git_enabled:
            return []
        proc = self._run_git(["status", "--porcelain", "--untracked-files=all"], check=True)
        paths: list[str] = []
        for line in proc.stdout.splitlines():
            if not line.strip():
                continue
            if untracked_only and not line.startswith("??"):
                continue
            path = self._status_line_path(line)
            if path:
                paths.append(path)
        return paths

    def changed_files(self) -> list[str]:
        return self._status_paths()

    def untracked_files(self) -> list[str]:
        return self._status_paths(untracked_only=True)

    def dirty_paths(self, ignore: Iterable[str] = ()) -> list[str]:
        ignored = [item.rstrip("/") for item in ignore if item]
        dirty: list[str] = []
        for path in self.changed_files():
            if any(path == prefix or path.startswith(f"{prefix}/") for prefix in ignored):
                continue
            dirty.append(path)
        return dirty

    def is_dirty(self, ignore: Iterable[str] = ()) -> bool:
        return bool(self.dirty_paths(ignore))

    def diff(self, max_chars: int = MAX_DIFF_CHARS) -> str:
        """Unified diff of tracked changes plus a listing of new files."""
        if not self.git_enabled:
            return ""
        head = self._run_git(["rev-parse", "--verify", "HEAD"], check=False)
        if head.returncode == 0:
            tracked = self._run_git(["diff", "HEAD"], check=True).stdout
        else:
            tracked = self._run_git(["diff", "--cached"], check=False).stdout
        parts = [tracked.strip()] if tracked.strip() else []
        untracked = self.untracked_files()
        if untracked:
            listing = "\n".join(f"+++ new file: {path}" for path in untracked[:200])
            parts.append(listing)
        text = "\n".join(parts)
        if len(text) > max_chars:
            return f"{text[:max_chars]}\n... (diff truncated)"
        return text

    def current_branch(self) -> str:
        if not self.git_enabled:
            return "no-git"
        return self._run_git(["rev-parse", "--abbrev-ref", "HEAD"], check=True).stdout.strip()

    def create_branch(self, branch_name: str) -> None:
        self._run_git(["checkout", "-b", branch_name], check=True)
        logger.info("branch_created", branch=branch_name)

    def commit_all(self, message: str) -> str | None:
        """Stage everything and commit. Returns the short hash, or None if nothing changed."""
        self._run_git(["add", "-A"], check=True)
        staged = self._run_git(["diff", "--cached", "--quiet"], check=False)
        if staged.returncode == 0:
            return None
        self._run_git(["commit", "-m", message], check=True)
        commit_hash = self._run_git(["rev-parse", "--short", "HEAD"], check=True).stdout.strip()
        logger.info("commit_created", commit=commit_hash, subject=message)
        return commit_hash

    def restore_tracked(self) -> None:
        self._run_git(["checkout", "--", "."], check=True)

    def clean_untracked(self) -> None:
        self._run_git(["clean", "-fd"], check=True)

    def remove_paths(self, paths: Iterable[str]) -> list[str]:
        removed: list[str] = []
        for relative in paths:
            target = (self.repo_root / relative).resolve()
            if not target.is_relative_to(self.repo_root) or target == self.repo_root:
                continue
            if target.is_dir():
                shutil.rmtree(target, ignore_errors=True)
            elif target.exists():
                target.unlink()
            else:
                continue
            removed.append(relative)
        return removed
