from __future__ import annotations

import json
import os
import time
from dataclasses import asdict, dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

import structlog

from taskpilot.errors import LockHeld, TaskpilotError
from taskpilot.models import utcnow_iso

LOCK_FILENAME = "taskpilot.lock"
STALE_AFTER_SECONDS = 3600.0


def default_lock_path() -> Path:
    state_dir = os.environ.get("TASKPILOT_STATE_DIR")
    if state_dir:
        return Path(state_dir).expanduser() / LOCK_FILENAME
    xdg_state = os.environ.get("XDG_STATE_HOME")
    base = Path(xdg_state).expanduser() if xdg_state else Path.home() / ".local" / "state"
    return base / "taskpilot" / LOCK_FILENAME


def pid_alive(pid: int) -> bool:
    if pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        # The process exists but belongs to another user.
        return True
    return True


def _age_seconds(timestamp: str) -> float | None:
    try:
        moment = datetime.fromisoformat(timestamp)
    except ValueError:
        return None
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=UTC)
    return (datetime.now(UTC) - moment).total_seconds()


@dataclass(frozen=True, slots=True)
class LockInfo:
    pid: int
    started_at: str
    label: str = ""
    cwd: str = ""
    updated_at: str = ""

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> LockInfo | None:
        try:
            pid = int(payload["pid"])
            started_at = str(payload["started_at"])
        except (KeyError, TypeError, ValueError):
            return None
        return cls(
            pid=pid,
            started_at=started_at,
            label=str(payload.get("label", "")),
            cwd=str(payload.get("cwd", "")),
            updated_at=str(payload.get("updated_at", "")),
        )

    def is_stale(self, stale_after: float = STALE_AFTER_SECONDS) -> bool:
        if not pid_alive(self.pid):
            return True
        age = _age_seconds(self.updated_at or self.started_at)
        return age is None or age > stale_after


class RunLock:
    """Advisory single-run lock stored as JSON.

    The file records who holds the lock; nothing prevents a process from
    ignoring it. Stale locks (dead owner, or no heartbeat for an hour) are
    reclaimed silently.
    """

    def __init__(
        self,
        path: Path | None = None,
        *,
        label: str = "",
        stale_after: float = STALE_AFTER_SECONDS,
        logger: Any | None = None,
    ) -> None:
        self.path = path if path is not None else default_lock_path()
        self.label = label
        self.stale_after = stale_after
        self._logger = logger if logger is not None else structlog.get_logger(__name__)
        self._owned = False

    @property
    def owned(self) -> bool:
        return self._owned

    def read(self) -> LockInfo | None:
        try:
            raw = self.path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        try:
            payload = json.loads(raw)
        except json.JSONDecodeError:
            return None
        if not isinstance(payload, dict):
            return None
        return LockInfo.from_dict(payload)

    def is_held(self) -> bool:
        info = self.read()
        return info is not None and not info.is_stale(self.stale_after)

    def _payload(self, started_at: str | None = None) -> str:
        now = utcnow_iso()
        info = LockInfo(
            pid=os.getpid(),
            started_at=started_at or now,
            label=self.label,
            cwd=os.getcwd(),
            updated_at=now,
        )
        return json.dumps(asdict(info), ensure_ascii=False, indent=2)

    def _create_exclusive(self) -> bool:
        try:
            fd = os.open(self.path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
        except FileExistsError:
            return False
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(self._payload())
        return True

    def acquire(self) -> LockInfo:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        for _ in range(3):
            if self._create_exclusive():
                self._owned = True
                self._logger.info("lock_acquired", path=str(self.path), label=self.label)
                return self.read() or LockInfo(pid=os.getpid(), started_at=utcnow_iso())

            existing = self.read()
            if existing is not None and existing.pid == os.getpid():
                self.path.write_text(self._payload(), encoding="utf-8")
                self._owned = True
                self._logger.info("lock_reacquired", path=str(self.path))
                return self.read() or existing
            if existing is not None and not existing.is_stale(self.stale_after):
                raise LockHeld(
                    existing.pid,
                    existing.started_at,
                    path=self.path,
                    label=existing.label,
                )

            self._logger.warning(
                "lock_reclaimed",
                path=str(self.path),
                previous_pid=existing.pid if existing else None,
            )
            try:
                self.path.unlink()
            except FileNotFoundError:
                pass
            # Another process may win the race between unlink and create.
            time.sleep(0.01)
        raise TaskpilotError(f"Could not acquire lock at {self.path}")

    def touch(self) -> None:
        if not self._owned:
            return
        existing = self.read()
        if existing is None or existing.pid != os.getpid():
            return
        self.path.write_text(self._payload(existing.started_at), encoding="utf-8")

    def release(self) -> None:
        if not self._owned:
            return
        self._owned = False
        existing = self.read()
        if existing is not None and existing.pid != os.getpid():
            return
        try:
            self.path.unlink()
        except FileNotFoundError:
            pass
        self._logger.info("lock_released", path=str(self.path))

    def force_release(self) -> bool:
        try:
            self.path.unlink()
        except FileNotFoundError:
            return False
        self._owned = False
        return True

    def __enter__(self) -> RunLock:
        self.acquire()
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.release()
