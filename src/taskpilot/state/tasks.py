"""Markdown checklist parsing and checkbox mutation.

Task identity is a hash of the task's logical position (phase headings, depth,
parent, text and ordinal among identical siblings), so keys survive edits to
unrelated lines and checkbox toggles. Mutators only ever rewrite the ``[ ]``
marker or insert new checkbox lines; existing task text is never touched.
"""

from __future__ import annotations

import hashlib
import os
import re
import tempfile
from collections.abc import Iterable
from dataclasses import dataclass, field
from pathlib import Path

import structlog

from taskpilot.errors import ParseError, TaskNotFound
from taskpilot.models import Task, TaskFile

HEADING_PATTERN = re.compile(r"^(#{1,6})\s+(.+?)\s*#*\s*$")
TASK_PATTERN = re.compile(r"^([ \t]*)(?:[-*]|●) \[([ xX])\] (.*)$")
UNCHECKED_MARKER_PATTERN = re.compile(r"^([ \t]*(?:[-*]|●) )\[ \]")
FENCE_PATTERN = re.compile(r"^\s*(```|~~~)")
BULLET_PREFIXES = ("-", "*", "●")
DEFAULT_INDENT_UNIT = 2

logger = structlog.get_logger(__name__)


@dataclass(slots=True)
class _DraftTask:
    key: str
    text: str
    phase_path: tuple[str, ...]
    depth: int
    line: int
    checked: bool
    parent_key: str | None
    children: list[str] = field(default_factory=list)

    def freeze(self) -> Task:
        return Task(
            key=self.key,
            text=self.text,
            phase_path=self.phase_path,
            depth=self.depth,
            line=self.line,
            checked=self.checked,
            parent_key=self.parent_key,
            children=tuple(self.children),
        )


def normalize_task_text(text: str) -> str:
    return " ".join(text.split())


def compute_task_key(
    phase_path: Iterable[str],
    depth: int,
    parent_key: str | None,
    text: str,
    ordinal: int,
) -> str:
    identity = " | ".join(
        [
            " > ".join(phase_path),
            str(depth),
            parent_key or "root",
            normalize_task_text(text),
            str(ordinal),
        ]
    )
    return hashlib.sha256(identity.encode("utf-8")).hexdigest()[:16]


def _expand_indent(indent: str) -> int:
    return len(indent.replace("\t", "  "))


def _indent_unit(lines: list[str]) -> int:
    widths: list[int] = []
    in_fence = False
    for raw_line in lines:
        if FENCE_PATTERN.match(raw_line):
            in_fence = not in_fence
            continue
        if in_fence:
            continue
        match = TASK_PATTERN.match(raw_line)
        if match:
            width = _expand_indent(match.group(1))
            if width > 0:
                widths.append(width)
    return min(widths) if widths else DEFAULT_INDENT_UNIT


def _is_continuation(raw_line: str) -> bool:
    if not raw_line[:1].isspace():
        return False
    stripped = raw_line.strip()
    return bool(stripped) and not stripped.startswith(BULLET_PREFIXES)


def parse_task_string(content: str, file_path: Path) -> TaskFile:
    lines = content.splitlines()
    unit = _indent_unit(lines)
    phase_path: list[str] = []
    drafts: dict[str, _DraftTask] = {}
    stack: list[_DraftTask] = []
    ordinals: dict[tuple[tuple[str, ...], str | None, int, str], int] = {}
    current: _DraftTask | None = None
    in_fence = False

    for line_number, raw_line in enumerate(lines, start=1):
        if FENCE_PATTERN.match(raw_line):
            in_fence = not in_fence
            current = None
            continue
        if in_fence:
            continue

        heading = HEADING_PATTERN.match(raw_line)
        if heading:
            level = len(heading.group(1))
            phase_path = phase_path[: level - 1]
            phase_path.append(heading.group(2).strip())
            stack = []
            current = None
            continue

        match = TASK_PATTERN.match(raw_line)
        if match is None:
            if current is not None and _is_continuation(raw_line):
                current.text = f"{current.text} {raw_line.strip()}"
            else:
                current = None
            continue

        width = _expand_indent(match.group(1))
        if width % unit != 0:
            raise ParseError(
                f"Indentation of {width} is not a multiple of the {unit}-space nesting unit",
                path=file_path,
                line=line_number,
            )
        text = match.group(3).strip()
        if not text:
            logger.debug("task_line_without_text", path=str(file_path), line=line_number)
            current = None
            continue

        depth = width // unit
        while stack and stack[-1].depth >= depth:
            stack.pop()
        parent = stack[-1] if stack else None
        expected_max = parent.depth + 1 if parent is not None else 0
        if depth > expected_max:
            raise ParseError(
                "Checkbox is nested more than one level below its predecessor",
                path=file_path,
                line=line_number,
            )

        parent_key = parent.key if parent is not None else None
        phase = tuple(phase_path)
        ordinal_key = (phase, parent_key, depth, normalize_task_text(text))
        ordinal = ordinals.get(ordinal_key, 0)
        ordinals[ordinal_key] = ordinal + 1

        draft = _DraftTask(
            key=compute_task_key(phase, depth, parent_key, text, ordinal),
            text=text,
            phase_path=phase,
            depth=depth,
            line=line_number,
            checked=match.group(2) in {"x", "X"},
            parent_key=parent_key,
        )
        if parent is not None:
            parent.children.append(draft.key)
        drafts[draft.key] = draft
        stack.append(draft)
        current = draft

    return TaskFile(
        file_path=file_path,
        tasks={key: draft.freeze() for key, draft in drafts.items()},
        content_hash=hashlib.sha256(content.encode("utf-8")).hexdigest(),
    )


def _read_raw(path: Path) -> str:
    try:
        return path.read_bytes().decode("utf-8")
    except FileNotFoundError as exc:
        raise ParseError("Task file not found", path=path) from exc
    except (OSError, UnicodeDecodeError) as exc:
        raise ParseError(f"Cannot read task file: {exc}", path=path) from exc


def parse_task_file(path: Path) -> TaskFile:
    return parse_task_string(_read_raw(path), path)


def _atomic_write(path: Path, content: str) -> None:
    with tempfile.NamedTemporaryFile(
        mode="w",
        encoding="utf-8",
        newline="",
        dir=path.parent,
        prefix=f".{path.name}.",
        suffix=".tmp",
        delete=False,
    ) as handle:
        handle.write(content)
        temp_name = handle.name
    try:
        os.replace(temp_name, path)
    except OSError:
        Path(temp_name).unlink(missing_ok=True)
        raise


def _line_ending(line: str) -> str:
    if line.endswith("\r\n"):
        return "\r\n"
    if line.endswith("\n"):
        return "\n"
    return ""


def mark_task_checked(path: Path, task_key: str) -> bool:
    """Flip one task's marker to ``[x]``. Returns False when it was already checked."""
    content = _read_raw(path)
    task_file = parse_task_string(content, path)
    task = task_file.get(task_key)
    if task is None:
        raise TaskNotFound(task_key, path=path)
    if task.checked:
        return False

    lines = content.splitlines(keepends=True)
    index = task.line - 1
    updated, count = UNCHECKED_MARKER_PATTERN.subn(r"\1[x]", lines[index], count=1)
    if count == 0:
        raise ParseError("Checkbox marker not found on task line", path=path, line=task.line)
    lines[index] = updated
    _atomic_write(path, "".join(lines))
    logger.debug("task_checked", path=str(path), task_key=task_key, line=task.line)
    return True


def _subtree_end(task_file: TaskFile, task: Task) -> int:
    last_line = task.line
    for child in task_file.children_of(task):
        last_line = max(last_line, _subtree_end(task_file, child))
    return last_line


def insert_subtasks(path: Path, parent_key: str, subtasks: Iterable[str]) -> list[Task]:
    """Insert unchecked children after the parent's subtree and return them."""
    items = [normalize_task_text(item) for item in subtasks]
    items = [item for item in items if item]
    content = _read_raw(path)
    task_file = parse_task_string(content, path)
    parent = task_file.get(parent_key)
    if parent is None:
        raise TaskNotFound(parent_key, path=path)
    if not items:
        return []

    lines = content.splitlines(keepends=True)
    unit = _indent_unit([line.rstrip("\r\n") for line in lines])
    parent_line = lines[parent.line - 1]
    parent_indent = parent_line[: len(parent_line) - len(parent_line.lstrip(" \t"))]
    child_indent = parent_indent.replace("\t", "  ") + " " * unit

    insert_at = _subtree_end(task_file, parent)
    while insert_at < len(lines) and _is_continuation(lines[insert_at].rstrip("\r\n")):
        insert_at += 1

    newline = _line_ending(parent_line) or "\n"
    if insert_at > 0 and not _line_ending(lines[insert_at - 1]):
        lines[insert_at - 1] += newline
    new_lines = [f"{child_indent}- [ ] {item}{newline}" for item in items]
    lines[insert_at:insert_at] = new_lines
    _atomic_write(path, "".join(lines))

    updated = parse_task_file(path)
    refreshed_parent = updated.get(parent_key)
    if refreshed_parent is None:
        raise TaskNotFound(parent_key, path=path)
    inserted = [
        child
        for child in updated.children_of(refreshed_parent)
        if child.key not in parent.children
    ]
    logger.info(
        "subtasks_inserted",
        path=str(path),
        parent_key=parent_key,
        count=len(inserted),
    )
    return inserted


def auto_complete_ancestors(path: Path, task_key: str) -> list[str]:
    """Check every ancestor whose children are now all checked, bottom-up."""
    completed: list[str] = []
    current_key = task_key
    while True:
        task_file = parse_task_file(path)
        current = task_file.get(current_key)
        if current is None:
            break
        parent = task_file.parent_of(current)
        if parent is None or parent.checked:
            break
        if not all(child.checked for child in task_file.children_of(parent)):
            break
        mark_task_checked(path, parent.key)
        completed.append(parent.key)
        current_key = parent.key
    return completed


def find_runnable_pending(
    task_file: TaskFile, skipped_keys: set[str] | frozenset[str]
) -> list[Task]:
    """Pending tasks in document order, leaves first.

    A task with unchecked children that are not skipped waits for them.
    """
    runnable: list[Task] = []
    for task in task_file.pending:
        if task.key in skipped_keys:
            continue
        blocked_by_children = any(
            not child.checked and child.key not in skipped_keys
            for child in task_file.children_of(task)
        )
        if blocked_by_children:
            continue
        runnable.append(task)
    return runnable
