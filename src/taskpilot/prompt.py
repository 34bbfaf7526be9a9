"""Per-attempt prompt rendering and structured-result parsing."""

from __future__ import annotations

import asyncio
import re
from pathlib import Path

import structlog

from taskpilot.config import RunConfig
from taskpilot.errors import PromptBudgetExceeded
from taskpilot.memory import MemoryExcerpt, MemoryStore, extract_keywords
from taskpilot.models import AGENT_STATUSES, AgentResult, Attempt, Task, TaskFile
from taskpilot.session import estimate_tokens

RESULT_TAG = "taskpilot-result"
RESULT_BLOCK_PATTERN = re.compile(rf"<{RESULT_TAG}>(.*?)</{RESULT_TAG}>", re.DOTALL)
STATUS_LINE_PATTERN = re.compile(r"^\s*status:\s*(.+?)\s*$", re.MULTILINE | re.IGNORECASE)
REASON_LINE_PATTERN = re.compile(r"^\s*reason:\s*(.+?)\s*$", re.MULTILINE | re.IGNORECASE)
SUBTASK_LINE_PATTERN = re.compile(r"^\s*[-*]\s+(.+?)\s*$", re.MULTILINE)
PLACEHOLDER_PATTERN = re.compile(r"^<[^>]*>$")
MAX_EXCERPT_CHARS = 2_000
SHORT_RETRY_CONTEXT_CHARS = 1_500

logger = structlog.get_logger(__name__)


def _preamble(config: RunConfig) -> str:
    preamble = (
        "You are an autonomous coding agent working on ONE task.\n"
        f"Complete the task, then emit exactly one `<{RESULT_TAG}>` block at the very end.\n"
        "Do NOT edit the task file checkboxes.\n"
        "Keep changes minimal and focused on this task."
    )
    if config.decompose.enabled:
        preamble += (
            "\n\nIf the task is too large to finish in one attempt, you may decompose it into "
            "smaller subtasks.\n"
            f"Maximum decomposition depth: {config.decompose.max_depth}\n"
            "Only decompose when truly necessary; prefer completing the task directly."
        )
    return preamble


def _current_task_section(task: Task, task_file: TaskFile, *, include_children: bool) -> str:
    phase = " > ".join(task.phase_path) if task.phase_path else "N/A"
    section = (
        "## Current Task\n\n"
        f"**File:** {task_file.file_path}\n"
        f"**Line:** {task.line}\n"
        f"**Phase:** {phase}\n\n"
        f"{task.text}"
    )
    children = task_file.children_of(task)
    if include_children and children:
        section += "\n\n**Children:**"
        for child in children:
            marker = "[x]" if child.checked else "[ ]"
            section += f"\n- {marker} {child.text}"
    return section


def _progress_section(task_file: TaskFile, task: Task) -> str:
    phase = task.phase_path[0] if task.phase_path else "Unknown"
    return (
        "## Progress Summary\n\n"
        f"{len(task_file.completed)}/{task_file.total_count} complete. Phase: {phase}."
    )


def _truncate_excerpt(content: str) -> str:
    cleaned = content.strip()
    if len(cleaned) <= MAX_EXCERPT_CHARS:
        return cleaned
    return f"{cleaned[:MAX_EXCERPT_CHARS]}..."


def render_memory_section(excerpts: list[MemoryExcerpt], max_context_tokens: int) -> str | None:
    """Render excerpts most-relevant first, dropping whole excerpts to fit the cap."""
    header = "## Relevant Context"
    ranked = sorted(
        (item for item in excerpts if item.content.strip()),
        key=lambda item: item.score,
        reverse=True,
    )
    items = [f"**{item.key}**\n{_truncate_excerpt(item.content)}" for item in ranked]
    while items:
        section = "\n\n".join([header, *items])
        if estimate_tokens(section) <= max_context_tokens:
            return section
        items.pop()
    return None


async def _memory_section(
    task: Task,
    memory: MemoryStore,
    config: RunConfig,
    max_context_tokens: int,
) -> str | None:
    keywords = extract_keywords(task.text)
    if not keywords:
        return None
    try:
        excerpts = await asyncio.wait_for(
            memory.search(" ".join(keywords), config.memory.max_excerpts),
            timeout=config.memory.lookup_timeout_sec,
        )
    except TimeoutError:
        logger.warning("memory_lookup_timeout", task_key=task.key)
        return None
    except OSError as exc:
        logger.warning("memory_lookup_failed", task_key=task.key, error=str(exc))
        return None
    return render_memory_section(excerpts, max_context_tokens)


def _retry_section(retry_context: str) -> str:
    return f"## Previous Attempt Failed\n\n{retry_context}\n\nDo not repeat the same mistake."


def _plan_section(plan_file: Path) -> str:
    return (
        "## Implementation Plan\n\n"
        f"A reviewed plan for this task is at: {plan_file}\n"
        "Read it first and follow it unless the code proves it wrong."
    )


def result_instructions(decompose_enabled: bool) -> str:
    instructions = (
        "## Instructions\n\n"
        "When finished, emit exactly this block at the end of your response:\n\n"
        f"<{RESULT_TAG}>\nstatus: done\n</{RESULT_TAG}>\n\n"
        "If blocked:\n\n"
        f"<{RESULT_TAG}>\nstatus: blocked\nreason: <why>\n</{RESULT_TAG}>"
    )
    if decompose_enabled:
        instructions += (
            "\n\nIf the task is too large:\n\n"
            f"<{RESULT_TAG}>\nstatus: decompose\nsubtasks:\n- <sub-task 1>\n- <sub-task 2>\n"
            f"</{RESULT_TAG}>"
        )
    return instructions


async def build_prompt(
    task: Task,
    task_file: TaskFile,
    config: RunConfig,
    *,
    retry_context: str | None = None,
    memory: MemoryStore | None = None,
    max_context_tokens: int | None = None,
    plan_file: Path | None = None,
    include_children: bool = True,
) -> str:
    sections = [
        _preamble(config),
        _current_task_section(task, task_file, include_children=include_children),
        _progress_section(task_file, task),
    ]
    if plan_file is not None:
        sections.append(_plan_section(plan_file))
    if memory is not None:
        budget = max_context_tokens
        if budget is None:
            budget = config.limits.max_context_tokens
        memory_section = await _memory_section(task, memory, config, budget)
        if memory_section:
            sections.append(memory_section)
    if retry_context:
        sections.append(_retry_section(retry_context))
    sections.append(result_instructions(config.decompose.enabled))
    return "\n\n".join(sections)


def _shorten(text: str, max_chars: int) -> str:
    if len(text) <= max_chars:
        return text
    return f"{text[:max_chars]}\n... (truncated)"


async def build_prompt_within_budget(
    task: Task,
    task_file: TaskFile,
    config: RunConfig,
    *,
    retry_context: str | None = None,
    memory: MemoryStore | None = None,
    plan_file: Path | None = None,
) -> str:
    """Build the prompt, then trim optional sections until it fits the attempt limit."""
    limit = config.limits.max_prompt_tokens_per_attempt
    prompt = await build_prompt(
        task,
        task_file,
        config,
        retry_context=retry_context,
        memory=memory,
        plan_file=plan_file,
    )
    if estimate_tokens(prompt) <= limit:
        return prompt

    shortened = _shorten(retry_context, SHORT_RETRY_CONTEXT_CHARS) if retry_context else None
    # Memory goes first, then the retry detail, then the children checklist.
    passes = [(retry_context, True), (shortened, True), (shortened, False)]
    for retry_text, include_children in passes:
        prompt = await build_prompt(
            task,
            task_file,
            config,
            retry_context=retry_text,
            plan_file=plan_file,
            include_children=include_children,
        )
        if estimate_tokens(prompt) <= limit:
            logger.info("prompt_trimmed", task_key=task.key, tokens=estimate_tokens(prompt))
            return prompt
    raise PromptBudgetExceeded(estimate_tokens(prompt), limit)


def _parse_block(block: str) -> AgentResult:
    status_match = STATUS_LINE_PATTERN.search(block)
    if status_match is None:
        return AgentResult("blocked", "No status line found in result block", parsed=False)
    status = status_match.group(1).strip().lower()
    if status not in AGENT_STATUSES:
        return AgentResult("blocked", f"Unknown status: {status}", parsed=False)

    reason_match = REASON_LINE_PATTERN.search(block)
    subtasks = tuple(
        item
        for item in (match.strip() for match in SUBTASK_LINE_PATTERN.findall(block))
        if item and not PLACEHOLDER_PATTERN.match(item)
    )
    return AgentResult(
        status,  # type: ignore[arg-type]
        reason_match.group(1).strip() if reason_match else None,
        subtasks,
    )


def parse_result(agent_output: str) -> AgentResult:
    """Return the last well-formed result block. Never raises."""
    blocks = RESULT_BLOCK_PATTERN.findall(agent_output or "")
    if not blocks:
        return AgentResult("blocked", "Agent did not emit structured result", parsed=False)
    last_diagnostic: AgentResult | None = None
    for block in reversed(blocks):
        result = _parse_block(block.strip())
        if result.parsed:
            return result
        if last_diagnostic is None:
            last_diagnostic = result
    return last_diagnostic or AgentResult("blocked", "Unparseable result block", parsed=False)


def build_result_recovery_prompt(decompose_enabled: bool) -> str:
    return (
        "Your previous reply did not end with a valid structured result block.\n"
        "Do not do any more work. Reply with ONLY the block describing the outcome of the "
        "work you already did.\n\n" + result_instructions(decompose_enabled)
    )


def build_retry_context(attempt: Attempt) -> str:
    parts = [f"Previous attempt #{attempt.attempt} result: {attempt.status}"]
    verification = attempt.verification
    if verification is not None:
        parts.append(f"Verification: {verification.summary}")
        if verification.l1_build is False:
            parts.append("- Build command failed")
        if verification.l1_test is False:
            parts.append("- Test command failed")
        if verification.l1_lint is False:
            parts.append("- Lint command failed")
        if verification.l2_ai is False and verification.l2_reason:
            parts.append(f"- AI review: {verification.l2_reason}")
        if verification.command_output:
            parts.extend(
                [
                    "",
                    "=== Error output ===",
                    verification.command_output,
                    "=== End of error output ===",
                    "",
                    "Your previous changes may still be in place. Fix the reported errors "
                    "instead of rewriting from scratch, and run the failing command yourself "
                    "before reporting done.",
                ]
            )
    if attempt.error:
        parts.append(f"Error: {attempt.error}")
    return "\n".join(parts)

