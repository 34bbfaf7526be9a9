"""Preflight: discovery and requirements review before implementation.

Discovery asks a throwaway session whether the task is already done and, if
not, to write a plan file under the plan directory. An optional review pass
then tightens that plan in place. Neither stage may edit source files.
"""

from __future__ import annotations

import hashlib
import json
import re
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Literal
from uuid import uuid4

import structlog

from taskpilot.config import RunConfig
from taskpilot.errors import AgentError, AttemptTimeout, PreflightError, TaskpilotError
from taskpilot.models import PreflightRecord, PreflightStage, PreflightStatus, Task
from taskpilot.session import AgentSession, CancellationToken, SessionFactory, ask_with_deadline

FENCED_JSON_PATTERN = re.compile(r"```(?:json)?\s*(.*?)\s*```", re.DOTALL | re.IGNORECASE)

FORCE_DISCOVERY_DECISION_PROMPT = """STOP. You must return your discovery result NOW.

Return ONLY this JSON (no markdown, no explanation, no tool calls):
{"status":"complete","filename":""}
OR
{"status":"incomplete","filename":"<absolute-path-to-plan-file-you-created>"}

If you wrote a plan file, use that path. If the task is already done, use "complete" with an
empty filename.
JSON only. Nothing else."""

FORCE_REVIEW_DECISION_PROMPT = """STOP. You must return your review result NOW.

Return ONLY this JSON (no markdown, no explanation, no tool calls):
{"status":"ready","filename":"<absolute-path-to-plan-file>"}

Use the plan file path you were reviewing.
JSON only. Nothing else."""


@dataclass(frozen=True, slots=True)
class DiscoveryResult:
    status: Literal["complete", "incomplete"]
    filename: Path | None = None


@dataclass(frozen=True, slots=True)
class ReviewResult:
    filename: Path


class StageFailed(TaskpilotError):
    """A discovery or review exchange failed after spending ``tokens_used``."""

    def __init__(self, cause: TaskpilotError, tokens_used: int) -> None:
        super().__init__(str(cause))
        self.cause = cause
        self.tokens_used = tokens_used

    @property
    def timed_out(self) -> bool:
        return isinstance(self.cause, AttemptTimeout)


@dataclass(slots=True)
class PreflightOutcome:
    already_complete: bool = False
    plan_file: Path | None = None
    records: list[PreflightRecord] = field(default_factory=list)
    tokens_used: int = 0


def make_plan_filename(plan_dir: Path) -> Path:
    now_ms = int(time.time() * 1000)
    digest = hashlib.sha1(f"{now_ms}-{uuid4().hex}".encode()).hexdigest()[:12]
    return plan_dir / f"{now_ms}-{digest}.md"


def is_within_plan_dir(candidate: Path, plan_dir: Path) -> bool:
    return candidate.resolve().is_relative_to(plan_dir.resolve())


def extract_json_object(raw: str) -> str:
    text = raw.strip()
    if text.startswith("{") and text.endswith("}"):
        return text
    fence = FENCED_JSON_PATTERN.search(text)
    if fence:
        body = fence.group(1).strip()
        if body.startswith("{") and body.endswith("}"):
            return body
    first = text.find("{")
    last = text.rfind("}")
    if first >= 0 and last > first:
        return text[first : last + 1]
    raise PreflightError("preflight-json-missing-object")


def _load_object(raw: str) -> dict[str, Any]:
    try:
        payload = json.loads(extract_json_object(raw))
    except json.JSONDecodeError as exc:
        raise PreflightError(f"preflight-json-invalid: {exc.msg}") from exc
    if not isinstance(payload, dict):
        raise PreflightError("preflight-json-not-object")
    return payload


def _resolve_plan_path(filename: str, project_dir: Path, plan_dir: Path, stage: str) -> Path:
    candidate = Path(filename).expanduser()
    if not candidate.is_absolute():
        candidate = project_dir / candidate
    candidate = candidate.resolve()
    if not is_within_plan_dir(candidate, plan_dir):
        raise PreflightError(f"preflight-{stage}-filename-outside-plan-dir")
    return candidate


def parse_discovery_result(raw: str, project_dir: Path, plan_dir: Path) -> DiscoveryResult:
    payload = _load_object(raw)
    status = payload.get("status")
    if status not in {"complete", "incomplete"}:
        raise PreflightError(f"preflight-discovery-invalid-status:{status or ''}")
    filename = payload.get("filename")
    if not isinstance(filename, str):
        raise PreflightError("preflight-discovery-invalid-filename")
    if status == "complete":
        return DiscoveryResult("complete")
    return DiscoveryResult(
        "incomplete",
        _resolve_plan_path(filename, project_dir, plan_dir, "discovery"),
    )


def parse_review_result(raw: str, project_dir: Path, plan_dir: Path) -> ReviewResult:
    payload = _load_object(raw)
    status = payload.get("status")
    if status != "ready":
        raise PreflightError(f"preflight-review-invalid-status:{status or ''}")
    filename = payload.get("filename")
    if not isinstance(filename, str):
        raise PreflightError("preflight-review-invalid-filename")
    return ReviewResult(_resolve_plan_path(filename, project_dir, plan_dir, "review"))


def ensure_plan_file(
    path: Path, task: Task, source: PreflightStage
) -> Literal["existing", "bootstrapped"]:
    """Write a fallback plan when the agent named a file it never wrote."""
    if path.is_file():
        return "existing"
    if path.exists():
        raise PreflightError(f"preflight-plan-not-a-file:{path}")
    path.parent.mkdir(parents=True, exist_ok=True)
    body = "\n".join(
        [
            "# Preflight plan (auto-generated fallback)",
            "",
            f"> Generated because {source} returned a plan filename but did not write a "
            "valid file.",
            "",
            "## Task (verbatim)",
            task.text,
            "",
            "## Missing",
            "- Discovery/review did not persist structured details to disk.",
            "",
            "## Recommendation",
            "- Re-run requirements review to refine this plan before implementation.",
            "- Keep implementation scoped to this task only.",
            "",
            "## Likely files",
            "- TBD",
            "",
        ]
    )
    path.write_text(body, encoding="utf-8")
    return "bootstrapped"


def build_discovery_prompt(
    task: Task,
    *,
    task_file_path: Path,
    project_dir: Path,
    plan_file: Path,
    plan_dir: Path,
    retry_hint: str | None = None,
) -> str:
    phase = " > ".join(task.phase_path) or "N/A"
    retry = ""
    if retry_hint:
        retry = (
            f"\nRETRY CONTEXT: {retry_hint}\n"
            "Keep output minimal, write/update only the plan file above, and return valid JSON.\n"
        )
    return f"""You are running PRE-FLIGHT DISCOVERY for an autonomous coding orchestrator.

CRITICAL: DO NOT COMPLETE THE TASK. DO NOT IMPLEMENT ANY CODE CHANGES.
Your only goals are:
1) Verify whether the task is already fully complete in the current codebase.
2) If incomplete, determine what needs to change and which files are likely involved.

Task metadata:
- Task file: {task_file_path}
- Task line: {task.line}
- Phase: {phase}
- Project dir: {project_dir}

FULL TASK (VERBATIM):
{task.text}

If the task is already complete, return EXACT JSON only:
{{"status":"complete","filename":""}}

If the task is incomplete:
- Create/update this markdown file path exactly: {plan_file}
- You MUST NOT modify any files outside: {plan_dir}
- The markdown MUST include the full task verbatim, what is missing, a concrete
  implementation recommendation, and the files likely to change (or state none).
- Then return EXACT JSON only:
{{"status":"incomplete","filename":"{plan_file}"}}
{retry}
Return JSON only. No markdown fences. No commentary."""


def build_requirements_review_prompt(plan_file: Path) -> str:
    return f"""Please review this plan file and perform a strict peer review:
{plan_file}

Treat it as written by an entry-level developer who may miss edge cases and fail to reuse
existing code. Update the SAME file in place to improve correctness, reuse, and clarity.
Remove ambiguity and tighten the implementation steps. Do not modify any other file.

After review, return EXACT JSON only:
{{"status":"ready","filename":"{plan_file}"}}

Return JSON only. No markdown fences. No commentary."""


class Preflight:
    def __init__(
        self,
        config: RunConfig,
        session_factory: SessionFactory,
        *,
        logger: Any | None = None,
    ) -> None:
        self.config = config
        self.session_factory = session_factory
        self.project_dir = config.project_path
        self.plan_dir = config.plan_path
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    async def _ask(
        self,
        session: AgentSession,
        prompt: str,
        token: CancellationToken,
        timeout: float,
    ) -> tuple[str, int]:
        # A timed-out ask cancels its own token; retries still need the parent.
        ask_token = token.child()
        try:
            reply = await ask_with_deadline(
                session,
                prompt,
                ask_token,
                deadline=time.monotonic() + timeout,
                timeout_sec=timeout,
            )
        finally:
            token.release(ask_token)
        return reply.text, reply.tokens_used

    async def _exchange(
        self,
        stage: PreflightStage,
        prompt: str,
        force_prompt: str,
        parse: Any,
        timeout: float,
        token: CancellationToken,
    ) -> tuple[Any, int]:
        purpose = "discovery" if stage == "discovery" else "review"
        try:
            session = await self.session_factory(purpose)
        except AgentError as exc:
            raise StageFailed(exc, 0) from exc
        tokens = 0
        try:
            text, used = await self._ask(session, prompt, token, timeout)
            tokens += used
            try:
                return parse(text), tokens
            except PreflightError as exc:
                self._logger.info("preflight_force_decision", stage=stage, error=str(exc))
            text, used = await self._ask(session, force_prompt, token, timeout)
            tokens += used
            return parse(text), tokens
        except (AttemptTimeout, PreflightError, AgentError) as exc:
            raise StageFailed(exc, tokens) from exc
        finally:
            try:
                await session.close()
            except (AgentError, OSError) as exc:
                self._logger.warning("preflight_session_close_failed", error=str(exc))

    def _record(
        self,
        outcome: PreflightOutcome,
        task: Task,
        stage: PreflightStage,
        started: float,
        tokens: int,
        status: PreflightStatus,
        *,
        filename: Path | None = None,
        error: str | None = None,
    ) -> None:
        outcome.tokens_used += tokens
        outcome.records.append(
            PreflightRecord(
                task_key=task.key,
                stage=stage,
                duration_sec=round(time.monotonic() - started, 3),
                tokens_used=tokens,
                status=status,
                filename=str(filename) if filename else None,
                error=error,
            )
        )
        self._logger.info(
            "preflight_stage",
            stage=stage,
            task_key=task.key,
            status=status,
            error=error,
        )

    async def run(
        self, task: Task, task_file_path: Path, token: CancellationToken
    ) -> PreflightOutcome:
        settings = self.config.preflight
        outcome = PreflightOutcome()
        self.plan_dir.mkdir(parents=True, exist_ok=True)
        planned = make_plan_filename(self.plan_dir)

        discovery: DiscoveryResult | None = None
        last_error = ""
        for attempt in range(1, settings.max_retries + 2):
            started = time.monotonic()
            prompt = build_discovery_prompt(
                task,
                task_file_path=task_file_path,
                project_dir=self.project_dir,
                plan_file=planned,
                plan_dir=self.plan_dir,
                retry_hint=last_error or None,
            )
            try:
                discovery, tokens = await self._exchange(
                    "discovery",
                    prompt,
                    FORCE_DISCOVERY_DECISION_PROMPT,
                    lambda raw: parse_discovery_result(raw, self.project_dir, self.plan_dir),
                    settings.discovery_timeout_sec,
                    token,
                )
            except StageFailed as exc:
                last_error = str(exc) if exc.timed_out else f"attempt {attempt}: {exc}"
                self._record(
                    outcome,
                    task,
                    "discovery",
                    started,
                    exc.tokens_used,
                    "timeout" if exc.timed_out else "error",
                    error=last_error,
                )
                continue
            self._record(
                outcome,
                task,
                "discovery",
                started,
                tokens,
                discovery.status,
                filename=discovery.filename,
            )
            break

        if discovery is not None and discovery.status == "complete":
            outcome.already_complete = True
            return outcome

        # Without a usable discovery answer the run continues on a stub plan.
        plan_file = planned
        if discovery is not None and discovery.filename is not None:
            plan_file = discovery.filename
        ensure_plan_file(plan_file, task, "discovery")
        outcome.plan_file = plan_file

        if not settings.requirements_review:
            return outcome

        for attempt in range(1, settings.max_retries + 2):
            started = time.monotonic()
            try:
                review, tokens = await self._exchange(
                    "requirements-review",
                    build_requirements_review_prompt(plan_file),
                    FORCE_REVIEW_DECISION_PROMPT,
                    lambda raw: parse_review_result(raw, self.project_dir, self.plan_dir),
                    settings.review_timeout_sec,
                    token,
                )
            except StageFailed as exc:
                self._record(
                    outcome,
                    task,
                    "requirements-review",
                    started,
                    exc.tokens_used,
                    "timeout" if exc.timed_out else "error",
                    error=str(exc) if exc.timed_out else f"attempt {attempt}: {exc}",
                )
                continue
            ensure_plan_file(review.filename, task, "requirements-review")
            outcome.plan_file = review.filename
            self._record(
                outcome,
                task,
                "requirements-review",
                started,
                tokens,
                "ready",
                filename=review.filename,
            )
            break
        return outcome
