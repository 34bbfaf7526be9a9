from __future__ import annotations

import asyncio
import time
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any, Literal

from taskpilot.backends.base import AgentBackend, BackendExecutionError
from taskpilot.errors import AgentError, AttemptTimeout, RunAborted

SessionPurpose = Literal["attempt", "verify", "discovery", "review"]
CHARS_PER_TOKEN = 4


def estimate_tokens(text: str) -> int:
    if not text:
        return 0
    return (len(text) + CHARS_PER_TOKEN - 1) // CHARS_PER_TOKEN


class CancellationToken:
    """Cooperative cancellation flag that can be awaited and chained.

    A child token is cancelled whenever its parent is, but cancelling a child
    leaves the parent untouched. That lets an attempt timeout cancel the
    in-flight call without aborting the whole run.
    """

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self._children: list[CancellationToken] = []
        self.reason: str | None = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str = "cancelled") -> None:
        if self._event.is_set():
            return
        self.reason = reason
        self._event.set()
        for child in list(self._children):
            child.cancel(reason)

    async def wait(self) -> None:
        await self._event.wait()

    def child(self) -> CancellationToken:
        token = CancellationToken()
        if self.cancelled:
            token.cancel(self.reason or "cancelled")
        else:
            self._children.append(token)
        return token

    def release(self, child: CancellationToken) -> None:
        if child in self._children:
            self._children.remove(child)


@dataclass(frozen=True, slots=True)
class AgentReply:
    text: str
    prompt_tokens: int = 0
    completion_tokens: int = 0

    @property
    def tokens_used(self) -> int:
        return self.prompt_tokens + self.completion_tokens


class AgentSession(ABC):
    """Single-use conversation with a coding agent."""

    @abstractmethod
    async def ask(self, prompt: str, token: CancellationToken) -> AgentReply:
        """Send one prompt and wait for the agent's full reply."""

    @abstractmethod
    async def cancel(self) -> None:
        """Interrupt any in-flight ``ask``."""

    async def close(self) -> None:
        return None

    def set_event_hook(self, hook: Callable[[dict[str, Any]], None]) -> None:
        """Receive advisory events (tool loops, compaction) while a prompt runs."""
        return None


SessionFactory = Callable[[SessionPurpose], Awaitable[AgentSession]]


async def ask_with_deadline(
    session: AgentSession,
    prompt: str,
    token: CancellationToken,
    *,
    deadline: float | None,
    timeout_sec: float,
) -> AgentReply:
    """Race one ask against a monotonic deadline and the cancellation token.

    Whichever fires first wins: the session is cancelled and the pending ask is
    discarded. A cancelled token raises ``RunAborted``; a missed deadline
    cancels the token with reason ``"timeout"`` and raises ``AttemptTimeout``.
    """
    if token.cancelled:
        raise RunAborted(token.reason or "cancelled")
    remaining: float | None = None
    if deadline is not None:
        remaining = deadline - time.monotonic()
        if remaining <= 0:
            raise AttemptTimeout(timeout_sec)

    ask_task = asyncio.ensure_future(session.ask(prompt, token))
    cancel_task = asyncio.ensure_future(token.wait())
    try:
        done, _ = await asyncio.wait(
            {ask_task, cancel_task},
            timeout=remaining,
            return_when=asyncio.FIRST_COMPLETED,
        )
    except asyncio.CancelledError:
        ask_task.cancel()
        raise
    finally:
        cancel_task.cancel()
    if ask_task in done:
        return ask_task.result()

    aborted = token.cancelled
    reason = token.reason
    if not aborted:
        token.cancel("timeout")
    await session.cancel()
    ask_task.cancel()
    await asyncio.gather(ask_task, return_exceptions=True)
    if aborted:
        raise RunAborted(reason or "cancelled")
    raise AttemptTimeout(timeout_sec)


class BackendSession(AgentSession):
    """Runs each prompt through an agent CLI backend."""

    def __init__(self, backend: AgentBackend) -> None:
        self.backend = backend
        self._closed = False

    async def ask(self, prompt: str, token: CancellationToken) -> AgentReply:
        if self._closed:
            raise AgentError("Session is closed.", retriable=False)
        if token.cancelled:
            raise RunAborted(token.reason or "cancelled")

        input_before = self.backend.usage.input_tokens
        output_before = self.backend.usage.output_tokens
        chunks: list[str] = []
        try:
            async for chunk in self.backend.stream(prompt):
                chunks.append(chunk)
                if token.cancelled:
                    await self.backend.terminate()
                    raise RunAborted(token.reason or "cancelled")
        except BackendExecutionError as exc:
            if token.cancelled:
                raise RunAborted(token.reason or "cancelled") from exc
            raise AgentError(str(exc), retriable=exc.retriable) from exc

        text = "".join(chunks)
        prompt_tokens = self.backend.usage.input_tokens - input_before
        completion_tokens = self.backend.usage.output_tokens - output_before
        if prompt_tokens == 0 and completion_tokens == 0:
            prompt_tokens = estimate_tokens(prompt)
            completion_tokens = estimate_tokens(text)
        return AgentReply(
            text=text,
            prompt_tokens=prompt_tokens,
            completion_tokens=completion_tokens,
        )

    async def cancel(self) -> None:
        await self.backend.terminate()

    def set_event_hook(self, hook: Callable[[dict[str, Any]], None]) -> None:
        self.backend.event_hook = hook

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        await self.backend.terminate()
