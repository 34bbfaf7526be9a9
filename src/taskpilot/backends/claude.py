from __future__ import annotations

import json
from collections.abc import Callable
from pathlib import Path
from typing import Any

from taskpilot.backends.base import AgentBackend


class ClaudeCodeBackend(AgentBackend):
    name = "claude"

    def __init__(
        self,
        binary: str = "claude",
        working_directory: Path | None = None,
        *,
        model: str | None = None,
        max_turns: int | None = None,
        event_hook: Callable[[dict[str, Any]], None] | None = None,
    ) -> None:
        super().__init__(
            binary,
            working_directory,
            model=model,
            max_turns=max_turns,
            event_hook=event_hook,
        )

    def build_command(self, prompt: str) -> list[str]:
        command = [
            self.binary,
            "-p",
            prompt,
            "--output-format",
            "stream-json",
            "--verbose",
            "--dangerously-skip-permissions",
        ]
        if self.model:
            command.extend(["--model", self.model])
        if self.max_turns:
            command.extend(["--max-turns", str(self.max_turns)])
        return command

    def extract_content(self, event: dict[str, Any]) -> str:
        # The closing "result" event repeats the assistant text.
        if event.get("type") in {"result", "system"}:
            return ""
        message = event.get("message")
        if isinstance(message, dict):
            return self._text_from_content(message.get("content"))
        content = self._text_from_content(event.get("content"))
        if content:
            return content
        delta = event.get("delta")
        if isinstance(delta, str):
            return delta
        return ""

    def extract_tool_call(self, event: dict[str, Any]) -> str | None:
        message = event.get("message")
        if event.get("type") != "assistant" or not isinstance(message, dict):
            return None
        content = message.get("content")
        if not isinstance(content, list):
            return None
        for item in content:
            if isinstance(item, dict) and item.get("type") == "tool_use":
                arguments = json.dumps(item.get("input", {}), sort_keys=True, default=str)
                return f"{item.get('name', 'tool')}:{arguments}"
        return None

    def is_compaction(self, event: dict[str, Any]) -> bool:
        return event.get("type") == "system" and event.get("subtype") == "compact_boundary"

    @staticmethod
    def extract_usage(event: dict[str, Any]) -> dict[str, Any] | None:
        if event.get("type") != "result":
            return None
        usage = event.get("usage")
        return usage if isinstance(usage, dict) else None

    @staticmethod
    def _text_from_content(content: Any) -> str:
        if isinstance(content, str):
            return content
        if isinstance(content, list):
            parts: list[str] = []
            for item in content:
                if isinstance(item, dict) and item.get("type", "text") == "text":
                    text = item.get("text")
                    if isinstance(text, str):
                        parts.append(text)
            return "".join(parts)
        return ""
