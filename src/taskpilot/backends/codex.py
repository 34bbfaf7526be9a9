from __future__ import annotations

import json
from collections.abc import Callable
from pathlib import Path
from typing import Any

from taskpilot.backends.base import AgentBackend


class CodexBackend(AgentBackend):
    name = "codex"

    def __init__(
        self,
        binary: str = "codex",
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
            "exec",
            "--json",
            "--full-auto",
            "--skip-git-repo-check",
        ]
        if self.model:
            command.extend(["-m", self.model])
        command.append(prompt)
        return command

    def extract_tool_call(self, event: dict[str, Any]) -> str | None:
        item = event.get("item")
        if event.get("type") != "item.started" or not isinstance(item, dict):
            return None
        if item.get("type") == "command_execution":
            return f"shell:{item.get('command', '')}"
        if item.get("type") in {"mcp_tool_call", "function_call"}:
            arguments = json.dumps(item.get("arguments", {}), sort_keys=True, default=str)
            return f"{item.get('tool') or item.get('name', 'tool')}:{arguments}"
        return None

    def extract_content(self, event: dict[str, Any]) -> str:
        item = event.get("item")
        if isinstance(item, dict):
            if event.get("type") == "item.completed" and item.get("type") == "agent_message":
                text = item.get("text")
                return text if isinstance(text, str) else ""
            return ""

        content = event.get("content")
        if isinstance(content, str):
            return content
        if isinstance(content, list):
            parts: list[str] = []
            for entry in content:
                if isinstance(entry, dict):
                    text = entry.get("text")
                    if isinstance(text, str):
                        parts.append(text)
            return "".join(parts)

        message = event.get("message")
        if isinstance(message, str):
            return message
        if isinstance(message, dict):
            msg_content = message.get("content")
            if isinstance(msg_content, str):
                return msg_content
        return ""
