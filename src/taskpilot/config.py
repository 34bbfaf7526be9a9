from __future__ import annotations

import json
import tomllib
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Literal

from taskpilot.errors import ConfigError

ScopeGuardMode = Literal["off", "lax", "strict"]

DEFAULT_CONFIG_FILE = "taskpilot.toml"


@dataclass(frozen=True, slots=True)
class RunSection:
    task_file: str = "TASKS.md"
    project_dir: str = "."
    lock_path: str = ""
    dry_run: bool = False


@dataclass(frozen=True, slots=True)
class LimitsConfig:
    max_retries_per_task: int = 3
    max_iterations: int = 200
    task_max_iterations: int = 50
    task_timeout_sec: float = 1200.0
    total_timeout_sec: float = 7200.0
    # 0 disables the token ceiling.
    max_total_tokens: int = 0
    max_prompt_tokens_per_attempt: int = 128_000
    max_context_tokens: int = 8_000
    max_identical_failures: int = 3
    heartbeat_sec: float = 30.0


@dataclass(frozen=True, slots=True)
class DecomposeConfig:
    enabled: bool = True
    max_depth: int = 2
    max_total_tasks: int = 500


@dataclass(frozen=True, slots=True)
class VerificationConfig:
    verify_ai: bool = True
    verify_model: str = ""
    strict_review: bool = False
    build_command: str = ""
    test_command: str = ""
    lint_command: str = ""
    lint_fix_command: str = ""
    command_timeout_sec: float = 180.0
    lint_autofix: bool = True
    scope_guard: ScopeGuardMode = "off"


@dataclass(frozen=True, slots=True)
class PolicyConfig:
    skip_on_fail: bool = False
    skip_on_blocked: bool = True
    rollback_on_fail: bool = False
    aggressive_clean_on_fail: bool = False


@dataclass(frozen=True, slots=True)
class GitConfig:
    auto_commit: bool = True
    branch: bool = False
    allow_dirty: bool = False
    commit_prefix: str = "taskpilot: "
    command_timeout_sec: float = 60.0


@dataclass(frozen=True, slots=True)
class PreflightConfig:
    enabled: bool = False
    requirements_review: bool = True
    discovery_timeout_sec: float = 600.0
    review_timeout_sec: float = 600.0
    max_retries: int = 2
    plan_dir: str = ".agents/tasks"


@dataclass(frozen=True, slots=True)
class MemoryConfig:
    notes_dir: str = ""
    lookup_timeout_sec: float = 5.0
    max_excerpts: int = 10


@dataclass(frozen=True, slots=True)
class RunConfig:
    run: RunSection = field(default_factory=RunSection)
    limits: LimitsConfig = field(default_factory=LimitsConfig)
    decompose: DecomposeConfig = field(default_factory=DecomposeConfig)
    verification: VerificationConfig = field(default_factory=VerificationConfig)
    policy: PolicyConfig = field(default_factory=PolicyConfig)
    git: GitConfig = field(default_factory=GitConfig)
    preflight: PreflightConfig = field(default_factory=PreflightConfig)
    memory: MemoryConfig = field(default_factory=MemoryConfig)

    @classmethod
    def default(cls) -> RunConfig:
        return cls()

    @property
    def project_path(self) -> Path:
        return Path(self.run.project_dir).expanduser().resolve()

    @property
    def task_path(self) -> Path:
        task_file = Path(self.run.task_file).expanduser()
        if not task_file.is_absolute():
            task_file = self.project_path / task_file
        return task_file.resolve()

    @property
    def plan_path(self) -> Path:
        plan_dir = Path(self.preflight.plan_dir)
        if not plan_dir.is_absolute():
            plan_dir = self.project_path / plan_dir
        return plan_dir.resolve()

    @property
    def token_budget(self) -> float:
        if self.limits.max_total_tokens <= 0:
            return float("inf")
        return float(self.limits.max_total_tokens)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> RunConfig:
        unknown = sorted(set(data) - set(SECTION_TYPES))
        if unknown:
            raise ConfigError(f"Unknown config section(s): {', '.join(unknown)}")
        sections = {
            name: _build_section(name, section_type, data.get(name, {}))
            for name, section_type in SECTION_TYPES.items()
        }
        return cls(**sections)

    def to_dict(self) -> dict[str, dict[str, Any]]:
        payload: dict[str, dict[str, Any]] = {}
        for name in SECTION_TYPES:
            section = getattr(self, name)
            payload[name] = {item.name: getattr(section, item.name) for item in fields(section)}
        return payload


SECTION_TYPES: dict[str, type] = {
    "run": RunSection,
    "limits": LimitsConfig,
    "decompose": DecomposeConfig,
    "verification": VerificationConfig,
    "policy": PolicyConfig,
    "git": GitConfig,
    "preflight": PreflightConfig,
    "memory": MemoryConfig,
}


def _build_section(name: str, section_type: type, raw: Any) -> Any:
    if not isinstance(raw, dict):
        raise ConfigError(f"Config section [{name}] must be a table.")
    allowed = {item.name for item in fields(section_type)}
    unknown = sorted(set(raw) - allowed)
    if unknown:
        raise ConfigError(f"Unknown key(s) in [{name}]: {', '.join(unknown)}")
    try:
        return section_type(**raw)
    except TypeError as exc:
        raise ConfigError(f"Invalid [{name}] section: {exc}") from exc


def _toml_value(value: object) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        rendered = f"{value:.3f}".rstrip("0").rstrip(".")
        return rendered if "." in rendered else f"{rendered}.0"
    if isinstance(value, list):
        return "[" + ", ".join(_toml_value(item) for item in value) + "]"
    return json.dumps(str(value), ensure_ascii=False)


def dumps_toml(config: RunConfig) -> str:
    data = config.to_dict()
    lines: list[str] = []
    for section in SECTION_TYPES:
        lines.append(f"[{section}]")
        for key, value in data[section].items():
            lines.append(f"{key} = {_toml_value(value)}")
        lines.append("")
    return "\n".join(lines).strip() + "\n"


def load_config(path: Path) -> RunConfig:
    if not path.exists():
        return RunConfig.default()
    try:
        data = tomllib.loads(path.read_text(encoding="utf-8"))
    except tomllib.TOMLDecodeError as exc:
        raise ConfigError(f"Invalid TOML in {path}: {exc}") from exc
    return RunConfig.from_dict(data)


def save_config(path: Path, config: RunConfig) -> None:
    path.write_text(dumps_toml(config), encoding="utf-8")
