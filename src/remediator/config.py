from __future__ import annotations

import json
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Literal

BackendName = Literal["claude", "openai"]


class ConfigError(RuntimeError):
    """Raised when the configuration file cannot be loaded."""


@dataclass(slots=True)
class ProjectConfig:
    name: str = "my-project"
    workspace_root: str = "."
    programming_language: str = "Java"
    migration_hint: str = ""


@dataclass(slots=True)
class BackendConfig:
    primary: BackendName = "openai"
    fallback: BackendName = "claude"
    max_retries: int = 1
    retry_backoff_seconds: float = 0.5
    timeout_seconds: float = 120.0


@dataclass(slots=True)
class AgentsConfig:
    planner_model: str = "gpt-4o"
    handler_model: str = "gpt-4o"


@dataclass(slots=True)
class WorkflowConfig:
    enabled: bool = True
    agent_mode: bool = False
    drain_interval_seconds: float = 0.1
    settle_seconds: float = 0.5
    max_router_steps: int = 200
    max_tool_rounds: int = 10
    max_task_iterations: int = 3


@dataclass(slots=True)
class LoggingConfig:
    level: str = "INFO"
    file: str = ""


@dataclass(slots=True)
class RemediatorConfig:
    project: ProjectConfig = field(default_factory=ProjectConfig)
    backend: BackendConfig = field(default_factory=BackendConfig)
    agents: AgentsConfig = field(default_factory=AgentsConfig)
    workflow: WorkflowConfig = field(default_factory=WorkflowConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    @classmethod
    def default(cls) -> RemediatorConfig:
        return cls()

    @classmethod
    def from_dict(cls, data: dict) -> RemediatorConfig:
        try:
            return cls(
                project=ProjectConfig(**data.get("project", {})),
                backend=BackendConfig(**data.get("backend", {})),
                agents=AgentsConfig(**data.get("agents", {})),
                workflow=WorkflowConfig(**data.get("workflow", {})),
                logging=LoggingConfig(**data.get("logging", {})),
            )
        except TypeError as exc:
            raise ConfigError(f"Unknown configuration key: {exc}") from exc

    def to_dict(self) -> dict:
        return {
            "project": {
                "name": self.project.name,
                "workspace_root": self.project.workspace_root,
                "programming_language": self.project.programming_language,
                "migration_hint": self.project.migration_hint,
            },
            "backend": {
                "primary": self.backend.primary,
                "fallback": self.backend.fallback,
                "max_retries": self.backend.max_retries,
                "retry_backoff_seconds": self.backend.retry_backoff_seconds,
                "timeout_seconds": self.backend.timeout_seconds,
            },
            "agents": {
                "planner_model": self.agents.planner_model,
                "handler_model": self.agents.handler_model,
            },
            "workflow": {
                "enabled": self.workflow.enabled,
                "agent_mode": self.workflow.agent_mode,
                "drain_interval_seconds": self.workflow.drain_interval_seconds,
                "settle_seconds": self.workflow.settle_seconds,
                "max_router_steps": self.workflow.max_router_steps,
                "max_tool_rounds": self.workflow.max_tool_rounds,
                "max_task_iterations": self.workflow.max_task_iterations,
            },
            "logging": {
                "level": self.logging.level,
                "file": self.logging.file,
            },
        }


def _toml_value(value: object) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        rendered = f"{value:.3f}".rstrip("0").rstrip(".")
        if not rendered:
            return "0.0"
        return rendered if "." in rendered else f"{rendered}.0"
    if isinstance(value, list):
        return "[" + ", ".join(_toml_value(item) for item in value) + "]"
    return json.dumps(str(value), ensure_ascii=False)


def dumps_toml(config: RemediatorConfig) -> str:
    data = config.to_dict()
    lines: list[str] = []
    section_order = ["project", "backend", "agents", "workflow", "logging"]
    for section in section_order:
        lines.append(f"[{section}]")
        for key, value in data[section].items():
            lines.append(f"{key} = {_toml_value(value)}")
        lines.append("")
    return "\n".join(lines).strip() + "\n"


def load_config(path: Path) -> RemediatorConfig:
    if not path.exists():
        return RemediatorConfig.default()
    try:
        payload = tomllib.loads(path.read_text(encoding="utf-8"))
    except tomllib.TOMLDecodeError as exc:
        raise ConfigError(f"Invalid TOML in {path}: {exc}") from exc
    return RemediatorConfig.from_dict(payload)


def save_config(path: Path, config: RemediatorConfig) -> None:
    path.write_text(dumps_toml(config), encoding="utf-8")
