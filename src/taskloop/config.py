from __future__ import annotations

import json
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Literal

BackendName = Literal["claude", "codex"]


@dataclass(slots=True)
class ProjectConfig:
    name: str = "my-project"


@dataclass(slots=True)
class BackendConfig:
    primary: BackendName = "claude"
    fallback: BackendName = "codex"
    max_retries: int = 1
    retry_backoff_seconds: float = 0.5
    timeout_seconds: float = 300.0


@dataclass(slots=True)
class AgentsConfig:
    evaluator_model: str = ""
    worker_model: str = ""


@dataclass(slots=True)
class DialogueConfig:
    max_iterations: int = 3
    plan_min_chars: int = 200


@dataclass(slots=True)
class EvaluatorConfig:
    max_worker_output_chars: int = 12000
    worker_output_tail_chars: int = 4000
    max_signal_lines: int = 40


@dataclass(slots=True)
class PlanConfig:
    title_markers: list[str] = field(default_factory=lambda: ["title", "task"])
    description_markers: list[str] = field(
        default_factory=lambda: ["overview", "description", "summary"]
    )
    milestone_keywords: list[str] = field(
        default_factory=lambda: ["milestone", "step", "plan"]
    )
    max_title_chars: int = 120
    description_chars: int = 500
    description_chars_without_milestones: int = 1000


@dataclass(slots=True)
class StorageConfig:
    workspace_dir: str = "."
    subdirectory: str = ""


@dataclass(slots=True)
class LoggingConfig:
    level: str = "INFO"
    format: str = "%(asctime)s %(levelname)s %(name)s: %(message)s"


@dataclass(slots=True)
class TaskloopConfig:
    project: ProjectConfig = field(default_factory=ProjectConfig)
    backend: BackendConfig = field(default_factory=BackendConfig)
    agents: AgentsConfig = field(default_factory=AgentsConfig)
    dialogue: DialogueConfig = field(default_factory=DialogueConfig)
    evaluator: EvaluatorConfig = field(default_factory=EvaluatorConfig)
    plan: PlanConfig = field(default_factory=PlanConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    @classmethod
    def default(cls) -> TaskloopConfig:
        return cls()

    @classmethod
    def from_dict(cls, data: dict) -> TaskloopConfig:
        return cls(
            project=ProjectConfig(**data.get("project", {})),
            backend=BackendConfig(**data.get("backend", {})),
            agents=AgentsConfig(**data.get("agents", {})),
            dialogue=DialogueConfig(**data.get("dialogue", {})),
            evaluator=EvaluatorConfig(**data.get("evaluator", {})),
            plan=PlanConfig(**data.get("plan", {})),
            storage=StorageConfig(**data.get("storage", {})),
            logging=LoggingConfig(**data.get("logging", {})),
        )

    def to_dict(self) -> dict:
        return {
            "project": {
                "name": self.project.name,
            },
            "backend": {
                "primary": self.backend.primary,
                "fallback": self.backend.fallback,
                "max_retries": self.backend.max_retries,
                "retry_backoff_seconds": self.backend.retry_backoff_seconds,
                "timeout_seconds": self.backend.timeout_seconds,
            },
            "agents": {
                "evaluator_model": self.agents.evaluator_model,
                "worker_model": self.agents.worker_model,
            },
            "dialogue": {
                "max_iterations": self.dialogue.max_iterations,
                "plan_min_chars": self.dialogue.plan_min_chars,
            },
            "evaluator": {
                "max_worker_output_chars": self.evaluator.max_worker_output_chars,
                "worker_output_tail_chars": self.evaluator.worker_output_tail_chars,
                "max_signal_lines": self.evaluator.max_signal_lines,
            },
            "plan": {
                "title_markers": list(self.plan.title_markers),
                "description_markers": list(self.plan.description_markers),
                "milestone_keywords": list(self.plan.milestone_keywords),
                "max_title_chars": self.plan.max_title_chars,
                "description_chars": self.plan.description_chars,
                "description_chars_without_milestones": (
                    self.plan.description_chars_without_milestones
                ),
            },
            "storage": {
                "workspace_dir": self.storage.workspace_dir,
                "subdirectory": self.storage.subdirectory,
            },
            "logging": {
                "level": self.logging.level,
                "format": self.logging.format,
            },
        }


def _toml_value(value: object) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        rendered = f"{value:.3f}".rstrip("0").rstrip(".")
        return rendered if rendered else "0"
    if isinstance(value, list):
        return "[" + ", ".join(_toml_value(item) for item in value) + "]"
    return json.dumps(str(value), ensure_ascii=False)


def dumps_toml(config: TaskloopConfig) -> str:
    data = config.to_dict()
    lines: list[str] = []
    section_order = [
        "project",
        "backend",
        "agents",
        "dialogue",
        "evaluator",
        "plan",
        "storage",
        "logging",
    ]
    for section in section_order:
        lines.append(f"[{section}]")
        for key, value in data[section].items():
            lines.append(f"{key} = {_toml_value(value)}")
        lines.append("")
    return "\n".join(lines).strip() + "\n"


def load_config(path: Path) -> TaskloopConfig:
    if not path.exists():
        return TaskloopConfig.default()
    return TaskloopConfig.from_dict(tomllib.loads(path.read_text(encoding="utf-8")))


def save_config(path: Path, config: TaskloopConfig) -> None:
    path.write_text(dumps_toml(config), encoding="utf-8")
