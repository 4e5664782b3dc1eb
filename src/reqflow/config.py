from __future__ import annotations

import json
import os
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Literal

StateBackendName = Literal["memory", "json"]

DEFAULT_MODELS = ["gpt-4o-mini", "gpt-4o", "gpt-4.1-mini"]


@dataclass(slots=True)
class ModelsConfig:
    candidates: list[str] = field(default_factory=lambda: list(DEFAULT_MODELS))
    api_key_env: str = "OPENAI_API_KEY"
    max_retries: int = 1
    retry_backoff_seconds: float = 0.5
    attempt_timeout_seconds: float = 30.0
    total_timeout_seconds: float = 60.0
    max_output_tokens: int = 4000
    temperature: float = 0.4
    structured_output: bool = True


@dataclass(slots=True)
class AcquisitionConfig:
    timeout_seconds: float = 10.0
    user_agent: str = "reqflow-requirements-analyzer/0.3 (+https://example.com/reqflow)"
    body_limit: int = 8000
    max_headings: int = 10
    max_links: int = 5


@dataclass(slots=True)
class ExtractionConfig:
    max_functional: int = 8
    max_non_functional: int = 7


@dataclass(slots=True)
class WorkflowConfig:
    architect_due_days: int = 7
    default_acting_user_id: int = 1
    seed_users: bool = True


@dataclass(slots=True)
class ServerConfig:
    host: str = "127.0.0.1"
    port: int = 8000
    job_workers: int = 2


@dataclass(slots=True)
class StateConfig:
    backend: StateBackendName = "memory"
    path: str = ".reqflow/state"


@dataclass(slots=True)
class ReqflowConfig:
    models: ModelsConfig = field(default_factory=ModelsConfig)
    acquisition: AcquisitionConfig = field(default_factory=AcquisitionConfig)
    extraction: ExtractionConfig = field(default_factory=ExtractionConfig)
    workflow: WorkflowConfig = field(default_factory=WorkflowConfig)
    server: ServerConfig = field(default_factory=ServerConfig)
    state: StateConfig = field(default_factory=StateConfig)

    @classmethod
    def default(cls) -> ReqflowConfig:
        return cls()

    @classmethod
    def from_dict(cls, data: dict) -> ReqflowConfig:
        return cls(
            models=ModelsConfig(**data.get("models", {})),
            acquisition=AcquisitionConfig(**data.get("acquisition", {})),
            extraction=ExtractionConfig(**data.get("extraction", {})),
            workflow=WorkflowConfig(**data.get("workflow", {})),
            server=ServerConfig(**data.get("server", {})),
            state=StateConfig(**data.get("state", {})),
        )

    def to_dict(self) -> dict:
        return {
            "models": {
                "candidates": list(self.models.candidates),
                "api_key_env": self.models.api_key_env,
                "max_retries": self.models.max_retries,
                "retry_backoff_seconds": self.models.retry_backoff_seconds,
                "attempt_timeout_seconds": self.models.attempt_timeout_seconds,
                "total_timeout_seconds": self.models.total_timeout_seconds,
                "max_output_tokens": self.models.max_output_tokens,
                "temperature": self.models.temperature,
                "structured_output": self.models.structured_output,
            },
            "acquisition": {
                "timeout_seconds": self.acquisition.timeout_seconds,
                "user_agent": self.acquisition.user_agent,
                "body_limit": self.acquisition.body_limit,
                "max_headings": self.acquisition.max_headings,
                "max_links": self.acquisition.max_links,
            },
            "extraction": {
                "max_functional": self.extraction.max_functional,
                "max_non_functional": self.extraction.max_non_functional,
            },
            "workflow": {
                "architect_due_days": self.workflow.architect_due_days,
                "default_acting_user_id": self.workflow.default_acting_user_id,
                "seed_users": self.workflow.seed_users,
            },
            "server": {
                "host": self.server.host,
                "port": self.server.port,
                "job_workers": self.server.job_workers,
            },
            "state": {
                "backend": self.state.backend,
                "path": self.state.path,
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


def dumps_toml(config: ReqflowConfig) -> str:
    data = config.to_dict()
    lines: list[str] = []
    section_order = ["models", "acquisition", "extraction", "workflow", "server", "state"]
    for section in section_order:
        lines.append(f"[{section}]")
        for key, value in data[section].items():
            lines.append(f"{key} = {_toml_value(value)}")
        lines.append("")
    return "\n".join(lines).strip() + "\n"


def apply_env_overrides(config: ReqflowConfig) -> ReqflowConfig:
    models = os.getenv("REQFLOW_MODELS")
    if models:
        candidates = [item.strip() for item in models.split(",") if item.strip()]
        if candidates:
            config.models.candidates = candidates
    return config


def load_config(path: Path) -> ReqflowConfig:
    if not path.exists():
        return apply_env_overrides(ReqflowConfig.default())
    config = ReqflowConfig.from_dict(tomllib.loads(path.read_text(encoding="utf-8")))
    return apply_env_overrides(config)


def save_config(path: Path, config: ReqflowConfig) -> None:
    path.write_text(dumps_toml(config), encoding="utf-8")
