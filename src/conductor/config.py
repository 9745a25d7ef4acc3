from __future__ import annotations

import json
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Literal

PermissionModeName = Literal["default", "bypass", "dont_ask"]


@dataclass(slots=True)
class BackendConfig:
    primary_command: list[str] = field(default_factory=lambda: ["claude", "-p"])
    fallback_command: list[str] = field(default_factory=list)
    max_retries: int = 1
    retry_backoff_seconds: float = 0.5
    timeout_seconds: float = 90.0


@dataclass(slots=True)
class DispatchConfig:
    max_parallel_workers: int = 4
    fail_fast: bool = False
    worker_timeout_seconds: float = 0.0
    worker_max_attempts: int = 1
    worker_retry_backoff_seconds: float = 0.0


@dataclass(slots=True)
class DecomposerConfig:
    max_attempts: int = 3
    max_subtasks: int = 24


@dataclass(slots=True)
class LoopConfig:
    max_iterations: int = 5
    history_window: int = 3
    max_feedback_chars: int = 4000
    stop_on_regression: bool = False
    pass_threshold: float = 80.0
    evaluator_timeout_seconds: float = 0.0


@dataclass(slots=True)
class GatewayConfig:
    permission_mode: PermissionModeName = "default"
    allow: list[str] = field(default_factory=lambda: ["read_file", "search"])
    deny: list[str] = field(
        default_factory=lambda: ["write_file(.env)", "write_file(secrets/*)", "run_command(rm -rf*)"]
    )
    hook_timeout_seconds: float = 5.0
    callback_timeout_seconds: float = 0.0


@dataclass(slots=True)
class MemoryConfig:
    max_transcript_items: int = 50
    summarize_on_teardown: bool = True


@dataclass(slots=True)
class StateConfig:
    directory: str = ".conductor/state"
    audit_limit: int = 1000


@dataclass(slots=True)
class ConductorConfig:
    backend: BackendConfig = field(default_factory=BackendConfig)
    dispatch: DispatchConfig = field(default_factory=DispatchConfig)
    decomposer: DecomposerConfig = field(default_factory=DecomposerConfig)
    loop: LoopConfig = field(default_factory=LoopConfig)
    gateway: GatewayConfig = field(default_factory=GatewayConfig)
    memory: MemoryConfig = field(default_factory=MemoryConfig)
    state: StateConfig = field(default_factory=StateConfig)

    @classmethod
    def default(cls) -> ConductorConfig:
        return cls()

    @classmethod
    def from_dict(cls, data: dict) -> ConductorConfig:
        return cls(
            backend=BackendConfig(**data.get("backend", {})),
            dispatch=DispatchConfig(**data.get("dispatch", {})),
            decomposer=DecomposerConfig(**data.get("decomposer", {})),
            loop=LoopConfig(**data.get("loop", {})),
            gateway=GatewayConfig(**data.get("gateway", {})),
            memory=MemoryConfig(**data.get("memory", {})),
            state=StateConfig(**data.get("state", {})),
        )

    def to_dict(self) -> dict:
        return {
            "backend": {
                "primary_command": list(self.backend.primary_command),
                "fallback_command": list(self.backend.fallback_command),
                "max_retries": self.backend.max_retries,
                "retry_backoff_seconds": self.backend.retry_backoff_seconds,
                "timeout_seconds": self.backend.timeout_seconds,
            },
            "dispatch": {
                "max_parallel_workers": self.dispatch.max_parallel_workers,
                "fail_fast": self.dispatch.fail_fast,
                "worker_timeout_seconds": self.dispatch.worker_timeout_seconds,
                "worker_max_attempts": self.dispatch.worker_max_attempts,
                "worker_retry_backoff_seconds": self.dispatch.worker_retry_backoff_seconds,
            },
            "decomposer": {
                "max_attempts": self.decomposer.max_attempts,
                "max_subtasks": self.decomposer.max_subtasks,
            },
            "loop": {
                "max_iterations": self.loop.max_iterations,
                "history_window": self.loop.history_window,
                "max_feedback_chars": self.loop.max_feedback_chars,
                "stop_on_regression": self.loop.stop_on_regression,
                "pass_threshold": self.loop.pass_threshold,
                "evaluator_timeout_seconds": self.loop.evaluator_timeout_seconds,
            },
            "gateway": {
                "permission_mode": self.gateway.permission_mode,
                "allow": list(self.gateway.allow),
                "deny": list(self.gateway.deny),
                "hook_timeout_seconds": self.gateway.hook_timeout_seconds,
                "callback_timeout_seconds": self.gateway.callback_timeout_seconds,
            },
            "memory": {
                "max_transcript_items": self.memory.max_transcript_items,
                "summarize_on_teardown": self.memory.summarize_on_teardown,
            },
            "state": {
                "directory": self.state.directory,
                "audit_limit": self.state.audit_limit,
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


def dumps_toml(config: ConductorConfig) -> str:
    data = config.to_dict()
    lines: list[str] = []
    section_order = ["backend", "dispatch", "decomposer", "loop", "gateway", "memory", "state"]
    for section in section_order:
        lines.append(f"[{section}]")
        for key, value in data[section].items():
            lines.append(f"{key} = {_toml_value(value)}")
        lines.append("")
    return "\n".join(lines).strip() + "\n"


def load_config(path: Path) -> ConductorConfig:
    if not path.exists():
        return ConductorConfig.default()
    return ConductorConfig.from_dict(tomllib.loads(path.read_text(encoding="utf-8")))


def save_config(path: Path, config: ConductorConfig) -> None:
    path.write_text(dumps_toml(config), encoding="utf-8")
