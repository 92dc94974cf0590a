from __future__ import annotations

import json
import os
import tomllib
from dataclasses import dataclass, field
from pathlib import Path

CONFIG_FILENAME = ".nonstop.toml"
CACHE_DIR_ENV = "NONSTOP_CACHE_DIR"
GATE_PHASES = ("pre_execute", "post_execute", "pre_complete")


def default_cache_dir() -> Path:
    return Path.home() / ".claude" / "nonstop-cache"


@dataclass(slots=True)
class ProjectConfig:
    name: str = "my-project"
    test_command: str = "pytest -q"
    lint_command: str = "ruff check ."
    type_check_command: str = ""
    build_command: str = ""
    required_files: list[str] = field(default_factory=lambda: ["pyproject.toml"])


@dataclass(slots=True)
class PhaseGateConfig:
    enabled: bool = True
    checks: list[str] = field(default_factory=list)


def _default_gates() -> dict[str, PhaseGateConfig]:
    return {
        "pre_execute": PhaseGateConfig(checks=["files_exist"]),
        "post_execute": PhaseGateConfig(checks=["lint_clean"]),
        "pre_complete": PhaseGateConfig(checks=["no_type_errors"]),
    }


@dataclass(slots=True)
class CheckpointsConfig:
    auto_checkpoint: bool = True
    keep_last: int = 20


@dataclass(slots=True)
class ParallelExecutionConfig:
    max_agents: int = 3
    worker_timeout_seconds: float = 1800.0


@dataclass(slots=True)
class RecoveryConfig:
    freshness_hours: float = 4.0


@dataclass(slots=True)
class StateConfig:
    cache_dir: str = ""


@dataclass(slots=True)
class NonstopConfig:
    project: ProjectConfig = field(default_factory=ProjectConfig)
    gates: dict[str, PhaseGateConfig] = field(default_factory=_default_gates)
    checkpoints: CheckpointsConfig = field(default_factory=CheckpointsConfig)
    parallel_execution: ParallelExecutionConfig = field(default_factory=ParallelExecutionConfig)
    recovery: RecoveryConfig = field(default_factory=RecoveryConfig)
    state: StateConfig = field(default_factory=StateConfig)

    @classmethod
    def default(cls) -> NonstopConfig:
        return cls()

    @classmethod
    def from_dict(cls, data: dict) -> NonstopConfig:
        gates_data = data.get("gates")
        if isinstance(gates_data, dict):
            gates = {
                str(phase): PhaseGateConfig(**values)
                for phase, values in gates_data.items()
                if isinstance(values, dict)
            }
        else:
            gates = _default_gates()
        return cls(
            project=ProjectConfig(**data.get("project", {})),
            gates=gates,
            checkpoints=CheckpointsConfig(**data.get("checkpoints", {})),
            parallel_execution=ParallelExecutionConfig(**data.get("parallel_execution", {})),
            recovery=RecoveryConfig(**data.get("recovery", {})),
            state=StateConfig(**data.get("state", {})),
        )

    def to_dict(self) -> dict:
        return {
            "project": {
                "name": self.project.name,
                "test_command": self.project.test_command,
                "lint_command": self.project.lint_command,
                "type_check_command": self.project.type_check_command,
                "build_command": self.project.build_command,
                "required_files": list(self.project.required_files),
            },
            "gates": {
                phase: {"enabled": gate.enabled, "checks": list(gate.checks)}
                for phase, gate in self.gates.items()
            },
            "checkpoints": {
                "auto_checkpoint": self.checkpoints.auto_checkpoint,
                "keep_last": self.checkpoints.keep_last,
            },
            "parallel_execution": {
                "max_agents": self.parallel_execution.max_agents,
                "worker_timeout_seconds": self.parallel_execution.worker_timeout_seconds,
            },
            "recovery": {
                "freshness_hours": self.recovery.freshness_hours,
            },
            "state": {
                "cache_dir": self.state.cache_dir,
            },
        }

    def gate_for(self, phase: str) -> PhaseGateConfig:
        return self.gates.get(phase) or PhaseGateConfig(enabled=True, checks=[])


def _render_value(value: object) -> str:
    if isinstance(value, bool):
        return str(value).lower()
    if isinstance(value, (int, float)):
        return repr(value)
    if isinstance(value, list):
        return f"[{', '.join(_render_value(item) for item in value)}]"
    return json.dumps(str(value), ensure_ascii=False)


def _render_table(name: str, values: dict) -> str:
    rows = [f"[{name}]"]
    rows.extend(f"{key} = {_render_value(value)}" for key, value in values.items())
    return "\n".join(rows)


def dumps_toml(config: NonstopConfig) -> str:
    data = config.to_dict()
    gates = data.pop("gates")
    tables = [_render_table(name, values) for name, values in data.items()]
    # A bare [gates] header keeps "no gates" distinct from "use the defaults".
    tables.append("[gates]")
    tables.extend(_render_table(f"gates.{phase}", values) for phase, values in gates.items())
    return "\n\n".join(tables) + "\n"


def load_config(path: Path) -> NonstopConfig:
    if not path.exists():
        return NonstopConfig.default()
    return NonstopConfig.from_dict(tomllib.loads(path.read_text(encoding="utf-8")))


def save_config(path: Path, config: NonstopConfig) -> None:
    path.write_text(dumps_toml(config), encoding="utf-8")


def resolve_cache_dir(
    config: NonstopConfig, override: str | os.PathLike[str] | None = None
) -> Path:
    if override:
        return Path(override).expanduser().resolve()
    env_value = os.environ.get(CACHE_DIR_ENV, "").strip()
    if env_value:
        return Path(env_value).expanduser().resolve()
    if config.state.cache_dir.strip():
        return Path(config.state.cache_dir).expanduser().resolve()
    return default_cache_dir()
