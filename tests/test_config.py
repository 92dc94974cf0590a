import tomllib
from pathlib import Path

import pytest

from nonstop import __version__
from nonstop.config import (
    CACHE_DIR_ENV,
    NonstopConfig,
    PhaseGateConfig,
    default_cache_dir,
    dumps_toml,
    load_config,
    resolve_cache_dir,
    save_config,
)


def test_config_roundtrip(tmp_path: Path) -> None:
    config_path = tmp_path / ".nonstop.toml"
    config = NonstopConfig.default()
    config.project.name = "nonstop-test"
    config.project.test_command = "python -m pytest -x"
    config.project.required_files = ["README.md", "setup.cfg"]
    config.gates["post_execute"] = PhaseGateConfig(enabled=False, checks=["tests_pass"])
    config.checkpoints.keep_last = 5
    config.checkpoints.auto_checkpoint = False
    config.parallel_execution.max_agents = 6
    config.parallel_execution.worker_timeout_seconds = 90.5
    config.recovery.freshness_hours = 1.5
    config.state.cache_dir = "~/custom-cache"

    save_config(config_path, config)
    loaded = load_config(config_path)

    assert loaded.project.name == "nonstop-test"
    assert loaded.project.test_command == "python -m pytest -x"
    assert loaded.project.required_files == ["README.md", "setup.cfg"]
    assert loaded.gates["post_execute"].enabled is False
    assert loaded.gates["post_execute"].checks == ["tests_pass"]
    assert loaded.gates["pre_execute"].checks == ["files_exist"]
    assert loaded.checkpoints.keep_last == 5
    assert loaded.checkpoints.auto_checkpoint is False
    assert loaded.parallel_execution.max_agents == 6
    assert loaded.parallel_execution.worker_timeout_seconds == 90.5
    assert loaded.recovery.freshness_hours == 1.5
    assert loaded.state.cache_dir == "~/custom-cache"


def test_missing_config_file_means_defaults(tmp_path: Path) -> None:
    config = load_config(tmp_path / "absent.toml")

    assert config.checkpoints.auto_checkpoint is True
    assert config.checkpoints.keep_last == 20
    assert config.parallel_execution.max_agents == 3
    assert config.parallel_execution.worker_timeout_seconds == 1800.0
    assert config.recovery.freshness_hours == 4.0
    assert set(config.gates) == {"pre_execute", "post_execute", "pre_complete"}


def test_toml_dump_contains_every_section() -> None:
    rendered = dumps_toml(NonstopConfig.default())

    for section in (
        "[project]",
        "[checkpoints]",
        "[parallel_execution]",
        "[recovery]",
        "[state]",
        "[gates.pre_execute]",
        "[gates.post_execute]",
        "[gates.pre_complete]",
    ):
        assert section in rendered
    assert "worker_timeout_seconds = 1800.0" in rendered
    assert "auto_checkpoint = true" in rendered


def test_gate_for_unknown_phase_is_enabled_and_empty() -> None:
    gate = NonstopConfig.default().gate_for("custom_phase")

    assert gate.enabled is True
    assert gate.checks == []


def test_cache_dir_resolution_order(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    config = NonstopConfig.default()
    monkeypatch.delenv(CACHE_DIR_ENV, raising=False)
    assert resolve_cache_dir(config) == default_cache_dir()

    config.state.cache_dir = str(tmp_path / "from-config")
    assert resolve_cache_dir(config) == (tmp_path / "from-config").resolve()

    monkeypatch.setenv(CACHE_DIR_ENV, str(tmp_path / "from-env"))
    assert resolve_cache_dir(config) == (tmp_path / "from-env").resolve()

    override = tmp_path / "from-cli"
    assert resolve_cache_dir(config, override) == override.resolve()


def test_package_version_constant_matches_pyproject() -> None:
    project_root = Path(__file__).resolve().parents[1]
    pyproject = tomllib.loads((project_root / "pyproject.toml").read_text(encoding="utf-8"))

    assert __version__ == pyproject["project"]["version"]


def test_empty_gates_survive_roundtrip(tmp_path: Path) -> None:
    config_path = tmp_path / ".nonstop.toml"
    config = NonstopConfig.default()
    config.gates = {}

    save_config(config_path, config)

    assert "[gates]" in config_path.read_text(encoding="utf-8")
    assert load_config(config_path).gates == {}


def test_file_without_gates_table_uses_default_gates(tmp_path: Path) -> None:
    config_path = tmp_path / ".nonstop.toml"
    config_path.write_text('[project]\nname = "bare"\n', encoding="utf-8")

    loaded = load_config(config_path)

    assert loaded.project.name == "bare"
    assert set(loaded.gates) == {"pre_execute", "post_execute", "pre_complete"}
