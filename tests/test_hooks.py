from pathlib import Path

from nonstop.config import NonstopConfig
from nonstop.hooks import LifecycleHooks
from nonstop.phases import PHASE_KEYS, PHASES
from nonstop.state import CheckpointManager, StateStore


def _hooks(tmp_path: Path, config: NonstopConfig | None = None) -> LifecycleHooks:
    store = StateStore(tmp_path)
    return LifecycleHooks(store, CheckpointManager(store), config)


def _finish(record: dict) -> dict:
    for phase in PHASES:
        record[PHASE_KEYS[phase]]["status"] = "completed"
    return record


def test_hooks_are_noops_without_active_session(tmp_path: Path) -> None:
    hooks = _hooks(tmp_path)

    assert hooks.session_start() == "[nonstop] no active session"
    assert hooks.pre_compact() is None
    assert hooks.subagent_stop("agent-1") is None
    assert hooks.stop() is None
    assert hooks.checkpoints.list() == []


def test_hooks_ignore_completed_session(tmp_path: Path) -> None:
    hooks = _hooks(tmp_path)
    hooks.store.init("finished work")
    hooks.store.apply(_finish)

    assert hooks.pre_compact() is None
    assert hooks.subagent_stop("agent-1") is None
    assert hooks.stop() is None
    assert "previous session completed" in hooks.session_start()


def test_session_start_banner_for_active_session(tmp_path: Path) -> None:
    hooks = _hooks(tmp_path)
    hooks.store.init("Refactor billing")

    banner = hooks.session_start(source="resume")

    assert "Active session detected" in banner
    assert "Task: Refactor billing" in banner
    assert "Resume phase: preparation" in banner
    assert "compacted" in banner


def test_pre_compact_backs_up_and_counts(tmp_path: Path) -> None:
    hooks = _hooks(tmp_path)
    hooks.store.init("request")

    first = hooks.pre_compact()
    hooks.pre_compact()

    assert first is not None and first.exists()
    recovery = hooks.store.read()["recovery"]
    assert recovery["compact_count"] == 2
    assert recovery["last_compact_time"]
    assert len(hooks.store.list_backups()) == 2


def test_subagent_stop_creates_checkpoint_and_prunes(tmp_path: Path) -> None:
    config = NonstopConfig.default()
    config.checkpoints.keep_last = 2
    hooks = _hooks(tmp_path, config)
    hooks.store.init("request")

    ids = [hooks.subagent_stop(f"agent-{index}") for index in range(3)]

    assert all(checkpoint_id and "auto-agent-agent-" in checkpoint_id for checkpoint_id in ids)
    assert [info.checkpoint_id for info in hooks.checkpoints.list()] == [ids[2], ids[1]]


def test_subagent_stop_respects_auto_checkpoint_flag(tmp_path: Path) -> None:
    config = NonstopConfig.default()
    config.checkpoints.auto_checkpoint = False
    hooks = _hooks(tmp_path, config)
    hooks.store.init("request")

    assert hooks.subagent_stop("agent-1") is None
    assert hooks.checkpoints.list() == []


def test_stop_refreshes_record_and_prints_progress(tmp_path: Path) -> None:
    hooks = _hooks(tmp_path)
    hooks.store.init("request")
    revision = hooks.store.revision()

    line = hooks.stop()

    assert line is not None and line.startswith("[nonstop] [")
    assert hooks.store.revision() == revision + 1
