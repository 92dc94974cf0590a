import asyncio
from pathlib import Path
from typing import Any

import pytest

from nonstop.config import NonstopConfig, PhaseGateConfig
from nonstop.errors import (
    AlreadyActive,
    Cancelled,
    CyclicDependency,
    GateFailed,
    NotInitialized,
)
from nonstop.gates import CheckOutcome, CheckRegistry, QualityGatePipeline
from nonstop.metrics import MetricsCollector
from nonstop.orchestrator import Orchestrator
from nonstop.phases import phase_status
from nonstop.planning import JsonPlanner, Planner
from nonstop.state import CheckpointManager, JsonFileStore, StateStore
from nonstop.state.record import add_unit, effective_status, find_unit, stories
from nonstop.workers import CancellationToken, UnitWorker, WorkerRegistry, WorkerResult

PLAN = [
    {"id": "S1", "title": "Schema", "children": [{"id": "S1.T1", "title": "Migration"}]},
    {"id": "S2", "title": "API", "dependencies": ["S1"]},
    {"id": "S3", "title": "Docs"},
]


class FakePlanner(Planner):
    def __init__(self, units: list[dict[str, Any]]) -> None:
        self.units = units
        self.calls: list[tuple[str, dict[str, Any]]] = []

    async def plan(self, request: str, context: dict[str, Any]) -> list[dict[str, Any]]:
        self.calls.append((request, context))
        return [dict(unit) for unit in self.units]


class FakeWorker(UnitWorker):
    def __init__(self, behaviours: dict[str, str] | None = None) -> None:
        self.behaviours = behaviours or {}
        self.calls: list[str] = []

    async def run(
        self,
        unit: dict[str, Any],
        context: dict[str, Any],
        cancel_token: CancellationToken,
    ) -> WorkerResult:
        unit_id = str(unit["id"])
        self.calls.append(unit_id)
        behaviour = self.behaviours.get(unit_id, "ok")
        if behaviour == "fail":
            return WorkerResult(status="failed", errors=[f"{unit_id} broke"])
        if behaviour == "slow":
            await asyncio.sleep(5)
        if behaviour == "cancel":
            cancel_token.cancel("operator stop")
            cancel_token.raise_if_cancelled()
        return WorkerResult(summary=f"done {unit_id}", files_modified=[f"src/{unit_id}.py"])


def _quiet_config() -> NonstopConfig:
    config = NonstopConfig.default()
    config.gates = {
        "pre_execute": PhaseGateConfig(checks=[]),
        "post_execute": PhaseGateConfig(checks=[]),
        "pre_complete": PhaseGateConfig(checks=[]),
    }
    return config


def _orchestrator(
    tmp_path: Path,
    worker: UnitWorker,
    planner: Planner | None = None,
    config: NonstopConfig | None = None,
    checks: CheckRegistry | None = None,
) -> Orchestrator:
    project = tmp_path / "project"
    project.mkdir(exist_ok=True)
    (project / "pyproject.toml").write_text("[project]\nname = 'demo'\n", encoding="utf-8")
    config = config or _quiet_config()
    files = JsonFileStore(tmp_path / "cache")
    store = StateStore(files.root, files=files)
    return Orchestrator(
        store=store,
        checkpoints=CheckpointManager(store),
        registry=WorkerRegistry(files),
        gates=QualityGatePipeline(
            checks or CheckRegistry(), config, files, state_store=store, project_root=project
        ),
        planner=planner or FakePlanner(PLAN),
        worker=worker,
        config=config,
        project_root=project,
    )


def test_run_drives_session_through_every_phase(tmp_path: Path) -> None:
    planner = FakePlanner(PLAN)
    worker = FakeWorker()
    orchestrator = _orchestrator(tmp_path, worker, planner)

    summary = asyncio.run(orchestrator.run("Add reporting"))

    assert summary.status == "completed"
    assert summary.phase == "completed"
    assert summary.total_units == 3
    assert summary.completed_units == 3
    assert summary.batches == 2
    assert summary.checkpoint_id and summary.checkpoint_id.endswith("-complete")
    assert worker.calls.index("S2") > worker.calls.index("S1")
    assert planner.calls[0][0] == "Add reporting"
    assert "python" in planner.calls[0][1]["signals"]

    record = orchestrator.store.read()
    assert orchestrator.store.is_active() is False
    assert find_unit(record, "S1.T1")["status"] == "completed"
    assert record["execution"]["files_modified"] == ["src/S1.py", "src/S2.py", "src/S3.py"]
    assert record["execution"]["current_unit_path"] is None
    assert "python-expert" in record["preparation"]["recommended_advisories"]
    assert (orchestrator.store.archive_dir / f"{summary.session_id}.json").exists()

    names = [info.name for info in orchestrator.checkpoints.list()]
    assert names == ["complete", "before-verification", "batch-2", "batch-1", "after-planning"]
    assert orchestrator.registry.stats().successful == 3


def test_failed_unit_fails_execution_and_resume_retries_it(tmp_path: Path) -> None:
    orchestrator = _orchestrator(tmp_path, FakeWorker({"S2": "fail"}))

    summary = asyncio.run(orchestrator.run("Add reporting"))

    assert summary.status == "failed"
    assert summary.phase == "execution"
    assert summary.failed_units == 1
    record = orchestrator.store.read()
    assert phase_status(record, "execution") == "failed"
    assert effective_status(find_unit(record, "S3")) == "completed"
    assert find_unit(record, "S2")["status"] == "failed"
    assert any(error.get("unit_id") == "S2" for error in record["execution"]["errors"])

    retry_worker = FakeWorker()
    orchestrator.worker = retry_worker
    resumed = asyncio.run(orchestrator.run("", resume=True))

    assert resumed.status == "completed"
    assert resumed.request == "Add reporting"
    assert retry_worker.calls == ["S2"]
    assert all(
        effective_status(story) == "completed" for story in stories(orchestrator.store.read())
    )


def test_cancelled_run_can_be_resumed(tmp_path: Path) -> None:
    orchestrator = _orchestrator(tmp_path, FakeWorker({"S1": "cancel"}))

    with pytest.raises(Cancelled):
        asyncio.run(orchestrator.run("Add reporting"))

    record = orchestrator.store.read()
    assert orchestrator.store.is_active() is True
    assert phase_status(record, "execution") == "in_progress"
    assert find_unit(record, "S1")["status"] == "pending"
    assert orchestrator.registry.stats().cancelled >= 1

    orchestrator.worker = FakeWorker()
    summary = asyncio.run(orchestrator.run("", resume=True))

    assert summary.status == "completed"


def test_resume_starts_at_the_most_advanced_running_phase(tmp_path: Path) -> None:
    worker = FakeWorker()
    planner = FakePlanner(PLAN)
    orchestrator = _orchestrator(tmp_path, worker, planner)
    orchestrator.store.init("Add reporting")

    def _interrupted(record: dict[str, Any]) -> dict[str, Any]:
        record["preparation"].update(status="in_progress", detected_signals=["kept"])
        record["plan"]["status"] = "completed"
        record["execution"]["status"] = "in_progress"
        return add_unit(record, {"id": "S1", "title": "Only story"})

    orchestrator.store.apply(_interrupted)

    summary = asyncio.run(orchestrator.run("", resume=True))

    assert summary.status == "completed"
    assert planner.calls == []
    assert worker.calls == ["S1"]
    record = orchestrator.store.read()
    assert record["preparation"]["detected_signals"] == ["kept"]

def test_timed_out_unit_is_recorded_as_failure(tmp_path: Path) -> None:
    config = _quiet_config()
    config.parallel_execution.worker_timeout_seconds = 0.2
    orchestrator = _orchestrator(tmp_path, FakeWorker({"S3": "slow"}), config=config)

    summary = asyncio.run(orchestrator.run("Add reporting"))

    assert summary.status == "failed"
    assert find_unit(orchestrator.store.read(), "S3")["status"] == "failed"
    assert orchestrator.registry.stats().timed_out == 1


def test_blocking_gate_fails_the_phase(tmp_path: Path) -> None:
    config = _quiet_config()
    config.gates["pre_execute"] = PhaseGateConfig(checks=["always_fail"])
    checks = CheckRegistry()
    checks.register("always_fail", lambda ctx, args: CheckOutcome.failed("red build"))
    worker = FakeWorker()
    orchestrator = _orchestrator(tmp_path, worker, config=config, checks=checks)

    with pytest.raises(GateFailed) as exc_info:
        asyncio.run(orchestrator.run("Add reporting"))

    assert exc_info.value.report.status == "fail"
    assert worker.calls == []
    record = orchestrator.store.read()
    assert phase_status(record, "execution") == "failed"
    assert "pre_execute" in record["execution"]["failure_reason"]


def test_cyclic_plan_fails_planning(tmp_path: Path) -> None:
    planner = FakePlanner(
        [{"id": "S1", "dependencies": ["S2"]}, {"id": "S2", "dependencies": ["S1"]}]
    )
    orchestrator = _orchestrator(tmp_path, FakeWorker(), planner)

    with pytest.raises(CyclicDependency):
        asyncio.run(orchestrator.run("Add reporting"))

    record = orchestrator.store.read()
    assert phase_status(record, "planning") == "failed"
    assert stories(record) == []


def test_json_planner_feeds_the_run(tmp_path: Path) -> None:
    plan_file = tmp_path / "plan.json"
    plan_file.write_text('{"units": [{"id": "S1", "title": "Only story"}]}', encoding="utf-8")
    orchestrator = _orchestrator(tmp_path, FakeWorker(), JsonPlanner(plan_file))

    summary = asyncio.run(orchestrator.run("Single story"))

    assert summary.status == "completed"
    assert summary.total_units == 1


def test_run_guards_session_lifecycle(tmp_path: Path) -> None:
    orchestrator = _orchestrator(tmp_path, FakeWorker())

    with pytest.raises(NotInitialized):
        asyncio.run(orchestrator.run("", resume=True))

    orchestrator.store.init("Someone else's session")
    with pytest.raises(AlreadyActive):
        asyncio.run(orchestrator.run("Add reporting"))


def test_run_feeds_metrics_when_collector_is_attached(tmp_path: Path) -> None:
    orchestrator = _orchestrator(tmp_path, FakeWorker({"S3": "fail"}))
    orchestrator.metrics = MetricsCollector(orchestrator.registry.files)

    summary = asyncio.run(orchestrator.run("Add reporting"))

    assert summary.status == "failed"
    counters = orchestrator.metrics.snapshot()["counters"]
    assert counters["story_complete_success"] == 2
    assert counters["story_complete_failure"] == 1
    assert counters["gate_check_skipped"] == 1
    modified = orchestrator.metrics.snapshot()["file_changes"]["modified"]
    assert [entry["path"] for entry in modified] == ["src/S1.py", "src/S2.py"]
