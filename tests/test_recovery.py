import itertools
from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest

from nonstop.phases import PHASE_KEYS, PHASE_STATUSES, PHASES
from nonstop.recovery import RecoveryDetector, resume_phase
from nonstop.state import StateStore
from nonstop.state.record import add_unit, new_record, set_current


def _record_with(statuses: dict[str, str]) -> dict:
    record = new_record("Ship the feature")
    for phase, status in statuses.items():
        record[PHASE_KEYS[phase]]["status"] = status
    return record


def _expected(statuses: dict[str, str]) -> str:
    for phase in ("verification", "execution", "planning", "preparation"):
        if statuses[phase] == "in_progress":
            return phase
    for index, phase in enumerate(PHASES):
        if statuses[phase] == "pending" and (
            index == 0 or statuses[PHASES[index - 1]] == "completed"
        ):
            return phase
    for phase in PHASES:
        if statuses[phase] != "completed":
            return phase
    return "verification"


@pytest.mark.parametrize(
    "combo", list(itertools.product(PHASE_STATUSES, repeat=len(PHASES)))
)
def test_resume_phase_is_deterministic_for_every_status_combination(combo) -> None:
    statuses = dict(zip(PHASES, combo, strict=True))
    record = _record_with(statuses)

    first = resume_phase(record)
    second = resume_phase(_record_with(statuses))

    assert first == second
    phase, conflicts = first
    assert phase in PHASES
    assert phase == _expected(statuses)
    running = [name for name in PHASES if statuses[name] == "in_progress"]
    assert conflicts == (running if len(running) > 1 else [])


def test_resume_prefers_most_advanced_in_progress_phase() -> None:
    record = _record_with(
        {
            "preparation": "in_progress",
            "planning": "completed",
            "execution": "in_progress",
            "verification": "pending",
        }
    )

    assert resume_phase(record) == ("execution", ["preparation", "execution"])


def test_failed_phase_is_retried() -> None:
    record = _record_with(
        {
            "preparation": "completed",
            "planning": "completed",
            "execution": "failed",
            "verification": "pending",
        }
    )

    assert resume_phase(record) == ("execution", [])


def test_detect_without_record(tmp_path: Path) -> None:
    report = RecoveryDetector(StateStore(tmp_path)).detect()

    assert report.active is False
    assert report.reason == "no active session"
    assert report.render() == "[nonstop] no active session"


def test_detect_completed_session(tmp_path: Path) -> None:
    store = StateStore(tmp_path)
    store.init("done already")

    def _finish(record: dict) -> dict:
        for phase in PHASES:
            record[PHASE_KEYS[phase]]["status"] = "completed"
        return record

    store.apply(_finish)
    report = RecoveryDetector(store).detect()

    assert report.active is False
    assert report.phase == "completed"
    assert report.reason == "previous session completed"


def test_detect_stale_session(tmp_path: Path) -> None:
    store = StateStore(tmp_path)
    store.init("old work")
    later = datetime.now(UTC) + timedelta(hours=5)

    report = RecoveryDetector(store, freshness_hours=4).detect(now=later)

    assert report.active is False
    assert "stale" in report.reason
    assert RecoveryDetector(store, freshness_hours=6).detect(now=later).active is True


def test_detect_active_execution_reports_resume_point(tmp_path: Path) -> None:
    store = StateStore(tmp_path)
    store.init("Build checkout flow")

    def _midway(record: dict) -> dict:
        record["preparation"]["status"] = "completed"
        record["plan"]["status"] = "completed"
        record["execution"]["status"] = "in_progress"
        record = add_unit(record, {"id": "S1", "status": "completed"})
        record = add_unit(record, {"id": "S2", "status": "in_progress"})
        return set_current(record, "S2")

    store.apply(_midway)
    report = RecoveryDetector(store).detect()

    assert report.active is True
    assert report.phase == "execution"
    assert report.resume_point == "S2"
    assert report.progress is not None
    assert report.progress.completed == 1
    assert report.progress.total == 2
    assert report.to_dict()["progress"]["percentage"] == 50

    banner = report.render(source="compact")
    assert "Resume phase: execution" in banner
    assert "Resume point: S2" in banner
    assert "compacted" in banner
    assert "compacted" not in report.render(source="startup")


def test_detect_lists_the_batches_still_to_run(tmp_path: Path) -> None:
    store = StateStore(tmp_path)
    store.init("Build checkout flow")

    def _midway(record: dict) -> dict:
        record["preparation"]["status"] = "completed"
        record["plan"]["status"] = "completed"
        record["execution"]["status"] = "in_progress"
        record = add_unit(record, {"id": "S1", "status": "completed"})
        record = add_unit(record, {"id": "S2", "dependencies": ["S1"]})
        record = add_unit(record, {"id": "S3", "dependencies": ["S2"]})
        return add_unit(record, {"id": "S4"})

    store.apply(_midway)
    report = RecoveryDetector(store).detect()

    assert report.remaining_batches == [["S2", "S4"], ["S3"]]
    assert report.to_dict()["remaining_batches"] == [["S2", "S4"], ["S3"]]
    assert "Next batch: S2, S4 (2 batches left)" in report.render()

def test_detect_warns_about_conflicting_phases(tmp_path: Path) -> None:
    store = StateStore(tmp_path)
    store.init("Conflicted")

    def _conflict(record: dict) -> dict:
        record["preparation"]["status"] = "in_progress"
        record["plan"]["status"] = "in_progress"
        return record

    store.apply(_conflict)
    report = RecoveryDetector(store).detect()

    assert report.phase == "planning"
    assert report.resume_point is None
    assert report.conflicts == ["preparation", "planning"]
    assert "several phases in progress" in report.render()
