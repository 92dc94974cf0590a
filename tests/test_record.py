import pytest

from nonstop.errors import DependencyNotSatisfied, DuplicateUnit, InvalidTransform
from nonstop.state.record import (
    WorkUnit,
    add_error,
    add_invoked_advisory,
    add_modified_files,
    add_unit,
    clear_units,
    effective_status,
    find_unit,
    iter_units,
    new_record,
    normalize_dependencies,
    parse_iso,
    save_preparation,
    set_current,
    set_unit_status,
    story_id_of,
    unmet_dependencies,
)


def _story(unit_id: str, *children: dict, status: str = "pending", deps=None) -> dict:
    return {
        "id": unit_id,
        "title": unit_id,
        "status": status,
        "dependencies": list(deps or []),
        "children": list(children),
    }


def _leaf(unit_id: str, status: str = "pending") -> dict:
    return {"id": unit_id, "title": unit_id, "status": status, "children": []}


def test_work_unit_parses_nested_plan_and_legacy_keys() -> None:
    unit = WorkUnit.from_dict(
        {
            "id": "S1",
            "title": "Login",
            "dependencies": "S0, none",
            "acceptance_criteria": ["form renders"],
            "points": 3,
            "tasks": [{"id": "S1.T1", "subtasks": [{"id": "S1.T1.ST1"}]}],
        }
    )

    assert unit.level == 1
    assert unit.dependencies == ["S0"]
    assert unit.children[0].id == "S1.T1"
    assert unit.children[0].children[0].level == 3
    payload = unit.to_dict()
    assert payload["points"] == 3
    assert payload["acceptance_criteria"] == ["form renders"]
    assert "dependencies" not in payload["children"][0]


def test_work_unit_rejects_missing_id_and_bad_status() -> None:
    with pytest.raises(InvalidTransform):
        WorkUnit.from_dict({"title": "nameless"})
    with pytest.raises(InvalidTransform):
        WorkUnit.from_dict({"id": "S1", "status": "done"})


def test_normalize_dependencies_accepts_strings_and_lists() -> None:
    assert normalize_dependencies(None) == []
    assert normalize_dependencies("S1,S2 S3") == ["S1", "S2", "S3"]
    assert normalize_dependencies("None") == []
    assert normalize_dependencies(["S1", "S1", " S2 "]) == ["S1", "S2"]
    with pytest.raises(InvalidTransform):
        normalize_dependencies(42)


def test_story_id_and_unit_lookup() -> None:
    record = new_record("request")
    record = add_unit(record, _story("S1", _leaf("S1.T1")))

    assert story_id_of("S1.T1.ST2") == "S1"
    assert find_unit(record, "S1.T1")["title"] == "S1.T1"
    assert find_unit(record, "S9") is None
    assert [unit["id"] for unit in iter_units(record["plan"]["units"])] == ["S1", "S1.T1"]


def test_effective_status_never_exceeds_least_advanced_child() -> None:
    assert effective_status(_story("S1", status="completed")) == "completed"
    assert (
        effective_status(
            _story("S1", _leaf("S1.T1", "completed"), _leaf("S1.T2"), status="completed")
        )
        == "in_progress"
    )
    assert (
        effective_status(
            _story("S1", _leaf("S1.T1", "completed"), _leaf("S1.T2", "failed"), status="completed")
        )
        == "failed"
    )
    assert (
        effective_status(_story("S1", _leaf("S1.T1", "completed"), status="in_progress"))
        == "in_progress"
    )
    assert effective_status(_story("S1", _leaf("S1.T1", "completed"), status="completed")) == (
        "completed"
    )


def test_add_unit_rejects_duplicates_and_unknown_parent() -> None:
    record = add_unit(new_record("request"), _story("S1"))

    with pytest.raises(DuplicateUnit):
        add_unit(record, _story("S1"))
    with pytest.raises(InvalidTransform):
        add_unit(record, _leaf("S2.T1"), parent_id="S2")

    record = add_unit(record, _leaf("S1.T1"), parent_id="S1")
    assert find_unit(record, "S1")["children"][0]["id"] == "S1.T1"


def test_set_unit_status_enforces_story_dependencies() -> None:
    record = new_record("request")
    record = add_unit(record, _story("S1", _leaf("S1.T1")))
    record = add_unit(record, _story("S2", _leaf("S2.T1"), deps=["S1"]))

    assert unmet_dependencies(record, "S2.T1") == ["S1"]
    with pytest.raises(DependencyNotSatisfied):
        set_unit_status(record, "S2.T1", "in_progress")
    with pytest.raises(InvalidTransform):
        set_unit_status(record, "S1", "finished")

    record = set_unit_status(record, "S1.T1", "completed")
    record = set_unit_status(record, "S1", "completed")
    record = set_unit_status(record, "S2", "in_progress")
    assert find_unit(record, "S2")["status"] == "in_progress"


def test_blocked_and_pending_skip_the_dependency_check() -> None:
    record = new_record("request")
    record = add_unit(record, _story("S1"))
    record = add_unit(record, _story("S2", deps=["S1"]))

    record = set_unit_status(record, "S2", "blocked")
    assert find_unit(record, "S2")["status"] == "blocked"


def test_record_mutators() -> None:
    record = new_record("request")
    record = add_unit(record, _story("S1"))
    record = set_current(record, "S1.T1")
    record = add_modified_files(record, ["b.py", "a.py", "", "a.py"])
    record = add_error(record, "boom", unit_id="S1")
    record = save_preparation(record, {"python", "testing"}, ["python-expert"])
    record = add_invoked_advisory(record, "python-expert")
    record = add_invoked_advisory(record, "python-expert")

    assert record["execution"]["current_unit_path"] == "S1.T1"
    assert record["execution"]["files_modified"] == ["a.py", "b.py"]
    assert record["execution"]["errors"][0]["unit_id"] == "S1"
    assert record["preparation"]["detected_signals"] == ["python", "testing"]
    assert record["preparation"]["invoked_advisories"] == ["python-expert"]

    record = set_current(record, None)
    record = clear_units(record)
    assert record["execution"]["current_unit_path"] is None
    assert record["plan"]["units"] == []


def test_parse_iso_handles_naive_and_invalid_values() -> None:
    assert parse_iso(None) is None
    assert parse_iso("not a date") is None
    parsed = parse_iso("2026-01-02T03:04:05")
    assert parsed is not None and parsed.tzinfo is not None
    assert parse_iso("2026-01-02T03:04:05Z") == parsed
