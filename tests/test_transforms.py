import json

import pytest

from nonstop.errors import InvalidTransform
from nonstop.state.record import find_unit, new_record
from nonstop.state.transforms import compile_transform


def test_object_form_sets_dotted_paths() -> None:
    transform = compile_transform(
        {"execution.current_unit_path": "S1.T2", "task.labels.priority": "high"}
    )
    record = transform(new_record("request"))

    assert record["execution"]["current_unit_path"] == "S1.T2"
    assert record["task"]["labels"] == {"priority": "high"}


def test_string_spec_is_parsed_as_json() -> None:
    transform = compile_transform(json.dumps({"recovery.compact_count": 4}))

    assert transform(new_record("request"))["recovery"]["compact_count"] == 4


def test_operation_list_form() -> None:
    spec = [
        {"op": "add_unit", "unit": {"id": "S1", "title": "Login"}},
        {"op": "add_unit", "unit": {"id": "S1.T1"}, "parent_id": "S1"},
        {"op": "unit_status", "unit_id": "S1.T1", "status": "completed"},
        {"op": "append", "path": "execution.errors", "value": {"error": "flaky"}},
        {"op": "union", "path": "execution.files_modified", "value": ["b.py", "a.py"]},
        {"op": "union", "path": "execution.files_modified", "value": "a.py"},
        {"op": "set", "path": "plan.status", "value": "in_progress"},
        {"op": "unset", "path": "recovery.last_compact_time"},
        {"op": "unset", "path": "missing.branch.key"},
    ]
    record = compile_transform(spec)(new_record("request"))

    assert find_unit(record, "S1.T1")["status"] == "completed"
    assert record["execution"]["errors"] == [{"error": "flaky"}]
    assert record["execution"]["files_modified"] == ["a.py", "b.py"]
    assert record["plan"]["status"] == "in_progress"
    assert "last_compact_time" not in record["recovery"]
    assert "missing" not in record


@pytest.mark.parametrize(
    "spec",
    [
        "{broken",
        "42",
        {},
        [],
        [{"op": "explode", "path": "a"}],
        [{"op": "set", "path": "plan.status"}],
        [{"op": "set", "path": "", "value": 1}],
        [{"op": "set", "path": "a..b", "value": 1}],
        [{"op": "unit_status", "unit_id": "S1"}],
        [{"op": "add_unit", "unit": "S1"}],
        ["not an object"],
    ],
)
def test_malformed_specs_are_rejected(spec) -> None:
    with pytest.raises(InvalidTransform):
        compile_transform(spec)


def test_append_to_non_list_fails_at_apply_time() -> None:
    transform = compile_transform([{"op": "append", "path": "plan.status", "value": "x"}])

    with pytest.raises(InvalidTransform):
        transform(new_record("request"))


def test_set_through_scalar_fails() -> None:
    transform = compile_transform({"plan.status.nested": 1})

    with pytest.raises(InvalidTransform):
        transform(new_record("request"))


def test_list_operations_create_missing_branches() -> None:
    transform = compile_transform(
        [
            {"op": "append", "path": "notes.log.entries", "value": "first"},
            {"op": "union", "path": "notes.tags", "value": ["b", "a"]},
        ]
    )

    record = transform(new_record("request"))

    assert record["notes"] == {"log": {"entries": ["first"]}, "tags": ["a", "b"]}


def test_unset_through_scalar_fails() -> None:
    transform = compile_transform([{"op": "unset", "path": "plan.status.nested"}])

    with pytest.raises(InvalidTransform):
        transform(new_record("request"))
