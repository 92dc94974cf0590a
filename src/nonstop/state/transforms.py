"""Compile JSON transform specs into record transforms.

Two forms are accepted::

    {"execution.current_unit_path": "S1.T2", "plan.status": "in_progress"}

    [
      {"op": "set", "path": "plan.status", "value": "completed"},
      {"op": "append", "path": "execution.errors", "value": {"error": "boom"}},
      {"op": "union", "path": "execution.files_modified", "value": ["a.py"]},
      {"op": "unset", "path": "recovery.last_compact_time"},
      {"op": "unit_status", "unit_id": "S1", "status": "completed"},
      {"op": "add_unit", "unit": {"id": "S2"}, "parent_id": null}
    ]
"""

from __future__ import annotations

import json
from collections.abc import Callable
from typing import Any

from nonstop.errors import InvalidTransform
from nonstop.state.record import add_unit, set_unit_status

RecordTransform = Callable[[dict[str, Any]], dict[str, Any]]
OPERATIONS = ("set", "append", "union", "unset", "unit_status", "add_unit")


def _split_path(path: Any) -> list[str]:
    if not isinstance(path, str) or not path.strip():
        raise InvalidTransform(f"Transform path must be a non-empty string: {path!r}")
    parts = path.strip().split(".")
    if any(not part for part in parts):
        raise InvalidTransform(f"Invalid transform path: {path}")
    return parts


def _as_object(node: Any, parts: list[str]) -> dict[str, Any]:
    if not isinstance(node, dict):
        raise InvalidTransform(f"Cannot assign into non-object at '{'.'.join(parts[:-1])}'")
    return node


def _ensure_parent(record: dict[str, Any], parts: list[str]) -> dict[str, Any]:
    node: Any = record
    for part in parts[:-1]:
        if not isinstance(node, dict):
            raise InvalidTransform(f"Cannot descend into non-object at '{part}'")
        node = node.setdefault(part, {})
    return _as_object(node, parts)


def _existing_parent(record: dict[str, Any], parts: list[str]) -> dict[str, Any] | None:
    node: Any = record
    for part in parts[:-1]:
        if not isinstance(node, dict):
            raise InvalidTransform(f"Cannot descend into non-object at '{part}'")
        if part not in node:
            return None
        node = node[part]
    return _as_object(node, parts)


def _set(parts: list[str], value: Any) -> RecordTransform:
    def _transform(record: dict[str, Any]) -> dict[str, Any]:
        parent = _ensure_parent(record, parts)
        parent[parts[-1]] = value
        return record

    return _transform


def _append(parts: list[str], value: Any) -> RecordTransform:
    def _transform(record: dict[str, Any]) -> dict[str, Any]:
        parent = _ensure_parent(record, parts)
        current = parent.setdefault(parts[-1], [])
        if not isinstance(current, list):
            raise InvalidTransform(f"Cannot append to non-list at '{'.'.join(parts)}'")
        current.append(value)
        return record

    return _transform


def _union(parts: list[str], value: Any) -> RecordTransform:
    items = value if isinstance(value, list) else [value]

    def _transform(record: dict[str, Any]) -> dict[str, Any]:
        parent = _ensure_parent(record, parts)
        current = parent.get(parts[-1]) or []
        if not isinstance(current, list):
            raise InvalidTransform(f"Cannot union into non-list at '{'.'.join(parts)}'")
        merged = set(map(str, current))
        merged.update(str(item) for item in items)
        parent[parts[-1]] = sorted(merged)
        return record

    return _transform


def _unset(parts: list[str]) -> RecordTransform:
    def _transform(record: dict[str, Any]) -> dict[str, Any]:
        parent = _existing_parent(record, parts)
        if parent is not None:
            parent.pop(parts[-1], None)
        return record

    return _transform


def _compile_operation(operation: Any) -> RecordTransform:
    if not isinstance(operation, dict):
        raise InvalidTransform(f"Transform operation must be an object: {operation!r}")
    op = operation.get("op")
    if op not in OPERATIONS:
        raise InvalidTransform(f"Unsupported transform op: {op!r}. Use one of {OPERATIONS}.")
    if op == "unit_status":
        unit_id = operation.get("unit_id")
        status = operation.get("status")
        if not isinstance(unit_id, str) or not isinstance(status, str):
            raise InvalidTransform("unit_status needs string 'unit_id' and 'status'.")
        return lambda record: set_unit_status(record, unit_id, status)
    if op == "add_unit":
        unit = operation.get("unit")
        parent_id = operation.get("parent_id")
        if not isinstance(unit, dict):
            raise InvalidTransform("add_unit needs a 'unit' object.")
        return lambda record: add_unit(record, unit, parent_id)

    parts = _split_path(operation.get("path"))
    if op == "unset":
        return _unset(parts)
    if "value" not in operation:
        raise InvalidTransform(f"Operation '{op}' needs a 'value'.")
    value = operation["value"]
    if op == "set":
        return _set(parts, value)
    if op == "append":
        return _append(parts, value)
    return _union(parts, value)


def compile_transform(spec: str | dict[str, Any] | list[Any]) -> RecordTransform:
    if isinstance(spec, str):
        try:
            spec = json.loads(spec)
        except json.JSONDecodeError as exc:
            raise InvalidTransform(f"Transform is not valid JSON: {exc}") from exc

    if isinstance(spec, dict):
        if not spec:
            raise InvalidTransform("Transform object is empty.")
        steps = [_set(_split_path(path), value) for path, value in spec.items()]
    elif isinstance(spec, list):
        if not spec:
            raise InvalidTransform("Transform operation list is empty.")
        steps = [_compile_operation(operation) for operation in spec]
    else:
        raise InvalidTransform("Transform must be a JSON object or a list of operations.")

    def _transform(record: dict[str, Any]) -> dict[str, Any]:
        for step in steps:
            record = step(record)
        return record

    return _transform
