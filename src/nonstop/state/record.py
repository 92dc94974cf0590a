from __future__ import annotations

from collections.abc import Iterator
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any
from uuid import uuid4

from nonstop.errors import DependencyNotSatisfied, DuplicateUnit, InvalidTransform

RECORD_VERSION = "2.1"
UNIT_STATUSES = ("pending", "in_progress", "completed", "failed", "blocked")

# Advancement rank used for effective-status roll-up.
_RANK = {"pending": 0, "blocked": 0, "in_progress": 1, "failed": 1, "completed": 2}


def utcnow_iso() -> str:
    return datetime.now(UTC).replace(microsecond=0).isoformat()


def parse_iso(value: str | None) -> datetime | None:
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


def new_record(request: str, *, session_id: str | None = None) -> dict[str, Any]:
    now = utcnow_iso()
    return {
        "version": RECORD_VERSION,
        "session_id": session_id or uuid4().hex,
        "created_at": now,
        "updated_at": now,
        "task": {"original_request": request},
        "preparation": {
            "status": "pending",
            "detected_signals": [],
            "recommended_advisories": [],
            "invoked_advisories": [],
        },
        "plan": {"status": "pending", "units": []},
        "execution": {
            "status": "pending",
            "current_unit_path": None,
            "files_modified": [],
            "errors": [],
        },
        "verification": {"status": "pending", "gates": {}},
        "checkpoints": {"last_checkpoint": None, "checkpoint_list": []},
        "recovery": {"compact_count": 0, "last_compact_time": None},
    }


@dataclass(slots=True)
class WorkUnit:
    id: str
    title: str = ""
    status: str = "pending"
    dependencies: list[str] = field(default_factory=list)
    children: list[WorkUnit] = field(default_factory=list)
    acceptance_criteria: list[str] = field(default_factory=list)
    points: int | None = None

    @property
    def level(self) -> int:
        return len(self.id.split("."))

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> WorkUnit:
        unit_id = str(payload.get("id") or "").strip()
        if not unit_id:
            raise InvalidTransform("Work unit is missing an id.")
        status = str(payload.get("status") or "pending")
        if status not in UNIT_STATUSES:
            raise InvalidTransform(f"Unit {unit_id} has unsupported status: {status}")
        raw_children = payload.get("children")
        if raw_children is None:
            # Older plans nest tasks/subtasks under dedicated keys.
            raw_children = payload.get("tasks") or payload.get("subtasks") or []
        children = [cls.from_dict(item) for item in raw_children if isinstance(item, dict)]
        points = payload.get("points")
        return cls(
            id=unit_id,
            title=str(payload.get("title") or ""),
            status=status,
            dependencies=normalize_dependencies(payload.get("dependencies")),
            children=children,
            acceptance_criteria=[str(item) for item in payload.get("acceptance_criteria") or []],
            points=int(points) if isinstance(points, (int, float)) else None,
        )

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "id": self.id,
            "title": self.title,
            "status": self.status,
            "children": [child.to_dict() for child in self.children],
        }
        if self.level == 1:
            payload["dependencies"] = list(self.dependencies)
            payload["acceptance_criteria"] = list(self.acceptance_criteria)
        if self.points is not None:
            payload["points"] = self.points
        return payload


def normalize_dependencies(value: Any) -> list[str]:
    if value is None:
        return []
    if isinstance(value, str):
        items = [item.strip() for item in value.replace(" ", ",").split(",")]
        return [item for item in items if item and item.lower() != "none"]
    if isinstance(value, (list, tuple, set, frozenset)):
        result: list[str] = []
        for item in value:
            text = str(item).strip()
            if text and text.lower() != "none" and text not in result:
                result.append(text)
        return result
    raise InvalidTransform(f"Unsupported dependencies value: {value!r}")


def story_id_of(unit_id: str) -> str:
    return unit_id.split(".", maxsplit=1)[0]


def stories(record: dict[str, Any]) -> list[dict[str, Any]]:
    plan = record.get("plan")
    if not isinstance(plan, dict):
        return []
    units = plan.get("units")
    if not isinstance(units, list):
        return []
    return [unit for unit in units if isinstance(unit, dict)]


def iter_units(units: list[dict[str, Any]]) -> Iterator[dict[str, Any]]:
    for unit in units:
        if not isinstance(unit, dict):
            continue
        yield unit
        children = unit.get("children")
        if isinstance(children, list):
            yield from iter_units(children)


def find_unit(record: dict[str, Any], unit_id: str) -> dict[str, Any] | None:
    for unit in iter_units(stories(record)):
        if unit.get("id") == unit_id:
            return unit
    return None


def effective_status(unit: dict[str, Any]) -> str:
    own = str(unit.get("status") or "pending")
    children = [child for child in unit.get("children") or [] if isinstance(child, dict)]
    if not children:
        return own
    floor = min((effective_status(child) for child in children), key=lambda s: _RANK.get(s, 0))
    if _RANK.get(own, 0) <= _RANK.get(floor, 0):
        return own
    if floor in {"failed", "blocked"}:
        return floor
    return "in_progress"


def completed_story_ids(record: dict[str, Any]) -> set[str]:
    return {
        str(story["id"]) for story in stories(record) if effective_status(story) == "completed"
    }


def unmet_dependencies(record: dict[str, Any], unit_id: str) -> list[str]:
    story = find_unit(record, story_id_of(unit_id))
    if story is None:
        return []
    completed = completed_story_ids(record)
    dependencies = normalize_dependencies(story.get("dependencies"))
    return [dep for dep in dependencies if dep not in completed]


def set_unit_status(record: dict[str, Any], unit_id: str, status: str) -> dict[str, Any]:
    if status not in UNIT_STATUSES:
        raise InvalidTransform(f"Unsupported unit status: {status}")
    unit = find_unit(record, unit_id)
    if unit is None:
        raise InvalidTransform(f"Unit not found: {unit_id}")
    if status in {"in_progress", "completed", "failed"}:
        pending = unmet_dependencies(record, unit_id)
        if pending:
            raise DependencyNotSatisfied(unit_id, pending)
    unit["status"] = status
    return record


def add_unit(
    record: dict[str, Any], unit: dict[str, Any], parent_id: str | None = None
) -> dict[str, Any]:
    parsed = WorkUnit.from_dict(unit)
    if find_unit(record, parsed.id) is not None:
        raise DuplicateUnit(parsed.id)
    plan = record.setdefault("plan", {"status": "pending", "units": []})
    if parent_id is None:
        plan.setdefault("units", []).append(parsed.to_dict())
        return record
    parent = find_unit(record, parent_id)
    if parent is None:
        raise InvalidTransform(f"Parent unit not found: {parent_id}")
    parent.setdefault("children", []).append(parsed.to_dict())
    return record


def clear_units(record: dict[str, Any]) -> dict[str, Any]:
    record.setdefault("plan", {"status": "pending"})["units"] = []
    return record


def set_current(record: dict[str, Any], unit_path: str | None) -> dict[str, Any]:
    record.setdefault("execution", {})["current_unit_path"] = unit_path or None
    return record


def add_modified_files(record: dict[str, Any], paths: list[str]) -> dict[str, Any]:
    execution = record.setdefault("execution", {})
    files = set(execution.get("files_modified") or [])
    files.update(str(path) for path in paths if str(path).strip())
    execution["files_modified"] = sorted(files)
    return record


def add_error(
    record: dict[str, Any], message: str, *, unit_id: str | None = None
) -> dict[str, Any]:
    entry: dict[str, Any] = {"time": utcnow_iso(), "error": message}
    if unit_id:
        entry["unit_id"] = unit_id
    record.setdefault("execution", {}).setdefault("errors", []).append(entry)
    return record


def save_preparation(
    record: dict[str, Any],
    signals: list[str] | set[str],
    advisories: list[str] | set[str],
) -> dict[str, Any]:
    preparation = record.setdefault("preparation", {})
    preparation["detected_signals"] = sorted(set(signals))
    preparation["recommended_advisories"] = sorted(set(advisories))
    preparation.setdefault("invoked_advisories", [])
    return record


def add_invoked_advisory(record: dict[str, Any], name: str) -> dict[str, Any]:
    preparation = record.setdefault("preparation", {})
    invoked = set(preparation.get("invoked_advisories") or [])
    invoked.add(name)
    preparation["invoked_advisories"] = sorted(invoked)
    return record
