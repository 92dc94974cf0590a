from __future__ import annotations

from collections.abc import Iterable, Mapping
from typing import Any

from nonstop.errors import (
    CyclicDependency,
    DependencyNotSatisfied,
    DuplicateUnit,
    UnknownDependency,
)
from nonstop.state.record import (
    WorkUnit,
    completed_story_ids,
    effective_status,
    normalize_dependencies,
    stories,
    unmet_dependencies,
)

__all__ = [
    "assert_dispatchable",
    "normalize_dependencies",
    "plan_batches",
    "ready_units",
    "remaining_batches",
]

UnitLike = Mapping[str, Any] | WorkUnit


def _unit_graph(units: Iterable[UnitLike]) -> dict[str, list[str]]:
    graph: dict[str, list[str]] = {}
    for unit in units:
        if isinstance(unit, WorkUnit):
            unit_id, dependencies = unit.id, list(unit.dependencies)
        else:
            unit_id = str(unit.get("id") or "")
            dependencies = normalize_dependencies(unit.get("dependencies"))
        if unit_id in graph:
            raise DuplicateUnit(unit_id)
        graph[unit_id] = dependencies
    return graph


def _find_cycle(graph: dict[str, list[str]]) -> list[str]:
    visiting: list[str] = []
    done: set[str] = set()

    def _visit(node: str) -> list[str] | None:
        if node in visiting:
            return visiting[visiting.index(node) :] + [node]
        if node in done:
            return None
        visiting.append(node)
        for dependency in graph.get(node, []):
            if dependency in graph:
                cycle = _visit(dependency)
                if cycle:
                    return cycle
        visiting.pop()
        done.add(node)
        return None

    for node in graph:
        cycle = _visit(node)
        if cycle:
            return cycle
    return []


def plan_batches(
    units: Iterable[UnitLike], completed: Iterable[str] = ()
) -> list[list[str]]:
    """Group units into batches that can run concurrently.

    Every unit in a batch depends only on ``completed`` ids or on units from
    earlier batches.
    """
    graph = _unit_graph(units)
    done = set(completed)
    for unit_id, dependencies in graph.items():
        missing = [dep for dep in dependencies if dep not in graph and dep not in done]
        if missing:
            raise UnknownDependency(unit_id, missing)

    remaining = [unit_id for unit_id in graph if unit_id not in done]
    scheduled = set(done)
    batches: list[list[str]] = []
    while remaining:
        batch = [
            unit_id
            for unit_id in remaining
            if all(dep in scheduled for dep in graph[unit_id])
        ]
        if not batch:
            stuck = {unit_id: graph[unit_id] for unit_id in remaining}
            raise CyclicDependency(remaining, _find_cycle(stuck))
        batches.append(batch)
        scheduled.update(batch)
        remaining = [unit_id for unit_id in remaining if unit_id not in scheduled]
    return batches


def ready_units(record: dict[str, Any]) -> list[str]:
    completed = completed_story_ids(record)
    ready: list[str] = []
    for story in stories(record):
        if effective_status(story) != "pending":
            continue
        dependencies = normalize_dependencies(story.get("dependencies"))
        if all(dep in completed for dep in dependencies):
            ready.append(str(story["id"]))
    return ready


def remaining_batches(record: dict[str, Any]) -> list[list[str]]:
    completed = completed_story_ids(record)
    pending = [story for story in stories(record) if str(story.get("id")) not in completed]
    return plan_batches(pending, completed=completed)


def assert_dispatchable(record: dict[str, Any], unit_id: str) -> None:
    pending = unmet_dependencies(record, unit_id)
    if pending:
        raise DependencyNotSatisfied(unit_id, pending)
