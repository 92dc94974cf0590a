"""Top-level phase state machine.

Phases run strictly in order: preparation, planning, execution,
verification. A record whose verification phase is completed is terminal.
"""

from __future__ import annotations

from collections.abc import Callable
from datetime import UTC, datetime
from typing import Any

from nonstop.errors import InvalidPhaseTransition

PHASES = ("preparation", "planning", "execution", "verification")
PHASE_STATUSES = ("pending", "in_progress", "completed", "failed")
# Planning state lives under the record's "plan" key.
PHASE_KEYS = {
    "preparation": "preparation",
    "planning": "plan",
    "execution": "execution",
    "verification": "verification",
}
COMPLETED = "completed"

LEGAL_TRANSITIONS: dict[str, set[str]] = {
    "pending": {"in_progress", "completed"},
    "in_progress": {"in_progress", "completed", "failed"},
    "failed": {"in_progress"},
    "completed": set(),
}


def _validate_phase(phase: str) -> str:
    if phase not in PHASE_KEYS:
        raise InvalidPhaseTransition(phase, "?", "?", reason=f"unknown phase; use {PHASES}")
    return phase


def predecessor(phase: str) -> str | None:
    index = PHASES.index(_validate_phase(phase))
    return PHASES[index - 1] if index > 0 else None


def phase_status(record: dict[str, Any], phase: str) -> str:
    section = record.get(PHASE_KEYS[_validate_phase(phase)])
    if not isinstance(section, dict):
        return "pending"
    status = str(section.get("status") or "pending")
    return status if status in PHASE_STATUSES else "pending"


def phase_statuses(record: dict[str, Any]) -> dict[str, str]:
    return {phase: phase_status(record, phase) for phase in PHASES}


def is_terminal(record: dict[str, Any]) -> bool:
    return phase_status(record, "verification") == "completed"


def current_phase(record: dict[str, Any]) -> str:
    if is_terminal(record):
        return COMPLETED
    statuses = phase_statuses(record)
    for phase in reversed(PHASES):
        if statuses[phase] in {"in_progress", "failed"}:
            return phase
    for phase in PHASES:
        if statuses[phase] != "completed":
            return phase
    return COMPLETED


def set_phase_status(
    phase: str, status: str, *, reason: str | None = None
) -> Callable[[dict[str, Any]], dict[str, Any]]:
    """Return a transform that moves ``phase`` to ``status``.

    Moving into ``in_progress`` or ``completed`` requires the predecessor
    phase to be completed already.
    """
    _validate_phase(phase)
    if status not in PHASE_STATUSES:
        raise InvalidPhaseTransition(phase, "?", status, reason="unknown status")

    def _transform(record: dict[str, Any]) -> dict[str, Any]:
        current = phase_status(record, phase)
        if status not in LEGAL_TRANSITIONS[current]:
            raise InvalidPhaseTransition(phase, current, status)
        previous = predecessor(phase)
        if (
            previous is not None
            and status in {"in_progress", "completed"}
            and phase_status(record, previous) != "completed"
        ):
            raise InvalidPhaseTransition(
                phase, current, status, reason=f"{previous} is not completed"
            )
        section = record.setdefault(PHASE_KEYS[phase], {})
        section["status"] = status
        stamp = datetime.now(UTC).replace(microsecond=0).isoformat()
        if status == "failed" and reason:
            section["failure_reason"] = reason
        elif status == "in_progress":
            section.pop("failure_reason", None)
            section.setdefault("started_at", stamp)
            section.pop("completed_at", None)
        elif status == "completed":
            section.setdefault("started_at", stamp)
            section["completed_at"] = stamp
        return record

    return _transform


def begin_phase(phase: str) -> Callable[[dict[str, Any]], dict[str, Any]]:
    return set_phase_status(phase, "in_progress")


def complete_phase(phase: str) -> Callable[[dict[str, Any]], dict[str, Any]]:
    return set_phase_status(phase, "completed")


def fail_phase(phase: str, reason: str) -> Callable[[dict[str, Any]], dict[str, Any]]:
    return set_phase_status(phase, "failed", reason=reason)
