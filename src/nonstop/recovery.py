"""Work out where an interrupted session should continue.

The resume point is derived from the persisted record alone, so the same
record always yields the same answer.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from nonstop.errors import SchedulingError
from nonstop.phases import PHASES, is_terminal, phase_statuses
from nonstop.progress import Progress, format_eta, summarize
from nonstop.scheduler import remaining_batches
from nonstop.state.record import parse_iso
from nonstop.state.store import StateStore

logger = logging.getLogger(__name__)

# Checked in this order; the most advanced in-progress phase wins.
_IN_PROGRESS_PRECEDENCE = ("verification", "execution", "planning", "preparation")


def resume_phase(record: dict[str, Any]) -> tuple[str, list[str]]:
    """Return ``(phase, conflicts)`` for ``record``.

    ``conflicts`` lists every phase that is in progress when more than one
    is; the resume phase is then the most advanced of them.
    """
    statuses = phase_statuses(record)
    running = [phase for phase in _IN_PROGRESS_PRECEDENCE if statuses[phase] == "in_progress"]
    conflicts = sorted(running, key=PHASES.index) if len(running) > 1 else []
    if running:
        return running[0], conflicts

    for index, phase in enumerate(PHASES):
        if statuses[phase] != "pending":
            continue
        if index == 0 or statuses[PHASES[index - 1]] == "completed":
            return phase, conflicts
    for phase in PHASES:
        if statuses[phase] != "completed":
            return phase, conflicts
    return "verification", conflicts


@dataclass(slots=True)
class RecoveryReport:
    active: bool
    reason: str
    session_id: str | None = None
    phase: str | None = None
    resume_point: str | None = None
    request: str = ""
    progress: Progress | None = None
    conflicts: list[str] = field(default_factory=list)
    updated_at: str | None = None
    remaining_batches: list[list[str]] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "active": self.active,
            "reason": self.reason,
            "session_id": self.session_id,
            "phase": self.phase,
            "resume_point": self.resume_point,
            "request": self.request,
            "progress": self.progress.to_dict() if self.progress else None,
            "conflicts": list(self.conflicts),
            "updated_at": self.updated_at,
            "remaining_batches": [list(batch) for batch in self.remaining_batches],
        }

    def render(self, source: str = "startup") -> str:
        if not self.active:
            return f"[nonstop] {self.reason}"
        lines = [
            "[nonstop] Active session detected",
            f"Session: {self.session_id}",
            f"Task: {self.request[:100]}",
            f"Resume phase: {self.phase}",
        ]
        if self.resume_point:
            lines.append(f"Resume point: {self.resume_point}")
        if self.progress is not None:
            lines.append(
                f"Progress: {self.progress.completed}/{self.progress.total} stories "
                f"({self.progress.percentage}%), ETA {format_eta(self.progress.eta_seconds)}"
            )
        if self.remaining_batches:
            lines.append(
                f"Next batch: {', '.join(self.remaining_batches[0])} "
                f"({len(self.remaining_batches)} batches left)"
            )
        if self.conflicts:
            lines.append(f"Warning: several phases in progress: {', '.join(self.conflicts)}")
        if source in {"compact", "resume"}:
            lines.append(f"Context was compacted; continue from phase {self.phase}.")
        return "\n".join(lines)


class RecoveryDetector:
    def __init__(self, store: StateStore, freshness_hours: float = 4.0) -> None:
        self.store = store
        self.freshness_hours = freshness_hours

    def detect(self, now: datetime | None = None) -> RecoveryReport:
        if not self.store.exists():
            return RecoveryReport(active=False, reason="no active session")
        record = self.store.read()
        session_id = str(record.get("session_id"))
        updated_at = record.get("updated_at")
        request = str((record.get("task") or {}).get("original_request") or "")

        if is_terminal(record):
            return RecoveryReport(
                active=False,
                reason="previous session completed",
                session_id=session_id,
                phase="completed",
                request=request,
                updated_at=updated_at,
            )

        current_time = now or datetime.now(UTC)
        updated = parse_iso(updated_at)
        if updated is not None:
            age_hours = (current_time - updated).total_seconds() / 3600
            if age_hours > self.freshness_hours:
                logger.info("Session %s is stale (%.1fh old)", session_id, age_hours)
                return RecoveryReport(
                    active=False,
                    reason=f"session is stale ({age_hours:.1f}h since last update)",
                    session_id=session_id,
                    request=request,
                    updated_at=updated_at,
                )

        phase, conflicts = resume_phase(record)
        if conflicts:
            logger.warning("Conflicting in-progress phases: %s", ", ".join(conflicts))
        execution = record.get("execution") if isinstance(record.get("execution"), dict) else {}
        resume_point = execution.get("current_unit_path") if phase == "execution" else None
        try:
            batches = remaining_batches(record)
        except SchedulingError as exc:
            logger.warning("Cannot order the remaining units of %s: %s", session_id, exc)
            batches = []
        return RecoveryReport(
            active=True,
            reason="active session",
            session_id=session_id,
            phase=phase,
            resume_point=resume_point or None,
            request=request,
            progress=summarize(record, now=current_time),
            conflicts=conflicts,
            updated_at=updated_at,
            remaining_batches=batches,
        )
