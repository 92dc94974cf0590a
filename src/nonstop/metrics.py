"""Execution metrics: timers, file changes, events and saved session history.

Phase durations come from the ``started_at``/``completed_at`` stamps the
phase transitions leave on the record; named timers cover anything else.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from nonstop.errors import MetricsError, UnknownTimer
from nonstop.phases import PHASE_KEYS, PHASES
from nonstop.progress import format_eta
from nonstop.state.record import effective_status, parse_iso, stories, utcnow_iso
from nonstop.state.store import JsonFileStore

logger = logging.getLogger(__name__)

NAMESPACE = "metrics"
HISTORY_NAMESPACE = "metrics-history"
FILE_ACTIONS = ("created", "modified", "deleted")
EVENT_STATUSES = ("success", "failure", "skipped")
HISTORY_LIMIT = 10


def _empty_metrics() -> dict[str, Any]:
    return {
        "timings": {},
        "file_changes": {action: [] for action in FILE_ACTIONS},
        "events": [],
        "counters": {},
    }


def _iso(moment: datetime | None) -> str:
    if moment is None:
        return utcnow_iso()
    return moment.astimezone(UTC).replace(microsecond=0).isoformat()


def _seconds_between(start: str | None, end: str | None) -> float | None:
    started, ended = parse_iso(start), parse_iso(end)
    if started is None or ended is None:
        return None
    return max(0.0, (ended - started).total_seconds())


def phase_durations(record: dict[str, Any]) -> dict[str, float | None]:
    durations: dict[str, float | None] = {}
    for phase in PHASES:
        section = record.get(PHASE_KEYS[phase])
        if not isinstance(section, dict):
            durations[phase] = None
            continue
        durations[phase] = _seconds_between(section.get("started_at"), section.get("completed_at"))
    return durations


@dataclass(slots=True)
class MetricsReport:
    session_id: str | None
    request: str
    duration_seconds: float | None
    total_units: int
    completed_units: int
    failed_units: int
    phase_seconds: dict[str, float | None] = field(default_factory=dict)
    files: dict[str, list[str]] = field(default_factory=dict)
    gates_passed: int = 0
    gates_failed: int = 0
    verification_runs: int = 0
    counters: dict[str, int] = field(default_factory=dict)

    @property
    def success_rate(self) -> int:
        return self.completed_units * 100 // self.total_units if self.total_units else 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "session_id": self.session_id,
            "request": self.request,
            "duration_seconds": self.duration_seconds,
            "units": {
                "total": self.total_units,
                "completed": self.completed_units,
                "failed": self.failed_units,
                "success_rate": self.success_rate,
            },
            "phase_seconds": dict(self.phase_seconds),
            "files": {action: list(paths) for action, paths in self.files.items()},
            "gates": {"passed": self.gates_passed, "failed": self.gates_failed},
            "verification_runs": self.verification_runs,
            "counters": dict(self.counters),
        }

    def render(self) -> str:
        def _seconds(value: float | None) -> str:
            return "-" if value is None else format_eta(int(value))

        lines = [
            "NONSTOP SESSION REPORT",
            f"Session: {self.session_id or 'unknown'}",
            f"Task: {self.request[:60]}",
            f"Duration: {_seconds(self.duration_seconds)}",
            "",
            (
                f"Stories: {self.total_units} total | {self.completed_units} completed "
                f"| {self.failed_units} failed | {self.success_rate}% success"
            ),
            "",
            "Timing:",
        ]
        lines.extend(
            f"  {phase:<13} {_seconds(seconds)}" for phase, seconds in self.phase_seconds.items()
        )
        counts = " | ".join(
            f"{action} {len(self.files.get(action, []))}" for action in FILE_ACTIONS
        )
        lines.extend(
            [
                "",
                f"Files: {counts}",
                f"Gate checks: {self.gates_passed} passed, {self.gates_failed} failed",
                f"Verification runs: {self.verification_runs}",
            ]
        )
        for action in ("created", "modified"):
            paths = self.files.get(action) or []
            if paths:
                lines.append(f"Files {action}:")
                lines.extend(f"  {path}" for path in paths[:20])
        return "\n".join(lines)


class MetricsCollector:
    """Timers, file changes and counted events for the current session."""

    def __init__(self, files: JsonFileStore) -> None:
        self.files = files

    def _update(self, updater: Callable[[dict[str, Any]], None]) -> dict[str, Any]:
        def _safe_updater(metrics: Any) -> dict[str, Any]:
            if not isinstance(metrics, dict):
                metrics = _empty_metrics()
            for key, value in _empty_metrics().items():
                metrics.setdefault(key, value)
            updater(metrics)
            return metrics

        return self.files.update_json(NAMESPACE, _safe_updater, default=_empty_metrics())

    def snapshot(self) -> dict[str, Any]:
        metrics = self.files.get_json(NAMESPACE, default=_empty_metrics())
        if not isinstance(metrics, dict):
            return _empty_metrics()
        for key, value in _empty_metrics().items():
            metrics.setdefault(key, value)
        return metrics

    def start_timer(self, name: str, now: datetime | None = None) -> None:
        started_at = _iso(now)

        def _start(metrics: dict[str, Any]) -> None:
            metrics["timings"][name] = {"start": started_at, "end": None, "duration": None}

        self._update(_start)
        logger.debug("Timer %s started", name)

    def end_timer(self, name: str, now: datetime | None = None) -> float:
        ended_at = _iso(now)
        durations: list[float] = []

        def _end(metrics: dict[str, Any]) -> None:
            durations.clear()
            timing = metrics["timings"].get(name)
            if not isinstance(timing, dict):
                raise UnknownTimer(name)
            duration = _seconds_between(timing.get("start"), ended_at) or 0.0
            timing["end"] = ended_at
            timing["duration"] = duration
            durations.append(duration)

        self._update(_end)
        logger.debug("Timer %s ended after %.0fs", name, durations[0])
        return durations[0]

    def duration(self, name: str) -> float | None:
        timing = self.snapshot()["timings"].get(name)
        if not isinstance(timing, dict):
            raise UnknownTimer(name)
        return timing.get("duration")

    def record_file_change(self, action: str, path: str) -> None:
        if action not in FILE_ACTIONS:
            raise MetricsError(f"Unknown file action: {action}. Use one of {FILE_ACTIONS}.")
        recorded_at = utcnow_iso()

        def _record(metrics: dict[str, Any]) -> None:
            entries = [
                entry
                for entry in metrics["file_changes"].get(action) or []
                if isinstance(entry, dict) and entry.get("path") != path
            ]
            entries.append({"path": path, "at": recorded_at})
            metrics["file_changes"][action] = sorted(entries, key=lambda entry: entry["path"])

        self._update(_record)

    def record_event(self, event_type: str, status: str, details: str = "") -> None:
        if status not in EVENT_STATUSES:
            raise MetricsError(f"Unknown event status: {status}. Use one of {EVENT_STATUSES}.")
        recorded_at = utcnow_iso()

        def _record(metrics: dict[str, Any]) -> None:
            metrics["events"].append(
                {"type": event_type, "status": status, "details": details, "at": recorded_at}
            )
            key = f"{event_type}_{status}"
            metrics["counters"][key] = int(metrics["counters"].get(key, 0)) + 1

        self._update(_record)

    def events(self) -> list[dict[str, Any]]:
        return [event for event in self.snapshot()["events"] if isinstance(event, dict)]

    def report(self, record: dict[str, Any] | None, now: datetime | None = None) -> MetricsReport:
        metrics = self.snapshot()
        record = record or {}
        counters = {str(key): int(value) for key, value in metrics["counters"].items()}

        phase_seconds = phase_durations(record)
        for phase, seconds in phase_seconds.items():
            timing = metrics["timings"].get(phase)
            if seconds is None and isinstance(timing, dict):
                phase_seconds[phase] = timing.get("duration")

        verification = record.get("verification")
        finished_at = (
            verification.get("completed_at") if isinstance(verification, dict) else None
        )
        duration = _seconds_between(record.get("created_at"), finished_at or _iso(now))

        statuses = [effective_status(story) for story in stories(record)]
        return MetricsReport(
            session_id=record.get("session_id"),
            request=str((record.get("task") or {}).get("original_request") or ""),
            duration_seconds=duration,
            total_units=len(statuses),
            completed_units=statuses.count("completed"),
            failed_units=statuses.count("failed"),
            phase_seconds=phase_seconds,
            files={
                action: [
                    str(entry.get("path"))
                    for entry in metrics["file_changes"].get(action) or []
                    if isinstance(entry, dict)
                ]
                for action in FILE_ACTIONS
            },
            gates_passed=counters.get("gate_check_success", 0),
            gates_failed=counters.get("gate_check_failure", 0),
            verification_runs=counters.get("verification_success", 0),
            counters=counters,
        )

    def save_to_history(self, session_id: str | None) -> dict[str, Any]:
        entry = {
            "session_id": session_id or "unknown",
            "saved_at": utcnow_iso(),
            "metrics": self.snapshot(),
        }

        def _append(history: Any) -> dict[str, Any]:
            if not isinstance(history, dict) or not isinstance(history.get("sessions"), list):
                history = {"sessions": []}
            history["sessions"].append(entry)
            return history

        self.files.update_json(HISTORY_NAMESPACE, _append, default={"sessions": []})
        logger.info("Saved metrics of session %s to history", entry["session_id"])
        return entry

    def history(self, limit: int = HISTORY_LIMIT) -> list[dict[str, Any]]:
        history = self.files.get_json(HISTORY_NAMESPACE, default={"sessions": []})
        sessions = history.get("sessions") if isinstance(history, dict) else None
        entries = [entry for entry in reversed(sessions or []) if isinstance(entry, dict)]
        entries.sort(key=lambda entry: str(entry.get("saved_at") or ""), reverse=True)
        return entries[: max(0, limit)]

    def reset(self) -> None:
        self.files.delete(NAMESPACE)
        logger.info("Metrics reset")
