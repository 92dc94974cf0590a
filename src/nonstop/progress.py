from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

from nonstop.phases import current_phase
from nonstop.state.record import effective_status, parse_iso, stories

STATUS_MARKERS = {
    "completed": "[x]",
    "in_progress": "[>]",
    "failed": "[!]",
    "blocked": "[-]",
    "pending": "[ ]",
}


@dataclass(slots=True)
class Progress:
    total: int
    completed: int
    in_progress: int
    failed: int
    percentage: int
    current_unit: str | None
    eta_seconds: int | None

    def to_dict(self) -> dict[str, Any]:
        return {
            "total": self.total,
            "completed": self.completed,
            "in_progress": self.in_progress,
            "failed": self.failed,
            "percentage": self.percentage,
            "current_unit": self.current_unit,
            "eta": format_eta(self.eta_seconds),
        }


def summarize(record: dict[str, Any], now: datetime | None = None) -> Progress:
    statuses = [effective_status(story) for story in stories(record)]
    total = len(statuses)
    completed = statuses.count("completed")
    percentage = (completed * 100 // total) if total else 0

    eta_seconds: int | None = None
    started = parse_iso(record.get("created_at"))
    if started is not None and completed and total > completed:
        elapsed = ((now or datetime.now(UTC)) - started).total_seconds()
        if elapsed > 0:
            eta_seconds = int(elapsed / completed * (total - completed))
    elif total and completed == total:
        eta_seconds = 0

    execution = record.get("execution") if isinstance(record.get("execution"), dict) else {}
    return Progress(
        total=total,
        completed=completed,
        in_progress=statuses.count("in_progress"),
        failed=statuses.count("failed"),
        percentage=percentage,
        current_unit=execution.get("current_unit_path") or None,
        eta_seconds=eta_seconds,
    )


def render_bar(width: int, percentage: int) -> str:
    pct = max(0, min(100, int(percentage)))
    width = max(1, width)
    filled = width * pct // 100
    return "[" + "#" * filled + "-" * (width - filled) + f"] {pct}%"


def format_eta(seconds: int | None) -> str:
    if seconds is None:
        return "calculating"
    if seconds < 60:
        return f"{seconds}s"
    if seconds < 3600:
        return f"{seconds // 60}m {seconds % 60}s"
    return f"{seconds // 3600}h {seconds % 3600 // 60}m"


def render_compact(record: dict[str, Any] | None, now: datetime | None = None) -> str:
    if not record:
        return "[nonstop] No active session"
    progress = summarize(record, now=now)
    current = progress.current_unit or "none"
    return (
        f"[nonstop] {render_bar(20, progress.percentage)} | Current: {current} "
        f"| ETA: {format_eta(progress.eta_seconds)}"
    )


def render_dashboard(record: dict[str, Any], now: datetime | None = None) -> str:
    progress = summarize(record, now=now)
    request = str((record.get("task") or {}).get("original_request") or "")
    lines = [
        f"Task:  {request[:72]}",
        f"Phase: {current_phase(record)}",
        "",
        (
            f"Stories: {progress.completed}/{progress.total} completed "
            f"| {progress.in_progress} running | {progress.failed} failed"
        ),
        render_bar(40, progress.percentage),
        f"ETA: {format_eta(progress.eta_seconds)}",
        "",
    ]
    for story in stories(record):
        status = effective_status(story)
        marker = STATUS_MARKERS.get(status, "[?]")
        lines.append(f"{marker} {story.get('id')}: {story.get('title') or ''}".rstrip())
    if progress.current_unit:
        lines.extend(["", f"Current: {progress.current_unit}"])
    return "\n".join(lines)
