from datetime import UTC, datetime, timedelta

from nonstop.progress import format_eta, render_bar, render_compact, render_dashboard, summarize
from nonstop.state.record import add_unit, new_record, set_current


def _record(*statuses: str) -> dict:
    record = new_record("Build the reporting page")
    record["created_at"] = "2026-01-01T00:00:00+00:00"
    for index, status in enumerate(statuses, start=1):
        record = add_unit(record, {"id": f"S{index}", "title": f"Story {index}", "status": status})
    return record


def test_summarize_counts_and_eta() -> None:
    record = set_current(_record("completed", "in_progress", "failed", "pending"), "S2")
    now = datetime(2026, 1, 1, 1, 0, tzinfo=UTC)

    progress = summarize(record, now=now)

    assert progress.total == 4
    assert progress.completed == 1
    assert progress.in_progress == 1
    assert progress.failed == 1
    assert progress.percentage == 25
    assert progress.current_unit == "S2"
    assert progress.eta_seconds == 3 * 3600


def test_summarize_edge_cases() -> None:
    empty = summarize(_record())
    assert empty.total == 0
    assert empty.percentage == 0
    assert empty.eta_seconds is None

    assert summarize(_record("pending", "pending")).eta_seconds is None
    assert summarize(_record("completed", "completed")).eta_seconds == 0


def test_story_with_unfinished_children_is_not_completed() -> None:
    record = new_record("request")
    record = add_unit(
        record,
        {
            "id": "S1",
            "status": "completed",
            "children": [{"id": "S1.T1", "status": "completed"}, {"id": "S1.T2"}],
        },
    )

    assert summarize(record).completed == 0
    assert summarize(record).in_progress == 1


def test_render_bar_and_eta_format() -> None:
    assert render_bar(10, 50) == "[#####-----] 50%"
    assert render_bar(4, 150) == "[####] 100%"
    assert format_eta(None) == "calculating"
    assert format_eta(42) == "42s"
    assert format_eta(125) == "2m 5s"
    assert format_eta(int(timedelta(hours=2, minutes=3).total_seconds())) == "2h 3m"


def test_render_compact_line() -> None:
    assert render_compact(None) == "[nonstop] No active session"

    line = render_compact(set_current(_record("completed", "pending"), "S2"))
    assert line.startswith("[nonstop] [##########----------] 50%")
    assert "Current: S2" in line
    assert "ETA:" in line


def test_render_dashboard_lists_stories() -> None:
    dashboard = render_dashboard(_record("completed", "failed", "pending"))

    assert "Task:  Build the reporting page" in dashboard
    assert "Phase: preparation" in dashboard
    assert "[x] S1: Story 1" in dashboard
    assert "[!] S2: Story 2" in dashboard
    assert "[ ] S3: Story 3" in dashboard
