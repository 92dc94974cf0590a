from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any
from uuid import uuid4

from nonstop.advisories import advise
from nonstop.config import NonstopConfig
from nonstop.errors import (
    Cancelled,
    GateFailed,
    InvalidTransform,
    NotInitialized,
    SchedulingError,
)
from nonstop.gates.pipeline import PhaseReport, QualityGatePipeline
from nonstop.metrics import MetricsCollector
from nonstop.phases import (
    PHASES,
    begin_phase,
    complete_phase,
    current_phase,
    fail_phase,
    phase_status,
)
from nonstop.planning import Planner
from nonstop.recovery import resume_phase
from nonstop.scheduler import assert_dispatchable, plan_batches, ready_units
from nonstop.state.checkpoints import CheckpointManager
from nonstop.state.record import (
    WorkUnit,
    add_error,
    add_modified_files,
    add_unit,
    clear_units,
    effective_status,
    find_unit,
    iter_units,
    save_preparation,
    set_current,
    set_unit_status,
    stories,
    utcnow_iso,
)
from nonstop.state.store import StateStore
from nonstop.workers.base import CancellationToken, UnitWorker
from nonstop.workers.dispatch import DispatchOutcome, dispatch_batch
from nonstop.workers.registry import WorkerRegistry

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class RunSummary:
    session_id: str
    request: str
    status: str
    phase: str
    started_at: str
    ended_at: str
    total_units: int
    completed_units: int
    failed_units: int
    batches: int
    checkpoint_id: str | None

    def to_dict(self) -> dict[str, Any]:
        return {
            "session_id": self.session_id,
            "request": self.request,
            "status": self.status,
            "phase": self.phase,
            "started_at": self.started_at,
            "ended_at": self.ended_at,
            "total_units": self.total_units,
            "completed_units": self.completed_units,
            "failed_units": self.failed_units,
            "batches": self.batches,
            "checkpoint_id": self.checkpoint_id,
        }


def _set_subtree(unit: dict[str, Any], status: str) -> None:
    for child in iter_units(unit.get("children") or []):
        child["status"] = status


class Orchestrator:
    """Single-threaded controller that drives a session through all phases."""

    def __init__(
        self,
        store: StateStore,
        checkpoints: CheckpointManager,
        registry: WorkerRegistry,
        gates: QualityGatePipeline,
        planner: Planner,
        worker: UnitWorker,
        config: NonstopConfig,
        project_root: Path,
        metrics: MetricsCollector | None = None,
    ) -> None:
        self.store = store
        self.checkpoints = checkpoints
        self.registry = registry
        self.gates = gates
        self.planner = planner
        self.worker = worker
        self.config = config
        self.project_root = project_root.resolve()
        self.metrics = metrics
        self._batches = 0
        self._last_checkpoint: str | None = None

    def _checkpoint(self, name: str) -> None:
        if not self.config.checkpoints.auto_checkpoint:
            return
        self._last_checkpoint = self.checkpoints.create(name)
        self.checkpoints.cleanup(keep=self.config.checkpoints.keep_last)

    def _enter(self, phase: str) -> None:
        if phase_status(self.store.read(), phase) != "in_progress":
            self.store.apply(begin_phase(phase))
        logger.info("Entering phase %s", phase)

    def _fail(self, phase: str, reason: str) -> None:
        def _transform(record: dict[str, Any]) -> dict[str, Any]:
            record = fail_phase(phase, reason)(record)
            return add_error(record, f"{phase} failed: {reason}")

        self.store.apply(_transform)
        logger.warning("Phase %s failed: %s", phase, reason)

    def _gate(self, gate_phase: str, phase: str) -> PhaseReport:
        report = self.gates.run_phase(gate_phase)
        if self.metrics is not None:
            event_status = {"pass": "success", "fail": "failure"}.get(report.status, "skipped")
            self.metrics.record_event("gate_check", event_status, gate_phase)
        if not report.passed:
            self._fail(phase, f"quality gate {gate_phase} failed ({report.message})")
            raise GateFailed(gate_phase, report)
        return report

    async def _prepare(self) -> None:
        self._enter("preparation")
        signals, advisories = advise(self.project_root)
        self.store.apply(lambda record: save_preparation(record, signals, advisories))
        self.store.apply(complete_phase("preparation"))

    async def _plan(self, request: str) -> None:
        self._enter("planning")
        record = self.store.read()
        if stories(record):
            logger.info("Keeping the existing plan of %d stories", len(stories(record)))
        else:
            preparation = record.get("preparation") or {}
            context = {
                "session_id": record.get("session_id"),
                "project_root": str(self.project_root),
                "signals": list(preparation.get("detected_signals") or []),
                "advisories": list(preparation.get("recommended_advisories") or []),
            }
            try:
                planned = await self.planner.plan(request, context)
                units = [WorkUnit.from_dict(item).to_dict() for item in planned]
                plan_batches(units)
            except (SchedulingError, InvalidTransform) as exc:
                self._fail("planning", str(exc))
                raise

            def _write(record: dict[str, Any]) -> dict[str, Any]:
                record = clear_units(record)
                for unit in units:
                    record = add_unit(record, unit)
                return record

            self.store.apply(_write)
        self.store.apply(complete_phase("planning"))
        self._checkpoint("after-planning")

    def _reset_interrupted(self) -> None:
        def _reset(record: dict[str, Any]) -> dict[str, Any]:
            for story in stories(record):
                if effective_status(story) in {"in_progress", "failed"}:
                    story["status"] = "pending"
                    _set_subtree(story, "pending")
            return set_current(record, None)

        self.store.apply(_reset)

    def _start_batch(self, unit_ids: list[str]) -> list[dict[str, Any]]:
        def _start(record: dict[str, Any]) -> dict[str, Any]:
            for unit_id in unit_ids:
                assert_dispatchable(record, unit_id)
                record = set_unit_status(record, unit_id, "in_progress")
            return set_current(record, ",".join(unit_ids))

        record = self.store.apply(_start)
        return [dict(find_unit(record, unit_id) or {"id": unit_id}) for unit_id in unit_ids]

    def _finish_unit(self, outcome: DispatchOutcome) -> None:
        if outcome.status == "completed":
            status = "completed"
        elif outcome.status == "cancelled":
            status = "pending"
        else:
            status = "failed"

        def _finish(record: dict[str, Any]) -> dict[str, Any]:
            record = set_unit_status(record, outcome.unit_id, status)
            unit = find_unit(record, outcome.unit_id)
            if unit is not None:
                _set_subtree(unit, status)
            if outcome.result is not None:
                record = add_modified_files(record, outcome.result.files_modified)
            if outcome.error and status == "failed":
                record = add_error(record, outcome.error, unit_id=outcome.unit_id)
            return record

        self.store.apply(_finish)
        if self.metrics is not None:
            event_status = {"completed": "success", "pending": "skipped"}.get(status, "failure")
            self.metrics.record_event("story_complete", event_status, outcome.unit_id)
            if outcome.result is not None:
                for path in outcome.result.files_modified:
                    self.metrics.record_file_change("modified", path)

    async def _execute(self, token: CancellationToken) -> bool:
        self._enter("execution")
        self._gate("pre_execute", "execution")
        self._reset_interrupted()

        parallel = self.config.parallel_execution
        while True:
            token.raise_if_cancelled()
            record = self.store.read()
            batch_ids = ready_units(record)
            if not batch_ids:
                break
            units = self._start_batch(batch_ids)
            agents = {unit_id: f"{unit_id}-{uuid4().hex[:8]}" for unit_id in batch_ids}
            for unit_id, agent_id in agents.items():
                self.registry.register(agent_id, unit_id)

            outcomes = await dispatch_batch(
                self.worker,
                units,
                context={
                    "session_id": record.get("session_id"),
                    "project_root": str(self.project_root),
                },
                max_agents=parallel.max_agents,
                timeout_seconds=parallel.worker_timeout_seconds,
                cancel_token=token,
            )
            for outcome in outcomes:
                self.registry.record_result(
                    agents[outcome.unit_id], outcome.to_dict(), status=outcome.status
                )
                self._finish_unit(outcome)
            self.store.apply(lambda record: set_current(record, None))
            self._batches += 1
            self._checkpoint(f"batch-{self._batches}")
            logger.info(
                "Batch %d finished: %s",
                self._batches,
                ", ".join(f"{outcome.unit_id}={outcome.status}" for outcome in outcomes),
            )
            if any(outcome.status == "cancelled" for outcome in outcomes):
                token.cancel("worker cancelled")
                token.raise_if_cancelled()

        record = self.store.read()
        unfinished = [
            str(story.get("id"))
            for story in stories(record)
            if effective_status(story) != "completed"
        ]
        if unfinished:
            self._fail("execution", f"units did not complete: {', '.join(unfinished)}")
            return False
        self._gate("post_execute", "execution")
        self.store.apply(complete_phase("execution"))
        return True

    async def _verify(self) -> None:
        self._enter("verification")
        self._checkpoint("before-verification")
        self._gate("pre_complete", "verification")
        self.store.apply(complete_phase("verification"))
        self._checkpoint("complete")
        self.store.archive()
        if self.metrics is not None:
            self.metrics.record_event("verification", "success")
            self.metrics.save_to_history(self.store.read().get("session_id"))

    async def run(
        self,
        request: str,
        *,
        resume: bool = False,
        cancel_token: CancellationToken | None = None,
    ) -> RunSummary:
        token = cancel_token or CancellationToken()
        started_at = utcnow_iso()
        self._batches = 0
        self._last_checkpoint = None

        start = 0
        if resume:
            if not self.store.is_active():
                raise NotInitialized("No active session to resume.")
            record = self.store.read()
            request = request or str((record.get("task") or {}).get("original_request") or "")
            resume_at, conflicts = resume_phase(record)
            if conflicts:
                logger.warning("Resuming despite conflicting phases: %s", ", ".join(conflicts))
            logger.info("Resuming session %s at phase %s", record.get("session_id"), resume_at)
            start = PHASES.index(resume_at)
        else:
            self.store.init(request)

        status = "completed"
        try:
            for phase in PHASES[start:]:
                if phase_status(self.store.read(), phase) == "completed":
                    continue
                if phase == "preparation":
                    await self._prepare()
                elif phase == "planning":
                    await self._plan(request)
                elif phase == "execution":
                    if not await self._execute(token):
                        status = "failed"
                        break
                else:
                    await self._verify()
        except Cancelled:
            logger.warning("Run cancelled; the session can be resumed")
            raise

        record = self.store.read()
        all_stories = [effective_status(story) for story in stories(record)]
        return RunSummary(
            session_id=str(record.get("session_id")),
            request=request,
            status=status,
            phase=current_phase(record),
            started_at=started_at,
            ended_at=utcnow_iso(),
            total_units=len(all_stories),
            completed_units=all_stories.count("completed"),
            failed_units=all_stories.count("failed"),
            batches=self._batches,
            checkpoint_id=self._last_checkpoint,
        )
