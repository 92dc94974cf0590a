from __future__ import annotations

import logging
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from nonstop.errors import (
    AgentAlreadyFinished,
    DuplicateAgent,
    RegistryError,
    UnknownAgent,
)
from nonstop.scheduler import UnitLike, plan_batches
from nonstop.state.record import parse_iso, utcnow_iso
from nonstop.state.store import JsonFileStore, read_json, write_json_atomic

logger = logging.getLogger(__name__)

NAMESPACE = "agent-pool"
FINISHED_STATUSES = ("completed", "failed", "timed_out", "cancelled")
_COUNTER_FOR_STATUS = {
    "completed": "successful",
    "failed": "failed",
    "timed_out": "timed_out",
    "cancelled": "cancelled",
}


def _empty_pool() -> dict[str, Any]:
    return {
        "agents": {},
        "counters": {"total": 0, "successful": 0, "failed": 0, "timed_out": 0, "cancelled": 0},
    }


@dataclass(slots=True)
class WorkerHandle:
    agent_id: str
    unit_id: str
    kind: str = "general-purpose"
    status: str = "running"
    started_at: str = ""
    completed_at: str | None = None
    result_ref: str | None = None

    @property
    def finished(self) -> bool:
        return self.status in FINISHED_STATUSES

    @property
    def duration_seconds(self) -> float | None:
        started = parse_iso(self.started_at)
        completed = parse_iso(self.completed_at)
        if started is None or completed is None:
            return None
        return max(0.0, (completed - started).total_seconds())

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> WorkerHandle:
        return cls(
            agent_id=str(payload.get("agent_id") or ""),
            unit_id=str(payload.get("unit_id") or ""),
            kind=str(payload.get("kind") or "general-purpose"),
            status=str(payload.get("status") or "running"),
            started_at=str(payload.get("started_at") or ""),
            completed_at=payload.get("completed_at"),
            result_ref=payload.get("result_ref"),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "agent_id": self.agent_id,
            "unit_id": self.unit_id,
            "kind": self.kind,
            "status": self.status,
            "started_at": self.started_at,
            "completed_at": self.completed_at,
            "result_ref": self.result_ref,
        }


@dataclass(slots=True)
class PoolStats:
    total: int
    running: int
    successful: int
    failed: int
    timed_out: int
    cancelled: int
    success_rate: float
    mean_duration_seconds: float | None

    def to_dict(self) -> dict[str, Any]:
        return {
            "total": self.total,
            "running": self.running,
            "successful": self.successful,
            "failed": self.failed,
            "timed_out": self.timed_out,
            "cancelled": self.cancelled,
            "success_rate": round(self.success_rate, 4),
            "mean_duration_seconds": self.mean_duration_seconds,
        }


class WorkerRegistry:
    """Book-keeping for dispatched workers and their cached results."""

    def __init__(self, files: JsonFileStore, results_dir: Path | None = None) -> None:
        self.files = files
        self.results_dir = results_dir or files.root / "agent-results"

    def _pool(self) -> dict[str, Any]:
        pool = self.files.get_json(NAMESPACE, default=_empty_pool())
        if not isinstance(pool, dict) or not isinstance(pool.get("agents"), dict):
            return _empty_pool()
        pool.setdefault("counters", _empty_pool()["counters"])
        return pool

    def _update(self, updater: Callable[[dict[str, Any]], None]) -> dict[str, Any]:
        def _safe_updater(pool: Any) -> dict[str, Any]:
            if not isinstance(pool, dict) or not isinstance(pool.get("agents"), dict):
                pool = _empty_pool()
            pool.setdefault("counters", _empty_pool()["counters"])
            updater(pool)
            return pool

        return self.files.update_json(NAMESPACE, _safe_updater, default=_empty_pool())

    def result_path(self, agent_id: str) -> Path:
        return self.results_dir / f"{agent_id}.json"

    def register(
        self, agent_id: str, unit_id: str, kind: str = "general-purpose"
    ) -> WorkerHandle:
        handle = WorkerHandle(
            agent_id=agent_id,
            unit_id=unit_id,
            kind=kind or "general-purpose",
            started_at=utcnow_iso(),
        )

        def _register(pool: dict[str, Any]) -> None:
            if agent_id in pool["agents"]:
                raise DuplicateAgent(agent_id)
            pool["agents"][agent_id] = handle.to_dict()
            pool["counters"]["total"] = int(pool["counters"].get("total", 0)) + 1

        self._update(_register)
        logger.info("Registered agent %s for unit %s", agent_id, unit_id)
        return handle

    def record_result(self, agent_id: str, result: Any, status: str = "completed") -> WorkerHandle:
        if status not in FINISHED_STATUSES:
            raise RegistryError(
                f"Unsupported agent status: {status}. Use one of {FINISHED_STATUSES}."
            )
        path = self.result_path(agent_id)
        completed_at = utcnow_iso()

        def _finish(pool: dict[str, Any]) -> None:
            payload = pool["agents"].get(agent_id)
            if not isinstance(payload, dict):
                raise UnknownAgent(agent_id)
            current = str(payload.get("status") or "running")
            if current != "running":
                raise AgentAlreadyFinished(agent_id, current)
            payload["status"] = status
            payload["completed_at"] = completed_at
            payload["result_ref"] = str(path)
            counter = _COUNTER_FOR_STATUS[status]
            pool["counters"][counter] = int(pool["counters"].get(counter, 0)) + 1

        pool = self._update(_finish)
        write_json_atomic(
            path,
            {"agent_id": agent_id, "status": status, "recorded_at": completed_at, "result": result},
        )
        logger.info("Agent %s finished with status %s", agent_id, status)
        return WorkerHandle.from_dict(pool["agents"][agent_id])

    def get(self, agent_id: str) -> WorkerHandle:
        payload = self._pool()["agents"].get(agent_id)
        if not isinstance(payload, dict):
            raise UnknownAgent(agent_id)
        return WorkerHandle.from_dict(payload)

    def get_result(self, agent_id: str) -> Any:
        payload = read_json(self.result_path(agent_id))
        if not isinstance(payload, dict) or "result" not in payload:
            raise UnknownAgent(agent_id)
        return payload["result"]

    def list(self) -> list[WorkerHandle]:
        return [
            WorkerHandle.from_dict(payload)
            for payload in self._pool()["agents"].values()
            if isinstance(payload, dict)
        ]

    def history(self, limit: int = 10) -> list[WorkerHandle]:
        handles = list(reversed(self.list()))
        return handles[: max(0, limit)]

    def stats(self) -> PoolStats:
        pool = self._pool()
        counters = pool["counters"]
        handles = self.list()
        successful = int(counters.get("successful", 0))
        failed = int(counters.get("failed", 0))
        timed_out = int(counters.get("timed_out", 0))
        cancelled = int(counters.get("cancelled", 0))
        finished = successful + failed + timed_out + cancelled
        durations = [
            handle.duration_seconds
            for handle in handles
            if handle.finished and handle.duration_seconds is not None
        ]
        return PoolStats(
            total=int(counters.get("total", 0)),
            running=sum(1 for handle in handles if not handle.finished),
            successful=successful,
            failed=failed,
            timed_out=timed_out,
            cancelled=cancelled,
            success_rate=successful / finished if finished else 0.0,
            mean_duration_seconds=(sum(durations) / len(durations)) if durations else None,
        )

    def cleanup(self, keep: int = 10) -> int:
        """Drop all but the newest ``keep`` finished handles.

        Running handles are always retained. Result files that no retained
        handle refers to are deleted.
        """
        removed: list[str] = []

        def _prune(pool: dict[str, Any]) -> None:
            removed.clear()
            finished = [
                agent_id
                for agent_id, payload in pool["agents"].items()
                if isinstance(payload, dict) and payload.get("status") in FINISHED_STATUSES
            ]
            stale = finished[: max(0, len(finished) - max(0, keep))]
            for agent_id in stale:
                pool["agents"].pop(agent_id, None)
                removed.append(agent_id)

        pool = self._update(_prune)
        retained = set(pool["agents"])
        if self.results_dir.exists():
            for result_file in self.results_dir.glob("*.json"):
                if result_file.stem not in retained:
                    result_file.unlink(missing_ok=True)
        if removed:
            logger.info("Removed %d finished agents from the pool", len(removed))
        return len(removed)

    def reset(self) -> None:
        self.files.delete(NAMESPACE)
        if self.results_dir.exists():
            for result_file in self.results_dir.glob("*.json"):
                result_file.unlink(missing_ok=True)
        logger.info("Agent pool reset")

    def suggest_batches(
        self, units: Iterable[UnitLike], completed: Iterable[str] = ()
    ) -> list[list[str]]:
        return plan_batches(units, completed=completed)
