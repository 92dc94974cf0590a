from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any

from nonstop.errors import Cancelled
from nonstop.state.record import utcnow_iso
from nonstop.workers.base import CancellationToken, UnitWorker, WorkerResult

logger = logging.getLogger(__name__)

OUTCOME_STATUSES = ("completed", "failed", "timed_out", "cancelled")


@dataclass(slots=True)
class DispatchOutcome:
    unit_id: str
    status: str
    result: WorkerResult | None = None
    error: str | None = None
    started_at: str | None = None
    completed_at: str | None = None

    @property
    def ok(self) -> bool:
        return self.status == "completed"

    def to_dict(self) -> dict[str, Any]:
        return {
            "unit_id": self.unit_id,
            "status": self.status,
            "result": self.result.to_dict() if self.result else None,
            "error": self.error,
            "started_at": self.started_at,
            "completed_at": self.completed_at,
        }


async def _run_unit(
    worker: UnitWorker,
    unit: dict[str, Any],
    *,
    context: dict[str, Any],
    semaphore: asyncio.Semaphore,
    timeout_seconds: float | None,
    cancel_token: CancellationToken,
) -> DispatchOutcome:
    unit_id = str(unit.get("id") or "")
    async with semaphore:
        if cancel_token.cancelled:
            return DispatchOutcome(unit_id, "cancelled", error=cancel_token.reason)
        started_at = utcnow_iso()
        try:
            result = await asyncio.wait_for(
                worker.run(unit, context, cancel_token), timeout=timeout_seconds
            )
        except TimeoutError:
            logger.warning("Unit %s timed out after %ss", unit_id, timeout_seconds)
            return DispatchOutcome(
                unit_id,
                "timed_out",
                error=f"Worker timed out after {timeout_seconds}s",
                started_at=started_at,
                completed_at=utcnow_iso(),
            )
        except Cancelled as exc:
            return DispatchOutcome(
                unit_id,
                "cancelled",
                error=exc.reason,
                started_at=started_at,
                completed_at=utcnow_iso(),
            )
        except Exception as exc:
            logger.warning("Unit %s worker raised: %s", unit_id, exc)
            return DispatchOutcome(
                unit_id,
                "failed",
                error=str(exc) or exc.__class__.__name__,
                started_at=started_at,
                completed_at=utcnow_iso(),
            )

    status = result.status if result.status in OUTCOME_STATUSES else "failed"
    return DispatchOutcome(
        unit_id,
        status,
        result=result,
        error=("; ".join(result.errors) or None) if status != "completed" else None,
        started_at=started_at,
        completed_at=utcnow_iso(),
    )


async def dispatch_batch(
    worker: UnitWorker,
    units: list[dict[str, Any]],
    *,
    context: dict[str, Any] | None = None,
    max_agents: int = 3,
    timeout_seconds: float | None = None,
    cancel_token: CancellationToken | None = None,
) -> list[DispatchOutcome]:
    """Run one batch and wait for every unit in it.

    Outcomes come back in the order of ``units``.
    """
    token = cancel_token or CancellationToken()
    semaphore = asyncio.Semaphore(max(1, max_agents))
    timeout = timeout_seconds if timeout_seconds and timeout_seconds > 0 else None
    return list(
        await asyncio.gather(
            *(
                _run_unit(
                    worker,
                    unit,
                    context=dict(context or {}),
                    semaphore=semaphore,
                    timeout_seconds=timeout,
                    cancel_token=token,
                )
                for unit in units
            )
        )
    )
