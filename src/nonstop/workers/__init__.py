from nonstop.workers.base import CancellationToken, UnitWorker, WorkerResult
from nonstop.workers.command import CommandWorker
from nonstop.workers.dispatch import DispatchOutcome, dispatch_batch
from nonstop.workers.registry import PoolStats, WorkerHandle, WorkerRegistry

__all__ = [
    "CancellationToken",
    "CommandWorker",
    "DispatchOutcome",
    "PoolStats",
    "UnitWorker",
    "WorkerHandle",
    "WorkerRegistry",
    "WorkerResult",
    "dispatch_batch",
]
