from __future__ import annotations

import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any

from nonstop.errors import Cancelled


@dataclass(slots=True)
class WorkerResult:
    status: str = "completed"
    summary: str = ""
    files_modified: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)
    payload: dict[str, Any] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return self.status == "completed"

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status,
            "summary": self.summary,
            "files_modified": list(self.files_modified),
            "errors": list(self.errors),
            "payload": dict(self.payload),
        }


class CancellationToken:
    """Thread-safe stop flag shared by the controller and its workers."""

    def __init__(self) -> None:
        self._event = threading.Event()
        self.reason = ""

    def cancel(self, reason: str = "cancelled") -> None:
        if not self._event.is_set():
            self.reason = reason
            self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self) -> None:
        if self.cancelled:
            raise Cancelled(self.reason or "cancelled")


class UnitWorker(ABC):
    @abstractmethod
    async def run(
        self,
        unit: dict[str, Any],
        context: dict[str, Any],
        cancel_token: CancellationToken,
    ) -> WorkerResult:
        """Perform one work unit and report what happened."""
