from __future__ import annotations

from typing import Any


class NonstopError(RuntimeError):
    """Base class for every error raised by nonstop components."""


class StateError(NonstopError):
    """Raised when execution-record operations fail."""


class NotInitialized(StateError):
    def __init__(self, message: str = "") -> None:
        super().__init__(message or "No execution record. Run `nonstop state init` first.")


class AlreadyActive(StateError):
    def __init__(self, session_id: str, phase: str) -> None:
        super().__init__(
            f"Session {session_id} is still active (phase: {phase}). "
            "Finish it, restore a checkpoint, or re-run init with --force."
        )
        self.session_id = session_id
        self.phase = phase


class ConcurrentUpdate(StateError):
    def __init__(self, namespace: str) -> None:
        super().__init__(f"Concurrent state update detected for namespace '{namespace}'.")
        self.namespace = namespace


class InvalidTransform(StateError):
    """Raised when a transform spec cannot be parsed or applied."""


class InvalidPhaseTransition(StateError):
    def __init__(self, phase: str, current: str, target: str, reason: str = "") -> None:
        message = f"Cannot move phase '{phase}' from {current} to {target}"
        if reason:
            message += f": {reason}"
        super().__init__(message)
        self.phase = phase
        self.current = current
        self.target = target


class SchedulingError(NonstopError):
    """Raised when the unit dependency graph cannot be scheduled."""


class CyclicDependency(SchedulingError):
    def __init__(self, unit_ids: list[str], cycle: list[str] | None = None) -> None:
        detail = ", ".join(unit_ids)
        message = f"Cyclic dependency among units: {detail}"
        if cycle:
            message += f" (cycle: {' -> '.join(cycle)})"
        super().__init__(message)
        self.unit_ids = list(unit_ids)
        self.cycle = list(cycle or [])


class UnknownDependency(SchedulingError):
    def __init__(self, unit_id: str, missing: list[str]) -> None:
        super().__init__(f"Unit {unit_id} depends on unknown units: {', '.join(missing)}")
        self.unit_id = unit_id
        self.missing = list(missing)


class DuplicateUnit(SchedulingError):
    def __init__(self, unit_id: str) -> None:
        super().__init__(f"Duplicate unit id: {unit_id}")
        self.unit_id = unit_id


class DependencyNotSatisfied(SchedulingError):
    def __init__(self, unit_id: str, pending: list[str]) -> None:
        super().__init__(
            f"Unit {unit_id} cannot start before its dependencies complete: {', '.join(pending)}"
        )
        self.unit_id = unit_id
        self.pending = list(pending)


class CheckpointError(NonstopError):
    """Raised when checkpoint operations fail."""


class NoActiveRecord(CheckpointError):
    def __init__(self) -> None:
        super().__init__("No execution record to checkpoint.")


class CheckpointNotFound(CheckpointError):
    def __init__(self, identifier: str) -> None:
        super().__init__(
            f"Checkpoint not found: {identifier}. Use `nonstop checkpoint list` to see checkpoints."
        )
        self.identifier = identifier


class AmbiguousCheckpoint(CheckpointError):
    def __init__(self, identifier: str, candidates: list[str]) -> None:
        super().__init__(
            f"Checkpoint identifier '{identifier}' matches {len(candidates)} checkpoints: "
            + ", ".join(candidates)
        )
        self.identifier = identifier
        self.candidates = list(candidates)


class RegistryError(NonstopError):
    """Raised when callers violate the worker registration protocol."""


class DuplicateAgent(RegistryError):
    def __init__(self, agent_id: str) -> None:
        super().__init__(f"Agent already registered: {agent_id}")
        self.agent_id = agent_id


class UnknownAgent(RegistryError):
    def __init__(self, agent_id: str) -> None:
        super().__init__(f"Agent not registered: {agent_id}")
        self.agent_id = agent_id


class AgentAlreadyFinished(RegistryError):
    def __init__(self, agent_id: str, status: str) -> None:
        super().__init__(f"Agent {agent_id} already finished with status {status}")
        self.agent_id = agent_id
        self.status = status


class GateError(NonstopError):
    """Raised for quality-gate configuration errors and blocking failures."""


class UnknownCheck(GateError):
    def __init__(self, name: str) -> None:
        super().__init__(f"Unknown gate check: {name}")
        self.name = name


class GateFailed(GateError):
    def __init__(self, phase: str, report: Any = None) -> None:
        super().__init__(f"Quality gate failed for phase: {phase}")
        self.phase = phase
        self.report = report


class MetricsError(NonstopError):
    """Raised when a metrics call names something the collector does not track."""


class UnknownTimer(MetricsError):
    def __init__(self, name: str) -> None:
        super().__init__(f"Timer was never started: {name}")
        self.name = name


class Cancelled(NonstopError):
    def __init__(self, reason: str = "cancelled") -> None:
        super().__init__(f"Execution cancelled: {reason}")
        self.reason = reason
