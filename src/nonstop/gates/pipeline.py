from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from nonstop.config import GATE_PHASES, NonstopConfig
from nonstop.errors import UnknownCheck
from nonstop.gates.checks import CHECK_STATUSES, CheckContext, CheckOutcome, CheckRegistry
from nonstop.state.record import utcnow_iso
from nonstop.state.store import JsonFileStore, StateStore

logger = logging.getLogger(__name__)

NAMESPACE = "gate-results"


@dataclass(slots=True)
class GateResult:
    check_name: str
    phase: str
    status: str
    message: str = ""
    checked_at: str = field(default_factory=utcnow_iso)

    @property
    def failed(self) -> bool:
        return self.status == "fail"

    def to_dict(self) -> dict[str, Any]:
        return {
            "check_name": self.check_name,
            "phase": self.phase,
            "status": self.status,
            "message": self.message,
            "checked_at": self.checked_at,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> GateResult:
        return cls(
            check_name=str(payload.get("check_name") or ""),
            phase=str(payload.get("phase") or "manual"),
            status=str(payload.get("status") or "skip"),
            message=str(payload.get("message") or ""),
            checked_at=str(payload.get("checked_at") or ""),
        )


@dataclass(slots=True)
class PhaseReport:
    phase: str
    status: str
    results: list[GateResult] = field(default_factory=list)
    not_run: list[str] = field(default_factory=list)
    message: str = ""

    @property
    def passed(self) -> bool:
        return self.status != "fail"

    def to_dict(self) -> dict[str, Any]:
        return {
            "phase": self.phase,
            "status": self.status,
            "results": [result.to_dict() for result in self.results],
            "not_run": list(self.not_run),
            "message": self.message,
        }


class QualityGatePipeline:
    def __init__(
        self,
        registry: CheckRegistry,
        config: NonstopConfig,
        results_store: JsonFileStore,
        state_store: StateStore | None = None,
        project_root: Path | None = None,
    ) -> None:
        self.registry = registry
        self.config = config
        self.results_store = results_store
        self.state_store = state_store
        self.project_root = (project_root or Path.cwd()).resolve()

    def _record(self, result: GateResult) -> None:
        def _store(data: Any) -> dict[str, Any]:
            if not isinstance(data, dict) or not isinstance(data.get("gates"), dict):
                data = {"gates": {}}
            data["gates"].setdefault(result.phase, {})[result.check_name] = result.to_dict()
            return data

        self.results_store.update_json(NAMESPACE, _store, default={"gates": {}})
        if self.state_store is not None and self.state_store.exists():

            def _mirror(record: dict[str, Any]) -> dict[str, Any]:
                verification = record.setdefault("verification", {"status": "pending"})
                gates = verification.get("gates")
                if not isinstance(gates, dict):
                    gates = {}
                gates.setdefault(result.phase, {})[result.check_name] = result.to_dict()
                verification["gates"] = gates
                return record

            self.state_store.apply(_mirror)

    def _execute(self, name: str, args: str | None, phase: str) -> GateResult:
        check = self.registry.get(name)
        context = CheckContext(project_root=self.project_root, config=self.config, phase=phase)
        try:
            outcome = check(context, args)
        except Exception as exc:
            logger.warning("Gate check %s raised: %s", name, exc)
            outcome = CheckOutcome.failed(f"Check raised {exc.__class__.__name__}: {exc}")
        status = outcome.status if outcome.status in CHECK_STATUSES else "fail"
        result = GateResult(check_name=name, phase=phase, status=status, message=outcome.message)
        self._record(result)
        logger.info("Gate %s/%s: %s", phase, name, status)
        return result

    def run_check(self, name: str, args: str | None = None, phase: str = "manual") -> GateResult:
        if name not in self.registry:
            raise UnknownCheck(name)
        return self._execute(name, args, phase)

    def run_phase(self, phase: str, fail_fast: bool = True) -> PhaseReport:
        gate = self.config.gate_for(phase)
        if not gate.enabled:
            return PhaseReport(phase=phase, status="skip", message=f"Gate disabled for {phase}")
        for name in gate.checks:
            if name not in self.registry:
                raise UnknownCheck(name)
        if not gate.checks:
            return PhaseReport(phase=phase, status="skip", message=f"No checks for {phase}")

        results: list[GateResult] = []
        not_run: list[str] = []
        for index, name in enumerate(gate.checks):
            result = self._execute(name, None, phase)
            results.append(result)
            if result.failed and fail_fast:
                not_run = list(gate.checks[index + 1 :])
                break

        if any(result.failed for result in results):
            status = "fail"
        elif any(result.status == "pass" for result in results):
            status = "pass"
        else:
            status = "skip"
        passed = sum(1 for result in results if result.status == "pass")
        failed = sum(1 for result in results if result.failed)
        skipped = sum(1 for result in results if result.status == "skip")
        message = f"{passed} passed, {failed} failed, {skipped} skipped"
        if not_run:
            message += f", {len(not_run)} not run"
        return PhaseReport(
            phase=phase, status=status, results=results, not_run=not_run, message=message
        )

    def status(self) -> list[GateResult]:
        data = self.results_store.get_json(NAMESPACE, default={"gates": {}})
        gates = data.get("gates") if isinstance(data, dict) else None
        if not isinstance(gates, dict):
            return []
        results: list[GateResult] = []
        for checks in gates.values():
            if not isinstance(checks, dict):
                continue
            results.extend(
                GateResult.from_dict(payload)
                for payload in checks.values()
                if isinstance(payload, dict)
            )
        return results

    def reset(self) -> None:
        self.results_store.delete(NAMESPACE)

    def available_checks(self) -> dict[str, str]:
        return self.registry.describe()

    def configured_phases(self) -> dict[str, dict[str, Any]]:
        phases = dict.fromkeys(GATE_PHASES)
        phases.update(dict.fromkeys(self.config.gates))
        return {
            phase: {
                "enabled": self.config.gate_for(phase).enabled,
                "checks": list(self.config.gate_for(phase).checks),
            }
            for phase in phases
        }
