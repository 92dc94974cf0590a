from __future__ import annotations

import logging
import os
import re
import time
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from nonstop.errors import (
    AmbiguousCheckpoint,
    CheckpointError,
    CheckpointNotFound,
    NoActiveRecord,
)
from nonstop.phases import PHASES, current_phase, phase_status
from nonstop.state.record import iter_units, stories, utcnow_iso
from nonstop.state.store import StateStore, read_json, write_json_atomic

logger = logging.getLogger(__name__)

META_KEY = "checkpoint_meta"


@dataclass(slots=True)
class CheckpointInfo:
    checkpoint_id: str
    name: str
    created_at: str
    created_ns: int
    phase: str
    path: Path

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.checkpoint_id,
            "name": self.name,
            "created_at": self.created_at,
            "phase": self.phase,
            "path": str(self.path),
        }


@dataclass(slots=True)
class CheckpointDiff:
    checkpoint_id: str
    phase_changes: dict[str, tuple[str, str]] = field(default_factory=dict)
    unit_changes: dict[str, tuple[str, str]] = field(default_factory=dict)
    added_units: list[str] = field(default_factory=list)
    removed_units: list[str] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not (
            self.phase_changes or self.unit_changes or self.added_units or self.removed_units
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "checkpoint_id": self.checkpoint_id,
            "phase_changes": {
                phase: {"checkpoint": then, "current": now}
                for phase, (then, now) in self.phase_changes.items()
            },
            "unit_changes": {
                unit_id: {"checkpoint": then, "current": now}
                for unit_id, (then, now) in self.unit_changes.items()
            },
            "added_units": list(self.added_units),
            "removed_units": list(self.removed_units),
        }


def _unit_statuses(record: dict[str, Any]) -> dict[str, str]:
    return {
        str(unit.get("id")): str(unit.get("status") or "pending")
        for unit in iter_units(stories(record))
    }


class CheckpointManager:
    """Point-in-time copies of the execution record.

    Snapshots live in ``<cache>/checkpoints/<id>.json`` and are never
    overwritten; a colliding id gets a numeric suffix.
    """

    def __init__(self, store: StateStore, checkpoint_dir: Path | None = None) -> None:
        self.store = store
        self.checkpoint_dir = checkpoint_dir or store.root / "checkpoints"

    @staticmethod
    def _sanitize_checkpoint_name(name: str) -> str:
        safe = re.sub(r"[^a-zA-Z0-9._-]+", "-", name.strip().lower()).strip("-")
        return safe or "auto"

    def _reserve_path(self, base_id: str) -> tuple[str, Path]:
        self.checkpoint_dir.mkdir(parents=True, exist_ok=True)
        suffix = 1
        checkpoint_id = base_id
        while True:
            path = self.checkpoint_dir / f"{checkpoint_id}.json"
            try:
                fd = os.open(path, os.O_CREAT | os.O_EXCL | os.O_WRONLY)
            except FileExistsError:
                suffix += 1
                checkpoint_id = f"{base_id}-{suffix}"
                continue
            os.close(fd)
            return checkpoint_id, path

    def create(self, name: str = "auto") -> str:
        if not self.store.exists():
            raise NoActiveRecord()
        label = self._sanitize_checkpoint_name(name)
        now = datetime.now(UTC)
        checkpoint_id, path = self._reserve_path(f"{now.strftime('%Y%m%d-%H%M%S')}-{label}")
        created_at = now.replace(microsecond=0).isoformat()

        def _register(record: dict[str, Any]) -> dict[str, Any]:
            checkpoints = record.setdefault("checkpoints", {})
            entries = checkpoints.get("checkpoint_list")
            if not isinstance(entries, list):
                entries = []
            entries.append({"id": checkpoint_id, "created_at": created_at})
            checkpoints["checkpoint_list"] = entries
            checkpoints["last_checkpoint"] = checkpoint_id
            return record

        try:
            record = self.store.apply(_register)
            snapshot = dict(record)
            snapshot[META_KEY] = {
                "id": checkpoint_id,
                "name": label,
                "created_at": created_at,
                "created_ns": time.time_ns(),
            }
            write_json_atomic(path, snapshot)
        except BaseException:
            path.unlink(missing_ok=True)
            raise
        logger.info("Created checkpoint %s", checkpoint_id)
        return checkpoint_id

    def _info_for(self, path: Path) -> CheckpointInfo | None:
        payload = read_json(path)
        if not isinstance(payload, dict):
            return None
        meta = payload.get(META_KEY)
        if not isinstance(meta, dict):
            # Snapshots written without metadata fall back to the file itself.
            meta = {"id": path.stem, "name": path.stem, "created_ns": path.stat().st_mtime_ns}
        return CheckpointInfo(
            checkpoint_id=str(meta.get("id") or path.stem),
            name=str(meta.get("name") or ""),
            created_at=str(meta.get("created_at") or payload.get("updated_at") or ""),
            created_ns=int(meta.get("created_ns") or 0),
            phase=current_phase(payload),
            path=path,
        )

    def list(self) -> list[CheckpointInfo]:
        if not self.checkpoint_dir.exists():
            return []
        infos = []
        for path in self.checkpoint_dir.glob("*.json"):
            info = self._info_for(path)
            if info is not None:
                infos.append(info)
        infos.sort(key=lambda info: (info.created_ns, info.checkpoint_id), reverse=True)
        return infos

    def latest(self) -> CheckpointInfo | None:
        infos = self.list()
        return infos[0] if infos else None

    def resolve(self, fragment: str) -> list[str]:
        """Return matching ids, newest first.

        An exact id wins over exact names, which win over substrings.
        """
        infos = self.list()
        exact = [info.checkpoint_id for info in infos if info.checkpoint_id == fragment]
        if exact:
            return exact
        named = [info.checkpoint_id for info in infos if info.name == fragment]
        if named:
            return named
        return [info.checkpoint_id for info in infos if fragment and fragment in info.checkpoint_id]

    def lookup(self, identifier: str) -> str:
        matches = self.resolve(identifier)
        if not matches:
            raise CheckpointNotFound(identifier)
        if len(matches) > 1:
            raise AmbiguousCheckpoint(identifier, matches)
        return matches[0]

    def path_for(self, checkpoint_id: str) -> Path:
        return self.checkpoint_dir / f"{checkpoint_id}.json"

    def load(self, identifier: str) -> dict[str, Any]:
        checkpoint_id = self.lookup(identifier)
        payload = read_json(self.path_for(checkpoint_id))
        if not isinstance(payload, dict) or not payload.get("session_id"):
            raise CheckpointError(f"Checkpoint {checkpoint_id} is unreadable.")
        record = dict(payload)
        record.pop(META_KEY, None)
        return record

    def restore(self, identifier: str) -> str:
        checkpoint_id = self.lookup(identifier)
        record = self.load(checkpoint_id)
        if self.store.exists():
            self.create("pre-restore")
        # A write landing after the pre-restore snapshot is not silently discarded.
        revision = self.store.revision()
        record["updated_at"] = utcnow_iso()
        self.store.replace(record, expected_revision=revision)
        logger.info("Restored checkpoint %s", checkpoint_id)
        return checkpoint_id

    def delete(self, identifier: str) -> str:
        checkpoint_id = self.lookup(identifier)
        self.path_for(checkpoint_id).unlink(missing_ok=True)
        logger.info("Deleted checkpoint %s", checkpoint_id)
        return checkpoint_id

    def cleanup(self, keep: int = 10) -> int:
        removed = 0
        for info in self.list()[max(0, keep) :]:
            info.path.unlink(missing_ok=True)
            removed += 1
        if removed:
            logger.info("Removed %d old checkpoints", removed)
        return removed

    def diff(self, identifier: str) -> CheckpointDiff:
        checkpoint_id = self.lookup(identifier)
        then = self.load(checkpoint_id)
        now = self.store.read()
        result = CheckpointDiff(checkpoint_id=checkpoint_id)
        for phase in PHASES:
            before, after = phase_status(then, phase), phase_status(now, phase)
            if before != after:
                result.phase_changes[phase] = (before, after)
        old_units, new_units = _unit_statuses(then), _unit_statuses(now)
        for unit_id, status in new_units.items():
            if unit_id not in old_units:
                result.added_units.append(unit_id)
            elif old_units[unit_id] != status:
                result.unit_changes[unit_id] = (old_units[unit_id], status)
        result.removed_units = [unit_id for unit_id in old_units if unit_id not in new_units]
        return result
