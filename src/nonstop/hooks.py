from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

from nonstop.config import NonstopConfig
from nonstop.progress import render_compact
from nonstop.recovery import RecoveryDetector
from nonstop.state.checkpoints import CheckpointManager
from nonstop.state.record import utcnow_iso
from nonstop.state.store import StateStore

logger = logging.getLogger(__name__)

BACKUPS_KEPT = 10


class LifecycleHooks:
    """Entry points invoked by the host at session lifecycle events.

    Every hook except ``session_start`` does nothing unless a session is
    active.
    """

    def __init__(
        self,
        store: StateStore,
        checkpoints: CheckpointManager,
        config: NonstopConfig | None = None,
    ) -> None:
        self.store = store
        self.checkpoints = checkpoints
        self.config = config or NonstopConfig.default()

    def session_start(self, source: str = "startup") -> str:
        detector = RecoveryDetector(
            self.store, freshness_hours=self.config.recovery.freshness_hours
        )
        return detector.detect().render(source=source)

    def pre_compact(self) -> Path | None:
        if not self.store.is_active():
            return None
        backup = self.store.backup(keep=BACKUPS_KEPT)

        def _mark(record: dict[str, Any]) -> dict[str, Any]:
            recovery = record.setdefault("recovery", {})
            recovery["compact_count"] = int(recovery.get("compact_count") or 0) + 1
            recovery["last_compact_time"] = utcnow_iso()
            return record

        record = self.store.apply(_mark)
        logger.info(
            "Pre-compact backup %s (compact #%s)", backup, record["recovery"]["compact_count"]
        )
        return backup

    def subagent_stop(self, agent_id: str) -> str | None:
        if not self.store.is_active() or not self.config.checkpoints.auto_checkpoint:
            return None
        checkpoint_id = self.checkpoints.create(f"auto-agent-{agent_id}")
        self.checkpoints.cleanup(keep=self.config.checkpoints.keep_last)
        return checkpoint_id

    def stop(self) -> str | None:
        if not self.store.is_active():
            return None
        record = self.store.apply(lambda record: record)
        return render_compact(record)
