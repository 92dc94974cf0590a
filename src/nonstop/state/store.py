from __future__ import annotations

import copy
import fcntl
import json
import logging
import os
import tempfile
import time
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from nonstop.errors import AlreadyActive, ConcurrentUpdate, NotInitialized, StateError
from nonstop.phases import current_phase, is_terminal
from nonstop.state.record import new_record, utcnow_iso

logger = logging.getLogger(__name__)

Transform = Callable[[dict[str, Any]], dict[str, Any] | None]


def write_json_atomic(path: Path, payload: Any, *, indent: int | None = 2) -> None:
    """Write ``payload`` so readers only ever see the old or the new document."""
    path.parent.mkdir(parents=True, exist_ok=True)
    serialized = json.dumps(payload, ensure_ascii=False, indent=indent)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=path.parent)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(serialized)
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(tmp_name, path)
    except BaseException:
        try:
            os.unlink(tmp_name)
        except FileNotFoundError:
            pass
        raise


def read_json(path: Path) -> Any:
    if not path.exists():
        return None
    try:
        return json.loads(path.read_text(encoding="utf-8"))
    except (json.JSONDecodeError, UnicodeDecodeError):
        logger.warning("Ignoring unreadable JSON document: %s", path)
        return None


class JsonFileStore:
    NAMESPACES = {"execution-state", "agent-pool", "gate-results", "metrics", "metrics-history"}
    SCHEMA_VERSION = 1

    def __init__(self, root: Path, *, lock_timeout_seconds: float = 3.0) -> None:
        self.root = Path(root).expanduser().resolve()
        self.root.mkdir(parents=True, exist_ok=True)
        self.lock_file = self.root / ".lock"
        self.lock_timeout_seconds = lock_timeout_seconds

    @staticmethod
    def _validate_namespace(namespace: str) -> None:
        if namespace not in JsonFileStore.NAMESPACES:
            raise StateError(f"Unsupported namespace: {namespace}")

    def path_for(self, namespace: str) -> Path:
        self._validate_namespace(namespace)
        return self.root / f"{namespace}.json"

    def exists(self, namespace: str) -> bool:
        return self.path_for(namespace).exists()

    @contextmanager
    def lock(self) -> Iterator[None]:
        # flock is released by the kernel when its holder dies, so a leftover
        # .lock file from a crashed process never blocks later writers.
        start = time.monotonic()
        with self.lock_file.open("a+", encoding="utf-8") as handle:
            while True:
                try:
                    fcntl.flock(handle.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
                    break
                except BlockingIOError as exc:
                    if time.monotonic() - start > self.lock_timeout_seconds:
                        raise StateError("Timed out waiting for state lock.") from exc
                    time.sleep(0.02)
            try:
                handle.seek(0)
                handle.truncate()
                handle.write(str(os.getpid()))
                handle.flush()
                yield
            finally:
                fcntl.flock(handle.fileno(), fcntl.LOCK_UN)

    def _normalize_envelope(self, raw_payload: Any, default: Any) -> dict[str, Any]:
        if (
            isinstance(raw_payload, dict)
            and "schema_version" in raw_payload
            and "data" in raw_payload
            and "revision" in raw_payload
        ):
            return {
                "schema_version": int(raw_payload.get("schema_version") or self.SCHEMA_VERSION),
                "revision": int(raw_payload.get("revision") or 0),
                "updated_at": raw_payload.get("updated_at") or utcnow_iso(),
                "data": raw_payload.get("data", default),
            }

        # Bare legacy documents are wrapped on read and upgraded on the next write.
        data = default if raw_payload is None else raw_payload
        return {
            "schema_version": self.SCHEMA_VERSION,
            "revision": 0,
            "updated_at": utcnow_iso(),
            "data": data,
        }

    def get_envelope(self, namespace: str, default: Any | None = None) -> dict[str, Any]:
        default_value = {} if default is None else default
        raw = read_json(self.path_for(namespace))
        return self._normalize_envelope(raw, default_value)

    def get_json(self, namespace: str, default: Any | None = None) -> Any:
        return self.get_envelope(namespace, default=default).get("data")

    def set_json(self, namespace: str, data: Any, expected_revision: int | None = None) -> int:
        path = self.path_for(namespace)
        with self.lock():
            current = self.get_envelope(namespace, default={})
            current_revision = int(current.get("revision", 0))
            if expected_revision is not None and expected_revision != current_revision:
                raise ConcurrentUpdate(namespace)
            envelope = {
                "schema_version": self.SCHEMA_VERSION,
                "revision": current_revision + 1,
                "updated_at": utcnow_iso(),
                "data": data,
            }
            write_json_atomic(path, envelope)
        return current_revision + 1

    def update_json(
        self,
        namespace: str,
        updater: Callable[[Any], Any],
        default: Any | None = None,
    ) -> Any:
        default_value = {} if default is None else default
        last_error: ConcurrentUpdate | None = None
        for _ in range(4):
            current = self.get_envelope(namespace, default=default_value)
            data = copy.deepcopy(current.get("data", default_value))
            updated = updater(data)
            if updated is None:
                updated = data
            try:
                self.set_json(namespace, updated, expected_revision=int(current.get("revision", 0)))
                return updated
            except ConcurrentUpdate as exc:
                last_error = exc
                logger.debug("Retrying %s update after concurrent write", namespace)
                time.sleep(0.01)
        raise last_error or ConcurrentUpdate(namespace)

    def delete(self, namespace: str) -> None:
        with self.lock():
            try:
                self.path_for(namespace).unlink()
            except FileNotFoundError:
                pass


class StateStore:
    """Owner of the single canonical execution record.

    Every mutation goes through :meth:`apply`, which rewrites the whole
    document. Overlapping writers are serialized by the revision check in
    :class:`JsonFileStore` and retried, so no update is silently lost.
    """

    NAMESPACE = "execution-state"

    def __init__(self, root: Path, *, files: JsonFileStore | None = None) -> None:
        self.files = files or JsonFileStore(root)
        self.root = self.files.root
        self.archive_dir = self.root / "archive"
        self.backup_dir = self.root / "backups"

    @property
    def path(self) -> Path:
        return self.files.path_for(self.NAMESPACE)

    def exists(self) -> bool:
        if not self.files.exists(self.NAMESPACE):
            return False
        record = self.files.get_json(self.NAMESPACE, default={})
        return isinstance(record, dict) and bool(record.get("session_id"))

    def read(self) -> dict[str, Any]:
        if not self.exists():
            raise NotInitialized()
        return self.files.get_json(self.NAMESPACE, default={})

    def revision(self) -> int:
        return int(self.files.get_envelope(self.NAMESPACE).get("revision", 0))

    def apply(self, transform: Transform) -> dict[str, Any]:
        if not self.exists():
            raise NotInitialized()

        def _updater(record: Any) -> dict[str, Any]:
            result = transform(record)
            updated = record if result is None else result
            updated["updated_at"] = utcnow_iso()
            return updated

        return self.files.update_json(self.NAMESPACE, _updater, default={})

    def replace(
        self, record: dict[str, Any], *, expected_revision: int | None = None
    ) -> dict[str, Any]:
        payload = copy.deepcopy(record)
        payload["updated_at"] = utcnow_iso()
        self.files.set_json(self.NAMESPACE, payload, expected_revision=expected_revision)
        return payload

    def is_active(self) -> bool:
        return self.exists() and not is_terminal(self.read())

    def init(self, request: str, *, force: bool = False) -> dict[str, Any]:
        revision = self.revision()
        if self.exists():
            existing = self.read()
            if not is_terminal(existing) and not force:
                raise AlreadyActive(str(existing.get("session_id")), current_phase(existing))
            self.archive(existing)
        record = new_record(request)
        try:
            self.files.set_json(self.NAMESPACE, record, expected_revision=revision)
        except ConcurrentUpdate as exc:
            # Another writer started a session between our check and this write.
            existing = self.files.get_json(self.NAMESPACE, default={})
            raise AlreadyActive(
                str(existing.get("session_id")), current_phase(existing)
            ) from exc
        logger.info("Initialized session %s", record["session_id"])
        return record

    def archive(self, record: dict[str, Any] | None = None) -> Path:
        payload = record if record is not None else self.read()
        session_id = str(payload.get("session_id") or "unknown")
        target = self.archive_dir / f"{session_id}.json"
        write_json_atomic(target, payload)
        logger.info("Archived session %s to %s", session_id, target)
        return target

    def backup(self, keep: int = 10) -> Path | None:
        if not self.exists():
            return None
        self.backup_dir.mkdir(parents=True, exist_ok=True)
        stamp = datetime.now(UTC).strftime("%Y%m%d-%H%M%S-%f")
        target = self.backup_dir / f"state-{stamp}.json"
        write_json_atomic(target, self.read())
        backups = sorted(self.backup_dir.glob("state-*.json"), reverse=True)
        for stale in backups[max(0, keep):]:
            stale.unlink(missing_ok=True)
        return target

    def list_backups(self) -> list[Path]:
        if not self.backup_dir.exists():
            return []
        return sorted(self.backup_dir.glob("state-*.json"), reverse=True)
