from __future__ import annotations

import asyncio
import json
import logging
import os
from pathlib import Path
from typing import Any

from nonstop.commands import split_command
from nonstop.errors import Cancelled
from nonstop.workers.base import CancellationToken, UnitWorker, WorkerResult

logger = logging.getLogger(__name__)


class CommandWorker(UnitWorker):
    """Run a shell command once per unit.

    The unit is exposed through ``NONSTOP_UNIT_ID``, ``NONSTOP_UNIT_TITLE``
    and ``NONSTOP_UNIT_JSON``. If the last JSON object printed on stdout
    carries ``summary``, ``files_modified`` or ``errors`` they are reported
    back; the exit code decides between completed and failed.
    """

    poll_interval = 0.1

    def __init__(self, command: str, cwd: Path | None = None) -> None:
        if not command.strip():
            raise ValueError("Worker command must not be empty.")
        self.command = command
        self.cwd = cwd

    def _environment(self, unit: dict[str, Any], context: dict[str, Any]) -> dict[str, str]:
        env = os.environ.copy()
        env["NONSTOP_UNIT_ID"] = str(unit.get("id") or "")
        env["NONSTOP_UNIT_TITLE"] = str(unit.get("title") or "")
        env["NONSTOP_UNIT_JSON"] = json.dumps(unit, ensure_ascii=False)
        session_id = context.get("session_id")
        if session_id:
            env["NONSTOP_SESSION_ID"] = str(session_id)
        return env

    @staticmethod
    def _last_json_object(stdout: str) -> dict[str, Any]:
        for line in reversed(stdout.splitlines()):
            line = line.strip()
            if not line.startswith("{"):
                continue
            try:
                payload = json.loads(line)
            except json.JSONDecodeError:
                continue
            if isinstance(payload, dict):
                return payload
        return {}

    async def _spawn(self, env: dict[str, str]) -> asyncio.subprocess.Process:
        payload, used_shell = split_command(self.command)
        cwd = str(self.cwd) if self.cwd else None
        if used_shell or isinstance(payload, str):
            return await asyncio.create_subprocess_shell(
                str(payload),
                cwd=cwd,
                env=env,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        return await asyncio.create_subprocess_exec(
            *payload,
            cwd=cwd,
            env=env,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )

    async def run(
        self,
        unit: dict[str, Any],
        context: dict[str, Any],
        cancel_token: CancellationToken,
    ) -> WorkerResult:
        cancel_token.raise_if_cancelled()
        try:
            process = await self._spawn(self._environment(unit, context))
        except FileNotFoundError as exc:
            return WorkerResult(status="failed", summary=str(exc), errors=[str(exc)])

        communicate = asyncio.ensure_future(process.communicate())
        try:
            while True:
                done, _ = await asyncio.wait({communicate}, timeout=self.poll_interval)
                if done:
                    break
                if cancel_token.cancelled:
                    raise Cancelled(cancel_token.reason)
            stdout_raw, stderr_raw = communicate.result()
        except BaseException:
            # Timeouts and cancellation both land here; never leak the child.
            if process.returncode is None:
                process.kill()
                await process.wait()
            communicate.cancel()
            raise

        stdout = stdout_raw.decode("utf-8", errors="replace")
        stderr = stderr_raw.decode("utf-8", errors="replace").strip()
        report = self._last_json_object(stdout)
        errors = [str(item) for item in report.get("errors") or []]
        if process.returncode != 0:
            errors.append(stderr[-1000:] or f"Worker exited with code {process.returncode}")
        logger.debug("Unit %s worker exited with %s", unit.get("id"), process.returncode)
        return WorkerResult(
            status="completed" if process.returncode == 0 else "failed",
            summary=str(report.get("summary") or stdout.strip()[-500:]),
            files_modified=[str(item) for item in report.get("files_modified") or []],
            errors=errors,
            payload={"exit_code": process.returncode, **report},
        )
