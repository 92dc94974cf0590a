from __future__ import annotations

import re
import shlex
import subprocess
from dataclasses import dataclass
from pathlib import Path

SHELL_REQUIRED_PATTERN = re.compile(r"(?:\|\||&&|[|;<>`]|[$]\()")


@dataclass(slots=True)
class CommandResult:
    command: str
    exit_code: int
    stdout: str
    stderr: str
    used_shell: bool

    @property
    def ok(self) -> bool:
        return self.exit_code == 0

    def tail(self, limit: int = 1000) -> str:
        text = self.stderr.strip() or self.stdout.strip()
        return text[-limit:]


def split_command(command: str) -> tuple[str | list[str], bool]:
    """Return the subprocess payload and whether it needs a shell."""
    command_text = command.strip()
    used_shell = bool(SHELL_REQUIRED_PATTERN.search(command_text))
    if used_shell:
        return command_text, True
    try:
        return shlex.split(command_text), False
    except ValueError:
        return command_text, True


def run_command(command: str, cwd: Path, *, timeout: float | None = None) -> CommandResult:
    command_text = command.strip()
    if not command_text:
        return CommandResult(command, 1, "", "Command is empty.", False)
    payload, used_shell = split_command(command_text)
    try:
        proc = subprocess.run(
            payload,
            cwd=cwd,
            shell=used_shell,
            text=True,
            capture_output=True,
            timeout=timeout,
        )
    except FileNotFoundError as exc:
        return CommandResult(command, 127, "", str(exc), used_shell)
    except subprocess.TimeoutExpired:
        return CommandResult(command, 124, "", f"Command timed out after {timeout}s", used_shell)
    return CommandResult(command, proc.returncode, proc.stdout, proc.stderr, used_shell)
