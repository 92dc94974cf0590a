from __future__ import annotations

import re
import shlex
from collections.abc import Callable, Iterator
from dataclasses import dataclass, field
from pathlib import Path

from nonstop.commands import run_command
from nonstop.config import NonstopConfig
from nonstop.errors import UnknownCheck

CHECK_STATUSES = ("pass", "fail", "skip")
SECRET_PATTERN = re.compile(
    r"(?i)\b[\w-]*(api_key|apikey|secret|password|private_key|access_token)[\w-]*\b"
    r"\s*[:=]\s*[\"'][^\"'\s]{4,}[\"']"
)
SECRET_ALLOWED_MARKERS = ("os.environ", "getenv", "process.env", "ENV[")
SCANNED_SUFFIXES = {".py", ".js", ".jsx", ".ts", ".tsx", ".go", ".rb", ".java", ".rs", ".php"}
SKIPPED_DIRS = {".git", "node_modules", ".venv", "venv", "__pycache__", "dist", "build"}


@dataclass(slots=True)
class CheckContext:
    project_root: Path
    config: NonstopConfig = field(default_factory=NonstopConfig.default)
    phase: str = "manual"


@dataclass(slots=True)
class CheckOutcome:
    status: str
    message: str = ""

    @classmethod
    def passed(cls, message: str) -> CheckOutcome:
        return cls("pass", message)

    @classmethod
    def failed(cls, message: str) -> CheckOutcome:
        return cls("fail", message)

    @classmethod
    def skipped(cls, message: str) -> CheckOutcome:
        return cls("skip", message)


Check = Callable[[CheckContext, str | None], CheckOutcome]


def _command_check(
    label: str, ctx: CheckContext, command: str, *, ok: str, failed: str
) -> CheckOutcome:
    if not command.strip():
        return CheckOutcome.skipped(f"No {label} command configured")
    result = run_command(command, ctx.project_root)
    if result.ok:
        return CheckOutcome.passed(ok)
    message = f"{failed} (exit {result.exit_code})"
    detail = result.tail(500)
    return CheckOutcome.failed(f"{message}: {detail}" if detail else message)


def files_exist(ctx: CheckContext, args: str | None) -> CheckOutcome:
    files = args.replace(",", " ").split() if args else list(ctx.config.project.required_files)
    if not files:
        return CheckOutcome.skipped("No required files configured")
    missing = [name for name in files if not (ctx.project_root / name).is_file()]
    if missing:
        return CheckOutcome.failed(f"Missing files: {', '.join(missing)}")
    return CheckOutcome.passed("All required files exist")


def tests_pass(ctx: CheckContext, args: str | None) -> CheckOutcome:
    command = args or ctx.config.project.test_command
    return _command_check("test", ctx, command, ok="Tests passed", failed="Tests failed")


def lint_clean(ctx: CheckContext, args: str | None) -> CheckOutcome:
    command = args or ctx.config.project.lint_command
    return _command_check("lint", ctx, command, ok="Lint clean", failed="Lint errors found")


def no_type_errors(ctx: CheckContext, args: str | None) -> CheckOutcome:
    command = args or ctx.config.project.type_check_command
    return _command_check(
        "type-check", ctx, command, ok="No type errors", failed="Type errors found"
    )


def build_success(ctx: CheckContext, args: str | None) -> CheckOutcome:
    command = args or ctx.config.project.build_command
    return _command_check("build", ctx, command, ok="Build successful", failed="Build failed")


def _scanned_files(root: Path) -> Iterator[Path]:
    for path in sorted(root.rglob("*")):
        if any(part in SKIPPED_DIRS for part in path.relative_to(root).parts):
            continue
        if path.is_file() and path.suffix in SCANNED_SUFFIXES:
            yield path


def no_secrets(ctx: CheckContext, args: str | None) -> CheckOutcome:
    root = ctx.project_root
    findings: list[str] = []
    for path in _scanned_files(root):
        try:
            lines = path.read_text(encoding="utf-8").splitlines()
        except (OSError, UnicodeDecodeError):
            continue
        for number, line in enumerate(lines, start=1):
            if any(marker in line for marker in SECRET_ALLOWED_MARKERS):
                continue
            if SECRET_PATTERN.search(line):
                findings.append(f"{path.relative_to(root)}:{number}")
                if len(findings) >= 5:
                    break
        if len(findings) >= 5:
            break
    if findings:
        return CheckOutcome.failed("Potential hardcoded secrets found: " + ", ".join(findings))
    return CheckOutcome.passed("No hardcoded secrets detected")


def custom_script(ctx: CheckContext, args: str | None) -> CheckOutcome:
    if not args or not args.strip():
        return CheckOutcome.failed("custom_script needs a script path")
    script = Path(args.strip())
    if not script.is_absolute():
        script = ctx.project_root / script
    if not script.is_file():
        return CheckOutcome.failed(f"Script not found: {args.strip()}")
    return _command_check(
        "custom",
        ctx,
        f"bash {shlex.quote(str(script))}",
        ok="Custom script passed",
        failed="Custom script failed",
    )


BUILTIN_CHECKS: dict[str, tuple[Check, str]] = {
    "files_exist": (files_exist, "Check required files exist"),
    "tests_pass": (tests_pass, "Run the test suite"),
    "lint_clean": (lint_clean, "Run the linter"),
    "no_type_errors": (no_type_errors, "Run the type checker"),
    "build_success": (build_success, "Run the build"),
    "no_secrets": (no_secrets, "Scan source files for hardcoded secrets"),
    "custom_script": (custom_script, "Run a custom script"),
}


class CheckRegistry:
    def __init__(self, *, include_builtins: bool = True) -> None:
        self._checks: dict[str, tuple[Check, str]] = {}
        if include_builtins:
            self._checks.update(BUILTIN_CHECKS)

    def register(self, name: str, check: Check, description: str = "") -> None:
        self._checks[name] = (check, description)

    def get(self, name: str) -> Check:
        try:
            return self._checks[name][0]
        except KeyError as exc:
            raise UnknownCheck(name) from exc

    def __contains__(self, name: object) -> bool:
        return name in self._checks

    def describe(self) -> dict[str, str]:
        return {name: description for name, (_check, description) in self._checks.items()}
