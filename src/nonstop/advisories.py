"""Project signal detection and advisory recommendation.

Detection is driven by file markers and dependency manifests; the mapping
from signals to advisories is the explicit ``SIGNAL_ADVISORIES`` table.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Iterable
from pathlib import Path

logger = logging.getLogger(__name__)

LARGE_PROJECT_FILE_COUNT = 50
SOURCE_SUFFIXES = {".ts", ".tsx", ".js", ".py"}
_SKIPPED_DIRS = {".git", "node_modules", ".venv", "venv", "__pycache__", "dist", "build"}

# Marker path relative to the project root -> signals it implies.
FILE_MARKERS: dict[str, tuple[str, ...]] = {
    "tsconfig.json": ("typescript",),
    "package.json": ("javascript", "nodejs"),
    "pyproject.toml": ("python",),
    "requirements.txt": ("python",),
    "setup.py": ("python",),
    "Cargo.toml": ("rust",),
    "go.mod": ("go",),
    "Dockerfile": ("docker", "devops"),
    "docker-compose.yml": ("docker", "devops"),
    ".github/workflows": ("github-actions", "ci", "devops"),
    "terraform": ("terraform", "infrastructure", "devops"),
    "terraform.tf": ("terraform", "infrastructure", "devops"),
    "k8s": ("kubernetes", "devops"),
    "kubernetes": ("kubernetes", "devops"),
    "prisma/schema.prisma": ("database",),
    "ios": ("mobile",),
    "android": ("mobile",),
    "styles": ("web-design",),
    "css": ("web-design",),
}

# package.json dependency name -> signals.
NODE_DEPENDENCIES: dict[str, tuple[str, ...]] = {
    "react": ("react", "frontend"),
    "react-native": ("react-native", "mobile"),
    "expo": ("react-native", "mobile"),
    "next": ("nextjs", "fullstack"),
    "vue": ("vue", "frontend"),
    "express": ("backend", "api"),
    "fastify": ("backend", "api"),
    "koa": ("backend", "api"),
    "@nestjs/core": ("nestjs", "backend", "api"),
    "graphql": ("graphql",),
    "@apollo/client": ("graphql",),
    "prisma": ("database",),
    "typeorm": ("database",),
    "sequelize": ("database",),
    "mongoose": ("database",),
    "pg": ("database",),
    "mysql": ("database",),
    "kafkajs": ("messaging",),
    "amqplib": ("messaging",),
    "bull": ("messaging",),
    "ioredis": ("messaging",),
    "jest": ("testing",),
    "vitest": ("testing",),
    "mocha": ("testing",),
    "playwright": ("testing",),
    "cypress": ("testing",),
    "tailwindcss": ("web-design", "frontend"),
    "styled-components": ("web-design", "frontend"),
    "sass": ("web-design", "frontend"),
}

# Substring of a Python manifest -> signals.
PYTHON_DEPENDENCIES: dict[str, tuple[str, ...]] = {
    "django": ("django", "backend"),
    "fastapi": ("fastapi", "backend", "api"),
    "flask": ("flask", "backend"),
    "sqlalchemy": ("database",),
    "psycopg": ("database",),
    "pymongo": ("database",),
    "redis": ("database", "messaging"),
    "celery": ("messaging",),
    "kafka": ("messaging",),
    "pika": ("messaging",),
    "pytest": ("testing",),
}

SIGNAL_ADVISORIES: dict[str, tuple[str, ...]] = {
    "typescript": ("typescript-expert",),
    "react": ("react-expert",),
    "react-native": ("react-native-expert", "mobile-design-expert"),
    "mobile": ("react-native-expert", "mobile-design-expert"),
    "frontend": ("web-design-expert", "ui-ux-expert"),
    "web-design": ("web-design-expert", "ui-ux-expert"),
    "python": ("python-expert",),
    "django": ("python-expert",),
    "fastapi": ("python-expert",),
    "flask": ("python-expert",),
    "rust": ("rust-expert",),
    "backend": ("api-backend-expert",),
    "api": ("api-backend-expert",),
    "nestjs": ("api-backend-expert",),
    "devops": ("devops-expert",),
    "docker": ("devops-expert",),
    "kubernetes": ("devops-expert",),
    "terraform": ("devops-expert",),
    "ci": ("devops-expert",),
    "graphql": ("graphql-expert",),
    "database": ("database-expert",),
    "messaging": ("messaging-expert",),
    "testing": ("testing-expert",),
}
SECURITY_SIGNALS = {"backend", "api", "django", "fastapi"}


def _node_dependencies(manifest: Path) -> set[str]:
    try:
        payload = json.loads(manifest.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError, UnicodeDecodeError):
        logger.warning("Ignoring unreadable manifest: %s", manifest)
        return set()
    if not isinstance(payload, dict):
        return set()
    names: set[str] = set()
    for key in ("dependencies", "devDependencies", "peerDependencies"):
        section = payload.get(key)
        if isinstance(section, dict):
            names.update(str(name) for name in section)
    return names


def _python_manifest_text(root: Path) -> str:
    chunks: list[str] = []
    for name in ("requirements.txt", "pyproject.toml", "setup.py"):
        path = root / name
        if path.is_file():
            try:
                chunks.append(path.read_text(encoding="utf-8").lower())
            except (OSError, UnicodeDecodeError):
                logger.warning("Ignoring unreadable manifest: %s", path)
    return "\n".join(chunks)


def detect_project_signals(root: Path) -> set[str]:
    root = Path(root)
    signals: set[str] = set()
    for marker, implied in FILE_MARKERS.items():
        if (root / marker).exists():
            signals.update(implied)

    package_json = root / "package.json"
    if package_json.is_file():
        dependencies = _node_dependencies(package_json)
        for name, implied in NODE_DEPENDENCIES.items():
            if name in dependencies:
                signals.update(implied)

    manifest_text = _python_manifest_text(root)
    if manifest_text:
        for needle, implied in PYTHON_DEPENDENCIES.items():
            if needle in manifest_text:
                signals.update(implied)
    return signals


def count_source_files(root: Path, limit: int | None = None) -> int:
    root = Path(root)
    count = 0
    for path in root.rglob("*"):
        if path.suffix not in SOURCE_SUFFIXES or not path.is_file():
            continue
        if any(part in _SKIPPED_DIRS for part in path.relative_to(root).parts):
            continue
        count += 1
        if limit is not None and count >= limit:
            break
    return count


def recommend_advisories(signals: Iterable[str], file_count: int = 0) -> set[str]:
    signal_set = set(signals)
    advisories: set[str] = set()
    for signal in signal_set:
        advisories.update(SIGNAL_ADVISORIES.get(signal, ()))
    if file_count > LARGE_PROJECT_FILE_COUNT:
        advisories.add("system-architect-expert")
    if signal_set & SECURITY_SIGNALS:
        advisories.add("security-expert")
    return advisories


def advise(root: Path) -> tuple[set[str], set[str]]:
    """Detect signals under ``root`` and return ``(signals, advisories)``."""
    signals = detect_project_signals(root)
    file_count = count_source_files(root, limit=LARGE_PROJECT_FILE_COUNT + 1)
    return signals, recommend_advisories(signals, file_count=file_count)
