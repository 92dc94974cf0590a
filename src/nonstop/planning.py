from __future__ import annotations

import json
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any

from nonstop.errors import InvalidTransform


class Planner(ABC):
    @abstractmethod
    async def plan(self, request: str, context: dict[str, Any]) -> list[dict[str, Any]]:
        """Decompose ``request`` into Story dicts with nested children."""


class JsonPlanner(Planner):
    """Serve a pre-written plan from a JSON file.

    The file holds either a list of stories or an object with a ``units``
    (or ``stories``) list.
    """

    def __init__(self, path: Path) -> None:
        self.path = path

    async def plan(self, request: str, context: dict[str, Any]) -> list[dict[str, Any]]:
        try:
            payload = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            raise InvalidTransform(f"Cannot read plan file {self.path}: {exc}") from exc
        if isinstance(payload, dict):
            payload = payload.get("units", payload.get("stories"))
        if not isinstance(payload, list) or not all(isinstance(item, dict) for item in payload):
            raise InvalidTransform(f"Plan file {self.path} must contain a list of stories.")
        return payload
