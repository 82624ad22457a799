from __future__ import annotations

import json
from collections.abc import Mapping
from pathlib import Path
from typing import Any

from .exceptions import ConfigError


def _write_json_atomic(path: Path, data: Any) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_suffix(path.suffix + ".tmp")
    tmp.write_text(json.dumps(data, indent=2, sort_keys=True) + "\n", encoding="utf-8")
    tmp.replace(path)


class LockFile:
    """
    ``prisma.lock``: a flat ``{"dependencies": {name: version}}`` map.

    Every mutation rewrites the whole file. There is no inter-process locking, so
    two ppm processes working on the same project will race.
    """

    def __init__(self, path: Path) -> None:
        self.path = path

    def exists(self) -> bool:
        return self.path.exists()

    def load(self) -> dict[str, str]:
        if not self.path.exists():
            return {}
        try:
            raw = json.loads(self.path.read_text(encoding="utf-8"))
        except ValueError as e:
            raise ConfigError(f"Failed to parse lock file {self.path}: {e}") from e
        if not isinstance(raw, dict):
            raise ConfigError(f"Failed to parse lock file {self.path}: expected a JSON object")
        deps = raw.get("dependencies")
        if deps is None:
            return {}
        if not isinstance(deps, dict):
            raise ConfigError(f"Failed to parse lock file {self.path}: 'dependencies' must be an object")
        return {k: v for k, v in deps.items() if isinstance(k, str) and isinstance(v, str)}

    def save(self, entries: Mapping[str, str]) -> None:
        _write_json_atomic(self.path, {"dependencies": dict(entries)})

    def remove(self, name: str) -> bool:
        entries = self.load()
        if name not in entries:
            return False
        entries.pop(name)
        self.save(entries)
        return True
