from __future__ import annotations

import json
import os
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any

from platformdirs import user_config_path

from .exceptions import ConfigError

DEFAULT_REGISTRY_URL = "https://registry.npmjs.org"
DEFAULT_TIMEOUT_S = 30.0

PROJECT_CONFIG_FILENAME = "ppm.json"
LOCK_FILENAME = "prisma.lock"
MODULES_DIRNAME = "node_modules"
MANIFEST_FILENAME = "package.json"


@dataclass(frozen=True)
class Config:
    registry_url: str = DEFAULT_REGISTRY_URL
    timeout_s: float = DEFAULT_TIMEOUT_S


@dataclass(frozen=True)
class ProjectConfig:
    root: Path
    cache_dir: Path | None = None  # None disables the archive cache
    registry_url: str | None = None

    @property
    def modules_dir(self) -> Path:
        return self.root / MODULES_DIRNAME

    @property
    def lock_path(self) -> Path:
        return self.root / LOCK_FILENAME

    @property
    def manifest_path(self) -> Path:
        return self.root / MANIFEST_FILENAME


def config_path(path_override: str | Path | None = None) -> Path:
    if path_override is not None:
        return Path(path_override).expanduser()
    if env := os.getenv("PPM_CONFIG_PATH"):
        return Path(env).expanduser()
    return user_config_path("ppm") / "config.json"


def _read_json_object(path: Path, *, what: str) -> dict[str, Any]:
    try:
        raw = json.loads(path.read_text(encoding="utf-8"))
    except ValueError as e:
        raise ConfigError(f"Failed to parse {what} {path}: {e}") from e
    if not isinstance(raw, dict):
        raise ConfigError(f"Failed to parse {what} {path}: expected a JSON object")
    return raw


def load_config(path_override: str | Path | None = None) -> Config:
    path = config_path(path_override)
    if not path.exists():
        return Config()

    raw = _read_json_object(path, what="config")
    allowed = {f.name for f in Config.__dataclass_fields__.values()}  # type: ignore[attr-defined]
    filtered: dict[str, Any] = {k: v for k, v in raw.items() if k in allowed}
    return Config(**filtered)  # type: ignore[arg-type]


def save_config(cfg: Config, path_override: str | Path | None = None) -> Path:
    path = config_path(path_override)
    path.parent.mkdir(parents=True, exist_ok=True)

    tmp = path.with_suffix(path.suffix + ".tmp")
    tmp.write_text(json.dumps(asdict(cfg), indent=2, sort_keys=True) + "\n", encoding="utf-8")
    tmp.replace(path)
    return path


def load_project_config(root: str | Path) -> ProjectConfig:
    """
    Read ``<root>/ppm.json``.

    Only ``customSettings.cacheDirectory`` (relative to the project root, or absolute)
    and ``customSettings.registry`` are consulted. A missing file yields defaults with
    caching disabled; a file that is not valid JSON raises ConfigError.
    """
    root_path = Path(root).expanduser().resolve()
    path = root_path / PROJECT_CONFIG_FILENAME
    if not path.exists():
        return ProjectConfig(root=root_path)

    raw = _read_json_object(path, what="project config")
    settings = raw.get("customSettings")
    if not isinstance(settings, dict):
        return ProjectConfig(root=root_path)

    cache_dir: Path | None = None
    cache_raw = settings.get("cacheDirectory")
    if isinstance(cache_raw, str) and cache_raw.strip():
        cache_dir = (root_path / Path(cache_raw.strip()).expanduser()).resolve()

    registry_url: str | None = None
    registry_raw = settings.get("registry")
    if isinstance(registry_raw, str) and registry_raw.strip():
        registry_url = registry_raw.strip()

    return ProjectConfig(root=root_path, cache_dir=cache_dir, registry_url=registry_url)
