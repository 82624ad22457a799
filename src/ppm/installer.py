from __future__ import annotations

import json
import logging
import shutil
from contextlib import AbstractContextManager
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import IO, Callable, Protocol

from .archive import extract_archive
from .cache import ArchiveCache
from .config import LOCK_FILENAME, MANIFEST_FILENAME, MODULES_DIRNAME
from .exceptions import (
    ArchiveError,
    ConfigError,
    PackageNotFoundError,
    PpmError,
    PpmHTTPError,
    PpmNetworkError,
    VersionNotFoundError,
)
from .lockfile import LockFile
from .registry import RegistryMetadata
from .versions import PackageSpecifier, parse_specifier, resolve_version, specifier_for

logger = logging.getLogger(__name__)


class PackageSource(Protocol):
    def get_metadata(self, name: str) -> RegistryMetadata:
        ...

    def open_tarball(self, url: str) -> AbstractContextManager[IO[bytes]]:
        ...


class FailureKind(str, Enum):
    NOT_FOUND = "not_found"
    NETWORK = "network"
    HTTP = "http"
    ARCHIVE = "archive"
    CONFIG = "config"
    IO = "io"
    ERROR = "error"


class InstallPhase(str, Enum):
    METADATA = "fetching metadata"
    DOWNLOAD = "downloading"
    EXTRACT = "extracting"
    DONE = "done"
    FAILED = "failed"


# Called as progress(name, phase, version); version is None until it has been resolved.
ProgressCallback = Callable[[str, InstallPhase, str | None], None]


def _failure_kind(err: Exception) -> FailureKind:
    if isinstance(err, (PackageNotFoundError, VersionNotFoundError)):
        return FailureKind.NOT_FOUND
    if isinstance(err, PpmNetworkError):
        return FailureKind.NETWORK
    if isinstance(err, PpmHTTPError):
        return FailureKind.HTTP
    if isinstance(err, ArchiveError):
        return FailureKind.ARCHIVE
    if isinstance(err, ConfigError):
        return FailureKind.CONFIG
    if isinstance(err, OSError):
        return FailureKind.IO
    return FailureKind.ERROR


@dataclass(frozen=True)
class InstalledPackage:
    name: str
    version: str
    depth: int
    from_cache: bool = False


@dataclass(frozen=True)
class InstallFailure:
    name: str
    specifier: str
    kind: FailureKind
    message: str
    depth: int


@dataclass(frozen=True)
class InstallReport:
    root: str | None  # package name; None when restoring from the lock file
    root_version: str | None
    installed: tuple[InstalledPackage, ...]
    satisfied: tuple[str, ...]
    failures: tuple[InstallFailure, ...]
    lock_path: Path

    @property
    def ok(self) -> bool:
        return not self.failures

    @property
    def root_failed(self) -> bool:
        return any(f.depth == 0 for f in self.failures)


@dataclass(frozen=True)
class UninstallResult:
    name: str
    removed: bool
    pruned: tuple[str, ...]
    lock_path: Path


@dataclass
class _Collector:
    installed: list[InstalledPackage] = field(default_factory=list)
    satisfied: list[str] = field(default_factory=list)
    failures: list[InstallFailure] = field(default_factory=list)
    root_version: str | None = None

    def fail(self, name: str, specifier: str, err: Exception, depth: int) -> None:
        self.failures.append(
            InstallFailure(name=name, specifier=specifier, kind=_failure_kind(err), message=str(err), depth=depth)
        )

    def report(self, root: str | None, lock_path: Path) -> InstallReport:
        return InstallReport(
            root=root,
            root_version=self.root_version,
            installed=tuple(self.installed),
            satisfied=tuple(self.satisfied),
            failures=tuple(self.failures),
            lock_path=lock_path,
        )


class Installer:
    """
    Installs packages from a registry into ``<project>/node_modules`` and keeps
    ``prisma.lock`` in step with what has been extracted.

    Each package name is pinned to a single version project-wide. Dependencies are
    walked depth-first in declaration order; the first visit of a name wins.
    """

    def __init__(
        self,
        *,
        project_dir: Path,
        source: PackageSource | None = None,
        cache: ArchiveCache | None = None,
        lock_filename: str = LOCK_FILENAME,
        modules_dirname: str = MODULES_DIRNAME,
        progress: ProgressCallback | None = None,
    ) -> None:
        self.project_dir = project_dir.expanduser().resolve()
        self.modules_dir = self.project_dir / modules_dirname
        self.lock = LockFile(self.project_dir / lock_filename)
        self.source = source
        self.cache = cache
        self.progress = progress

    def package_dir(self, name: str) -> Path:
        return self.modules_dir / name

    def installed(self) -> dict[str, str]:
        return self.lock.load()

    # install

    def install(self, specifier: str, *, session: set[str] | None = None) -> InstallReport:
        root = parse_specifier(specifier)
        entries = self.lock.load()
        collector = _Collector()
        self._walk(root, entries, session if session is not None else set(), collector)
        report = collector.report(root.name, self.lock.path)
        if report.root_version is not None and not report.root_failed:
            logger.info("Installed %s@%s and dependencies.", root.name, report.root_version)
        return report

    def install_all(self) -> InstallReport:
        """
        Bring ``node_modules`` back in line with the lock file.

        Entries whose package directory exists count as satisfied; missing ones are
        installed again at exactly the locked version.
        """
        entries = self.lock.load()
        session: set[str] = set()
        collector = _Collector()
        for name, version in list(entries.items()):
            self._walk(specifier_for(name, version), entries, session, collector, restore=True)
        return collector.report(None, self.lock.path)

    def _walk(
        self,
        root: PackageSpecifier,
        entries: dict[str, str],
        session: set[str],
        collector: _Collector,
        *,
        restore: bool = False,
    ) -> None:
        pending: list[tuple[PackageSpecifier, int]] = [(root, 0)]
        while pending:
            spec, depth = pending.pop()
            name = spec.name
            if name in session:
                continue

            locked = entries.get(name)
            if locked is not None:
                if not restore or self.package_dir(name).is_dir():
                    session.add(name)
                    collector.satisfied.append(name)
                    if depth == 0:
                        collector.root_version = locked
                    logger.info("Already installed: %s@%s", name, locked)
                    continue
                # Restoring: reinstall exactly what the lock pinned.
                spec = specifier_for(name, locked)

            try:
                pkg = self._install_one(spec, entries, depth)
            except (PpmError, OSError) as e:
                logger.warning("Install failed for %s: %s", name, e)
                self._emit(name, InstallPhase.FAILED)
                collector.fail(name, str(spec), e, depth)
                continue

            session.add(name)
            collector.installed.append(pkg)
            if depth == 0:
                collector.root_version = pkg.version

            try:
                deps = self._read_dependencies(name)
            except (PpmError, OSError) as e:
                logger.warning("Could not read dependencies of %s: %s", name, e)
                collector.fail(name, str(spec), e, depth)
                continue

            children: list[PackageSpecifier] = []
            for dep, rng in deps.items():
                if dep in session:
                    continue
                try:
                    children.append(specifier_for(dep, rng))
                except PpmError as e:
                    logger.warning("Skipping dependency %r of %s: %s", dep, name, e)
                    collector.fail(dep, f"{dep}@{rng}", e, depth + 1)
            # Reversed so the first declared dependency is popped (and fully walked) first.
            for child in reversed(children):
                pending.append((child, depth + 1))

    def _install_one(self, spec: PackageSpecifier, entries: dict[str, str], depth: int) -> InstalledPackage:
        name = spec.name
        if self.source is None:
            raise PpmError(f"No registry configured; cannot install {spec}.")
        logger.info("Fetching metadata for %s", spec)
        self._emit(name, InstallPhase.METADATA)
        metadata = self.source.get_metadata(name)
        version = resolve_version(name, spec.range, metadata)
        info = metadata.versions[version]
        if not info.tarball_url:
            raise PpmError(f"Release {name}@{version} has no tarball URL.")

        dest = self.package_dir(name)
        from_cache = False
        if self.cache is not None:
            if self.cache.has(name, version):
                from_cache = True
                logger.debug("Cache hit for %s@%s", name, version)
            else:
                logger.info("Downloading %s@%s", name, version)
                self._emit(name, InstallPhase.DOWNLOAD, version)
                self.cache.fetch_into(name, version, info.tarball_url, self.source)
            self._emit(name, InstallPhase.EXTRACT, version)
            extract_archive(self.cache.path(name, version), dest)
        else:
            # Download and extraction overlap when streaming straight from the registry.
            logger.info("Downloading %s@%s", name, version)
            self._emit(name, InstallPhase.DOWNLOAD, version)
            with self.source.open_tarball(info.tarball_url) as stream:
                extract_archive(stream, dest)

        entries[name] = version
        self.lock.save(entries)
        self._emit(name, InstallPhase.DONE, version)
        return InstalledPackage(name=name, version=version, depth=depth, from_cache=from_cache)

    def _emit(self, name: str, phase: InstallPhase, version: str | None = None) -> None:
        if self.progress is not None:
            self.progress(name, phase, version)

    def _read_dependencies(self, name: str) -> dict[str, str]:
        manifest = self.package_dir(name) / MANIFEST_FILENAME
        if not manifest.is_file():
            return {}
        try:
            raw = json.loads(manifest.read_text(encoding="utf-8"))
        except ValueError as e:  # JSONDecodeError or UnicodeDecodeError
            raise ConfigError(f"Failed to parse {manifest}: {e}") from e
        deps = raw.get("dependencies") if isinstance(raw, dict) else None
        if not isinstance(deps, dict):
            return {}
        return {k: v for k, v in deps.items() if isinstance(k, str) and isinstance(v, str)}

    # removal

    def _remove_package_dir(self, name: str) -> bool:
        pkg_dir = self.package_dir(name)
        if not pkg_dir.exists():
            return False
        shutil.rmtree(pkg_dir)
        scope_dir = pkg_dir.parent
        if scope_dir != self.modules_dir and scope_dir.is_dir() and not any(scope_dir.iterdir()):
            scope_dir.rmdir()
        return True

    def _forget(self, name: str) -> bool:
        removed_dir = self._remove_package_dir(name)
        removed_lock = self.lock.remove(name)
        return removed_dir or removed_lock

    def _prune(self, keep: set[str]) -> list[str]:
        if not self.modules_dir.is_dir():
            return []
        pruned: list[str] = []
        for child in sorted(self.modules_dir.iterdir()):
            if child.name.startswith("."):
                continue
            if child.name.startswith("@") and child.is_dir():
                for sub in sorted(child.iterdir()):
                    key = f"{child.name}/{sub.name}"
                    if key not in keep:
                        _remove_path(sub)
                        pruned.append(key)
                if not any(child.iterdir()):
                    child.rmdir()
                continue
            if child.name not in keep:
                _remove_path(child)
                pruned.append(child.name)
        return pruned

    def uninstall(self, name: str) -> UninstallResult:
        """Remove one package, then prune every module directory not named in the lock."""
        spec = parse_specifier(name)
        removed_dir = self._remove_package_dir(spec.name)
        entries = self.lock.load()
        removed_lock = spec.name in entries
        if removed_lock:
            entries.pop(spec.name)
            self.lock.save(entries)
        pruned = self._prune(set(entries))
        if pruned:
            logger.info("Pruned %d unused package(s): %s", len(pruned), ", ".join(pruned))
        return UninstallResult(
            name=spec.name,
            removed=removed_dir or removed_lock,
            pruned=tuple(pruned),
            lock_path=self.lock.path,
        )

    # update / upgrade

    def update(self, name: str) -> InstallReport:
        """Drop the installed copy and lock entry of ``name``, then install its latest version."""
        spec = parse_specifier(name)
        self._forget(spec.name)
        return self.install(spec.name)

    def upgrade(self) -> list[InstallReport]:
        # Only the names locked when the upgrade starts are targeted, one session each.
        return [self.update(name) for name in list(self.lock.load())]


def _remove_path(path: Path) -> None:
    if path.is_dir() and not path.is_symlink():
        shutil.rmtree(path)
    else:
        path.unlink()
