"""
Content-addressed store of downloaded package archives.

A cached archive is keyed by (name, version) and is never refreshed: registry
versions are immutable, so once a tarball has been fully written it is reused by
every later install of that version.
"""

from __future__ import annotations

import logging
import shutil
from contextlib import AbstractContextManager
from pathlib import Path
from typing import IO, Protocol

logger = logging.getLogger(__name__)

ARCHIVE_SUFFIX = ".tgz"
PARTIAL_SUFFIX = ".part"


class TarballSource(Protocol):
    def open_tarball(self, url: str) -> AbstractContextManager[IO[bytes]]:
        ...


def cache_filename(name: str, version: str) -> str:
    return f"{name.replace('/', '__')}-{version}{ARCHIVE_SUFFIX}"


class ArchiveCache:
    def __init__(self, root: Path) -> None:
        self.root = root.expanduser().resolve()

    def ensure(self) -> None:
        self.root.mkdir(parents=True, exist_ok=True)

    def path(self, name: str, version: str) -> Path:
        return self.root / cache_filename(name, version)

    def has(self, name: str, version: str) -> bool:
        return self.path(name, version).is_file()

    def fetch_into(self, name: str, version: str, tarball_url: str, source: TarballSource) -> Path:
        """
        Download ``tarball_url`` into the cache and return the archive path.

        The body is streamed into a ``.part`` sibling and renamed only once the
        stream has been read to the end; on any failure the partial file is removed
        and the error propagates.
        """
        self.ensure()
        target = self.path(name, version)
        partial = target.with_name(target.name + PARTIAL_SUFFIX)
        logger.debug("Caching %s@%s from %s", name, version, tarball_url)
        try:
            with source.open_tarball(tarball_url) as stream, partial.open("wb") as out:
                shutil.copyfileobj(stream, out)
            partial.replace(target)
        except Exception:
            partial.unlink(missing_ok=True)
            raise
        return target

    def entries(self) -> list[Path]:
        if not self.root.is_dir():
            return []
        return sorted(p for p in self.root.iterdir() if p.is_file() and p.name.endswith(ARCHIVE_SUFFIX))

    def clear(self) -> int:
        removed = 0
        for p in self.entries():
            p.unlink()
            removed += 1
        return removed
