from __future__ import annotations

import logging
import os
import shutil
import stat
import tarfile
from pathlib import Path
from typing import IO

from .exceptions import ArchiveError

logger = logging.getLogger(__name__)


def _strip_leading_component(name: str) -> str | None:
    """Drop the wrapping directory (``package/`` in registry tarballs)."""
    if name.startswith("/"):
        raise ArchiveError(f"Archive contains an absolute path entry: {name!r}")
    parts = [p for p in name.replace("\\", "/").split("/") if p not in ("", ".")]
    if len(parts) <= 1:
        return None
    return "/".join(parts[1:])


def _open(source: str | os.PathLike[str] | IO[bytes]) -> tarfile.TarFile:
    if isinstance(source, (str, os.PathLike)):
        return tarfile.open(source, mode="r:*")
    # Stream mode reads sequentially, so a download can be extracted while it arrives.
    return tarfile.open(fileobj=source, mode="r|*")


def extract_archive(source: str | os.PathLike[str] | IO[bytes], dest: Path) -> int:
    """
    Extract a (gzipped) tarball into ``dest``, stripping one leading path component.

    ``dest`` is created if needed and is not emptied first; files from the archive
    overwrite files of the same name. Links and special files are skipped. Returns the
    number of regular files written.
    """
    dest.mkdir(parents=True, exist_ok=True)
    base = dest.resolve()
    written = 0
    try:
        with _open(source) as tf:
            for member in tf:
                rel = _strip_leading_component(member.name)
                if rel is None:
                    continue
                target = (base / rel).resolve()
                if not str(target).startswith(str(base) + os.sep) and target != base:
                    raise ArchiveError(f"Archive contains an invalid path entry: {member.name!r}")

                if member.isdir():
                    target.mkdir(parents=True, exist_ok=True)
                    continue
                if not member.isfile():
                    logger.debug("Skipping non-regular archive entry %s", member.name)
                    continue

                target.parent.mkdir(parents=True, exist_ok=True)
                src = tf.extractfile(member)
                if src is None:
                    continue
                with src, target.open("wb") as out:
                    shutil.copyfileobj(src, out)
                os.chmod(target, (member.mode & 0o777) | stat.S_IRUSR | stat.S_IWUSR)
                written += 1
    except tarfile.TarError as e:
        raise ArchiveError(f"Could not read archive: {e}") from e
    logger.debug("Extracted %d files into %s", written, dest)
    return written
