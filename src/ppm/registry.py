from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import IO, Any

from .client import RegistryClient
from .exceptions import PackageNotFoundError, PpmError, PpmHTTPError


@dataclass(frozen=True)
class VersionInfo:
    version: str
    tarball_url: str | None
    dependencies: dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class RegistryMetadata:
    name: str
    dist_tags: dict[str, str]
    versions: dict[str, VersionInfo]


def _string_map(raw: Any) -> dict[str, str]:
    if not isinstance(raw, dict):
        return {}
    return {k: v for k, v in raw.items() if isinstance(k, str) and isinstance(v, str)}


def _parse_version_obj(version: str, raw: Any) -> VersionInfo:
    if not isinstance(raw, dict):
        return VersionInfo(version=version, tarball_url=None)

    tarball_url: str | None = None
    dist = raw.get("dist")
    if isinstance(dist, dict) and isinstance(dist.get("tarball"), str):
        val = dist["tarball"].strip()
        if val:
            tarball_url = val

    return VersionInfo(version=version, tarball_url=tarball_url, dependencies=_string_map(raw.get("dependencies")))


def parse_metadata(name: str, obj: Any) -> RegistryMetadata:
    """
    Parse a registry packument (``{"dist-tags": ..., "versions": ...}``).

    Entries that are not objects are kept as versions without a tarball so that they
    still show up in "available versions" diagnostics.
    """
    if not isinstance(obj, dict):
        raise PpmError(f"Unexpected registry response for {name}: expected a JSON object")

    versions_raw = obj.get("versions")
    versions: dict[str, VersionInfo] = {}
    if isinstance(versions_raw, dict):
        for version, raw in versions_raw.items():
            if not isinstance(version, str) or not version.strip():
                continue
            versions[version] = _parse_version_obj(version, raw)

    return RegistryMetadata(name=name, dist_tags=_string_map(obj.get("dist-tags")), versions=versions)


class NpmRegistry:
    """Package source backed by an npm-compatible HTTP registry."""

    def __init__(self, client: RegistryClient) -> None:
        self._client = client

    def get_metadata(self, name: str) -> RegistryMetadata:
        try:
            data = self._client.get_json(self._client.package_url(name))
        except PpmHTTPError as e:
            if e.status_code != 404:
                raise
            raise PackageNotFoundError(name) from e
        return parse_metadata(name, data)

    @contextmanager
    def open_tarball(self, url: str) -> Iterator[IO[bytes]]:
        with self._client.open_stream(url) as stream:
            yield stream
