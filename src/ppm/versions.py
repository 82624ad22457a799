from __future__ import annotations

from dataclasses import dataclass
from functools import cmp_to_key

from .exceptions import PpmError, VersionNotFoundError
from .registry import RegistryMetadata

LATEST = "latest"

# Ranges that npm manifests use to mean "anything".
_ANY_RANGES = {"", "*", LATEST}


@dataclass(frozen=True)
class PackageSpecifier:
    name: str
    range: str | None = None

    @property
    def is_scoped(self) -> bool:
        return self.name.startswith("@")

    def __str__(self) -> str:
        return f"{self.name}@{self.range}" if self.range else self.name


def _validate_name(name: str, *, original: str) -> str:
    if not name:
        raise PpmError(f"Invalid package specifier {original!r}: empty package name.")
    if name.startswith("@"):
        scope, _, bare = name[1:].partition("/")
        if not scope or not bare or "/" in bare:
            raise PpmError(f"Invalid package specifier {original!r}. Expected @scope/name.")
        parts = [scope, bare]
    else:
        if "/" in name:
            raise PpmError(f"Invalid package specifier {original!r}. Only scoped names may contain '/'.")
        parts = [name]
    for part in parts:
        if part in (".", "..") or "\\" in part or part.startswith("."):
            raise PpmError(f"Invalid package name {name!r}.")
    return name


def specifier_for(name: str, range_: str | None = None) -> PackageSpecifier:
    name = _validate_name(name.strip(), original=name)
    range_ = range_.strip() if range_ is not None else None
    return PackageSpecifier(name=name, range=range_ or None)


def parse_specifier(value: str) -> PackageSpecifier:
    """
    Split ``name@range`` into its parts.

    The leading ``@`` of a scoped name is part of the name, so ``@babel/core@7.0.0``
    yields ``("@babel/core", "7.0.0")`` and ``@babel/core`` yields no range.
    """
    raw = value.strip()
    if raw.startswith("@"):
        name, sep, range_ = raw[1:].partition("@")
        name = "@" + name
    else:
        name, sep, range_ = raw.partition("@")
    if sep and not range_.strip():
        raise PpmError(f"Invalid package specifier {value!r}: empty version after '@'.")
    if "@" in range_:
        raise PpmError(f"Invalid package specifier {value!r}: too many '@' separators.")
    return specifier_for(name, range_ if sep else None)


def _cmp_component(a: str, b: str) -> int:
    if a.isdigit() and b.isdigit():
        x, y = int(a), int(b)
    else:
        x, y = a, b  # type: ignore[assignment]
    if x < y:
        return -1
    if x > y:
        return 1
    return 0


def compare_versions(a: str, b: str) -> int:
    """
    Numeric-aware comparison: dot-separated components compare as integers when
    both are digits, otherwise lexically. A version that is a prefix of another
    sorts first.
    """
    pa = a.split(".")
    pb = b.split(".")
    for x, y in zip(pa, pb):
        c = _cmp_component(x, y)
        if c:
            return c
    if len(pa) < len(pb):
        return -1
    if len(pa) > len(pb):
        return 1
    return 0


def sort_versions(versions: list[str], *, descending: bool = True) -> list[str]:
    return sorted(versions, key=cmp_to_key(compare_versions), reverse=descending)


def is_any_range(range_: str | None) -> bool:
    return range_ is None or range_.strip() in _ANY_RANGES


def version_satisfies(version: str, range_: str | None) -> bool:
    # Prefix matching only: ^1 means "starts with 1.", ~1.2 means "starts with 1.2.".
    # Pre-release ordering and comparator ranges (>=, <, ||) are not modelled.
    if range_ is None or is_any_range(range_):
        return True
    spec = range_.strip()
    if spec.startswith("^"):
        major = spec[1:].split(".")[0]
        return version.startswith(major + ".")
    if spec.startswith("~"):
        prefix = ".".join(spec[1:].split(".")[:2])
        return version.startswith(prefix + ".")
    return version == spec


def resolve_version(name: str, range_: str | None, metadata: RegistryMetadata) -> str:
    available = sort_versions(list(metadata.versions))

    if range_ is None or is_any_range(range_):
        latest = metadata.dist_tags.get(LATEST)
        if latest is None or latest not in metadata.versions:
            raise VersionNotFoundError(name, LATEST, available)
        return latest

    spec = range_.strip()
    tagged = metadata.dist_tags.get(spec)
    if tagged is not None and tagged in metadata.versions:
        return tagged

    for version in available:
        if version_satisfies(version, spec):
            return version
    raise VersionNotFoundError(name, spec, available)
