"""
Exception hierarchy shared by the registry client, the install engine and the CLI.
"""

from __future__ import annotations


class PpmError(RuntimeError):
    pass


class ConfigError(PpmError):
    """Raised when ppm.json, prisma.lock, a package manifest or the user config is malformed."""


class PpmNetworkError(PpmError):
    """Transport-level failure (connection refused, timeout, broken stream)."""


class PpmHTTPError(PpmError):
    def __init__(self, status_code: int, body: str) -> None:
        super().__init__(f"HTTP {status_code}")
        self.status_code = status_code
        self.body = body

    def __str__(self) -> str:
        return f"HTTP {self.status_code}: {self.body}"


class PackageNotFoundError(PpmError):
    def __init__(self, name: str) -> None:
        super().__init__(f"Package '{name}' not found in registry.")
        self.name = name


class VersionNotFoundError(PpmError):
    def __init__(self, name: str, requested: str, available: list[str]) -> None:
        shown = ", ".join(available[:5])
        more = "..." if len(available) > 5 else ""
        super().__init__(
            f"No version found for {name}@{requested}. Available versions: {shown or '<none>'}{more}"
        )
        self.name = name
        self.requested = requested
        self.available = tuple(available[:5])


class ArchiveError(PpmError):
    """Raised for archives that cannot be read or would write outside the destination."""
