from __future__ import annotations

import io
import logging
from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any
from urllib.parse import quote

import httpx

from .config import DEFAULT_REGISTRY_URL, DEFAULT_TIMEOUT_S
from .exceptions import PpmError, PpmHTTPError, PpmNetworkError

logger = logging.getLogger(__name__)


class _ChunkReader(io.RawIOBase):
    """Adapts an iterator of byte chunks to a readable raw stream."""

    def __init__(self, chunks: Iterator[bytes]) -> None:
        self._chunks = chunks
        self._pending = b""

    def readable(self) -> bool:
        return True

    def readinto(self, buffer: Any) -> int:
        while not self._pending:
            try:
                self._pending = next(self._chunks)
            except StopIteration:
                return 0
        n = min(len(buffer), len(self._pending))
        buffer[:n] = self._pending[:n]
        self._pending = self._pending[n:]
        return n


class RegistryClient:
    """
    Thin HTTP layer over an npm-compatible registry.

    Every request goes through one httpx.Client so the configured timeout applies
    to metadata lookups and tarball downloads alike.
    """

    def __init__(
        self,
        *,
        registry_url: str = DEFAULT_REGISTRY_URL,
        timeout_s: float = DEFAULT_TIMEOUT_S,
        default_headers: dict[str, str] | None = None,
    ) -> None:
        self.registry_url = registry_url.rstrip("/")
        self.timeout_s = timeout_s
        self._default_headers = {"accept": "application/json", **(default_headers or {})}
        self._http = httpx.Client(timeout=timeout_s, follow_redirects=True)

    def close(self) -> None:
        self._http.close()

    def __enter__(self) -> "RegistryClient":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def package_url(self, name: str) -> str:
        # Scoped names travel as @scope%2Fname.
        return f"{self.registry_url}/{quote(name, safe='@')}"

    def request(
        self,
        *,
        method: str,
        url: str,
        params: dict[str, Any] | None = None,
        headers: dict[str, str] | None = None,
    ) -> httpx.Response:
        req_headers = dict(self._default_headers)
        if headers:
            req_headers.update(headers)

        logger.debug("%s %s", method.upper(), url)
        try:
            resp = self._http.request(method.upper(), url, params=params, headers=req_headers)
        except httpx.HTTPError as e:
            raise PpmNetworkError(f"Request failed: {e}") from e

        if resp.status_code >= 400:
            raise PpmHTTPError(resp.status_code, resp.text)
        return resp

    def get_json(self, url: str, *, params: dict[str, Any] | None = None) -> Any:
        resp = self.request(method="GET", url=url, params=params)
        try:
            return resp.json()
        except ValueError as e:  # JSONDecodeError or UnicodeDecodeError
            raise PpmError(f"Invalid JSON from {url}: {e}") from e

    @contextmanager
    def open_stream(self, url: str) -> Iterator[io.BufferedReader]:
        """
        Stream a response body as a binary file object.

        Transport errors raised while the caller is still reading are reported as
        PpmNetworkError, same as errors while connecting.
        """
        logger.debug("GET %s (stream)", url)
        try:
            with self._http.stream("GET", url, headers={**self._default_headers, "accept": "*/*"}) as resp:
                if resp.status_code >= 400:
                    resp.read()
                    raise PpmHTTPError(resp.status_code, resp.text)
                yield io.BufferedReader(_ChunkReader(resp.iter_bytes()))
        except httpx.HTTPError as e:
            raise PpmNetworkError(f"Download failed for {url}: {e}") from e
