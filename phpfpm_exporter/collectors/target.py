"""Per-target identity, address and cumulative failure state."""

import threading
from dataclasses import dataclass, replace
from typing import Optional, Tuple, Union
from urllib.parse import urlsplit, urlunsplit

from ..utils.errors import ConfigurationError


DEFAULT_STATUS_PATH = "/status"

FASTCGI_SCHEMES = ("tcp", "unix")


@dataclass(frozen=True)
class TargetAddress:
    """
    Parsed status endpoint.

    For ``unix://`` addresses the URL path is the socket path and the
    status page is always requested as ``/status``. For ``tcp://`` an empty
    path also falls back to ``/status``.
    """
    scheme: str
    netloc: str
    host: Optional[str]
    port: Optional[int]
    status_path: str
    query: str = ""
    socket_path: Optional[str] = None

    @classmethod
    def parse(cls, url: str) -> "TargetAddress":
        """
        Parse an endpoint URL.

        Raises:
            ConfigurationError: For unsupported schemes or missing parts
        """
        parts = urlsplit(url)
        scheme = parts.scheme
        try:
            port = parts.port
        except ValueError as e:
            raise ConfigurationError(f"Invalid port in {url}: {e}") from e

        if scheme == "unix":
            if not parts.path:
                raise ConfigurationError(f"unix address needs a socket path: {url}")
            return cls(
                scheme=scheme,
                netloc=parts.netloc,
                host=None,
                port=None,
                status_path=DEFAULT_STATUS_PATH,
                socket_path=parts.path,
            )

        if scheme not in ("http", "https", "tcp"):
            raise ConfigurationError(f"Unsupported scheme {scheme!r} in {url}")
        if not parts.hostname:
            raise ConfigurationError(f"Address needs a host: {url}")

        path = parts.path
        if scheme == "tcp" and not path:
            path = DEFAULT_STATUS_PATH

        return cls(
            scheme=scheme,
            netloc=parts.netloc,
            host=parts.hostname,
            port=port,
            status_path=path,
            query=parts.query,
        )

    @property
    def is_fastcgi(self) -> bool:
        return self.scheme in FASTCGI_SCHEMES

    @property
    def url(self) -> str:
        """URL form, used for HTTP requests and in log messages."""
        if self.scheme == "unix":
            return f"unix://{self.socket_path}"
        return urlunsplit((self.scheme, self.netloc, self.status_path, self.query, ""))

    @property
    def connect_target(self) -> Union[str, Tuple[str, int]]:
        """Socket path for unix, (host, port) otherwise."""
        if self.scheme == "unix":
            return self.socket_path
        if self.port is not None:
            return self.host, self.port
        return self.host, 443 if self.scheme == "https" else 80

    def with_status_path(self, status_path: str) -> "TargetAddress":
        return replace(self, status_path=status_path)


class Target:
    """
    One polled endpoint and its cumulative failure counter.

    The counter lives for the whole process, never decreases and is only
    touched under ``_lock`` so concurrent cycles cannot lose increments.
    """

    def __init__(self, name: str, address: TargetAddress, transport):
        self.name = name
        self.address = address
        self.transport = transport
        self._failures = 0
        self._lock = threading.Lock()

    @property
    def failures(self) -> int:
        with self._lock:
            return self._failures

    def record_outcome(self, failed: bool) -> int:
        """
        Count a failed fetch and read the counter in one critical section.

        Args:
            failed: Whether this cycle's fetch failed

        Returns:
            int: Counter value to emit for this cycle
        """
        with self._lock:
            if failed:
                self._failures += 1
            return self._failures

    def __repr__(self) -> str:
        return f"Target(name={self.name!r}, url={self.address.url!r})"
