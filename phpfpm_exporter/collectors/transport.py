"""
Transports fetching the raw status page of one target.

The transport kind is chosen once per target when the configuration is
loaded: ``HTTPTransport`` for http/https URLs, ``FastCGITransport`` for
tcp/unix ones. Neither retries; a failure is reported as TransportError and
counted by the collector.
"""

import asyncio
import logging
import ssl
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Dict, Optional

import httpx

from ..config.models import BasicAuthConfig, TLSConfig
from ..utils.errors import ConfigurationError, TransportError
from .fcgi import FCGIClient
from .target import TargetAddress


logger = logging.getLogger("phpfpm_exporter.fastcgi")


@dataclass(frozen=True)
class TransportOptions:
    """Settings shared by every target's transport."""
    timeout: Optional[float] = None
    tls: Optional[TLSConfig] = None
    basic_auth: Optional[BasicAuthConfig] = None


class Transport(ABC):
    """Fetches raw status bytes from one address."""

    def __init__(self, options: TransportOptions):
        self.options = options

    @abstractmethod
    async def fetch(self, address: TargetAddress) -> bytes:
        """
        Fetch the status page.

        Raises:
            TransportError: If the page could not be retrieved
        """


class HTTPTransport(Transport):
    """Plain HTTP/1.1 GET, optionally with mutual TLS and basic auth."""

    def __init__(
        self,
        options: TransportOptions,
        mock_transport: Optional[httpx.AsyncBaseTransport] = None
    ):
        super().__init__(options)
        self._verify = self._build_ssl_context(options.tls)
        self._mock_transport = mock_transport

    @staticmethod
    def _build_ssl_context(tls: Optional[TLSConfig]):
        if tls is None:
            return True

        try:
            context = ssl.create_default_context(cafile=tls.ca_file)
            context.load_cert_chain(tls.cert_file, tls.key_file)
        except (ssl.SSLError, OSError) as e:
            raise ConfigurationError(f"Failed to load TLS client certificate: {e}") from e
        if tls.insecure_skip_verify:
            context.check_hostname = False
            context.verify_mode = ssl.CERT_NONE
        return context

    def _client_kwargs(self) -> Dict:
        kwargs = {
            "timeout": httpx.Timeout(self.options.timeout),
            "verify": self._verify,
            "http1": True,
            "http2": False,
            "follow_redirects": False,
        }
        if self.options.basic_auth is not None:
            kwargs["auth"] = httpx.BasicAuth(
                self.options.basic_auth.username,
                self.options.basic_auth.password
            )
        if self._mock_transport is not None:
            kwargs["transport"] = self._mock_transport
        return kwargs

    async def fetch(self, address: TargetAddress) -> bytes:
        url = address.url
        try:
            async with httpx.AsyncClient(**self._client_kwargs()) as client:
                response = await client.get(url)
        except httpx.TimeoutException as e:
            raise TransportError(url, f"HTTP request timed out: {e!r}") from e
        except httpx.HTTPError as e:
            raise TransportError(url, f"HTTP request failed: {e!r}") from e

        if response.status_code != 200:
            raise TransportError(url, f"unexpected HTTP status: {response.status_code}")

        return response.content


class FastCGITransport(Transport):
    """FastCGI GET over TCP or a Unix socket, run in a worker thread."""

    @staticmethod
    def build_params(address: TargetAddress) -> Dict[str, str]:
        path = address.status_path or "/status"
        return {
            "SCRIPT_FILENAME": path,
            "SCRIPT_NAME": path,
            "REQUEST_METHOD": "GET",
            "REQUEST_URI": path,
            "QUERY_STRING": "",
            "CONTENT_LENGTH": "0",
            "SERVER_PROTOCOL": "HTTP/1.1",
            "GATEWAY_INTERFACE": "CGI/1.1",
            "SERVER_SOFTWARE": "phpfpm-exporter",
        }

    async def fetch(self, address: TargetAddress) -> bytes:
        client = FCGIClient(address.connect_target, timeout=self.options.timeout)
        response = await asyncio.to_thread(client.get, self.build_params(address))

        if response.stderr:
            logger.debug(
                "php-fpm wrote to stderr",
                extra={"target_address": address.url, "stderr": response.stderr.decode("utf-8", errors="replace")}
            )

        if response.status not in (0, 200):
            raise TransportError(address.url, f"unexpected status: {response.status}")

        return response.body


def build_transport(address: TargetAddress, options: TransportOptions) -> Transport:
    """Pick the transport for an address by scheme."""
    if address.is_fastcgi:
        return FastCGITransport(options)
    return HTTPTransport(options)
