"""Tests for HTTP and FastCGI transports."""

import base64
import logging
import ssl
import time
from pathlib import Path

import httpx
import pytest

from phpfpm_exporter.collectors.target import TargetAddress
from phpfpm_exporter.collectors.transport import (
    FastCGITransport,
    HTTPTransport,
    TransportOptions,
    build_transport,
)
from phpfpm_exporter.collectors.fcgi import FCGIClient
from phpfpm_exporter.config.models import BasicAuthConfig, TLSConfig
from phpfpm_exporter.utils.errors import ConfigurationError, TransportError

from conftest import STATUS_PAGE


FIXTURES = Path(__file__).resolve().parent.parent / "fixtures"
CLIENT_CERT = str(FIXTURES / "client.crt")
CLIENT_KEY = str(FIXTURES / "client.key")


HTTP_ADDRESS = TargetAddress.parse("http://127.0.0.1:9000/status")


def test_build_transport_picks_by_scheme():
    options = TransportOptions()

    assert isinstance(build_transport(HTTP_ADDRESS, options), HTTPTransport)
    assert isinstance(build_transport(TargetAddress.parse("https://h/status"), options), HTTPTransport)
    assert isinstance(build_transport(TargetAddress.parse("tcp://h:9000/status"), options), FastCGITransport)
    assert isinstance(build_transport(TargetAddress.parse("unix:///tmp/fpm.sock"), options), FastCGITransport)


class TestHTTPTransport:
    """Test suite for HTTPTransport."""

    @pytest.mark.asyncio
    async def test_success_returns_body(self):
        seen = []

        def handler(request):
            seen.append(request)
            return httpx.Response(200, text=STATUS_PAGE)

        transport = HTTPTransport(TransportOptions(), mock_transport=httpx.MockTransport(handler))
        body = await transport.fetch(HTTP_ADDRESS)

        assert body == STATUS_PAGE.encode()
        assert seen[0].method == "GET"
        assert str(seen[0].url) == "http://127.0.0.1:9000/status"
        assert "authorization" not in seen[0].headers

    @pytest.mark.asyncio
    async def test_non_200_is_transport_error(self):
        transport = HTTPTransport(
            TransportOptions(),
            mock_transport=httpx.MockTransport(lambda request: httpx.Response(404, text="File not found."))
        )

        with pytest.raises(TransportError, match="unexpected HTTP status: 404"):
            await transport.fetch(HTTP_ADDRESS)

    @pytest.mark.asyncio
    async def test_redirect_is_not_followed(self):
        transport = HTTPTransport(
            TransportOptions(),
            mock_transport=httpx.MockTransport(
                lambda request: httpx.Response(302, headers={"Location": "/elsewhere"})
            )
        )

        with pytest.raises(TransportError, match="302"):
            await transport.fetch(HTTP_ADDRESS)

    @pytest.mark.asyncio
    async def test_connection_error_is_transport_error(self):
        def handler(request):
            raise httpx.ConnectError("Connection refused", request=request)

        transport = HTTPTransport(TransportOptions(), mock_transport=httpx.MockTransport(handler))

        with pytest.raises(TransportError, match="HTTP request failed") as exc_info:
            await transport.fetch(HTTP_ADDRESS)

        assert isinstance(exc_info.value.__cause__, httpx.ConnectError)
        assert exc_info.value.address == HTTP_ADDRESS.url

    @pytest.mark.asyncio
    async def test_timeout_is_transport_error(self):
        def handler(request):
            raise httpx.ReadTimeout("timed out", request=request)

        transport = HTTPTransport(TransportOptions(timeout=0.1), mock_transport=httpx.MockTransport(handler))

        with pytest.raises(TransportError, match="timed out"):
            await transport.fetch(HTTP_ADDRESS)

    @pytest.mark.asyncio
    async def test_basic_auth_header(self):
        seen = []

        def handler(request):
            seen.append(request.headers.get("authorization"))
            return httpx.Response(200, text="accepted conn: 1\n")

        options = TransportOptions(basic_auth=BasicAuthConfig(username="admin", password="s3cret"))
        transport = HTTPTransport(options, mock_transport=httpx.MockTransport(handler))
        await transport.fetch(HTTP_ADDRESS)

        expected = base64.b64encode(b"admin:s3cret").decode()
        assert seen == [f"Basic {expected}"]

    def test_client_timeout_follows_options(self):
        transport = HTTPTransport(TransportOptions(timeout=2.5))

        assert transport._client_kwargs()["timeout"] == httpx.Timeout(2.5)

    def test_no_timeout_configured(self):
        transport = HTTPTransport(TransportOptions())

        assert transport._client_kwargs()["timeout"] == httpx.Timeout(None)


class TestFastCGITransport:
    """Test suite for FastCGITransport against an in-process responder."""

    @pytest.mark.asyncio
    async def test_tcp_fetch(self, fake_fpm):
        server = fake_fpm()
        transport = FastCGITransport(TransportOptions(timeout=5))

        body = await transport.fetch(TargetAddress.parse(server.url))

        assert body == STATUS_PAGE.encode()
        params = server.requests[0]
        assert params["SCRIPT_FILENAME"] == "/status"
        assert params["SCRIPT_NAME"] == "/status"
        assert params["REQUEST_METHOD"] == "GET"

    @pytest.mark.asyncio
    async def test_tcp_custom_path(self, fake_fpm):
        server = fake_fpm()
        address = TargetAddress.parse(server.url).with_status_path("/fpm-status")

        await FastCGITransport(TransportOptions(timeout=5)).fetch(address)

        assert server.requests[0]["SCRIPT_NAME"] == "/fpm-status"

    @pytest.mark.asyncio
    async def test_unix_socket_fetch(self, fake_fpm, tmp_path):
        server = fake_fpm(unix_path=str(tmp_path / "fpm.sock"))
        transport = FastCGITransport(TransportOptions(timeout=5))

        body = await transport.fetch(TargetAddress.parse(server.url))

        assert body == STATUS_PAGE.encode()
        assert server.requests[0]["SCRIPT_FILENAME"] == "/status"

    @pytest.mark.asyncio
    async def test_explicit_200_status_is_success(self, fake_fpm):
        server = fake_fpm(status="200 OK")

        body = await FastCGITransport(TransportOptions(timeout=5)).fetch(TargetAddress.parse(server.url))

        assert body == STATUS_PAGE.encode()

    @pytest.mark.asyncio
    async def test_error_status_is_transport_error(self, fake_fpm):
        server = fake_fpm(status="403 Forbidden", body="Access denied.\n")

        with pytest.raises(TransportError, match="unexpected status: 403"):
            await FastCGITransport(TransportOptions(timeout=5)).fetch(TargetAddress.parse(server.url))

    @pytest.mark.asyncio
    async def test_rejected_request_is_transport_error(self, fake_fpm):
        server = fake_fpm(protocol_status=2)

        with pytest.raises(TransportError, match="protocol status 2"):
            await FastCGITransport(TransportOptions(timeout=5)).fetch(TargetAddress.parse(server.url))

    @pytest.mark.asyncio
    async def test_missing_headers_is_transport_error(self, fake_fpm):
        server = fake_fpm(headers=False, body="accepted conn: 1\n")

        with pytest.raises(TransportError, match="malformed"):
            await FastCGITransport(TransportOptions(timeout=5)).fetch(TargetAddress.parse(server.url))

    @pytest.mark.asyncio
    async def test_timeout_is_transport_error(self, fake_fpm):
        server = fake_fpm(respond=False)

        with pytest.raises(TransportError, match="timed out"):
            await FastCGITransport(TransportOptions(timeout=0.2)).fetch(TargetAddress.parse(server.url))

    @pytest.mark.asyncio
    async def test_connection_refused_is_transport_error(self, tmp_path):
        address = TargetAddress.parse(f"unix://{tmp_path}/missing.sock")

        with pytest.raises(TransportError, match="fastcgi dial failed"):
            await FastCGITransport(TransportOptions(timeout=1)).fetch(address)

    @pytest.mark.asyncio
    async def test_deadline_covers_whole_request(self, fake_fpm):
        # Every record arrives within the timeout, the whole response does not
        server = fake_fpm(trickle=10, trickle_interval=0.1)

        start = time.monotonic()
        with pytest.raises(TransportError, match="timed out"):
            await FastCGITransport(TransportOptions(timeout=0.35)).fetch(TargetAddress.parse(server.url))

        assert time.monotonic() - start < 0.9

    @pytest.mark.asyncio
    async def test_slow_records_within_deadline(self, fake_fpm):
        server = fake_fpm(trickle=3, trickle_interval=0.05)

        body = await FastCGITransport(TransportOptions(timeout=5)).fetch(TargetAddress.parse(server.url))

        assert body == STATUS_PAGE.encode()

    @pytest.mark.asyncio
    async def test_stderr_logged_at_debug(self, fake_fpm, caplog, monkeypatch):
        monkeypatch.setattr(logging.getLogger("phpfpm_exporter"), "propagate", True)
        server = fake_fpm(stderr=b"Primary script unknown\n")

        with caplog.at_level(logging.DEBUG, logger="phpfpm_exporter.fastcgi"):
            await FastCGITransport(TransportOptions(timeout=5)).fetch(TargetAddress.parse(server.url))

        record = next(r for r in caplog.records if r.getMessage() == "php-fpm wrote to stderr")
        assert record.stderr == "Primary script unknown\n"
        assert record.target_address == server.url


class TestFCGIClient:
    """Test suite for the FastCGI client."""

    def test_response_parts(self, fake_fpm):
        server = fake_fpm(status="200 OK", stderr=b"warn\n")
        client = FCGIClient(TargetAddress.parse(server.url).connect_target, timeout=5)

        response = client.get(FastCGITransport.build_params(TargetAddress.parse(server.url)))

        assert response.status == 200
        assert response.body == STATUS_PAGE.encode()
        assert response.stderr == b"warn\n"

    def test_no_status_header(self, fake_fpm):
        server = fake_fpm(stderr=b"")
        client = FCGIClient(TargetAddress.parse(server.url).connect_target, timeout=5)

        response = client.get({"SCRIPT_NAME": "/status"})

        assert response.status == 0
        assert response.stderr == b""
        assert server.requests[0] == {"SCRIPT_NAME": "/status"}

    def test_address(self):
        assert FCGIClient(("127.0.0.1", 9000)).address == "tcp://127.0.0.1:9000"
        assert FCGIClient("/run/php/fpm.sock").address == "unix:///run/php/fpm.sock"


class TestHTTPTransportTLS:
    """Client certificate handling for HTTPS targets."""

    def test_without_tls_uses_default_verification(self):
        assert HTTPTransport(TransportOptions())._verify is True

    def test_client_certificate_loaded(self):
        tls = TLSConfig(cert_file=CLIENT_CERT, key_file=CLIENT_KEY)

        transport = HTTPTransport(TransportOptions(tls=tls))

        context = transport._verify
        assert isinstance(context, ssl.SSLContext)
        assert context.verify_mode == ssl.CERT_REQUIRED
        assert context.check_hostname
        assert transport._client_kwargs()["verify"] is context

    def test_custom_ca(self):
        tls = TLSConfig(cert_file=CLIENT_CERT, key_file=CLIENT_KEY, ca_file=CLIENT_CERT)

        context = HTTPTransport(TransportOptions(tls=tls))._verify

        assert isinstance(context, ssl.SSLContext)
        assert context.cert_store_stats()["x509_ca"] == 1

    def test_insecure_skip_verify(self):
        tls = TLSConfig(cert_file=CLIENT_CERT, key_file=CLIENT_KEY, insecure_skip_verify=True)

        context = HTTPTransport(TransportOptions(tls=tls))._verify

        assert context.verify_mode == ssl.CERT_NONE
        assert not context.check_hostname

    def test_junk_certificate_is_configuration_error(self, tmp_path):
        cert = tmp_path / "client.crt"
        key = tmp_path / "client.key"
        cert.write_text("-----BEGIN CERTIFICATE-----\nnot a certificate\n-----END CERTIFICATE-----\n")
        key.write_text("junk\n")
        tls = TLSConfig(cert_file=str(cert), key_file=str(key))

        with pytest.raises(ConfigurationError, match="Failed to load TLS client certificate"):
            HTTPTransport(TransportOptions(tls=tls))

    def test_mismatched_key_is_configuration_error(self, tmp_path):
        other_key = tmp_path / "other.key"
        other_key.write_text(Path(CLIENT_CERT).read_text())
        tls = TLSConfig(cert_file=CLIENT_CERT, key_file=str(other_key))

        with pytest.raises(ConfigurationError):
            HTTPTransport(TransportOptions(tls=tls))
