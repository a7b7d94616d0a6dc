"""Shared pytest configuration and fixtures."""

import asyncio
import socket
import struct
import threading
import time

import pytest
from flup.client.fcgi_app import (
    Record, FCGI_BEGIN_REQUEST, FCGI_PARAMS, FCGI_STDIN, FCGI_DATA,
    FCGI_STDOUT, FCGI_STDERR, FCGI_END_REQUEST, FCGI_EndRequestBody, decode_pair
)

from phpfpm_exporter.collectors.phpfpm_collector import PHPFPMCollector
from phpfpm_exporter.collectors.target import Target, TargetAddress
from phpfpm_exporter.collectors.transport import Transport, TransportOptions
from phpfpm_exporter.utils.errors import TransportError
from phpfpm_exporter.utils.logger import setup_logger


STATUS_PAGE = (
    "pool:                 www\n"
    "process manager:      dynamic\n"
    "start time:           07/Dec/2016:00:13:21 +0000\n"
    "start since:          120\n"
    "accepted conn:        42\n"
    "listen queue:         1\n"
    "max listen queue:     5\n"
    "listen queue len:     128\n"
    "idle processes:       3\n"
    "active processes:     7\n"
    "total processes:      10\n"
    "max active processes: 9\n"
    "max children reached: 2\n"
    "slow requests:        4\n"
)


class FakeTransport(Transport):
    """Transport returning a canned body or failing with TransportError."""

    def __init__(self, body=STATUS_PAGE.encode(), error=None, delay=0.0):
        super().__init__(TransportOptions())
        self.body = body
        self.error = error
        self.delay = delay
        self.calls = []

    async def fetch(self, address):
        self.calls.append(address)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise TransportError(address.url, self.error)
        return self.body


def make_target(name="www", url="http://127.0.0.1:9000/status", **transport_kwargs):
    return Target(name, TargetAddress.parse(url), FakeTransport(**transport_kwargs))


def samples_by_name(families):
    """Flatten metric families into {sample name: [(labels, value), ...]}."""
    out = {}
    for family in families:
        for sample in family.samples:
            out.setdefault(sample.name, []).append((sample.labels, sample.value))
    return out


def decode_params(data: bytes) -> dict:
    """Decode an FCGI_PARAMS stream."""
    params = {}
    pos = 0
    while pos < len(data):
        pos, (name, value) = decode_pair(data, pos)
        params[name.decode("latin-1")] = value.decode("latin-1")
    return params


class FakeFPM:
    """
    In-process FastCGI responder serving a status page.

    Records every request's params in ``requests``. With ``respond=False``
    connections are accepted but never answered. ``trickle`` sends that many
    stderr records, ``trickle_interval`` seconds apart, before the page.
    """

    def __init__(self, body=STATUS_PAGE, status=None, unix_path=None,
                 respond=True, protocol_status=0, headers=True,
                 stderr=b"notice\n", trickle=0, trickle_interval=0.1):
        self.body = body
        self.status = status
        self.respond = respond
        self.protocol_status = protocol_status
        self.headers = headers
        self.stderr = stderr
        self.trickle = trickle
        self.trickle_interval = trickle_interval
        self.requests = []
        self._stop = threading.Event()

        if unix_path is not None:
            self.sock = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
            self.sock.bind(unix_path)
            self.url = f"unix://{unix_path}"
        else:
            self.sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
            self.sock.bind(("127.0.0.1", 0))
            self.url = "tcp://127.0.0.1:%d/status" % self.sock.getsockname()[1]
        self.sock.listen(16)
        self.sock.settimeout(0.1)
        self._thread = threading.Thread(target=self._serve, daemon=True)

    def start(self):
        self._thread.start()
        return self

    def stop(self):
        self._stop.set()
        self._thread.join(timeout=2)
        self.sock.close()

    def _serve(self):
        while not self._stop.is_set():
            try:
                conn, _ = self.sock.accept()
            except socket.timeout:
                continue
            except OSError:
                return
            threading.Thread(target=self._handle, args=(conn,), daemon=True).start()

    def _handle(self, conn):
        conn.settimeout(5)
        try:
            params = b''
            request_id = 1
            while True:
                rec = Record()
                rec.read(conn)
                if rec.type == FCGI_BEGIN_REQUEST:
                    request_id = rec.requestId
                elif rec.type == FCGI_PARAMS and rec.contentLength:
                    params += rec.contentData
                elif rec.type == FCGI_DATA and not rec.contentLength:
                    break
                elif rec.type == FCGI_STDIN:
                    continue
            self.requests.append(decode_params(params))

            if not self.respond:
                self._stop.wait(5)
                return

            head = b''
            if self.headers:
                if self.status is not None:
                    head += ("Status: %s\r\n" % self.status).encode()
                head += b"Content-type: text/plain;charset=UTF-8\r\n\r\n"
            payload = head + self.body.encode()

            records = [(FCGI_STDERR, b"tick\n")] * self.trickle
            if self.stderr:
                records.append((FCGI_STDERR, self.stderr))
            records += [(FCGI_STDOUT, payload), (FCGI_STDOUT, b'')]

            for index, (record_type, data) in enumerate(records):
                if index < self.trickle:
                    time.sleep(self.trickle_interval)
                rec = Record(record_type, request_id)
                rec.contentData = data
                rec.contentLength = len(data)
                rec.write(conn)

            rec = Record(FCGI_END_REQUEST, request_id)
            rec.contentData = struct.pack(FCGI_EndRequestBody, 0, self.protocol_status)
            rec.contentLength = 8
            rec.write(conn)
        except (OSError, EOFError):
            pass
        finally:
            conn.close()


@pytest.fixture
def logger():
    """Create logger for tests."""
    return setup_logger("test")


@pytest.fixture
def fake_fpm():
    """Factory starting FakeFPM responders, stopped after the test."""
    servers = []

    def factory(**kwargs):
        server = FakeFPM(**kwargs).start()
        servers.append(server)
        return server

    yield factory

    for server in servers:
        server.stop()


@pytest.fixture
def single_collector(logger):
    """Collector with one healthy target."""
    return PHPFPMCollector([make_target()], logger)
