"""
Minimal FastCGI client for fetching a single status page.

Built on flup's FastCGI client: record framing, params encoding and the
protocol constants come from ``flup.client.fcgi_app``. Only a one-shot
responder request is supported: no connection multiplexing, no keep-alive,
empty stdin.
"""

import socket
import struct
import time
from dataclasses import dataclass
from typing import Dict, Optional, Tuple, Union

from flup.client.fcgi_app import FCGIApp
from flup.client.fcgi_app import (
    Record, FCGI_BEGIN_REQUEST, FCGI_BeginRequestBody, FCGI_RESPONDER,
    FCGI_BeginRequestBody_LEN, FCGI_STDIN, FCGI_DATA, FCGI_STDOUT, FCGI_STDERR,
    FCGI_END_REQUEST, FCGI_EndRequestBody, FCGI_REQUEST_COMPLETE
)

from ..utils.errors import TransportError


# Only request on the connection
REQUEST_ID = 1


@dataclass
class FCGIResponse:
    """Decoded responder output. status is 0 when no Status header was sent."""
    status: int
    body: bytes = b''
    stderr: bytes = b''


class FCGIClient(FCGIApp):
    """
    One-shot FastCGI responder client.

    ``timeout`` is a deadline for the whole request: connect, send and the
    read loop share it. It is checked before every record, so a record that
    is already being received can overrun it by at most the time left when
    its read started.

    Args:
        connect: Unix socket path, or (host, port) tuple for TCP
        timeout: Seconds for the whole request; None blocks indefinitely
    """

    def __init__(self, connect: Union[str, Tuple[str, int]], timeout: Optional[float] = None):
        super().__init__(connect=connect)
        self._timeout = timeout

    @property
    def address(self) -> str:
        if isinstance(self._connect, str):
            return f"unix://{self._connect}"
        return "tcp://%s:%s" % self._connect

    def get(self, params: Dict[str, str]) -> FCGIResponse:
        """
        Send a request with the given CGI params and read the full response.

        Raises:
            TransportError: On socket errors, an expired deadline or
                malformed records
        """
        deadline = None if self._timeout is None else time.monotonic() + self._timeout

        try:
            sock = self._getConnection()
        except OSError as e:
            raise TransportError(self.address, f"fastcgi dial failed: {e}") from e

        try:
            self._arm(sock, deadline)
            self._send_request(sock, params)
            stdout, stderr = self._read_response(sock, deadline)
        except (OSError, EOFError, struct.error) as e:
            if self._timed_out(e, deadline):
                raise TransportError(
                    self.address, f"fastcgi request timed out after {self._timeout}s"
                ) from e
            raise TransportError(self.address, f"fastcgi get failed: {e!r}") from e
        finally:
            sock.close()

        status, body = self._parse_stdout(stdout)
        return FCGIResponse(status=status, body=body, stderr=stderr)

    def _getConnection(self) -> socket.socket:
        if isinstance(self._connect, str):
            sock = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
            sock.settimeout(self._timeout)
            try:
                sock.connect(self._connect)
            except OSError:
                sock.close()
                raise
            return sock

        return socket.create_connection(self._connect, timeout=self._timeout)

    @staticmethod
    def _timed_out(error: BaseException, deadline: Optional[float]) -> bool:
        # flup reports a socket timeout inside a record read as EOFError
        if isinstance(error, socket.timeout) or isinstance(error.__context__, socket.timeout):
            return True
        return deadline is not None and time.monotonic() >= deadline

    @staticmethod
    def _arm(sock: socket.socket, deadline: Optional[float]):
        """Limit the next socket operations to the time left."""
        if deadline is None:
            return
        remaining = deadline - time.monotonic()
        if remaining <= 0:
            raise TimeoutError("deadline exceeded")
        sock.settimeout(remaining)

    def _send_request(self, sock: socket.socket, params: Dict[str, str]):
        rec = Record(FCGI_BEGIN_REQUEST, REQUEST_ID)
        rec.contentData = struct.pack(FCGI_BeginRequestBody, FCGI_RESPONDER, 0)
        rec.contentLength = FCGI_BeginRequestBody_LEN
        rec.write(sock)

        # An empty params record ends the stream
        self._fcgiParams(sock, REQUEST_ID, params)
        self._fcgiParams(sock, REQUEST_ID, {})

        for record_type in (FCGI_STDIN, FCGI_DATA):
            Record(record_type, REQUEST_ID).write(sock)

    def _read_response(self, sock: socket.socket, deadline: Optional[float]) -> Tuple[bytes, bytes]:
        stdout = []
        stderr = []
        while True:
            self._arm(sock, deadline)
            inrec = Record()
            inrec.read(sock)
            if inrec.requestId != REQUEST_ID:
                continue
            if inrec.type == FCGI_STDOUT:
                if inrec.contentLength:
                    stdout.append(inrec.contentData)
            elif inrec.type == FCGI_STDERR:
                if inrec.contentLength:
                    stderr.append(inrec.contentData)
            elif inrec.type == FCGI_END_REQUEST:
                _, protocol_status = struct.unpack(FCGI_EndRequestBody, inrec.contentData)
                if protocol_status != FCGI_REQUEST_COMPLETE:
                    raise TransportError(
                        self.address,
                        f"fastcgi request rejected (protocol status {protocol_status})"
                    )
                break
        return b''.join(stdout), b''.join(stderr)

    def _parse_stdout(self, stdout: bytes) -> Tuple[int, bytes]:
        """Split CGI response headers from the body and extract Status."""
        cuts = [
            (pos, len(sep))
            for sep in (b'\r\n\r\n', b'\n\n')
            for pos in (stdout.find(sep),)
            if pos >= 0
        ]
        if not cuts:
            raise TransportError(self.address, "malformed fastcgi response: no header terminator")
        pos, sep_len = min(cuts)
        head, body = stdout[:pos], stdout[pos + sep_len:]

        status = 0
        for line in head.decode('latin-1').splitlines():
            line = line.strip()
            if not line:
                continue
            name, sep, value = line.partition(':')
            if not sep:
                raise TransportError(self.address, f"malformed fastcgi header: {line!r}")
            if name.strip().lower() != 'status':
                continue
            value = value.strip()
            try:
                status = int(value.split(' ', 1)[0])
            except ValueError:
                raise TransportError(self.address, f"malformed fastcgi status: {value!r}") from None

        return status, body
