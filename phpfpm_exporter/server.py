"""HTTP surface: metrics exposition, health check and index page."""

import logging
import threading
from socketserver import ThreadingMixIn
from typing import Callable, Iterable, List, Tuple
from urllib.parse import parse_qs
from wsgiref.simple_server import WSGIRequestHandler, WSGIServer, make_server

from prometheus_client import CollectorRegistry, generate_latest
from prometheus_client.exposition import CONTENT_TYPE_LATEST

from .collectors.phpfpm_collector import CollectOverrides, PHPFPMCollector


INDEX_PAGE = """<html>
<head><title>php-fpm exporter</title></head>
<body>
<h1>php-fpm exporter</h1>
<p><a href="{metrics_path}">Metrics</a></p>
</body>
</html>
"""


class ThreadingWSGIServer(ThreadingMixIn, WSGIServer):
    """One thread per request so a slow scrape does not block health checks."""
    daemon_threads = True


class _QuietHandler(WSGIRequestHandler):
    """Route access logs through the exporter logger at debug level."""

    logger = logging.getLogger("phpfpm_exporter.http")

    def log_message(self, format, *args):
        self.logger.debug(format % args, extra={"client": self.client_address[0]})


class ExporterApp:
    """
    WSGI application.

    Every metrics request gets its own registry holding the collector bound
    to that request's overrides, so concurrent scrapes never share routing
    state.
    """

    def __init__(self, collector: PHPFPMCollector, metrics_path: str, logger: logging.Logger):
        self.collector = collector
        self.metrics_path = metrics_path
        self.logger = logger.getChild(self.__class__.__name__)

    def __call__(self, environ, start_response) -> Iterable[bytes]:
        path = environ.get("PATH_INFO", "/")

        if path == "/healthz":
            return self._respond(start_response, "200 OK", "text/plain; charset=utf-8", b"ok\n")

        if path == self.metrics_path:
            return self._metrics(environ, start_response)

        body = INDEX_PAGE.format(metrics_path=self.metrics_path).encode("utf-8")
        return self._respond(start_response, "200 OK", "text/html; charset=utf-8", body)

    def _metrics(self, environ, start_response) -> Iterable[bytes]:
        params = parse_qs(environ.get("QUERY_STRING", ""))
        pool_values = params.get("pool", [])

        try:
            overrides = CollectOverrides(pool=pool_values[0] if pool_values else None)
        except ValueError as e:
            return self._respond(
                start_response,
                "400 Bad Request",
                "text/plain; charset=utf-8",
                f"{e}\n".encode("utf-8")
            )

        registry = CollectorRegistry()
        registry.register(self.collector.bind(overrides))
        output = generate_latest(registry)
        return self._respond(start_response, "200 OK", CONTENT_TYPE_LATEST, output)

    @staticmethod
    def _respond(start_response: Callable, status: str, content_type: str, body: bytes) -> List[bytes]:
        headers: List[Tuple[str, str]] = [
            ("Content-Type", content_type),
            ("Content-Length", str(len(body))),
        ]
        start_response(status, headers)
        return [body]


class MetricsServer:
    """Threaded HTTP server hosting an ExporterApp."""

    def __init__(self, app: ExporterApp, host: str, port: int):
        self.app = app
        self.httpd = make_server(
            host, port, app,
            server_class=ThreadingWSGIServer,
            handler_class=_QuietHandler
        )

    @property
    def server_port(self) -> int:
        return self.httpd.server_port

    def serve_forever(self):
        self.httpd.serve_forever()

    def shutdown(self):
        """Stop serving; safe to call from a signal handler."""
        # shutdown() blocks until serve_forever returns, so not on its thread
        threading.Thread(target=self.httpd.shutdown, daemon=True).start()

    def close(self):
        self.httpd.server_close()
