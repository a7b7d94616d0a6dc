"""Main application entry point for the PHP-FPM exporter."""

import argparse
import signal
import sys
from typing import Any, Dict, List, Optional

from prometheus_client import CollectorRegistry, generate_latest

from .collectors.phpfpm_collector import PHPFPMCollector
from .config.loader import ConfigLoader
from .config.models import ExporterConfig
from .config.settings import Settings
from .server import ExporterApp, MetricsServer
from .utils.errors import ConfigurationError
from .utils.logger import setup_logger


class _Snapshot:
    """Registry collector returning families gathered beforehand."""

    def __init__(self, families):
        self.families = families

    def describe(self):
        return []

    def collect(self):
        return iter(self.families)


class ExporterMain:
    """
    Main exporter application.

    Wires configuration, collector and HTTP server together and handles
    graceful shutdown.
    """

    def __init__(self, config: ExporterConfig):
        """
        Initialize exporter application.

        Args:
            config: Validated configuration

        Raises:
            ConfigurationError: If targets or TLS material are invalid
        """
        self.config = config
        self.logger = setup_logger("phpfpm_exporter", config.log_level)
        self.server = None

        self.collector = PHPFPMCollector.from_config(config, self.logger)
        self.logger.info(
            f"Configured {len(self.collector.targets)} target(s)",
            extra={"targets": [target.name for target in self.collector.targets]}
        )

    def _signal_handler(self, signum, frame):
        """
        Handle shutdown signals.

        Args:
            signum: Signal number
            frame: Current stack frame
        """
        signal_name = signal.Signals(signum).name
        self.logger.info(f"Received {signal_name}, initiating graceful shutdown...")

        if self.server is not None:
            self.server.shutdown()

    def run_once(self) -> int:
        """
        Collect once and print the exposition to stdout.

        Returns:
            int: 0 when every target is up, 1 otherwise
        """
        results = self.collector.run_cycle()
        registry = CollectorRegistry()
        registry.register(_Snapshot(self.collector.build_families(results)))
        sys.stdout.write(generate_latest(registry).decode("utf-8"))

        return 0 if all(result.up for result in results) else 1

    def serve(self):
        """Serve metrics until SIGINT/SIGTERM."""
        app = ExporterApp(self.collector, self.config.metrics_path, self.logger)
        self.server = MetricsServer(app, self.config.listen_host, self.config.listen_port)

        signal.signal(signal.SIGTERM, self._signal_handler)
        signal.signal(signal.SIGINT, self._signal_handler)

        self.logger.info(
            f"Listening on {self.config.listen_address}",
            extra={"metrics_path": self.config.metrics_path}
        )
        try:
            self.server.serve_forever()
        finally:
            self.server.close()
            self.logger.info("Server stopped")


def _parse_target(value: str) -> Dict[str, str]:
    name, sep, url = value.partition("=")
    if not sep or not name or not url:
        raise argparse.ArgumentTypeError(f"expected NAME=URL, got {value!r}")
    return {"name": name, "url": url}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="phpfpm-exporter",
        description="php-fpm metrics exporter",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Single HTTP status endpoint
  phpfpm-exporter --endpoint http://127.0.0.1:9000/status

  # FastCGI over a unix socket
  phpfpm-exporter --fastcgi unix:///run/php/php-fpm.sock

  # Several pools, every series labeled with target=<name>
  phpfpm-exporter --target www=tcp://127.0.0.1:9000/status --target api=tcp://127.0.0.1:9001/status

  # Settings from a YAML file
  phpfpm-exporter --config /etc/phpfpm-exporter.yaml
        """
    )

    parser.add_argument('--config', default=Settings.get("CONFIG"),
                        help='Path to YAML configuration file')
    parser.add_argument('--addr', default=Settings.get("ADDR"),
                        help='Listen address for metrics handler (default: 127.0.0.1:8080)')
    parser.add_argument('--endpoint', default=Settings.get("ENDPOINT"),
                        help='URL for php-fpm status (default: http://127.0.0.1:9000/status)')
    parser.add_argument('--fastcgi', default=Settings.get("FASTCGI"),
                        help='FastCGI URL. If this is set, FastCGI will be used instead of HTTP')
    parser.add_argument('--target', action='append', type=_parse_target, default=None,
                        metavar='NAME=URL', help='Named target, may be repeated')
    parser.add_argument('--timeout', type=float, default=Settings.get_float("TIMEOUT"),
                        help='Timeout in seconds for fetching status pages (default: none)')
    parser.add_argument('--metrics-path', default=Settings.get("METRICS_PATH"),
                        help='Path under which to expose metrics (default: /metrics)')
    parser.add_argument('--tls-cert', default=Settings.get("TLS_CERT"),
                        help='Client certificate for HTTPS targets')
    parser.add_argument('--tls-key', default=Settings.get("TLS_KEY"),
                        help='Client certificate key for HTTPS targets')
    parser.add_argument('--tls-ca', default=Settings.get("TLS_CA"),
                        help='CA bundle for HTTPS targets')
    parser.add_argument('--username', default=Settings.get("USERNAME"),
                        help='Basic auth user for HTTP targets')
    parser.add_argument('--password-file', default=Settings.get("PASSWORD_FILE"),
                        help='File holding the basic auth password')
    parser.add_argument('--log-level', default=Settings.get("LOG_LEVEL"),
                        choices=['DEBUG', 'INFO', 'WARNING', 'ERROR'],
                        help='Logging level (default: INFO)')
    parser.add_argument('--run-once', action='store_true',
                        help='Collect once, print metrics to stdout and exit')
    return parser


def overrides_from_args(args: argparse.Namespace) -> Dict[str, Any]:
    """
    Translate command line arguments into configuration keys.

    Only explicitly given values are returned so that a config file keeps
    its settings for everything else.

    Raises:
        ConfigurationError: For contradictory flags
    """
    overrides: Dict[str, Any] = {}

    if args.target and (args.endpoint or args.fastcgi):
        raise ConfigurationError("--target cannot be combined with --endpoint or --fastcgi")

    targets: Optional[List[Dict[str, str]]] = None
    if args.target:
        targets = args.target
    elif args.fastcgi:
        targets = [{"name": "default", "url": args.fastcgi}]
    elif args.endpoint:
        targets = [{"name": "default", "url": args.endpoint}]
    if targets is not None:
        overrides["targets"] = targets

    if args.addr:
        overrides["listen_address"] = args.addr
    if args.metrics_path is not None:
        overrides["metrics_path"] = args.metrics_path
    if args.timeout is not None:
        overrides["timeout"] = args.timeout
    if args.log_level:
        overrides["log_level"] = args.log_level

    if args.tls_cert or args.tls_key:
        if not (args.tls_cert and args.tls_key):
            raise ConfigurationError("--tls-cert and --tls-key must be given together")
        overrides["tls"] = {
            "cert_file": args.tls_cert,
            "key_file": args.tls_key,
            "ca_file": args.tls_ca,
        }

    if args.username or args.password_file:
        if not (args.username and args.password_file):
            raise ConfigurationError("--username and --password-file must be given together")
        overrides["basic_auth"] = {
            "username": args.username,
            "password_file": args.password_file,
        }

    return overrides


def load_config(args: argparse.Namespace) -> ExporterConfig:
    overrides = overrides_from_args(args)
    if args.config:
        return ConfigLoader.load_from_file(args.config, overrides)
    return ConfigLoader.from_mapping(overrides)


def main(argv: Optional[List[str]] = None):
    """
    CLI entry point.

    Parses command-line arguments and starts the exporter.
    """
    args = build_parser().parse_args(argv)

    try:
        config = load_config(args)
        app = ExporterMain(config)
    except ConfigurationError as e:
        logger = setup_logger("phpfpm_exporter", args.log_level or "INFO")
        logger.error(f"failed to create exporter: {e}")
        sys.exit(1)

    if args.run_once:
        sys.exit(app.run_once())

    try:
        app.serve()
    except OSError as e:
        app.logger.error(f"failed to run exporter: {e}", exc_info=True)
        sys.exit(1)


if __name__ == '__main__':
    main()
