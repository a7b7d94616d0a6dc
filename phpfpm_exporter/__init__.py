"""Prometheus exporter for PHP-FPM status pages."""

__version__ = "0.3.0"
