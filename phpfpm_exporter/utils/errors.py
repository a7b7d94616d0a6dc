"""Exception hierarchy for the exporter."""


class ExporterError(Exception):
    """Base class for all exporter errors."""


class TransportError(ExporterError):
    """
    Fetching a status page failed.

    Covers refused connections, name resolution failures, expired deadlines,
    non-200 responses and malformed FastCGI responses. Always recovered per
    target by the collector and never propagated to the registry.
    """

    def __init__(self, address: str, message: str):
        self.address = address
        super().__init__(f"{address}: {message}")


class ConfigurationError(ExporterError):
    """Invalid configuration detected at startup."""
