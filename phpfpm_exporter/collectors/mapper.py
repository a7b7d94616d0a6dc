"""Static mapping from status page fields to metric descriptors."""

from dataclasses import dataclass
from enum import Enum
from typing import Dict, NamedTuple, Optional, Tuple

from .status_parser import Sample


METRICS_NAMESPACE = "phpfpm"


class ValueKind(Enum):
    COUNTER = "counter"
    GAUGE = "gauge"


@dataclass(frozen=True)
class MetricDescriptor:
    """Name, help text and type of one exported metric family."""
    name: str
    documentation: str
    value_kind: ValueKind
    extra_label_key: Optional[str] = None

    @property
    def full_name(self) -> str:
        return f"{METRICS_NAMESPACE}_{self.name}"


class MappedSample(NamedTuple):
    """A sample resolved to its descriptor, ready for emission."""
    descriptor: MetricDescriptor
    label_values: Tuple[str, ...]
    value: float


UP = MetricDescriptor(
    "up", "able to contact php-fpm", ValueKind.GAUGE
)
SCRAPE_FAILURES = MetricDescriptor(
    "scrape_failures_total", "Number of errors while scraping php_fpm", ValueKind.COUNTER
)
ACCEPTED_CONNECTIONS = MetricDescriptor(
    "accepted_connections_total",
    "Total number of accepted connections",
    ValueKind.COUNTER,
)
LISTEN_QUEUE = MetricDescriptor(
    "listen_queue_connections",
    "Number of connections that have been initiated but not yet accepted",
    ValueKind.GAUGE,
)
MAX_LISTEN_QUEUE = MetricDescriptor(
    "listen_queue_max_connections",
    "Max number of connections the listen queue has reached since FPM start",
    ValueKind.COUNTER,
)
LISTEN_QUEUE_LENGTH = MetricDescriptor(
    "listen_queue_length_connections",
    "The length of the socket queue, dictating maximum number of pending connections",
    ValueKind.GAUGE,
)
PROCESSES = MetricDescriptor(
    "processes_total", "process count", ValueKind.GAUGE, extra_label_key="state"
)
MAX_ACTIVE_PROCESSES = MetricDescriptor(
    "active_max_processes", "Maximum active process count", ValueKind.COUNTER
)
MAX_CHILDREN_REACHED = MetricDescriptor(
    "max_children_reached_total",
    "Number of times the process limit has been reached",
    ValueKind.COUNTER,
)
SLOW_REQUESTS = MetricDescriptor(
    "slow_requests_total",
    "Number of requests that exceed request_slowlog_timeout",
    ValueKind.COUNTER,
)

# Exposition order
DESCRIPTORS: Tuple[MetricDescriptor, ...] = (
    UP,
    SCRAPE_FAILURES,
    ACCEPTED_CONNECTIONS,
    LISTEN_QUEUE,
    MAX_LISTEN_QUEUE,
    LISTEN_QUEUE_LENGTH,
    PROCESSES,
    MAX_ACTIVE_PROCESSES,
    MAX_CHILDREN_REACHED,
    SLOW_REQUESTS,
)

# status key -> (descriptor, value of the descriptor's extra label)
STATUS_METRICS: Dict[str, Tuple[MetricDescriptor, Optional[str]]] = {
    "accepted conn": (ACCEPTED_CONNECTIONS, None),
    "listen queue": (LISTEN_QUEUE, None),
    "max listen queue": (MAX_LISTEN_QUEUE, None),
    "listen queue len": (LISTEN_QUEUE_LENGTH, None),
    "idle processes": (PROCESSES, "idle"),
    "active processes": (PROCESSES, "active"),
    "max active processes": (MAX_ACTIVE_PROCESSES, None),
    "max children reached": (MAX_CHILDREN_REACHED, None),
    "slow requests": (SLOW_REQUESTS, None),
}


def map_sample(sample: Sample, target_labels: Tuple[str, ...] = ()) -> Optional[MappedSample]:
    """
    Resolve a parsed sample against the key table.

    Args:
        sample: Parsed status field
        target_labels: Label values identifying the target, prepended to
            the descriptor's own label value

    Returns:
        Optional[MappedSample]: None for keys outside the table
    """
    entry = STATUS_METRICS.get(sample.key)
    if entry is None:
        return None

    descriptor, extra_label = entry
    labels = target_labels if extra_label is None else target_labels + (extra_label,)
    return MappedSample(descriptor, labels, float(sample.value))
