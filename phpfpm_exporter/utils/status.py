"""Per-cycle scrape state enumeration."""

from enum import Enum


class ScrapeState(Enum):
    """
    State of one target within a single collection cycle.

    PENDING -> FETCHING -> (SUCCEEDED | FAILED) -> REPORTED. There is no
    retry state; a failed target starts over as PENDING on the next cycle.
    """

    PENDING = "pending"
    FETCHING = "fetching"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    REPORTED = "reported"
