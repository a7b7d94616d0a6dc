"""Result data structures produced by per-target collection."""

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, List, Optional

from .status import ScrapeState

if TYPE_CHECKING:
    from ..collectors.mapper import MappedSample


@dataclass
class TargetResult:
    """Outcome of one target within one collection cycle."""

    target_name: str
    state: ScrapeState = ScrapeState.PENDING
    failures: int = 0  # Cumulative failure count at emission time
    samples: List["MappedSample"] = field(default_factory=list)
    error: Optional[str] = None

    @property
    def up(self) -> float:
        """Liveness gauge value: 1.0 when the fetch succeeded."""
        return 0.0 if self.error is not None else 1.0
